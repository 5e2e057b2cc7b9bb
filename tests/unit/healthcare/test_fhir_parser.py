"""Tests for FHIR format detection and parsing."""

import pytest
from fhirclient.models.patient import Patient
from fhirclient.models.structuredefinition import StructureDefinition

from ig_validator.core.exceptions import ParseError
from ig_validator.healthcare.fhir_parser import (
    FhirFormat,
    detect_format,
    parse_document,
    parse_json,
    parse_resource,
    parse_xml,
    to_model,
)
from tests.mocks.fhir_definitions import ORGANIZATION_PROFILE, ORGANIZATION_PROFILE_XML

PATIENT_XML = b"""<?xml version="1.0" encoding="UTF-8"?>
<Patient xmlns="http://hl7.org/fhir">
  <id value="example"/>
  <text>
    <status value="generated"/>
    <div xmlns="http://www.w3.org/1999/xhtml"><p>Jane Doe</p></div>
  </text>
  <extension url="http://example.org/fhir/StructureDefinition/birthsex">
    <valueCode value="F"/>
  </extension>
  <active value="true"/>
  <name>
    <family value="Doe"/>
    <given value="Jane"/>
    <given id="g2">
      <extension url="http://example.org/fhir/StructureDefinition/initial">
        <valueBoolean value="true"/>
      </extension>
    </given>
  </name>
  <birthDate value="1980-04-12">
    <extension url="http://example.org/fhir/StructureDefinition/precision">
      <valueString value="day"/>
    </extension>
  </birthDate>
</Patient>
"""


class TestDetectFormat:
    """Format detection."""

    def test_json(self):
        assert detect_format(b'  {"resourceType": "Patient"}') == FhirFormat.JSON

    def test_xml(self):
        assert detect_format(b"\n<Patient/>") == FhirFormat.XML

    def test_byte_order_mark(self):
        assert detect_format(b"\xef\xbb\xbf{}") == FhirFormat.JSON

    @pytest.mark.parametrize("data", [b"", b"   ", b"Patient: example", b"[1, 2]"])
    def test_unknown(self, data):
        assert detect_format(data) is None


class TestParseJson:
    """JSON decoding."""

    def test_resource(self):
        assert parse_json(b'{"resourceType": "Patient", "id": "p"}') == {
            "resourceType": "Patient",
            "id": "p",
        }

    @pytest.mark.parametrize(
        "data",
        [
            b'{"resourceType": "Patient",',
            b'["resourceType"]',
            b'{"id": "p"}',
            b'{"resourceType": 7}',
            b"\xff\xfe{}",
        ],
    )
    def test_invalid(self, data):
        with pytest.raises(ParseError):
            parse_json(data)


class TestParseXml:
    """XML to FHIR JSON conversion."""

    def test_patient(self):
        document = parse_xml(PATIENT_XML)

        assert document["resourceType"] == "Patient"
        assert document["id"] == "example"
        assert document["active"] is True
        assert document["extension"] == [
            {
                "url": "http://example.org/fhir/StructureDefinition/birthsex",
                "valueCode": "F",
            }
        ]
        assert document["name"] == [
            {
                "family": "Doe",
                "given": ["Jane", None],
                "_given": [
                    None,
                    {
                        "id": "g2",
                        "extension": [
                            {
                                "url": "http://example.org/fhir/StructureDefinition/initial",
                                "valueBoolean": True,
                            }
                        ],
                    },
                ],
            }
        ]
        assert document["birthDate"] == "1980-04-12"
        assert document["_birthDate"]["extension"][0]["valueString"] == "day"
        assert document["text"]["status"] == "generated"
        assert document["text"]["div"].startswith("<div")
        assert "Jane Doe" in document["text"]["div"]

    def test_structure_definition(self):
        document = parse_xml(ORGANIZATION_PROFILE_XML.encode())
        assert document["url"] == ORGANIZATION_PROFILE
        assert document["abstract"] is False
        assert document["differential"]["element"] == [
            {"id": "Organization.name", "path": "Organization.name", "min": 1}
        ]

    def test_contained_resource(self):
        document = parse_xml(
            b'<Patient xmlns="http://hl7.org/fhir"><contained>'
            b'<Organization><id value="o1"/></Organization>'
            b"</contained></Patient>"
        )
        assert document["contained"] == [{"resourceType": "Organization", "id": "o1"}]

    @pytest.mark.parametrize(
        "data",
        [
            b"<Patient",
            b"<Patient/>",
            b'<Widget xmlns="http://hl7.org/fhir"/>',
            b'<Patient xmlns="http://hl7.org/fhir"><nickname value="x"/></Patient>',
            b'<Patient xmlns="http://hl7.org/fhir"><active value="yes"/></Patient>',
            b'<Patient xmlns="http://hl7.org/fhir"><id value="a"/><id value="b"/></Patient>',
        ],
    )
    def test_invalid(self, data):
        with pytest.raises(ParseError):
            parse_xml(data)


class TestModels:
    """fhirclient model construction."""

    def test_parse_resource_from_json(self):
        resource = parse_resource(b'{"resourceType": "Patient", "active": true}', FhirFormat.JSON)
        assert isinstance(resource, Patient)
        assert resource.active is True

    def test_parse_resource_from_xml(self):
        resource = parse_resource(ORGANIZATION_PROFILE_XML.encode(), FhirFormat.XML)
        assert isinstance(resource, StructureDefinition)
        assert resource.url == ORGANIZATION_PROFILE

    def test_parse_document_dispatches_on_format(self):
        assert parse_document(b'{"resourceType": "Patient"}', FhirFormat.JSON) == {
            "resourceType": "Patient"
        }

    def test_model_rejects_wrong_types(self):
        with pytest.raises(ParseError):
            to_model({"resourceType": "Patient", "active": "yes"})

    def test_lenient_model(self):
        resource = to_model({"resourceType": "Patient", "active": "yes"}, strict=False)
        assert isinstance(resource, Patient)

    def test_unknown_resource_type(self):
        with pytest.raises(ParseError):
            to_model({"resourceType": "Widget"})
