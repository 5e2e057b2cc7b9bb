"""Tests for the definition registry."""

import pytest

from ig_validator.healthcare.validation.context import (
    CanonicalEntry,
    ElementTree,
    WorkerContext,
    strip_version,
)
from tests.mocks.fhir_definitions import CORE, GENDER_VALUE_SET, core_definitions


@pytest.fixture
def context():
    """Registry holding the test core definitions."""
    worker = WorkerContext()
    worker.cache_entries(CanonicalEntry(d, "core") for d in core_definitions())
    return worker


def test_strip_version():
    assert strip_version("http://example.org/vs|1.0.0") == "http://example.org/vs"
    assert strip_version("http://example.org/vs") == "http://example.org/vs"


def test_matches_version():
    versioned = CanonicalEntry({"url": "http://example.org/p", "version": "1.0"}, "runtime")
    unversioned = CanonicalEntry({"url": "http://example.org/p"}, "runtime")

    assert versioned.matches_version("http://example.org/p")
    assert versioned.matches_version("http://example.org/p|1.0")
    assert not versioned.matches_version("http://example.org/p|2.0")
    assert unversioned.matches_version("http://example.org/p|2.0")


class TestElementTree:
    """Snapshot hierarchy."""

    def test_children_and_slices(self):
        tree = ElementTree(
            [
                {"id": "Patient", "path": "Patient"},
                {"id": "Patient.identifier", "path": "Patient.identifier", "max": "*"},
                {
                    "id": "Patient.identifier:mrn",
                    "path": "Patient.identifier",
                    "sliceName": "mrn",
                    "max": "1",
                    "base": {"max": "*"},
                },
                {"id": "Patient.identifier:mrn.system", "path": "Patient.identifier.system"},
                {"id": "Patient.active", "path": "Patient.active", "max": "1"},
            ]
        )
        assert tree.root.id == "Patient"
        assert [c.id for c in tree.root.children] == ["Patient.identifier", "Patient.active"]

        identifier = tree.get("Patient.identifier")
        assert [s.slice_name for s in identifier.slices] == ["mrn"]
        assert identifier.max is None

        mrn = tree.get("Patient.identifier:mrn")
        assert mrn.max == 1
        assert mrn.repeats
        assert [c.name for c in mrn.children] == ["system"]
        assert not tree.get("Patient.active").repeats

    def test_type_lookup(self, context):
        tree = context.view.structure_for_type("Patient").tree
        deceased = tree.get("Patient.deceased[x]")
        assert deceased.name == "deceased[x]"
        assert deceased.type_codes == ["boolean", "dateTime"]
        assert deceased.type_for_code("dateTime") == {"code": "dateTime"}
        assert deceased.type_for_code("string") is None


class TestWorkerContext:
    """Copy-on-write registry."""

    def test_lookups(self, context):
        view = context.view
        assert view.structure(CORE + "Patient").resource_type == "StructureDefinition"
        assert view.structure_for_type("Patient") is view.structure(CORE + "Patient")
        assert view.value_set(GENDER_VALUE_SET + "|4.0.1") is not None
        assert view.code_system("http://hl7.org/fhir/administrative-gender") is not None
        assert view.structure("http://example.org/unknown") is None

    def test_resource_names(self, context):
        assert context.view.resource_names() == ["Organization", "Patient"]

    def test_registration_swaps_the_view(self, context):
        before = context.view
        profile = {
            "resourceType": "StructureDefinition",
            "url": "http://example.org/StructureDefinition/p",
            "type": "Patient",
        }
        replaced = context.cache_entries([CanonicalEntry(profile, "runtime")])

        assert replaced == {}
        assert before.structure(profile["url"]) is None
        assert context.view.structure(profile["url"]) is not None

    def test_last_write_wins(self, context):
        url = CORE + "Organization"
        first = context.view.structure(url)
        replacement = CanonicalEntry(dict(first.document, name="Replaced"), "runtime")

        replaced = context.cache_entries([replacement])
        assert replaced == {url: first}
        assert context.view.structure(url).document["name"] == "Replaced"
        assert len(context.view.structures) == len(core_definitions()) - 2

    def test_rejects_other_resource_types(self, context):
        before = context.view
        with pytest.raises(ValueError):
            context.cache_entries(
                [CanonicalEntry({"resourceType": "Patient", "url": "urn:x"}, "runtime")]
            )
        assert context.view is before
