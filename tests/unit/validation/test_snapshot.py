"""Tests for snapshot generation."""

import copy

import pytest

from ig_validator.core.exceptions import SnapshotError
from ig_validator.healthcare.validation.context import CanonicalEntry, WorkerContext
from ig_validator.healthcare.validation.snapshot import (
    check_cardinality,
    differential_id,
    generate_snapshot,
    unsliced_id,
)
from tests.mocks.fhir_definitions import (
    CORE,
    MRN_SYSTEM,
    birthsex_extension,
    core_definitions,
    patient_profile,
)


@pytest.fixture
def view():
    """Registry view holding the test core definitions."""
    context = WorkerContext()
    context.cache_entries(CanonicalEntry(d, "core") for d in core_definitions())
    return context.view


def ids(structure):
    return [e["id"] for e in structure["snapshot"]["element"]]


def by_id(structure, element_id):
    return next(e for e in structure["snapshot"]["element"] if e["id"] == element_id)


class TestIds:
    """Element id helpers."""

    def test_unsliced_id(self):
        assert unsliced_id("Patient.identifier:mrn.system") == "Patient.identifier.system"
        assert unsliced_id("Extension.value[x]:valueCoding") == "Extension.value[x]"
        assert unsliced_id("Patient.name") == "Patient.name"

    def test_differential_id(self):
        assert differential_id({"id": "Patient.name", "path": "Patient.name"}) == "Patient.name"
        assert differential_id({"path": "Patient.name"}) == "Patient.name"
        assert (
            differential_id({"path": "Patient.identifier", "sliceName": "mrn"})
            == "Patient.identifier:mrn"
        )


class TestGenerateSnapshot:
    """Differential expansion."""

    def test_base_elements_are_copied(self, view):
        result = generate_snapshot(patient_profile(), view)
        base_ids = [e["id"] for e in core_definitions()[0]["snapshot"]["element"]]
        assert [i for i in ids(result) if ":" not in i and i in base_ids] == base_ids

    def test_slices_follow_the_sliced_element(self, view):
        result = generate_snapshot(patient_profile(), view)
        order = ids(result)
        position = order.index("Patient.identifier")
        assert order[position + 1 : position + 5] == [
            "Patient.identifier:mrn",
            "Patient.identifier:mrn.use",
            "Patient.identifier:mrn.system",
            "Patient.identifier:mrn.value",
        ]
        assert order[order.index("Patient.extension") + 1] == "Patient.extension:birthsex"

    def test_differential_is_merged(self, view):
        result = generate_snapshot(patient_profile(), view)

        identifier = by_id(result, "Patient.identifier")
        assert identifier["min"] == 1
        assert identifier["slicing"]["rules"] == "open"

        mrn = by_id(result, "Patient.identifier:mrn")
        assert mrn["sliceName"] == "mrn"
        assert mrn["max"] == "1"
        assert "slicing" not in mrn

        system = by_id(result, "Patient.identifier:mrn.system")
        assert system["path"] == "Patient.identifier.system"
        assert system["fixedUri"] == MRN_SYSTEM
        assert system["min"] == 1
        assert system["type"] == [{"code": "uri"}]

    def test_input_is_not_modified(self, view):
        profile = patient_profile()
        original = copy.deepcopy(profile)
        generate_snapshot(profile, view)
        assert profile == original

    def test_extension_profile(self, view):
        result = generate_snapshot(birthsex_extension(), view)
        value = by_id(result, "Extension.value[x]")
        assert value["type"] == [{"code": "code"}]
        assert value["min"] == 1
        assert by_id(result, "Extension.extension")["max"] == "0"

    def test_choice_slice_unfolds_its_type(self, view):
        profile = birthsex_extension()
        profile["differential"]["element"] = [
            {
                "id": "Extension.value[x]:valueCoding",
                "path": "Extension.value[x]",
                "sliceName": "valueCoding",
            },
            {
                "id": "Extension.value[x]:valueCoding.system",
                "path": "Extension.value[x].system",
                "fixedUri": "urn:example",
            },
        ]
        result = generate_snapshot(profile, view)
        assert "Extension.value[x]:valueCoding.code" in ids(result)
        assert by_id(result, "Extension.value[x]:valueCoding.system")["fixedUri"] == "urn:example"

    def test_constraints_accumulate(self, view):
        profile = patient_profile()
        profile["differential"]["element"].append(
            {
                "id": "Patient.contact",
                "path": "Patient.contact",
                "constraint": [{"key": "ex-1", "severity": "error", "expression": "true"}],
            }
        )
        result = generate_snapshot(profile, view)
        keys = [c["key"] for c in by_id(result, "Patient.contact")["constraint"]]
        assert keys == ["pat-1", "ex-1"]

    def test_constraint_with_same_key_replaces(self, view):
        profile = patient_profile()
        profile["differential"]["element"].append(
            {
                "id": "Patient.contact",
                "path": "Patient.contact",
                "constraint": [{"key": "pat-1", "severity": "warning", "expression": "true"}],
            }
        )
        result = generate_snapshot(profile, view)
        constraints = by_id(result, "Patient.contact")["constraint"]
        assert [(c["key"], c["severity"]) for c in constraints] == [("pat-1", "warning")]

    def test_fixed_replaces_pattern(self, view):
        profile = patient_profile()
        profile["differential"]["element"] += [
            {"id": "Patient.active", "path": "Patient.active", "patternBoolean": True},
            {"id": "Patient.active", "path": "Patient.active", "fixedBoolean": False},
        ]
        active = by_id(generate_snapshot(profile, view), "Patient.active")
        assert active["fixedBoolean"] is False
        assert "patternBoolean" not in active


class TestSnapshotErrors:
    """Profiles that cannot be expanded."""

    def test_unknown_base(self, view):
        profile = patient_profile()
        profile["baseDefinition"] = "http://example.org/fhir/StructureDefinition/missing"
        with pytest.raises(SnapshotError):
            generate_snapshot(profile, view)

    def test_missing_base_definition(self, view):
        profile = patient_profile()
        del profile["baseDefinition"]
        with pytest.raises(SnapshotError):
            generate_snapshot(profile, view)

    def test_specialization(self, view):
        profile = patient_profile()
        profile["derivation"] = "specialization"
        with pytest.raises(SnapshotError):
            generate_snapshot(profile, view)

    def test_element_not_in_base(self, view):
        profile = patient_profile()
        profile["differential"]["element"].append(
            {"id": "Patient.favouriteColour", "path": "Patient.favouriteColour"}
        )
        with pytest.raises(SnapshotError):
            generate_snapshot(profile, view)

    def test_child_of_unknown_datatype(self):
        context = WorkerContext()
        context.cache_entries(
            CanonicalEntry(d, "core")
            for d in core_definitions()
            if d.get("url") != CORE + "Identifier"
        )
        with pytest.raises(SnapshotError):
            generate_snapshot(patient_profile(), context.view)

    @pytest.mark.parametrize(
        "constraint",
        [{"max": "many"}, {"max": 1}, {"min": "1"}, {"min": -1}],
    )
    def test_unusable_cardinality(self, view, constraint):
        profile = patient_profile()
        profile["differential"]["element"].append(
            dict({"id": "Patient.active", "path": "Patient.active"}, **constraint)
        )
        with pytest.raises(SnapshotError):
            generate_snapshot(profile, view)


class TestCheckCardinality:
    """Cardinality check on existing snapshots."""

    def test_core_definitions_pass(self):
        for definition in core_definitions():
            check_cardinality(definition)

    def test_unusable_base_max(self):
        definition = copy.deepcopy(core_definitions()[0])
        definition["snapshot"]["element"][1]["base"]["max"] = "lots"
        with pytest.raises(SnapshotError):
            check_cardinality(definition)
