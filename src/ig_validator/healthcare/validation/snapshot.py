"""Snapshot generation for constraint profiles.

A profile published with only a differential is expanded against the
snapshot of its base definition: base elements are copied, differential
elements are merged over them by element id, new slices are inserted after
the element they slice, and datatype elements are unfolded when the
differential constrains one of their children.
"""

import copy
import re
from typing import Any, Dict, List, Optional, Tuple

from ig_validator.core.exceptions import SnapshotError
from ig_validator.healthcare.validation.context import ContextView
from ig_validator.utils.logging import get_logger

logger = get_logger(__name__)

_SLICE_SEGMENT = re.compile(r":[^.]+")

# Keys whose values accumulate instead of replacing the base value
_ADDITIVE_KEYS = ("constraint", "condition", "mapping")


def unsliced_id(element_id: str) -> str:
    """Remove every slice name from an element id."""
    return _SLICE_SEGMENT.sub("", element_id)


def differential_id(element: Dict[str, Any]) -> str:
    """Element id of a differential element, derived from path if absent."""
    if element.get("id"):
        return str(element["id"])
    path = str(element.get("path", ""))
    if element.get("sliceName"):
        return f"{path}:{element['sliceName']}"
    return path


class SnapshotGenerator:
    """Expands one differential against a base snapshot."""

    def __init__(self, structure: Dict[str, Any], view: ContextView):
        """Initialize generator.

        Args:
            structure: StructureDefinition JSON with a differential
            view: Registry view used to find the base and datatype definitions
        """
        self.structure = structure
        self.view = view
        self.elements: List[Dict[str, Any]] = []

    def generate(self) -> Dict[str, Any]:
        """Return a copy of the structure with a generated snapshot.

        Raises:
            SnapshotError: If the base or a constrained element cannot be found
        """
        url = self.structure.get("url")
        base_url = self.structure.get("baseDefinition")
        if not base_url:
            raise SnapshotError(f"{url} has no baseDefinition")
        if self.structure.get("derivation", "constraint") != "constraint":
            raise SnapshotError(f"{url}: only constraint profiles can be expanded")

        base = self.view.structure(base_url)
        if base is None:
            raise SnapshotError(f"{url}: base definition {base_url} is not loaded")
        if not base.has_snapshot:
            raise SnapshotError(f"{url}: base definition {base_url} has no snapshot")

        self.elements = copy.deepcopy(base.document["snapshot"]["element"])
        differential = (self.structure.get("differential") or {}).get("element", [])
        for diff in differential:
            element_id = differential_id(diff)
            target = self._find(element_id)
            if target is None:
                target = self._create(element_id)
            self._merge(target, diff)

        result = copy.deepcopy(self.structure)
        result["snapshot"] = {"element": self.elements}
        check_cardinality(result)
        logger.debug(
            "snapshot_generated", url=url, base=base_url, elements=len(self.elements)
        )
        return result

    def _find(self, element_id: str) -> Optional[Dict[str, Any]]:
        for element in self.elements:
            if element.get("id") == element_id:
                return element
        return None

    def _index(self, element_id: str) -> int:
        for index, element in enumerate(self.elements):
            if element.get("id") == element_id:
                return index
        raise SnapshotError(f"{self.structure.get('url')}: no element {element_id}")

    def _subtree_end(self, element_id: str) -> int:
        """Index just past the element and its descendants and slices."""
        end = self._index(element_id) + 1
        while end < len(self.elements):
            other = str(self.elements[end].get("id", ""))
            if not other.startswith((element_id + ".", element_id + ":")):
                break
            end += 1
        return end

    def _has_children(self, element_id: str) -> bool:
        prefix = element_id + "."
        return any(str(e.get("id", "")).startswith(prefix) for e in self.elements)

    def _create(self, element_id: str) -> Dict[str, Any]:
        parent_id, _, last = element_id.rpartition(".")
        if not parent_id:
            raise SnapshotError(
                f"{self.structure.get('url')}: root element {element_id} does not match base"
            )

        if ":" in last:
            name, slice_name = last.split(":", 1)
            sliced_id = f"{parent_id}.{name}"
            sliced = self._find(sliced_id) or self._create(sliced_id)
            element = copy.deepcopy(sliced)
            element.pop("slicing", None)
            element["id"] = element_id
            element["sliceName"] = slice_name
            self.elements.insert(self._subtree_end(sliced_id), element)
            return element

        parent = self._find(parent_id) or self._create(parent_id)
        if not self._has_children(parent_id):
            self._unfold(parent_id, parent)
        element = self._find(element_id)
        if element is None:
            raise SnapshotError(
                f"{self.structure.get('url')}: {element_id} is not an element of "
                f"{parent.get('path')}"
            )
        return element

    def _unfold(self, element_id: str, element: Dict[str, Any]) -> None:
        """Insert the children of a datatype or sliced element below it."""
        source_id = unsliced_id(element_id)
        if source_id != element_id and self._has_children(source_id):
            prefix = source_id + "."
            children = [
                copy.deepcopy(e)
                for e in self.elements
                if str(e.get("id", "")).startswith(prefix)
            ]
            source_path = source_id
        else:
            type_root, children = self._datatype_children(element_id, element)
            source_id = source_path = type_root

        path = str(element.get("path", unsliced_id(element_id)))
        for child in children:
            child["id"] = element_id + str(child["id"])[len(source_id):]
            child["path"] = path + str(child.get("path", ""))[len(source_path):]

        position = self._index(element_id) + 1
        self.elements[position:position] = children

    def _datatype_children(
        self, element_id: str, element: Dict[str, Any]
    ) -> Tuple[str, List[Dict[str, Any]]]:
        types = element.get("type") or []
        codes = [t.get("code") for t in types if t.get("code")]
        name = str(element.get("path", "")).rsplit(".", 1)[-1]
        if len(codes) > 1 and name.endswith("[x]") and element.get("sliceName"):
            # value[x]:valueQuantity -> Quantity
            suffix = str(element["sliceName"])[len(name) - 3 :]
            codes = [c for c in codes if c.lower() == suffix.lower()] or codes
        if len(codes) != 1:
            raise SnapshotError(
                f"{self.structure.get('url')}: cannot unfold {element_id} with types {codes}"
            )

        type_entry = next(t for t in types if t.get("code") == codes[0])
        definition = None
        for profile in type_entry.get("profile") or []:
            definition = self.view.structure(profile)
            if definition is not None and definition.has_snapshot:
                break
            definition = None
        if definition is None:
            definition = self.view.structure_for_type(codes[0])
        if definition is None or not definition.has_snapshot:
            raise SnapshotError(
                f"{self.structure.get('url')}: no definition for type {codes[0]}"
            )

        type_elements = definition.document["snapshot"]["element"]
        root_id = str(type_elements[0].get("id") or type_elements[0].get("path"))
        children = [copy.deepcopy(e) for e in type_elements[1:]]
        for child in children:
            child.setdefault("id", child.get("path"))
        return root_id, children

    @staticmethod
    def _merge(target: Dict[str, Any], diff: Dict[str, Any]) -> None:
        for key, value in diff.items():
            if key in ("id", "path"):
                continue
            if key in _ADDITIVE_KEYS and isinstance(value, list):
                existing = target.get(key) or []
                if key == "constraint":
                    keys = {c.get("key") for c in value}
                    existing = [c for c in existing if c.get("key") not in keys]
                target[key] = existing + copy.deepcopy(value)
                continue
            if key.startswith(("fixed", "pattern")):
                for old in [k for k in target if k.startswith(("fixed", "pattern"))]:
                    del target[old]
            target[key] = copy.deepcopy(value)


def check_cardinality(structure: Dict[str, Any]) -> None:
    """Check that every snapshot element has a usable min and max.

    Raises:
        SnapshotError: If a cardinality is not a count (or "*" for max)
    """
    url = structure.get("url")
    for element in (structure.get("snapshot") or {}).get("element", []):
        element_id = differential_id(element)
        low = element.get("min", 0)
        if isinstance(low, bool) or not isinstance(low, int) or low < 0:
            raise SnapshotError(f"{url}: {element_id} has invalid min {low!r}")
        for high in (element.get("max", "*"), (element.get("base") or {}).get("max", "*")):
            if high != "*" and not (isinstance(high, str) and high.isdigit()):
                raise SnapshotError(f"{url}: {element_id} has invalid max {high!r}")


def generate_snapshot(structure: Dict[str, Any], view: ContextView) -> Dict[str, Any]:
    """Return a copy of ``structure`` carrying a snapshot built from its base."""
    return SnapshotGenerator(structure, view).generate()
