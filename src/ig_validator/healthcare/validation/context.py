"""Worker context holding the loaded conformance resources.

The registry is copy-on-write: every registration builds a new immutable
``ContextView`` and swaps it in under a lock. Readers grab the current view
once and keep using it, so a validation never sees a half-registered
definition and never needs to take the lock.
"""

import threading
from typing import Any, Dict, Iterable, List, Mapping, Optional

CORE_STRUCTURE_BASE = "http://hl7.org/fhir/StructureDefinition/"
CANONICAL_TYPES = ("StructureDefinition", "ValueSet", "CodeSystem")


def strip_version(url: str) -> str:
    """Drop a ``|version`` suffix from a canonical reference."""
    return url.split("|", 1)[0]


class ElementNode:
    """An element definition placed in its snapshot hierarchy."""

    def __init__(self, definition: Dict[str, Any]):
        """Initialize node."""
        self.definition = definition
        self.children: List["ElementNode"] = []
        self.slices: List["ElementNode"] = []

    @property
    def id(self) -> str:
        """Element id."""
        return str(self.definition.get("id") or self.definition.get("path"))

    @property
    def name(self) -> str:
        """Last path segment, e.g. ``value[x]``."""
        return str(self.definition.get("path", "")).rsplit(".", 1)[-1]

    @property
    def slice_name(self) -> Optional[str]:
        """Slice name when this node is a slice."""
        return self.definition.get("sliceName")

    @property
    def min(self) -> int:
        """Minimum cardinality."""
        return int(self.definition.get("min", 0))

    @property
    def max(self) -> Optional[int]:
        """Maximum cardinality, None for unbounded."""
        value = self.definition.get("max", "*")
        return None if value == "*" else int(value)

    @property
    def repeats(self) -> bool:
        """Whether the element is an array in JSON (decided by the base)."""
        base_max = (self.definition.get("base") or {}).get("max")
        value = base_max if base_max is not None else self.definition.get("max", "*")
        return value == "*" or int(value) > 1

    @property
    def type_codes(self) -> List[str]:
        """Allowed type codes."""
        return [t.get("code") for t in self.definition.get("type", []) if t.get("code")]

    def type_for_code(self, code: str) -> Optional[Dict[str, Any]]:
        """The type entry for a code."""
        for entry in self.definition.get("type", []):
            if entry.get("code") == code:
                return entry
        return None

    def __repr__(self) -> str:
        """Show the id."""
        return f"ElementNode({self.id!r})"


class ElementTree:
    """Snapshot elements of a structure arranged by id."""

    def __init__(self, elements: List[Dict[str, Any]]):
        """Build the tree.

        Args:
            elements: Snapshot element list in document order
        """
        self.nodes: Dict[str, ElementNode] = {}
        self.root: Optional[ElementNode] = None

        for definition in elements:
            node = ElementNode(definition)
            self.nodes[node.id] = node
            if self.root is None:
                self.root = node
                continue

            parent_id, _, last = node.id.rpartition(".")
            if ":" in last:
                sliced_id = f"{parent_id}.{last.split(':', 1)[0]}" if parent_id else last.split(":", 1)[0]
                sliced = self.nodes.get(sliced_id)
                if sliced is not None:
                    sliced.slices.append(node)
                continue
            parent = self.nodes.get(parent_id)
            if parent is not None:
                parent.children.append(node)

    def get(self, element_id: str) -> Optional[ElementNode]:
        """Look up a node by element id."""
        return self.nodes.get(element_id)


class CanonicalEntry:
    """A registered conformance resource."""

    def __init__(self, document: Dict[str, Any], source: str):
        """Initialize entry.

        Args:
            document: FHIR JSON of the resource
            source: Package id or "runtime"
        """
        self.document = document
        self.source = source
        self._tree: Optional[ElementTree] = None

    @property
    def url(self) -> str:
        """Canonical URL."""
        return str(self.document["url"])

    @property
    def resource_type(self) -> str:
        """FHIR resource type of the definition."""
        return str(self.document["resourceType"])

    @property
    def version(self) -> Optional[str]:
        """Business version, if declared."""
        version = self.document.get("version")
        return str(version) if version is not None else None

    def matches_version(self, reference: str) -> bool:
        """Whether a ``url|version`` reference accepts this entry.

        A reference without a version, or an entry without one, always matches.
        """
        _, _, wanted = reference.partition("|")
        return not wanted or self.version is None or self.version == wanted

    @property
    def has_snapshot(self) -> bool:
        """Whether a StructureDefinition carries snapshot elements."""
        return bool((self.document.get("snapshot") or {}).get("element"))

    @property
    def tree(self) -> Optional[ElementTree]:
        """Snapshot element tree, None if there is no snapshot."""
        if self._tree is None and self.has_snapshot:
            self._tree = ElementTree(self.document["snapshot"]["element"])
        return self._tree

    def __repr__(self) -> str:
        """Show type and URL."""
        return f"CanonicalEntry({self.resource_type}, {self.url!r})"


class ContextView:
    """Immutable snapshot of the registry."""

    def __init__(
        self,
        structures: Mapping[str, CanonicalEntry],
        value_sets: Mapping[str, CanonicalEntry],
        code_systems: Mapping[str, CanonicalEntry],
    ):
        """Initialize view."""
        self.structures = structures
        self.value_sets = value_sets
        self.code_systems = code_systems

    def structure(self, url: str) -> Optional[CanonicalEntry]:
        """Find a StructureDefinition by canonical URL."""
        return self.structures.get(strip_version(url))

    def structure_for_type(self, type_code: str) -> Optional[CanonicalEntry]:
        """Find the base definition of a resource or data type."""
        if "/" in type_code:
            return self.structure(type_code)
        return self.structures.get(CORE_STRUCTURE_BASE + type_code)

    def value_set(self, url: str) -> Optional[CanonicalEntry]:
        """Find a ValueSet by canonical URL."""
        return self.value_sets.get(strip_version(url))

    def code_system(self, url: str) -> Optional[CanonicalEntry]:
        """Find a CodeSystem by canonical URL."""
        return self.code_systems.get(strip_version(url))

    def resource_names(self) -> List[str]:
        """Names of the concrete resource types defined by the base spec."""
        names = []
        for url, entry in self.structures.items():
            document = entry.document
            if (
                url.startswith(CORE_STRUCTURE_BASE)
                and document.get("kind") == "resource"
                and document.get("derivation") == "specialization"
                and not document.get("abstract", False)
            ):
                names.append(str(document.get("type") or document.get("id")))
        return sorted(names)


class WorkerContext:
    """Owner of the current ``ContextView``."""

    def __init__(self) -> None:
        """Start with an empty registry."""
        self._lock = threading.Lock()
        self._view = ContextView({}, {}, {})

    @property
    def view(self) -> ContextView:
        """The current immutable registry view."""
        return self._view

    def cache_entries(self, entries: Iterable[CanonicalEntry]) -> Dict[str, CanonicalEntry]:
        """Register entries in one swap; last write wins on URL collisions.

        Returns:
            Entries that were replaced, keyed by URL
        """
        replaced: Dict[str, CanonicalEntry] = {}
        with self._lock:
            current = self._view
            tables = {
                "StructureDefinition": dict(current.structures),
                "ValueSet": dict(current.value_sets),
                "CodeSystem": dict(current.code_systems),
            }
            for entry in entries:
                table = tables.get(entry.resource_type)
                if table is None:
                    raise ValueError(f"Cannot cache {entry.resource_type} resources")
                url = strip_version(entry.url)
                if url in table:
                    replaced[url] = table[url]
                table[url] = entry
            self._view = ContextView(
                tables["StructureDefinition"],
                tables["ValueSet"],
                tables["CodeSystem"],
            )
        return replaced
