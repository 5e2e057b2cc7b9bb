"""Instance validation against StructureDefinition snapshots.

A resource is walked once per applicable structure: the base definition of
its type, every requested profile, and every loaded profile it declares in
``meta.profile``. The base walk performs the full structural checks
(unknown properties, datatype descent, contained resources, extension
lookup); profile walks check only what the profile adds on top.
"""

import json
import re
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from fhirpathpy import evaluate as fhirpath_evaluate
from fhirpathpy.models import models as fhirpath_models

from ig_validator.core.exceptions import UnknownProfileError, ValidationError
from ig_validator.healthcare.validation.bindings import BindingChecker
from ig_validator.healthcare.validation.context import (
    CanonicalEntry,
    ContextView,
    ElementNode,
    ElementTree,
)
from ig_validator.healthcare.validation.outcome import (
    IssueSeverity,
    IssueType,
    ValidationIssue,
)
from ig_validator.utils.logging import get_logger

logger = get_logger(__name__)

SYSTEM_TYPE_PREFIX = "http://hl7.org/fhirpath/System."

SYSTEM_TYPES = {
    "String": "string",
    "Boolean": "boolean",
    "Integer": "integer",
    "Decimal": "decimal",
    "Date": "date",
    "DateTime": "dateTime",
    "Time": "time",
}

# Value formats of the FHIR R4 primitive types
PRIMITIVE_PATTERNS = {
    "date": re.compile(
        r"([0-9]([0-9]([0-9][1-9]|[1-9]0)|[1-9]00)|[1-9]000)"
        r"(-(0[1-9]|1[0-2])(-(0[1-9]|[1-2][0-9]|3[0-1]))?)?"
    ),
    "dateTime": re.compile(
        r"([0-9]([0-9]([0-9][1-9]|[1-9]0)|[1-9]00)|[1-9]000)"
        r"(-(0[1-9]|1[0-2])(-(0[1-9]|[1-2][0-9]|3[0-1])"
        r"(T([01][0-9]|2[0-3]):[0-5][0-9]:([0-5][0-9]|60)(\.[0-9]+)?"
        r"(Z|(\+|-)((0[0-9]|1[0-3]):[0-5][0-9]|14:00)))?)?)?"
    ),
    "instant": re.compile(
        r"([0-9]([0-9]([0-9][1-9]|[1-9]0)|[1-9]00)|[1-9]000)"
        r"-(0[1-9]|1[0-2])-(0[1-9]|[1-2][0-9]|3[0-1])"
        r"T([01][0-9]|2[0-3]):[0-5][0-9]:([0-5][0-9]|60)(\.[0-9]+)?"
        r"(Z|(\+|-)((0[0-9]|1[0-3]):[0-5][0-9]|14:00))"
    ),
    "time": re.compile(r"([01][0-9]|2[0-3]):[0-5][0-9]:([0-5][0-9]|60)(\.[0-9]+)?"),
    "code": re.compile(r"[^\s]+( [^\s]+)*"),
    "id": re.compile(r"[A-Za-z0-9\-\.]{1,64}"),
    "uri": re.compile(r"\S+"),
    "url": re.compile(r"\S+"),
    "canonical": re.compile(r"\S+"),
    "oid": re.compile(r"urn:oid:[0-2](\.(0|[1-9][0-9]*))+"),
    "uuid": re.compile(
        r"urn:uuid:[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}"
    ),
    "base64Binary": re.compile(r"(\s*([0-9a-zA-Z\+/=]){4}\s*)+"),
}

INTEGER_RANGES = {
    "integer": (-(2**31), 2**31 - 1),
    "positiveInt": (1, 2**31 - 1),
    "unsignedInt": (0, 2**31 - 1),
}

CODED_PRIMITIVES = ("code", "string", "uri")

ABSTRACT_RESOURCE_TYPES = ("Resource", "DomainResource")

# ele-1 is enforced by the empty element check
SKIPPED_CONSTRAINTS = {"ele-1"}

R4_MODEL = fhirpath_models["r4"]


def is_primitive(type_code: str) -> bool:
    """Check whether a type code names a primitive (or System) type."""
    return type_code.startswith(SYSTEM_TYPE_PREFIX) or type_code[:1].islower()


def pattern_matches(pattern: Any, value: Any) -> bool:
    """Check ``value`` carries at least everything in ``pattern``."""
    if isinstance(pattern, dict):
        if not isinstance(value, dict):
            return False
        return all(
            k in value and pattern_matches(v, value[k]) for k, v in pattern.items()
        )
    if isinstance(pattern, list):
        values = value if isinstance(value, list) else [value]
        return all(any(pattern_matches(p, v) for v in values) for p in pattern)
    return pattern == value


def _type_suffix(type_code: str) -> str:
    return type_code[:1].upper() + type_code[1:]


class InstanceValidator:
    """Validates one resource and collects the issues found."""

    def __init__(
        self,
        view: ContextView,
        bindings: BindingChecker,
        any_extensions_allowed: bool = True,
    ):
        """Initialize validator.

        Args:
            view: Registry view captured for this run
            bindings: Binding checker for this run
            any_extensions_allowed: Report unknown extensions as warnings
                instead of errors
        """
        self.view = view
        self.bindings = bindings
        self.any_extensions_allowed = any_extensions_allowed
        self._issues: List[ValidationIssue] = []
        self._seen: Set[Tuple[str, str, str, str]] = set()
        self._unevaluable: Set[str] = set()

    def validate(
        self, resource: Dict[str, Any], profiles: Sequence[str] = ()
    ) -> List[ValidationIssue]:
        """Validate a resource against its base definition and ``profiles``.

        Raises:
            UnknownProfileError: If a requested profile is not loaded, or not
                in the requested ``|version``
            ValidationError: If a structure cannot be used for validation
        """
        requested = []
        for url in profiles:
            entry = self.view.structure(url)
            if entry is None or not entry.matches_version(url):
                raise UnknownProfileError(url)
            requested.append(entry)

        resource_type = resource.get("resourceType")
        if not isinstance(resource_type, str) or not resource_type:
            self._add(
                IssueSeverity.FATAL,
                IssueType.STRUCTURE,
                "Resource",
                "Resource has no resourceType",
            )
        elif not self._is_resource_type(resource_type):
            self._add(
                IssueSeverity.FATAL,
                IssueType.STRUCTURE,
                resource_type,
                f"Unknown resource type '{resource_type}'",
            )
        else:
            self._validate_resource(resource, resource_type, requested)
        return list(self._issues)

    def _add(
        self, severity: IssueSeverity, code: IssueType, location: str, message: str
    ) -> None:
        key = (severity.value, code.value, location, message)
        if key in self._seen:
            return
        self._seen.add(key)
        self._issues.append(
            ValidationIssue(
                severity=severity, code=code, location=location, message=message
            )
        )

    def _is_resource_type(self, type_code: str) -> bool:
        entry = self.view.structure_for_type(type_code)
        return entry is not None and entry.document.get("kind") == "resource"

    @staticmethod
    def _tree(entry: CanonicalEntry) -> ElementTree:
        tree = entry.tree
        if tree is None or tree.root is None:
            raise ValidationError(f"Profile {entry.url} has no snapshot")
        return tree

    def _validate_resource(
        self,
        resource: Dict[str, Any],
        path: str,
        profiles: Sequence[CanonicalEntry],
    ) -> None:
        resource_type = resource.get("resourceType")
        base = (
            self.view.structure_for_type(resource_type)
            if isinstance(resource_type, str)
            else None
        )
        if base is None or base.document.get("kind") != "resource":
            self._add(
                IssueSeverity.ERROR,
                IssueType.STRUCTURE,
                path,
                f"Unknown resource type '{resource_type}'",
            )
            return

        structures = [base]
        for entry in profiles:
            self._add_profile(structures, entry, resource_type, path)
        for url in self._declared_profiles(resource, path):
            entry = self.view.structure(url)
            if entry is None or not entry.matches_version(url):
                self._add(
                    IssueSeverity.WARNING,
                    IssueType.NOT_SUPPORTED,
                    f"{path}.meta.profile",
                    f"Profile {url} is not loaded, so it was not checked",
                )
                continue
            self._add_profile(structures, entry, resource_type, path)

        for entry in structures:
            tree = self._tree(entry)
            self._walk(resource, tree.root, tree, path, resource, strict=entry is base)

    def _declared_profiles(self, resource: Dict[str, Any], path: str) -> List[str]:
        """Profile URLs from meta.profile, reporting a badly shaped meta."""
        meta = resource.get("meta")
        if meta is None:
            return []
        if not isinstance(meta, dict):
            self._add(
                IssueSeverity.ERROR,
                IssueType.STRUCTURE,
                f"{path}.meta",
                "meta must be a JSON object",
            )
            return []

        declared = meta.get("profile")
        if declared is None:
            return []
        if not isinstance(declared, list):
            self._add(
                IssueSeverity.ERROR,
                IssueType.STRUCTURE,
                f"{path}.meta.profile",
                "profile must be an array",
            )
            declared = [declared]
        return [url for url in declared if isinstance(url, str)]

    def _add_profile(
        self,
        structures: List[CanonicalEntry],
        entry: CanonicalEntry,
        resource_type: str,
        path: str,
    ) -> None:
        if entry in structures:
            return
        if entry.document.get("type") != resource_type:
            self._add(
                IssueSeverity.ERROR,
                IssueType.BUSINESS_RULE,
                path,
                f"Profile {entry.url} is for type {entry.document.get('type')}, "
                f"not {resource_type}",
            )
            return
        structures.append(entry)

    def _walk(
        self,
        value: Dict[str, Any],
        node: ElementNode,
        tree: ElementTree,
        path: str,
        root: Dict[str, Any],
        strict: bool,
        type_code: Optional[str] = None,
    ) -> None:
        """Check an object against an element and recurse into its children."""
        self._check_invariants(node, value, path, root)
        expanded = self._expand(node, tree, strict, type_code, path)
        if expanded is None:
            return
        parent, tree = expanded
        if parent is not node:
            self._check_invariants(parent, value, path, root)

        consumed = {"fhir_comments"}
        if node is tree.root and "resourceType" in value:
            consumed.add("resourceType")
        sibling_names = {child.name for child in parent.children}

        for child in parent.children:
            keys = self._matching_keys(child, value, sibling_names)
            consumed.add(child.name)
            consumed.add("_" + child.name)
            for key, _ in keys:
                consumed.add(key)
                consumed.add("_" + key)
            self._check_child(value, child, keys, tree, path, root, strict)

        if strict:
            for key in value:
                if key not in consumed:
                    self._add(
                        IssueSeverity.ERROR,
                        IssueType.STRUCTURE,
                        f"{path}.{key}",
                        f"Unknown property '{key}'",
                    )

    def _children_source(
        self, node: ElementNode, tree: ElementTree, type_code: Optional[str], strict: bool
    ) -> Optional[Tuple[ElementNode, ElementTree]]:
        """Find the element whose children describe the content of ``node``."""
        if node.children:
            return node, tree

        reference = node.definition.get("contentReference")
        if reference:
            target = tree.get(reference.split("#", 1)[-1])
            return (target, tree) if target is not None else None

        codes = [type_code] if type_code else node.type_codes
        if len(codes) != 1 or is_primitive(codes[0]):
            return None
        type_entry = node.type_for_code(codes[0]) or {}
        for profile in type_entry.get("profile") or []:
            entry = self.view.structure(profile)
            if entry is not None and entry.tree is not None and entry.tree.root:
                return entry.tree.root, entry.tree
        if not strict:
            return None

        entry = self.view.structure_for_type(codes[0])
        if entry is None or entry.tree is None or entry.tree.root is None:
            return None
        return entry.tree.root, entry.tree

    def _expand(
        self,
        node: ElementNode,
        tree: ElementTree,
        strict: bool,
        type_code: Optional[str],
        path: str,
    ) -> Optional[Tuple[ElementNode, ElementTree]]:
        source = self._children_source(node, tree, type_code, strict)
        if source is None and strict and not node.children:
            codes = [type_code] if type_code else node.type_codes
            if len(codes) == 1 and not is_primitive(codes[0]):
                self._add(
                    IssueSeverity.INFORMATION,
                    IssueType.NOT_SUPPORTED,
                    path,
                    f"No definition for type {codes[0]}, content was not checked",
                )
        return source

    @staticmethod
    def _matching_keys(
        child: ElementNode, value: Dict[str, Any], sibling_names: Set[str]
    ) -> List[Tuple[str, Optional[str]]]:
        """Properties of ``value`` that belong to ``child`` with their type."""
        name = child.name
        codes = child.type_codes
        if not name.endswith("[x]"):
            if name in value or "_" + name in value:
                return [(name, codes[0] if len(codes) == 1 else None)]
            return []

        prefix = name[:-3]
        found: List[Tuple[str, Optional[str]]] = []
        for key in value:
            bare = key[1:] if key.startswith("_") else key
            suffix = bare[len(prefix):]
            if (
                not bare.startswith(prefix)
                or not suffix[:1].isupper()
                or bare in sibling_names
                or any(bare == k for k, _ in found)
            ):
                continue
            found.append((bare, next((c for c in codes if _type_suffix(c) == suffix), None)))
        return found

    def _as_list(self, raw: Any, child: ElementNode, location: str, report: bool) -> List[Any]:
        if raw is None:
            return []
        if isinstance(raw, list):
            if report and not child.repeats:
                self._add(
                    IssueSeverity.ERROR,
                    IssueType.STRUCTURE,
                    location,
                    f"{child.name} must not be an array",
                )
            return raw
        if report and child.repeats:
            self._add(
                IssueSeverity.ERROR,
                IssueType.STRUCTURE,
                location,
                f"{child.name} must be an array",
            )
        return [raw]

    def _check_child(
        self,
        value: Dict[str, Any],
        child: ElementNode,
        keys: List[Tuple[str, Optional[str]]],
        tree: ElementTree,
        path: str,
        root: Dict[str, Any],
        strict: bool,
    ) -> None:
        if len(keys) > 1:
            self._add(
                IssueSeverity.ERROR,
                IssueType.STRUCTURE,
                f"{path}.{child.name}",
                f"Only one of {', '.join(k for k, _ in keys)} is allowed",
            )

        count = 0
        for key, code in keys:
            location = f"{path}.{key}"
            items = self._as_list(value.get(key), child, location, report=True)
            ext_items = self._as_list(value.get("_" + key), child, location, report=False)
            size = max(len(items), len(ext_items))
            count += size

            if child.name.endswith("[x]") and code is None:
                self._add(
                    IssueSeverity.ERROR,
                    IssueType.STRUCTURE,
                    location,
                    f"Type {key[len(child.name) - 3:]} is not allowed for {child.name}",
                )
                continue

            for index in range(size):
                item_path = f"{location}[{index}]" if child.repeats else location
                self._check_item(
                    items[index] if index < len(items) else None,
                    ext_items[index] if index < len(ext_items) else None,
                    child,
                    code,
                    tree,
                    item_path,
                    root,
                    strict,
                )
            if child.slices:
                self._check_slices(child, items, code, tree, location, root)

        location = f"{path}.{child.name}"
        if count < child.min:
            self._add(
                IssueSeverity.ERROR,
                IssueType.REQUIRED,
                location,
                f"{child.name}: minimum required = {child.min}, but only found {count}",
            )
        if child.max is not None and count > child.max:
            self._add(
                IssueSeverity.ERROR,
                IssueType.STRUCTURE,
                location,
                f"{child.name}: maximum allowed = {child.max}, but found {count}",
            )

    def _check_item(
        self,
        item: Any,
        item_ext: Any,
        node: ElementNode,
        code: Optional[str],
        tree: ElementTree,
        path: str,
        root: Dict[str, Any],
        strict: bool,
    ) -> None:
        if item_ext is not None:
            if isinstance(item_ext, dict):
                self._check_primitive_extensions(item_ext, path, root, strict)
            elif strict:
                self._add(
                    IssueSeverity.ERROR,
                    IssueType.STRUCTURE,
                    path,
                    "Primitive extension content must be an object",
                )
        if item is None:
            if item_ext is None:
                self._add(
                    IssueSeverity.ERROR, IssueType.STRUCTURE, path, "Null values are not allowed"
                )
            return

        if code is not None and is_primitive(code):
            if strict:
                self._check_primitive(code, item, path)
            self._check_fixed_pattern(node, item, path)
            self._check_binding(node, code, item, path)
            return

        if not isinstance(item, dict):
            self._add(
                IssueSeverity.ERROR,
                IssueType.STRUCTURE,
                path,
                f"{node.name} must be a JSON object",
            )
            return
        if not item:
            if strict:
                self._add(
                    IssueSeverity.ERROR,
                    IssueType.STRUCTURE,
                    path,
                    "Element must have some content",
                )
            return

        if code is not None and (
            code in ABSTRACT_RESOURCE_TYPES or self._is_resource_type(code)
        ):
            if strict:
                self._validate_resource(item, path, [])
            return

        self._check_fixed_pattern(node, item, path)
        if code is not None:
            self._check_binding(node, code, item, path)
        if code == "Extension" and strict and self._check_extension(item, node, path, root):
            return
        self._walk(item, node, tree, path, root, strict, code)

    def _check_primitive_extensions(
        self, element: Dict[str, Any], path: str, root: Dict[str, Any], strict: bool
    ) -> None:
        if not strict:
            return
        extension_type = self.view.structure_for_type("Extension")
        for key in element:
            if key not in ("id", "extension"):
                self._add(
                    IssueSeverity.ERROR,
                    IssueType.STRUCTURE,
                    f"{path}.{key}",
                    f"Unknown property '{key}'",
                )
        if extension_type is None or extension_type.tree is None:
            return
        extensions = element.get("extension")
        if not isinstance(extensions, list):
            return
        node = extension_type.tree.root
        for index, extension in enumerate(extensions):
            if isinstance(extension, dict):
                self._check_item(
                    extension,
                    None,
                    node,
                    "Extension",
                    extension_type.tree,
                    f"{path}.extension[{index}]",
                    root,
                    strict,
                )

    def _check_primitive(self, code: str, value: Any, path: str) -> None:
        if code.startswith(SYSTEM_TYPE_PREFIX):
            code = SYSTEM_TYPES.get(code[len(SYSTEM_TYPE_PREFIX):], "string")

        problem = None
        if code == "boolean":
            if not isinstance(value, bool):
                problem = "must be a JSON boolean"
        elif code in INTEGER_RANGES:
            low, high = INTEGER_RANGES[code]
            if isinstance(value, bool) or not isinstance(value, int):
                problem = "must be a JSON integer"
            elif not low <= value <= high:
                problem = f"value {value} is out of range for {code}"
        elif code == "decimal":
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                problem = "must be a JSON number"
        elif not isinstance(value, str):
            problem = "must be a JSON string"
        elif value == "":
            problem = "must not be empty"
        elif code == "xhtml":
            if not value.lstrip().startswith("<div"):
                problem = "narrative must be an xhtml div"
        elif code in PRIMITIVE_PATTERNS and not PRIMITIVE_PATTERNS[code].fullmatch(value):
            problem = f"'{value}' is not a valid {code}"

        if problem:
            self._add(
                IssueSeverity.ERROR, IssueType.VALUE, path, f"{code} value {problem}"
            )

    def _check_fixed_pattern(self, node: ElementNode, item: Any, path: str) -> None:
        for key, expected in node.definition.items():
            if key.startswith("fixed") and item != expected:
                self._add(
                    IssueSeverity.ERROR,
                    IssueType.VALUE,
                    path,
                    f"Value must be exactly {json.dumps(expected, sort_keys=True)}",
                )
            elif key.startswith("pattern") and not pattern_matches(expected, item):
                self._add(
                    IssueSeverity.ERROR,
                    IssueType.VALUE,
                    path,
                    f"Value must match the pattern {json.dumps(expected, sort_keys=True)}",
                )

    def _check_binding(self, node: ElementNode, code: str, item: Any, path: str) -> None:
        binding = node.definition.get("binding") or {}
        strength = binding.get("strength")
        value_set = binding.get("valueSet")
        if strength not in ("required", "extensible") or not value_set:
            return

        if code in CODED_PRIMITIVES:
            candidates = [(None, item, None)] if isinstance(item, str) else []
        elif code == "Coding":
            candidates = [(item.get("system"), item.get("code"), item.get("display"))]
        elif code == "CodeableConcept":
            candidates = [
                (c.get("system"), c.get("code"), c.get("display"))
                for c in item.get("coding") or []
                if isinstance(c, dict)
            ]
        else:
            return
        candidates = [c for c in candidates if isinstance(c[1], str) and c[1]]

        if not candidates:
            text_only = code == "CodeableConcept" and bool(item.get("text"))
            if strength == "required" and not text_only:
                self._add(
                    IssueSeverity.ERROR,
                    IssueType.CODE_INVALID,
                    path,
                    f"No code provided, and a code from value set {value_set} is required",
                )
            return

        undecided = False
        message = None
        for system, value, display in candidates:
            verdict = self.bindings.check(value_set, system, value, display)
            if verdict is None:
                undecided = True
            elif verdict.valid:
                return
            else:
                message = verdict.message

        if undecided:
            self._add(
                IssueSeverity.INFORMATION,
                IssueType.PROCESSING,
                path,
                f"Value set {value_set} could not be expanded, code was not checked",
            )
            return
        self._add(
            IssueSeverity.ERROR if strength == "required" else IssueSeverity.WARNING,
            IssueType.CODE_INVALID,
            path,
            message or f"Code is not in value set {value_set}",
        )

    def _check_extension(
        self, item: Dict[str, Any], node: ElementNode, path: str, root: Dict[str, Any]
    ) -> bool:
        """Validate against the extension definition; False if there is none."""
        url = item.get("url")
        if not isinstance(url, str) or not url.startswith(("http:", "https:", "urn:")):
            return False

        definition = self.view.structure(url)
        if definition is None:
            if node.name == "modifierExtension":
                self._add(
                    IssueSeverity.ERROR,
                    IssueType.EXTENSION,
                    path,
                    f"Unknown modifier extension {url}",
                )
            elif self.any_extensions_allowed:
                self._add(
                    IssueSeverity.WARNING,
                    IssueType.EXTENSION,
                    path,
                    f"Unknown extension {url}",
                )
            else:
                self._add(
                    IssueSeverity.ERROR,
                    IssueType.EXTENSION,
                    path,
                    f"Extension {url} is unknown and not allowed here",
                )
            return False

        if definition.document.get("type") != "Extension":
            self._add(
                IssueSeverity.ERROR,
                IssueType.EXTENSION,
                path,
                f"{url} does not define an extension",
            )
            return True
        tree = self._tree(definition)
        self._walk(item, tree.root, tree, path, root, strict=True)
        return True

    def _check_slices(
        self,
        child: ElementNode,
        items: List[Any],
        code: Optional[str],
        tree: ElementTree,
        location: str,
        root: Dict[str, Any],
    ) -> None:
        slicing = child.definition.get("slicing") or {}
        discriminators = slicing.get("discriminator") or []
        if not discriminators:
            self._add(
                IssueSeverity.INFORMATION,
                IssueType.NOT_SUPPORTED,
                location,
                f"Slicing of {child.name} has no discriminator, slices were not checked",
            )
            return

        counts = {s.id: 0 for s in child.slices}
        for index, item in enumerate(items):
            item_path = f"{location}[{index}]" if child.repeats else location
            match = next(
                (
                    s
                    for s in child.slices
                    if self._slice_matches(s, item, discriminators, tree)
                ),
                None,
            )
            if match is None:
                if slicing.get("rules") == "closed":
                    self._add(
                        IssueSeverity.ERROR,
                        IssueType.STRUCTURE,
                        item_path,
                        f"{child.name} does not match any of the allowed slices",
                    )
                continue
            counts[match.id] += 1
            self._check_item(item, None, match, code, tree, item_path, root, strict=False)

        for slice_node in child.slices:
            found = counts[slice_node.id]
            if found < slice_node.min:
                self._add(
                    IssueSeverity.ERROR,
                    IssueType.REQUIRED,
                    location,
                    f"Slice '{slice_node.slice_name}': minimum required = "
                    f"{slice_node.min}, but only found {found}",
                )
            if slice_node.max is not None and found > slice_node.max:
                self._add(
                    IssueSeverity.ERROR,
                    IssueType.STRUCTURE,
                    location,
                    f"Slice '{slice_node.slice_name}': maximum allowed = "
                    f"{slice_node.max}, but found {found}",
                )

    def _slice_matches(
        self,
        slice_node: ElementNode,
        item: Any,
        discriminators: List[Dict[str, Any]],
        tree: ElementTree,
    ) -> bool:
        for discriminator in discriminators:
            kind = discriminator.get("type")
            path = discriminator.get("path", "$this")
            if "(" in path:
                return False
            actual = _values_at(item, path)

            if kind in ("value", "pattern"):
                expected = self._discriminator_value(slice_node, path, tree)
                if expected is None:
                    return False
                fixed, value = expected
                if not any(
                    a == value if fixed else pattern_matches(value, a) for a in actual
                ):
                    return False
            elif kind == "exists":
                element = self._discriminator_element(slice_node, path, tree)
                if element is None or bool(actual) != (element.min > 0):
                    return False
            elif kind == "type":
                element = self._discriminator_element(slice_node, path, tree)
                if element is None:
                    return False
                types = set(element.type_codes)
                if not any(
                    isinstance(a, dict) and a.get("resourceType") in types for a in actual
                ):
                    return False
            else:
                return False
        return True

    def _discriminator_value(
        self, slice_node: ElementNode, path: str, tree: ElementTree
    ) -> Optional[Tuple[bool, Any]]:
        """``(is_fixed, value)`` the slice requires at ``path``."""
        if path == "url":
            type_entry = slice_node.type_for_code("Extension") or {}
            profiles = type_entry.get("profile") or []
            if profiles:
                return True, profiles[0]

        element = self._discriminator_element(slice_node, path, tree)
        if element is None:
            return None
        for key, value in element.definition.items():
            if key.startswith("fixed"):
                return True, value
            if key.startswith("pattern"):
                return False, value
        return None

    def _discriminator_element(
        self, slice_node: ElementNode, path: str, tree: ElementTree
    ) -> Optional[ElementNode]:
        node = slice_node
        if path == "$this":
            return node
        for segment in path.split("."):
            source = self._children_source(node, tree, None, strict=True)
            if source is None:
                return None
            parent, tree = source
            node = next(
                (
                    c
                    for c in parent.children
                    if c.name in (segment, segment + "[x]")
                ),
                None,
            )
            if node is None:
                return None
        return node

    def _check_invariants(
        self, node: ElementNode, value: Any, path: str, root: Dict[str, Any]
    ) -> None:
        if not isinstance(value, dict):
            return
        for constraint in node.definition.get("constraint") or []:
            key = constraint.get("key")
            expression = constraint.get("expression")
            if not expression or key in SKIPPED_CONSTRAINTS:
                continue
            try:
                result = fhirpath_evaluate(
                    value,
                    {"expression": expression, "base": node.definition.get("path")},
                    {"resource": root, "rootResource": root},
                    R4_MODEL,
                )
            except Exception as e:
                # fhirpathpy raises bare Exception for unsupported expressions
                if key not in self._unevaluable:
                    self._unevaluable.add(key)
                    logger.debug("constraint_unevaluable", key=key, error=str(e))
                    self._add(
                        IssueSeverity.INFORMATION,
                        IssueType.PROCESSING,
                        path,
                        f"Constraint {key} could not be evaluated: {e}",
                    )
                continue
            if result == [False]:
                self._add(
                    IssueSeverity.WARNING
                    if constraint.get("severity") == "warning"
                    else IssueSeverity.ERROR,
                    IssueType.INVARIANT,
                    path,
                    f"Constraint failed: {key}: '{constraint.get('human', expression)}'",
                )


def _values_at(item: Any, path: str) -> List[Any]:
    if path == "$this":
        return [item]
    values = [item]
    for segment in path.split("."):
        found: List[Any] = []
        for value in values:
            if not isinstance(value, dict):
                continue
            child = value.get(segment)
            if isinstance(child, list):
                found.extend(child)
            elif child is not None:
                found.append(child)
        values = found
    return values
