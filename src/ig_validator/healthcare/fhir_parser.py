"""FHIR format detection and parsing.

Turns raw bytes into FHIR JSON documents and ``fhirclient`` models. JSON is
decoded directly; XML is converted into the equivalent FHIR JSON shape,
using the ``fhirclient`` element properties to decide which elements repeat
and which primitive type each value carries.
"""

import json
import xml.etree.ElementTree as ET
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Type

from fhirclient.models.element import Element
from fhirclient.models.fhirabstractbase import FHIRAbstractBase, FHIRValidationError
from fhirclient.models.fhirabstractresource import FHIRAbstractResource
from fhirclient.models.fhirelementfactory import FHIRElementFactory

from ig_validator.core.exceptions import ParseError

FHIR_NS = "http://hl7.org/fhir"
XHTML_NS = "http://www.w3.org/1999/xhtml"

ET.register_namespace("", XHTML_NS)

_UTF8_BOM = b"\xef\xbb\xbf"

_PROPERTY_CACHE: Dict[type, Dict[str, Tuple[type, bool]]] = {}


class FhirFormat(str, Enum):
    """Serialization formats understood by the parser."""

    JSON = "json"
    XML = "xml"


def detect_format(data: bytes) -> Optional[FhirFormat]:
    """Guess the serialization from the first significant character.

    Returns:
        The detected format, or None when the content is neither JSON nor XML
    """
    text = data[len(_UTF8_BOM) :] if data.startswith(_UTF8_BOM) else data
    text = text.lstrip()
    if text.startswith(b"{"):
        return FhirFormat.JSON
    if text.startswith(b"<"):
        return FhirFormat.XML
    return None


def parse_json(data: bytes) -> Dict[str, Any]:
    """Decode a FHIR JSON document."""
    try:
        document = json.loads(data.decode("utf-8-sig"))
    except UnicodeDecodeError as e:
        raise ParseError(f"Content is not UTF-8: {e}") from e
    except json.JSONDecodeError as e:
        raise ParseError(f"Invalid JSON at line {e.lineno}: {e.msg}") from e

    if not isinstance(document, dict):
        raise ParseError("JSON content must be an object")
    if not isinstance(document.get("resourceType"), str):
        raise ParseError("JSON content has no resourceType")
    return document


def parse_xml(data: bytes) -> Dict[str, Any]:
    """Convert a FHIR XML document into FHIR JSON."""
    try:
        root = ET.fromstring(data)
    except ET.ParseError as e:
        raise ParseError(f"Invalid XML: {e}") from e
    return _resource_to_json(root)


def parse_document(data: bytes, fmt: FhirFormat) -> Dict[str, Any]:
    """Decode bytes of a known format into a FHIR JSON document."""
    if fmt == FhirFormat.JSON:
        return parse_json(data)
    if fmt == FhirFormat.XML:
        return parse_xml(data)
    raise ParseError(f"Unsupported format: {fmt}")


def parse_resource(data: bytes, fmt: FhirFormat) -> FHIRAbstractResource:
    """Parse bytes into a strictly checked ``fhirclient`` resource model."""
    return to_model(parse_document(data, fmt))


def to_model(
    document: Dict[str, Any], strict: bool = True
) -> FHIRAbstractResource:
    """Build a ``fhirclient`` resource model from FHIR JSON."""
    resource_type = document.get("resourceType")
    _resource_class(resource_type)
    try:
        if strict:
            resource = FHIRElementFactory.instantiate(resource_type, document)
        else:
            resource = _resource_class(resource_type)(document, strict=False)
    except FHIRValidationError as e:
        raise ParseError(f"Invalid {resource_type}: {e}") from e
    return resource


def _resource_class(resource_type: Any) -> Type[FHIRAbstractResource]:
    """Look up the model class for a resource type name."""
    if not isinstance(resource_type, str) or not resource_type:
        raise ParseError("Missing resource type")
    instance = FHIRElementFactory.instantiate(resource_type, None)
    if getattr(instance, "resource_type", None) != resource_type:
        raise ParseError(f"Unknown resource type: {resource_type}")
    return type(instance)


def _properties(klass: type) -> Dict[str, Tuple[type, bool]]:
    props = _PROPERTY_CACHE.get(klass)
    if props is None:
        props = {
            jsname: (typ, is_list)
            for _name, jsname, typ, is_list, _of_many, _required in klass().elementProperties()
        }
        _PROPERTY_CACHE[klass] = props
    return props


def _split_tag(tag: str) -> Tuple[Optional[str], str]:
    if tag.startswith("{"):
        namespace, _, name = tag[1:].partition("}")
        return namespace, name
    return None, tag


def _resource_to_json(node: ET.Element) -> Dict[str, Any]:
    namespace, resource_type = _split_tag(node.tag)
    if namespace != FHIR_NS:
        raise ParseError(f"Element {resource_type} is not in the FHIR namespace")
    klass = _resource_class(resource_type)
    document: Dict[str, Any] = {"resourceType": resource_type}
    document.update(_element_to_json(node, klass, resource_type))
    return document


def _element_to_json(node: ET.Element, klass: type, path: str) -> Dict[str, Any]:
    props = _properties(klass)
    result: Dict[str, Any] = {}

    # id on elements and url on extensions are XML attributes
    for attr, raw in node.attrib.items():
        if attr != "value" and attr in props:
            result[attr] = raw

    for child in node:
        if not isinstance(child.tag, str):
            continue
        namespace, name = _split_tag(child.tag)
        child_path = f"{path}.{name}"
        if name not in props:
            raise ParseError(f"Unknown element '{name}' at {path}")
        typ, is_list = props[name]
        extension_data = None

        if issubclass(typ, FHIRAbstractResource):
            inner = [c for c in child if isinstance(c.tag, str)]
            if len(inner) != 1:
                raise ParseError(f"{child_path} must contain exactly one resource")
            value: Any = _resource_to_json(inner[0])
        elif issubclass(typ, FHIRAbstractBase):
            value = _element_to_json(child, typ, child_path)
        elif namespace == XHTML_NS:
            value = ET.tostring(child, encoding="unicode")
        else:
            value = _convert_primitive(child.get("value"), typ, child_path)
            if len(child) or child.get("id") is not None:
                extension_data = _element_to_json(child, Element, child_path)

        _store(result, name, value, extension_data, is_list, child_path)

    return result


def _store(
    result: Dict[str, Any],
    name: str,
    value: Any,
    extension_data: Optional[Dict[str, Any]],
    is_list: bool,
    path: str,
) -> None:
    shadow = f"_{name}"
    if is_list:
        values = result.setdefault(name, [])
        values.append(value)
        if extension_data is not None or shadow in result:
            extensions = result.setdefault(shadow, [])
            extensions.extend([None] * (len(values) - 1 - len(extensions)))
            extensions.append(extension_data)
        return

    if name in result or shadow in result:
        raise ParseError(f"{path} may only appear once")
    if value is not None:
        result[name] = value
    if extension_data is not None:
        result[shadow] = extension_data


def _convert_primitive(raw: Optional[str], typ: type, path: str) -> Any:
    if raw is None:
        return None
    if typ is bool:
        if raw not in ("true", "false"):
            raise ParseError(f"{path}: '{raw}' is not a boolean")
        return raw == "true"
    if typ is int:
        try:
            return int(raw)
        except ValueError as e:
            raise ParseError(f"{path}: '{raw}' is not an integer") from e
    if typ is float:
        try:
            return int(raw) if raw.lstrip("-").isdigit() else float(raw)
        except ValueError as e:
            raise ParseError(f"{path}: '{raw}' is not a decimal") from e
    return raw
