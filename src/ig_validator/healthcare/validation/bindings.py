"""Terminology binding checks.

Codes are checked against locally loaded ValueSets first. A value set can
be expanded locally when it enumerates its concepts, includes whole
CodeSystems whose content is complete, or includes other expandable value
sets. Anything else (filters, external code systems) goes to the
terminology server when one is connected.
"""

from typing import Dict, FrozenSet, Iterable, Optional, Set, Tuple

from ig_validator.core.exceptions import TerminologyError, ValidationError
from ig_validator.healthcare.fhir_terminology_client import CodeValidation, TerminologyClient
from ig_validator.healthcare.validation.context import ContextView, strip_version
from ig_validator.utils.logging import get_logger

logger = get_logger(__name__)

CodeKey = Tuple[Optional[str], str]


class BindingChecker:
    """Checks codes for value set membership during one validation run."""

    def __init__(self, view: ContextView, terminology: Optional[TerminologyClient] = None):
        """Initialize checker.

        Args:
            view: Registry view holding the loaded value sets and code systems
            terminology: Connected terminology client, if any
        """
        self.view = view
        self.terminology = terminology
        self._expansions: Dict[str, Optional[FrozenSet[CodeKey]]] = {}
        self._remote: Dict[Tuple[str, Optional[str], str], CodeValidation] = {}

    def check(
        self,
        value_set: str,
        system: Optional[str],
        code: str,
        display: Optional[str] = None,
    ) -> Optional[CodeValidation]:
        """Check whether a code is a member of a value set.

        Returns:
            The verdict, or None when membership cannot be decided

        Raises:
            ValidationError: If the terminology server fails
        """
        expansion = self.expand(value_set)
        if expansion is not None:
            if (system, code) in expansion or (
                system is None and any(c == code for _, c in expansion)
            ):
                return CodeValidation(valid=True)
            return CodeValidation(
                valid=False,
                message=f"Code {_label(system, code)} is not in value set {value_set}",
            )

        if self.terminology is None or not self.terminology.connected:
            return None

        key = (strip_version(value_set), system, code)
        if key not in self._remote:
            try:
                self._remote[key] = self.terminology.validate_code(
                    system, code, display=display, value_set=value_set
                )
            except TerminologyError as e:
                raise ValidationError(
                    f"Terminology check of {_label(system, code)} failed: {e.message}"
                ) from e
        return self._remote[key]

    def expand(self, url: str) -> Optional[FrozenSet[CodeKey]]:
        """Expand a loaded value set locally, None if that is not possible."""
        url = strip_version(url)
        if url not in self._expansions:
            # Guards against value sets that include themselves
            self._expansions[url] = None
            self._expansions[url] = self._expand(url)
        return self._expansions[url]

    def _expand(self, url: str) -> Optional[FrozenSet[CodeKey]]:
        entry = self.view.value_set(url)
        if entry is None:
            return None
        document = entry.document

        compose = document.get("compose")
        if compose:
            included = self._components(compose.get("include") or [])
            if included is None:
                return None
            excluded = self._components(compose.get("exclude") or [])
            if excluded is None:
                return None
            return frozenset(included - excluded)

        contains = (document.get("expansion") or {}).get("contains")
        if contains:
            return frozenset(_flatten(contains))
        return None

    def _components(self, components: Iterable[dict]) -> Optional[Set[CodeKey]]:
        codes: Set[CodeKey] = set()
        for component in components:
            if component.get("filter"):
                return None
            system = component.get("system")

            if component.get("concept"):
                selected = {(system, c["code"]) for c in component["concept"] if c.get("code")}
            elif system:
                selected = self._code_system_codes(system)
                if selected is None:
                    return None
            else:
                selected = None

            for nested in component.get("valueSet") or []:
                nested_codes = self.expand(nested)
                if nested_codes is None:
                    return None
                if system:
                    nested_codes = frozenset(k for k in nested_codes if k[0] == system)
                selected = set(nested_codes) if selected is None else selected & nested_codes

            codes |= selected or set()
        return codes

    def _code_system_codes(self, system: str) -> Optional[Set[CodeKey]]:
        entry = self.view.code_system(system)
        if entry is None or entry.document.get("content") != "complete":
            return None
        return {(system, code) for _, code in _flatten(entry.document.get("concept") or [], system)}


def _flatten(concepts: Iterable[dict], system: Optional[str] = None) -> Iterable[CodeKey]:
    for concept in concepts:
        concept_system = concept.get("system", system)
        if concept.get("code"):
            yield concept_system, concept["code"]
        yield from _flatten(concept.get("concept") or concept.get("contains") or [], system)


def _label(system: Optional[str], code: str) -> str:
    return f"{system}#{code}" if system else code
