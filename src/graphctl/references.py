"""Reference expressions inside resource attributes.

Three kinds of reference are recognized inside string attribute values:

    ${<type>::<name>.<attribute path>}   another resource's attribute or output
    ${var.<name>}                        an input variable
    ${context.<field>}                   a field of the deployment context

A string that consists of exactly one reference takes the referenced value
with its type. A reference embedded in a longer string is interpolated as
text. Values that cannot be known until apply are represented by UNKNOWN.
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .models import ADDRESS_SEPARATOR, VARIABLE_NAME_PATTERN

REFERENCE_PATTERN = re.compile(r"\$\{\s*([^{}]+?)\s*\}")
_INDEX_PATTERN = re.compile(r"^(.*?)\[(\d+)\]$")


class ReferenceKind(str, Enum):
    """What a reference points at."""

    RESOURCE = "resource"
    VARIABLE = "var"
    CONTEXT = "context"


class ReferenceSyntaxError(ValueError):
    """Raised when a ${...} expression cannot be parsed."""

    pass


class ReferenceResolutionError(Exception):
    """Raised when a reference cannot be resolved at apply time."""

    def __init__(self, address: str, reference: Reference, reason: str) -> None:
        self.address = address
        self.reference = reference
        super().__init__(f"{address}: cannot resolve {reference}: {reason}")


class _Unknown:
    """Placeholder for a value only known after apply."""

    _instance: _Unknown | None = None

    def __new__(cls) -> _Unknown:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "(known after apply)"

    __str__ = __repr__


UNKNOWN: Any = _Unknown()


@dataclass(frozen=True)
class Reference:
    """A parsed ${...} expression.

    Attributes:
        kind: Resource, variable or context reference.
        target: Resource address, variable name or context field.
        attribute: Dotted attribute path for resource references, else "".
    """

    kind: ReferenceKind
    target: str
    attribute: str = ""

    def __str__(self) -> str:
        if self.kind == ReferenceKind.RESOURCE:
            return f"${{{self.target}.{self.attribute}}}"
        return f"${{{self.kind.value}.{self.target}}}"


def parse_expression(expression: str) -> Reference:
    """Parse the inside of a ${...} expression.

    Raises:
        ReferenceSyntaxError: If the expression is not one of the known forms.
    """
    expression = expression.strip()

    if expression.startswith("var."):
        name = expression[len("var."):]
        if not re.match(VARIABLE_NAME_PATTERN, name):
            raise ReferenceSyntaxError(f"Invalid variable reference: ${{{expression}}}")
        return Reference(ReferenceKind.VARIABLE, name)

    if expression.startswith("context."):
        field_name = expression[len("context."):]
        if not field_name.isidentifier():
            raise ReferenceSyntaxError(f"Invalid context reference: ${{{expression}}}")
        return Reference(ReferenceKind.CONTEXT, field_name)

    if ADDRESS_SEPARATOR in expression:
        resource_type, _, rest = expression.partition(ADDRESS_SEPARATOR)
        name, _, attribute = rest.partition(".")
        if not resource_type or not name:
            raise ReferenceSyntaxError(f"Invalid resource reference: ${{{expression}}}")
        if not attribute:
            raise ReferenceSyntaxError(
                f"Resource reference must name an attribute: ${{{expression}}}"
            )
        return Reference(
            ReferenceKind.RESOURCE,
            f"{resource_type}{ADDRESS_SEPARATOR}{name}",
            attribute,
        )

    raise ReferenceSyntaxError(f"Unrecognized reference: ${{{expression}}}")


def find_references(value: Any, path: str = "") -> Iterator[tuple[str, Reference]]:
    """Yield (attribute path, reference) for every reference in a value tree.

    Paths use dots for mapping keys and [i] for list items, e.g.
    "properties.siteConfig.appSettings[0].value".
    """
    if isinstance(value, dict):
        for key, item in value.items():
            yield from find_references(item, f"{path}.{key}" if path else str(key))
    elif isinstance(value, list):
        for index, item in enumerate(value):
            yield from find_references(item, f"{path}[{index}]")
    elif isinstance(value, str):
        for match in REFERENCE_PATTERN.finditer(value):
            yield path, parse_expression(match.group(1))


def resolve_value(value: Any, resolver: Callable[[Reference], Any]) -> Any:
    """Return a copy of value with every reference replaced by resolver(ref).

    The resolver may return UNKNOWN. An interpolated string containing an
    unknown part becomes UNKNOWN as a whole.
    """
    if isinstance(value, dict):
        return {key: resolve_value(item, resolver) for key, item in value.items()}
    if isinstance(value, list):
        return [resolve_value(item, resolver) for item in value]
    if not isinstance(value, str):
        return value

    matches = list(REFERENCE_PATTERN.finditer(value))
    if not matches:
        return value
    if len(matches) == 1 and matches[0].span() == (0, len(value)):
        return resolver(parse_expression(matches[0].group(1)))

    parts: list[str] = []
    position = 0
    for match in matches:
        parts.append(value[position:match.start()])
        resolved = resolver(parse_expression(match.group(1)))
        if resolved is UNKNOWN:
            return UNKNOWN
        parts.append(_as_text(resolved))
        position = match.end()
    parts.append(value[position:])
    return "".join(parts)


def contains_unknown(value: Any) -> bool:
    """Check whether a value tree holds an UNKNOWN anywhere."""
    if value is UNKNOWN:
        return True
    if isinstance(value, dict):
        return any(contains_unknown(item) for item in value.values())
    if isinstance(value, list):
        return any(contains_unknown(item) for item in value)
    return False


def lookup_path(data: Any, path: str) -> Any:
    """Follow a dotted path with optional [i] indexes into nested data.

    Raises:
        KeyError: If any segment is missing.
    """
    current = data
    for segment in path.split("."):
        indexes: list[int] = []
        match = _INDEX_PATTERN.match(segment)
        while match:
            indexes.insert(0, int(match.group(2)))
            segment = match.group(1)
            match = _INDEX_PATTERN.match(segment)
        if segment:
            if not isinstance(current, dict) or segment not in current:
                raise KeyError(path)
            current = current[segment]
        for index in indexes:
            if not isinstance(current, list) or index >= len(current):
                raise KeyError(path)
            current = current[index]
    return current


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)) or value is None:
        return "" if value is None else str(value)
    return json.dumps(value, sort_keys=True)
