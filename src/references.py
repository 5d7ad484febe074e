"""Reference expressions inside document attribute values.

A reference is written ${...} and takes one of three forms:

    ${var.NAME}                  input variable
    ${data.TYPE.NAME.ATTR}       data source attribute
    ${TYPE.NAME.ATTR}            resource attribute

ATTR may be a dotted path into nested maps. A string that consists of a
single reference evaluates to the referenced value unchanged (type
preserved). References embedded in longer strings are rendered as text.
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Callable

from config import ConfigError

REFERENCE_PATTERN = re.compile(r'\$\{\s*([^}]*?)\s*\}')

_IDENT = re.compile(r'^[A-Za-z_][A-Za-z0-9_-]*$')


class Unknown:
    """Placeholder for a value that is only known after apply."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return '(known after apply)'

    __str__ = __repr__


UNKNOWN = Unknown()


@dataclass(frozen=True)
class Reference:
    """A parsed ${...} expression.

    Attributes:
        kind: 'var', 'data' or 'resource'
        address: Declaration address (var.x, data.archive_file.src, storage_bucket.b)
        path: Attribute path within the declaration (empty for variables)
        expression: Original expression text without ${ }
    """
    kind: str
    address: str
    path: tuple
    expression: str


def parse_reference(expression: str) -> Reference:
    """Parse the inside of a ${...} expression.

    Raises:
        ConfigError: If the expression is malformed
    """
    parts = expression.split('.')
    if not all(_IDENT.match(p) for p in parts):
        raise ConfigError(f"Malformed reference '${{{expression}}}'")

    if parts[0] == 'var':
        if len(parts) != 2:
            raise ConfigError(f"Variable reference must be var.NAME, got '${{{expression}}}'")
        return Reference('var', expression, (), expression)

    if parts[0] == 'data':
        if len(parts) < 4:
            raise ConfigError(
                f"Data source reference must be data.TYPE.NAME.ATTR, got '${{{expression}}}'"
            )
        return Reference('data', '.'.join(parts[:3]), tuple(parts[3:]), expression)

    if len(parts) < 3:
        raise ConfigError(f"Resource reference must be TYPE.NAME.ATTR, got '${{{expression}}}'")
    return Reference('resource', '.'.join(parts[:2]), tuple(parts[2:]), expression)


def find_references(value: Any) -> list[Reference]:
    """Collect every reference in a value, walking lists and maps.

    Returns references in first-seen order without duplicates.
    """
    found: list[Reference] = []
    seen: set[str] = set()

    def _walk(v: Any) -> None:
        if isinstance(v, str):
            for match in REFERENCE_PATTERN.finditer(v):
                ref = parse_reference(match.group(1))
                if ref.expression not in seen:
                    seen.add(ref.expression)
                    found.append(ref)
        elif isinstance(v, dict):
            for item in v.values():
                _walk(item)
        elif isinstance(v, (list, tuple)):
            for item in v:
                _walk(item)

    _walk(value)
    return found


def contains_unknown(value: Any) -> bool:
    """True if any part of value is UNKNOWN."""
    if value is UNKNOWN:
        return True
    if isinstance(value, dict):
        return any(contains_unknown(v) for v in value.values())
    if isinstance(value, (list, tuple)):
        return any(contains_unknown(v) for v in value)
    return False


def _render(value: Any) -> str:
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if value is None:
        return ''
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return str(value)


def resolve(value: Any, lookup: Callable[[Reference], Any]) -> Any:
    """Substitute every reference in value using lookup.

    An embedded reference that resolves to UNKNOWN makes the whole string
    UNKNOWN.
    """
    if isinstance(value, str):
        whole = REFERENCE_PATTERN.fullmatch(value)
        if whole:
            return lookup(parse_reference(whole.group(1)))

        unknown = False

        def _sub(match: re.Match) -> str:
            nonlocal unknown
            resolved = lookup(parse_reference(match.group(1)))
            if contains_unknown(resolved):
                unknown = True
                return ''
            return _render(resolved)

        rendered = REFERENCE_PATTERN.sub(_sub, value)
        return UNKNOWN if unknown else rendered
    if isinstance(value, dict):
        return {k: resolve(v, lookup) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [resolve(v, lookup) for v in value]
    return value


def make_lookup(
    variables: dict[str, Any],
    values: dict[str, dict],
    strict: bool = False,
) -> Callable[[Reference], Any]:
    """Build a lookup function over variable and declaration values.

    Args:
        variables: Bound variable values by name
        values: Attribute maps (inputs merged with computed) by address
        strict: If True, an address without values raises; otherwise it
            resolves to UNKNOWN

    Raises (from the returned function):
        ConfigError: Unknown variable, missing attribute, or missing
            address in strict mode
    """
    def _lookup(ref: Reference) -> Any:
        if ref.kind == 'var':
            name = ref.address.split('.', 1)[1]
            if name not in variables:
                raise ConfigError(f"Reference to undeclared variable '{name}'")
            return variables[name]

        if ref.address not in values:
            if strict:
                raise ConfigError(f"Value for '{ref.address}' is not available")
            return UNKNOWN

        current: Any = values[ref.address]
        for key in ref.path:
            if current is UNKNOWN:
                return UNKNOWN
            if not isinstance(current, dict) or key not in current:
                if strict:
                    raise ConfigError(f"'{ref.address}' has no attribute '{'.'.join(ref.path)}'")
                return UNKNOWN
            current = current[key]
        return current

    return _lookup
