"""Field references against loosely shaped provider records.

Two reference forms are supported:

- ``a.b.c``: dot-separated traversal through mappings (and list indices).
- ``field:/pattern/``: resolve ``field`` and apply ``pattern`` to its string
  value, returning the first capture group (or the whole match when the
  pattern has no groups).

Missing keys at any depth resolve to ``None`` rather than raising.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from functools import lru_cache
import re


_REGEX_REFERENCE = re.compile(r"^([\w.]+):/(.+)/$")
_PLACEHOLDER = re.compile(r"\{([^{}]+)\}")


def resolve(record: object, path: str) -> object | None:
    regex_ref = _REGEX_REFERENCE.match(path)
    if regex_ref is not None:
        field_path, pattern = regex_ref.groups()
        return _extract_with_pattern(get_nested_value(record, field_path), pattern)
    return get_nested_value(record, path)


def get_nested_value(record: object, path: str) -> object | None:
    value: object | None = record
    for part in path.split("."):
        if value is None:
            return None
        if isinstance(value, Mapping):
            value = value.get(part)
        elif isinstance(value, Sequence) and not isinstance(value, str | bytes):
            if not part.isdigit():
                return None
            index = int(part)
            if index >= len(value):
                return None
            value = value[index]
        else:
            return None
    return value


def expand_template(template: str, record: object) -> str:
    """Substitute ``{path}`` placeholders; unresolved placeholders stay verbatim."""

    def _substitute(match: re.Match[str]) -> str:
        value = resolve(record, match.group(1))
        if value is None:
            return match.group(0)
        return render_value(value)

    return _PLACEHOLDER.sub(_substitute, template)


def template_references(template: str) -> list[str]:
    return _PLACEHOLDER.findall(template)


def regex_of_reference(path: str) -> str | None:
    """Return the pattern of a ``field:/pattern/`` reference, or ``None`` for a plain path."""
    regex_ref = _REGEX_REFERENCE.match(path)
    return regex_ref.group(2) if regex_ref is not None else None


def has_unresolved_placeholders(text: str) -> bool:
    return _PLACEHOLDER.search(text) is not None


def render_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _extract_with_pattern(value: object | None, pattern: str) -> str | None:
    if value is None or value == "":
        return None
    match = _compile(pattern).search(render_value(value))
    if match is None:
        return None
    if match.re.groups and match.group(1) is not None:
        return match.group(1)
    return match.group(0)


@lru_cache(maxsize=128)
def _compile(pattern: str) -> re.Pattern[str]:
    return re.compile(pattern)
