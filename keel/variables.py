from __future__ import annotations

import re
from typing import Iterable, Mapping

from keel.errors import ConfigError


PLACEHOLDER_RE = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")


def substitute_variables(command: str, values: Mapping[str, str]) -> str:
    """Replace ``{{ name }}`` placeholders for the names in ``values``.

    Placeholders naming anything else are left as written.
    """

    def _replace(match: re.Match[str]) -> str:
        name = match.group(1)
        if name in values:
            return values[name]
        return match.group(0)

    return PLACEHOLDER_RE.sub(_replace, command)


def parse_assignments(items: Iterable[str]) -> dict[str, str]:
    values: dict[str, str] = {}
    for item in items:
        key, sep, value = item.partition("=")
        key = key.strip()
        if not sep or not PLACEHOLDER_RE.fullmatch(f"{{{{{key}}}}}"):
            raise ConfigError(f"Expected KEY=VALUE, got {item!r}")
        values[key] = value
    return values


def resolve_variables(
    declared: Mapping[str, str],
    overrides: Mapping[str, str] | None = None,
    prompt=None,
) -> dict[str, str]:
    """Pick a value per declared variable: override, then prompt answer, then default.

    ``prompt`` is called as ``prompt(name, default)``; an empty answer keeps the default.
    """
    overrides = overrides or {}
    unknown = sorted(set(overrides) - set(declared))
    if unknown:
        raise ConfigError(f"Unknown variable(s): {', '.join(unknown)}")
    values: dict[str, str] = {}
    for name, default in declared.items():
        if name in overrides:
            values[name] = overrides[name]
        elif prompt is not None:
            answer = prompt(name, default)
            values[name] = answer if answer else default
        else:
            values[name] = default
    return values
