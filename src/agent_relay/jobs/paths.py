"""Key-path extraction used to derive cache keys from job arguments.

Supported syntax is the small JSONPath subset tool configs use in practice:
``$.user.id``, ``$.items[0].sku``, ``$['odd key']`` and the bare ``user.id``
form without the leading ``$``.
"""

from __future__ import annotations

import json
import re
from typing import Any

_TOKEN = re.compile(
    r"""
    \.(?P<name>[A-Za-z_][A-Za-z0-9_\-]*)
    | \[(?P<index>-?\d+)\]
    | \[['"](?P<quoted>[^'"]+)['"]\]
    """,
    re.VERBOSE,
)


class KeyPathError(ValueError):
    """Raised when a key path is malformed or does not resolve."""


def parse_key_path(path: str) -> list[str | int]:
    expression = path.strip()
    if not expression:
        raise KeyPathError("Key path is empty.")
    if expression.startswith("$"):
        expression = expression[1:]
    elif not expression.startswith(("[", ".")):
        expression = f".{expression}"

    segments: list[str | int] = []
    position = 0
    while position < len(expression):
        match = _TOKEN.match(expression, position)
        if match is None:
            raise KeyPathError(f"Unsupported key path syntax at {position}: {path}")
        if match.group("name") is not None:
            segments.append(match.group("name"))
        elif match.group("index") is not None:
            segments.append(int(match.group("index")))
        else:
            segments.append(match.group("quoted"))
        position = match.end()
    if not segments:
        raise KeyPathError(f"Key path selects the whole document: {path}")
    return segments


def extract_key(document: Any, path: str) -> str:
    """Resolve ``path`` in ``document`` and render the value as a stable cache key."""

    current = document
    for segment in parse_key_path(path):
        if isinstance(segment, int):
            if not isinstance(current, list):
                raise KeyPathError(f"Expected a list at [{segment}] in {path}")
            try:
                current = current[segment]
            except IndexError as error:
                raise KeyPathError(f"Index {segment} out of range in {path}") from error
            continue
        if not isinstance(current, dict) or segment not in current:
            raise KeyPathError(f"Key {segment!r} not found in {path}")
        current = current[segment]

    if current is None:
        raise KeyPathError(f"Key path {path} resolved to null")
    if isinstance(current, str):
        return current
    return json.dumps(current, ensure_ascii=False, sort_keys=True)
