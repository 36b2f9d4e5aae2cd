"""Wire packing for job arguments and results."""

from __future__ import annotations

import json
from typing import Any

from agent_relay.errors import InvalidJobArgumentsError


def pack(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True)


def unpack(raw: str) -> Any:
    """Decode a packed payload, raising ``InvalidJobArgumentsError`` when malformed."""

    try:
        return json.loads(raw)
    except json.JSONDecodeError as error:
        raise InvalidJobArgumentsError(f"Malformed packed payload: {error.msg}") from error
