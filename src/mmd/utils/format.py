"""Result serialization utilities for MCP responses."""

from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel

__all__ = ["error_payload", "serialize_result"]


def serialize_result(result: Any) -> str:
    """Serialize a tool result to string for MCP response.

    - Strings pass through unchanged
    - Pydantic models are dumped with camelCase keys and no nulls
    - Dicts and lists are serialized to compact JSON
    - Other types use str()

    Args:
        result: Tool result (model, dict, list, str, or other)

    Returns:
        String representation suitable for MCP text content
    """
    if isinstance(result, str):
        return result
    if isinstance(result, BaseModel):
        result = result.model_dump(mode="json", by_alias=True, exclude_none=True)
    if isinstance(result, (dict, list)):
        return json.dumps(result, ensure_ascii=False, separators=(",", ":"), default=str)
    return str(result)


def error_payload(message: str, kind: str = "error", **extra: Any) -> dict[str, Any]:
    """Build the uniform failure payload returned by every tool."""
    return {"success": False, "error": message, "errorKind": kind, **extra}
