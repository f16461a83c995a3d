"""Sanitising client-supplied tool definitions.

Only `{"type": "function", "function": {"name": ..., ...}}` entries are
accepted. A fresh ToolSpec is built from the allowed fields so nothing else
from the request body reaches the backend.
"""

import logging
from typing import Any

from .conversation import ToolSpec

logger = logging.getLogger(__name__)


def convert_tools(tools: Any) -> list[ToolSpec]:
    """Convert Chat-Completions tool definitions, skipping invalid ones."""
    if not isinstance(tools, list):
        return []

    result: list[ToolSpec] = []
    for i, tool in enumerate(tools):
        if not isinstance(tool, dict):
            logger.warning(f"Skipping invalid tool at index {i}: not an object")
            continue

        fn = tool.get("function")
        if tool.get("type") != "function" or not isinstance(fn, dict):
            logger.warning(f"Skipping invalid tool at index {i}: missing type or function.name")
            continue

        name = fn.get("name")
        if not isinstance(name, str) or not name:
            logger.warning(f"Skipping invalid tool at index {i}: missing type or function.name")
            continue

        description = fn.get("description")
        parameters = fn.get("parameters")
        result.append(ToolSpec(
            name=name,
            description=description if isinstance(description, str) else "",
            parameters=dict(parameters) if isinstance(parameters, dict) else {},
        ))

    return result
