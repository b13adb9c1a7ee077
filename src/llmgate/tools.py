"""Tool schema conversion between the canonical shape and provider wire formats.

Every function here is pure so it can be checked against fixtures.
"""

from __future__ import annotations

from typing import Any, Iterable, Optional

from llmgate.messages import ToolDefinition

# JSON Schema keys the Gemini function-declaration schema understands.
_GEMINI_SCHEMA_KEYS = frozenset({
    "type", "format", "description", "nullable", "enum",
    "properties", "required", "items", "minItems", "maxItems",
    "minimum", "maximum", "anyOf",
})


def to_openai_tools(tools: Optional[Iterable[ToolDefinition]]) -> Optional[list[dict]]:
    """OpenAI / DeepSeek ``tools`` array."""
    if not tools:
        return None
    return [
        {
            "type": "function",
            "function": {
                "name": t.name,
                "description": t.description,
                "parameters": t.parameters,
            },
        }
        for t in tools
    ]


def to_claude_tools(tools: Optional[Iterable[ToolDefinition]]) -> Optional[list[dict]]:
    """Anthropic messages API ``tools`` array."""
    if not tools:
        return None
    return [
        {
            "name": t.name,
            "description": t.description,
            "input_schema": t.parameters,
        }
        for t in tools
    ]


def to_gemini_tools(tools: Optional[Iterable[ToolDefinition]]) -> Optional[list[dict]]:
    """Gemini ``tools`` list with a single ``function_declarations`` entry."""
    if not tools:
        return None
    return [
        {
            "function_declarations": [
                {
                    "name": t.name,
                    "description": t.description,
                    "parameters": _gemini_schema(t.parameters),
                }
                for t in tools
            ]
        }
    ]


def _gemini_schema(schema: Any) -> Any:
    if isinstance(schema, list):
        return [_gemini_schema(s) for s in schema]
    if not isinstance(schema, dict):
        return schema
    out: dict[str, Any] = {}
    for key, value in schema.items():
        if key not in _GEMINI_SCHEMA_KEYS:
            continue
        if key == "properties" and isinstance(value, dict):
            out[key] = {name: _gemini_schema(sub) for name, sub in value.items()}
        elif key in ("items", "anyOf"):
            out[key] = _gemini_schema(value)
        else:
            out[key] = value
    return out


def from_openai_tools(raw: Iterable[dict]) -> list[ToolDefinition]:
    """Parse an OpenAI-style ``tools`` array into canonical definitions."""
    result = []
    for item in raw:
        fn = item.get("function", item)
        result.append(
            ToolDefinition(
                name=fn["name"],
                description=fn.get("description", ""),
                parameters=fn.get("parameters") or {"type": "object", "properties": {}},
            )
        )
    return result


def from_claude_tools(raw: Iterable[dict]) -> list[ToolDefinition]:
    """Parse an Anthropic-style ``tools`` array into canonical definitions."""
    return [
        ToolDefinition(
            name=item["name"],
            description=item.get("description", ""),
            parameters=item.get("input_schema") or {"type": "object", "properties": {}},
        )
        for item in raw
    ]
