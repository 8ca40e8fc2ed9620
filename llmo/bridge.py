"""
Bridge between the broker's types and LangChain.

Converts registry entries into model-visible tool definitions, chat-boundary
messages into LangChain messages, and tool results into ToolMessages.

Usage:
    from llmo.bridge import to_model_tools, to_langchain_messages

    tools = to_model_tools(registry)
    messages = to_langchain_messages([{"role": "user", "content": "hi"}])
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any, Iterable

from langchain_core.messages import BaseMessage, ToolMessage, convert_to_messages
from langchain_core.utils.function_calling import convert_to_openai_tool

if TYPE_CHECKING:
    from llmo.registry import ToolDefinition, ToolRegistry


def to_model_tool(definition: "ToolDefinition") -> dict[str, Any]:
    """OpenAI-style function tool for one registry entry (accepted by bind_tools)."""
    return convert_to_openai_tool({
        "name": definition.name,
        "description": definition.description or f"MCP tool: {definition.provider}/{definition.name}",
        "parameters": dict(definition.parameters),
    })


def to_model_tools(registry: "ToolRegistry | Iterable[ToolDefinition]") -> list[dict[str, Any]]:
    definitions = registry.definitions() if hasattr(registry, "definitions") else registry
    return [to_model_tool(d) for d in definitions]


def to_langchain_messages(messages: Iterable[dict[str, Any]]) -> list[BaseMessage]:
    """Role-tagged dicts ({"role", "content"}) -> LangChain messages."""
    return list(convert_to_messages([dict(m) for m in messages]))


def tool_message(call_id: str, name: str, payload: Any, is_error: bool = False) -> ToolMessage:
    if isinstance(payload, str):
        content = payload
    else:
        content = json.dumps(payload, default=str)
    return ToolMessage(
        content=content,
        tool_call_id=call_id,
        name=name,
        status="error" if is_error else "success",
    )


def content_text(content: Any) -> str:
    """Flatten message content (a string or a list of content blocks) into text."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    parts = []
    for block in content:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type", "text") == "text":
            parts.append(str(block.get("text", "")))
    return "".join(parts)
