"""Tests for LangChain conversions."""

from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

from llmo.bridge import content_text, to_langchain_messages, to_model_tool, to_model_tools, tool_message
from llmo.registry import ToolDefinition, ToolRegistry


def test_tool_definition_becomes_function_tool():
    schema = {"type": "object", "properties": {"q": {"type": "string"}}, "required": ["q"]}
    tool = to_model_tool(ToolDefinition("search", "Search the web", schema, provider="web"))

    assert tool["type"] == "function"
    assert tool["function"]["name"] == "search"
    assert tool["function"]["description"] == "Search the web"
    assert tool["function"]["parameters"]["properties"] == {"q": {"type": "string"}}


def test_missing_description_gets_a_default():
    tool = to_model_tool(ToolDefinition("ping", "", provider="net"))
    assert tool["function"]["description"] == "MCP tool: net/ping"


def test_registry_to_tools_keeps_order():
    registry = ToolRegistry([ToolDefinition("b", "", provider="p"), ToolDefinition("a", "", provider="p")])
    assert [t["function"]["name"] for t in to_model_tools(registry)] == ["b", "a"]


def test_role_tagged_messages_convert():
    messages = to_langchain_messages([
        {"role": "system", "content": "be brief"},
        {"role": "user", "content": "hi"},
        {"role": "assistant", "content": "hello"},
    ])
    assert [type(m) for m in messages] == [SystemMessage, HumanMessage, AIMessage]


def test_tool_message_serializes_payloads():
    assert tool_message("c1", "t", "plain").content == "plain"
    message = tool_message("c1", "t", {"n": 1}, is_error=True)
    assert message.content == '{"n": 1}'
    assert message.tool_call_id == "c1"
    assert message.status == "error"


def test_content_text():
    assert content_text(None) == ""
    assert content_text("x") == "x"
    assert content_text(["a", {"type": "text", "text": "b"}, {"type": "image_url", "image_url": {}}]) == "ab"
