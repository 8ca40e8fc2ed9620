"""Tests for the LangChain-backed language-model client."""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import pytest
from langchain_core.language_models.fake_chat_models import GenericFakeChatModel
from langchain_core.messages import AIMessage, HumanMessage

from llmo.errors import LLMError
from llmo.llm import LangChainLLMClient, ModelResponse, ToolInvocation


BOUND_TOOLS: list = []


class ToolAwareFakeChatModel(GenericFakeChatModel):
    """GenericFakeChatModel that accepts bind_tools and records the tools."""

    def bind_tools(self, tools, **kwargs):
        BOUND_TOOLS.append(tools)
        return self


def _factory(*messages: AIMessage):
    def make(model: str):
        return ToolAwareFakeChatModel(messages=iter(messages))
    return make


class TestModelResponse:

    def test_from_message_with_tool_calls(self):
        message = AIMessage(
            content="",
            tool_calls=[{"name": "echo", "args": {"message": "hi"}, "id": "call_9"}],
        )
        response = ModelResponse.from_message(message)
        assert not response.is_final
        assert response.tool_calls == [ToolInvocation("call_9", "echo", {"message": "hi"})]

    def test_content_blocks_are_flattened(self):
        message = AIMessage(content=[{"type": "text", "text": "Hello "}, {"type": "text", "text": "there"}])
        assert ModelResponse.from_message(message).content == "Hello there"

    def test_round_trips_to_ai_message(self):
        response = ModelResponse(content="x", tool_calls=[ToolInvocation("c1", "t", {"a": 1})])
        message = response.to_message()
        assert message.tool_calls[0]["id"] == "c1"
        assert message.tool_calls[0]["args"] == {"a": 1}


class TestLangChainLLMClient:

    @pytest.mark.asyncio
    async def test_complete_returns_final_message(self):
        client = LangChainLLMClient(model_factory=_factory(AIMessage(content="All done")))
        response = await client.complete("fake", [HumanMessage(content="hi")], [])
        assert response.is_final
        assert response.content == "All done"

    @pytest.mark.asyncio
    async def test_complete_binds_tools_and_returns_invocations(self):
        BOUND_TOOLS.clear()
        message = AIMessage(content="", tool_calls=[{"name": "echo", "args": {}, "id": "c1"}])
        client = LangChainLLMClient(model_factory=_factory(message))
        tools = [{"type": "function", "function": {"name": "echo", "description": "", "parameters": {}}}]

        response = await client.complete("fake", [HumanMessage(content="hi")], tools)

        assert [c.name for c in response.tool_calls] == ["echo"]
        assert BOUND_TOOLS == [tools]

    @pytest.mark.asyncio
    async def test_models_are_created_once_per_id(self):
        created = []

        def factory(model):
            created.append(model)
            return ToolAwareFakeChatModel(messages=iter([AIMessage(content="a"), AIMessage(content="b")]))

        client = LangChainLLMClient(model_factory=factory)
        await client.complete("m", [HumanMessage(content="1")], [])
        await client.complete("m", [HumanMessage(content="2")], [])
        assert created == ["m"]

    @pytest.mark.asyncio
    async def test_stream_yields_text_then_response(self):
        client = LangChainLLMClient(model_factory=_factory(AIMessage(content="hello streaming world")))

        deltas = [d async for d in client.stream("fake", [HumanMessage(content="hi")], [])]

        text = "".join(d.text for d in deltas)
        assert text == "hello streaming world"
        assert deltas[-1].response is not None
        assert deltas[-1].response.content == "hello streaming world"
        assert not any(d.tool_call for d in deltas)

    @pytest.mark.asyncio
    async def test_timeout_becomes_llm_error(self):
        async def slow(messages):
            await asyncio.sleep(1)

        model = MagicMock()
        model.ainvoke = slow
        client = LangChainLLMClient(model_factory=lambda name: model, timeout=0.05)

        with pytest.raises(LLMError) as excinfo:
            await client.complete("slow", [HumanMessage(content="hi")], [])
        assert excinfo.value.code == "LLM_ERROR"

    @pytest.mark.asyncio
    async def test_backend_exception_becomes_llm_error(self):
        async def broken(messages):
            raise ConnectionError("refused")

        model = MagicMock()
        model.ainvoke = broken
        client = LangChainLLMClient(model_factory=lambda name: model)

        with pytest.raises(LLMError, match="refused"):
            await client.complete("m", [HumanMessage(content="hi")], [])

    @pytest.mark.asyncio
    async def test_unknown_model_becomes_llm_error(self):
        def factory(model):
            raise ValueError(f"Unable to infer model provider for {model}")

        client = LangChainLLMClient(model_factory=factory)
        with pytest.raises(LLMError, match="Cannot create model"):
            await client.complete("mystery", [HumanMessage(content="hi")], [])
