"""
Language-model client.

The orchestration engine only needs one thing from a model backend: given the
conversation so far and the available tools, either a final assistant message
or a list of tool invocations. ``LLMClient`` is that contract;
``LangChainLLMClient`` implements it on top of any LangChain chat model.

Model identifiers are resolved by a factory. The default uses LangChain's
``init_chat_model``, so ids look like ``"anthropic:claude-sonnet-4-5-20250929"``
or ``"openai:gpt-4o"``.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage

from llmo.bridge import content_text
from llmo.errors import LLMError, LLMOError

logger = logging.getLogger(__name__)


@dataclass
class ToolInvocation:
    """A tool call requested by the model."""
    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass
class ModelResponse:
    """One complete model turn: text, plus any tool invocations."""
    content: str = ""
    tool_calls: list[ToolInvocation] = field(default_factory=list)

    @property
    def is_final(self) -> bool:
        return not self.tool_calls

    def to_message(self) -> AIMessage:
        return AIMessage(
            content=self.content,
            tool_calls=[
                {"name": call.name, "args": call.arguments, "id": call.id}
                for call in self.tool_calls
            ],
        )

    @classmethod
    def from_message(cls, message: BaseMessage) -> "ModelResponse":
        calls = []
        for index, call in enumerate(getattr(message, "tool_calls", None) or []):
            calls.append(ToolInvocation(
                id=call.get("id") or f"call_{index}",
                name=call["name"],
                arguments=dict(call.get("args") or {}),
            ))
        for invalid in getattr(message, "invalid_tool_calls", None) or []:
            logger.warning(f"Model produced an unparsable tool call: {invalid.get('name')}: {invalid.get('error')}")
        return cls(content=content_text(message.content), tool_calls=calls)


@dataclass
class ModelDelta:
    """
    One streaming event from the model.

    ``text`` carries incremental assistant text; ``tool_call`` marks that the
    turn contains tool-call data; the final delta of every stream carries the
    assembled ``response``.
    """
    text: str = ""
    tool_call: bool = False
    response: ModelResponse | None = None


class LLMClient(ABC):
    """Abstract model backend."""

    @abstractmethod
    async def complete(
        self,
        model: str,
        messages: list[BaseMessage],
        tools: list[dict[str, Any]],
    ) -> ModelResponse:
        """Run one model turn and return the complete response."""
        ...

    async def stream(
        self,
        model: str,
        messages: list[BaseMessage],
        tools: list[dict[str, Any]],
    ) -> AsyncIterator[ModelDelta]:
        """
        Run one model turn incrementally.

        Backends without native streaming fall back to a single delta built
        from ``complete``.
        """
        response = await self.complete(model, messages, tools)
        if response.tool_calls:
            yield ModelDelta(tool_call=True)
        elif response.content:
            yield ModelDelta(text=response.content)
        yield ModelDelta(response=response)


def default_model_factory(model: str) -> BaseChatModel:
    from langchain.chat_models import init_chat_model

    return init_chat_model(model)


class LangChainLLMClient(LLMClient):
    """
    LLMClient backed by LangChain chat models.

    Chat models are created once per model id and cached. Tools are bound
    per call, since the tool list is fixed but the model varies by request.
    """

    def __init__(
        self,
        model_factory: Callable[[str], BaseChatModel] | None = None,
        timeout: float = 120.0,
    ):
        self._factory = model_factory or default_model_factory
        self._models: dict[str, BaseChatModel] = {}
        self.timeout = timeout

    def _runnable(self, model: str, tools: list[dict[str, Any]]):
        chat_model = self._models.get(model)
        if chat_model is None:
            try:
                chat_model = self._factory(model)
            except Exception as e:
                raise LLMError(f"Cannot create model '{model}': {e}") from e
            self._models[model] = chat_model
        return chat_model.bind_tools(tools) if tools else chat_model

    async def complete(
        self,
        model: str,
        messages: list[BaseMessage],
        tools: list[dict[str, Any]],
    ) -> ModelResponse:
        runnable = self._runnable(model, tools)
        try:
            message = await asyncio.wait_for(runnable.ainvoke(messages), self.timeout)
        except asyncio.TimeoutError as e:
            raise LLMError(f"Model '{model}' did not respond within {self.timeout}s") from e
        except LLMOError:
            raise
        except Exception as e:
            raise LLMError(f"Model '{model}' request failed: {e}") from e
        return ModelResponse.from_message(message)

    async def stream(
        self,
        model: str,
        messages: list[BaseMessage],
        tools: list[dict[str, Any]],
    ) -> AsyncIterator[ModelDelta]:
        runnable = self._runnable(model, tools)
        chunks = runnable.astream(messages).__aiter__()
        gathered = None
        try:
            while True:
                try:
                    chunk = await asyncio.wait_for(chunks.__anext__(), self.timeout)
                except StopAsyncIteration:
                    break
                except asyncio.TimeoutError as e:
                    raise LLMError(f"Model '{model}' stalled for more than {self.timeout}s") from e
                except LLMOError:
                    raise
                except Exception as e:
                    raise LLMError(f"Model '{model}' stream failed: {e}") from e

                gathered = chunk if gathered is None else gathered + chunk
                if getattr(chunk, "tool_call_chunks", None):
                    yield ModelDelta(tool_call=True)
                text = content_text(chunk.content)
                if text:
                    yield ModelDelta(text=text)
        finally:
            aclose = getattr(chunks, "aclose", None)
            if aclose is not None:
                await aclose()

        final = ModelResponse.from_message(gathered) if gathered is not None else ModelResponse()
        yield ModelDelta(response=final)
