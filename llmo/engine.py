"""
Orchestration engine — drives one chat request to completion.

Each request runs an explicit state machine:

    AWAIT_MODEL ──final message──▶ DONE
        │  ▲
  tool  │  │ results appended
  calls ▼  │
    DISPATCH_TOOLS
        │
        └── iteration cap exceeded ──▶ FAILED

Tool failures (unknown tool, provider down, timeout, RPC error) become
error ToolResults the model can react to; they never abort the request.
Only the model backend failing, or the iteration cap, ends a request in
FAILED.

Streaming: only the round that produces the final answer is forwarded,
chunk by chunk. Each round's text is held back until the round ends;
a round that ends in tool invocations is never partly forwarded.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator

from langchain_core.messages import BaseMessage, ToolMessage

from llmo.bridge import to_langchain_messages, to_model_tools, tool_message
from llmo.errors import (
    InvalidRequestError,
    IterationLimitError,
    LLMOError,
    McpCommunicationError,
    McpInvalidResponseError,
    McpTimeoutError,
    McpUnavailableError,
    ToolNotFoundError,
)
from llmo.llm import LLMClient, ModelResponse, ToolInvocation
from llmo.registry import ToolRegistry
from llmo.transport import StdioClient

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 10

TOOL_ERRORS = (McpUnavailableError, McpCommunicationError, McpTimeoutError, McpInvalidResponseError)


class EngineState(str, Enum):
    AWAIT_MODEL = "await_model"
    DISPATCH_TOOLS = "dispatch_tools"
    DONE = "done"
    FAILED = "failed"


@dataclass
class ChatTurn:
    """One chat request: the model to use, the conversation and the stream flag."""
    model: str
    messages: list[dict[str, Any]]
    stream: bool = False


@dataclass
class ToolResult:
    """Outcome of one ToolInvocation: a payload or a typed error."""
    invocation: ToolInvocation
    payload: Any = None
    error: LLMOError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_message(self) -> ToolMessage:
        if self.error is not None:
            # A provider-reported tool error keeps its own payload.
            body = self.payload if self.payload is not None else {"error": self.error.to_dict()}
            return tool_message(self.invocation.id, self.invocation.name, body, is_error=True)
        return tool_message(self.invocation.id, self.invocation.name, self.payload)


@dataclass
class ChatResult:
    content: str
    rounds: int
    tool_results: list[ToolResult] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"message": {"role": "assistant", "content": self.content}}


@dataclass
class StreamEvent:
    """What a streaming caller receives: chunks, then "done" or "error"."""
    type: str
    content: str = ""
    error: dict[str, Any] | None = None
    result: ChatResult | None = field(default=None, repr=False)


@dataclass
class _Run:
    """Request-scoped state of one orchestration loop."""
    turn: ChatTurn
    messages: list[BaseMessage]
    state: EngineState = EngineState.AWAIT_MODEL
    rounds: int = 0
    tool_results: list[ToolResult] = field(default_factory=list)

    def transition(self, state: EngineState) -> None:
        logger.debug(f"[{self.turn.model}] round {self.rounds}: {self.state.value} -> {state.value}")
        self.state = state


class ChatEngine:
    """
    Runs chat requests against the model and the registered tools.

    The engine is shared by all requests; everything request-scoped lives in
    a ``_Run``. The registry snapshot and the model-visible tool list are
    computed once.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        client: StdioClient,
        llm: LLMClient,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        tool_timeout: float | None = None,
        max_parallel_tools: int = 1,
    ):
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        self.registry = registry
        self.max_iterations = max_iterations
        self.tool_timeout = tool_timeout
        self.max_parallel_tools = max(1, max_parallel_tools)
        self._client = client
        self._llm = llm
        self._tools = to_model_tools(registry)

    async def run(self, turn: ChatTurn) -> ChatResult:
        """Run to completion and return the final message."""
        async with aclosing(self._execute(turn, streaming=False)) as events:
            async for event in events:
                if event.type == "done":
                    return event.result
        raise RuntimeError("orchestration ended without a result")

    async def stream(self, turn: ChatTurn) -> AsyncIterator[StreamEvent]:
        """
        Run and yield events: "chunk" events of the final answer, then one
        "done" event, or an "error" event if the request fails.
        """
        try:
            async with aclosing(self._execute(turn, streaming=True)) as events:
                async for event in events:
                    yield event
        except LLMOError as e:
            logger.error(f"Streaming chat failed: {e.code}: {e.message}")
            yield StreamEvent(type="error", error=e.to_dict())

    async def _execute(self, turn: ChatTurn, streaming: bool) -> AsyncIterator[StreamEvent]:
        try:
            messages = to_langchain_messages(turn.messages)
        except (ValueError, NotImplementedError, KeyError) as e:
            raise InvalidRequestError(f"Invalid chat messages: {e}") from e
        run = _Run(turn=turn, messages=messages)

        try:
            while True:
                run.rounds += 1
                if streaming:
                    response = None
                    async with aclosing(self._stream_round(run)) as deltas:
                        async for item in deltas:
                            if isinstance(item, ModelResponse):
                                response = item
                            else:
                                yield item
                else:
                    response = await self._llm.complete(turn.model, run.messages, self._tools)

                if response.is_final:
                    run.messages.append(response.to_message())
                    run.transition(EngineState.DONE)
                    result = ChatResult(response.content, run.rounds, run.tool_results)
                    yield StreamEvent(type="done", content=response.content, result=result)
                    return

                if run.rounds >= self.max_iterations:
                    raise IterationLimitError(
                        f"Model still requesting tools after {self.max_iterations} rounds"
                    )

                run.transition(EngineState.DISPATCH_TOOLS)
                run.messages.append(response.to_message())
                results = await self._dispatch_all(response.tool_calls)
                run.tool_results.extend(results)
                run.messages.extend(r.to_message() for r in results)
                run.transition(EngineState.AWAIT_MODEL)
        except LLMOError:
            run.transition(EngineState.FAILED)
            raise

    async def _stream_round(self, run: _Run) -> AsyncIterator[StreamEvent | ModelResponse]:
        # Text is held until the round is known to be final.
        pending: list[str] = []
        response: ModelResponse | None = None
        async with aclosing(self._llm.stream(run.turn.model, run.messages, self._tools)) as deltas:
            async for delta in deltas:
                if delta.response is not None:
                    response = delta.response
                elif delta.text:
                    pending.append(delta.text)

        response = response or ModelResponse()
        if response.is_final:
            for text in pending:
                yield StreamEvent(type="chunk", content=text)
        elif pending:
            logger.debug(f"[{run.turn.model}] dropping {len(pending)} text chunk(s) of tool round {run.rounds}")
        yield response

    async def _dispatch_all(self, invocations: list[ToolInvocation]) -> list[ToolResult]:
        if self.max_parallel_tools == 1 or len(invocations) == 1:
            return [await self.dispatch(invocation) for invocation in invocations]

        limit = asyncio.Semaphore(self.max_parallel_tools)

        async def bounded(invocation: ToolInvocation) -> ToolResult:
            async with limit:
                return await self.dispatch(invocation)

        return list(await asyncio.gather(*(bounded(i) for i in invocations)))

    async def dispatch(self, invocation: ToolInvocation) -> ToolResult:
        """Execute one invocation against the provider that owns the tool."""
        try:
            definition = self.registry.resolve(invocation.name)
        except ToolNotFoundError as e:
            logger.warning(f"Model requested unknown tool: {invocation.name}")
            return ToolResult(invocation, error=e)

        logger.info(f"Calling {definition.provider}/{invocation.name}")
        try:
            payload = await self._client.call_tool(
                definition.provider, invocation.name, invocation.arguments, timeout=self.tool_timeout
            )
        except TOOL_ERRORS as e:
            logger.warning(f"Tool {definition.provider}/{invocation.name} failed: {e.code}: {e.message}")
            return ToolResult(invocation, error=e)

        if isinstance(payload, dict) and payload.get("isError"):
            return ToolResult(invocation, payload=payload, error=McpCommunicationError(
                f"Tool {invocation.name} reported an error", rpc_error=payload
            ))
        return ToolResult(invocation, payload=payload)
