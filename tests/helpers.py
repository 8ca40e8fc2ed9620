"""Shared helpers for spawning providers in tests."""

from __future__ import annotations

import os
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator

from langchain_core.messages import BaseMessage

from llmo.config import ProviderConfig
from llmo.llm import LLMClient, ModelResponse, ToolInvocation
from llmo.manager import ProcessSupervisor
from llmo.transport import StdioClient

ROOT = Path(__file__).resolve().parent.parent
FAKE_PROVIDER = str(Path(__file__).resolve().parent / "fake_provider.py")


def fake_provider(name: str, mode: str = "normal", tools: str = "echo", **env: str) -> ProviderConfig:
    return ProviderConfig(
        name=name,
        command=sys.executable,
        args=(FAKE_PROVIDER, mode, tools),
        env=dict(env),
    )


def echo_provider(name: str = "echo") -> ProviderConfig:
    return ProviderConfig(
        name=name,
        command=sys.executable,
        args=("-m", "llmo.providers.echo"),
        env={"PYTHONPATH": os.pathsep.join([str(ROOT), os.environ.get("PYTHONPATH", "")])},
    )


@asynccontextmanager
async def running(*configs: ProviderConfig, timeout: float = 5.0) -> AsyncIterator[tuple[ProcessSupervisor, StdioClient]]:
    """Start providers, yield (supervisor, client), always shut down."""
    supervisor = ProcessSupervisor()
    client = StdioClient(supervisor, response_timeout=timeout)
    try:
        await supervisor.start_all(configs)
        yield supervisor, client
    finally:
        await supervisor.shutdown_all(grace=2.0)


class ScriptedLLM(LLMClient):
    """LLMClient that replays canned responses and records what it was sent."""

    def __init__(self, *responses: ModelResponse | Any):
        self._responses = list(responses)
        self.calls: list[list[BaseMessage]] = []
        self.tools_seen: list[list[dict]] = []

    async def complete(self, model, messages, tools) -> ModelResponse:
        self.calls.append(list(messages))
        self.tools_seen.append(tools)
        response = self._responses.pop(0) if self._responses else self._responses_exhausted()
        if callable(response):
            response = response(messages)
        return response

    def _responses_exhausted(self) -> ModelResponse:
        raise AssertionError("ScriptedLLM ran out of responses")


class LoopingLLM(LLMClient):
    """Requests the same tool forever."""

    def __init__(self, tool: str = "echo"):
        self.tool = tool
        self.rounds = 0

    async def complete(self, model, messages, tools) -> ModelResponse:
        self.rounds += 1
        return ModelResponse(tool_calls=[
            ToolInvocation(id=f"call_{self.rounds}", name=self.tool, arguments={"value": "again"})
        ])


def tool_call(name: str, call_id: str = "call_1", **arguments: Any) -> ModelResponse:
    return ModelResponse(tool_calls=[ToolInvocation(id=call_id, name=name, arguments=arguments)])
