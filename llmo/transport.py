"""
Stdio JSON-RPC client for MCP providers.

One provider process = one byte-stream pair (its stdin and stdout), shared by
every chat request that needs that provider's tools. The client multiplexes
concurrent calls over that pair:

  - writes are serialized per process (asyncio.Lock), one complete
    newline-terminated JSON object per message
  - a single reader task per process buffers stdout, splits on newlines and
    routes each response to the pending request with the same id
  - each pending request carries its own timer; whichever of response,
    timeout or provider death comes first settles it, exactly once

Usage:
    client = StdioClient(supervisor, response_timeout=30.0)
    tools = await client.list_tools("echo")
    result = await client.call_tool("echo", "echo", {"message": "hi"})
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from llmo.errors import (
    McpCommunicationError,
    McpInvalidResponseError,
    McpTimeoutError,
    McpUnavailableError,
)
from llmo.framing import LineBuffer
from llmo.manager import ProcessHandle, ProcessSupervisor

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 64 * 1024
MAX_LINE_BYTES = 4 * 1024 * 1024
# How long a closed stdout may precede the exit watcher noticing the exit.
EXIT_AFTER_EOF_TIMEOUT = 1.0


@dataclass
class JsonRpcRequest:
    """JSON-RPC 2.0 request."""
    method: str
    params: dict[str, Any]
    id: int | str

    def to_json(self) -> str:
        return json.dumps({
            "jsonrpc": "2.0",
            "method": self.method,
            "params": self.params,
            "id": self.id,
        })

    def to_line(self) -> bytes:
        return (self.to_json() + "\n").encode("utf-8")


@dataclass
class JsonRpcResponse:
    """JSON-RPC 2.0 response."""
    id: int | str | None
    result: Any = None
    error: dict | None = None
    has_result: bool = False

    @classmethod
    def from_message(cls, message: dict) -> "JsonRpcResponse":
        return cls(
            id=message.get("id"),
            result=message.get("result"),
            error=message.get("error"),
            has_result="result" in message,
        )

    @property
    def is_error(self) -> bool:
        return self.error is not None

    @property
    def error_message(self) -> str:
        if isinstance(self.error, dict):
            return str(self.error.get("message", self.error))
        return str(self.error)


@dataclass
class PendingRequest:
    """A call waiting for its response. Settled exactly once."""
    id: int | str
    method: str
    future: asyncio.Future
    timer: asyncio.TimerHandle | None = field(default=None, repr=False)

    def settle(self, result: Any = None, error: BaseException | None = None) -> bool:
        """Resolve or fail the waiter. Returns False if it was already settled."""
        if self.future.done():
            return False
        if self.timer is not None:
            self.timer.cancel()
        if error is not None:
            self.future.set_exception(error)
        else:
            self.future.set_result(result)
        return True

    def abandon(self) -> None:
        """Drop the waiter without an outcome (caller was cancelled)."""
        if self.timer is not None:
            self.timer.cancel()
        if not self.future.done():
            self.future.cancel()


class PendingTable:
    """Request id -> PendingRequest for one provider process."""

    def __init__(self):
        self._entries: dict[int | str, PendingRequest] = {}

    def add(self, entry: PendingRequest) -> None:
        if entry.id in self._entries:
            raise ValueError(f"Request id {entry.id!r} is already pending")
        self._entries[entry.id] = entry

    def get(self, request_id: int | str) -> PendingRequest | None:
        return self._entries.get(request_id)

    def resolve(
        self,
        request_id: int | str,
        result: Any = None,
        error: BaseException | None = None,
    ) -> bool:
        """Remove the entry and settle it. False if no such entry is pending."""
        entry = self._entries.pop(request_id, None)
        if entry is None:
            return False
        return entry.settle(result, error)

    def discard(self, request_id: int | str) -> None:
        entry = self._entries.pop(request_id, None)
        if entry is not None:
            entry.abandon()

    def fail_all(self, make_error: Callable[[PendingRequest], BaseException]) -> int:
        entries = list(self._entries.values())
        self._entries.clear()
        return sum(1 for entry in entries if entry.settle(error=make_error(entry)))

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._entries


class ProviderChannel:
    """
    Request/response multiplexer bound to one provider process.

    Created lazily by StdioClient on the first call; lives until the
    process dies or its stdout reaches EOF.
    """

    def __init__(
        self,
        handle: ProcessHandle,
        on_eof: Callable[["ProviderChannel"], Awaitable[None]] | None = None,
    ):
        self.handle = handle
        self.pending = PendingTable()
        self.closed = False
        self._ids = itertools.count(1)
        self._write_lock = asyncio.Lock()
        self._lines = LineBuffer(MAX_LINE_BYTES, on_overflow=self._overflow)
        self._on_eof = on_eof
        self._reader = asyncio.create_task(self._read_loop(), name=f"llmo-reader-{handle.name}")

    @property
    def name(self) -> str:
        return self.handle.name

    def next_id(self) -> int:
        return next(self._ids)

    async def send(self, request: JsonRpcRequest) -> None:
        """Write one request line. Concurrent senders never interleave bytes."""
        stdin = self.handle.stdin
        if stdin is None or stdin.is_closing():
            raise ConnectionResetError(f"stdin of provider {self.name} is closed")
        async with self._write_lock:
            stdin.write(request.to_line())
            await stdin.drain()

    def close(self, reason: str) -> None:
        """Reject every pending request with MCP_UNAVAILABLE and stop reading."""
        if not self.closed:
            self.closed = True
            failed = self.pending.fail_all(lambda entry: McpUnavailableError(reason))
            if failed:
                logger.warning(f"[{self.name}] Rejected {failed} pending request(s): {reason}")
        if self._reader is not asyncio.current_task() and not self._reader.done():
            self._reader.cancel()

    async def _read_loop(self) -> None:
        stdout = self.handle.stdout
        try:
            try:
                while True:
                    chunk = await stdout.read(READ_CHUNK_SIZE)
                    if not chunk:
                        break
                    self._feed(chunk)
            except (ConnectionError, OSError) as e:
                logger.error(f"[{self.name}] Read error: {e}")
            # Runs before close() so an exit can be reported with its exit code.
            if self._on_eof is not None:
                await self._on_eof(self)
        finally:
            self.close(f"Provider {self.name} closed its output stream")

    def _feed(self, chunk: bytes) -> None:
        for line in self._lines.feed(chunk):
            self.handle_line(line)

    def _overflow(self) -> None:
        logger.warning(
            f"[{self.name}] {McpInvalidResponseError.code}: discarding a line longer than {MAX_LINE_BYTES} bytes"
        )

    def handle_line(self, line: bytes) -> None:
        """Parse one line and route it to its pending request."""
        line = line.strip()
        if not line:
            return

        try:
            message = json.loads(line)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.warning(
                f"[{self.name}] {McpInvalidResponseError.code}: discarding unparsable line "
                f"({e}): {line[:200]!r}"
            )
            return

        if not isinstance(message, dict):
            logger.warning(f"[{self.name}] {McpInvalidResponseError.code}: discarding non-object message")
            return

        if "method" in message:
            # Provider-initiated notification or request; nothing here answers those.
            logger.debug(f"[{self.name}] Ignoring provider message: {message.get('method')}")
            return

        request_id = message.get("id")
        if isinstance(request_id, bool) or not isinstance(request_id, (int, str)):
            logger.warning(f"[{self.name}] Dropping response with invalid id {request_id!r}")
            return

        entry = self.pending.get(request_id)
        if entry is None:
            logger.warning(f"[{self.name}] Dropping response for unknown or expired id {request_id!r}")
            return

        response = JsonRpcResponse.from_message(message)
        if response.is_error:
            self.pending.resolve(request_id, error=McpCommunicationError(
                f"{self.name} {entry.method} failed: {response.error_message}",
                rpc_error=response.error,
            ))
        elif not response.has_result:
            self.pending.resolve(request_id, error=McpInvalidResponseError(
                f"{self.name} {entry.method}: response has neither result nor error"
            ))
        else:
            self.pending.resolve(request_id, result=response.result)


class StdioClient:
    """
    JSON-RPC client over the stdio of supervised provider processes.

    Handles are looked up from the supervisor by provider name on every
    call; the client never owns process lifetime.
    """

    def __init__(self, supervisor: ProcessSupervisor, response_timeout: float = 30.0):
        self._supervisor = supervisor
        self.response_timeout = response_timeout
        self._channels: dict[str, ProviderChannel] = {}
        supervisor.add_exit_listener(self._on_exit)

    def pending_count(self, provider: str) -> int:
        channel = self._channels.get(provider)
        return len(channel.pending) if channel else 0

    async def call(
        self,
        provider: str,
        method: str,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Any:
        """
        Send one request and wait for its outcome.

        Raises:
            McpCommunicationError: the provider answered with an error object
            McpInvalidResponseError: the answer had neither result nor error
            McpTimeoutError: no answer within ``timeout`` seconds
            McpUnavailableError: the provider is not running
        """
        channel = self._channel(provider)
        timeout = self.response_timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()

        request = JsonRpcRequest(method=method, params=params or {}, id=channel.next_id())
        entry = PendingRequest(id=request.id, method=method, future=loop.create_future())
        channel.pending.add(entry)
        entry.timer = loop.call_later(timeout, self._expire, channel, request.id, timeout)

        try:
            try:
                await channel.send(request)
            except (ConnectionError, OSError) as e:
                channel.pending.resolve(request.id, error=McpUnavailableError(
                    f"Failed to write to provider {provider}: {e}"
                ))
                self._supervisor.mark_failed(provider, f"write failed: {e}")
            return await entry.future
        finally:
            channel.pending.discard(request.id)

    async def list_tools(self, provider: str, timeout: float | None = None) -> Any:
        return await self.call(provider, "tools/list", {}, timeout)

    async def call_tool(
        self,
        provider: str,
        tool_name: str,
        arguments: dict[str, Any],
        timeout: float | None = None,
    ) -> Any:
        return await self.call(
            provider, "tools/call", {"name": tool_name, "arguments": arguments}, timeout
        )

    def _channel(self, provider: str) -> ProviderChannel:
        handle = self._supervisor.get(provider)
        if handle is None:
            raise McpUnavailableError(f"Unknown provider: {provider}")
        if not handle.is_ready:
            raise McpUnavailableError(f"Provider {provider} is {handle.state.value}")

        channel = self._channels.get(provider)
        if channel is None or channel.handle is not handle:
            channel = ProviderChannel(handle, on_eof=self._on_eof)
            self._channels[provider] = channel
        if channel.closed:
            raise McpUnavailableError(f"Provider {provider} closed its output stream")
        return channel

    @staticmethod
    def _expire(channel: ProviderChannel, request_id: int | str, timeout: float) -> None:
        entry = channel.pending.get(request_id)
        method = entry.method if entry else "request"
        if channel.pending.resolve(request_id, error=McpTimeoutError(
            f"{channel.name} {method} timed out after {timeout}s"
        )):
            logger.warning(f"[{channel.name}] Request {request_id} ({method}) timed out after {timeout}s")

    def _on_exit(self, handle: ProcessHandle) -> None:
        channel = self._channels.get(handle.name)
        if channel is not None and channel.handle is handle:
            detail = f" (exit code {handle.exit_code})" if handle.exit_code is not None else ""
            channel.close(f"Provider {handle.name} is no longer running{detail}")

    async def _on_eof(self, channel: ProviderChannel) -> None:
        handle = channel.handle
        # An exiting process closes stdout first; the exit watcher classifies the exit.
        if await handle.wait_dead(EXIT_AFTER_EOF_TIMEOUT):
            return
        if handle.is_ready:
            self._supervisor.mark_failed(handle.name, "output stream closed while still running")
