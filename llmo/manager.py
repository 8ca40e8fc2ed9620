"""
Process Supervisor — launches and supervises MCP provider processes.

The supervisor owns every provider's OS process and its stdio streams.
Everything else refers to providers by *name* and looks the live handle
up here on each use.

Usage:
    supervisor = ProcessSupervisor()

    # Launch every configured provider (raises StartupError on any failure)
    await supervisor.start_all(config.providers)

    # Look up a live handle
    handle = supervisor.get("echo")

    # Stop everything: SIGTERM, wait for the grace period, then SIGKILL
    await supervisor.shutdown_all(grace=5.0)
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections import deque
from enum import Enum
from typing import Callable, Iterable

from llmo.config import ProviderConfig
from llmo.errors import StartupError
from llmo.framing import LineBuffer

logger = logging.getLogger(__name__)

# Time allowed for the OS to reap a child after SIGKILL.
KILL_REAP_TIMEOUT = 2.0

STDERR_TAIL_LINES = 20
STDERR_CHUNK_SIZE = 64 * 1024
# Longer stderr lines are dropped from the log and the tail.
STDERR_MAX_LINE = 64 * 1024


class ProcessState(str, Enum):
    STARTING = "starting"
    READY = "ready"
    SHUTTING_DOWN = "shutting_down"
    DEAD = "dead"


_ALLOWED_TRANSITIONS = {
    ProcessState.STARTING: {ProcessState.READY, ProcessState.SHUTTING_DOWN, ProcessState.DEAD},
    ProcessState.READY: {ProcessState.SHUTTING_DOWN, ProcessState.DEAD},
    ProcessState.SHUTTING_DOWN: {ProcessState.DEAD},
    ProcessState.DEAD: set(),
}


class ProcessHandle:
    """
    One supervised provider process.

    The state only moves forward: STARTING -> READY -> SHUTTING_DOWN -> DEAD
    (steps may be skipped, never repeated). DEAD is terminal.
    """

    def __init__(self, config: ProviderConfig):
        self.config = config
        self.process: asyncio.subprocess.Process | None = None
        self.state = ProcessState.STARTING
        self.exit_code: int | None = None
        self.stderr_tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        self._exited = asyncio.Event()

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process else None

    @property
    def stdin(self) -> asyncio.StreamWriter | None:
        return self.process.stdin if self.process else None

    @property
    def stdout(self) -> asyncio.StreamReader | None:
        return self.process.stdout if self.process else None

    @property
    def is_ready(self) -> bool:
        return self.state is ProcessState.READY

    @property
    def is_dead(self) -> bool:
        return self.state is ProcessState.DEAD

    def transition(self, new_state: ProcessState) -> bool:
        """Move to ``new_state`` if allowed. Returns False for illegal or repeated moves."""
        if new_state not in _ALLOWED_TRANSITIONS[self.state]:
            return False
        logger.debug(f"[{self.name}] {self.state.value} -> {new_state.value}")
        self.state = new_state
        if new_state is ProcessState.DEAD:
            self._exited.set()
        return True

    async def wait_dead(self, timeout: float | None = None) -> bool:
        """Wait until the handle is DEAD. Returns False on timeout."""
        try:
            await asyncio.wait_for(self._exited.wait(), timeout)
            return True
        except asyncio.TimeoutError:
            return False

    def __repr__(self) -> str:
        return f"<ProcessHandle {self.name} pid={self.pid} state={self.state.value}>"


ExitListener = Callable[[ProcessHandle], None]


class ProcessSupervisor:
    """
    Manages the lifecycle of MCP provider processes.

    Responsibilities:
    - Launch providers as subprocesses with piped stdio
    - Track each provider's state (exactly one handle per name)
    - Detect crashes and notify listeners (the JSON-RPC client)
    - Graceful, bounded shutdown
    """

    def __init__(self):
        self._handles: dict[str, ProcessHandle] = {}
        self._watchers: dict[str, asyncio.Task] = {}
        self._drains: dict[str, asyncio.Task] = {}
        self._exit_listeners: list[ExitListener] = []

    # ── Lookup ──────────────────────────────────────────────

    def get(self, name: str) -> ProcessHandle | None:
        return self._handles.get(name)

    def handles(self) -> list[ProcessHandle]:
        return list(self._handles.values())

    def states(self) -> dict[str, str]:
        """Provider name -> state value, in launch order."""
        return {name: h.state.value for name, h in self._handles.items()}

    def add_exit_listener(self, listener: ExitListener) -> None:
        """Register a callback invoked once when any handle becomes DEAD."""
        self._exit_listeners.append(listener)

    # ── Startup ─────────────────────────────────────────────

    async def start(self, config: ProviderConfig) -> ProcessHandle:
        """Launch one provider. Raises on launch failure; the handle is left DEAD."""
        if config.name in self._handles:
            raise ValueError(f"Provider already registered: {config.name}")

        handle = ProcessHandle(config)
        self._handles[config.name] = handle

        env = {**os.environ, **config.env}
        logger.info(f"Starting provider {config.name}: {' '.join(config.argv)}")
        try:
            handle.process = await asyncio.create_subprocess_exec(
                *config.argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except OSError as e:
            logger.error(f"Failed to launch provider {config.name}: {e}")
            self._mark_dead(handle)
            raise

        self._drains[config.name] = asyncio.create_task(
            self._drain_stderr(handle), name=f"llmo-stderr-{config.name}"
        )
        self._watchers[config.name] = asyncio.create_task(
            self._watch(handle), name=f"llmo-watch-{config.name}"
        )

        if handle.process.returncode is not None:
            self._mark_dead(handle)
            raise RuntimeError(
                f"Provider {config.name} exited immediately with code {handle.process.returncode}"
            )

        handle.transition(ProcessState.READY)
        logger.info(f"Provider {config.name} ready (pid={handle.pid})")
        return handle

    async def start_all(
        self,
        configs: Iterable[ProviderConfig],
        strict: bool = True,
    ) -> dict[str, BaseException | None]:
        """
        Launch one process per config.

        Returns {provider_name: error or None}. With ``strict`` (the default
        boot policy) any failure raises StartupError after every provider
        has been attempted.
        """
        results: dict[str, BaseException | None] = {}
        failures: dict[str, BaseException] = {}
        for config in configs:
            try:
                await self.start(config)
            except Exception as e:
                # A duplicate name keeps the first entry's outcome in results.
                results.setdefault(config.name, e)
                failures.setdefault(config.name, e)
            else:
                results[config.name] = None

        if failures and strict:
            detail = "; ".join(f"{name}: {err}" for name, err in failures.items())
            raise StartupError(f"Failed to start MCP providers: {detail}", failures)
        for name, err in failures.items():
            logger.warning(f"Provider {name} unavailable: {err}")
        return results

    # ── Shutdown ────────────────────────────────────────────

    async def shutdown_all(self, grace: float) -> None:
        """
        Stop every live provider.

        Closes stdin and sends SIGTERM, waits up to ``grace`` seconds for
        voluntary exit, then SIGKILLs survivors. Bounded by
        ``grace + KILL_REAP_TIMEOUT``.
        """
        live = [h for h in self._handles.values() if not h.is_dead]
        if not live:
            return

        logger.info(f"Shutting down {len(live)} provider(s), grace={grace}s")
        for handle in live:
            handle.transition(ProcessState.SHUTTING_DOWN)
            self._request_exit(handle)

        await self._wait_all(live, grace)

        survivors = [h for h in live if not h.is_dead]
        for handle in survivors:
            logger.warning(f"Provider {handle.name} ignored termination, killing")
            self._kill(handle)

        if survivors:
            await self._wait_all(survivors, KILL_REAP_TIMEOUT)
            for handle in survivors:
                if not handle.is_dead:
                    logger.error(f"Provider {handle.name} (pid={handle.pid}) not reaped after kill")
                    self._mark_dead(handle)

        for task in [*self._drains.values(), *self._watchers.values()]:
            if not task.done():
                task.cancel()
        logger.info("All providers stopped")

    def mark_failed(self, name: str, reason: str) -> None:
        """Retire a provider after an unrecoverable I/O error."""
        handle = self._handles.get(name)
        if handle is None or handle.is_dead:
            return
        logger.error(f"Provider {name} failed: {reason}")
        self._kill(handle)
        self._mark_dead(handle)

    # ── Internals ───────────────────────────────────────────

    async def _watch(self, handle: ProcessHandle) -> None:
        code = await handle.process.wait()
        handle.exit_code = code
        if handle.state is ProcessState.SHUTTING_DOWN:
            logger.info(f"Provider {handle.name} exited with code {code}")
        elif not handle.is_dead:
            tail = "\n".join(handle.stderr_tail)
            logger.error(
                f"Provider {handle.name} crashed with code {code}"
                + (f"; stderr tail:\n{tail}" if tail else "")
            )
        self._mark_dead(handle)

    async def _drain_stderr(self, handle: ProcessHandle) -> None:
        stream = handle.process.stderr

        def overflow() -> None:
            handle.stderr_tail.append(f"<stderr line over {STDERR_MAX_LINE} bytes dropped>")
            logger.warning(f"[{handle.name}] Dropped a stderr line longer than {STDERR_MAX_LINE} bytes")

        lines = LineBuffer(STDERR_MAX_LINE, on_overflow=overflow)
        while True:
            chunk = await stream.read(STDERR_CHUNK_SIZE)
            if not chunk:
                return
            for line in lines.feed(chunk):
                text = line.decode("utf-8", errors="replace").rstrip()
                handle.stderr_tail.append(text)
                logger.debug(f"[{handle.name} stderr] {text}")

    def _mark_dead(self, handle: ProcessHandle) -> None:
        if not handle.transition(ProcessState.DEAD):
            return
        for listener in list(self._exit_listeners):
            try:
                listener(handle)
            except Exception:
                logger.exception(f"Exit listener failed for provider {handle.name}")

    @staticmethod
    def _request_exit(handle: ProcessHandle) -> None:
        process = handle.process
        if process is None or process.returncode is not None:
            return
        if process.stdin and not process.stdin.is_closing():
            process.stdin.close()
        try:
            process.terminate()
        except ProcessLookupError:
            pass

    @staticmethod
    def _kill(handle: ProcessHandle) -> None:
        process = handle.process
        if process is None or process.returncode is not None:
            return
        try:
            process.kill()
        except ProcessLookupError:
            pass

    @staticmethod
    async def _wait_all(handles: list[ProcessHandle], timeout: float) -> None:
        await asyncio.gather(*(h.wait_dead(timeout) for h in handles))
