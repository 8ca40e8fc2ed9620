"""
LLMO server — end-to-end: config → providers → tool registry → HTTP.

Boot sequence:
1. Load the YAML config (and .env)
2. Launch every configured MCP provider (all-or-nothing)
3. Discover tools and build the registry snapshot
4. Bind the HTTP port and serve /health and /chat
5. On exit, shut the providers down

Exit codes: 0 normal, 1 failure, 2 port already in use. Providers are
always shut down before a non-zero exit.

Usage:
    llmo --config config.yaml
    PORT=8080 llmo --verbose
"""

from __future__ import annotations

import argparse
import asyncio
import errno
import logging
import os
import socket
import sys

import uvicorn
from dotenv import load_dotenv

from llmo.api import create_app
from llmo.config import DEFAULT_HOST, DEFAULT_PORT, Timeouts, load_config
from llmo.engine import ChatEngine
from llmo.llm import LangChainLLMClient
from llmo.manager import ProcessSupervisor
from llmo.registry import ToolRegistry
from llmo.transport import StdioClient

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_PORT_IN_USE = 2


class PortInUseError(OSError):
    pass


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="llmo",
        description="Serve tool-augmented chat backed by stdio MCP providers.",
    )
    parser.add_argument("--config", "-c", type=str, default=None,
                        help="Config file (default: $CONFIG_PATH or ./config.yaml)")
    parser.add_argument("--host", type=str, default=None, help=f"Bind address (default: $HOST or {DEFAULT_HOST})")
    parser.add_argument("--port", "-p", type=int, default=None, help=f"Port (default: $PORT or {DEFAULT_PORT})")
    parser.add_argument("--verbose", "-v", action="store_true", help="Show debug output")
    return parser


def bind_socket(host: str, port: int) -> socket.socket:
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    try:
        sock.bind((host, port))
    except OSError as e:
        sock.close()
        if e.errno == errno.EADDRINUSE:
            raise PortInUseError(e.errno, f"Port {port} is already in use by another process") from e
        raise
    sock.set_inheritable(True)
    return sock


async def shutdown_providers(supervisor: ProcessSupervisor, grace: float) -> None:
    try:
        await supervisor.shutdown_all(grace)
    except Exception:
        logger.exception("Failed to shut down MCP providers cleanly")


async def serve(args: argparse.Namespace) -> int:
    host = args.host or os.environ.get("HOST") or DEFAULT_HOST
    port = args.port if args.port is not None else int(os.environ.get("PORT") or DEFAULT_PORT)

    supervisor = ProcessSupervisor()
    grace = Timeouts().graceful_shutdown
    try:
        logger.info("Starting LLMO server...")
        config = load_config(args.config)
        grace = config.timeouts.graceful_shutdown

        await supervisor.start_all(config.providers, strict=True)
        client = StdioClient(supervisor, response_timeout=config.timeouts.mcp_response)
        registry = await ToolRegistry.build(supervisor, client)

        engine = ChatEngine(
            registry,
            client,
            LangChainLLMClient(timeout=config.timeouts.llm_response),
            max_iterations=config.orchestration.max_iterations,
            tool_timeout=config.timeouts.mcp_response,
            max_parallel_tools=config.orchestration.max_parallel_tools,
        )
        app = create_app(engine, supervisor, registry)

        sock = bind_socket(host, port)
        server = uvicorn.Server(uvicorn.Config(
            app,
            log_level="debug" if args.verbose else "info",
        ))
        logger.info(f"LLMO server is listening on {host}:{port}")
        await server.serve(sockets=[sock])
        return EXIT_OK
    except PortInUseError:
        logger.error(
            f"Port {port} is already in use by another process. Either stop the "
            f"conflicting process (see `lsof -i :{port}`) or start LLMO on a "
            f"different port: PORT=<port> llmo"
        )
        return EXIT_PORT_IN_USE
    except Exception:
        logger.exception("Failed to start server")
        return EXIT_FAILURE
    finally:
        await shutdown_providers(supervisor, grace)


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    load_dotenv()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        return asyncio.run(serve(args))
    except KeyboardInterrupt:
        return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
