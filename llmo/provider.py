"""
Reference MCP provider — the other end of the stdio channel.

A provider is a standalone process that:
1. Reads newline-delimited JSON-RPC requests from stdin
2. Dispatches `tools/list`, `tools/call` and `ping`
3. Writes one JSON-RPC response line per request to stdout

Logging goes to stderr; the broker drains it into its own log.

To build a provider:

    from llmo.provider import StdioToolServer, ToolHandler

    class Greet(ToolHandler):
        name = "greet"
        description = "Greets someone"
        parameters = {"who": {"type": "string", "description": "Name to greet"}}
        required = ["who"]

        def handle(self, arguments: dict) -> dict:
            return {"greeting": f"hello {arguments['who']}"}

    if __name__ == "__main__":
        server = StdioToolServer("greeter")
        server.register(Greet())
        server.run()
"""

from __future__ import annotations

import json
import logging
import sys
from abc import ABC, abstractmethod
from typing import Any, BinaryIO

logger = logging.getLogger(__name__)

PARSE_ERROR = -32700
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603


class ToolHandler(ABC):
    """One tool a provider exposes."""

    name: str = ""
    description: str = ""
    parameters: dict[str, dict] = {}
    required: list[str] = []

    @abstractmethod
    def handle(self, arguments: dict[str, Any]) -> Any:
        """Execute the tool; the return value becomes the JSON-RPC result."""
        ...

    def descriptor(self) -> dict:
        """Entry for `tools/list`."""
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": {
                "type": "object",
                "properties": self.parameters,
                "required": list(self.required),
            },
        }


class StdioToolServer:
    """
    Line-oriented JSON-RPC tool server.

    Supported methods:
        - "tools/list" → list of tool descriptors
        - "tools/call" → {"name", "arguments"} → handler result
        - "ping"       → health check
    """

    def __init__(self, name: str = "provider"):
        self.name = name
        self._handlers: dict[str, ToolHandler] = {}

    def register(self, handler: ToolHandler) -> None:
        if not handler.name:
            raise ValueError(f"ToolHandler {handler.__class__.__name__} has no name")
        if handler.name in self._handlers:
            raise ValueError(f"Tool already registered: {handler.name}")
        self._handlers[handler.name] = handler

    def run(self, stdin: BinaryIO | None = None, stdout: BinaryIO | None = None) -> None:
        """Serve until stdin closes."""
        stdin = stdin or sys.stdin.buffer
        stdout = stdout or sys.stdout.buffer
        logger.info(f"{self.name}: serving {len(self._handlers)} tool(s): {list(self._handlers)}")

        for raw in stdin:
            response = self.handle_line(raw)
            if response is not None:
                stdout.write(json.dumps(response).encode("utf-8") + b"\n")
                stdout.flush()

    def handle_line(self, raw: bytes | str) -> dict | None:
        """Answer one request line. Returns None for blank lines and notifications."""
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        raw = raw.strip()
        if not raw:
            return None

        try:
            request = json.loads(raw)
        except json.JSONDecodeError as e:
            return _error(None, PARSE_ERROR, f"Parse error: {e}")
        if not isinstance(request, dict):
            return _error(None, PARSE_ERROR, "Request must be a JSON object")

        request_id = request.get("id")
        if request_id is None:
            return None

        try:
            result = self._dispatch(request.get("method", ""), request.get("params") or {})
        except LookupError as e:
            return _error(request_id, METHOD_NOT_FOUND, str(e))
        except (TypeError, ValueError) as e:
            return _error(request_id, INVALID_PARAMS, str(e))
        except Exception as e:
            logger.exception(f"{self.name}: request {request_id} failed")
            return _error(request_id, INTERNAL_ERROR, str(e))
        return {"jsonrpc": "2.0", "id": request_id, "result": result}

    def _dispatch(self, method: str, params: dict) -> Any:
        if method == "ping":
            return {"status": "ok", "tools": list(self._handlers)}

        if method == "tools/list":
            return [h.descriptor() for h in self._handlers.values()]

        if method == "tools/call":
            tool_name = params.get("name", "")
            handler = self._handlers.get(tool_name)
            if handler is None:
                raise LookupError(f"Unknown tool: '{tool_name}'. Available: {list(self._handlers)}")
            arguments = params.get("arguments") or {}
            if not isinstance(arguments, dict):
                raise TypeError("'arguments' must be an object")
            return handler.handle(arguments)

        raise LookupError(f"Unknown method: '{method}'")


def _error(request_id: Any, code: int, message: str) -> dict:
    return {"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}}
