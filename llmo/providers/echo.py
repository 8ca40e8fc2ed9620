"""
Echo provider — minimal provider for smoke tests.

Launch:
    python -m llmo.providers.echo

Test:
    echo '{"jsonrpc":"2.0","method":"tools/list","params":{},"id":1}' | python -m llmo.providers.echo
"""

import logging

from llmo.provider import StdioToolServer, ToolHandler


class EchoTool(ToolHandler):
    name = "echo"
    description = "Echoes back the input message. Useful for testing."
    parameters = {
        "message": {"type": "string", "description": "The message to echo back"},
    }
    required = ["message"]

    def handle(self, arguments: dict) -> dict:
        message = str(arguments.get("message", ""))
        return {"echoed": message, "length": len(message)}


class ReverseTool(ToolHandler):
    name = "reverse"
    description = "Returns the input message reversed."
    parameters = {
        "message": {"type": "string", "description": "The message to reverse"},
    }
    required = ["message"]

    def handle(self, arguments: dict) -> dict:
        return {"reversed": str(arguments.get("message", ""))[::-1]}


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
    server = StdioToolServer("echo")
    server.register(EchoTool())
    server.register(ReverseTool())
    server.run()


if __name__ == "__main__":
    main()
