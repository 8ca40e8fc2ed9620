"""
LLMO — tool-augmented chat over stdio MCP providers.

Architecture:
    ┌────────────┐  HTTP   ┌──────────────┐   stdio    ┌──────────────┐
    │   caller   │ ──────▶ │  ChatEngine  │ ─────────▶ │   provider   │
    │            │ ◀────── │  (rounds)    │  JSON-RPC  │ (subprocess) │
    └────────────┘  SSE    └──────────────┘   pipes    └──────────────┘
                                  │
                                  ▼
                              LLMClient

ProcessSupervisor owns the provider processes, StdioClient multiplexes
JSON-RPC calls over their stdio, ToolRegistry is the startup snapshot of
their tools, and ChatEngine loops between the model and the tools.
"""

__version__ = "0.1.0"

from llmo.engine import ChatEngine, ChatResult, ChatTurn, ToolResult
from llmo.errors import LLMOError
from llmo.llm import LangChainLLMClient, LLMClient, ModelResponse, ToolInvocation
from llmo.manager import ProcessState, ProcessSupervisor
from llmo.registry import ToolDefinition, ToolRegistry
from llmo.transport import StdioClient


# FastAPI is only needed when serving
def create_app(*args, **kwargs):
    from llmo.api import create_app as _impl
    return _impl(*args, **kwargs)


__all__ = [
    "ChatEngine",
    "ChatResult",
    "ChatTurn",
    "LLMClient",
    "LLMOError",
    "LangChainLLMClient",
    "ModelResponse",
    "ProcessState",
    "ProcessSupervisor",
    "StdioClient",
    "ToolDefinition",
    "ToolInvocation",
    "ToolRegistry",
    "ToolResult",
    "create_app",
]
