"""
Error taxonomy for the LLMO broker.

Every error that can reach a chat caller carries a stable ``code`` so the
HTTP layer (and the model, for tool failures) sees a structured value:

    launch         MCP_LAUNCH_FAILED
    transport      MCP_COMMUNICATION_ERROR, MCP_INVALID_RESPONSE
    timeout        MCP_TIMEOUT
    availability   MCP_UNAVAILABLE
    orchestration  TOOL_NOT_FOUND, MAX_ITERATIONS_EXCEEDED
    model backend  LLM_ERROR
"""

from __future__ import annotations

from typing import Any


class LLMOError(Exception):
    """Base class for all broker errors."""

    code = "LLMO_ERROR"

    def __init__(self, message: str, *, code: str | None = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message}


class ConfigError(LLMOError):
    code = "CONFIG_ERROR"


class StartupError(LLMOError):
    """One or more providers failed to launch during a strict boot."""

    code = "MCP_LAUNCH_FAILED"

    def __init__(self, message: str, failures: dict[str, BaseException] | None = None):
        super().__init__(message)
        self.failures = failures or {}


class McpUnavailableError(LLMOError):
    code = "MCP_UNAVAILABLE"


class McpCommunicationError(LLMOError):
    code = "MCP_COMMUNICATION_ERROR"

    def __init__(self, message: str, rpc_error: Any = None):
        super().__init__(message)
        self.rpc_error = rpc_error


class McpTimeoutError(LLMOError):
    code = "MCP_TIMEOUT"


class McpInvalidResponseError(LLMOError):
    code = "MCP_INVALID_RESPONSE"


class ToolNotFoundError(LLMOError):
    code = "TOOL_NOT_FOUND"


class IterationLimitError(LLMOError):
    code = "MAX_ITERATIONS_EXCEEDED"


class LLMError(LLMOError):
    code = "LLM_ERROR"


class InvalidRequestError(LLMOError):
    code = "INVALID_REQUEST"
