"""Error types for the agent bridge SDK."""

from typing import Any


class AgentBridgeError(Exception):
    """Base exception for all SDK errors."""

    def __str__(self) -> str:
        return self.args[0] if self.args else "An error occurred in the agent bridge SDK"


class CLIConnectionError(AgentBridgeError):
    """Raised when unable to connect to the CLI or the connection is lost."""


class CLINotFoundError(CLIConnectionError):
    """Raised when the CLI is not found or not installed."""

    def __init__(self, message: str = "Agent CLI not found", cli_path: str | None = None):
        if cli_path:
            message = f"{message}: {cli_path}"
        super().__init__(message)
        self.cli_path = cli_path


class ProcessError(AgentBridgeError):
    """Raised when the CLI process fails."""

    def __init__(self, message: str, exit_code: int | None = None, stderr: str | None = None):
        if exit_code is not None:
            message = f"{message} (exit code: {exit_code})"
        if stderr:
            message = f"{message}\nError output: {stderr}"
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr


class CLIJSONDecodeError(AgentBridgeError):
    """Raised when unable to decode JSON from CLI output."""

    def __init__(self, line: str, original_error: Exception):
        super().__init__(f"Failed to decode JSON: {line[:100]}...")
        self.line = line
        self.original_error = original_error


class MessageParseError(AgentBridgeError):
    """Raised when unable to parse a message from CLI output."""

    def __init__(self, message: str, data: Any = None):
        super().__init__(message)
        self.data = data


class ControlProtocolError(AgentBridgeError):
    """Raised for malformed or unroutable control traffic.

    Covers unknown request subtypes, unknown hook callback ids and unknown
    SDK MCP server names.
    """


class ControlRequestError(AgentBridgeError):
    """Raised when the peer answers a control request with an error."""

    def __init__(self, message: str, subtype: str | None = None):
        super().__init__(message)
        self.subtype = subtype


class ControlRequestTimeoutError(AgentBridgeError, TimeoutError):
    """Raised when a control request receives no response within its ceiling."""

    def __init__(
        self,
        subtype: str | None,
        timeout: float | None = None,
        message: str | None = None,
    ):
        if message is None:
            message = f"Control request timeout: {subtype}"
            if timeout is not None:
                message = f"{message} (after {timeout:g}s)"
        super().__init__(message)
        self.subtype = subtype
        self.timeout = timeout


class HookTimeoutError(ControlRequestTimeoutError):
    """Raised when a hook callback exceeds its registered timeout."""

    def __init__(self, callback_id: str, timeout: float):
        super().__init__(
            "hook_callback",
            timeout,
            message=f"Hook callback {callback_id} timed out after {timeout:g}s",
        )
        self.callback_id = callback_id


class McpError(AgentBridgeError):
    """Error raised by an in-process MCP server, carrying a JSON-RPC error code."""

    def __init__(self, message: str, code: int):
        super().__init__(message)
        self.code = code


class McpNotFoundError(McpError):
    """Raised when a tool, resource or prompt is not registered."""


class McpContractError(McpError):
    """Raised when a tool, resource or prompt handler returns a malformed value."""


# Compatibility aliases
SDKError = AgentBridgeError
JSONDecodeError = CLIJSONDecodeError


__all__ = [
    "AgentBridgeError",
    "CLIConnectionError",
    "CLINotFoundError",
    "ProcessError",
    "CLIJSONDecodeError",
    "MessageParseError",
    "ControlProtocolError",
    "ControlRequestError",
    "ControlRequestTimeoutError",
    "HookTimeoutError",
    "McpError",
    "McpNotFoundError",
    "McpContractError",
    # Compatibility aliases
    "SDKError",
    "JSONDecodeError",
]
