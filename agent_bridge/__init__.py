"""Python SDK that drives an agent CLI over its stream-json control protocol."""

from agent_bridge._errors import (
    AgentBridgeError,
    CLIConnectionError,
    CLIJSONDecodeError,
    CLINotFoundError,
    ControlProtocolError,
    ControlRequestError,
    ControlRequestTimeoutError,
    HookTimeoutError,
    McpContractError,
    McpError,
    McpNotFoundError,
    MessageParseError,
    ProcessError,
)
from agent_bridge._internal.transport import Transport
from agent_bridge._version import __version__
from agent_bridge.client import AgentBridgeClient, query
from agent_bridge.mcp_server import (
    SdkMcpPrompt,
    SdkMcpResource,
    SdkMcpServer,
    SdkMcpTool,
    create_prompt,
    create_resource,
    create_sdk_mcp_server,
    create_tool,
    tool,
)
from agent_bridge.types import (
    AgentDefinition,
    AgentOptions,
    AssistantMessage,
    AsyncHookJSONOutput,
    BaseHookInput,
    ContentBlock,
    HookCallback,
    HookContext,
    HookEvent,
    HookMatcher,
    McpSdkServerConfig,
    McpServerConfig,
    Message,
    NotificationHookInput,
    PermissionMode,
    PermissionRequestHookInput,
    PermissionResultAllow,
    PermissionResultDeny,
    PermissionRuleValue,
    PermissionUpdate,
    PostToolUseFailureHookInput,
    PostToolUseHookInput,
    PostToolUseHookSpecificOutput,
    PreCompactHookInput,
    PreToolUseHookInput,
    PreToolUseHookSpecificOutput,
    ResultMessage,
    SandboxIgnoreViolations,
    SandboxNetworkConfig,
    SandboxSettings,
    SdkPluginConfig,
    SessionStartHookSpecificOutput,
    StopHookInput,
    StreamEvent,
    SubagentStartHookInput,
    SubagentStopHookInput,
    SyncHookJSONOutput,
    SystemMessage,
    TextBlock,
    ThinkingBlock,
    ToolPermissionContext,
    ToolResultBlock,
    ToolUseBlock,
    UserMessage,
    UserPromptSubmitHookInput,
    UserPromptSubmitHookSpecificOutput,
)

__all__ = [
    "__version__",
    # Entry points
    "query",
    "AgentBridgeClient",
    "Transport",
    "AgentOptions",
    "AgentDefinition",
    "SdkPluginConfig",
    "SandboxSettings",
    "SandboxNetworkConfig",
    "SandboxIgnoreViolations",
    # Messages
    "Message",
    "UserMessage",
    "AssistantMessage",
    "SystemMessage",
    "ResultMessage",
    "StreamEvent",
    "ContentBlock",
    "TextBlock",
    "ThinkingBlock",
    "ToolUseBlock",
    "ToolResultBlock",
    # Permissions
    "PermissionMode",
    "PermissionRuleValue",
    "PermissionUpdate",
    "ToolPermissionContext",
    "PermissionResultAllow",
    "PermissionResultDeny",
    # Hooks
    "HookEvent",
    "HookCallback",
    "HookContext",
    "HookMatcher",
    "BaseHookInput",
    "PreToolUseHookInput",
    "PostToolUseHookInput",
    "PostToolUseFailureHookInput",
    "UserPromptSubmitHookInput",
    "StopHookInput",
    "SubagentStopHookInput",
    "SubagentStartHookInput",
    "NotificationHookInput",
    "PermissionRequestHookInput",
    "PreCompactHookInput",
    "SyncHookJSONOutput",
    "AsyncHookJSONOutput",
    "PreToolUseHookSpecificOutput",
    "PostToolUseHookSpecificOutput",
    "UserPromptSubmitHookSpecificOutput",
    "SessionStartHookSpecificOutput",
    # In-process MCP servers
    "McpServerConfig",
    "McpSdkServerConfig",
    "SdkMcpServer",
    "SdkMcpTool",
    "SdkMcpResource",
    "SdkMcpPrompt",
    "tool",
    "create_tool",
    "create_resource",
    "create_prompt",
    "create_sdk_mcp_server",
    # Errors
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
]
