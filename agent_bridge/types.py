"""Public type definitions for the agent bridge SDK."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal, NotRequired, TypedDict, Union

import anyio
from pydantic import BaseModel, ConfigDict, Field

# =============================================================================
# ContentBlock Types
# =============================================================================


@dataclass
class TextBlock:
    """Text content block."""

    text: str


@dataclass
class ThinkingBlock:
    """Thinking/reasoning content block."""

    thinking: str
    signature: str


@dataclass
class ToolUseBlock:
    """Tool use content block.

    Represents a tool invocation with its parameters.
    """

    id: str
    name: str
    input: dict[str, Any]


@dataclass
class ToolResultBlock:
    """Tool result content block."""

    tool_use_id: str
    content: str | list[dict[str, Any]] | None = None
    is_error: bool | None = None


ContentBlock = TextBlock | ThinkingBlock | ToolUseBlock | ToolResultBlock


# =============================================================================
# Message Types
# =============================================================================


@dataclass
class UserMessage:
    """User message with optional tool results."""

    content: str | list[ContentBlock]
    uuid: str | None = None
    parent_tool_use_id: str | None = None
    tool_use_result: dict[str, Any] | None = None


@dataclass
class AssistantMessage:
    """Assistant message with content blocks."""

    content: list[ContentBlock]
    model: str
    parent_tool_use_id: str | None = None
    error: str | None = None


@dataclass
class SystemMessage:
    """System message with metadata."""

    subtype: str
    data: dict[str, Any]


@dataclass
class ResultMessage:
    """Result message with cost and usage information.

    Marks the end of one agent turn.
    """

    subtype: str
    duration_ms: int
    duration_api_ms: int
    is_error: bool
    num_turns: int
    session_id: str
    total_cost_usd: float | None = None
    usage: dict[str, Any] | None = None
    result: str | None = None
    structured_output: Any = None


@dataclass
class StreamEvent:
    """Raw partial-message stream event."""

    uuid: str
    session_id: str
    event: dict[str, Any]
    parent_tool_use_id: str | None = None


Message = UserMessage | AssistantMessage | SystemMessage | ResultMessage | StreamEvent


# =============================================================================
# Cancellation
# =============================================================================


class AbortSignal:
    """Cooperative cancellation token handed to every callback invocation.

    The control protocol aborts the signal when the peer cancels the request
    the callback is serving. Callbacks may poll ``aborted`` or ``await wait()``.
    """

    def __init__(self) -> None:
        self._aborted = False
        self._event: anyio.Event | None = None

    @property
    def aborted(self) -> bool:
        return self._aborted

    def abort(self) -> None:
        self._aborted = True
        if self._event is not None:
            self._event.set()

    async def wait(self) -> None:
        """Suspend until the signal is aborted."""
        if self._aborted:
            return
        if self._event is None:
            self._event = anyio.Event()
        await self._event.wait()


# =============================================================================
# Permission System Types
# =============================================================================

PermissionMode = Literal["default", "acceptEdits", "plan", "bypassPermissions"]

PermissionUpdateDestination = Literal[
    "userSettings", "projectSettings", "localSettings", "session"
]

PermissionBehavior = Literal["allow", "deny", "ask"]


@dataclass
class PermissionRuleValue:
    """Permission rule value."""

    tool_name: str
    rule_content: str | None = None


@dataclass
class PermissionUpdate:
    """Permission update configuration.

    Defines how permissions should be modified during a session.
    """

    type: Literal[
        "addRules",
        "replaceRules",
        "removeRules",
        "setMode",
        "addDirectories",
        "removeDirectories",
    ]
    rules: list[PermissionRuleValue] | None = None
    behavior: PermissionBehavior | None = None
    mode: PermissionMode | None = None
    directories: list[str] | None = None
    destination: PermissionUpdateDestination | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary format for JSON serialization."""
        result: dict[str, Any] = {"type": self.type}

        if self.destination is not None:
            result["destination"] = self.destination

        if self.type in ["addRules", "replaceRules", "removeRules"]:
            if self.rules is not None:
                result["rules"] = [
                    {
                        "toolName": rule.tool_name,
                        "ruleContent": rule.rule_content,
                    }
                    for rule in self.rules
                ]
            if self.behavior is not None:
                result["behavior"] = self.behavior

        elif self.type == "setMode":
            if self.mode is not None:
                result["mode"] = self.mode

        elif self.type in ["addDirectories", "removeDirectories"]:
            if self.directories is not None:
                result["directories"] = self.directories

        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PermissionUpdate":
        """Build an update from its wire representation."""
        rules = data.get("rules")
        return cls(
            type=data["type"],
            rules=(
                [
                    PermissionRuleValue(
                        tool_name=rule.get("toolName") or rule.get("tool_name", ""),
                        rule_content=rule.get("ruleContent", rule.get("rule_content")),
                    )
                    for rule in rules
                ]
                if rules is not None
                else None
            ),
            behavior=data.get("behavior"),
            mode=data.get("mode"),
            directories=data.get("directories"),
            destination=data.get("destination"),
        )


@dataclass
class ToolPermissionContext:
    """Context information for tool permission callbacks."""

    signal: AbortSignal | None = None
    suggestions: list[PermissionUpdate] = field(default_factory=list)
    blocked_path: str | None = None


@dataclass
class PermissionResultAllow:
    """Allow permission result, optionally rewriting the tool input."""

    behavior: Literal["allow"] = "allow"
    updated_input: dict[str, Any] | None = None
    updated_permissions: list[PermissionUpdate] | None = None


@dataclass
class PermissionResultDeny:
    """Deny permission result."""

    behavior: Literal["deny"] = "deny"
    message: str = ""
    interrupt: bool = False


PermissionResult = PermissionResultAllow | PermissionResultDeny

CanUseTool = Callable[
    [str, dict[str, Any], ToolPermissionContext],
    Union[PermissionResult, Awaitable[PermissionResult]],
]


# =============================================================================
# Hook Input Types
# =============================================================================

HookEvent = Literal[
    "PreToolUse",
    "PostToolUse",
    "PostToolUseFailure",
    "UserPromptSubmit",
    "Stop",
    "SubagentStop",
    "SubagentStart",
    "Notification",
    "PermissionRequest",
    "PreCompact",
]


class BaseHookInput(BaseModel):
    """Fields shared by every hook event.

    Unknown fields are kept so newer peers can send data this SDK does not
    model yet.
    """

    session_id: str | None = None
    transcript_path: str | None = None
    cwd: str | None = None
    permission_mode: str | None = None

    model_config = ConfigDict(extra="allow", populate_by_name=True)


class PreToolUseHookInput(BaseHookInput):
    """Input data for PreToolUse hook events."""

    hook_event_name: Literal["PreToolUse"] = "PreToolUse"
    tool_name: str = ""
    tool_input: dict[str, Any] = Field(default_factory=dict)


class PostToolUseHookInput(BaseHookInput):
    """Input data for PostToolUse hook events."""

    hook_event_name: Literal["PostToolUse"] = "PostToolUse"
    tool_name: str = ""
    tool_input: dict[str, Any] = Field(default_factory=dict)
    tool_response: Any = None


class PostToolUseFailureHookInput(BaseHookInput):
    """Input data for PostToolUseFailure hook events."""

    hook_event_name: Literal["PostToolUseFailure"] = "PostToolUseFailure"
    tool_name: str = ""
    tool_input: dict[str, Any] = Field(default_factory=dict)
    tool_use_id: str | None = None
    error: str | None = None
    is_interrupt: bool | None = None


class UserPromptSubmitHookInput(BaseHookInput):
    """Input data for UserPromptSubmit hook events."""

    hook_event_name: Literal["UserPromptSubmit"] = "UserPromptSubmit"
    prompt: str = ""


class StopHookInput(BaseHookInput):
    """Input data for Stop hook events."""

    hook_event_name: Literal["Stop"] = "Stop"
    stop_hook_active: bool = False


class SubagentStopHookInput(BaseHookInput):
    """Input data for SubagentStop hook events."""

    hook_event_name: Literal["SubagentStop"] = "SubagentStop"
    stop_hook_active: bool = False
    agent_id: str | None = None
    agent_transcript_path: str | None = None
    agent_type: str | None = None


class SubagentStartHookInput(BaseHookInput):
    """Input data for SubagentStart hook events."""

    hook_event_name: Literal["SubagentStart"] = "SubagentStart"
    agent_id: str | None = None
    agent_type: str | None = None


class NotificationHookInput(BaseHookInput):
    """Input data for Notification hook events."""

    hook_event_name: Literal["Notification"] = "Notification"
    message: str = ""
    title: str | None = None
    notification_type: str | None = None


class PermissionRequestHookInput(BaseHookInput):
    """Input data for PermissionRequest hook events."""

    hook_event_name: Literal["PermissionRequest"] = "PermissionRequest"
    tool_name: str = ""
    tool_input: dict[str, Any] = Field(default_factory=dict)
    permission_suggestions: list[dict[str, Any]] | None = None


class PreCompactHookInput(BaseHookInput):
    """Input data for PreCompact hook events."""

    hook_event_name: Literal["PreCompact"] = "PreCompact"
    trigger: str | None = None  # "manual" or "auto"
    custom_instructions: str | None = None


HookInput = (
    BaseHookInput
    | PreToolUseHookInput
    | PostToolUseHookInput
    | PostToolUseFailureHookInput
    | UserPromptSubmitHookInput
    | StopHookInput
    | SubagentStopHookInput
    | SubagentStartHookInput
    | NotificationHookInput
    | PermissionRequestHookInput
    | PreCompactHookInput
)


# =============================================================================
# Hook Output Types
# =============================================================================


@dataclass
class PreToolUseHookSpecificOutput:
    """Hook-specific output for PreToolUse events."""

    permission_decision: PermissionBehavior | None = None
    permission_decision_reason: str | None = None
    updated_input: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"hookEventName": "PreToolUse"}
        if self.permission_decision is not None:
            result["permissionDecision"] = self.permission_decision
        if self.permission_decision_reason is not None:
            result["permissionDecisionReason"] = self.permission_decision_reason
        if self.updated_input is not None:
            result["updatedInput"] = self.updated_input
        return result


@dataclass
class _AdditionalContextOutput:
    additional_context: str | None = None

    _event_name = ""

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"hookEventName": self._event_name}
        if self.additional_context is not None:
            result["additionalContext"] = self.additional_context
        return result


@dataclass
class PostToolUseHookSpecificOutput(_AdditionalContextOutput):
    """Hook-specific output for PostToolUse events."""

    _event_name = "PostToolUse"


@dataclass
class UserPromptSubmitHookSpecificOutput(_AdditionalContextOutput):
    """Hook-specific output for UserPromptSubmit events."""

    _event_name = "UserPromptSubmit"


@dataclass
class SessionStartHookSpecificOutput(_AdditionalContextOutput):
    """Hook-specific output for SessionStart events."""

    _event_name = "SessionStart"


HookSpecificOutput = (
    PreToolUseHookSpecificOutput
    | PostToolUseHookSpecificOutput
    | UserPromptSubmitHookSpecificOutput
    | SessionStartHookSpecificOutput
)


@dataclass
class AsyncHookJSONOutput:
    """Hook output that defers the hook's effect."""

    async_timeout: int | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"async": True}
        if self.async_timeout is not None:
            result["asyncTimeout"] = self.async_timeout
        return result


@dataclass
class SyncHookJSONOutput:
    """Synchronous hook output with control and decision fields."""

    continue_: bool = True
    suppress_output: bool = False
    stop_reason: str | None = None
    decision: Literal["block"] | None = None
    system_message: str | None = None
    reason: str | None = None
    hook_specific_output: HookSpecificOutput | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"continue": self.continue_}
        if self.suppress_output:
            result["suppressOutput"] = True
        if self.stop_reason is not None:
            result["stopReason"] = self.stop_reason
        if self.decision is not None:
            result["decision"] = self.decision
        if self.system_message is not None:
            result["systemMessage"] = self.system_message
        if self.reason is not None:
            result["reason"] = self.reason
        if self.hook_specific_output is not None:
            result["hookSpecificOutput"] = self.hook_specific_output.to_dict()
        return result


HookJSONOutput = AsyncHookJSONOutput | SyncHookJSONOutput | dict[str, Any]


@dataclass
class HookContext:
    """Context information for hook callbacks."""

    signal: AbortSignal | None = None


HookCallback = Callable[
    [HookInput, str | None, HookContext],
    Union[HookJSONOutput, None, Awaitable[HookJSONOutput | None]],
]


@dataclass
class HookMatcher:
    """Hook matcher configuration.

    ``timeout`` (seconds) bounds every callback registered by this matcher.
    """

    matcher: str | None = None
    hooks: list[HookCallback] = field(default_factory=list)
    timeout: float | None = None


# =============================================================================
# MCP Server Types
# =============================================================================


class McpStdioServerConfig(TypedDict):
    """MCP stdio server configuration."""

    type: NotRequired[Literal["stdio"]]
    command: str
    args: NotRequired[list[str]]
    env: NotRequired[dict[str, str]]


class McpSSEServerConfig(TypedDict):
    """MCP SSE server configuration."""

    type: Literal["sse"]
    url: str
    headers: NotRequired[dict[str, str]]


class McpHttpServerConfig(TypedDict):
    """MCP HTTP server configuration."""

    type: Literal["http"]
    url: str
    headers: NotRequired[dict[str, str]]


class McpSdkServerConfig(TypedDict):
    """In-process MCP server configuration (see ``create_sdk_mcp_server``)."""

    type: Literal["sdk"]
    name: str
    instance: Any  # SdkMcpServer


McpServerConfig = (
    McpStdioServerConfig | McpSSEServerConfig | McpHttpServerConfig | McpSdkServerConfig
)


class SystemPromptPreset(TypedDict):
    """System prompt preset configuration."""

    type: Literal["preset"]
    preset: str
    append: NotRequired[str]


# =============================================================================
# Subagent, Plugin and Sandbox Types
# =============================================================================


@dataclass
class AgentDefinition:
    """A custom subagent passed to the CLI with ``--agents``."""

    description: str
    prompt: str
    tools: list[str] | None = None
    model: Literal["sonnet", "opus", "haiku", "inherit"] | str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"description": self.description, "prompt": self.prompt}
        if self.tools is not None:
            result["tools"] = self.tools
        if self.model is not None:
            result["model"] = self.model
        return result


@dataclass
class SdkPluginConfig:
    """A local plugin directory loaded by the CLI."""

    path: str | Path
    type: Literal["plugin"] = "plugin"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "path": str(self.path)}


@dataclass
class SandboxNetworkConfig:
    """Network allowances for sandboxed commands."""

    allow_unix_sockets: list[str] | None = None
    allow_all_unix_sockets: bool | None = None
    allow_local_binding: bool | None = None
    http_proxy_port: int | None = None
    socks_proxy_port: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return _compact(
            {
                "allowUnixSockets": self.allow_unix_sockets,
                "allowAllUnixSockets": self.allow_all_unix_sockets,
                "allowLocalBinding": self.allow_local_binding,
                "httpProxyPort": self.http_proxy_port,
                "socksProxyPort": self.socks_proxy_port,
            }
        )


@dataclass
class SandboxIgnoreViolations:
    """Sandbox violations to ignore, keyed by kind."""

    file: list[str] | None = None
    network: list[str] | None = None

    def to_dict(self) -> dict[str, Any]:
        return _compact({"file": self.file, "network": self.network})


@dataclass
class SandboxSettings:
    """Command sandboxing, merged into the ``--settings`` JSON under ``sandbox``."""

    enabled: bool | None = None
    auto_allow_bash_if_sandboxed: bool | None = None
    excluded_commands: list[str] | None = None
    allow_unsandboxed_commands: bool | None = None
    network: SandboxNetworkConfig | None = None
    ignore_violations: SandboxIgnoreViolations | None = None
    enable_weaker_nested_sandbox: bool | None = None

    def to_dict(self) -> dict[str, Any]:
        return _compact(
            {
                "enabled": self.enabled,
                "autoAllowBashIfSandboxed": self.auto_allow_bash_if_sandboxed,
                "excludedCommands": self.excluded_commands,
                "allowUnsandboxedCommands": self.allow_unsandboxed_commands,
                "network": self.network.to_dict() if self.network else None,
                "ignoreViolations": (
                    self.ignore_violations.to_dict() if self.ignore_violations else None
                ),
                "enableWeakerNestedSandbox": self.enable_weaker_nested_sandbox,
            }
        )


def _compact(values: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in values.items() if value is not None}


SettingSource = Literal["user", "project", "local"]


# =============================================================================
# Options
# =============================================================================


@dataclass
class AgentOptions:
    """Configuration for a CLI session.

    Timeouts left as ``None`` fall back to the ``AGENT_BRIDGE_*_TIMEOUT``
    environment defaults.
    """

    allowed_tools: list[str] = field(default_factory=list)
    disallowed_tools: list[str] = field(default_factory=list)
    system_prompt: str | SystemPromptPreset | None = None
    mcp_servers: dict[str, McpServerConfig] | str | Path = field(default_factory=dict)
    permission_mode: PermissionMode | None = None
    permission_prompt_tool_name: str | None = None
    continue_conversation: bool = False
    resume: str | None = None
    fork_session: bool = False
    max_turns: int | None = None
    max_budget_usd: float | None = None
    model: str | None = None
    fallback_model: str | None = None
    cwd: str | Path | None = None
    cli_path: str | Path | None = None
    settings: str | dict[str, Any] | None = None
    setting_sources: list[SettingSource] | None = None
    sandbox: SandboxSettings | dict[str, Any] | None = None
    add_dirs: list[str | Path] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    extra_args: dict[str, str | None] = field(default_factory=dict)
    max_buffer_size: int | None = None
    stderr: Callable[[str], None] | None = None
    include_partial_messages: bool = False
    enable_file_checkpointing: bool = False
    output_format: dict[str, Any] | str | None = None
    agents: dict[str, AgentDefinition] | None = None
    plugins: list[SdkPluginConfig | dict[str, Any]] = field(default_factory=list)
    betas: list[str] = field(default_factory=list)
    can_use_tool: CanUseTool | None = None
    hooks: dict[HookEvent | str, list[HookMatcher]] | None = None
    entrypoint: str = "sdk-py"
    control_timeout: float | None = None
    long_control_timeout: float | None = None
    initialize_timeout: float | None = None


__all__ = [
    # Content blocks
    "TextBlock",
    "ThinkingBlock",
    "ToolUseBlock",
    "ToolResultBlock",
    "ContentBlock",
    # Messages
    "UserMessage",
    "AssistantMessage",
    "SystemMessage",
    "ResultMessage",
    "StreamEvent",
    "Message",
    # Cancellation
    "AbortSignal",
    # Permissions
    "PermissionMode",
    "PermissionUpdateDestination",
    "PermissionBehavior",
    "PermissionRuleValue",
    "PermissionUpdate",
    "ToolPermissionContext",
    "PermissionResultAllow",
    "PermissionResultDeny",
    "PermissionResult",
    "CanUseTool",
    # Hook inputs
    "HookEvent",
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
    "HookInput",
    # Hook outputs
    "PreToolUseHookSpecificOutput",
    "PostToolUseHookSpecificOutput",
    "UserPromptSubmitHookSpecificOutput",
    "SessionStartHookSpecificOutput",
    "HookSpecificOutput",
    "AsyncHookJSONOutput",
    "SyncHookJSONOutput",
    "HookJSONOutput",
    "HookContext",
    "HookCallback",
    "HookMatcher",
    # MCP
    "McpStdioServerConfig",
    "McpSSEServerConfig",
    "McpHttpServerConfig",
    "McpSdkServerConfig",
    "McpServerConfig",
    "SystemPromptPreset",
    # Subagents, plugins and sandbox
    "AgentDefinition",
    "SdkPluginConfig",
    "SandboxNetworkConfig",
    "SandboxIgnoreViolations",
    "SandboxSettings",
    "SettingSource",
    # Options
    "AgentOptions",
]
