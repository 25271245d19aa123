"""JSON control protocol shapes for communication with the CLI.

Request payloads are described with TypedDicts; the envelopes the SDK writes
are built from Pydantic models so their wire form is validated in one place.
"""

from __future__ import annotations

from typing import Any, Literal, TypedDict

from pydantic import BaseModel, ConfigDict, Field, model_validator


# =============================================================================
# Control Request Payloads (SDK -> CLI)
# =============================================================================


class SDKControlInitializeRequest(TypedDict):
    """Initialize request - registers hook callbacks with the CLI."""

    subtype: Literal["initialize"]
    hooks: dict[str, list[dict[str, Any]]] | None


class SDKControlInterruptRequest(TypedDict):
    """Interrupt request - interrupt the current turn."""

    subtype: Literal["interrupt"]


class SDKControlSetPermissionModeRequest(TypedDict):
    """Set permission mode request."""

    subtype: Literal["set_permission_mode"]
    mode: str


class SDKControlSetModelRequest(TypedDict):
    """Set model request."""

    subtype: Literal["set_model"]
    model: str | None


class SDKControlMcpStatusRequest(TypedDict):
    """Request live MCP server connection status."""

    subtype: Literal["mcp_status"]


class SDKControlRewindFilesRequest(TypedDict):
    """Rewind tracked files to the checkpoint of a user message."""

    subtype: Literal["rewind_files"]
    user_message_id: str


# =============================================================================
# Control Request Payloads (CLI -> SDK)
# =============================================================================


class SDKControlPermissionRequest(TypedDict):
    """Permission request - ask if a tool can be used."""

    subtype: Literal["can_use_tool"]
    tool_name: str
    input: dict[str, Any]
    permission_suggestions: list[dict[str, Any]] | None
    blocked_path: str | None


class SDKHookCallbackRequest(TypedDict):
    """Hook callback request - execute a registered hook callback."""

    subtype: Literal["hook_callback"]
    callback_id: str
    input: dict[str, Any]
    tool_use_id: str | None


class SDKControlMcpMessageRequest(TypedDict):
    """MCP message request - route a JSON-RPC message to an in-process server."""

    subtype: Literal["mcp_message"]
    server_name: str
    message: dict[str, Any]


SDKControlRequestPayload = (
    SDKControlInitializeRequest
    | SDKControlInterruptRequest
    | SDKControlSetPermissionModeRequest
    | SDKControlSetModelRequest
    | SDKControlMcpStatusRequest
    | SDKControlRewindFilesRequest
    | SDKControlPermissionRequest
    | SDKHookCallbackRequest
    | SDKControlMcpMessageRequest
)


# =============================================================================
# Envelope Models
# =============================================================================


class ControlRequestMessage(BaseModel):
    """An outbound control request envelope."""

    type: Literal["control_request"] = "control_request"
    request_id: str
    request: dict[str, Any]


class ControlResponseData(BaseModel):
    """Base class for control response data.

    The id is emitted under both ``request_id`` and ``requestId``; peers of
    different versions read one or the other.
    """

    model_config = ConfigDict(
        extra="allow",
        populate_by_name=True,
    )

    request_id: str
    requestId: str | None = None

    @model_validator(mode="after")
    def _mirror_request_id(self) -> "ControlResponseData":
        if self.requestId is None:
            self.requestId = self.request_id
        return self


class ControlResponseSuccess(ControlResponseData):
    """A successful control response."""

    subtype: Literal["success"] = "success"
    response: dict[str, Any] | None = None


class ControlResponseError(ControlResponseData):
    """An error control response."""

    subtype: Literal["error"] = "error"
    error: str


class ControlResponseMessage(BaseModel):
    """A control response envelope."""

    type: Literal["control_response"] = "control_response"
    response: ControlResponseSuccess | ControlResponseError


# =============================================================================
# Permission Response Models
# =============================================================================


class PermissionResponseAllow(BaseModel):
    """A permission allow response."""

    behavior: Literal["allow"] = "allow"
    updatedInput: dict[str, Any] = Field(default_factory=dict)
    updatedPermissions: list[dict[str, Any]] | None = None


class PermissionResponseDeny(BaseModel):
    """A permission deny response."""

    behavior: Literal["deny"] = "deny"
    message: str = ""
    interrupt: bool | None = None


# =============================================================================
# Helpers
# =============================================================================


def model_to_dict(model: BaseModel) -> dict[str, Any]:
    """Convert a Pydantic model to a JSON-serializable dictionary."""
    return model.model_dump(exclude_none=True, by_alias=True, mode="json")


def extract_request_id(data: dict[str, Any]) -> str | None:
    """Return the request id of an envelope under either spelling."""
    request_id = data.get("request_id")
    if request_id is None:
        request_id = data.get("requestId")
    return request_id


__all__ = [
    # Outbound payloads
    "SDKControlInitializeRequest",
    "SDKControlInterruptRequest",
    "SDKControlSetPermissionModeRequest",
    "SDKControlSetModelRequest",
    "SDKControlMcpStatusRequest",
    "SDKControlRewindFilesRequest",
    # Inbound payloads
    "SDKControlPermissionRequest",
    "SDKHookCallbackRequest",
    "SDKControlMcpMessageRequest",
    "SDKControlRequestPayload",
    # Envelopes
    "ControlRequestMessage",
    "ControlResponseData",
    "ControlResponseSuccess",
    "ControlResponseError",
    "ControlResponseMessage",
    # Permission
    "PermissionResponseAllow",
    "PermissionResponseDeny",
    # Helpers
    "model_to_dict",
    "extract_request_id",
]
