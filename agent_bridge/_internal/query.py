"""Query class for handling the bidirectional control protocol.

This module implements the Query class that manages:
- Control request/response correlation in both directions
- Hook callbacks and tool permission callbacks
- Routing of ``mcp_message`` requests to in-process MCP servers
- Cancellation of in-flight inbound requests
- Data message streaming
- Initialization handshake

Concurrency is built on anyio:
- A task group owning the reader loop and one task per inbound request
- Events for control response correlation
- A cancel scope plus abort signal per inbound request
- A lock serializing every line written to the transport
"""

from __future__ import annotations

import inspect
import json
import logging
import secrets
from collections.abc import AsyncIterable, AsyncIterator, Awaitable, Callable
from contextlib import suppress
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import anyio
from anyio.abc import TaskGroup

from agent_bridge._errors import (
    AgentBridgeError,
    CLIConnectionError,
    ControlProtocolError,
    ControlRequestError,
    ControlRequestTimeoutError,
)
from agent_bridge._internal.hooks import (
    HookRegistration,
    build_hook_registrations,
    dispatch_hook_callback,
)
from agent_bridge._internal.message_queue import MessageQueue
from agent_bridge._internal.timeouts import (
    CONTROL_REQUEST_TIMEOUT_SEC,
    INITIALIZE_TIMEOUT_SEC,
    LONG_CONTROL_REQUEST_TIMEOUT_SEC,
)
from agent_bridge._internal.transport import Transport
from agent_bridge.control_protocol import (
    ControlRequestMessage,
    ControlResponseError,
    ControlResponseMessage,
    ControlResponseSuccess,
    PermissionResponseAllow,
    PermissionResponseDeny,
    extract_request_id,
    model_to_dict,
)
from agent_bridge.types import (
    AbortSignal,
    CanUseTool,
    HookMatcher,
    PermissionResultAllow,
    PermissionResultDeny,
    PermissionUpdate,
    ToolPermissionContext,
)

if TYPE_CHECKING:
    from agent_bridge.mcp_server import SdkMcpServer

logger = logging.getLogger(__name__)


@dataclass
class _PendingRequest:
    """An outbound control request waiting for its response."""

    subtype: str | None
    event: anyio.Event = field(default_factory=anyio.Event)
    response: dict[str, Any] | None = None
    error: BaseException | None = None

    def resolve(
        self,
        response: dict[str, Any] | None = None,
        error: BaseException | None = None,
    ) -> bool:
        if self.event.is_set():
            return False
        self.response = response
        self.error = error
        self.event.set()
        return True


@dataclass
class _InFlightHandler:
    """Cancellation handles for one inbound control request."""

    scope: anyio.CancelScope = field(default_factory=anyio.CancelScope)
    signal: AbortSignal = field(default_factory=AbortSignal)


class Query:
    """Handles the bidirectional control protocol on top of a Transport.

    One reader task classifies every inbound line: control responses resolve
    pending outbound requests, control requests run concurrently in their own
    tasks, cancel requests abort those tasks, and everything else is queued
    for the consumer in arrival order.
    """

    def __init__(
        self,
        transport: Transport,
        is_streaming_mode: bool = True,
        can_use_tool: CanUseTool | None = None,
        hooks: dict[str, list[HookMatcher]] | None = None,
        sdk_mcp_servers: dict[str, SdkMcpServer] | None = None,
        control_timeout: float | None = None,
        long_control_timeout: float | None = None,
        initialize_timeout: float | None = None,
    ):
        """Initialize Query with transport and callbacks.

        Args:
            transport: Low-level transport for I/O
            is_streaming_mode: Whether using streaming (bidirectional) mode
            can_use_tool: Optional callback for tool permission requests
            hooks: Optional hook matchers keyed by hook event name
            sdk_mcp_servers: In-process MCP servers keyed by server name
            control_timeout: Ceiling for short control requests
            long_control_timeout: Ceiling for interrupt/rewind and stdin hold-open
            initialize_timeout: Ceiling for the initialize handshake
        """
        self.transport = transport
        self.is_streaming_mode = is_streaming_mode
        self.can_use_tool = can_use_tool
        self.hooks = hooks or {}
        self.sdk_mcp_servers = sdk_mcp_servers or {}

        self._control_timeout = (
            control_timeout if control_timeout is not None else CONTROL_REQUEST_TIMEOUT_SEC
        )
        self._long_control_timeout = (
            long_control_timeout
            if long_control_timeout is not None
            else LONG_CONTROL_REQUEST_TIMEOUT_SEC
        )
        self._initialize_timeout = (
            initialize_timeout if initialize_timeout is not None else INITIALIZE_TIMEOUT_SEC
        )

        # Control protocol state
        self._pending: dict[str, _PendingRequest] = {}
        self._inflight: dict[str, _InFlightHandler] = {}
        self._hook_registrations: dict[str, HookRegistration] = {}
        self._request_counter = 0
        self._control_handlers: dict[
            str, Callable[[dict[str, Any], AbortSignal], Awaitable[dict[str, Any]]]
        ] = {
            "can_use_tool": self._handle_can_use_tool,
            "hook_callback": self._handle_hook_callback,
            "mcp_message": self._handle_mcp_message,
        }

        self._messages = MessageQueue()
        self._write_lock = anyio.Lock()
        self._first_result = anyio.Event()

        self._tg: TaskGroup | None = None
        self._reader_done = False
        self._closed = False
        self._initialization_result: dict[str, Any] | None = None

    @property
    def initialization_result(self) -> dict[str, Any] | None:
        """Response payload of the initialize handshake, if one was made."""
        return self._initialization_result

    async def start(self) -> None:
        """Start reading messages from the transport."""
        if self._tg is None:
            self._tg = anyio.create_task_group()
            await self._tg.__aenter__()
            self._tg.start_soon(self._read_messages)

    async def initialize(self) -> dict[str, Any] | None:
        """Register hooks with the CLI and return its initialize response."""
        if not self.is_streaming_mode:
            return None

        hooks_config, self._hook_registrations = build_hook_registrations(self.hooks)
        request = {
            "subtype": "initialize",
            "hooks": hooks_config or None,
        }
        response = await self.send_control_request(request, timeout=self._initialize_timeout)
        self._initialization_result = response
        logger.debug(
            f"[query] Initialized with {len(self._hook_registrations)} hook callback(s)"
        )
        return response

    # ------------------------------------------------------------------
    # Reader loop
    # ------------------------------------------------------------------

    async def _read_messages(self) -> None:
        """Background task that reads messages from the transport and routes them."""
        error: AgentBridgeError | None = None
        try:
            async for message in self.transport.read_messages():
                if self._closed:
                    break

                msg_type = message.get("type")

                if msg_type == "control_response":
                    self._handle_control_response(message)
                elif msg_type == "control_request":
                    self._spawn_control_request(message)
                elif msg_type == "control_cancel_request":
                    self._handle_cancel_request(message)
                else:
                    if msg_type == "result":
                        self._first_result.set()
                    self._messages.put(message)

        except Exception as e:
            logger.error(f"[query] Error reading from transport: {type(e).__name__}: {e}")
            if isinstance(e, AgentBridgeError):
                error = e
            else:
                error = CLIConnectionError(f"Transport read failed: {e}")
                error.__cause__ = e

        finally:
            self._reader_done = True
            if error is not None:
                pending_error: AgentBridgeError = error
            elif self._closed:
                pending_error = CLIConnectionError("Query closed")
            else:
                pending_error = CLIConnectionError("CLI output stream ended")
            self._fail_pending(pending_error)
            self._messages.finish(error)
            self._first_result.set()

    def _fail_pending(self, error: BaseException) -> None:
        pending = list(self._pending.values())
        self._pending.clear()
        for request in pending:
            request.resolve(error=error)
        if pending:
            logger.debug(f"[query] Failed {len(pending)} pending control request(s): {error}")

    def _handle_control_response(self, message: dict[str, Any]) -> None:
        response = message.get("response") or {}
        request_id = extract_request_id(response)
        pending = self._pending.pop(request_id, None) if request_id is not None else None
        if pending is None:
            logger.debug(f"[query] Ignoring control response for unknown request {request_id!r}")
            return

        if response.get("subtype") == "error":
            pending.resolve(
                error=ControlRequestError(
                    str(response.get("error") or "Unknown error"),
                    subtype=pending.subtype,
                )
            )
        else:
            pending.resolve(response=response.get("response") or {})

    def _spawn_control_request(self, message: dict[str, Any]) -> None:
        request_id = extract_request_id(message)
        if request_id is None:
            logger.warning("[query] Dropping control request without request id")
            return
        if request_id in self._inflight:
            logger.warning(f"[query] Dropping duplicate control request {request_id}")
            return
        if self._tg is None:
            return

        # Registered before the task runs so an immediate cancel still finds it.
        handler = _InFlightHandler()
        self._inflight[request_id] = handler
        self._tg.start_soon(self._handle_control_request, request_id, message, handler)

    def _handle_cancel_request(self, message: dict[str, Any]) -> None:
        request_id = extract_request_id(message)
        handler = self._inflight.get(request_id) if request_id is not None else None
        if handler is None:
            logger.debug(f"[query] Cancel for unknown control request {request_id!r}")
            return
        logger.debug(f"[query] Cancelling control request {request_id}")
        handler.signal.abort()
        handler.scope.cancel()

    # ------------------------------------------------------------------
    # Inbound control requests
    # ------------------------------------------------------------------

    async def _handle_control_request(
        self,
        request_id: str,
        message: dict[str, Any],
        handler: _InFlightHandler,
    ) -> None:
        """Serve one inbound control request and answer it exactly once."""
        request = message.get("request") or {}
        subtype = request.get("subtype")
        response: dict[str, Any] | None = None
        error: str | None = None

        try:
            with handler.scope:
                try:
                    response = await self._dispatch_control_request(
                        subtype, request, handler.signal
                    )
                except Exception as e:
                    logger.warning(
                        f"[query] Control request {subtype} failed: {type(e).__name__}: {e}"
                    )
                    error = str(e) or type(e).__name__

            if handler.scope.cancel_called:
                response = None
                error = "Cancelled"

            await self._send_control_response(request_id, response=response, error=error)

        except Exception as e:
            logger.warning(
                f"[query] Failed to answer control request {request_id}: {e}",
                exc_info=True,
            )

        finally:
            if self._inflight.get(request_id) is handler:
                del self._inflight[request_id]

    async def _dispatch_control_request(
        self,
        subtype: str | None,
        request: dict[str, Any],
        signal: AbortSignal,
    ) -> dict[str, Any]:
        handler = self._control_handlers.get(subtype or "")
        if handler is None:
            raise ControlProtocolError(f"Unsupported control request subtype: {subtype}")
        return await handler(request, signal)

    async def _handle_can_use_tool(
        self, request: dict[str, Any], signal: AbortSignal
    ) -> dict[str, Any]:
        """Handle a tool permission request from the CLI."""
        if self.can_use_tool is None:
            raise ControlProtocolError("can_use_tool callback is not provided")

        tool_name = request.get("tool_name", "")
        tool_input = request.get("input") or {}
        suggestions = [
            PermissionUpdate.from_dict(suggestion)
            for suggestion in request.get("permission_suggestions") or []
            if isinstance(suggestion, dict) and "type" in suggestion
        ]
        context = ToolPermissionContext(
            signal=signal,
            suggestions=suggestions,
            blocked_path=request.get("blocked_path"),
        )

        result = self.can_use_tool(tool_name, tool_input, context)
        if inspect.isawaitable(result):
            result = await result

        if isinstance(result, PermissionResultAllow):
            allow = PermissionResponseAllow(
                updatedInput=(
                    result.updated_input if result.updated_input is not None else tool_input
                ),
                updatedPermissions=(
                    [update.to_dict() for update in result.updated_permissions]
                    if result.updated_permissions
                    else None
                ),
            )
            return model_to_dict(allow)
        if isinstance(result, PermissionResultDeny):
            deny = PermissionResponseDeny(
                message=result.message,
                interrupt=True if result.interrupt else None,
            )
            return model_to_dict(deny)

        raise TypeError(
            "Permission callback must return PermissionResultAllow or "
            f"PermissionResultDeny, got {type(result).__name__}"
        )

    async def _handle_hook_callback(
        self, request: dict[str, Any], signal: AbortSignal
    ) -> dict[str, Any]:
        """Handle a hook callback request from the CLI."""
        return await dispatch_hook_callback(self._hook_registrations, request, signal)

    async def _handle_mcp_message(
        self, request: dict[str, Any], signal: AbortSignal
    ) -> dict[str, Any]:
        """Route a JSON-RPC message to an in-process MCP server."""
        server_name = request.get("server_name")
        server = self.sdk_mcp_servers.get(server_name or "")
        if server is None:
            raise ControlProtocolError(f"SDK MCP server not found: {server_name}")

        mcp_response = await server.handle_message(request.get("message") or {})
        return {"mcp_response": mcp_response}

    # ------------------------------------------------------------------
    # Outbound control requests
    # ------------------------------------------------------------------

    async def send_control_request(
        self,
        request: dict[str, Any],
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Send a control request and wait for its response payload.

        Raises:
            RuntimeError: Outside streaming mode.
            CLIConnectionError: If the connection has ended.
            ControlRequestTimeoutError: If no response arrives within ``timeout``.
            ControlRequestError: If the CLI answers with an error.
        """
        if not self.is_streaming_mode:
            raise RuntimeError("Control requests require streaming mode")
        if self._reader_done or self._closed:
            raise CLIConnectionError("Cannot send control request: connection has ended")

        subtype = request.get("subtype")
        self._request_counter += 1
        request_id = f"req_{self._request_counter}_{secrets.token_hex(4)}"
        ceiling = self._control_timeout if timeout is None else timeout

        pending = _PendingRequest(subtype=subtype)
        self._pending[request_id] = pending
        try:
            # Payload nulls are meaningful (set_model(None) restores the default)
            envelope = ControlRequestMessage(request_id=request_id, request=request)
            await self._write(envelope.model_dump(mode="json"))
            with anyio.move_on_after(ceiling):
                await pending.event.wait()
        finally:
            self._pending.pop(request_id, None)

        if not pending.event.is_set():
            logger.warning(f"[query] Control request {subtype} timed out after {ceiling}s")
            raise ControlRequestTimeoutError(subtype, ceiling)
        if pending.error is not None:
            raise pending.error
        return pending.response or {}

    async def _send_control_response(
        self,
        request_id: str,
        response: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> None:
        """Send a control response to the CLI."""
        body: ControlResponseSuccess | ControlResponseError
        if error is not None:
            body = ControlResponseError(request_id=request_id, error=error)
        else:
            body = ControlResponseSuccess(request_id=request_id, response=response or {})
        await self._write(model_to_dict(ControlResponseMessage(response=body)))

    async def _write(self, message: dict[str, Any]) -> None:
        data = json.dumps(message)
        async with self._write_lock:
            await self.transport.write(data + "\n")

    async def interrupt(self) -> dict[str, Any]:
        """Interrupt the current turn."""
        return await self.send_control_request(
            {"subtype": "interrupt"}, timeout=self._long_control_timeout
        )

    async def set_permission_mode(self, mode: str) -> dict[str, Any]:
        """Change permission mode during conversation."""
        return await self.send_control_request({"subtype": "set_permission_mode", "mode": mode})

    async def set_model(self, model: str | None = None) -> dict[str, Any]:
        """Change the AI model during conversation."""
        return await self.send_control_request({"subtype": "set_model", "model": model})

    async def get_mcp_status(self) -> dict[str, Any]:
        """Return the live connection status of every configured MCP server."""
        return await self.send_control_request({"subtype": "mcp_status"})

    async def rewind_files(self, user_message_id: str) -> dict[str, Any]:
        """Rewind tracked files to their state at a specific user message."""
        return await self.send_control_request(
            {"subtype": "rewind_files", "user_message_id": user_message_id},
            timeout=self._long_control_timeout,
        )

    # ------------------------------------------------------------------
    # Data messages
    # ------------------------------------------------------------------

    async def write_message(self, message: dict[str, Any]) -> None:
        """Write one data message (for example a user turn) to the CLI."""
        await self._write(message)

    def _has_bidirectional_callbacks(self) -> bool:
        return bool(self.hooks or self.sdk_mcp_servers or self.can_use_tool is not None)

    async def stream_input(self, stream: AsyncIterable[dict[str, Any]]) -> None:
        """Write every message of ``stream`` and then close the CLI's input.

        When the CLI may still call back into the SDK (hooks, permission
        callback, SDK MCP servers), input stays open until the first result
        arrives or the long control timeout elapses.
        """
        async for message in stream:
            if self._closed:
                break
            await self._write(message)

        if self._has_bidirectional_callbacks() and not self._closed:
            with anyio.move_on_after(self._long_control_timeout):
                await self._first_result.wait()

        await self.transport.end_input()

    def start_stream_input(self, stream: AsyncIterable[dict[str, Any]]) -> None:
        """Stream ``stream`` in the background of the query's task group."""
        if self._tg is None:
            raise RuntimeError("Query not started")
        self._tg.start_soon(self._stream_input_task, stream)

    async def _stream_input_task(self, stream: AsyncIterable[dict[str, Any]]) -> None:
        try:
            await self.stream_input(stream)
        except Exception as e:
            logger.error(f"[query] Error streaming input: {type(e).__name__}: {e}", exc_info=True)

    async def receive_messages(self) -> AsyncIterator[dict[str, Any]]:
        """Yield raw data messages until the stream ends.

        A reader failure is raised once, after every message that preceded it.
        """
        async for message in self._messages:
            yield message

    async def close(self) -> None:
        """Stop the reader, release the transport, and unblock consumers."""
        if self._closed:
            return
        self._closed = True

        if self._tg is not None:
            self._tg.cancel_scope.cancel()
            with suppress(anyio.get_cancelled_exc_class()):
                await self._tg.__aexit__(None, None, None)
            self._tg = None

        self._fail_pending(CLIConnectionError("Query closed"))
        self._messages.finish()
        self._first_result.set()
        await self.transport.close()


__all__ = ["Query"]
