"""Python SDK client for driving the agent CLI.

`query` helper for one-shot calls and an `AgentBridgeClient` for long-lived
bidirectional sessions.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterable, AsyncIterator
from dataclasses import replace
from typing import Any

from agent_bridge._errors import CLIConnectionError
from agent_bridge._internal.message_parser import parse_message
from agent_bridge._internal.query import Query
from agent_bridge._internal.transport import Transport
from agent_bridge._internal.transport.subprocess_cli import SubprocessCLITransport
from agent_bridge.mcp_server import SdkMcpServer
from agent_bridge.types import AgentOptions, Message, PermissionMode, ResultMessage

logger = logging.getLogger(__name__)


async def _empty_stream() -> AsyncIterator[dict[str, Any]]:
    # Keeps stdin open for a session whose turns are sent with query()
    return
    yield {}  # pragma: no cover


def _user_message(prompt: str, session_id: str) -> dict[str, Any]:
    return {
        "type": "user",
        "message": {"role": "user", "content": prompt},
        "parent_tool_use_id": None,
        "session_id": session_id,
    }


def _sdk_mcp_servers(options: AgentOptions) -> dict[str, SdkMcpServer]:
    """Extract in-process server instances from ``options.mcp_servers``."""
    if not isinstance(options.mcp_servers, dict):
        return {}
    return {
        name: config["instance"]
        for name, config in options.mcp_servers.items()
        if isinstance(config, dict) and config.get("type") == "sdk"
    }


def _configure_permissions(options: AgentOptions, prompt: Any) -> AgentOptions:
    """Route permission prompts through the control protocol when a callback is set."""
    if options.can_use_tool is None:
        return options
    if isinstance(prompt, str):
        raise ValueError("can_use_tool callback requires streaming mode")
    if options.permission_prompt_tool_name:
        raise ValueError(
            "can_use_tool callback cannot be used with permission_prompt_tool_name"
        )
    return replace(options, permission_prompt_tool_name="stdio")


def _build_query(transport: Transport, options: AgentOptions, is_streaming_mode: bool) -> Query:
    return Query(
        transport=transport,
        is_streaming_mode=is_streaming_mode,
        can_use_tool=options.can_use_tool,
        hooks={str(event): matchers for event, matchers in (options.hooks or {}).items()},
        sdk_mcp_servers=_sdk_mcp_servers(options),
        control_timeout=options.control_timeout,
        long_control_timeout=options.long_control_timeout,
        initialize_timeout=options.initialize_timeout,
    )


class AgentBridgeClient:
    """Bidirectional, interactive session with the agent CLI.

    The client always runs in streaming mode, so hooks, permission callbacks
    and SDK MCP servers are available and turns can be sent at any time::

        async with AgentBridgeClient(options) as client:
            await client.query("What is the capital of France?")
            async for message in client.receive_response():
                print(message)
    """

    def __init__(
        self,
        options: AgentOptions | None = None,
        transport: Transport | None = None,
    ) -> None:
        self.options = options or AgentOptions()
        self._custom_transport = transport
        self._transport: Transport | None = None
        self._query: Query | None = None

    @property
    def connected(self) -> bool:
        return self._query is not None

    async def __aenter__(self) -> "AgentBridgeClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.disconnect()

    async def connect(self, prompt: str | AsyncIterable[dict[str, Any]] | None = None) -> None:
        """Start the CLI, perform the initialize handshake, and send ``prompt`` if given."""
        if self._query is not None:
            return

        stream = prompt if isinstance(prompt, AsyncIterable) else _empty_stream()
        # A str prompt is sent as a streamed turn, so permissions see the stream
        options = _configure_permissions(self.options, stream)

        transport = self._custom_transport or SubprocessCLITransport(prompt=stream, options=options)
        await transport.connect()
        self._transport = transport

        query = _build_query(transport, options, is_streaming_mode=True)
        try:
            await query.start()
            await query.initialize()
        except BaseException:
            await query.close()
            self._transport = None
            raise
        self._query = query
        logger.debug("[client] Connected")

        if isinstance(prompt, AsyncIterable):
            query.start_stream_input(prompt)
        elif isinstance(prompt, str):
            # Sent as the first turn; stdin stays open for later turns
            await self.query(prompt)

    def _require_query(self) -> Query:
        if self._query is None:
            raise CLIConnectionError("Not connected. Call connect() first.")
        return self._query

    async def query(
        self,
        prompt: str | AsyncIterable[dict[str, Any]],
        session_id: str = "default",
    ) -> None:
        """Send a new turn, as text or as a stream of user message dicts."""
        query = self._require_query()
        if isinstance(prompt, str):
            await query.write_message(_user_message(prompt, session_id))
            return
        async for message in prompt:
            if "session_id" not in message:
                message = {**message, "session_id": session_id}
            await query.write_message(message)

    async def receive_messages(self) -> AsyncIterator[Message]:
        """Yield every message from the CLI until the session ends."""
        query = self._require_query()
        async for data in query.receive_messages():
            yield parse_message(data)

    async def receive_response(self) -> AsyncIterator[Message]:
        """Yield messages up to and including the next ResultMessage."""
        async for message in self.receive_messages():
            yield message
            if isinstance(message, ResultMessage):
                return

    async def interrupt(self) -> None:
        """Interrupt the current turn."""
        await self._require_query().interrupt()

    async def set_permission_mode(self, mode: PermissionMode) -> None:
        """Change permission mode during the conversation."""
        await self._require_query().set_permission_mode(mode)

    async def set_model(self, model: str | None = None) -> None:
        """Change the model during the conversation; ``None`` restores the default."""
        await self._require_query().set_model(model)

    async def rewind_files(self, user_message_id: str) -> None:
        """Restore tracked files to their state at ``user_message_id``.

        Requires ``enable_file_checkpointing`` in the session options.
        """
        await self._require_query().rewind_files(user_message_id)

    async def get_mcp_status(self) -> dict[str, Any]:
        """Return the live connection status of every configured MCP server."""
        return await self._require_query().get_mcp_status()

    def get_server_info(self) -> dict[str, Any] | None:
        """Return the CLI's initialize response (commands, output styles, ...)."""
        if self._query is None:
            return None
        return self._query.initialization_result

    async def disconnect(self) -> None:
        """Close the session and release the CLI process."""
        if self._query is None:
            return
        query, self._query = self._query, None
        self._transport = None
        await query.close()
        logger.debug("[client] Disconnected")


async def query(
    *,
    prompt: str | AsyncIterable[dict[str, Any]],
    options: AgentOptions | None = None,
    transport: Transport | None = None,
) -> AsyncIterator[Message]:
    """One-shot helper: run a prompt in a fresh CLI process and yield its messages.

    A plain string prompt without callbacks runs in ``--print`` mode. Streaming
    prompts, hooks, permission callbacks and SDK MCP servers use the
    bidirectional control protocol.
    """
    options = options or AgentOptions()
    streaming = (
        not isinstance(prompt, str)
        or options.can_use_tool is not None
        or bool(options.hooks)
        or bool(_sdk_mcp_servers(options))
    )

    if streaming:
        if isinstance(prompt, str):
            text = prompt

            async def _single_turn() -> AsyncIterator[dict[str, Any]]:
                yield _user_message(text, "default")

            stream: AsyncIterable[dict[str, Any]] = _single_turn()
        else:
            stream = prompt
        options = _configure_permissions(options, stream)
        chosen = transport or SubprocessCLITransport(prompt=stream, options=options)
    else:
        chosen = transport or SubprocessCLITransport(prompt=prompt, options=options)

    await chosen.connect()
    query_handler = _build_query(chosen, options, is_streaming_mode=streaming)
    try:
        await query_handler.start()
        if streaming:
            await query_handler.initialize()
            query_handler.start_stream_input(stream)

        async for data in query_handler.receive_messages():
            yield parse_message(data)
    finally:
        await query_handler.close()
