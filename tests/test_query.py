"""Tests for the control protocol multiplexer.

This test module covers:
- Outbound request correlation, timeouts and error responses
- Inbound control requests (permissions, hooks, MCP routing)
- Cancellation of in-flight requests
- Data message delivery and end-of-stream handling
"""

from typing import Any

import anyio
import pytest

from agent_bridge._errors import (
    CLIConnectionError,
    ControlRequestError,
    ControlRequestTimeoutError,
)
from agent_bridge._internal.query import Query
from agent_bridge.mcp_server import SdkMcpServer, create_tool
from agent_bridge.types import (
    HookMatcher,
    PermissionResultAllow,
    PermissionResultDeny,
    PermissionRuleValue,
    PermissionUpdate,
    SyncHookJSONOutput,
    ToolPermissionContext,
)


def success(request_id: str, response: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "type": "control_response",
        "response": {"subtype": "success", "request_id": request_id, "response": response},
    }


def inbound(request_id: str, request: dict[str, Any]) -> dict[str, Any]:
    return {"type": "control_request", "request_id": request_id, "request": request}


def response_for(transport: Any, request_id: str) -> Any:
    async def _wait() -> dict[str, Any]:
        message = await transport.wait_for(
            lambda m: m.get("type") == "control_response"
            and m["response"].get("request_id") == request_id
        )
        return message["response"]

    return _wait()


class TestOutboundRequests:
    """Correlation of SDK-initiated control requests."""

    @pytest.mark.asyncio
    async def test_request_envelope_and_success(self, transport) -> None:
        query = Query(transport)
        await query.start()
        try:
            result: dict[str, Any] = {}

            async def call() -> None:
                result["value"] = await query.set_model("opus")

            async with anyio.create_task_group() as tg:
                tg.start_soon(call)
                sent = await transport.wait_for(lambda m: m.get("type") == "control_request")
                transport.feed(success(sent["request_id"], {"model": "opus"}))

            assert sent["request"] == {"subtype": "set_model", "model": "opus"}
            assert sent["request_id"].startswith("req_1_")
            assert len(sent["request_id"].split("_")[2]) == 8
            assert result["value"] == {"model": "opus"}
            assert query._pending == {}
        finally:
            await query.close()

    @pytest.mark.asyncio
    async def test_request_ids_are_unique(self, transport) -> None:
        transport.auto_reply["set_permission_mode"] = {}
        query = Query(transport)
        await query.start()
        try:
            for _ in range(3):
                await query.set_permission_mode("plan")
            ids = [m["request_id"] for m in transport.control_requests()]
            assert len(set(ids)) == 3
        finally:
            await query.close()

    @pytest.mark.asyncio
    async def test_out_of_order_responses_reach_their_callers(self, transport) -> None:
        query = Query(transport)
        await query.start()
        try:
            results: dict[str, Any] = {}

            async def call(mode: str) -> None:
                results[mode] = await query.set_permission_mode(mode)

            async with anyio.create_task_group() as tg:
                tg.start_soon(call, "plan")
                tg.start_soon(call, "acceptEdits")
                first = await transport.wait_for(
                    lambda m: m.get("request", {}).get("mode") == "plan"
                )
                second = await transport.wait_for(
                    lambda m: m.get("request", {}).get("mode") == "acceptEdits"
                )
                transport.feed(success(second["request_id"], {"applied": "acceptEdits"}))
                transport.feed(success(first["request_id"], {"applied": "plan"}))

            assert results == {
                "plan": {"applied": "plan"},
                "acceptEdits": {"applied": "acceptEdits"},
            }
        finally:
            await query.close()

    @pytest.mark.asyncio
    async def test_camel_case_request_id_is_accepted(self, transport) -> None:
        query = Query(transport)
        await query.start()
        try:
            result: dict[str, Any] = {}

            async def call() -> None:
                result["value"] = await query.get_mcp_status()

            async with anyio.create_task_group() as tg:
                tg.start_soon(call)
                sent = await transport.wait_for(lambda m: m.get("type") == "control_request")
                transport.feed(
                    {
                        "type": "control_response",
                        "response": {
                            "subtype": "success",
                            "requestId": sent["request_id"],
                            "response": {"mcpServers": []},
                        },
                    }
                )

            assert sent["request"] == {"subtype": "mcp_status"}
            assert result["value"] == {"mcpServers": []}
        finally:
            await query.close()

    @pytest.mark.asyncio
    async def test_error_response_raises_with_subtype(self, transport) -> None:
        query = Query(transport)
        await query.start()
        try:
            errors: list[BaseException] = []

            async def call() -> None:
                try:
                    await query.set_permission_mode("bogus")
                except ControlRequestError as e:
                    errors.append(e)

            async with anyio.create_task_group() as tg:
                tg.start_soon(call)
                sent = await transport.wait_for(lambda m: m.get("type") == "control_request")
                transport.feed(
                    {
                        "type": "control_response",
                        "response": {
                            "subtype": "error",
                            "request_id": sent["request_id"],
                            "error": "Invalid permission mode",
                        },
                    }
                )

            assert len(errors) == 1
            assert str(errors[0]) == "Invalid permission mode"
            assert errors[0].subtype == "set_permission_mode"
        finally:
            await query.close()

    @pytest.mark.asyncio
    async def test_timeout_purges_pending_entry(self, transport) -> None:
        query = Query(transport, control_timeout=0.05)
        await query.start()
        try:
            with pytest.raises(ControlRequestTimeoutError) as exc_info:
                await query.set_model("sonnet")
            assert exc_info.value.subtype == "set_model"
            assert isinstance(exc_info.value, TimeoutError)
            assert query._pending == {}

            # A late response for the purged id is ignored
            late_id = transport.control_requests()[0]["request_id"]
            transport.feed(success(late_id, {}))

            transport.auto_reply["set_model"] = {"ok": True}
            assert await query.set_model("sonnet") == {"ok": True}
        finally:
            await query.close()

    @pytest.mark.asyncio
    async def test_unknown_and_duplicate_responses_are_ignored(self, transport) -> None:
        query = Query(transport)
        await query.start()
        try:
            result: dict[str, Any] = {}

            async def call() -> None:
                result["value"] = await query.set_model(None)

            async with anyio.create_task_group() as tg:
                tg.start_soon(call)
                sent = await transport.wait_for(lambda m: m.get("type") == "control_request")
                transport.feed(success("req_999_deadbeef", {"stray": True}))
                transport.feed(success(sent["request_id"], {"first": True}))
                transport.feed(success(sent["request_id"], {"second": True}))

            assert result["value"] == {"first": True}

            transport.feed({"type": "assistant", "message": {"content": []}})
            transport.finish()
            messages = [m async for m in query.receive_messages()]
            assert messages == [{"type": "assistant", "message": {"content": []}}]
        finally:
            await query.close()

    @pytest.mark.asyncio
    async def test_interrupt_and_rewind_use_long_timeout(self, transport) -> None:
        query = Query(transport, control_timeout=0.01, long_control_timeout=5)
        await query.start()
        try:

            async def answer_later() -> None:
                await anyio.sleep(0.1)
                for request in transport.control_requests():
                    transport.feed(success(request["request_id"], {}))

            async with anyio.create_task_group() as tg:
                tg.start_soon(answer_later)
                await query.interrupt()

            async with anyio.create_task_group() as tg:
                tg.start_soon(answer_later)
                await query.rewind_files("msg-42")

            rewind = transport.control_requests("rewind_files")[0]
            assert rewind["request"] == {"subtype": "rewind_files", "user_message_id": "msg-42"}
        finally:
            await query.close()

    @pytest.mark.asyncio
    async def test_control_request_requires_streaming_mode(self, transport) -> None:
        query = Query(transport, is_streaming_mode=False)
        with pytest.raises(RuntimeError):
            await query.send_control_request({"subtype": "interrupt"})
        assert await query.initialize() is None
        await query.close()

    @pytest.mark.asyncio
    async def test_pending_requests_fail_when_stream_ends(self, transport) -> None:
        query = Query(transport)
        await query.start()
        try:
            errors: list[BaseException] = []

            async def call() -> None:
                try:
                    await query.set_model("haiku")
                except CLIConnectionError as e:
                    errors.append(e)

            async with anyio.create_task_group() as tg:
                tg.start_soon(call)
                await transport.wait_for(lambda m: m.get("type") == "control_request")
                transport.finish()

            assert len(errors) == 1
            assert query._pending == {}

            # Once the reader is gone new requests fail fast
            with anyio.fail_after(1):
                with pytest.raises(CLIConnectionError):
                    await query.set_model("haiku")
        finally:
            await query.close()


class TestInitialize:
    """The initialize handshake."""

    @pytest.mark.asyncio
    async def test_initialize_registers_hook_callbacks(self, transport) -> None:
        def first(hook_input: Any, tool_use_id: Any, context: Any) -> dict[str, Any]:
            return {}

        def second(hook_input: Any, tool_use_id: Any, context: Any) -> dict[str, Any]:
            return {}

        transport.auto_reply["initialize"] = {"commands": [{"name": "help"}]}
        query = Query(
            transport,
            hooks={
                "PreToolUse": [HookMatcher(matcher="Bash", hooks=[first], timeout=5)],
                "Stop": [HookMatcher(hooks=[second])],
            },
        )
        await query.start()
        try:
            result = await query.initialize()
            assert result == {"commands": [{"name": "help"}]}
            assert query.initialization_result == result

            request = transport.control_requests("initialize")[0]["request"]
            assert request["hooks"]["PreToolUse"] == [
                {"matcher": "Bash", "hookCallbackIds": ["hook_0"], "timeout": 5}
            ]
            stop = request["hooks"]["Stop"][0]
            assert stop["hookCallbackIds"] == ["hook_1"]
            assert stop.get("matcher") is None
            assert "timeout" not in stop
        finally:
            await query.close()

    @pytest.mark.asyncio
    async def test_initialize_timeout(self, transport) -> None:
        query = Query(transport, initialize_timeout=0.05)
        await query.start()
        try:
            with pytest.raises(ControlRequestTimeoutError) as exc_info:
                await query.initialize()
            assert exc_info.value.subtype == "initialize"
        finally:
            await query.close()


class TestInboundRequests:
    """Requests initiated by the CLI."""

    @pytest.mark.asyncio
    async def test_permission_allow_defaults_to_original_input(self, transport) -> None:
        contexts: list[ToolPermissionContext] = []

        async def can_use_tool(
            tool_name: str, tool_input: dict[str, Any], context: ToolPermissionContext
        ) -> PermissionResultAllow:
            contexts.append(context)
            return PermissionResultAllow()

        query = Query(transport, can_use_tool=can_use_tool)
        await query.start()
        try:
            transport.feed(
                inbound(
                    "cli_1",
                    {
                        "subtype": "can_use_tool",
                        "tool_name": "Bash",
                        "input": {"command": "ls"},
                        "permission_suggestions": [
                            {"type": "setMode", "mode": "acceptEdits", "destination": "session"}
                        ],
                        "blocked_path": "/etc",
                    },
                )
            )
            response = await response_for(transport, "cli_1")
            assert response == {
                "subtype": "success",
                "request_id": "cli_1",
                "requestId": "cli_1",
                "response": {"behavior": "allow", "updatedInput": {"command": "ls"}},
            }
            context = contexts[0]
            assert context.blocked_path == "/etc"
            assert context.suggestions[0].mode == "acceptEdits"
            assert context.signal is not None and not context.signal.aborted
        finally:
            await query.close()

    @pytest.mark.asyncio
    async def test_permission_allow_with_updates(self, transport) -> None:
        def can_use_tool(
            tool_name: str, tool_input: dict[str, Any], context: ToolPermissionContext
        ) -> PermissionResultAllow:
            return PermissionResultAllow(
                updated_input={"command": "ls -la"},
                updated_permissions=[
                    PermissionUpdate(
                        type="addRules",
                        rules=[PermissionRuleValue(tool_name="Bash", rule_content="ls:*")],
                        behavior="allow",
                        destination="session",
                    )
                ],
            )

        query = Query(transport, can_use_tool=can_use_tool)
        await query.start()
        try:
            transport.feed(
                inbound("cli_2", {"subtype": "can_use_tool", "tool_name": "Bash", "input": {}})
            )
            response = await response_for(transport, "cli_2")
            assert response["response"] == {
                "behavior": "allow",
                "updatedInput": {"command": "ls -la"},
                "updatedPermissions": [
                    {
                        "type": "addRules",
                        "destination": "session",
                        "rules": [{"toolName": "Bash", "ruleContent": "ls:*"}],
                        "behavior": "allow",
                    }
                ],
            }
        finally:
            await query.close()

    @pytest.mark.asyncio
    async def test_permission_deny(self, transport) -> None:
        async def can_use_tool(tool_name: str, tool_input: Any, context: Any) -> PermissionResultDeny:
            return PermissionResultDeny(message="not allowed", interrupt=True)

        query = Query(transport, can_use_tool=can_use_tool)
        await query.start()
        try:
            transport.feed(
                inbound("cli_3", {"subtype": "can_use_tool", "tool_name": "Write", "input": {}})
            )
            response = await response_for(transport, "cli_3")
            assert response["response"] == {
                "behavior": "deny",
                "message": "not allowed",
                "interrupt": True,
            }
        finally:
            await query.close()

    @pytest.mark.asyncio
    async def test_permission_without_callback_is_an_error(self, transport) -> None:
        query = Query(transport)
        await query.start()
        try:
            transport.feed(
                inbound("cli_4", {"subtype": "can_use_tool", "tool_name": "Bash", "input": {}})
            )
            response = await response_for(transport, "cli_4")
            assert response["subtype"] == "error"
            assert "can_use_tool" in response["error"]
        finally:
            await query.close()

    @pytest.mark.asyncio
    async def test_callback_exception_becomes_error_response(self, transport) -> None:
        async def can_use_tool(tool_name: str, tool_input: Any, context: Any) -> Any:
            raise ValueError("policy store unavailable")

        query = Query(transport, can_use_tool=can_use_tool)
        await query.start()
        try:
            transport.feed(
                inbound("cli_5", {"subtype": "can_use_tool", "tool_name": "Bash", "input": {}})
            )
            response = await response_for(transport, "cli_5")
            assert response == {
                "subtype": "error",
                "request_id": "cli_5",
                "requestId": "cli_5",
                "error": "policy store unavailable",
            }
        finally:
            await query.close()

    @pytest.mark.asyncio
    async def test_unknown_subtype(self, transport) -> None:
        query = Query(transport)
        await query.start()
        try:
            transport.feed(inbound("cli_6", {"subtype": "teleport"}))
            response = await response_for(transport, "cli_6")
            assert response["subtype"] == "error"
            assert response["error"] == "Unsupported control request subtype: teleport"
        finally:
            await query.close()

    @pytest.mark.asyncio
    async def test_camel_case_inbound_id_gets_both_spellings(self, transport) -> None:
        query = Query(transport)
        await query.start()
        try:
            transport.feed(
                {"type": "control_request", "requestId": "cli_7", "request": {"subtype": "x"}}
            )
            response = await response_for(transport, "cli_7")
            assert response["request_id"] == "cli_7"
            assert response["requestId"] == "cli_7"
        finally:
            await query.close()

    @pytest.mark.asyncio
    async def test_hook_callback_round_trip(self, transport) -> None:
        seen: list[Any] = []

        async def on_bash(hook_input: Any, tool_use_id: str | None, context: Any) -> Any:
            seen.append((hook_input, tool_use_id))
            return SyncHookJSONOutput(continue_=False, stop_reason="blocked by policy")

        transport.auto_reply["initialize"] = {}
        query = Query(
            transport,
            hooks={"PreToolUse": [HookMatcher(matcher="Bash", hooks=[on_bash])]},
        )
        await query.start()
        try:
            await query.initialize()
            transport.feed(
                inbound(
                    "cli_8",
                    {
                        "subtype": "hook_callback",
                        "callback_id": "hook_0",
                        "tool_use_id": "toolu_1",
                        "input": {
                            "hook_event_name": "PreToolUse",
                            "session_id": "s1",
                            "tool_name": "Bash",
                            "tool_input": {"command": "rm -rf /"},
                        },
                    },
                )
            )
            response = await response_for(transport, "cli_8")
            assert response["response"] == {"continue": False, "stopReason": "blocked by policy"}
            hook_input, tool_use_id = seen[0]
            assert hook_input.tool_name == "Bash"
            assert tool_use_id == "toolu_1"
        finally:
            await query.close()

    @pytest.mark.asyncio
    async def test_unknown_hook_callback_id(self, transport) -> None:
        query = Query(transport)
        await query.start()
        try:
            transport.feed(
                inbound("cli_9", {"subtype": "hook_callback", "callback_id": "hook_7", "input": {}})
            )
            response = await response_for(transport, "cli_9")
            assert response["error"] == "No hook callback found for ID: hook_7"
        finally:
            await query.close()

    @pytest.mark.asyncio
    async def test_mcp_message_routing(self, transport) -> None:
        echo = create_tool(
            "echo",
            "Echo text",
            {"text": str},
            lambda args: {"content": [{"type": "text", "text": args["text"]}]},
        )
        query = Query(transport, sdk_mcp_servers={"util": SdkMcpServer("util", tools=[echo])})
        await query.start()
        try:
            transport.feed(
                inbound(
                    "cli_10",
                    {
                        "subtype": "mcp_message",
                        "server_name": "util",
                        "message": {
                            "jsonrpc": "2.0",
                            "id": 3,
                            "method": "tools/call",
                            "params": {"name": "echo", "arguments": {"text": "hi"}},
                        },
                    },
                )
            )
            response = await response_for(transport, "cli_10")
            assert response["response"] == {
                "mcp_response": {
                    "jsonrpc": "2.0",
                    "id": 3,
                    "result": {"content": [{"type": "text", "text": "hi"}]},
                }
            }
        finally:
            await query.close()

    @pytest.mark.asyncio
    async def test_mcp_message_for_unknown_server(self, transport) -> None:
        query = Query(transport)
        await query.start()
        try:
            transport.feed(
                inbound(
                    "cli_11",
                    {"subtype": "mcp_message", "server_name": "ghost", "message": {"id": 1}},
                )
            )
            response = await response_for(transport, "cli_11")
            assert response["subtype"] == "error"
            assert response["error"] == "SDK MCP server not found: ghost"
        finally:
            await query.close()

    @pytest.mark.asyncio
    async def test_inbound_requests_run_concurrently(self, transport) -> None:
        release = anyio.Event()

        async def can_use_tool(tool_name: str, tool_input: Any, context: Any) -> Any:
            if tool_name == "Slow":
                await release.wait()
            return PermissionResultAllow()

        query = Query(transport, can_use_tool=can_use_tool)
        await query.start()
        try:
            transport.feed(inbound("slow", {"subtype": "can_use_tool", "tool_name": "Slow", "input": {}}))
            transport.feed(inbound("fast", {"subtype": "can_use_tool", "tool_name": "Fast", "input": {}}))
            await response_for(transport, "fast")
            assert [r["response"]["request_id"] for r in transport.control_responses()] == ["fast"]
            release.set()
            await response_for(transport, "slow")
        finally:
            await query.close()

    @pytest.mark.asyncio
    async def test_hook_timeout_answers_with_error(self, transport) -> None:
        async def never_returns(hook_input: Any, tool_use_id: Any, context: Any) -> Any:
            await anyio.sleep_forever()

        transport.auto_reply["initialize"] = {}
        query = Query(
            transport,
            hooks={"PreToolUse": [HookMatcher(hooks=[never_returns], timeout=0.05)]},
        )
        await query.start()
        try:
            await query.initialize()
            transport.feed(
                inbound(
                    "cli_12",
                    {
                        "subtype": "hook_callback",
                        "callback_id": "hook_0",
                        "input": {"hook_event_name": "PreToolUse", "tool_name": "Bash"},
                    },
                )
            )
            with anyio.fail_after(2):
                response = await response_for(transport, "cli_12")
            assert response["subtype"] == "error"
            assert response["error"] == "Hook callback hook_0 timed out after 0.05s"

            await anyio.sleep(0.05)
            responses = [
                r for r in transport.control_responses() if r["response"]["request_id"] == "cli_12"
            ]
            assert len(responses) == 1
            assert query._inflight == {}
        finally:
            await query.close()


class TestCancellation:
    """control_cancel_request handling."""

    @pytest.mark.asyncio
    async def test_cancel_writes_exactly_one_cancelled_response(self, transport) -> None:
        started = anyio.Event()
        contexts: list[ToolPermissionContext] = []

        async def can_use_tool(tool_name: str, tool_input: Any, context: Any) -> Any:
            contexts.append(context)
            started.set()
            await anyio.sleep_forever()

        query = Query(transport, can_use_tool=can_use_tool)
        await query.start()
        try:
            transport.feed(inbound("cli_c", {"subtype": "can_use_tool", "tool_name": "Bash", "input": {}}))
            with anyio.fail_after(2):
                await started.wait()
            transport.feed({"type": "control_cancel_request", "request_id": "cli_c"})

            response = await response_for(transport, "cli_c")
            assert response == {
                "subtype": "error",
                "request_id": "cli_c",
                "requestId": "cli_c",
                "error": "Cancelled",
            }
            assert contexts[0].signal.aborted

            await anyio.sleep(0.05)
            assert len(transport.control_responses()) == 1
            assert query._inflight == {}
        finally:
            await query.close()

    @pytest.mark.asyncio
    async def test_cancel_arriving_right_after_request(self, transport) -> None:
        async def hook(hook_input: Any, tool_use_id: Any, context: Any) -> Any:
            await anyio.sleep_forever()

        transport.auto_reply["initialize"] = {}
        query = Query(transport, hooks={"Stop": [HookMatcher(hooks=[hook])]})
        await query.start()
        try:
            await query.initialize()
            transport.feed(
                inbound(
                    "cli_d",
                    {
                        "subtype": "hook_callback",
                        "callback_id": "hook_0",
                        "input": {"hook_event_name": "Stop"},
                    },
                )
            )
            transport.feed({"type": "control_cancel_request", "requestId": "cli_d"})

            response = await response_for(transport, "cli_d")
            assert response["error"] == "Cancelled"
            await anyio.sleep(0.05)
            assert len(transport.control_responses()) == 1
        finally:
            await query.close()

    @pytest.mark.asyncio
    async def test_cancel_during_callback_without_checkpoint_still_cancels(
        self, transport
    ) -> None:
        query: Query

        def can_use_tool(tool_name: str, tool_input: Any, context: Any) -> Any:
            # Cancel lands while the callback runs, before any await point.
            query._handle_cancel_request({"type": "control_cancel_request", "request_id": "cli_e"})
            return PermissionResultAllow()

        query = Query(transport, can_use_tool=can_use_tool)
        await query.start()
        try:
            transport.feed(inbound("cli_e", {"subtype": "can_use_tool", "tool_name": "Bash", "input": {}}))
            response = await response_for(transport, "cli_e")
            assert response["subtype"] == "error"
            assert response["error"] == "Cancelled"
            await anyio.sleep(0.05)
            assert len(transport.control_responses()) == 1
        finally:
            await query.close()

    @pytest.mark.asyncio
    async def test_cancel_for_unknown_request_is_ignored(self, transport) -> None:
        query = Query(transport)
        await query.start()
        try:
            transport.feed({"type": "control_cancel_request", "request_id": "nobody"})
            transport.feed({"type": "system", "subtype": "init"})
            transport.finish()
            messages = [m async for m in query.receive_messages()]
            assert messages == [{"type": "system", "subtype": "init"}]
            assert transport.control_responses() == []
        finally:
            await query.close()


class TestDataMessages:
    """Data message delivery through the queue."""

    @pytest.mark.asyncio
    async def test_messages_arrive_in_order_between_control_traffic(self, transport) -> None:
        query = Query(transport)
        await query.start()
        try:
            transport.feed({"type": "user", "n": 1})
            transport.feed(success("req_unknown", {}))
            transport.feed({"type": "assistant", "n": 2})
            transport.feed(inbound("cli_x", {"subtype": "nope"}))
            transport.feed({"type": "result", "n": 3})
            transport.finish()

            messages = [m async for m in query.receive_messages()]
            assert [m["n"] for m in messages] == [1, 2, 3]
        finally:
            await query.close()

    @pytest.mark.asyncio
    async def test_reader_error_is_delivered_once_after_data(self, transport) -> None:
        query = Query(transport)
        await query.start()
        try:
            transport.feed({"type": "assistant", "n": 1})
            transport.fail(OSError("pipe burst"))

            received: list[dict[str, Any]] = []
            with pytest.raises(CLIConnectionError) as exc_info:
                async for message in query.receive_messages():
                    received.append(message)

            assert received == [{"type": "assistant", "n": 1}]
            assert isinstance(exc_info.value.__cause__, OSError)
            assert [m async for m in query.receive_messages()] == []
        finally:
            await query.close()

    @pytest.mark.asyncio
    async def test_close_unblocks_consumer(self, transport) -> None:
        query = Query(transport)
        received: list[Any] = []

        async def consume() -> None:
            async for message in query.receive_messages():
                received.append(message)

        async with anyio.create_task_group() as tg:
            await query.start()
            tg.start_soon(consume)
            transport.feed({"type": "assistant"})
            await anyio.sleep(0.05)
            await query.close()

        assert received == [{"type": "assistant"}]
        assert transport.closed
        # Idempotent
        await query.close()


class TestStreamInput:
    """Streaming user messages to the CLI."""

    @pytest.mark.asyncio
    async def test_stream_input_closes_stdin_when_done(self, transport) -> None:
        async def prompts():
            yield {"type": "user", "message": {"role": "user", "content": "one"}}
            yield {"type": "user", "message": {"role": "user", "content": "two"}}

        query = Query(transport)
        await query.start()
        try:
            await query.stream_input(prompts())
            assert [m["message"]["content"] for m in transport.written] == ["one", "two"]
            assert transport.input_ended
        finally:
            await query.close()

    @pytest.mark.asyncio
    async def test_stream_input_waits_for_first_result_with_callbacks(self, transport) -> None:
        async def prompts():
            yield {"type": "user", "message": {"role": "user", "content": "go"}}

        query = Query(transport, can_use_tool=lambda *args: PermissionResultAllow())
        await query.start()
        try:
            async with anyio.create_task_group() as tg:
                tg.start_soon(query.stream_input, prompts())
                await transport.wait_for(lambda m: m.get("type") == "user")
                await anyio.sleep(0.05)
                assert not transport.input_ended
                transport.feed({"type": "result", "subtype": "success"})

            assert transport.input_ended
        finally:
            await query.close()
