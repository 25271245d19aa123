"""Example usage of the agent bridge SDK.

Runs a session with an in-process calculator server, a PreToolUse hook that
blocks destructive shell commands, and a permission callback.
"""

import asyncio
from typing import Any

from agent_bridge import (
    AgentBridgeClient,
    AgentOptions,
    AssistantMessage,
    HookMatcher,
    PermissionResultAllow,
    PermissionResultDeny,
    PreToolUseHookSpecificOutput,
    ResultMessage,
    SyncHookJSONOutput,
    TextBlock,
    ToolPermissionContext,
    create_sdk_mcp_server,
    tool,
)


@tool("add", "Add two numbers", {"a": float, "b": float})
async def add(args: dict[str, Any]) -> dict[str, Any]:
    return {"content": [{"type": "text", "text": str(args["a"] + args["b"])}]}


async def block_rm(hook_input, tool_use_id, context) -> SyncHookJSONOutput:
    command = hook_input.tool_input.get("command", "")
    if "rm -rf" in command:
        return SyncHookJSONOutput(
            hook_specific_output=PreToolUseHookSpecificOutput(
                permission_decision="deny",
                permission_decision_reason="Destructive command blocked",
            )
        )
    return SyncHookJSONOutput()


async def can_use_tool(
    tool_name: str, tool_input: dict[str, Any], context: ToolPermissionContext
) -> PermissionResultAllow | PermissionResultDeny:
    if tool_name == "Write" and str(tool_input.get("file_path", "")).startswith("/etc"):
        return PermissionResultDeny(message="System files are read-only")
    return PermissionResultAllow()


async def main() -> None:
    options = AgentOptions(
        mcp_servers={"calc": create_sdk_mcp_server("calculator", tools=[add])},
        allowed_tools=["mcp__calc__add", "Bash"],
        hooks={"PreToolUse": [HookMatcher(matcher="Bash", hooks=[block_rm], timeout=10)]},
        can_use_tool=can_use_tool,
    )

    async with AgentBridgeClient(options) as client:
        await client.query("What is 19.5 + 22.5? Use the calculator.")
        async for message in client.receive_response():
            if isinstance(message, AssistantMessage):
                for block in message.content:
                    if isinstance(block, TextBlock):
                        print(block.text)
            elif isinstance(message, ResultMessage):
                print(f"Done in {message.duration_ms} ms, cost: {message.total_cost_usd}")


if __name__ == "__main__":
    asyncio.run(main())
