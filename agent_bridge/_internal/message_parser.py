"""Message parser for the agent bridge.

This module turns the data messages the CLI emits into typed Message objects.
"""

import logging
from typing import Any

from agent_bridge._errors import MessageParseError
from agent_bridge.types import (
    AssistantMessage,
    ContentBlock,
    Message,
    ResultMessage,
    StreamEvent,
    SystemMessage,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
    UserMessage,
)

logger = logging.getLogger(__name__)


def _parse_content_block(block: dict[str, Any]) -> ContentBlock | None:
    block_type = block.get("type")
    match block_type:
        case "text":
            return TextBlock(text=block.get("text", ""))
        case "thinking":
            return ThinkingBlock(
                thinking=block.get("thinking", ""),
                signature=block.get("signature", ""),
            )
        case "tool_use":
            return ToolUseBlock(
                id=block["id"],
                name=block["name"],
                input=block.get("input") or {},
            )
        case "tool_result":
            return ToolResultBlock(
                tool_use_id=block["tool_use_id"],
                content=block.get("content"),
                is_error=block.get("is_error"),
            )
        case _:
            logger.warning(f"Unknown content block type: {block_type}")
            return None


def _parse_content_blocks(blocks: list[Any]) -> list[ContentBlock]:
    parsed = (_parse_content_block(block) for block in blocks if isinstance(block, dict))
    return [block for block in parsed if block is not None]


def parse_message(data: dict[str, Any]) -> Message:
    """Parse a data message from CLI output into a typed Message object.

    Args:
        data: Raw message dictionary from CLI output

    Returns:
        Parsed Message object

    Raises:
        MessageParseError: If parsing fails or the message type is unrecognized
    """
    if not isinstance(data, dict):
        raise MessageParseError(
            f"Invalid message data type (expected dict, got {type(data).__name__})",
            data,
        )

    message_type = data.get("type")
    if not message_type:
        raise MessageParseError("Message missing 'type' field", data)

    try:
        match message_type:
            case "user":
                content = data["message"]["content"]
                return UserMessage(
                    content=_parse_content_blocks(content) if isinstance(content, list) else content,
                    uuid=data.get("uuid"),
                    parent_tool_use_id=data.get("parent_tool_use_id"),
                    tool_use_result=data.get("tool_use_result"),
                )

            case "assistant":
                message = data["message"]
                return AssistantMessage(
                    content=_parse_content_blocks(message["content"]),
                    model=message.get("model", ""),
                    parent_tool_use_id=data.get("parent_tool_use_id"),
                    error=data.get("error"),
                )

            case "system":
                return SystemMessage(subtype=data.get("subtype", ""), data=data)

            case "result":
                return ResultMessage(
                    subtype=data["subtype"],
                    duration_ms=data["duration_ms"],
                    duration_api_ms=data.get("duration_api_ms", 0),
                    is_error=data["is_error"],
                    num_turns=data["num_turns"],
                    session_id=data["session_id"],
                    total_cost_usd=data.get("total_cost_usd"),
                    usage=data.get("usage"),
                    result=data.get("result"),
                    structured_output=data.get("structured_output"),
                )

            case "stream_event":
                return StreamEvent(
                    uuid=data["uuid"],
                    session_id=data["session_id"],
                    event=data["event"],
                    parent_tool_use_id=data.get("parent_tool_use_id"),
                )

            case _:
                raise MessageParseError(f"Unknown message type: {message_type}", data)

    except (KeyError, TypeError) as e:
        raise MessageParseError(
            f"Missing required field in {message_type} message: {e}", data
        ) from e


__all__ = ["parse_message"]
