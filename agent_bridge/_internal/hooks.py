"""Hook callback dispatch for the control protocol.

Turns raw ``hook_callback`` payloads into typed hook inputs, runs the
registered callback (optionally under a timeout) and converts whatever the
callback returns into the field names the CLI expects.
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from typing import Any

import anyio
from pydantic import BaseModel

from agent_bridge._errors import ControlProtocolError, HookTimeoutError
from agent_bridge.types import (
    AbortSignal,
    BaseHookInput,
    HookCallback,
    HookContext,
    HookMatcher,
    NotificationHookInput,
    PermissionRequestHookInput,
    PostToolUseFailureHookInput,
    PostToolUseHookInput,
    PreCompactHookInput,
    PreToolUseHookInput,
    StopHookInput,
    SubagentStartHookInput,
    SubagentStopHookInput,
    UserPromptSubmitHookInput,
)

logger = logging.getLogger(__name__)


_HOOK_INPUT_TYPES: dict[str, type[BaseHookInput]] = {
    "PreToolUse": PreToolUseHookInput,
    "PostToolUse": PostToolUseHookInput,
    "PostToolUseFailure": PostToolUseFailureHookInput,
    "UserPromptSubmit": UserPromptSubmitHookInput,
    "Stop": StopHookInput,
    "SubagentStop": SubagentStopHookInput,
    "SubagentStart": SubagentStartHookInput,
    "Notification": NotificationHookInput,
    "PermissionRequest": PermissionRequestHookInput,
    "PreCompact": PreCompactHookInput,
}

# Python-safe output keys and the names the CLI expects for them
_OUTPUT_KEY_RENAMES = {
    "async_": "async",
    "continue_": "continue",
    "hook_specific_output": "hookSpecificOutput",
    "suppress_output": "suppressOutput",
    "stop_reason": "stopReason",
    "system_message": "systemMessage",
    "async_timeout": "asyncTimeout",
}


@dataclass(frozen=True)
class HookRegistration:
    """A hook callback registered during the initialize handshake."""

    callback_id: str
    callback: HookCallback
    timeout: float | None = None


def parse_hook_input(input_data: dict[str, Any]) -> BaseHookInput:
    """Build the typed hook input for ``input_data``.

    Event names this SDK does not know yet produce a ``BaseHookInput``
    holding the shared fields (plus any extras) instead of failing.
    """
    event_name = input_data.get("hook_event_name")
    input_type = _HOOK_INPUT_TYPES.get(event_name or "")
    if input_type is None:
        if event_name:
            logger.debug(f"[hooks] Unknown hook event {event_name!r}; using base input")
        return BaseHookInput.model_validate(input_data)
    return input_type.model_validate(input_data)


def _serialize(value: Any) -> Any:
    if isinstance(value, dict):
        return value
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    if isinstance(value, BaseModel):
        return value.model_dump(exclude_none=True, by_alias=True, mode="json")
    return value


def convert_hook_output_for_cli(hook_output: Any) -> dict[str, Any]:
    """Convert a hook callback's return value to CLI field names.

    Python code uses ``async_``/``continue_`` and snake_case names; the CLI
    expects ``async``/``continue`` and camelCase.
    """
    if hook_output is None:
        return {}
    if not isinstance(hook_output, dict):
        serialized = _serialize(hook_output)
        if not isinstance(serialized, dict):
            raise TypeError(
                f"Hook callback must return a dict or hook output object, "
                f"got {type(hook_output).__name__}"
            )
        return serialized

    converted: dict[str, Any] = {}
    for key, value in hook_output.items():
        converted[_OUTPUT_KEY_RENAMES.get(key, key)] = _serialize(value)
    return converted


def build_hook_registrations(
    hooks: dict[str, list[HookMatcher]],
    start_index: int = 0,
) -> tuple[dict[str, list[dict[str, Any]]], dict[str, HookRegistration]]:
    """Assign callback ids to every configured hook.

    Returns the ``hooks`` payload of the initialize request and the id-keyed
    registration table.
    """
    config: dict[str, list[dict[str, Any]]] = {}
    registrations: dict[str, HookRegistration] = {}
    next_id = start_index

    for event, matchers in hooks.items():
        if not matchers:
            continue
        event_config: list[dict[str, Any]] = []
        for matcher in matchers:
            callback_ids: list[str] = []
            for callback in matcher.hooks:
                callback_id = f"hook_{next_id}"
                next_id += 1
                registrations[callback_id] = HookRegistration(
                    callback_id=callback_id,
                    callback=callback,
                    timeout=matcher.timeout,
                )
                callback_ids.append(callback_id)
            entry: dict[str, Any] = {
                "matcher": matcher.matcher,
                "hookCallbackIds": callback_ids,
            }
            if matcher.timeout is not None:
                entry["timeout"] = matcher.timeout
            event_config.append(entry)
        config[str(event)] = event_config

    return config, registrations


async def dispatch_hook_callback(
    registrations: dict[str, HookRegistration],
    request: dict[str, Any],
    signal: AbortSignal | None = None,
) -> dict[str, Any]:
    """Run the callback named by a ``hook_callback`` request.

    Raises:
        ControlProtocolError: If no callback is registered under the id.
        HookTimeoutError: If the registration's timeout elapses first.
    """
    callback_id = request.get("callback_id")
    registration = registrations.get(callback_id or "")
    if registration is None:
        raise ControlProtocolError(f"No hook callback found for ID: {callback_id}")

    hook_input = parse_hook_input(request.get("input") or {})
    tool_use_id = request.get("tool_use_id")
    context = HookContext(signal=signal)

    async def _invoke() -> Any:
        result = registration.callback(hook_input, tool_use_id, context)
        if inspect.isawaitable(result):
            result = await result
        return result

    if registration.timeout is None:
        return convert_hook_output_for_cli(await _invoke())

    output: Any = None
    with anyio.move_on_after(registration.timeout) as scope:
        output = await _invoke()
    if scope.cancelled_caught:
        raise HookTimeoutError(registration.callback_id, registration.timeout)
    return convert_hook_output_for_cli(output)


__all__ = [
    "HookRegistration",
    "parse_hook_input",
    "convert_hook_output_for_cli",
    "build_hook_registrations",
    "dispatch_hook_callback",
]
