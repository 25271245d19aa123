"""Subprocess transport implementation using anyio for async I/O.

This module implements the stdio transport that spawns the agent CLI and
exchanges newline-delimited JSON with it over stdin/stdout.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import subprocess
from collections import deque
from collections.abc import AsyncIterable, AsyncIterator
from contextlib import suppress
from pathlib import Path
from typing import TYPE_CHECKING, Any

import anyio
from anyio.abc import Process, TaskGroup
from anyio.streams.text import TextReceiveStream, TextSendStream

from agent_bridge._errors import (
    CLIConnectionError,
    CLIJSONDecodeError,
    CLINotFoundError,
    ProcessError,
)
from agent_bridge._internal.transport import Transport
from agent_bridge._version import __version__

if TYPE_CHECKING:
    from agent_bridge.types import AgentOptions

logger = logging.getLogger(__name__)

# Default buffer size limit for a single JSON message
_DEFAULT_MAX_BUFFER_SIZE = 1024 * 1024  # 1MB

# Number of stderr lines kept for error reports
_STDERR_TAIL_LINES = 100

_CLI_NAME = "claude"

CLI_PATH_ENV = "AGENT_BRIDGE_CLI_PATH"
ENTRYPOINT_ENV = "AGENT_BRIDGE_ENTRYPOINT"
SDK_VERSION_ENV = "AGENT_BRIDGE_SDK_VERSION"


def find_cli() -> str:
    """Locate the agent CLI binary.

    Raises:
        CLINotFoundError: If the CLI cannot be found.
    """
    override = os.getenv(CLI_PATH_ENV)
    if override:
        return override

    if cli := shutil.which(_CLI_NAME):
        return cli

    locations = [
        Path.home() / ".claude" / "local" / _CLI_NAME,
        Path.home() / ".npm-global" / "bin" / _CLI_NAME,
        Path("/usr/local") / "bin" / _CLI_NAME,
        Path.home() / ".local" / "bin" / _CLI_NAME,
        Path.home() / "node_modules" / ".bin" / _CLI_NAME,
        Path.home() / ".yarn" / "bin" / _CLI_NAME,
    ]
    for path in locations:
        if path.exists() and path.is_file():
            return str(path)

    raise CLINotFoundError(
        "Agent CLI not found. Put it on PATH, set "
        f"{CLI_PATH_ENV}, or pass AgentOptions(cli_path='/path/to/{_CLI_NAME}')"
    )


def _mcp_config_for_cli(mcp_servers: Any) -> str | None:
    """Serialize MCP server configs; SDK servers are sent without their instance."""
    if not mcp_servers:
        return None
    if not isinstance(mcp_servers, dict):
        return str(mcp_servers)

    servers_for_cli: dict[str, Any] = {}
    for name, config in mcp_servers.items():
        if isinstance(config, dict) and config.get("type") == "sdk":
            servers_for_cli[name] = {k: v for k, v in config.items() if k != "instance"}
        else:
            servers_for_cli[name] = config
    return json.dumps({"mcpServers": servers_for_cli})


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else value.to_dict()


def _settings_for_cli(settings: Any, sandbox: Any) -> str | None:
    """Merge sandbox settings into the ``--settings`` value.

    A settings string that is not JSON is a file path; it is passed through
    unchanged and the sandbox cannot be merged into it.
    """
    if settings is None and sandbox is None:
        return None

    merged: dict[str, Any] = {}
    if isinstance(settings, str):
        try:
            parsed = json.loads(settings)
        except json.JSONDecodeError:
            if sandbox is not None:
                logger.warning(
                    "[transport] Sandbox settings ignored: settings is a file path, "
                    "pass a dict or JSON string to merge them"
                )
            return settings
        if not isinstance(parsed, dict):
            return settings
        merged = parsed
    elif isinstance(settings, dict):
        merged = dict(settings)

    if sandbox is not None:
        sandbox_config = _as_dict(sandbox)
        if sandbox_config:
            merged["sandbox"] = sandbox_config

    return json.dumps(merged) if merged else None


def _json_schema_for_cli(output_format: Any) -> str:
    """Unwrap ``{"type": "json_schema", "schema": ...}`` and serialize the schema."""
    schema = output_format
    if isinstance(output_format, dict) and output_format.get("type") == "json_schema":
        schema = output_format.get("schema")
    return schema if isinstance(schema, str) else json.dumps(schema)


class SubprocessCLITransport(Transport):
    """Stdio subprocess transport.

    Starts the agent CLI and talks to it through stdin/stdout using JSON
    messages separated by newlines. Stderr is drained continuously so the
    child never blocks on a full pipe; the last lines are kept for error
    reports and forwarded to ``options.stderr`` when set.
    """

    def __init__(
        self,
        prompt: str | AsyncIterable[dict[str, Any]],
        options: AgentOptions,
    ):
        """Initialize the subprocess transport.

        Args:
            prompt: A string prompt (one-shot ``--print`` mode) or an async
                iterable of message dicts (streaming mode).
            options: Session options used to build the CLI command line.
        """
        self._prompt = prompt
        self._is_streaming = not isinstance(prompt, str)
        self._options = options

        self._cli_path = str(options.cli_path) if options.cli_path is not None else find_cli()
        self._cwd = str(options.cwd) if options.cwd else None

        self._process: Process | None = None
        self._stdout_stream: TextReceiveStream | None = None
        self._stdin_stream: TextSendStream | None = None
        self._stderr_tg: TaskGroup | None = None
        self._stderr_tail: deque[str] = deque(maxlen=_STDERR_TAIL_LINES)

        self._ready = False
        self._closing = False
        self._exit_error: Exception | None = None
        self._write_lock = anyio.Lock()
        self._max_buffer_size = (
            options.max_buffer_size
            if options.max_buffer_size is not None
            else _DEFAULT_MAX_BUFFER_SIZE
        )

    @property
    def is_streaming(self) -> bool:
        return self._is_streaming

    def _build_command(self) -> list[str]:
        """Build the CLI command with all arguments."""
        options = self._options
        cmd = [self._cli_path, "--output-format", "stream-json", "--verbose"]

        system_prompt = options.system_prompt
        if isinstance(system_prompt, str):
            cmd.extend(["--system-prompt", system_prompt])
        elif isinstance(system_prompt, dict) and system_prompt.get("type") == "preset":
            append = system_prompt.get("append")
            if append:
                cmd.extend(["--append-system-prompt", append])

        if options.allowed_tools:
            cmd.extend(["--allowedTools", ",".join(options.allowed_tools)])
        if options.disallowed_tools:
            cmd.extend(["--disallowedTools", ",".join(options.disallowed_tools)])
        if options.max_turns:
            cmd.extend(["--max-turns", str(options.max_turns)])
        if options.max_budget_usd is not None:
            cmd.extend(["--max-budget-usd", str(options.max_budget_usd)])
        if options.model:
            cmd.extend(["--model", options.model])
        if options.fallback_model:
            cmd.extend(["--fallback-model", options.fallback_model])
        if options.permission_prompt_tool_name:
            cmd.extend(["--permission-prompt-tool", options.permission_prompt_tool_name])
        if options.permission_mode:
            cmd.extend(["--permission-mode", options.permission_mode])
        if options.continue_conversation:
            cmd.append("--continue")
        if options.resume:
            cmd.extend(["--resume", options.resume])
        settings = _settings_for_cli(options.settings, options.sandbox)
        if settings:
            cmd.extend(["--settings", settings])
        if options.setting_sources is not None:
            cmd.extend(["--setting-sources", ",".join(options.setting_sources)])
        if options.betas:
            cmd.extend(["--betas", ",".join(options.betas)])
        for directory in options.add_dirs:
            cmd.extend(["--add-dir", str(directory)])

        mcp_config = _mcp_config_for_cli(options.mcp_servers)
        if mcp_config:
            cmd.extend(["--mcp-config", mcp_config])

        if options.output_format is not None:
            cmd.extend(["--json-schema", _json_schema_for_cli(options.output_format)])
        if options.agents:
            agents = {name: _as_dict(agent) for name, agent in options.agents.items()}
            cmd.extend(["--agents", json.dumps(agents)])
        if options.plugins:
            plugins = [_as_dict(plugin) for plugin in options.plugins]
            cmd.extend(["--plugins", json.dumps(plugins)])

        if options.include_partial_messages:
            cmd.append("--include-partial-messages")
        if options.fork_session:
            cmd.append("--fork-session")
        if options.enable_file_checkpointing:
            cmd.append("--enable-file-checkpointing")

        for flag, value in options.extra_args.items():
            if value is None:
                cmd.append(f"--{flag}")
            else:
                cmd.extend([f"--{flag}", str(value)])

        if self._is_streaming:
            cmd.extend(["--input-format", "stream-json"])
        else:
            cmd.extend(["--print", "--", str(self._prompt)])

        return cmd

    def _build_env(self) -> dict[str, str]:
        """Child environment; the SDK's own ``os.environ`` is never modified."""
        env = {
            **os.environ,
            **self._options.env,
            ENTRYPOINT_ENV: self._options.entrypoint,
            SDK_VERSION_ENV: __version__,
        }
        if self._cwd:
            env["PWD"] = self._cwd
        return env

    async def connect(self) -> None:
        """Start the subprocess and establish communication.

        Raises:
            CLIConnectionError: If the process fails to start.
            CLINotFoundError: If the CLI cannot be found.
        """
        if self._process:
            return

        cmd = self._build_command()

        try:
            self._process = await anyio.open_process(
                cmd,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=self._cwd,
                env=self._build_env(),
            )
        except FileNotFoundError as e:
            if self._cwd and not Path(self._cwd).exists():
                error: CLIConnectionError = CLIConnectionError(
                    f"Working directory does not exist: {self._cwd}"
                )
            else:
                error = CLINotFoundError("Agent CLI not found at", cli_path=self._cli_path)
            self._exit_error = error
            raise error from e
        except Exception as e:
            error = CLIConnectionError(f"Failed to start agent CLI: {e}")
            self._exit_error = error
            raise error from e

        if self._process.stdout:
            self._stdout_stream = TextReceiveStream(self._process.stdout)

        if self._process.stderr:
            self._stderr_tg = anyio.create_task_group()
            await self._stderr_tg.__aenter__()
            self._stderr_tg.start_soon(self._handle_stderr, TextReceiveStream(self._process.stderr))

        if self._is_streaming and self._process.stdin:
            self._stdin_stream = TextSendStream(self._process.stdin)
        elif self._process.stdin:
            # String mode: the prompt is on the command line
            await self._process.stdin.aclose()

        self._ready = True
        logger.info(f"[transport] Started agent CLI: {self._cli_path}")
        logger.debug(f"[transport] Command: {' '.join(cmd)}")

    async def _handle_stderr(self, stream: TextReceiveStream) -> None:
        """Drain stderr line by line."""
        buffer = ""
        try:
            async for chunk in stream:
                buffer += chunk
                *lines, buffer = buffer.split("\n")
                for line in lines:
                    self._on_stderr_line(line.rstrip())
        except (anyio.ClosedResourceError, anyio.BrokenResourceError):
            pass
        if buffer.strip():
            self._on_stderr_line(buffer.rstrip())

    def _on_stderr_line(self, line: str) -> None:
        if not line:
            return
        self._stderr_tail.append(line)
        logger.debug(f"[transport] CLI stderr: {line}")
        if self._options.stderr is not None:
            try:
                self._options.stderr(line)
            except Exception as e:
                logger.warning(f"[transport] stderr callback raised: {type(e).__name__}: {e}")

    async def write(self, data: str) -> None:
        """Write data to the subprocess stdin.

        Raises:
            CLIConnectionError: If the transport cannot accept writes.
        """
        async with self._write_lock:
            if not self._ready or not self._stdin_stream:
                raise CLIConnectionError("Transport not ready for writing")

            if self._process and self._process.returncode is not None:
                raise CLIConnectionError(
                    f"Cannot write to terminated process (exit code: {self._process.returncode})"
                )

            if self._exit_error:
                raise CLIConnectionError(
                    f"Cannot write to process that exited with error: {self._exit_error}"
                ) from self._exit_error

            try:
                await self._stdin_stream.send(data)
            except Exception as e:
                self._ready = False
                self._exit_error = CLIConnectionError(f"Failed to write to process: {e}")
                raise self._exit_error from e

    async def end_input(self) -> None:
        """End the input stream by closing stdin."""
        async with self._write_lock:
            if self._stdin_stream:
                with suppress(anyio.ClosedResourceError, anyio.BrokenResourceError, OSError):
                    await self._stdin_stream.aclose()
                self._stdin_stream = None

    def read_messages(self) -> AsyncIterator[dict[str, Any]]:
        """Read and parse JSON messages from stdout.

        Raises:
            CLIConnectionError: If not connected.
            CLIJSONDecodeError: If a message outgrows the buffer.
            ProcessError: If the CLI exits with a non-zero status.
        """
        return self._read_messages_impl()

    async def _read_messages_impl(self) -> AsyncIterator[dict[str, Any]]:
        if not self._process or not self._stdout_stream:
            raise CLIConnectionError("Not connected")

        pending = ""
        json_buffer = ""

        try:
            async for chunk in self._stdout_stream:
                pending += chunk
                *lines, pending = pending.split("\n")
                for line in lines:
                    message, json_buffer = self._parse_line(line, json_buffer)
                    if message is not None:
                        yield message
        except anyio.ClosedResourceError:
            pass

        if pending.strip():
            message, json_buffer = self._parse_line(pending, json_buffer)
            if message is not None:
                yield message

        if self._closing or self._process is None:
            return

        returncode = await self._process.wait()
        if returncode != 0:
            stderr = "\n".join(self._stderr_tail) or None
            error = ProcessError(
                "Agent CLI exited with an error", exit_code=returncode, stderr=stderr
            )
            self._exit_error = error
            raise error

    def _parse_line(self, line: str, json_buffer: str) -> tuple[dict[str, Any] | None, str]:
        """Accumulate ``line`` and return the decoded object once it parses."""
        line = line.strip()
        if not line:
            return None, json_buffer

        json_buffer += line
        if len(json_buffer) > self._max_buffer_size:
            raise CLIJSONDecodeError(
                json_buffer[:100],
                ValueError(
                    f"JSON message exceeded buffer size "
                    f"({len(json_buffer)} > {self._max_buffer_size})"
                ),
            )

        try:
            data = json.loads(json_buffer)
        except json.JSONDecodeError:
            # Possibly a message split across lines; keep buffering
            return None, json_buffer

        if not isinstance(data, dict):
            logger.debug(f"[transport] Ignoring non-object JSON line: {line[:100]}")
            return None, ""
        return data, ""

    async def close(self) -> None:
        """Close the transport and clean up all resources."""
        self._closing = True

        if not self._process:
            self._ready = False
            return

        async with self._write_lock:
            self._ready = False
            if self._stdin_stream:
                with suppress(anyio.ClosedResourceError, anyio.BrokenResourceError, OSError):
                    await self._stdin_stream.aclose()
                self._stdin_stream = None

        if self._process.returncode is None:
            with suppress(ProcessLookupError):
                self._process.terminate()
            with anyio.move_on_after(5):
                await self._process.wait()
            if self._process.returncode is None:
                with suppress(ProcessLookupError):
                    self._process.kill()
                await self._process.wait()

        if self._stderr_tg is not None:
            self._stderr_tg.cancel_scope.cancel()
            with suppress(anyio.get_cancelled_exc_class()):
                await self._stderr_tg.__aexit__(None, None, None)
            self._stderr_tg = None

        if self._stdout_stream:
            with suppress(anyio.ClosedResourceError, anyio.BrokenResourceError, OSError):
                await self._stdout_stream.aclose()
            self._stdout_stream = None

        with suppress(OSError):
            await self._process.aclose()

        self._process = None
        self._exit_error = None

    def is_ready(self) -> bool:
        """Check if the transport is ready for communication."""
        return (
            self._ready
            and self._process is not None
            and self._process.returncode is None
        )


__all__ = ["SubprocessCLITransport", "find_cli"]
