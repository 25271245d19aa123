"""Pytest configuration and fixtures for all tests."""

import json
import math
from collections.abc import AsyncIterator, Callable
from typing import Any

import anyio
import pytest

from agent_bridge._internal.transport import Transport


class _Failure:
    def __init__(self, error: BaseException) -> None:
        self.error = error


class ScriptedTransport(Transport):
    """In-memory transport driven by the test.

    ``feed`` queues a message for the reader, ``fail`` makes the reader raise,
    ``finish`` ends the stream. Every line the SDK writes is decoded into
    ``written``. ``auto_reply`` maps outbound control request subtypes to the
    success payload the fake peer answers with.
    """

    def __init__(self, end_on_input_close: bool = False) -> None:
        self._send, self._receive = anyio.create_memory_object_stream[Any](
            max_buffer_size=math.inf
        )
        self.written: list[dict[str, Any]] = []
        self.auto_reply: dict[str, dict[str, Any]] = {}
        self.end_on_input_close = end_on_input_close
        self.connected = False
        self.closed = False
        self.input_ended = False

    # -- test controls -------------------------------------------------

    def feed(self, message: dict[str, Any]) -> None:
        self._send.send_nowait(message)

    def fail(self, error: BaseException) -> None:
        self._send.send_nowait(_Failure(error))

    def finish(self) -> None:
        self._send.close()

    def control_requests(self, subtype: str | None = None) -> list[dict[str, Any]]:
        return [
            message
            for message in self.written
            if message.get("type") == "control_request"
            and (subtype is None or message["request"].get("subtype") == subtype)
        ]

    def control_responses(self) -> list[dict[str, Any]]:
        return [m for m in self.written if m.get("type") == "control_response"]

    async def wait_for(
        self,
        predicate: Callable[[dict[str, Any]], bool],
        timeout: float = 2.0,
    ) -> dict[str, Any]:
        """Wait until a written message satisfies ``predicate`` and return it."""
        with anyio.fail_after(timeout):
            while True:
                for message in self.written:
                    if predicate(message):
                        return message
                await anyio.sleep(0.005)

    # -- Transport -----------------------------------------------------

    async def connect(self) -> None:
        self.connected = True

    async def write(self, data: str) -> None:
        assert data.endswith("\n")
        message = json.loads(data)
        self.written.append(message)

        if message.get("type") == "control_request":
            subtype = message["request"].get("subtype")
            if subtype in self.auto_reply:
                self.feed(
                    {
                        "type": "control_response",
                        "response": {
                            "subtype": "success",
                            "request_id": message["request_id"],
                            "response": self.auto_reply[subtype],
                        },
                    }
                )

    def read_messages(self) -> AsyncIterator[dict[str, Any]]:
        return self._read()

    async def _read(self) -> AsyncIterator[dict[str, Any]]:
        async for item in self._receive:
            if isinstance(item, _Failure):
                raise item.error
            yield item

    async def close(self) -> None:
        self.closed = True
        self._send.close()

    def is_ready(self) -> bool:
        return self.connected and not self.closed

    async def end_input(self) -> None:
        self.input_ended = True
        if self.end_on_input_close:
            self._send.close()


@pytest.fixture
def transport() -> ScriptedTransport:
    """A fresh scripted transport."""
    return ScriptedTransport()


@pytest.fixture
def oneshot_transport() -> ScriptedTransport:
    """A scripted transport whose peer exits once stdin is closed."""
    return ScriptedTransport(end_on_input_close=True)
