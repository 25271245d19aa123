"""Transport abstraction for the agent bridge.

A transport moves newline-delimited JSON between the SDK and the agent CLI.
It knows nothing about control requests; :class:`~agent_bridge._internal.query.Query`
layers the control protocol on top of it.
"""

import abc
from collections.abc import AsyncIterator
from typing import Any


class Transport(abc.ABC):
    """Duplex line channel to an agent process.

    Implementations may spawn a subprocess, wrap a socket, or (in tests)
    replay a script. Every method except ``read_messages`` and ``is_ready``
    is a coroutine.
    """

    @abc.abstractmethod
    async def connect(self) -> None:
        """Open the channel (start the process, dial the socket, ...)."""

    @abc.abstractmethod
    async def write(self, data: str) -> None:
        """Write one serialized line, including its trailing newline."""

    @abc.abstractmethod
    def read_messages(self) -> AsyncIterator[dict[str, Any]]:
        """Iterate over decoded JSON objects until the peer closes its output."""

    @abc.abstractmethod
    async def close(self) -> None:
        """Release the channel. Must be safe to call more than once."""

    @abc.abstractmethod
    def is_ready(self) -> bool:
        """Return True while the channel can carry traffic."""

    @abc.abstractmethod
    async def end_input(self) -> None:
        """Half-close the outbound direction (close stdin for processes)."""


__all__ = ["Transport"]
