"""Internal components of the agent bridge."""

from .message_parser import parse_message
from .query import Query
from .transport import Transport
from .transport.subprocess_cli import SubprocessCLITransport

__all__ = [
    "Query",
    "Transport",
    "SubprocessCLITransport",
    "parse_message",
]
