"""Timeout defaults for control protocol requests."""

from __future__ import annotations

import os

# Ceiling for short control requests (set_model, set_permission_mode, mcp_status)
CONTROL_REQUEST_TIMEOUT_SEC = float(os.getenv("AGENT_BRIDGE_CONTROL_TIMEOUT", "60"))
# Ceiling for control requests that accompany a running agent turn (interrupt, rewind_files)
# and for holding stdin open until the first result arrives
LONG_CONTROL_REQUEST_TIMEOUT_SEC = float(os.getenv("AGENT_BRIDGE_LONG_CONTROL_TIMEOUT", "600"))
# Ceiling for the initialize handshake
INITIALIZE_TIMEOUT_SEC = float(os.getenv("AGENT_BRIDGE_INITIALIZE_TIMEOUT", "60"))


__all__ = [
    "CONTROL_REQUEST_TIMEOUT_SEC",
    "LONG_CONTROL_REQUEST_TIMEOUT_SEC",
    "INITIALIZE_TIMEOUT_SEC",
]
