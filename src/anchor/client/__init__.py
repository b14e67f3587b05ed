"""Asyncio client for the Anchor real-time protocol."""

from __future__ import annotations

from anchor.client.connection import ConnectionState, ConnectionStateMachine, ReconnectPolicy

__all__ = ["ConnectionState", "ConnectionStateMachine", "ReconnectPolicy"]
