"""
Prometheus metrics for Anchor.

Defines the custom metrics for the real-time session layer.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge

# Use standard Prometheus naming conventions: namespace_subsystem_name_unit
NAMESPACE = "anchor"


# ============================================================================
# WebSocket Metrics
# ============================================================================

ws_sessions_active = Gauge(
    f"{NAMESPACE}_websocket_sessions_active",
    "Number of currently registered WebSocket sessions",
)

ws_connections_total = Counter(
    f"{NAMESPACE}_websocket_connections_total",
    "Total number of WebSocket connections accepted",
)

ws_frames_total = Counter(
    f"{NAMESPACE}_websocket_frames_total",
    "Total number of WebSocket frames processed",
    ["direction"],  # "inbound" or "outbound"
)


# ============================================================================
# Turn and Reclamation Metrics
# ============================================================================

turns_total = Counter(
    f"{NAMESPACE}_turns_total",
    "Total number of conversation turns by outcome",
    ["outcome"],  # "done", "cancelled" or "error"
)

sessions_reclaimed_total = Counter(
    f"{NAMESPACE}_sessions_reclaimed_total",
    "Total number of idle sessions reclaimed by the reaper",
)
