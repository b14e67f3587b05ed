"""
Anchor - Real-time session layer for a desktop chat client
===========================================================

Streams assistant responses token-by-token over a WebSocket while keeping
track of every live session on the server side.

Key Features:
    - **Session Registry**: One entry per live WebSocket session with activity tracking
    - **Protocol Handler**: JSON frame protocol (start_turn / cancel / ping) over ``/ws``
    - **Idle Reaper**: Periodic reclamation of abandoned sessions (never while streaming)
    - **Connection State Machine**: Client with confirmed connect, keep-alive and backoff
"""

__version__ = "1.0.0"
