"""
Wallet Connection Module

Connection lifecycle for a single signing agent:
- Connection state machine with caching, timeouts, and expiry sweeps
- Session snapshots and metrics
- Pluggable session persistence
"""

from .models import (
    ConnectionStatus,
    ConnectionSession,
    ConnectionState,
    ConnectionMetrics,
)
from .session_store import (
    SessionStore,
    SessionStoreError,
    InMemorySessionStore,
    JsonFileSessionStore,
    create_session_store,
)
from .connection import ConnectionStateMachine

__all__ = [
    # Models
    "ConnectionStatus",
    "ConnectionSession",
    "ConnectionState",
    "ConnectionMetrics",
    # Persistence
    "SessionStore",
    "SessionStoreError",
    "InMemorySessionStore",
    "JsonFileSessionStore",
    "create_session_store",
    # State machine
    "ConnectionStateMachine",
]
