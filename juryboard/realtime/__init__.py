"""
Real-time report snapshot delivery.

Transport is swappable: InMemoryAdapter for a single worker, RedisAdapter
when several workers serve websocket clients.
"""
from .broadcast_adapter import BroadcastAdapter
from .in_memory_adapter import InMemoryAdapter
from .connection_manager import ConnectionManager, get_connection_manager, set_connection_manager

__all__ = [
    "BroadcastAdapter",
    "InMemoryAdapter",
    "ConnectionManager",
    "get_connection_manager",
    "set_connection_manager",
]
