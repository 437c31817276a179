"""
In-Memory Broadcast Adapter (single worker)

Local-only broadcast implementation using asyncio.Queue.
No Redis dependency for development/testing.
"""
import asyncio
import json
import logging
from typing import Dict, Any, Set
from .broadcast_adapter import BroadcastAdapter

logger = logging.getLogger(__name__)


class InMemoryAdapter(BroadcastAdapter):
    """
    In-memory broadcast adapter.

    Each subscriber owns a bounded queue; a full queue drops the new
    message for that subscriber only.
    """

    def __init__(self, max_queue_size: int = 100):
        self.max_queue_size = max_queue_size
        self._channels: Dict[str, Set[asyncio.Queue]] = {}
        self._lock = asyncio.Lock()

    async def publish(self, channel: str, message: Dict[str, Any]) -> None:
        self.validate_message(message)

        serialized = self._serialize_message(message)

        async with self._lock:
            queues = list(self._channels.get(channel, ()))
        for queue in queues:
            try:
                queue.put_nowait(serialized)
            except asyncio.QueueFull:
                # Slow subscriber, drop
                logger.debug(f"Dropped snapshot {message['snapshot_sequence']} on {channel}")

    async def subscribe(self, channel: str):
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue_size)

        async with self._lock:
            self._channels.setdefault(channel, set()).add(queue)

        try:
            while True:
                serialized = await queue.get()
                if serialized is None:  # Shutdown signal
                    break
                try:
                    yield json.loads(serialized)
                except json.JSONDecodeError:
                    continue
        finally:
            async with self._lock:
                subscribers = self._channels.get(channel)
                if subscribers is not None:
                    subscribers.discard(queue)
                    if not subscribers:
                        del self._channels[channel]

    def subscriber_count(self, channel: str) -> int:
        return len(self._channels.get(channel, ()))

    async def close(self) -> None:
        async with self._lock:
            for queues in self._channels.values():
                for queue in queues:
                    try:
                        queue.put_nowait(None)
                    except asyncio.QueueFull:
                        queue.get_nowait()
                        queue.put_nowait(None)
            self._channels.clear()
