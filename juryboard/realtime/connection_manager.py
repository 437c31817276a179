"""
WebSocket Connection Manager

Tracks report subscribers per channel on this worker. The first local
connection to a channel starts one relay task that subscribes to the
broadcast adapter and fans snapshots out to every local socket; the relay
stops when the last local connection leaves.
"""
import asyncio
import json
import logging
from datetime import datetime
from typing import Dict, Any, Optional

from fastapi import WebSocket

from .broadcast_adapter import BroadcastAdapter

logger = logging.getLogger(__name__)


class ConnectionManager:
    """
    Per-worker state:
    - local WebSocket connections per channel
    - one bounded outbound queue and sender task per socket
    - one adapter relay task per channel with local connections
    """

    def __init__(
        self,
        broadcast_adapter: BroadcastAdapter,
        max_queue_size: int = 100
    ):
        self.broadcast_adapter = broadcast_adapter
        self.max_queue_size = max_queue_size

        # {channel: {websocket: metadata}}
        self.connections: Dict[str, Dict[WebSocket, Dict[str, Any]]] = {}
        self.message_queues: Dict[WebSocket, asyncio.Queue] = {}
        self._senders: Dict[WebSocket, asyncio.Task] = {}
        self._relays: Dict[str, asyncio.Task] = {}

    async def connect(self, websocket: WebSocket, channel: str, subscriber: str = "anonymous") -> None:
        await websocket.accept()

        self.connections.setdefault(channel, {})[websocket] = {
            "subscriber": subscriber,
            "connected_at": datetime.utcnow(),
        }
        self.message_queues[websocket] = asyncio.Queue(maxsize=self.max_queue_size)
        self._senders[websocket] = asyncio.create_task(self._message_sender(websocket))

        if channel not in self._relays:
            self._relays[channel] = asyncio.create_task(self._relay(channel))

    async def disconnect(self, websocket: WebSocket, channel: str) -> None:
        conns = self.connections.get(channel)
        if conns is not None:
            conns.pop(websocket, None)
            if not conns:
                del self.connections[channel]
                relay = self._relays.pop(channel, None)
                if relay is not None:
                    relay.cancel()

        self.message_queues.pop(websocket, None)
        sender = self._senders.pop(websocket, None)
        if sender is not None:
            sender.cancel()

    def enqueue(self, websocket: WebSocket, message: Dict[str, Any]) -> None:
        """Queue a message for one socket; a full queue drops its oldest message."""
        queue = self.message_queues.get(websocket)
        if queue is None:
            return
        serialized = json.dumps(message, sort_keys=True, default=str)
        try:
            queue.put_nowait(serialized)
        except asyncio.QueueFull:
            try:
                queue.get_nowait()
                queue.put_nowait(serialized)
            except asyncio.QueueEmpty:
                pass

    def broadcast_local(self, channel: str, message: Dict[str, Any]) -> None:
        for websocket in list(self.connections.get(channel, {})):
            self.enqueue(websocket, message)

    async def _relay(self, channel: str) -> None:
        try:
            async for message in self.broadcast_adapter.subscribe(channel):
                self.broadcast_local(channel, message)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(f"Broadcast relay for {channel} stopped")

    async def _message_sender(self, websocket: WebSocket) -> None:
        queue = self.message_queues.get(websocket)
        if not queue:
            return
        while True:
            message = await queue.get()
            try:
                await websocket.send_text(message)
            except Exception as e:
                logger.debug(f"WebSocket send failed, stopping sender: {e}")
                break

    def get_connection_count(self, channel: Optional[str] = None) -> int:
        if channel is not None:
            return len(self.connections.get(channel, {}))
        return sum(len(conns) for conns in self.connections.values())


# Global connection manager instance (initialized on startup)
_connection_manager: Optional[ConnectionManager] = None


def get_connection_manager() -> Optional[ConnectionManager]:
    """Get global connection manager instance."""
    return _connection_manager


def set_connection_manager(manager: Optional[ConnectionManager]) -> None:
    """Set global connection manager instance."""
    global _connection_manager
    _connection_manager = manager
