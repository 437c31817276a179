"""
Transport contract for report snapshots.

An adapter moves already-built snapshot messages between workers; sequencing
and hashing belong to the gateway.
"""
import abc
import json
from typing import Any, Dict

REQUIRED_SNAPSHOT_FIELDS = ("snapshot_sequence", "snapshot_hash", "channel")


class BroadcastAdapter(abc.ABC):

    @abc.abstractmethod
    async def publish(self, channel: str, message: Dict[str, Any]) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    async def subscribe(self, channel: str):
        """Async iterator of decoded messages published on the channel."""
        raise NotImplementedError

    @abc.abstractmethod
    async def close(self) -> None:
        raise NotImplementedError

    def _serialize_message(self, message: Dict[str, Any]) -> str:
        return json.dumps(message, sort_keys=True, separators=(",", ":"), default=str)

    def validate_message(self, message: Dict[str, Any]) -> None:
        """Reject messages a subscriber could not order or deduplicate."""
        missing = [name for name in REQUIRED_SNAPSHOT_FIELDS if name not in message]
        if missing:
            raise ValueError(f"Snapshot message lacks {', '.join(missing)}")
