"""Host-side fan-out of party messages to connected guests."""
from __future__ import annotations

import logging
from typing import Dict

from ..schemas.messages import WireModel
from .rendezvous import DataConnection

logger = logging.getLogger(__name__)


class RelayHub:
    """Track open guest connections and fan messages out between them.

    The host is the only relay point of the star topology: guests never see
    each other, so every relayed message must skip its original sender.
    """

    def __init__(self) -> None:
        self._connections: Dict[str, DataConnection] = {}

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, peer_id: object) -> bool:
        return peer_id in self._connections

    @property
    def peer_ids(self) -> list[str]:
        return list(self._connections)

    def join(self, connection: DataConnection) -> list[str]:
        """Register a guest connection and return the peers that were already present."""

        existing = [peer_id for peer_id in self._connections if peer_id != connection.peer]
        self._connections[connection.peer] = connection
        return existing

    def get(self, peer_id: str) -> DataConnection | None:
        return self._connections.get(peer_id)

    def leave(self, peer_id: str) -> DataConnection | None:
        return self._connections.pop(peer_id, None)

    def drain(self) -> list[DataConnection]:
        """Forget every connection, returning them for the caller to close."""

        connections = list(self._connections.values())
        self._connections.clear()
        return connections

    def send_to(self, peer_id: str, message: WireModel) -> bool:
        connection = self._connections.get(peer_id)
        if connection is None or not connection.open:
            return False
        return self._deliver(connection, message)

    def broadcast(self, message: WireModel, exclude: str | None = None) -> int:
        """Send to every open guest except ``exclude``; returns the delivery count."""

        delivered = 0
        for connection in list(self._connections.values()):
            if connection.peer == exclude or not connection.open:
                continue
            if self._deliver(connection, message):
                delivered += 1
        return delivered

    @staticmethod
    def _deliver(connection: DataConnection, message: WireModel) -> bool:
        try:
            connection.send(message.to_wire())
        except Exception as exc:  # noqa: BLE001 - the channel may have closed under us
            logger.warning("Dropping %s for %s: %s", getattr(message, "type", "message"), connection.peer, exc)
            return False
        return True
