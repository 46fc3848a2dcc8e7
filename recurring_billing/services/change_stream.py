import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List

from fastapi import WebSocket
from fastapi.encoders import jsonable_encoder

from ..domain.models import SubscriptionRecord

logger = logging.getLogger(__name__)

ChangeListener = Callable[[str, SubscriptionRecord], Awaitable[None]]


class ChangeStreamManager:
    """Publishes subscription changes to WebSocket clients and in-process listeners."""

    def __init__(self) -> None:
        self._connections: List[WebSocket] = []
        self._listeners: List[ChangeListener] = []
        self._lock = asyncio.Lock()

    def add_listener(self, listener: ChangeListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: ChangeListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        async with self._lock:
            self._connections.append(websocket)
        logger.debug("WebSocket connected. Total: %s", len(self._connections))

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            if websocket in self._connections:
                self._connections.remove(websocket)
        logger.debug("WebSocket disconnected. Total: %s", len(self._connections))

    async def publish(self, kind: str, record: SubscriptionRecord) -> None:
        """Notify everyone about a created or updated subscription; never raises."""
        for listener in list(self._listeners):
            try:
                await listener(kind, record)
            except Exception:  # pragma: no cover
                logger.exception("Change listener failed for subscription %s.", record.id)
        payload = {"type": f"subscription.{kind}", "data": serialize_change(record)}
        await self._broadcast(payload)

    async def _broadcast(self, payload: Dict[str, Any]) -> None:
        async with self._lock:
            connections = list(self._connections)

        remove: List[WebSocket] = []
        for websocket in connections:
            try:
                await websocket.send_json(payload)
            except Exception:  # pragma: no cover
                logger.exception("Failed to send WebSocket message; removing connection.")
                remove.append(websocket)

        if remove:
            async with self._lock:
                for websocket in remove:
                    if websocket in self._connections:
                        self._connections.remove(websocket)


def serialize_change(record: SubscriptionRecord) -> Dict[str, Any]:
    document = record.to_document()
    document.pop("history", None)
    return jsonable_encoder(document)
