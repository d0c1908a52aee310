
import logging
from typing import Any, Callable, Optional, Set

from fastapi import WebSocket

from .errors import BroadcastFailure

logger = logging.getLogger(__name__)

UPDATE_EVENT = "farm_data_update"
INITIAL_EVENT = "initial_data"


class WSManager:
    def __init__(self) -> None:
        self._connections: Set[WebSocket] = set()

    @property
    def viewer_count(self) -> int:
        return len(self._connections)

    async def connect(self, ws: WebSocket, latest: Optional[Callable[[], Optional[dict]]] = None) -> None:
        await ws.accept()
        self._connections.add(ws)
        # read the cache only after accept so the catch-up is never older than the connection
        snapshot = latest() if latest else None
        if snapshot is not None:
            await self.push_to_one(ws, INITIAL_EVENT, snapshot)

    def disconnect(self, ws: WebSocket) -> None:
        self._connections.discard(ws)

    async def push_to_one(self, ws: WebSocket, event: str, payload: Any) -> bool:
        try:
            await ws.send_json({"type": event, "data": payload})
        except Exception as exc:
            logger.info("[ws] dropping viewer after failed send: %s", exc)
            self.disconnect(ws)
            return False
        return True

    async def push_to_all(self, event: str, payload: Any) -> None:
        # best-effort broadcast
        targets = list(self._connections)
        failed = 0
        for ws in targets:
            if not await self.push_to_one(ws, event, payload):
                failed += 1
        if failed:
            raise BroadcastFailure(failed, len(targets))
