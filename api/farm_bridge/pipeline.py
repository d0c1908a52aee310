"""
Ingestion pipeline: decode -> validate -> cache -> broadcast -> persist.

Each stage contains its own failure. A rejected message has no side effects;
a failed broadcast does not stop persistence; a failed write does not undo
the cache update or the broadcast.
"""
import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, DefaultDict, List, Optional

from .errors import BroadcastFailure, StoreUnavailable, TelemetryValidationError
from .models import TelemetryRecord
from .state import StateCache
from .validators import decode_payload, validate_telemetry
from .ws_manager import UPDATE_EVENT

logger = logging.getLogger(__name__)


class IngestStage(str, Enum):
    RECEIVED = "RECEIVED"
    VALIDATED = "VALIDATED"
    CACHED = "CACHED"
    BROADCAST = "BROADCAST"
    PERSISTED = "PERSISTED"
    REJECTED = "REJECTED"


@dataclass
class IngestResult:
    stage: IngestStage
    record: Optional[TelemetryRecord] = None
    errors: List[str] = field(default_factory=list)

    @property
    def accepted(self) -> bool:
        return self.stage is not IngestStage.REJECTED


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IngestionPipeline:
    def __init__(
        self,
        device_id: str,
        cache: StateCache,
        sink,
        store,
        store_timeout: float = 5.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.device_id = device_id
        self.cache = cache
        self.sink = sink
        self.store = store
        self.store_timeout = store_timeout
        self._clock = clock
        self._locks: DefaultDict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self.last_message_at: Optional[datetime] = None

    def latest_event(self) -> Optional[dict]:
        record = self.cache.get(self.device_id)
        return record.to_event() if record else None

    async def handle(self, topic: str, payload) -> IngestResult:
        received_at = self._clock()
        try:
            raw = decode_payload(payload)
        except TelemetryValidationError as exc:
            logger.warning("[ingest] rejected message on %s: %s | payload=%r", topic, exc.reason, payload)
            return IngestResult(IngestStage.REJECTED, errors=[exc.reason])

        result = validate_telemetry(raw, self.device_id, received_at)
        if not result.valid:
            logger.warning("[ingest] rejected telemetry: %s | payload=%r", result.error, raw)
            return IngestResult(IngestStage.REJECTED, errors=[result.error])

        record = result.record
        outcome = IngestResult(IngestStage.VALIDATED, record=record)
        async with self._locks[record.device_id]:
            self.cache.set(record)
            self.last_message_at = received_at
            outcome.stage = IngestStage.CACHED

            try:
                await self.sink.push_to_all(UPDATE_EVENT, record.to_event())
                outcome.stage = IngestStage.BROADCAST
            except BroadcastFailure as exc:
                logger.warning("[ingest] broadcast incomplete: %s", exc)
                outcome.errors.append(str(exc))

            try:
                await asyncio.wait_for(asyncio.to_thread(self.store.append, record), timeout=self.store_timeout)
                outcome.stage = IngestStage.PERSISTED
            except StoreUnavailable as exc:
                logger.error("[ingest] persist failed: %s", exc)
                outcome.errors.append(str(exc))
            except asyncio.TimeoutError:
                logger.error("[ingest] persist timed out after %.1fs", self.store_timeout)
                outcome.errors.append("persist timed out")

        logger.debug("[ingest] %s soil=%.1f%% pump=%s -> %s", record.device_id, record.soil_pct, record.pump_on, outcome.stage.value)
        return outcome
