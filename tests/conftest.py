
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

import pytest

from farm_bridge.errors import BroadcastFailure, StoreUnavailable, TransportUnavailable
from farm_bridge.models import TelemetryBucket, TelemetryRecord
from farm_bridge.settings import Settings

DEVICE = "node1"
TOPIC = "farm/node1/data"
T0 = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)


def wire(**overrides) -> Dict[str, Any]:
    payload = {"s_raw": 500, "s_pct": 50, "hum": 60, "pump": 1, "man": 0, "life": 120}
    payload.update(overrides)
    return payload


def encode(payload) -> bytes:
    return json.dumps(payload).encode("utf-8")


def make_record(soil_pct: float = 50.0, at: datetime = T0, device_id: str = DEVICE) -> TelemetryRecord:
    return TelemetryRecord(
        device_id=device_id,
        soil_raw=500,
        soil_pct=soil_pct,
        soil_temp=21.5,
        air_temp=25.0,
        humidity=60,
        pump_on=True,
        manual=False,
        pump_life=120,
        timestamp=at,
    )


class StepClock:
    """Deterministic receipt clock: T0, T0+1s, T0+2s, ..."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        current = self.now
        self.now = current + timedelta(seconds=1)
        return current


class FakeSink:
    def __init__(self) -> None:
        self.events: List[tuple] = []
        self.fail = False

    async def push_to_all(self, event, payload):
        if self.fail:
            raise BroadcastFailure(1, 1)
        self.events.append((event, payload))


class FakeStore:
    def __init__(self) -> None:
        self.records: List[TelemetryRecord] = []
        self.fail = False
        self.connected = True
        self.schema_ready = False
        self.closed = False
        self.calls: List[tuple] = []

    def ensure_schema(self):
        if not self.connected:
            raise StoreUnavailable("cannot initialise history store")
        self.schema_ready = True

    def ping(self) -> bool:
        return self.connected

    def append(self, record):
        if self.fail:
            raise StoreUnavailable("insert failed: connection reset")
        self.records.append(record)

    def query_latest(self, device_id, limit=100):
        self.calls.append(("latest", device_id, limit))
        if self.fail:
            raise StoreUnavailable("history query failed")
        return self.records[-limit:]

    def query_range(self, device_id, start, end, limit=None):
        self.calls.append(("range", device_id, start, end, limit))
        if self.fail:
            raise StoreUnavailable("range query failed")
        rows = [r for r in self.records if start <= r.timestamp < end]
        return rows[:limit] if limit else rows

    def query_bucketed(self, device_id, start, end, bucket_seconds):
        self.calls.append(("bucketed", device_id, start, end, bucket_seconds))
        return [TelemetryBucket(timestamp=T0, soil_pct=50.0, soil_temp=21.0, air_temp=25.0, humidity=60.0, pump_on=True, samples=3)]

    def close(self):
        self.closed = True


class FakeTransport:
    def __init__(self, connected: bool = True) -> None:
        self.connected = connected
        self.published: List[tuple] = []
        self.handler = None
        self.started = False
        self.stopped = False

    @property
    def is_connected(self) -> bool:
        return self.connected

    def set_message_handler(self, handler):
        self.handler = handler

    def start(self, loop):
        self.started = True

    async def stop(self):
        self.stopped = True

    async def publish_command(self, device_id: str, command: str, qos: int = 1):
        if not self.connected:
            raise TransportUnavailable("MQTT broker not connected")
        self.published.append((device_id, command))


class FakeWebSocket:
    def __init__(self, fail: bool = False) -> None:
        self.accepted = False
        self.sent: List[dict] = []
        self.fail = fail

    async def accept(self):
        self.accepted = True

    async def send_json(self, payload):
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(payload)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        mongo_uri="mongodb://localhost:27017",
        mqtt_username="backend",
        frontend_url="http://localhost:3000",
    )


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def sink() -> FakeSink:
    return FakeSink()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()
