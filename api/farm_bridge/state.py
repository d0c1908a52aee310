
from typing import Dict, List, Optional

from .models import TelemetryRecord


class StateCache:
    """Last valid record per device, kept in memory for viewer catch-up."""

    def __init__(self) -> None:
        self._latest: Dict[str, TelemetryRecord] = {}

    def set(self, record: TelemetryRecord) -> None:
        self._latest[record.device_id] = record

    def get(self, device_id: str) -> Optional[TelemetryRecord]:
        return self._latest.get(device_id)

    def devices(self) -> List[str]:
        return list(self._latest)
