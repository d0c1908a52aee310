import math
from datetime import datetime
from typing import Annotated, Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# plausible range for the soil/air probes; a disconnected DS18B20 reads -127
TEMP_MIN = -55.0
TEMP_MAX = 125.0

TRUE_STRINGS = {"1", "true", "on"}
FALSE_STRINGS = {"0", "false", "off"}

Reading = Annotated[float, Field(strict=True, allow_inf_nan=False)]


def _temperature_or_zero(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0.0
    if not math.isfinite(value) or not TEMP_MIN <= value <= TEMP_MAX:
        return 0.0
    return float(value)


def _coerce_flag(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value == 1
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in TRUE_STRINGS:
            return True
        if lowered in FALSE_STRINGS:
            return False
    raise ValueError(f"expected a boolean, 0/1 or one of {sorted(TRUE_STRINGS | FALSE_STRINGS)}")


class TelemetryIn(BaseModel):
    """Telemetry exactly as the node publishes it on the data topic."""

    model_config = ConfigDict(extra="ignore")

    s_raw: Annotated[Reading, Field(ge=0, le=1024)]
    s_pct: Annotated[Reading, Field(ge=0, le=100)]
    s_temp: float = 0.0
    a_temp: float = 0.0
    hum: Annotated[Reading, Field(ge=0, le=100)]
    pump: bool
    man: bool
    life: Annotated[Reading, Field(ge=0)]

    @field_validator("s_temp", "a_temp", mode="before")
    @classmethod
    def _fallback_temperature(cls, value):
        return _temperature_or_zero(value)

    @field_validator("pump", "man", mode="before")
    @classmethod
    def _flag(cls, value):
        return _coerce_flag(value)


class TelemetryRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    device_id: str = Field(serialization_alias="nodeId")
    soil_raw: float
    soil_pct: float
    soil_temp: float
    air_temp: float
    humidity: float
    pump_on: bool
    manual: bool
    pump_life: float
    timestamp: datetime

    @classmethod
    def from_wire(cls, data: TelemetryIn, device_id: str, received_at: datetime) -> "TelemetryRecord":
        return cls(
            device_id=device_id,
            soil_raw=data.s_raw,
            soil_pct=data.s_pct,
            soil_temp=data.s_temp,
            air_temp=data.a_temp,
            humidity=data.hum,
            pump_on=data.pump,
            manual=data.man,
            pump_life=data.life,
            timestamp=received_at,
        )

    def to_event(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class TelemetryBucket(BaseModel):
    timestamp: datetime
    soil_pct: Optional[float] = None
    soil_temp: Optional[float] = None
    air_temp: Optional[float] = None
    humidity: Optional[float] = None
    pump_on: bool = False
    samples: int = 0


class PumpCommandIn(BaseModel):
    action: Optional[Any] = None
    duration: Optional[float] = Field(default=None, description="Auto-off delay in seconds")
