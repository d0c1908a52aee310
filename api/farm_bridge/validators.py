"""
Telemetry validation.

Turns one decoded MQTT payload into a TelemetryRecord or a rejection reason.
Nothing here raises to the caller except decode_payload, whose error the
pipeline treats as a rejection as well.
"""
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional, Union

from pydantic import ValidationError

from .errors import TelemetryValidationError
from .models import TelemetryIn, TelemetryRecord


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    record: Optional[TelemetryRecord] = None
    error: Optional[str] = None


def decode_payload(payload: Union[bytes, bytearray, str]) -> Any:
    try:
        text = payload.decode("utf-8") if isinstance(payload, (bytes, bytearray)) else payload
        return json.loads(text)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise TelemetryValidationError(f"payload is not JSON: {exc}", payload) from exc


def _describe(exc: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in err['loc']) or 'payload'}: {err['msg']}"
        for err in exc.errors()
    )


def validate_telemetry(
    raw: Any,
    device_id: str,
    received_at: Optional[datetime] = None,
) -> ValidationResult:
    """
    Validate a decoded payload from the data topic.

    The record timestamp is the receipt time (server clock); anything the
    device claims about time is ignored.
    """
    if not isinstance(raw, dict):
        return ValidationResult(False, error=f"expected a JSON object, got {type(raw).__name__}")
    try:
        wire = TelemetryIn.model_validate(raw)
    except ValidationError as exc:
        return ValidationResult(False, error=_describe(exc))

    record = TelemetryRecord.from_wire(wire, device_id, received_at or datetime.now(timezone.utc))
    return ValidationResult(True, record=record)
