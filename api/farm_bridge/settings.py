
import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional

from dotenv import load_dotenv

REQUIRED = ("MONGO_URI", "MQTT_USERNAME", "FRONTEND_URL")


def _number(env: Mapping[str, str], name: str, default, cast=float):
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return cast(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be a number, got {raw!r}") from None


@dataclass(frozen=True)
class Settings:
    mongo_uri: str
    mqtt_username: str
    frontend_url: str
    mqtt_url: str = "mqtt://localhost:1883"
    mqtt_password: Optional[str] = None
    mongo_db: str = "farm"
    port: int = 5000
    node_id: str = "node1"
    data_topic: str = "farm/{device_id}/data"
    command_topic: str = "farm/{device_id}/cmd"
    retention_days: int = 60
    max_auto_off_seconds: float = 3600.0
    command_timeout: float = 5.0
    store_timeout: float = 5.0
    reconnect_min_delay: int = 1
    reconnect_max_delay: int = 30
    log_level: str = "INFO"

    @property
    def telemetry_topic(self) -> str:
        return self.data_topic.format(device_id=self.node_id)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        if env is None:
            load_dotenv()
            env = os.environ

        missing = [name for name in REQUIRED if not env.get(name)]
        if missing:
            raise RuntimeError(
                f"Missing required environment variables: {', '.join(missing)}. Check your .env file."
            )

        return cls(
            mongo_uri=env["MONGO_URI"],
            mqtt_username=env["MQTT_USERNAME"],
            frontend_url=env["FRONTEND_URL"],
            mqtt_url=env.get("MQTT_URL") or cls.mqtt_url,
            mqtt_password=env.get("MQTT_PASSWORD") or None,
            mongo_db=env.get("MONGO_DB") or cls.mongo_db,
            port=_number(env, "PORT", cls.port, int),
            node_id=env.get("NODE_ID") or cls.node_id,
            data_topic=env.get("MQTT_DATA_TOPIC") or cls.data_topic,
            command_topic=env.get("MQTT_CMD_TOPIC") or cls.command_topic,
            retention_days=_number(env, "RETENTION_DAYS", cls.retention_days, int),
            max_auto_off_seconds=_number(env, "AUTO_OFF_MAX_SECONDS", cls.max_auto_off_seconds),
            command_timeout=_number(env, "COMMAND_TIMEOUT_SECONDS", cls.command_timeout),
            store_timeout=_number(env, "STORE_TIMEOUT_SECONDS", cls.store_timeout),
            reconnect_min_delay=_number(env, "MQTT_RECONNECT_MIN_DELAY", cls.reconnect_min_delay, int),
            reconnect_max_delay=_number(env, "MQTT_RECONNECT_MAX_DELAY", cls.reconnect_max_delay, int),
            log_level=(env.get("LOG_LEVEL") or cls.log_level).upper(),
        )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
