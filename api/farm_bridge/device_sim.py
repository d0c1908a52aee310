
import json
import logging
import os
import random
import time
from dataclasses import dataclass
from typing import Optional

import paho.mqtt.client as mqtt
from dotenv import load_dotenv

from .settings import configure_logging
from .transport import parse_broker_url

logger = logging.getLogger(__name__)


@dataclass
class SimulatedNode:
    """Soil probe + pump node; the pump follows commands from the bridge."""

    soil_raw: float = 600.0
    pump_on: bool = False
    manual: bool = False
    pump_life: int = 0

    def apply_command(self, command: str) -> bool:
        if command == "PUMP_ON":
            self.pump_on, self.manual = True, True
        elif command == "PUMP_OFF":
            self.pump_on, self.manual = False, True
        elif command == "AUTO":
            self.manual = False
        else:
            return False
        return True

    def step(self, interval: float) -> dict:
        # the pump wets the soil (lower raw reading), otherwise it dries out
        drift = -25.0 if self.pump_on else 3.0
        self.soil_raw = max(200.0, min(1024.0, self.soil_raw + drift + random.uniform(-5, 5)))
        if not self.manual:
            self.pump_on = self.soil_raw > 750 or (self.pump_on and self.soil_raw > 450)
        if self.pump_on:
            self.pump_life += int(interval)
        return self.payload()

    def payload(self) -> dict:
        return {
            "s_raw": round(self.soil_raw),
            "s_pct": round(max(0.0, min(100.0, (1024 - self.soil_raw) / 8.24)), 1),
            "s_temp": round(21 + random.uniform(-1.5, 1.5), 2),
            "a_temp": round(26 + random.uniform(-3, 3), 2),
            "hum": round(55 + random.uniform(-8, 8), 1),
            "pump": 1 if self.pump_on else 0,
            "man": 1 if self.manual else 0,
            "life": self.pump_life,
        }


def publish_reading(
    client: mqtt.Client, topic: str, payload: str, attempts: int = 5, ack_timeout: float = 5.0
) -> Optional[mqtt.MQTTMessageInfo]:
    """
    Send one reading at QoS 1 and wait for the broker's PUBACK.

    While paho is reconnecting the link reports disconnected, so each
    attempt waits a little longer before checking again. Returns the
    message info once the reading is queued (check is_published() for the
    ack), or None if the link never came back.
    """
    for attempt in range(1, attempts + 1):
        if client.is_connected():
            info = client.publish(topic, payload=payload, qos=1)
            if info.rc == mqtt.MQTT_ERR_SUCCESS:
                try:
                    info.wait_for_publish(ack_timeout)
                except (RuntimeError, ValueError) as exc:
                    logger.warning("[sim] reading queued but not sent: %s", exc)
                return info
        time.sleep(attempt)
    logger.warning("[sim] link down, dropped reading after %d attempts", attempts)
    return None


def build_client(node: SimulatedNode, command_topic: str, transport: str = "tcp") -> mqtt.Client:
    def on_connect(client, userdata, flags, reason_code, properties=None):
        if reason_code == 0:
            client.subscribe(command_topic, qos=1)
            logger.info("[sim] connected, listening for commands on %s", command_topic)
        else:
            logger.error("[sim] connection refused: %s", reason_code)

    def on_message(client, userdata, msg):
        command = msg.payload.decode("utf-8", errors="ignore").strip()
        if node.apply_command(command):
            logger.info("[sim] applied %s (pump_on=%s manual=%s)", command, node.pump_on, node.manual)
        else:
            logger.warning("[sim] unknown command %r", command)

    client = mqtt.Client(
        client_id=f"sim_{random.randrange(16 ** 6):06x}",
        transport=transport,
        protocol=mqtt.MQTTv311,
        callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
    )
    client.on_connect = on_connect
    client.on_message = on_message
    return client


def main():
    load_dotenv()
    configure_logging(os.getenv("LOG_LEVEL", "INFO"))

    node_id = os.getenv("NODE_ID", "node1")
    broker = parse_broker_url(os.getenv("MQTT_URL", "mqtt://localhost:1883"))
    data_topic = os.getenv("MQTT_DATA_TOPIC", "farm/{device_id}/data").format(device_id=node_id)
    command_topic = os.getenv("MQTT_CMD_TOPIC", "farm/{device_id}/cmd").format(device_id=node_id)
    interval = float(os.getenv("SEND_INTERVAL_SECONDS", "5"))

    node = SimulatedNode()
    client = build_client(node, command_topic, broker["transport"])
    if broker["transport"] == "websockets":
        client.ws_set_options(path=broker["path"])
    if broker["tls"]:
        client.tls_set()
    if os.getenv("MQTT_USERNAME"):
        client.username_pw_set(os.getenv("MQTT_USERNAME"), os.getenv("MQTT_PASSWORD"))
    client.reconnect_delay_set(min_delay=1, max_delay=8)

    logger.info("[sim] connecting to %s:%s as %s", broker["host"], broker["port"], node_id)
    client.connect(broker["host"], port=broker["port"], keepalive=60)
    client.loop_start()

    try:
        while True:
            payload = json.dumps(node.step(interval), separators=(",", ":"))
            info = publish_reading(client, data_topic, payload)
            acked = info is not None and info.is_published()
            logger.info("[sim:%s] %s %s", "acked" if acked else "unacked", data_topic, payload)
            time.sleep(interval)
    except KeyboardInterrupt:
        logger.info("[sim] exiting")
    finally:
        client.loop_stop()
        client.disconnect()


if __name__ == "__main__":
    main()
