"""
MQTT transport link.

Summary of data flow:
1) start(loop): paho's network thread connects (connect_async) and keeps
   reconnecting with capped exponential backoff (reconnect_delay_set).

2) Connect: on every successful CONNACK the telemetry topic is
   (re)subscribed, so a broker restart needs no operator action.

3) Receive: paho hands each message to _on_message on its own thread; the
   message is moved onto an asyncio.Queue on the server loop.

4) Process: one consumer task drains the queue in delivery order and awaits
   the message handler, so message n+1 is never processed before n is done.

5) Publish: publish_command sends a bare command string at QoS 1 and waits
   for the broker's PUBACK up to the command timeout.
"""
import asyncio
import logging
import secrets
from typing import Awaitable, Callable, Optional
from urllib.parse import urlparse

import paho.mqtt.client as mqtt

from .errors import CommandNotAcknowledged, TransportUnavailable

logger = logging.getLogger(__name__)

MessageHandler = Callable[[str, bytes], Awaitable[object]]

DEFAULT_PORTS = {"mqtt": 1883, "tcp": 1883, "mqtts": 8883, "ssl": 8883, "ws": 80, "wss": 443}


def _client_id() -> str:
    return f"backend_{secrets.token_hex(3)}"


def parse_broker_url(url: str) -> dict:
    parsed = urlparse(url)
    scheme = (parsed.scheme or "mqtt").lower()
    if scheme not in DEFAULT_PORTS:
        raise ValueError(f"Unsupported MQTT URL scheme: {scheme!r}")
    if not parsed.hostname:
        raise ValueError(f"MQTT URL has no host: {url!r}")
    websockets = scheme in ("ws", "wss")
    return {
        "host": parsed.hostname,
        "port": parsed.port or DEFAULT_PORTS[scheme],
        "transport": "websockets" if websockets else "tcp",
        "tls": scheme in ("mqtts", "ssl", "wss"),
        "path": (parsed.path or "/mqtt") if websockets else None,
    }


class TransportLink:
    def __init__(
        self,
        url: str,
        telemetry_topic: str,
        command_topic: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
        on_telemetry: Optional[MessageHandler] = None,
        reconnect_min_delay: int = 1,
        reconnect_max_delay: int = 30,
        command_timeout: float = 5.0,
        keepalive: int = 60,
        client: Optional[mqtt.Client] = None,
    ) -> None:
        self.broker = parse_broker_url(url)
        self.telemetry_topic = telemetry_topic
        self.command_topic = command_topic
        self.command_timeout = command_timeout
        self.keepalive = keepalive
        self._on_telemetry = on_telemetry
        self._connected = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: Optional[asyncio.Queue] = None
        self._task: Optional[asyncio.Task] = None

        self._client = client or self._build_client(username, password)
        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._client.on_message = self._on_message
        self._client.reconnect_delay_set(min_delay=reconnect_min_delay, max_delay=reconnect_max_delay)

    def _build_client(self, username: Optional[str], password: Optional[str]) -> mqtt.Client:
        client = mqtt.Client(
            client_id=_client_id(),
            transport=self.broker["transport"],
            protocol=mqtt.MQTTv311,
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
        )
        if self.broker["transport"] == "websockets":
            client.ws_set_options(path=self.broker["path"])
        if self.broker["tls"]:
            client.tls_set()
        if username:
            client.username_pw_set(username=username, password=password)
        return client

    def set_message_handler(self, handler: MessageHandler) -> None:
        self._on_telemetry = handler

    @property
    def is_connected(self) -> bool:
        return self._connected

    # paho callbacks (Callback API v2), called on the network thread

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        if reason_code == 0:
            self._connected = True
            client.subscribe(self.telemetry_topic, qos=1)
            logger.info("[transport] connected to %s, subscribed to %s", self.broker["host"], self.telemetry_topic)
        else:
            self._connected = False
            logger.error("[transport] connection refused: %s", reason_code)

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties=None):
        self._connected = False
        logger.warning("[transport] disconnected (%s), reconnecting", reason_code)

    def _on_message(self, client, userdata, msg):
        if msg.topic != self.telemetry_topic:
            logger.debug("[transport] ignoring message on %s", msg.topic)
            return
        if self._loop is None or self._queue is None:
            return
        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, (msg.topic, msg.payload))
        except RuntimeError:
            logger.debug("[transport] loop closed, dropping message")

    async def _run(self) -> None:
        while True:
            topic, payload = await self._queue.get()
            if self._on_telemetry is None:
                continue
            try:
                await self._on_telemetry(topic, payload)
            except Exception:
                logger.exception("[transport] telemetry handler failed for message on %s", topic)

    # lifecycle

    def start(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop
        self._queue = asyncio.Queue()
        self._task = loop.create_task(self._run())
        logger.info("[transport] connecting to %s:%s (%s)", self.broker["host"], self.broker["port"], self.broker["transport"])
        self._client.connect_async(self.broker["host"], port=self.broker["port"], keepalive=self.keepalive)
        self._client.loop_start()

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._client.disconnect()
        self._client.loop_stop()
        self._connected = False

    # outbound

    async def publish_command(self, device_id: str, command: str, qos: int = 1) -> None:
        if not self._connected:
            raise TransportUnavailable("MQTT broker not connected")
        topic = self.command_topic.format(device_id=device_id)
        info = self._client.publish(topic, command, qos=qos)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise TransportUnavailable(f"publish to {topic} refused: {mqtt.error_string(info.rc)}")
        try:
            await asyncio.to_thread(info.wait_for_publish, self.command_timeout)
        except (RuntimeError, ValueError) as exc:
            raise TransportUnavailable(f"publish to {topic} failed: {exc}") from exc
        if not info.is_published():
            raise CommandNotAcknowledged(f"publish to {topic} not acknowledged within {self.command_timeout}s")
