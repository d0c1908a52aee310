
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import paho.mqtt.client as mqtt
import pytest

from farm_bridge.device_sim import SimulatedNode, build_client, publish_reading
from farm_bridge.validators import validate_telemetry


def test_simulated_payload_passes_validation():
    node = SimulatedNode()
    for _ in range(50):
        result = validate_telemetry(node.step(5), "node1")
        assert result.valid, result.error


@pytest.mark.parametrize(
    "command,pump_on,manual",
    [("PUMP_ON", True, True), ("PUMP_OFF", False, True), ("AUTO", False, False)],
)
def test_commands_drive_the_pump(command, pump_on, manual):
    node = SimulatedNode()
    assert node.apply_command(command) is True
    assert (node.pump_on, node.manual) == (pump_on, manual)


def test_unknown_command_is_ignored():
    node = SimulatedNode(pump_on=True, manual=True)

    assert node.apply_command("SELF_DESTRUCT") is False
    assert (node.pump_on, node.manual) == (True, True)


def test_pump_runtime_accumulates_only_while_on():
    node = SimulatedNode()
    node.apply_command("PUMP_ON")
    node.step(5)
    node.step(5)
    node.apply_command("PUMP_OFF")
    node.step(5)

    assert node.pump_life == 10


def test_command_messages_reach_the_node():
    node = SimulatedNode()
    client = build_client(node, "farm/node1/cmd")

    client.on_message(client, None, SimpleNamespace(topic="farm/node1/cmd", payload=b"PUMP_ON"))

    assert node.pump_on is True


def test_reading_waits_for_link_then_for_ack():
    client = MagicMock()
    client.is_connected.side_effect = [False, True]
    client.publish.return_value.rc = mqtt.MQTT_ERR_SUCCESS

    with patch("farm_bridge.device_sim.time.sleep") as sleep:
        info = publish_reading(client, "farm/node1/data", "{}", attempts=3, ack_timeout=2.0)

    assert info is client.publish.return_value
    sleep.assert_called_once_with(1)
    client.publish.assert_called_once_with("farm/node1/data", payload="{}", qos=1)
    info.wait_for_publish.assert_called_once_with(2.0)


def test_reading_queued_while_link_drops_is_returned():
    client = MagicMock()
    client.is_connected.return_value = True
    client.publish.return_value.rc = mqtt.MQTT_ERR_SUCCESS
    client.publish.return_value.wait_for_publish.side_effect = RuntimeError("connection lost")

    info = publish_reading(client, "farm/node1/data", "{}")

    # not resent; paho still holds the QoS 1 message
    assert info is client.publish.return_value
    client.publish.assert_called_once()


def test_reading_dropped_when_link_never_returns():
    client = MagicMock()
    client.is_connected.return_value = False

    with patch("farm_bridge.device_sim.time.sleep") as sleep:
        assert publish_reading(client, "farm/node1/data", "{}", attempts=2) is None

    assert [c.args for c in sleep.call_args_list] == [(1,), (2,)]
    client.publish.assert_not_called()
