
import pytest

from farm_bridge.settings import Settings

REQUIRED_ENV = {
    "MONGO_URI": "mongodb://db:27017",
    "MQTT_USERNAME": "backend",
    "FRONTEND_URL": "https://farm.example.com",
}


def test_defaults_follow_the_reference_deployment():
    settings = Settings.from_env(REQUIRED_ENV)

    assert settings.node_id == "node1"
    assert settings.telemetry_topic == "farm/node1/data"
    assert settings.command_topic == "farm/{device_id}/cmd"
    assert settings.retention_days == 60
    assert settings.max_auto_off_seconds == 3600
    assert settings.port == 5000
    assert settings.mqtt_password is None


@pytest.mark.parametrize("missing", sorted(REQUIRED_ENV))
def test_missing_required_variable_is_fatal(missing):
    env = {k: v for k, v in REQUIRED_ENV.items() if k != missing}

    with pytest.raises(RuntimeError, match=missing):
        Settings.from_env(env)


def test_overrides_are_parsed():
    env = dict(
        REQUIRED_ENV,
        NODE_ID="greenhouse",
        PORT="8080",
        RETENTION_DAYS="14",
        AUTO_OFF_MAX_SECONDS="900",
        STORE_TIMEOUT_SECONDS="2.5",
        LOG_LEVEL="debug",
    )

    settings = Settings.from_env(env)

    assert settings.telemetry_topic == "farm/greenhouse/data"
    assert settings.port == 8080
    assert settings.retention_days == 14
    assert settings.max_auto_off_seconds == 900
    assert settings.store_timeout == 2.5
    assert settings.log_level == "DEBUG"


def test_bad_number_names_the_variable():
    with pytest.raises(RuntimeError, match="PORT"):
        Settings.from_env(dict(REQUIRED_ENV, PORT="five-thousand"))
