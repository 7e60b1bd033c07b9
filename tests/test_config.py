from pathlib import Path

from fieldlink import constants
from fieldlink.config import load_config


def test_load_config_defaults(tmp_path: Path) -> None:
    config_path = tmp_path / "fieldlink.cfg"
    config = load_config(config_path)

    assert config.path == config_path
    assert config.broker.host == "localhost"
    assert config.broker.port == 1883
    assert config.topics.data == "devices/+/data"
    assert config.topics.responses == "devices/+/commands"
    assert config.topics.command_topic("D1") == "devices/D1/commands"
    assert config.topics.events_prefix == "server/events"
    assert config.commands.timeout_ms == 30_000
    assert config.commands.history_size == 100
    assert config.liveness.warning_threshold_ms == 180_000
    assert config.liveness.offline_threshold_ms == 300_000
    assert config.liveness.sweep_interval_ms == 120_000
    assert config.liveness.devices == []
    assert config.alarms.cooldown_ms == 300_000
    assert config.alarms.nominal_event_code == "NORMAL"
    assert config.alarms.missing_value_policy == "zero"
    assert config.alarms.rules_path is None
    assert config.logging.path == constants.DEFAULT_LOG_PATH
    assert config.health.enabled is False


def test_load_config_parses_broker_host_with_port(tmp_path: Path) -> None:
    config_path = tmp_path / "fieldlink.cfg"
    config_path.write_text("[broker]\nhost = localhost:61198\n", encoding="utf-8")

    config = load_config(config_path)

    assert config.broker.host == "localhost"
    assert config.broker.port == 61198
    assert config.raw.get("broker", "host") == "localhost"
    assert config.raw.get("broker", "port") == "61198"


def test_load_config_overrides_defaults(tmp_path: Path) -> None:
    rules_file = tmp_path / "rules.json"
    config_file = tmp_path / "fieldlink.cfg"
    config_file.write_text(
        f"""
[broker]
host = mqtt.example.com
username = hub
password = secret
client_id = hub-1

[topics]
events_prefix = ops/events/

[commands]
timeout_ms = 5000
history_size = 20

[liveness]
warning_threshold_ms = 60000
offline_threshold_ms = 90000
devices = D1, D2 ,,D3

[alarms]
cooldown_ms = 60000
nominal_event_code = ok
missing_value_policy = SKIP
rules_path = {rules_file}

[health]
enabled = true
port = 8081
"""
    )

    config = load_config(config_file)

    assert config.broker.host == "mqtt.example.com"
    assert config.broker.username == "hub"
    assert config.broker.client_id == "hub-1"
    assert config.topics.events_prefix == "ops/events"
    assert config.commands.timeout_ms == 5000
    assert config.commands.history_size == 20
    assert config.liveness.warning_threshold_ms == 60_000
    assert config.liveness.offline_threshold_ms == 90_000
    assert config.liveness.devices == ["D1", "D2", "D3"]
    assert config.alarms.cooldown_ms == 60_000
    assert config.alarms.nominal_event_code == "ok"
    assert config.alarms.missing_value_policy == "skip"
    assert config.alarms.rules_path == rules_file
    assert config.health.enabled is True
    assert config.health.port == 8081


def test_inconsistent_liveness_thresholds_fall_back(tmp_path: Path) -> None:
    config_file = tmp_path / "fieldlink.cfg"
    config_file.write_text(
        "[liveness]\nwarning_threshold_ms = 400000\noffline_threshold_ms = 300000\n"
    )

    config = load_config(config_file)

    assert config.liveness.warning_threshold_ms == 180_000
    assert config.liveness.offline_threshold_ms == 300_000


def test_invalid_values_fall_back_or_clamp(tmp_path: Path) -> None:
    config_file = tmp_path / "fieldlink.cfg"
    config_file.write_text(
        """
[commands]
timeout_ms = soon
history_size = 0

[alarms]
missing_value_policy = interpolate
cooldown_ms = -5
"""
    )

    config = load_config(config_file)

    assert config.commands.timeout_ms == 30_000
    assert config.commands.history_size == 1
    assert config.alarms.missing_value_policy == "zero"
    assert config.alarms.cooldown_ms == 0


def test_load_config_resilience_settings(tmp_path: Path) -> None:
    config_path = tmp_path / "fieldlink.cfg"
    assert load_config(config_path).resilience.reconnect_initial_seconds == 1.0

    config_path.write_text(
        "[resilience]\n"
        "reconnect_initial_seconds = 2.5\n"
        "reconnect_max_seconds = nope\n"
        "reconnect_jitter_ratio = 4\n",
        encoding="utf-8",
    )

    resilience = load_config(config_path).resilience

    assert resilience.reconnect_initial_seconds == 2.5
    assert resilience.reconnect_max_seconds == 30.0
    assert resilience.reconnect_jitter_ratio == 1.0
