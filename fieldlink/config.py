"""Configuration loader for fieldlink."""

from __future__ import annotations

from configparser import ConfigParser
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional

from . import constants

MISSING_VALUE_POLICIES = ("zero", "skip")


@dataclass(slots=True)
class BrokerConfig:
    host: str = constants.DEFAULT_BROKER_HOST
    port: int = constants.DEFAULT_BROKER_PORT
    username: Optional[str] = None
    password: Optional[str] = None
    client_id: Optional[str] = None
    keepalive: int = 60


@dataclass(slots=True)
class TopicConfig:
    data: str = constants.DEFAULT_DATA_TOPIC
    responses: str = constants.DEFAULT_RESPONSE_TOPIC
    command_template: str = constants.DEFAULT_COMMAND_TOPIC_TEMPLATE
    events_prefix: str = constants.DEFAULT_EVENTS_TOPIC_PREFIX

    def command_topic(self, device_id: str) -> str:
        return self.command_template.format(device_id=device_id)


@dataclass(slots=True)
class CommandConfig:
    timeout_ms: int = constants.DEFAULT_COMMAND_TIMEOUT_MS
    history_size: int = constants.DEFAULT_HISTORY_SIZE


@dataclass(slots=True)
class LivenessConfig:
    warning_threshold_ms: int = constants.DEFAULT_WARNING_THRESHOLD_MS
    offline_threshold_ms: int = constants.DEFAULT_OFFLINE_THRESHOLD_MS
    sweep_interval_ms: int = constants.DEFAULT_SWEEP_INTERVAL_MS
    devices: List[str] = field(default_factory=list)


@dataclass(slots=True)
class AlarmConfig:
    cooldown_ms: int = constants.DEFAULT_ALARM_COOLDOWN_MS
    nominal_event_code: str = constants.NOMINAL_EVENT_CODE
    missing_value_policy: str = "zero"
    rules_path: Optional[Path] = None


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    path: Optional[Path] = constants.DEFAULT_LOG_PATH
    log_network: bool = False


@dataclass(slots=True)
class ResilienceConfig:
    reconnect_initial_seconds: float = 1.0
    reconnect_max_seconds: float = 30.0
    reconnect_jitter_ratio: float = 0.5


@dataclass(slots=True)
class HealthConfig:
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 0


@dataclass(slots=True)
class FieldlinkConfig:
    broker: BrokerConfig
    topics: TopicConfig
    commands: CommandConfig
    liveness: LivenessConfig
    alarms: AlarmConfig
    logging: LoggingConfig
    health: HealthConfig
    resilience: ResilienceConfig
    raw: ConfigParser
    path: Path


def _parse_list(value: str, *, default: Iterable[str]) -> List[str]:
    if not value:
        return list(default)
    return [item.strip() for item in value.split(",") if item.strip()]


def _getint(parser: ConfigParser, section: str, option: str, fallback: int) -> int:
    try:
        return parser.getint(section, option, fallback=fallback)
    except ValueError:
        return fallback


def _getfloat(
    parser: ConfigParser, section: str, option: str, fallback: float
) -> float:
    try:
        return parser.getfloat(section, option, fallback=fallback)
    except ValueError:
        return fallback


def load_config(path: Optional[Path] = None) -> FieldlinkConfig:
    """Load configuration from disk, applying defaults where necessary."""

    config_path = path or constants.DEFAULT_CONFIG_PATH
    parser = ConfigParser()
    parser.read_dict(
        {
            "broker": {
                "host": constants.DEFAULT_BROKER_HOST,
                "port": str(constants.DEFAULT_BROKER_PORT),
                "keepalive": "60",
            },
            "topics": {
                "data": constants.DEFAULT_DATA_TOPIC,
                "responses": constants.DEFAULT_RESPONSE_TOPIC,
                "command_template": constants.DEFAULT_COMMAND_TOPIC_TEMPLATE,
                "events_prefix": constants.DEFAULT_EVENTS_TOPIC_PREFIX,
            },
            "commands": {
                "timeout_ms": str(constants.DEFAULT_COMMAND_TIMEOUT_MS),
                "history_size": str(constants.DEFAULT_HISTORY_SIZE),
            },
            "liveness": {
                "warning_threshold_ms": str(constants.DEFAULT_WARNING_THRESHOLD_MS),
                "offline_threshold_ms": str(constants.DEFAULT_OFFLINE_THRESHOLD_MS),
                "sweep_interval_ms": str(constants.DEFAULT_SWEEP_INTERVAL_MS),
                "devices": "",
            },
            "alarms": {
                "cooldown_ms": str(constants.DEFAULT_ALARM_COOLDOWN_MS),
                "nominal_event_code": constants.NOMINAL_EVENT_CODE,
                "missing_value_policy": "zero",
            },
            "logging": {
                "level": "INFO",
                "path": str(constants.DEFAULT_LOG_PATH),
                "log_network": "false",
            },
            "health": {
                "enabled": "false",
                "host": "127.0.0.1",
                "port": "0",
            },
            "resilience": {
                "reconnect_initial_seconds": "1.0",
                "reconnect_max_seconds": "30.0",
                "reconnect_jitter_ratio": "0.5",
            },
        }
    )

    if config_path.exists():
        parser.read(config_path)

    host_value = parser.get("broker", "host")
    port_value = _getint(parser, "broker", "port", constants.DEFAULT_BROKER_PORT)

    if ":" in host_value:
        host_part, port_part = host_value.rsplit(":", 1)
        try:
            parsed_port = int(port_part)
        except ValueError:
            pass
        else:
            host_value = host_part
            port_value = parsed_port
            parser.set("broker", "host", host_part)
            parser.set("broker", "port", str(parsed_port))

    broker = BrokerConfig(
        host=host_value,
        port=port_value,
        username=parser.get("broker", "username", fallback=None),
        password=parser.get("broker", "password", fallback=None),
        client_id=parser.get("broker", "client_id", fallback=None),
        keepalive=max(5, _getint(parser, "broker", "keepalive", 60)),
    )

    topics = TopicConfig(
        data=parser.get("topics", "data"),
        responses=parser.get("topics", "responses"),
        command_template=parser.get("topics", "command_template"),
        events_prefix=parser.get("topics", "events_prefix").rstrip("/"),
    )

    commands = CommandConfig(
        timeout_ms=max(
            1,
            _getint(
                parser, "commands", "timeout_ms", constants.DEFAULT_COMMAND_TIMEOUT_MS
            ),
        ),
        history_size=max(
            1,
            _getint(
                parser, "commands", "history_size", constants.DEFAULT_HISTORY_SIZE
            ),
        ),
    )

    liveness_defaults = LivenessConfig()
    warning_ms = _getint(
        parser,
        "liveness",
        "warning_threshold_ms",
        liveness_defaults.warning_threshold_ms,
    )
    offline_ms = _getint(
        parser,
        "liveness",
        "offline_threshold_ms",
        liveness_defaults.offline_threshold_ms,
    )
    if warning_ms <= 0 or offline_ms <= warning_ms:
        warning_ms = liveness_defaults.warning_threshold_ms
        offline_ms = liveness_defaults.offline_threshold_ms

    liveness = LivenessConfig(
        warning_threshold_ms=warning_ms,
        offline_threshold_ms=offline_ms,
        sweep_interval_ms=max(
            1000,
            _getint(
                parser,
                "liveness",
                "sweep_interval_ms",
                liveness_defaults.sweep_interval_ms,
            ),
        ),
        devices=_parse_list(
            parser.get("liveness", "devices", fallback=""), default=[]
        ),
    )

    policy = parser.get("alarms", "missing_value_policy", fallback="zero").strip().lower()
    if policy not in MISSING_VALUE_POLICIES:
        policy = "zero"

    rules_path_value = parser.get("alarms", "rules_path", fallback="").strip()

    alarms = AlarmConfig(
        cooldown_ms=max(
            0,
            _getint(
                parser, "alarms", "cooldown_ms", constants.DEFAULT_ALARM_COOLDOWN_MS
            ),
        ),
        nominal_event_code=parser.get(
            "alarms", "nominal_event_code", fallback=constants.NOMINAL_EVENT_CODE
        ).strip()
        or constants.NOMINAL_EVENT_CODE,
        missing_value_policy=policy,
        rules_path=Path(rules_path_value).expanduser() if rules_path_value else None,
    )

    log_path_value = parser.get("logging", "path", fallback="").strip()
    logging_config = LoggingConfig(
        level=parser.get("logging", "level", fallback="INFO"),
        path=Path(log_path_value).expanduser() if log_path_value else None,
        log_network=parser.getboolean("logging", "log_network", fallback=False),
    )

    health = HealthConfig(
        enabled=parser.getboolean("health", "enabled", fallback=False),
        host=parser.get("health", "host", fallback="127.0.0.1"),
        port=max(0, _getint(parser, "health", "port", 0)),
    )

    resilience = ResilienceConfig(
        reconnect_initial_seconds=max(
            0.1, _getfloat(parser, "resilience", "reconnect_initial_seconds", 1.0)
        ),
        reconnect_max_seconds=max(
            0.1, _getfloat(parser, "resilience", "reconnect_max_seconds", 30.0)
        ),
        reconnect_jitter_ratio=max(
            0.0,
            min(1.0, _getfloat(parser, "resilience", "reconnect_jitter_ratio", 0.5)),
        ),
    )

    return FieldlinkConfig(
        broker=broker,
        topics=topics,
        commands=commands,
        liveness=liveness,
        alarms=alarms,
        logging=logging_config,
        health=health,
        resilience=resilience,
        raw=parser,
        path=config_path,
    )
