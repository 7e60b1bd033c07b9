"""Constants used across the fieldlink package."""

from __future__ import annotations

from pathlib import Path

APP_NAME = "fieldlink"
DEFAULT_CONFIG_FILENAME = f"{APP_NAME}.cfg"
DEFAULT_CONFIG_PATH = Path.home() / ".fieldlink" / DEFAULT_CONFIG_FILENAME

DEFAULT_LOG_PATH = Path.home() / ".fieldlink" / "logs" / f"{APP_NAME}.log"

DEFAULT_BROKER_HOST = "localhost"
DEFAULT_BROKER_PORT = 1883

DEFAULT_DATA_TOPIC = "devices/+/data"
DEFAULT_RESPONSE_TOPIC = "devices/+/commands"
DEFAULT_COMMAND_TOPIC_TEMPLATE = "devices/{device_id}/commands"
DEFAULT_EVENTS_TOPIC_PREFIX = "server/events"

# Value of the envelope "sender" field on everything this server publishes.
SERVER_SENDER = "Server"

NOMINAL_EVENT_CODE = "NORMAL"

DEFAULT_COMMAND_TIMEOUT_MS = 30_000
DEFAULT_HISTORY_SIZE = 100

DEFAULT_WARNING_THRESHOLD_MS = 3 * 60 * 1000
DEFAULT_OFFLINE_THRESHOLD_MS = 5 * 60 * 1000
DEFAULT_SWEEP_INTERVAL_MS = 2 * 60 * 1000

DEFAULT_ALARM_COOLDOWN_MS = 5 * 60 * 1000
