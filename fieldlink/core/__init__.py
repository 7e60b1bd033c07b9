"""Core primitives for fieldlink."""

from .command_registry import CommandRegistry, CommandStatistics, DuplicateCommandError
from .models import (
    AlarmRule,
    Command,
    CommandStatus,
    DeviceLiveness,
    DeviceResponse,
    LivenessState,
    ThresholdRule,
    TriggerDecision,
    TriggerRecord,
)

__all__ = [
    "AlarmRule",
    "Command",
    "CommandRegistry",
    "CommandStatistics",
    "CommandStatus",
    "DeviceLiveness",
    "DeviceResponse",
    "DuplicateCommandError",
    "LivenessState",
    "ThresholdRule",
    "TriggerDecision",
    "TriggerRecord",
]
