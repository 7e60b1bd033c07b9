"""Domain models for commands, device liveness and alarm rules."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple


class CommandStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    TIMEOUT = "TIMEOUT"

    @property
    def is_terminal(self) -> bool:
        return self is not CommandStatus.PENDING


class LivenessState(str, Enum):
    ONLINE = "online"
    WARNING = "warning"
    OFFLINE = "offline"


@dataclass(slots=True)
class DeviceResponse:
    """Acknowledgment details echoed back to callers."""

    status: Optional[str]
    message: str = "No message provided"
    error: Optional[Any] = None
    response: Optional[Any] = None
    full_payload: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "error": self.error,
            "response": self.response,
            "fullPayload": dict(self.full_payload),
        }


@dataclass(slots=True)
class Command:
    """One outstanding or completed request to a device.

    Only the command registry moves a command out of ``PENDING``; everything
    else treats the record as read-only.
    """

    command_id: str
    device_id: str
    command_type: str
    payload: Mapping[str, Any]
    sent_at: datetime
    timeout_ms: int
    status: CommandStatus = CommandStatus.PENDING
    acknowledged_at: Optional[datetime] = None
    device_response: Optional[DeviceResponse] = None
    failure_reason: Optional[str] = None

    @property
    def response_time_ms(self) -> Optional[int]:
        if self.acknowledged_at is None:
            return None
        delta = self.acknowledged_at - self.sent_at
        return int(round(delta.total_seconds() * 1000))

    def as_dict(self) -> Dict[str, Any]:
        return {
            "commandId": self.command_id,
            "deviceId": self.device_id,
            "commandType": self.command_type,
            "payload": dict(self.payload),
            "status": self.status.value,
            "sentAt": self.sent_at.isoformat(),
            "acknowledgedAt": (
                self.acknowledged_at.isoformat() if self.acknowledged_at else None
            ),
            "responseTimeMs": self.response_time_ms,
            "timeoutMs": self.timeout_ms,
            "deviceResponse": (
                self.device_response.as_dict() if self.device_response else None
            ),
            "failureReason": self.failure_reason,
        }


@dataclass(slots=True)
class DeviceLiveness:
    device_id: str
    last_seen_at: Optional[datetime] = None
    state: LivenessState = LivenessState.OFFLINE


@dataclass(frozen=True)
class ThresholdRule:
    """Upper/lower bound check for one telemetry parameter.

    ``None`` disables a bound; zero is a legitimate bound value.
    """

    device_id: str
    parameter_name: str
    upper_bound: Optional[float] = None
    lower_bound: Optional[float] = None
    aliases: Tuple[str, ...] = ()

    @property
    def enabled(self) -> bool:
        return self.upper_bound is not None or self.lower_bound is not None

    @property
    def keys(self) -> Tuple[str, ...]:
        return (self.parameter_name, *self.aliases)


@dataclass(frozen=True)
class AlarmRule:
    """An alarm configuration owning an ordered set of threshold rules."""

    alarm_id: str
    name: str
    device_id: str
    rules: Tuple[ThresholdRule, ...] = ()
    severity: str = "warning"
    active: bool = True
    recipients: Tuple[str, ...] = ()


@dataclass(frozen=True)
class TriggerRecord:
    rule_owner_id: str
    device_id: str
    triggered_at: datetime
    reason: str
    snapshot: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TriggerDecision:
    """Outcome of one evaluation of a device snapshot."""

    records: Tuple[TriggerRecord, ...] = ()
    suppressed: Tuple[str, ...] = ()

    @property
    def triggered(self) -> bool:
        return bool(self.records)

    @property
    def reason(self) -> Optional[str]:
        if not self.records:
            return None
        return self.records[0].reason

    @classmethod
    def no_trigger(cls) -> "TriggerDecision":
        return cls()
