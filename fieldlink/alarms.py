"""Threshold evaluation of telemetry snapshots against alarm rules.

Each :class:`AlarmRule` owns an ordered list of per-parameter bounds. For a
telemetry snapshot the evaluator, per alarm:

1. fires on any event code other than the nominal one;
2. otherwise walks the threshold rules in order and fires on the first bound
   breach, which also names the reason;
3. suppresses the firing if the same alarm fired within the cooldown window.

Only the cooldown table is mutated. A rule that cannot be evaluated is logged
and skipped; it never hides the remaining rules.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from . import constants
from .core.models import AlarmRule, ThresholdRule, TriggerDecision, TriggerRecord
from .events import AlarmTriggered, EventBus

LOGGER = logging.getLogger(__name__)

MISSING_AS_ZERO = "zero"
MISSING_SKIP = "skip"


class RuleConfigurationError(RuntimeError):
    """Raised when alarm rule definitions cannot be loaded."""


class _MissingValue(Exception):
    """Internal signal: the snapshot has no usable value for a rule."""


class RuleStore:
    """In-memory alarm configuration, read-only to the evaluator."""

    def __init__(self, alarms: Iterable[AlarmRule] = ()) -> None:
        self._alarms: Dict[str, AlarmRule] = {}
        for alarm in alarms:
            self.upsert(alarm)

    def upsert(self, alarm: AlarmRule) -> None:
        self._alarms[alarm.alarm_id] = alarm

    def remove(self, alarm_id: str) -> Optional[AlarmRule]:
        return self._alarms.pop(alarm_id, None)

    def get(self, alarm_id: str) -> Optional[AlarmRule]:
        return self._alarms.get(alarm_id)

    def alarms_for_device(
        self, device_id: str, *, active_only: bool = True
    ) -> List[AlarmRule]:
        alarms = [
            alarm
            for alarm in self._alarms.values()
            if alarm.device_id == device_id and (alarm.active or not active_only)
        ]
        return sorted(alarms, key=lambda alarm: alarm.alarm_id)

    def device_ids(self) -> List[str]:
        return sorted({alarm.device_id for alarm in self._alarms.values()})

    def __len__(self) -> int:
        return len(self._alarms)


def _parse_bound(value: Any, *, field_name: str, alarm_id: str) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        bound = float(value)
    except (TypeError, ValueError) as exc:
        raise RuleConfigurationError(
            f"Alarm {alarm_id}: {field_name} must be numeric, got {value!r}"
        ) from exc
    if math.isnan(bound):
        raise RuleConfigurationError(f"Alarm {alarm_id}: {field_name} is NaN")
    return bound


def parse_alarm(document: Mapping[str, Any]) -> AlarmRule:
    """Build an :class:`AlarmRule` from its JSON representation."""
    alarm_id = str(document.get("id") or "").strip()
    if not alarm_id:
        raise RuleConfigurationError("Alarm definition is missing 'id'")

    device_id = str(document.get("deviceId") or "").strip()
    if not device_id:
        raise RuleConfigurationError(f"Alarm {alarm_id} is missing 'deviceId'")

    raw_rules = document.get("rules") or []
    if not isinstance(raw_rules, list):
        raise RuleConfigurationError(f"Alarm {alarm_id}: 'rules' must be a list")

    rules: List[ThresholdRule] = []
    for raw in raw_rules:
        if not isinstance(raw, Mapping):
            raise RuleConfigurationError(f"Alarm {alarm_id}: rule must be an object")
        parameter = str(raw.get("parameter") or "").strip()
        if not parameter:
            raise RuleConfigurationError(
                f"Alarm {alarm_id}: rule is missing 'parameter'"
            )
        upper = _parse_bound(raw.get("upper"), field_name="upper", alarm_id=alarm_id)
        lower = _parse_bound(raw.get("lower"), field_name="lower", alarm_id=alarm_id)
        if upper is not None and lower is not None and lower > upper:
            raise RuleConfigurationError(
                f"Alarm {alarm_id}: {parameter} lower bound {lower} exceeds upper bound {upper}"
            )
        aliases = tuple(str(alias) for alias in raw.get("aliases") or ())
        rules.append(
            ThresholdRule(
                device_id=device_id,
                parameter_name=parameter,
                upper_bound=upper,
                lower_bound=lower,
                aliases=aliases,
            )
        )

    return AlarmRule(
        alarm_id=alarm_id,
        name=str(document.get("name") or alarm_id),
        device_id=device_id,
        rules=tuple(rules),
        severity=str(document.get("severity") or "warning"),
        active=bool(document.get("active", True)),
        recipients=tuple(str(item) for item in document.get("recipients") or ()),
    )


def load_rules(path: Path) -> RuleStore:
    """Read alarm definitions from a JSON rules file."""
    try:
        document = json.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise RuleConfigurationError(f"Cannot read rules file {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise RuleConfigurationError(f"Rules file {path} is not valid JSON") from exc

    alarms = document.get("alarms") if isinstance(document, dict) else None
    if not isinstance(alarms, list):
        raise RuleConfigurationError(f"Rules file {path} must contain an 'alarms' list")

    store = RuleStore(parse_alarm(item) for item in alarms)
    LOGGER.info("Loaded %d alarm(s) from %s", len(store), path)
    return store


def extract_parameters(snapshot: Mapping[str, Any]) -> Mapping[str, Any]:
    """Telemetry values live under ``Parameters`` when the device nests them."""
    nested = snapshot.get("Parameters")
    if isinstance(nested, Mapping):
        return nested
    return snapshot


def extract_event_code(snapshot: Mapping[str, Any]) -> Optional[str]:
    params = extract_parameters(snapshot)
    for source, key in ((params, "Event"), (snapshot, "EVENT"), (snapshot, "event")):
        value = source.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


class ThresholdEvaluator:
    """Decides whether a telemetry snapshot raises any alarm for a device."""

    def __init__(
        self,
        rules: RuleStore,
        bus: EventBus,
        *,
        cooldown_ms: int = constants.DEFAULT_ALARM_COOLDOWN_MS,
        nominal_event_code: str = constants.NOMINAL_EVENT_CODE,
        missing_value_policy: str = MISSING_AS_ZERO,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if missing_value_policy not in (MISSING_AS_ZERO, MISSING_SKIP):
            raise ValueError(f"Unknown missing_value_policy: {missing_value_policy}")
        self._rules = rules
        self._bus = bus
        self._cooldown = timedelta(milliseconds=max(0, cooldown_ms))
        self._nominal = nominal_event_code.strip().upper()
        self._missing_policy = missing_value_policy
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self._last_triggered: Dict[str, datetime] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    @property
    def rules(self) -> RuleStore:
        return self._rules

    async def evaluate(
        self,
        device_id: str,
        snapshot: Mapping[str, Any],
        event_code: Optional[str] = None,
    ) -> TriggerDecision:
        alarms = self._rules.alarms_for_device(device_id)
        if not alarms:
            return TriggerDecision.no_trigger()

        LOGGER.debug("Checking %d alarm(s) for device %s", len(alarms), device_id)

        records: List[TriggerRecord] = []
        suppressed: List[str] = []
        for alarm in alarms:
            try:
                condition = self.check_condition(alarm, snapshot, event_code)
            except Exception:
                LOGGER.exception("Failed to evaluate alarm %s", alarm.alarm_id)
                continue
            if condition is None:
                continue

            reason, offending = condition
            record = await self._record_trigger(alarm, reason, offending)
            if record is None:
                suppressed.append(alarm.alarm_id)
            else:
                records.append(record)

        return TriggerDecision(records=tuple(records), suppressed=tuple(suppressed))

    def check_condition(
        self,
        alarm: AlarmRule,
        snapshot: Mapping[str, Any],
        event_code: Optional[str] = None,
    ) -> Optional[Tuple[str, Dict[str, Any]]]:
        """Side-effect free check of one alarm.

        Returns ``(reason, offending_values)`` when the alarm condition holds.
        """
        if event_code is not None and str(event_code).strip():
            code = str(event_code).strip()
            if code.upper() != self._nominal:
                return (
                    f"abnormal event code: {code} (expected {self._nominal})",
                    {"event": code},
                )

        params = extract_parameters(snapshot)
        for rule in alarm.rules:
            if not rule.enabled:
                continue
            try:
                value = self._read_value(rule, params)
            except _MissingValue:
                LOGGER.debug(
                    "Alarm %s: no value for %s, rule skipped",
                    alarm.alarm_id,
                    rule.parameter_name,
                )
                continue
            except Exception:
                LOGGER.exception(
                    "Alarm %s: failed to read %s", alarm.alarm_id, rule.parameter_name
                )
                continue

            reason = self._check_bounds(rule, value)
            if reason is not None:
                return reason, {rule.parameter_name: value}
        return None

    def last_trigger(self, rule_owner_id: str) -> Optional[datetime]:
        return self._last_triggered.get(rule_owner_id)

    def prune_cooldowns(self) -> int:
        """Forget cooldown entries older than the window."""
        now = self._clock()
        expired = [
            owner
            for owner, at in self._last_triggered.items()
            if now - at >= self._cooldown
        ]
        for owner in expired:
            del self._last_triggered[owner]
        return len(expired)

    def _read_value(self, rule: ThresholdRule, params: Mapping[str, Any]) -> float:
        raw: Any = None
        for key in rule.keys:
            candidate = params.get(key)
            if candidate is not None and candidate != "":
                raw = candidate
                break

        value: Optional[float]
        if isinstance(raw, bool):
            value = float(raw)
        else:
            try:
                value = float(raw) if raw is not None else None
            except (TypeError, ValueError):
                value = None
        if value is not None and math.isnan(value):
            value = None

        if value is None:
            if self._missing_policy == MISSING_SKIP:
                raise _MissingValue(rule.parameter_name)
            return 0.0
        return value

    @staticmethod
    def _check_bounds(rule: ThresholdRule, value: float) -> Optional[str]:
        if rule.upper_bound is not None and value > rule.upper_bound:
            return (
                f"{rule.parameter_name} ({value:g}) above upper bound "
                f"{rule.upper_bound:g}"
            )
        if rule.lower_bound is not None and value < rule.lower_bound:
            return (
                f"{rule.parameter_name} ({value:g}) below lower bound "
                f"{rule.lower_bound:g}"
            )
        return None

    async def _record_trigger(
        self, alarm: AlarmRule, reason: str, offending: Dict[str, Any]
    ) -> Optional[TriggerRecord]:
        async with self._lock_for(alarm.alarm_id):
            now = self._clock()
            last = self._last_triggered.get(alarm.alarm_id)
            if last is not None and now - last < self._cooldown:
                LOGGER.info(
                    "Alarm '%s' already triggered %ss ago, skipping notification",
                    alarm.name,
                    int((now - last).total_seconds()),
                )
                return None
            self._last_triggered[alarm.alarm_id] = now

        record = TriggerRecord(
            rule_owner_id=alarm.alarm_id,
            device_id=alarm.device_id,
            triggered_at=now,
            reason=reason,
            snapshot=dict(offending),
        )
        LOGGER.warning(
            "Alarm '%s' triggered for device %s: %s",
            alarm.name,
            alarm.device_id,
            reason,
        )
        self._bus.emit(
            AlarmTriggered(
                rule_owner_id=record.rule_owner_id,
                device_id=record.device_id,
                reason=record.reason,
                triggered_at=record.triggered_at,
                snapshot=dict(record.snapshot),
            )
        )
        return record

    def _lock_for(self, owner_id: str) -> asyncio.Lock:
        lock = self._locks.get(owner_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[owner_id] = lock
        return lock
