"""Device liveness tracking derived from inbound message arrival times.

A device is ``online`` while messages keep arriving, ``warning`` once it has
been silent longer than the warning threshold and ``offline`` after the
offline threshold (or when it has never been heard from). Two paths write the
state: message arrival forces ``online`` immediately, and a periodic sweep
decays silent devices. Both go through a per-device lock so a sweep that
started before a message arrived cannot overwrite the fresher ``online``.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional

from . import constants
from .core.models import DeviceLiveness, LivenessState
from .events import DeviceStatusChanged, EventBus

LOGGER = logging.getLogger(__name__)

DeviceSource = Callable[[], Iterable[str]]


class LivenessConfigurationError(RuntimeError):
    """Raised when liveness thresholds are inconsistent."""


@dataclass(frozen=True)
class LivenessChange:
    device_id: str
    old_state: LivenessState
    new_state: LivenessState
    last_seen_at: Optional[datetime]


def classify(
    last_seen_at: Optional[datetime],
    now: datetime,
    *,
    warning_threshold: timedelta,
    offline_threshold: timedelta,
) -> LivenessState:
    """Pure state function of the silence duration."""
    if last_seen_at is None:
        return LivenessState.OFFLINE
    elapsed = now - last_seen_at
    if elapsed > offline_threshold:
        return LivenessState.OFFLINE
    if elapsed > warning_threshold:
        return LivenessState.WARNING
    return LivenessState.ONLINE


class LivenessMonitor:
    """Maintains per-device last-seen timestamps and derived health.

    Usage:
        monitor = LivenessMonitor(bus, warning_threshold_ms=180_000,
                                  offline_threshold_ms=300_000)
        monitor.start()                    # periodic sweep task
        await monitor.record_activity("D1")  # on every inbound message
    """

    def __init__(
        self,
        bus: EventBus,
        *,
        warning_threshold_ms: int = constants.DEFAULT_WARNING_THRESHOLD_MS,
        offline_threshold_ms: int = constants.DEFAULT_OFFLINE_THRESHOLD_MS,
        sweep_interval_ms: int = constants.DEFAULT_SWEEP_INTERVAL_MS,
        device_source: Optional[DeviceSource] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if warning_threshold_ms <= 0:
            raise LivenessConfigurationError("warning threshold must be positive")
        if warning_threshold_ms >= offline_threshold_ms:
            raise LivenessConfigurationError(
                "warning threshold must be shorter than offline threshold "
                f"({warning_threshold_ms}ms >= {offline_threshold_ms}ms)"
            )
        if sweep_interval_ms <= 0:
            raise LivenessConfigurationError("sweep interval must be positive")

        self._bus = bus
        self._warning = timedelta(milliseconds=warning_threshold_ms)
        self._offline = timedelta(milliseconds=offline_threshold_ms)
        self._sweep_interval = sweep_interval_ms / 1000.0
        self._device_source = device_source
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self._records: Dict[str, DeviceLiveness] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._task: Optional[asyncio.Task[None]] = None

    async def record_activity(
        self, device_id: str, at: Optional[datetime] = None
    ) -> Optional[LivenessChange]:
        """Refresh ``device_id`` after an inbound message; forces ``online``."""
        async with self._lock_for(device_id):
            record = self._record_for(device_id)
            record.last_seen_at = at or self._clock()
            if record.state is LivenessState.ONLINE:
                return None
            change = LivenessChange(
                device_id=device_id,
                old_state=record.state,
                new_state=LivenessState.ONLINE,
                last_seen_at=record.last_seen_at,
            )
            record.state = LivenessState.ONLINE

        self._announce(change, reason="message received")
        return change

    async def sweep(self) -> List[LivenessChange]:
        """Re-derive every known device's state; announce only the changes."""
        changes: List[LivenessChange] = []
        for device_id in self._known_devices():
            async with self._lock_for(device_id):
                record = self._record_for(device_id)
                new_state = classify(
                    record.last_seen_at,
                    self._clock(),
                    warning_threshold=self._warning,
                    offline_threshold=self._offline,
                )
                if new_state is record.state:
                    continue
                change = LivenessChange(
                    device_id=device_id,
                    old_state=record.state,
                    new_state=new_state,
                    last_seen_at=record.last_seen_at,
                )
                record.state = new_state
            changes.append(change)
            self._announce(change, reason="sweep")

        if changes:
            LOGGER.info("Liveness sweep updated %d device(s)", len(changes))
        else:
            LOGGER.debug("Liveness sweep found no status changes")
        return changes

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._run())
        LOGGER.info(
            "Liveness monitor started (sweep=%ss, warning=%ss, offline=%ss)",
            self._sweep_interval,
            self._warning.total_seconds(),
            self._offline.total_seconds(),
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def get(self, device_id: str) -> Optional[DeviceLiveness]:
        return self._records.get(device_id)

    def snapshot(self) -> Dict[str, DeviceLiveness]:
        return dict(self._records)

    def summary(self) -> Dict[str, int]:
        counts = {state.value: 0 for state in LivenessState}
        for record in self._records.values():
            counts[record.state.value] += 1
        return counts

    async def _run(self) -> None:
        while True:
            try:
                await self.sweep()
            except asyncio.CancelledError:
                raise
            except Exception:
                LOGGER.exception("Liveness sweep failed")
            await asyncio.sleep(self._sweep_interval)

    def _known_devices(self) -> List[str]:
        devices = list(self._records)
        if self._device_source is not None:
            try:
                provisioned = list(self._device_source())
            except Exception:
                LOGGER.exception("Device source failed; sweeping known devices only")
                provisioned = []
            for device_id in provisioned:
                if device_id and device_id not in self._records:
                    devices.append(device_id)
        return devices

    def _record_for(self, device_id: str) -> DeviceLiveness:
        record = self._records.get(device_id)
        if record is None:
            record = DeviceLiveness(device_id=device_id)
            self._records[device_id] = record
        return record

    def _lock_for(self, device_id: str) -> asyncio.Lock:
        lock = self._locks.get(device_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[device_id] = lock
        return lock

    def _announce(self, change: LivenessChange, *, reason: str) -> None:
        LOGGER.info(
            "Device %s: %s -> %s (%s)",
            change.device_id,
            change.old_state.value,
            change.new_state.value,
            reason,
        )
        self._bus.emit(
            DeviceStatusChanged(
                device_id=change.device_id,
                old_state=change.old_state.value,
                new_state=change.new_state.value,
                last_seen_at=change.last_seen_at,
            )
        )
