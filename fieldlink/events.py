"""Typed events exposed to collaborators and the bus that carries them.

Five events leave the core:

    commandSent:          a command envelope was published
    commandAcknowledged:  a command reached SUCCESS or FAILED
    commandTimeout:       a command reached TIMEOUT
    deviceStatusChanged:  a device moved between online/warning/offline
    alarmTriggered:       an alarm fired outside its cooldown window

Subscribers may be plain callables or coroutine functions. A failing
subscriber is logged and never affects the state machine that emitted the
event, nor the other subscribers.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

LOGGER = logging.getLogger(__name__)


class EventName(str, Enum):
    COMMAND_SENT = "commandSent"
    COMMAND_ACKNOWLEDGED = "commandAcknowledged"
    COMMAND_TIMEOUT = "commandTimeout"
    DEVICE_STATUS_CHANGED = "deviceStatusChanged"
    ALARM_TRIGGERED = "alarmTriggered"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass(frozen=True)
class CommandSent:
    command_id: str
    device_id: str
    command_type: str
    sent_at: datetime

    name = EventName.COMMAND_SENT

    def as_dict(self) -> Dict[str, Any]:
        return {
            "commandId": self.command_id,
            "deviceId": self.device_id,
            "commandType": self.command_type,
            "sentAt": _iso(self.sent_at),
        }


@dataclass(frozen=True)
class CommandAcknowledged:
    command_id: str
    device_id: str
    status: str
    response_time_ms: Optional[int]
    device_response: Optional[Dict[str, Any]]
    acknowledged_at: datetime

    name = EventName.COMMAND_ACKNOWLEDGED

    def as_dict(self) -> Dict[str, Any]:
        return {
            "commandId": self.command_id,
            "deviceId": self.device_id,
            "status": self.status,
            "responseTimeMs": self.response_time_ms,
            "deviceResponse": self.device_response,
            "acknowledgedAt": _iso(self.acknowledged_at),
        }


@dataclass(frozen=True)
class CommandTimeout:
    command_id: str
    device_id: str
    message: str = "Device did not respond within timeout period"

    name = EventName.COMMAND_TIMEOUT

    def as_dict(self) -> Dict[str, Any]:
        return {
            "commandId": self.command_id,
            "deviceId": self.device_id,
            "message": self.message,
        }


@dataclass(frozen=True)
class DeviceStatusChanged:
    device_id: str
    old_state: str
    new_state: str
    last_seen_at: Optional[datetime]

    name = EventName.DEVICE_STATUS_CHANGED

    def as_dict(self) -> Dict[str, Any]:
        return {
            "deviceId": self.device_id,
            "oldState": self.old_state,
            "newState": self.new_state,
            "lastSeenAt": _iso(self.last_seen_at),
        }


@dataclass(frozen=True)
class AlarmTriggered:
    rule_owner_id: str
    device_id: str
    reason: str
    triggered_at: datetime
    snapshot: Dict[str, Any] = field(default_factory=dict)

    name = EventName.ALARM_TRIGGERED

    def as_dict(self) -> Dict[str, Any]:
        return {
            "ruleOwnerId": self.rule_owner_id,
            "deviceId": self.device_id,
            "reason": self.reason,
            "snapshot": dict(self.snapshot),
            "triggeredAt": _iso(self.triggered_at),
        }


Event = Union[
    CommandSent, CommandAcknowledged, CommandTimeout, DeviceStatusChanged, AlarmTriggered
]

EventHandler = Callable[[Event], Union[Awaitable[None], None]]


@dataclass(slots=True)
class _Subscription:
    handler: EventHandler
    names: Optional[frozenset[EventName]]

    def wants(self, name: EventName) -> bool:
        return self.names is None or name in self.names


class EventBus:
    """In-process publish/subscribe channel for core events.

    ``emit`` never blocks and never raises: synchronous handlers run inline,
    coroutine handlers are scheduled on the running loop.
    """

    def __init__(self) -> None:
        self._subscriptions: List[_Subscription] = []
        self._tasks: Set[asyncio.Task[None]] = set()

    def subscribe(
        self, handler: EventHandler, *names: EventName
    ) -> Callable[[], None]:
        """Register ``handler`` for the given event names (all when omitted).

        Returns a callable that removes the subscription.
        """
        subscription = _Subscription(
            handler=handler, names=frozenset(names) if names else None
        )
        self._subscriptions.append(subscription)

        def _unsubscribe() -> None:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

        return _unsubscribe

    def unsubscribe(self, handler: EventHandler) -> None:
        self._subscriptions = [
            item for item in self._subscriptions if item.handler != handler
        ]

    def emit(self, event: Event) -> None:
        LOGGER.debug("Emitting %s: %s", event.name.value, event.as_dict())
        for subscription in list(self._subscriptions):
            if not subscription.wants(event.name):
                continue
            try:
                result = subscription.handler(event)
            except Exception:
                LOGGER.exception(
                    "Event handler for %s raised an exception", event.name.value
                )
                continue
            if asyncio.iscoroutine(result):
                self._schedule(result, event.name)

    async def drain(self) -> None:
        """Wait for every scheduled coroutine handler to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def _schedule(self, coro: Awaitable[None], name: EventName) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            LOGGER.warning(
                "Dropping async %s handler: no running event loop", name.value
            )
            coro.close()  # type: ignore[attr-defined]
            return

        async def _runner() -> None:
            try:
                await coro
            except Exception:
                LOGGER.exception(
                    "Async event handler for %s raised an exception", name.value
                )

        task = loop.create_task(_runner())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
