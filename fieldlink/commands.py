"""Outbound command pipeline: envelope publishing and acknowledgment timeouts."""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional, Protocol

from . import constants
from .core.command_registry import CommandRegistry
from .core.models import Command, CommandStatus, DeviceResponse
from .envelopes import CommandEnvelope
from .events import CommandAcknowledged, CommandSent, CommandTimeout, EventBus

LOGGER = logging.getLogger(__name__)


class CommandPublishError(RuntimeError):
    """Raised when a command envelope could not be handed to the transport."""

    def __init__(self, message: str, *, command_id: str) -> None:
        super().__init__(message)
        self.command_id = command_id


class MQTTPublisher(Protocol):
    def publish(
        self, topic: str, payload: bytes, qos: int = 1, retain: bool = False
    ) -> None: ...


def _default_topic(device_id: str) -> str:
    return constants.DEFAULT_COMMAND_TOPIC_TEMPLATE.format(device_id=device_id)


class CommandDispatcher:
    """Publishes command envelopes and arms a timeout for each one.

    ``dispatch`` returns the correlation id as soon as the publish call
    returns. The final outcome arrives later on the event bus, either as
    ``commandAcknowledged`` (via :class:`AcknowledgmentMatcher`) or as
    ``commandTimeout`` from the timer armed here.
    """

    def __init__(
        self,
        registry: CommandRegistry,
        mqtt: MQTTPublisher,
        bus: EventBus,
        *,
        default_timeout_ms: int = constants.DEFAULT_COMMAND_TIMEOUT_MS,
        topic_for: Optional[Callable[[str], str]] = None,
        clock: Optional[Callable[[], datetime]] = None,
        id_factory: Optional[Callable[[], str]] = None,
    ) -> None:
        if default_timeout_ms <= 0:
            raise ValueError("default_timeout_ms must be positive")
        self._registry = registry
        self._mqtt = mqtt
        self._bus = bus
        self._default_timeout_ms = default_timeout_ms
        self._topic_for = topic_for or _default_topic
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._id_factory = id_factory or (lambda: uuid.uuid4().hex)
        self._timers: Dict[str, asyncio.TimerHandle] = {}

    @property
    def registry(self) -> CommandRegistry:
        return self._registry

    @property
    def armed_timer_count(self) -> int:
        return len(self._timers)

    async def dispatch(
        self,
        device_id: str,
        command_type: str,
        payload: Optional[Mapping[str, Any]] = None,
        timeout_ms: Optional[int] = None,
    ) -> str:
        """Publish a command to ``device_id`` and return its correlation id.

        Raises:
            CommandPublishError: The topic could not be built or the
                transport refused the envelope. The command is already
                recorded as FAILED.
        """
        effective_timeout = timeout_ms if timeout_ms is not None else self._default_timeout_ms
        if effective_timeout <= 0:
            raise ValueError("timeout_ms must be positive")

        loop = asyncio.get_running_loop()
        command_id = self._id_factory()
        parameters = dict(payload or {})
        envelope = CommandEnvelope(
            device_id=device_id,
            message_type=command_type,
            command_id=command_id,
            parameters=parameters,
        )

        command = Command(
            command_id=command_id,
            device_id=device_id,
            command_type=command_type,
            payload=parameters,
            sent_at=self._clock(),
            timeout_ms=effective_timeout,
        )
        # Registered before publishing so an immediate response finds it.
        self._registry.register(command)

        # Anything raised between register and a successful publish must still
        # leave the command in a terminal state.
        try:
            topic = self._topic_for(device_id)
            LOGGER.info(
                "Sending %s command %s to device %s on %s",
                command_type,
                command_id[:8],
                device_id,
                topic,
            )
            self._mqtt.publish(topic, envelope.encode(), qos=1, retain=False)
        except Exception as exc:
            reason = f"publish failed: {exc}"
            self._registry.finalize(
                command_id, CommandStatus.FAILED, failure_reason=reason
            )
            LOGGER.error("Failed to send command %s: %s", command_id[:8], exc)
            raise CommandPublishError(reason, command_id=command_id) from exc

        if self._registry.get_active(command_id) is not None:
            self._timers[command_id] = loop.call_later(
                effective_timeout / 1000.0, self._on_timeout, command_id
            )

        self._bus.emit(
            CommandSent(
                command_id=command_id,
                device_id=device_id,
                command_type=command_type,
                sent_at=command.sent_at,
            )
        )
        return command_id

    def cancel_timeout(self, command_id: str) -> None:
        handle = self._timers.pop(command_id, None)
        if handle is not None:
            handle.cancel()

    def _on_timeout(self, command_id: str) -> None:
        self._timers.pop(command_id, None)
        command = self._registry.finalize(command_id, CommandStatus.TIMEOUT)
        if command is None:
            # Acknowledged first; nothing left to do.
            return

        LOGGER.warning(
            "Command %s to device %s timed out after %dms",
            command_id[:8],
            command.device_id,
            command.timeout_ms,
        )
        self._bus.emit(
            CommandTimeout(command_id=command_id, device_id=command.device_id)
        )

    async def abandon_pending(self, reason: str) -> int:
        """Fail every pending command, e.g. during shutdown.

        Returns the number of commands abandoned.
        """
        abandoned = 0
        for command in self._registry.pending_commands():
            self.cancel_timeout(command.command_id)
            finished = self._registry.finalize(
                command.command_id,
                CommandStatus.FAILED,
                device_response=DeviceResponse(status=None, message=reason),
                failure_reason=reason,
            )
            if finished is None:
                continue
            abandoned += 1
            self._bus.emit(
                CommandAcknowledged(
                    command_id=finished.command_id,
                    device_id=finished.device_id,
                    status=finished.status.value,
                    response_time_ms=finished.response_time_ms,
                    device_response=(
                        finished.device_response.as_dict()
                        if finished.device_response
                        else None
                    ),
                    acknowledged_at=finished.acknowledged_at or self._clock(),
                )
            )

        if abandoned:
            LOGGER.info("Abandoned %d pending command(s): %s", abandoned, reason)
        return abandoned
