"""Inbound acknowledgment matching for dispatched commands."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Union

from .commands import CommandDispatcher
from .core.command_registry import CommandRegistry
from .core.models import Command, CommandStatus, DeviceResponse
from .envelopes import AcknowledgmentEnvelope
from .events import CommandAcknowledged, EventBus

LOGGER = logging.getLogger(__name__)

MALFORMED_ACK_REASON = "malformed acknowledgment"


class AcknowledgmentMatcher:
    """Finalizes pending commands from device response envelopes.

    Every path through :meth:`on_inbound_message` is non-raising: messages
    without a correlation id, unknown ids, late duplicates and malformed
    statuses all end in a log line and, at most, one terminal transition.
    """

    def __init__(
        self,
        registry: CommandRegistry,
        dispatcher: CommandDispatcher,
        bus: EventBus,
    ) -> None:
        self._registry = registry
        self._dispatcher = dispatcher
        self._bus = bus

    def on_inbound_message(
        self,
        envelope: Union[AcknowledgmentEnvelope, Mapping[str, Any]],
        *,
        device_id: Optional[str] = None,
    ) -> Optional[Command]:
        """Match one response-channel message.

        Returns the finalized command when this message decided it.
        """
        if not isinstance(envelope, AcknowledgmentEnvelope):
            envelope = AcknowledgmentEnvelope.from_document(envelope)

        if envelope.is_server_echo:
            return None

        command_id = envelope.command_id
        if not command_id:
            LOGGER.debug(
                "Response message from %s carries no CommandId; not an acknowledgment",
                device_id or "unknown device",
            )
            return None

        pending = self._registry.get_active(command_id)
        if pending is None:
            if self._registry.get_status(command_id) is not None:
                LOGGER.debug("Ignoring repeat acknowledgment for %s", command_id[:8])
            else:
                LOGGER.info(
                    "No pending command for CommandId %s (expired or not issued here)",
                    command_id,
                )
            return None

        if device_id is not None and pending.device_id != device_id:
            LOGGER.warning(
                "Acknowledgment for %s arrived from %s but was sent to %s",
                command_id[:8],
                device_id,
                pending.device_id,
            )

        failure_reason: Optional[str] = None
        if not envelope.status_is_valid:
            status = CommandStatus.FAILED
            failure_reason = MALFORMED_ACK_REASON
            LOGGER.warning(
                "Acknowledgment for %s has no usable status (%r): %s",
                command_id[:8],
                envelope.status,
                MALFORMED_ACK_REASON,
            )
        elif envelope.succeeded:
            status = CommandStatus.SUCCESS
        else:
            status = CommandStatus.FAILED
            failure_reason = envelope.message or str(envelope.status)

        device_response = DeviceResponse(
            status=envelope.status if envelope.status_is_valid else None,
            message=envelope.message or "No message provided",
            error=envelope.error,
            response=envelope.response,
            full_payload=dict(envelope.raw),
        )

        command = self._registry.finalize(
            command_id,
            status,
            device_response=device_response,
            failure_reason=failure_reason,
        )
        if command is None:
            # The timer won the race between lookup and finalize.
            return None

        self._dispatcher.cancel_timeout(command_id)

        LOGGER.info(
            "Command %s acknowledged with status %s in %sms",
            command_id[:8],
            command.status.value,
            command.response_time_ms,
        )

        acknowledged_at = command.acknowledged_at or datetime.now(timezone.utc)
        self._bus.emit(
            CommandAcknowledged(
                command_id=command.command_id,
                device_id=command.device_id,
                status=command.status.value,
                response_time_ms=command.response_time_ms,
                device_response=device_response.as_dict(),
                acknowledged_at=acknowledged_at,
            )
        )
        return command
