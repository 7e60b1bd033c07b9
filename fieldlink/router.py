"""Topic-based fan-out of inbound MQTT messages to the core components."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

import paho.mqtt.client as mqtt

from .acknowledgments import AcknowledgmentMatcher
from .alarms import ThresholdEvaluator, extract_event_code
from .envelopes import (
    AcknowledgmentEnvelope,
    EnvelopeDecodeError,
    decode_document,
    device_id_from_topic,
)
from .liveness import LivenessMonitor

LOGGER = logging.getLogger(__name__)


def _resolve_device_id(topic: str, document: Mapping[str, Any]) -> Optional[str]:
    device_id = device_id_from_topic(topic)
    if device_id and device_id not in ("+", "#"):
        return device_id
    for key in ("Device ID", "deviceId"):
        value = document.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


class InboundRouter:
    """Routes telemetry and response messages; never raises into the transport.

    Telemetry refreshes liveness and is evaluated against alarm rules.
    Response-channel messages refresh liveness and are offered to the
    acknowledgment matcher. Copies of our own command envelopes, which share
    the response topic, are dropped before either happens.
    """

    def __init__(
        self,
        *,
        data_topic: str,
        response_topic: str,
        liveness: LivenessMonitor,
        evaluator: ThresholdEvaluator,
        matcher: AcknowledgmentMatcher,
    ) -> None:
        self._data_topic = data_topic
        self._response_topic = response_topic
        self._liveness = liveness
        self._evaluator = evaluator
        self._matcher = matcher

    async def handle_message(self, topic: str, payload: bytes) -> None:
        try:
            document = decode_document(payload)
        except EnvelopeDecodeError as exc:
            LOGGER.warning("Dropping message on %s: %s", topic, exc)
            return

        if mqtt.topic_matches_sub(self._data_topic, topic):
            await self._handle_telemetry(topic, document)
        elif mqtt.topic_matches_sub(self._response_topic, topic):
            await self._handle_response(topic, document)
        else:
            LOGGER.debug("No route for topic %s", topic)

    async def _handle_telemetry(self, topic: str, document: Mapping[str, Any]) -> None:
        device_id = _resolve_device_id(topic, document)
        if device_id is None:
            LOGGER.warning("Telemetry on %s carries no device id; dropped", topic)
            return

        await self._liveness.record_activity(device_id)

        try:
            decision = await self._evaluator.evaluate(
                device_id, document, extract_event_code(document)
            )
        except Exception:
            LOGGER.exception("Alarm evaluation failed for device %s", device_id)
            return

        if decision.suppressed:
            LOGGER.debug(
                "Device %s: %d alarm(s) still cooling down",
                device_id,
                len(decision.suppressed),
            )

    async def _handle_response(self, topic: str, document: Mapping[str, Any]) -> None:
        envelope = AcknowledgmentEnvelope.from_document(document)
        if envelope.is_server_echo:
            return

        device_id = _resolve_device_id(topic, document)
        if device_id is not None:
            await self._liveness.record_activity(device_id)

        try:
            self._matcher.on_inbound_message(envelope, device_id=device_id)
        except Exception:
            LOGGER.exception("Failed to process response on %s", topic)
