"""Republishes core events on MQTT so UI layers can follow them live."""

from __future__ import annotations

import json
import logging
from typing import Callable, Optional

from . import constants
from .commands import MQTTPublisher
from .events import Event, EventBus

LOGGER = logging.getLogger(__name__)


class EventForwarder:
    """Bus subscriber publishing ``{prefix}/{eventName}`` JSON documents."""

    def __init__(
        self,
        mqtt: MQTTPublisher,
        *,
        topic_prefix: str = constants.DEFAULT_EVENTS_TOPIC_PREFIX,
        qos: int = 1,
    ) -> None:
        self._mqtt = mqtt
        self._prefix = topic_prefix.rstrip("/")
        self._qos = qos
        self._unsubscribe: Optional[Callable[[], None]] = None
        self.published = 0
        self.failed = 0

    def attach(self, bus: EventBus) -> None:
        if self._unsubscribe is not None:
            return
        self._unsubscribe = bus.subscribe(self.forward)

    def detach(self) -> None:
        if self._unsubscribe is None:
            return
        self._unsubscribe()
        self._unsubscribe = None

    def topic_for(self, event: Event) -> str:
        return f"{self._prefix}/{event.name.value}"

    def forward(self, event: Event) -> None:
        topic = self.topic_for(event)
        payload = json.dumps(event.as_dict(), default=str).encode("utf-8")
        try:
            self._mqtt.publish(topic, payload, qos=self._qos, retain=False)
        except (RuntimeError, OSError) as exc:
            self.failed += 1
            LOGGER.warning("Failed to forward %s event: %s", event.name.value, exc)
            return
        self.published += 1
