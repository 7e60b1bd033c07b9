"""Envelope documents exchanged with devices over MQTT.

Command envelope (server -> device)::

    {"Device ID": "...", "Message Type": "...", "sender": "Server",
     "CommandId": "...", "Parameters": {...}}

Acknowledgment envelope (device -> server)::

    {"CommandId": "...", "status": "SUCCESS", "message": "...",
     "error": ..., "response": ...}
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from .constants import SERVER_SENDER

SUCCESS_STATUSES = frozenset({"SUCCESS", "OK"})


class EnvelopeDecodeError(ValueError):
    """Raised when an inbound payload is not a JSON object."""


@dataclass(frozen=True)
class CommandEnvelope:
    device_id: str
    message_type: str
    command_id: str
    parameters: Mapping[str, Any] = field(default_factory=dict)
    sender: str = SERVER_SENDER

    def to_document(self) -> Dict[str, Any]:
        return {
            "Device ID": self.device_id,
            "Message Type": self.message_type.lower(),
            "sender": self.sender,
            "CommandId": self.command_id,
            "Parameters": dict(self.parameters),
        }

    def encode(self) -> bytes:
        return json.dumps(self.to_document()).encode("utf-8")


@dataclass(frozen=True)
class AcknowledgmentEnvelope:
    """A response document that may or may not carry a correlation id."""

    command_id: Optional[str]
    status: Optional[Any] = None
    message: Optional[str] = None
    error: Optional[Any] = None
    response: Optional[Any] = None
    sender: Optional[str] = None
    raw: Mapping[str, Any] = field(default_factory=dict)

    @property
    def is_acknowledgment(self) -> bool:
        return bool(self.command_id)

    @property
    def is_server_echo(self) -> bool:
        return self.sender == SERVER_SENDER

    @property
    def status_is_valid(self) -> bool:
        return isinstance(self.status, str) and bool(self.status.strip())

    @property
    def succeeded(self) -> bool:
        return self.status_is_valid and self.status.strip().upper() in SUCCESS_STATUSES

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "AcknowledgmentEnvelope":
        command_id = document.get("CommandId")
        if command_id is not None:
            command_id = str(command_id).strip() or None
        message = document.get("message")
        sender = document.get("sender")
        return cls(
            command_id=command_id,
            status=document.get("status"),
            message=str(message) if message is not None else None,
            error=document.get("error"),
            response=document.get("response"),
            sender=str(sender) if sender is not None else None,
            raw=dict(document),
        )


def decode_document(payload: bytes) -> Dict[str, Any]:
    try:
        decoded = payload.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise EnvelopeDecodeError("Payload is not valid UTF-8") from exc

    try:
        data = json.loads(decoded)
    except json.JSONDecodeError as exc:
        raise EnvelopeDecodeError("Payload is not valid JSON") from exc

    if not isinstance(data, dict):
        raise EnvelopeDecodeError("Payload must be a JSON object")
    return data


def device_id_from_topic(topic: str) -> Optional[str]:
    """Extract ``<id>`` from ``devices/<id>/<channel>`` style topics."""
    segments = topic.split("/")
    if len(segments) < 3 or not segments[1]:
        return None
    return segments[1]


def channel_from_topic(topic: str) -> Optional[str]:
    segments = topic.split("/")
    if len(segments) < 3:
        return None
    return segments[-1]
