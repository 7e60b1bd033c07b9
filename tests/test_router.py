"""Tests for inbound message routing."""

import json

import pytest

from fieldlink.acknowledgments import AcknowledgmentMatcher
from fieldlink.alarms import RuleStore, ThresholdEvaluator
from fieldlink.commands import CommandDispatcher
from fieldlink.core import AlarmRule, CommandRegistry, CommandStatus, LivenessState, ThresholdRule
from fieldlink.events import EventBus, EventName
from fieldlink.liveness import LivenessMonitor
from fieldlink.router import InboundRouter


class FakeMQTT:
    def __init__(self) -> None:
        self.published: list[tuple[str, bytes]] = []

    def publish(
        self, topic: str, payload: bytes, qos: int = 1, retain: bool = False
    ) -> None:
        self.published.append((topic, payload))


@pytest.fixture
def routed():
    bus = EventBus()
    events: list = []
    bus.subscribe(events.append)
    registry = CommandRegistry()
    mqtt = FakeMQTT()
    dispatcher = CommandDispatcher(registry, mqtt, bus)
    matcher = AcknowledgmentMatcher(registry, dispatcher, bus)
    rules = RuleStore(
        [
            AlarmRule(
                alarm_id="A1",
                name="Output voltage",
                device_id="D1",
                rules=(ThresholdRule("D1", "DCV", upper_bound=100, lower_bound=0),),
            )
        ]
    )
    evaluator = ThresholdEvaluator(rules, bus)
    liveness = LivenessMonitor(bus)
    router = InboundRouter(
        data_topic="devices/+/data",
        response_topic="devices/+/commands",
        liveness=liveness,
        evaluator=evaluator,
        matcher=matcher,
    )
    return router, dispatcher, registry, liveness, mqtt, events


def _payload(document) -> bytes:
    return json.dumps(document).encode("utf-8")


def _names(events):
    return [event.name for event in events]


@pytest.mark.asyncio
async def test_telemetry_refreshes_liveness_and_evaluates(routed):
    router, _, _, liveness, _, events = routed

    await router.handle_message(
        "devices/D1/data", _payload({"Parameters": {"DCV": 150}})
    )

    assert liveness.get("D1").state is LivenessState.ONLINE
    assert _names(events) == [
        EventName.DEVICE_STATUS_CHANGED,
        EventName.ALARM_TRIGGERED,
    ]
    assert events[-1].reason == "DCV (150) above upper bound 100"


@pytest.mark.asyncio
async def test_abnormal_event_code_in_telemetry_triggers(routed):
    router, _, _, _, _, events = routed

    await router.handle_message(
        "devices/D1/data", _payload({"Parameters": {"DCV": 50, "Event": "TAMPER"}})
    )

    assert events[-1].name is EventName.ALARM_TRIGGERED
    assert "TAMPER" in events[-1].reason


@pytest.mark.asyncio
async def test_response_finalizes_pending_command(routed):
    router, dispatcher, registry, liveness, _, events = routed
    command_id = await dispatcher.dispatch("D1", "ping")

    await router.handle_message(
        "devices/D1/commands", _payload({"CommandId": command_id, "status": "OK"})
    )

    assert registry.get_status(command_id).status is CommandStatus.SUCCESS
    assert liveness.get("D1").state is LivenessState.ONLINE
    assert EventName.COMMAND_ACKNOWLEDGED in _names(events)


@pytest.mark.asyncio
async def test_own_command_echo_is_dropped(routed):
    router, dispatcher, registry, liveness, mqtt, events = routed
    command_id = await dispatcher.dispatch("D1", "ping")
    topic, payload = mqtt.published[0]

    await router.handle_message(topic, payload)

    assert registry.get_active(command_id) is not None
    assert liveness.get("D1") is None
    dispatcher.cancel_timeout(command_id)


@pytest.mark.asyncio
async def test_undecodable_payload_is_dropped(routed, caplog):
    router, _, _, liveness, _, events = routed

    await router.handle_message("devices/D1/data", b"\x00garbage")

    assert events == []
    assert liveness.get("D1") is None
    assert "Dropping message on devices/D1/data" in caplog.text


@pytest.mark.asyncio
async def test_unrouted_topic_is_ignored(routed):
    router, _, _, liveness, _, events = routed

    await router.handle_message("devices/D1/logs", _payload({"line": "boot"}))

    assert events == []
    assert liveness.snapshot() == {}


@pytest.mark.asyncio
async def test_device_id_falls_back_to_document(routed):
    router, _, _, liveness, _, _ = routed
    router._data_topic = "telemetry"

    await router.handle_message("telemetry", _payload({"Device ID": "D5", "DCV": 1}))

    assert liveness.get("D5").state is LivenessState.ONLINE
