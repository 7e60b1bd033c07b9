"""Tests for the command registry."""

from datetime import datetime, timedelta, timezone

import pytest

from fieldlink.core import (
    Command,
    CommandRegistry,
    CommandStatus,
    DeviceResponse,
    DuplicateCommandError,
)

BASE = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _command(command_id: str, device_id: str = "D1", *, offset: int = 0) -> Command:
    return Command(
        command_id=command_id,
        device_id=device_id,
        command_type="setOutput",
        payload={"voltage": 12},
        sent_at=BASE + timedelta(seconds=offset),
        timeout_ms=30_000,
    )


def test_register_and_finalize_moves_command_to_history():
    registry = CommandRegistry(clock=lambda: BASE + timedelta(seconds=2))
    registry.register(_command("c1"))

    assert registry.pending_count == 1
    assert registry.get_active("c1") is not None

    finished = registry.finalize(
        "c1",
        CommandStatus.SUCCESS,
        device_response=DeviceResponse(status="SUCCESS", message="done"),
    )

    assert finished is not None
    assert finished.status is CommandStatus.SUCCESS
    assert finished.response_time_ms == 2000
    assert registry.pending_count == 0
    assert registry.get_active("c1") is None
    assert registry.get_status("c1") is finished
    assert registry.history == [finished]


def test_second_finalize_is_a_no_op():
    registry = CommandRegistry()
    registry.register(_command("c1"))

    first = registry.finalize("c1", CommandStatus.TIMEOUT)
    second = registry.finalize("c1", CommandStatus.SUCCESS)

    assert first is not None
    assert second is None
    assert registry.get_status("c1").status is CommandStatus.TIMEOUT
    assert len(registry.history) == 1


def test_finalize_unknown_command_returns_none():
    registry = CommandRegistry()

    assert registry.finalize("missing", CommandStatus.FAILED) is None


def test_finalize_rejects_pending_status():
    registry = CommandRegistry()
    registry.register(_command("c1"))

    with pytest.raises(ValueError):
        registry.finalize("c1", CommandStatus.PENDING)


def test_duplicate_registration_is_rejected():
    registry = CommandRegistry()
    registry.register(_command("c1"))

    with pytest.raises(DuplicateCommandError):
        registry.register(_command("c1"))


def test_history_is_bounded_newest_first():
    registry = CommandRegistry(history_size=2)
    for index in range(3):
        registry.register(_command(f"c{index}", offset=index))
        registry.finalize(f"c{index}", CommandStatus.SUCCESS)

    assert [command.command_id for command in registry.history] == ["c2", "c1"]
    assert registry.get_status("c0") is None


def test_pending_and_device_queries():
    registry = CommandRegistry()
    registry.register(_command("a", "D1", offset=0))
    registry.register(_command("b", "D2", offset=1))
    registry.register(_command("c", "D1", offset=2))
    registry.finalize("a", CommandStatus.FAILED, failure_reason="rejected")

    assert [c.command_id for c in registry.pending_commands("D1")] == ["c"]
    assert len(registry.pending_commands()) == 2
    assert [c.command_id for c in registry.device_commands("D1")] == ["c", "a"]
    assert [
        c.command_id for c in registry.device_commands("D1", CommandStatus.FAILED)
    ] == ["a"]


def test_statistics_ignore_timeouts_for_response_time():
    now = [BASE]
    registry = CommandRegistry(clock=lambda: now[0])

    for command_id in ("ok1", "ok2", "bad", "late", "open"):
        registry.register(_command(command_id))

    now[0] = BASE + timedelta(milliseconds=1000)
    registry.finalize("ok1", CommandStatus.SUCCESS)
    now[0] = BASE + timedelta(milliseconds=3000)
    registry.finalize("ok2", CommandStatus.SUCCESS)
    now[0] = BASE + timedelta(milliseconds=2000)
    registry.finalize("bad", CommandStatus.FAILED)
    now[0] = BASE + timedelta(milliseconds=30_000)
    registry.finalize("late", CommandStatus.TIMEOUT)

    stats = registry.statistics("D1")

    assert stats.total == 5
    assert stats.pending == 1
    assert stats.success == 2
    assert stats.failed == 1
    assert stats.timeout == 1
    assert stats.avg_response_time_ms == 2000
    assert stats.success_rate == 40
    assert stats.as_dict()["avgResponseTimeMs"] == 2000


def test_statistics_for_unknown_device_are_zero():
    registry = CommandRegistry()

    stats = registry.statistics("nobody")

    assert stats.total == 0
    assert stats.success_rate == 0
    assert stats.avg_response_time_ms == 0


def test_statistics_respect_since():
    registry = CommandRegistry()
    registry.register(_command("old", offset=0))
    registry.register(_command("new", offset=60))

    stats = registry.statistics("D1", since=BASE + timedelta(seconds=30))

    assert stats.total == 1
