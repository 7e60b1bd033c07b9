"""In-memory registry of in-flight and recently completed commands.

The registry is the single owner of command state. A command enters the
active table when it is dispatched and leaves it exactly once, through
:meth:`CommandRegistry.finalize`, when it reaches a terminal status. Completed
commands are kept in a bounded history so status queries keep working for a
while after the device answered (or failed to).

Design decisions:
- Removal from the active table is the check-and-set. Whichever caller pops
  the entry first applies the terminal status; every later caller gets
  ``None`` back and must treat that as "already decided".
- The lock only guards the table operation itself, so commands for unrelated
  devices never wait behind each other.
- History is a ``deque`` ring buffer, newest entry first.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional

from .models import Command, CommandStatus, DeviceResponse

LOGGER = logging.getLogger(__name__)


class DuplicateCommandError(RuntimeError):
    """Raised when a command id is registered twice."""


@dataclass(frozen=True)
class CommandStatistics:
    total: int
    pending: int
    success: int
    failed: int
    timeout: int
    avg_response_time_ms: int
    success_rate: int

    def as_dict(self) -> Dict[str, int]:
        return {
            "total": self.total,
            "pending": self.pending,
            "success": self.success,
            "failed": self.failed,
            "timeout": self.timeout,
            "avgResponseTimeMs": self.avg_response_time_ms,
            "successRate": self.success_rate,
        }


class CommandRegistry:
    """Authoritative store for command records keyed by correlation id.

    Usage:
        registry = CommandRegistry(history_size=100)
        registry.register(command)

        # From the acknowledgment path or the timeout path:
        finished = registry.finalize(command.command_id, CommandStatus.SUCCESS)
        if finished is None:
            # Someone else already decided this command.
            return
    """

    DEFAULT_HISTORY_SIZE = 100

    def __init__(
        self,
        *,
        history_size: int = DEFAULT_HISTORY_SIZE,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if history_size < 1:
            raise ValueError("history_size must be at least 1")
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._active: Dict[str, Command] = {}
        self._history: Deque[Command] = deque(maxlen=history_size)
        self._lock = threading.Lock()

    def register(self, command: Command) -> None:
        if command.status is not CommandStatus.PENDING:
            raise ValueError("Only pending commands can be registered")

        with self._lock:
            if command.command_id in self._active:
                raise DuplicateCommandError(
                    f"Command {command.command_id} is already registered"
                )
            self._active[command.command_id] = command

        LOGGER.debug(
            "Registered command %s (%s -> %s)",
            command.command_id[:8],
            command.command_type,
            command.device_id,
        )

    def finalize(
        self,
        command_id: str,
        status: CommandStatus,
        *,
        device_response: Optional[DeviceResponse] = None,
        failure_reason: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> Optional[Command]:
        """Move a pending command to a terminal status.

        Returns the finalized command, or ``None`` when the command is unknown
        or another path already finalized it.
        """
        if not status.is_terminal:
            raise ValueError("finalize requires a terminal status")

        with self._lock:
            command = self._active.pop(command_id, None)
            if command is None:
                return None
            command.status = status
            command.acknowledged_at = at or self._clock()
            command.device_response = device_response
            command.failure_reason = failure_reason
            self._history.appendleft(command)

        LOGGER.debug(
            "Command %s finalized as %s", command_id[:8], status.value
        )
        return command

    def get_active(self, command_id: str) -> Optional[Command]:
        return self._active.get(command_id)

    def get_status(self, command_id: str) -> Optional[Command]:
        """Return the command from the active table or, failing that, history."""
        command = self._active.get(command_id)
        if command is not None:
            return command
        for entry in list(self._history):
            if entry.command_id == command_id:
                return entry
        return None

    def pending_commands(self, device_id: Optional[str] = None) -> List[Command]:
        commands = list(self._active.values())
        if device_id is None:
            return commands
        return [command for command in commands if command.device_id == device_id]

    def device_commands(
        self, device_id: str, status: Optional[CommandStatus] = None
    ) -> List[Command]:
        """All known commands for a device, newest first."""
        commands = [
            command
            for command in self._all_commands()
            if command.device_id == device_id
            and (status is None or command.status is status)
        ]
        return sorted(commands, key=lambda item: item.sent_at, reverse=True)

    def statistics(
        self, device_id: str, since: Optional[datetime] = None
    ) -> CommandStatistics:
        commands = [
            command
            for command in self._all_commands()
            if command.device_id == device_id
            and (since is None or command.sent_at >= since)
        ]

        counts: Dict[CommandStatus, int] = {status: 0 for status in CommandStatus}
        for command in commands:
            counts[command.status] += 1

        # Timeouts carry an acknowledged_at too; only real answers count here.
        response_times = [
            command.response_time_ms
            for command in commands
            if command.status in (CommandStatus.SUCCESS, CommandStatus.FAILED)
            and command.response_time_ms
            and command.response_time_ms > 0
        ]
        avg_response = (
            int(round(sum(response_times) / len(response_times)))
            if response_times
            else 0
        )
        total = len(commands)
        success_rate = (
            int(round(counts[CommandStatus.SUCCESS] / total * 100)) if total else 0
        )

        return CommandStatistics(
            total=total,
            pending=counts[CommandStatus.PENDING],
            success=counts[CommandStatus.SUCCESS],
            failed=counts[CommandStatus.FAILED],
            timeout=counts[CommandStatus.TIMEOUT],
            avg_response_time_ms=avg_response,
            success_rate=success_rate,
        )

    @property
    def pending_count(self) -> int:
        return len(self._active)

    @property
    def history(self) -> List[Command]:
        return list(self._history)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "pending": [command.as_dict() for command in self._active.values()],
            "history": [command.as_dict() for command in self._history],
        }

    def _all_commands(self) -> List[Command]:
        return [*self._active.values(), *self._history]
