from abc import ABC, abstractmethod
from dataclasses import replace
from threading import Lock
from typing import Any, Dict, List, Optional

from src.execution.domain.command import Command, CommandStatus


CONTROLS_ROW_ID = "global"


class CommandStore(ABC):
    """
    The four backend operations the command pipeline relies on.
    Implementations must make claim() a single-row compare-and-swap.
    """

    @abstractmethod
    def list_queued(self, project_id: str, node_id: str, limit: int) -> List[Command]:
        pass

    @abstractmethod
    def claim(self, command_id: str, started_at: str) -> bool:
        """queued -> running. False when the precondition no longer holds."""
        pass

    @abstractmethod
    def finish(
        self,
        command_id: str,
        status: CommandStatus,
        finished_at: str,
        result: Any = None,
        error: Optional[str] = None,
    ) -> bool:
        """running -> terminal status. False when the row is not running."""
        pass

    @abstractmethod
    def insert_event(self, row: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    def get_controls(self, project_id: str) -> Optional[Dict[str, Any]]:
        pass


class InMemoryCommandStore(CommandStore):
    def __init__(self):
        self._commands: Dict[str, Command] = {}
        self._controls: Dict[str, Dict[str, Any]] = {}
        self._events: List[Dict[str, Any]] = []
        self._lock = Lock()

    def add(self, command: Command) -> None:
        with self._lock:
            self._commands[command.id] = command

    def set_controls(self, project_id: str, **flags: Any) -> None:
        with self._lock:
            row = dict(self._controls.get(project_id, {"id": CONTROLS_ROW_ID, "project_id": project_id}))
            row.update(flags)
            self._controls[project_id] = row

    def get(self, command_id: str) -> Optional[Command]:
        with self._lock:
            return self._commands.get(command_id)

    def events(self) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._events)

    def list_queued(self, project_id: str, node_id: str, limit: int) -> List[Command]:
        with self._lock:
            candidates = [
                cmd
                for cmd in self._commands.values()
                if cmd.project_id == project_id
                and cmd.node_id == node_id
                and cmd.status == CommandStatus.QUEUED
                and not cmd.needs_approval
            ]
        candidates.sort(key=lambda c: c.created_at)
        return candidates[:limit]

    def claim(self, command_id: str, started_at: str) -> bool:
        with self._lock:
            cmd = self._commands.get(command_id)
            if not cmd or cmd.status != CommandStatus.QUEUED:
                return False
            self._commands[command_id] = replace(cmd, status=CommandStatus.RUNNING, started_at=started_at)
            return True

    def finish(
        self,
        command_id: str,
        status: CommandStatus,
        finished_at: str,
        result: Any = None,
        error: Optional[str] = None,
    ) -> bool:
        if not status.terminal:
            raise ValueError(f"{status.value} is not a terminal status")
        with self._lock:
            cmd = self._commands.get(command_id)
            if not cmd or cmd.status != CommandStatus.RUNNING:
                return False
            self._commands[command_id] = replace(
                cmd,
                status=status,
                finished_at=finished_at,
                result=result,
                error=error,
            )
            return True

    def insert_event(self, row: Dict[str, Any]) -> None:
        with self._lock:
            self._events.append(dict(row))

    def get_controls(self, project_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._controls.get(project_id)
            return dict(row) if row else None
