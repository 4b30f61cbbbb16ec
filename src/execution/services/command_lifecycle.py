import logging
import time
from typing import Any, Callable, Dict, List, Optional

from src.core.time.time_source import SystemTimeSource, TimeSource
from src.execution.domain.command import AgentEvent, Command, CommandStatus, EventLevel
from src.execution.domain.exceptions import CommandError
from src.execution.queue.backend_errors import BackendUnavailable
from src.execution.queue.command_store import CommandStore
from src.execution.retry.retry_scheduler import RetryPolicy, RetryScheduler

logger = logging.getLogger(__name__)


EVENT_TYPES = {
    CommandStatus.RUNNING: "command.started",
    CommandStatus.DONE: "command.done",
    CommandStatus.FAILED: "command.failed",
    CommandStatus.CANCELLED: "command.cancelled",
}


class CommandLifecycleManager:
    """
    Drives queued -> running -> {done, failed, cancelled} and writes one
    audit event per transition. It is the only writer of command rows.

    Events are best-effort: a failed insert is logged and never undoes
    or blocks the state change it describes.
    """

    def __init__(
        self,
        store: CommandStore,
        project_id: str,
        node_id: str,
        time_source: Optional[TimeSource] = None,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.project_id = project_id
        self.node_id = node_id
        self.time_source = time_source or SystemTimeSource()
        self.retry_scheduler = RetryScheduler(retry_policy or RetryPolicy())
        self._sleep = sleep

    def list_eligible(self, project_id: str, node_id: str, limit: int) -> List[Command]:
        return self.store.list_queued(project_id, node_id, limit)

    def claim(self, command: Command) -> bool:
        started_at = self.time_source.iso_now()
        if not self.store.claim(command.id, started_at):
            logger.debug(f"Command {command.id} already claimed by another worker")
            return False
        self._emit(
            CommandStatus.RUNNING,
            EventLevel.INFO,
            f"Command {command.command} started",
            {"command_id": command.id, "command": command.command},
        )
        return True

    def finish_ok(self, command_id: str, result: Any, data: Optional[Dict[str, Any]] = None) -> bool:
        return self._finish(
            command_id,
            CommandStatus.DONE,
            EventLevel.INFO,
            "Command completed",
            data,
            result=result,
        )

    def finish_fail(
        self,
        command_id: str,
        message: str,
        level: EventLevel = EventLevel.ERROR,
        data: Optional[Dict[str, Any]] = None,
    ) -> bool:
        return self._finish(command_id, CommandStatus.FAILED, level, message, data, error=message)

    def cancel(
        self,
        command_id: str,
        reason: str,
        level: EventLevel = EventLevel.WARN,
        data: Optional[Dict[str, Any]] = None,
    ) -> bool:
        return self._finish(command_id, CommandStatus.CANCELLED, level, reason, data, error=reason)

    def finish_error(self, command: Command, error: CommandError) -> bool:
        data = {"command": command.command, "error_code": error.code}
        if error.security:
            data["security"] = True
        data.update(error.details)
        if error.terminal_status == CommandStatus.CANCELLED:
            return self.cancel(command.id, error.message, level=error.level, data=data)
        return self.finish_fail(command.id, error.message, level=error.level, data=data)

    def _finish(
        self,
        command_id: str,
        status: CommandStatus,
        level: EventLevel,
        message: str,
        data: Optional[Dict[str, Any]],
        result: Any = None,
        error: Optional[str] = None,
    ) -> bool:
        attempt = 0
        while True:
            attempt += 1
            try:
                changed = self.store.finish(
                    command_id,
                    status,
                    finished_at=self.time_source.iso_now(),
                    result=result,
                    error=error,
                )
                break
            except BackendUnavailable as exc:
                # Rejections (BackendRequestError) are not transient and propagate at once.
                if not self.retry_scheduler.should_retry(attempt):
                    logger.error(f"Giving up moving command {command_id} to {status.value}: {exc}")
                    raise
                delay = self.retry_scheduler.delay_seconds(attempt)
                logger.warning(
                    f"Moving command {command_id} to {status.value} failed (attempt {attempt}), "
                    f"retrying in {delay:.2f}s: {exc}"
                )
                self._sleep(delay)

        if not changed:
            logger.warning(f"Command {command_id} was not running; {status.value} not recorded")
            return False

        event_data = {"command_id": command_id}
        event_data.update(data or {})
        self._emit(status, level, message, event_data)
        return True

    def _emit(self, status: CommandStatus, level: EventLevel, message: str, data: Dict[str, Any]) -> None:
        event = AgentEvent(
            project_id=self.project_id,
            node_id=self.node_id,
            level=level,
            type=EVENT_TYPES[status],
            message=message,
            data=data,
        )
        try:
            self.store.insert_event(event.to_row(self.time_source.iso_now()))
        except Exception as exc:
            logger.warning(f"Event {event.type} for command {data.get('command_id')} not recorded: {exc}")
