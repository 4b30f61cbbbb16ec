import logging

from src.execution.domain.command import Controls
from src.execution.domain.exceptions import GovernanceBlocked
from src.execution.queue.backend_errors import BackendError
from src.execution.queue.command_store import CommandStore

logger = logging.getLogger(__name__)


CAPABILITY_FLAGS = ("allow_shell", "allow_write")


class GovernanceGate:
    """
    Reads the per-project controls row and answers two questions:
    may new work be dequeued, and is a given capability enabled.

    A missing row means: kill switch off, every capability off.
    An unreadable row means: kill switch on, every capability off.
    """

    def __init__(self, store: CommandStore):
        self.store = store

    def read_controls(self, project_id: str) -> Controls:
        try:
            row = self.store.get_controls(project_id)
        except BackendError as exc:
            logger.warning(f"Controls for project {project_id} unreadable, failing closed: {exc}")
            return Controls(project_id=project_id, kill_switch=True, source="fallback")
        if row is None:
            return Controls(project_id=project_id, source="missing")
        return Controls.from_row(project_id, row)

    @staticmethod
    def admit_dequeue(controls: Controls) -> bool:
        return not controls.kill_switch

    @staticmethod
    def require_dispatch(controls: Controls) -> None:
        if controls.kill_switch:
            raise GovernanceBlocked("Kill switch active; command not dispatched", {"source": controls.source})

    @staticmethod
    def require_capability(controls: Controls, flag: str) -> None:
        if flag not in CAPABILITY_FLAGS:
            raise ValueError(f"Unknown capability flag: {flag}")
        if not getattr(controls, flag):
            raise GovernanceBlocked(f"Capability {flag} is disabled", {"flag": flag, "source": controls.source})
