from typing import Any, Dict, List, Optional

from src.execution.domain.command import Command, CommandStatus
from src.execution.queue.command_store import CONTROLS_ROW_ID, CommandStore
from src.infrastructure.supabase.rest_client import SupabaseRestClient, eq


class RestCommandStore(CommandStore):
    """
    Command queue on Supabase tables through PostgREST.
    A conditional PATCH that returns no rows means the claim was lost.
    """

    def __init__(self, client: SupabaseRestClient):
        self.client = client

    def list_queued(self, project_id: str, node_id: str, limit: int) -> List[Command]:
        rows = self.client.select(
            "commands",
            {
                "select": "*",
                "project_id": eq(project_id),
                "node_id": eq(node_id),
                "status": eq(CommandStatus.QUEUED.value),
                "needs_approval": eq(False),
                "order": "created_at.asc",
                "limit": str(limit),
            },
        )
        return [Command.from_row(row) for row in rows]

    def claim(self, command_id: str, started_at: str) -> bool:
        updated = self.client.update(
            "commands",
            {"id": eq(command_id), "status": eq(CommandStatus.QUEUED.value)},
            {"status": CommandStatus.RUNNING.value, "started_at": started_at},
        )
        return len(updated) > 0

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
        updated = self.client.update(
            "commands",
            {"id": eq(command_id), "status": eq(CommandStatus.RUNNING.value)},
            {
                "status": status.value,
                "result": result,
                "error": error,
                "finished_at": finished_at,
            },
        )
        return len(updated) > 0

    def insert_event(self, row: Dict[str, Any]) -> None:
        self.client.insert("events", row)

    def get_controls(self, project_id: str) -> Optional[Dict[str, Any]]:
        rows = self.client.select(
            "controls",
            {
                "select": "*",
                "project_id": eq(project_id),
                "id": eq(CONTROLS_ROW_ID),
                "limit": "1",
            },
        )
        return rows[0] if rows else None
