import json
from contextlib import contextmanager
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from src.execution.domain.command import Command, CommandStatus
from src.execution.queue.backend_errors import BackendRequestError, BackendUnavailable
from src.execution.queue.command_store import CONTROLS_ROW_ID, CommandStore


def _json_param(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, default=str)


def _flag(value: Any) -> Any:
    # SQLite hands booleans back as 0/1.
    if value is None or isinstance(value, bool):
        return value
    return bool(value)


class SqlCommandStore(CommandStore):
    """
    Command queue on a SQL database through SQLAlchemy.
    The claim is one conditional UPDATE; its rowcount decides the winner.
    """

    def __init__(self, engine: Engine, create_schema: bool = True):
        self.engine = engine
        if create_schema:
            self.ensure_schema()

    @classmethod
    def from_dsn(cls, dsn: str, create_schema: bool = True) -> "SqlCommandStore":
        engine = create_engine(dsn, pool_pre_ping=True, future=True)
        return cls(engine, create_schema=create_schema)

    def ensure_schema(self) -> None:
        with self._begin() as conn:
            conn.execute(
                text(
                    """
                    CREATE TABLE IF NOT EXISTS commands (
                        id TEXT PRIMARY KEY,
                        project_id TEXT NOT NULL,
                        node_id TEXT NOT NULL,
                        command TEXT NOT NULL,
                        payload JSON NULL,
                        status TEXT NOT NULL DEFAULT 'queued',
                        needs_approval BOOLEAN NOT NULL DEFAULT FALSE,
                        signature TEXT NULL,
                        created_at TEXT NOT NULL,
                        started_at TEXT NULL,
                        finished_at TEXT NULL,
                        result JSON NULL,
                        error TEXT NULL
                    )
                    """
                )
            )
            conn.execute(
                text(
                    """
                    CREATE INDEX IF NOT EXISTS ix_commands_queue_scan
                    ON commands (project_id, node_id, status, created_at)
                    """
                )
            )
            conn.execute(
                text(
                    """
                    CREATE TABLE IF NOT EXISTS controls (
                        id TEXT NOT NULL,
                        project_id TEXT NOT NULL,
                        kill_switch BOOLEAN NOT NULL DEFAULT FALSE,
                        allow_shell BOOLEAN NOT NULL DEFAULT FALSE,
                        allow_write BOOLEAN NOT NULL DEFAULT FALSE,
                        allow_fs BOOLEAN NULL,
                        PRIMARY KEY (project_id, id)
                    )
                    """
                )
            )
            conn.execute(
                text(
                    """
                    CREATE TABLE IF NOT EXISTS events (
                        id TEXT PRIMARY KEY,
                        project_id TEXT NOT NULL,
                        node_id TEXT NULL,
                        level TEXT NOT NULL,
                        type TEXT NOT NULL,
                        message TEXT NOT NULL,
                        data JSON NULL,
                        created_at TEXT NOT NULL
                    )
                    """
                )
            )

    def list_queued(self, project_id: str, node_id: str, limit: int) -> List[Command]:
        with self._begin() as conn:
            rows = conn.execute(
                text(
                    """
                    SELECT *
                    FROM commands
                    WHERE project_id = :project_id
                      AND node_id = :node_id
                      AND status = 'queued'
                      AND needs_approval = :needs_approval
                    ORDER BY created_at ASC
                    LIMIT :limit
                    """
                ),
                {"project_id": project_id, "node_id": node_id, "needs_approval": False, "limit": limit},
            ).fetchall()
            return [Command.from_row(dict(row._mapping)) for row in rows]

    def claim(self, command_id: str, started_at: str) -> bool:
        with self._begin() as conn:
            count = conn.execute(
                text(
                    """
                    UPDATE commands
                    SET status = 'running', started_at = :started_at
                    WHERE id = :id AND status = 'queued'
                    """
                ),
                {"id": command_id, "started_at": started_at},
            ).rowcount
            return bool(count)

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
        with self._begin() as conn:
            count = conn.execute(
                text(
                    """
                    UPDATE commands
                    SET status = :status,
                        result = :result,
                        error = :error,
                        finished_at = :finished_at
                    WHERE id = :id AND status = 'running'
                    """
                ),
                {
                    "id": command_id,
                    "status": status.value,
                    "result": _json_param(result),
                    "error": error,
                    "finished_at": finished_at,
                },
            ).rowcount
            return bool(count)

    def insert_event(self, row: Dict[str, Any]) -> None:
        with self._begin() as conn:
            conn.execute(
                text(
                    """
                    INSERT INTO events (id, project_id, node_id, level, type, message, data, created_at)
                    VALUES (:id, :project_id, :node_id, :level, :type, :message, :data, :created_at)
                    """
                ),
                {
                    "id": str(row.get("id") or uuid4()),
                    "project_id": row["project_id"],
                    "node_id": row.get("node_id"),
                    "level": row["level"],
                    "type": row["type"],
                    "message": row["message"],
                    "data": _json_param(row.get("data") or {}),
                    "created_at": row["created_at"],
                },
            )

    def get_controls(self, project_id: str) -> Optional[Dict[str, Any]]:
        with self._begin() as conn:
            row = conn.execute(
                text(
                    """
                    SELECT kill_switch, allow_shell, allow_write, allow_fs
                    FROM controls
                    WHERE project_id = :project_id AND id = :id
                    LIMIT 1
                    """
                ),
                {"project_id": project_id, "id": CONTROLS_ROW_ID},
            ).first()
            if not row:
                return None
            return {key: _flag(value) for key, value in row._mapping.items()}

    @contextmanager
    def _begin(self):
        try:
            with self.engine.begin() as conn:
                yield conn
        except OperationalError as exc:
            raise BackendUnavailable(str(exc)) from exc
        except SQLAlchemyError as exc:
            raise BackendRequestError(500, str(exc)) from exc
