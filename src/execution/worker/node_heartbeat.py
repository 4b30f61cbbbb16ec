import json
import platform
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Dict, List, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from src.execution.queue.backend_errors import BackendRequestError, BackendUnavailable
from src.infrastructure.supabase.rest_client import SupabaseRestClient

NODE_TAGS = ["physical", "on-premise"]


@dataclass(frozen=True)
class NodeHeartbeat:
    node_id: str
    project_id: str
    status: str
    last_seen_at: str
    tags: List[str] = field(default_factory=lambda: list(NODE_TAGS))
    meta: Dict[str, Any] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return f"Physical Node: {self.node_id}"

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.node_id,
            "project_id": self.project_id,
            "name": self.name,
            "status": self.status,
            "last_seen_at": self.last_seen_at,
            "tags": list(self.tags),
            "meta": dict(self.meta),
        }


def node_meta() -> Dict[str, Any]:
    return {"engine": "python", "os": platform.system().lower(), "python": platform.python_version()}


class NodeHeartbeatStore(ABC):
    @abstractmethod
    def beat(self, heartbeat: NodeHeartbeat) -> None:
        pass


class InMemoryNodeHeartbeatStore(NodeHeartbeatStore):
    def __init__(self):
        self._beats: Dict[str, NodeHeartbeat] = {}
        self._history: List[NodeHeartbeat] = []
        self._lock = Lock()

    def beat(self, heartbeat: NodeHeartbeat) -> None:
        with self._lock:
            self._beats[heartbeat.node_id] = heartbeat
            self._history.append(heartbeat)

    def get(self, node_id: str) -> Optional[NodeHeartbeat]:
        with self._lock:
            return self._beats.get(node_id)

    def history(self) -> List[NodeHeartbeat]:
        with self._lock:
            return list(self._history)


class SqlNodeHeartbeatStore(NodeHeartbeatStore):
    def __init__(self, engine: Engine, create_schema: bool = True):
        self.engine = engine
        if create_schema:
            self.ensure_schema()

    @classmethod
    def from_dsn(cls, dsn: str) -> "SqlNodeHeartbeatStore":
        engine = create_engine(dsn, pool_pre_ping=True, future=True)
        return cls(engine)

    def ensure_schema(self) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                text(
                    """
                    CREATE TABLE IF NOT EXISTS nodes (
                        id TEXT PRIMARY KEY,
                        project_id TEXT NOT NULL,
                        name TEXT NOT NULL,
                        status TEXT NOT NULL,
                        last_seen_at TEXT NOT NULL,
                        tags JSON NULL,
                        meta JSON NULL
                    )
                    """
                )
            )

    def beat(self, heartbeat: NodeHeartbeat) -> None:
        row = heartbeat.to_row()
        row["tags"] = json.dumps(row["tags"])
        row["meta"] = json.dumps(row["meta"], default=str)
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    text(
                        """
                        INSERT INTO nodes(id, project_id, name, status, last_seen_at, tags, meta)
                        VALUES (:id, :project_id, :name, :status, :last_seen_at, :tags, :meta)
                        ON CONFLICT (id)
                        DO UPDATE SET project_id=EXCLUDED.project_id,
                                      name=EXCLUDED.name,
                                      status=EXCLUDED.status,
                                      last_seen_at=EXCLUDED.last_seen_at,
                                      tags=EXCLUDED.tags,
                                      meta=EXCLUDED.meta
                        """
                    ),
                    row,
                )
        except OperationalError as exc:
            raise BackendUnavailable(str(exc)) from exc
        except SQLAlchemyError as exc:
            raise BackendRequestError(500, str(exc)) from exc

    def get(self, node_id: str) -> Optional[Dict[str, Any]]:
        with self.engine.begin() as conn:
            row = conn.execute(text("SELECT * FROM nodes WHERE id = :id"), {"id": node_id}).first()
        return dict(row._mapping) if row else None


class RestNodeHeartbeatStore(NodeHeartbeatStore):
    def __init__(self, client: SupabaseRestClient):
        self.client = client

    def beat(self, heartbeat: NodeHeartbeat) -> None:
        self.client.upsert("nodes", heartbeat.to_row(), on_conflict="id")
