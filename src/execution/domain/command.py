import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional


class CommandStatus(Enum):
    QUEUED = "queued"
    NEEDS_APPROVAL = "needs_approval"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (CommandStatus.DONE, CommandStatus.FAILED, CommandStatus.CANCELLED)


class CommandKind(Enum):
    """
    Closed command vocabulary. Anything not listed here is rejected.
    """

    PING = "ping"
    STATUS = "status"
    READ_DIR = "read_dir"
    READ_FILE_HEAD = "read_file_head"
    FS_WRITE = "fs.write"
    SHELL_EXEC = "shell.exec"


class EventLevel(Enum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


def _load_json(value: Any) -> Any:
    # SQL drivers without a native JSON type hand back text.
    if isinstance(value, (str, bytes)):
        try:
            return json.loads(value)
        except ValueError:
            return value
    return value


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)


@dataclass(frozen=True)
class Command:
    id: str
    project_id: str
    node_id: str
    command: str
    payload: Any
    created_at: str
    status: CommandStatus = CommandStatus.QUEUED
    signature: Optional[str] = None
    needs_approval: bool = False
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    result: Any = None
    error: Optional[str] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Command":
        return cls(
            id=str(row["id"]),
            project_id=str(row["project_id"]),
            node_id=str(row["node_id"]),
            command=str(row["command"]),
            payload=_load_json(row.get("payload")),
            created_at=str(row["created_at"]),
            status=CommandStatus(row.get("status") or CommandStatus.QUEUED.value),
            signature=row.get("signature"),
            needs_approval=bool(row.get("needs_approval") or False),
            started_at=_text(row.get("started_at") or row.get("executed_at")),
            finished_at=_text(row.get("finished_at")),
            result=_load_json(row.get("result")),
            error=row.get("error"),
        )

    def envelope(self) -> "CommandEnvelope":
        return CommandEnvelope(
            id=self.id,
            project_id=self.project_id,
            node_id=self.node_id,
            command=self.command,
            payload=self.payload,
            created_at=self.created_at,
        )


@dataclass(frozen=True)
class CommandEnvelope:
    """
    The exact tuple of command fields covered by the signature.
    """

    id: str
    project_id: str
    node_id: str
    command: str
    payload: Any
    created_at: str


@dataclass(frozen=True)
class Controls:
    project_id: str
    kill_switch: bool = False
    allow_shell: bool = False
    allow_write: bool = False
    source: str = "backend"

    @classmethod
    def from_row(cls, project_id: str, row: Mapping[str, Any]) -> "Controls":
        return cls(
            project_id=project_id,
            kill_switch=row.get("kill_switch") is True,
            allow_shell=row.get("allow_shell") is True,
            allow_write=row.get("allow_write") is True or row.get("allow_fs") is True,
            source="backend",
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "kill_switch": self.kill_switch,
            "allow_shell": self.allow_shell,
            "allow_write": self.allow_write,
            "source": self.source,
        }


@dataclass(frozen=True)
class AgentEvent:
    project_id: str
    node_id: str
    level: EventLevel
    type: str
    message: str
    data: Dict[str, Any] = field(default_factory=dict)

    def to_row(self, created_at: str) -> Dict[str, Any]:
        return {
            "project_id": self.project_id,
            "node_id": self.node_id,
            "level": self.level.value,
            "type": self.type,
            "message": self.message,
            "data": dict(self.data),
            "created_at": created_at,
        }
