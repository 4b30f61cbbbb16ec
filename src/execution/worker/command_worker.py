import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional

from src.config.agent_config import AgentConfig
from src.core.time.time_source import SystemTimeSource, TimeSource
from src.execution.domain.command import Command
from src.execution.domain.exceptions import CommandError, ExecutionFailed, SignatureInvalid
from src.execution.governance.governance_gate import GovernanceGate
from src.execution.logging.structured_runtime_logger import StructuredRuntimeLogger
from src.execution.queue.backend_errors import BackendError, BackendRequestError
from src.execution.queue.command_store import CommandStore
from src.execution.sandbox.sandbox_executor import SandboxExecutor
from src.execution.security.command_signature import CommandSignatureVerifier
from src.execution.services.command_lifecycle import CommandLifecycleManager
from src.execution.worker.node_heartbeat import NodeHeartbeat, NodeHeartbeatStore, node_meta

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkerStatus:
    node_id: str
    project_id: str
    last_poll_at: Optional[str]
    last_poll_ok: Optional[bool]
    processed_total: int

    def as_dict(self) -> Dict[str, Any]:
        return {
            "node_id": self.node_id,
            "project_id": self.project_id,
            "last_poll_at": self.last_poll_at,
            "last_poll_ok": self.last_poll_ok,
            "processed_total": self.processed_total,
        }


class CommandWorker:
    """
    Poll loop: gate -> list -> (claim -> verify -> gate -> execute -> record)
    for each row, strictly one command at a time.

    Backend failures end the current poll and are retried on the next one;
    they never stop the loop.
    """

    def __init__(
        self,
        config: AgentConfig,
        store: CommandStore,
        executor: SandboxExecutor,
        lifecycle: Optional[CommandLifecycleManager] = None,
        gate: Optional[GovernanceGate] = None,
        verifier: Optional[CommandSignatureVerifier] = None,
        heartbeat_store: Optional[NodeHeartbeatStore] = None,
        time_source: Optional[TimeSource] = None,
        structured_logger: Optional[StructuredRuntimeLogger] = None,
    ):
        self.config = config
        self.store = store
        self.executor = executor
        self.time_source = time_source or SystemTimeSource()
        self.lifecycle = lifecycle or CommandLifecycleManager(
            store, config.project_id, config.node_id, time_source=self.time_source
        )
        self.gate = gate or GovernanceGate(store)
        self.verifier = verifier or CommandSignatureVerifier(config.signing_secret)
        self.heartbeat_store = heartbeat_store
        self.structured_logger = structured_logger or StructuredRuntimeLogger(node_id=config.node_id)

        self._stop_event = threading.Event()
        self._status_lock = threading.Lock()
        self._last_poll_at: Optional[str] = None
        self._last_poll_ok: Optional[bool] = None
        self._processed_total = 0
        self._last_beat_at = None

    def run_forever(self) -> None:
        logger.info(
            f"Worker {self.config.node_id} polling project {self.config.project_id} "
            f"every {self.config.poll_interval_seconds}s"
        )
        self.beat("online", force=True)
        try:
            while not self._stop_event.is_set():
                self.run_once()
                self._stop_event.wait(self.config.poll_interval_seconds)
        finally:
            self.beat("offline", force=True)
            logger.info(f"Worker {self.config.node_id} stopped")

    def stop(self) -> None:
        self._stop_event.set()

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    def run_once(self) -> int:
        if self._stop_event.is_set():
            return 0
        self.beat("online")

        processed = 0
        ok = True
        try:
            processed = self._poll()
        except BackendError as exc:
            ok = False
            logger.warning(f"Poll failed, retrying next interval: {exc}")
            self._log("POLL_ERROR", error=str(exc), error_type=type(exc).__name__)
        except Exception as exc:
            ok = False
            logger.exception("Unexpected error during poll")
            self._log("POLL_ERROR", error=str(exc), error_type=type(exc).__name__)

        with self._status_lock:
            self._last_poll_at = self.time_source.iso_now()
            self._last_poll_ok = ok
            self._processed_total += processed
        return processed

    def _poll(self) -> int:
        controls = self.gate.read_controls(self.config.project_id)
        if not self.gate.admit_dequeue(controls):
            self._log("KILL_SWITCH_ACTIVE", project_id=self.config.project_id, source=controls.source)
            return 0

        commands = self.lifecycle.list_eligible(
            self.config.project_id,
            self.config.node_id,
            self.config.batch_size,
        )
        processed = 0
        for index, command in enumerate(commands):
            if self._stop_event.is_set():
                break
            if index > 0:
                # The switch may have flipped while the previous command ran.
                controls = self.gate.read_controls(self.config.project_id)
                if not self.gate.admit_dequeue(controls):
                    self._log("KILL_SWITCH_ACTIVE", project_id=self.config.project_id, source=controls.source)
                    break
            if self.process(command):
                processed += 1
        return processed

    def process(self, command: Command) -> bool:
        """
        Handle one listed row end to end. Returns False when another
        worker won the claim.
        """
        if not self.lifecycle.claim(command):
            return False
        self._log("COMMAND_CLAIMED", command_id=command.id, command=command.command)

        try:
            result = self._dispatch(command)
        except CommandError as error:
            self._record_error(command, error)
            return True
        except Exception as exc:
            logger.exception(f"Unexpected failure while dispatching command {command.id}")
            self._record_error(command, ExecutionFailed(f"Internal error: {exc}"))
            return True

        try:
            self.lifecycle.finish_ok(command.id, result)
        except BackendRequestError as exc:
            self._fail_rejected(command, "Result", exc)
            return True
        self._log("COMMAND_DONE", command_id=command.id, command=command.command)
        return True

    def _dispatch(self, command: Command) -> Dict[str, Any]:
        if not self.verifier.verify(command.envelope(), command.signature):
            raise SignatureInvalid("Invalid signature", {"node_id": command.node_id})

        controls = self.gate.read_controls(self.config.project_id)
        self.gate.require_dispatch(controls)
        return self.executor.execute(command.command, command.payload, controls)

    def _record_error(self, command: Command, error: CommandError) -> None:
        if isinstance(error, SignatureInvalid):
            logger.error(f"Rejected command {command.id}: signature invalid")
            self._log("SIGNATURE_REJECTED", command_id=command.id, command=command.command)
        else:
            self._log(
                "COMMAND_FAILED",
                command_id=command.id,
                command=command.command,
                error_code=error.code,
                status=error.terminal_status.value,
                error=error.message,
            )
        try:
            self.lifecycle.finish_error(command, error)
        except BackendRequestError as exc:
            self._fail_rejected(command, "Error report", exc)

    def _fail_rejected(self, command: Command, what: str, exc: BackendRequestError) -> None:
        """
        The backend refused the terminal row (e.g. a NUL byte in a JSON
        column). Record a plain failure instead so the row leaves running.
        """
        message = f"{what} rejected by backend: {exc}"
        logger.error(f"Command {command.id}: {message}")
        self._log(
            "COMMAND_FAILED",
            command_id=command.id,
            command=command.command,
            error_code="BackendRejected",
            error=message,
        )
        self.lifecycle.finish_fail(
            command.id,
            message,
            data={"command": command.command, "error_code": "BackendRejected", "status_code": exc.status_code},
        )

    def beat(self, status: str, force: bool = False) -> None:
        if self.heartbeat_store is None:
            return
        now = self.time_source.now()
        if not force and self._last_beat_at is not None:
            if (now - self._last_beat_at).total_seconds() < self.config.heartbeat_interval_seconds:
                return
        self._last_beat_at = now
        try:
            self.heartbeat_store.beat(
                NodeHeartbeat(
                    node_id=self.config.node_id,
                    project_id=self.config.project_id,
                    status=status,
                    last_seen_at=now.isoformat(),
                    meta=node_meta(),
                )
            )
        except Exception as exc:
            logger.warning(f"Heartbeat ({status}) for node {self.config.node_id} failed: {exc}")

    def status(self) -> WorkerStatus:
        with self._status_lock:
            return WorkerStatus(
                node_id=self.config.node_id,
                project_id=self.config.project_id,
                last_poll_at=self._last_poll_at,
                last_poll_ok=self._last_poll_ok,
                processed_total=self._processed_total,
            )

    def _log(self, event_type: str, **fields: Any) -> None:
        self.structured_logger.emit(event_type, **fields)
