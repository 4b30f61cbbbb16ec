import json
import logging
import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from src.config.agent_config import AgentConfig, prepare_sandbox_root
from src.core.time.time_source import FrozenTimeSource
from src.execution.domain.command import Command, CommandStatus
from src.execution.queue.backend_errors import BackendRequestError, BackendUnavailable
from src.execution.queue.command_store import InMemoryCommandStore
from src.execution.sandbox.sandbox_executor import SandboxExecutor
from src.execution.sandbox.shell_runner import ShellRunResult
from src.execution.security.command_signature import CommandSignatureVerifier
from src.execution.services.command_lifecycle import CommandLifecycleManager
from src.execution.worker.command_worker import CommandWorker
from src.execution.worker.node_heartbeat import InMemoryNodeHeartbeatStore

SECRET = "worker-test-secret-0123456789"
START = datetime(2024, 1, 1, tzinfo=timezone.utc)


class _Runner:
    def __init__(self, on_run=None):
        self.calls = []
        self.on_run = on_run

    def __call__(self, argv, **kwargs):
        self.calls.append(argv)
        if self.on_run:
            self.on_run()
        return ShellRunResult(0, b"done\n", b"", False, False, False, 1)


class _ListFailsStore(InMemoryCommandStore):
    def list_queued(self, project_id, node_id, limit):
        raise BackendUnavailable("connection reset")


class _JsonColumnStore(InMemoryCommandStore):
    """Rejects NUL characters the way a Postgres jsonb column does."""

    def finish(self, command_id, status, finished_at, result=None, error=None):
        if "\\u0000" in json.dumps(result):
            raise BackendRequestError(400, "unsupported Unicode escape sequence")
        return super().finish(command_id, status, finished_at, result=result, error=error)


def _config(tmp_path, **overrides) -> AgentConfig:
    fields = {
        "signing_secret": SECRET,
        "project_id": "p1",
        "node_id": "n1",
        "sandbox_root": prepare_sandbox_root(str(tmp_path / "sandbox")),
        "shell_allowlist": ("ls", "whoami"),
        "poll_interval_seconds": 0.01,
        "heartbeat_interval_seconds": 30,
    }
    fields.update(overrides)
    return AgentConfig(**fields)


def _signed(command_id: str, command: str, payload=None, created_at: str = "2024-01-01T00:00:00Z", **overrides) -> Command:
    unsigned = Command(
        id=command_id,
        project_id=overrides.pop("project_id", "p1"),
        node_id=overrides.pop("node_id", "n1"),
        command=command,
        payload=payload if payload is not None else {},
        created_at=created_at,
    )
    signature = CommandSignatureVerifier(SECRET).sign(unsigned.envelope())
    return replace(unsigned, signature=signature, **overrides)


def _worker(tmp_path, store, runner=None, heartbeat_store=None, clock=None, **config_overrides) -> CommandWorker:
    config = _config(tmp_path, **config_overrides)
    clock = clock or FrozenTimeSource(START)
    executor = SandboxExecutor(config, time_source=clock, runner=runner or _Runner())
    lifecycle = CommandLifecycleManager(store, config.project_id, config.node_id, time_source=clock, sleep=lambda _d: None)
    return CommandWorker(
        config,
        store,
        executor,
        lifecycle=lifecycle,
        heartbeat_store=heartbeat_store,
        time_source=clock,
    )


def _event_types(store, command_id):
    return [e["type"] for e in store.events() if e["data"].get("command_id") == command_id]


def test_ping_runs_end_to_end(tmp_path):
    store = InMemoryCommandStore()
    store.add(_signed("c1", "ping"))

    processed = _worker(tmp_path, store).run_once()

    row = store.get("c1")
    assert processed == 1
    assert row.status == CommandStatus.DONE
    assert row.result["message"] == "pong"
    assert _event_types(store, "c1") == ["command.started", "command.done"]


def test_commands_run_in_created_at_order(tmp_path):
    store = InMemoryCommandStore()
    store.add(_signed("second", "ping", created_at="2024-01-01T00:00:02Z"))
    store.add(_signed("first", "ping", created_at="2024-01-01T00:00:01Z"))

    _worker(tmp_path, store).run_once()

    started = [e["data"]["command_id"] for e in store.events() if e["type"] == "command.started"]
    assert started == ["first", "second"]


def test_bad_signature_is_cancelled_without_dispatch(tmp_path):
    store = InMemoryCommandStore()
    store.set_controls("p1", allow_shell=True)
    runner = _Runner()
    forged = _signed("c1", "shell.exec", {"cmd": "ls"})
    store.add(replace(forged, payload={"cmd": "whoami"}))

    _worker(tmp_path, store, runner=runner).run_once()

    row = store.get("c1")
    assert row.status == CommandStatus.CANCELLED
    assert row.error == "Invalid signature"
    assert runner.calls == []
    assert _event_types(store, "c1") == ["command.started", "command.cancelled"]


def test_unsigned_command_is_cancelled(tmp_path):
    store = InMemoryCommandStore()
    store.add(Command(id="c1", project_id="p1", node_id="n1", command="ping", payload={}, created_at="t"))

    _worker(tmp_path, store).run_once()

    assert store.get("c1").status == CommandStatus.CANCELLED


def test_rm_not_allowlisted_fails_without_spawning(tmp_path):
    store = InMemoryCommandStore()
    store.set_controls("p1", allow_shell=True)
    store.add(_signed("c2", "shell.exec", {"cmd": "rm", "args": ["-rf", "."]}))
    runner = _Runner()

    _worker(tmp_path, store, runner=runner).run_once()

    row = store.get("c2")
    assert row.status == CommandStatus.FAILED
    assert "not allowlisted" in row.error
    assert runner.calls == []
    failed = [e for e in store.events() if e["type"] == "command.failed"][0]
    assert failed["data"]["error_code"] == "CommandNotAllowed"
    assert failed["level"] == "warn"


def test_shell_without_capability_is_cancelled(tmp_path):
    store = InMemoryCommandStore()
    store.add(_signed("c1", "shell.exec", {"cmd": "ls"}))

    _worker(tmp_path, store).run_once()

    assert store.get("c1").status == CommandStatus.CANCELLED
    assert "allow_shell" in store.get("c1").error


def test_traversal_is_failed_and_flagged(tmp_path):
    store = InMemoryCommandStore()
    store.add(_signed("c1", "read_dir", {"path": "../../etc"}))

    _worker(tmp_path, store).run_once()

    row = store.get("c1")
    assert row.status == CommandStatus.FAILED
    assert row.result is None
    event = [e for e in store.events() if e["type"] == "command.failed"][0]
    assert event["data"]["security"] is True
    assert event["level"] == "error"


def test_unknown_command_fails(tmp_path):
    store = InMemoryCommandStore()
    store.add(_signed("c1", "format_disk"))

    _worker(tmp_path, store).run_once()

    assert store.get("c1").status == CommandStatus.FAILED


def test_kill_switch_blocks_listing(tmp_path):
    store = InMemoryCommandStore()
    store.set_controls("p1", kill_switch=True)
    store.add(_signed("c1", "ping"))

    assert _worker(tmp_path, store).run_once() == 0
    assert store.get("c1").status == CommandStatus.QUEUED
    assert store.events() == []


def test_kill_switch_does_not_preempt_in_flight_command(tmp_path):
    store = InMemoryCommandStore()
    store.set_controls("p1", allow_shell=True)
    store.add(_signed("c3", "shell.exec", {"cmd": "ls"}, created_at="2024-01-01T00:00:01Z"))
    store.add(_signed("c4", "ping", created_at="2024-01-01T00:00:02Z"))
    runner = _Runner(on_run=lambda: store.set_controls("p1", kill_switch=True))
    worker = _worker(tmp_path, store, runner=runner)

    worker.run_once()
    worker.run_once()

    assert store.get("c3").status == CommandStatus.DONE
    assert store.get("c4").status == CommandStatus.QUEUED

    store.set_controls("p1", kill_switch=False)
    worker.run_once()
    assert store.get("c4").status == CommandStatus.DONE


def test_kill_switch_between_claim_and_dispatch_cancels(tmp_path):
    store = InMemoryCommandStore()
    store.add(_signed("c1", "ping"))
    worker = _worker(tmp_path, store)
    original_claim = worker.lifecycle.claim

    def claim_then_flip(command):
        won = original_claim(command)
        store.set_controls("p1", kill_switch=True)
        return won

    worker.lifecycle.claim = claim_then_flip
    worker.run_once()

    assert store.get("c1").status == CommandStatus.CANCELLED
    assert store.events()[-1]["level"] == "warn"


def test_other_node_commands_are_ignored(tmp_path):
    store = InMemoryCommandStore()
    store.add(_signed("c1", "ping", node_id="n2"))

    assert _worker(tmp_path, store).run_once() == 0
    assert store.get("c1").status == CommandStatus.QUEUED


def test_batch_size_limits_each_poll(tmp_path):
    store = InMemoryCommandStore()
    for i in range(3):
        store.add(_signed(f"c{i}", "ping", created_at=f"2024-01-01T00:00:0{i}Z"))

    worker = _worker(tmp_path, store, batch_size=2)

    assert worker.run_once() == 2
    assert worker.run_once() == 1
    assert worker.status().processed_total == 3


def test_lost_claim_is_skipped(tmp_path):
    store = InMemoryCommandStore()
    store.add(_signed("c1", "ping"))
    worker = _worker(tmp_path, store)
    rival = CommandLifecycleManager(store, "p1", "n1", time_source=FrozenTimeSource(START))
    listed = worker.lifecycle.list_eligible("p1", "n1", 5)
    rival.claim(listed[0])

    assert worker.process(listed[0]) is False
    assert store.get("c1").status == CommandStatus.RUNNING
    assert _event_types(store, "c1") == ["command.started"]


def test_backend_error_is_logged_and_loop_survives(tmp_path, caplog):
    store = _ListFailsStore()
    worker = _worker(tmp_path, store)

    with caplog.at_level(logging.INFO):
        assert worker.run_once() == 0

    assert worker.status().last_poll_ok is False
    assert any("POLL_ERROR" in record.getMessage() for record in caplog.records)


def test_unexpected_executor_error_fails_command(tmp_path):
    store = InMemoryCommandStore()
    store.add(_signed("c1", "ping"))
    worker = _worker(tmp_path, store)

    def explode(kind, payload, controls):
        raise RuntimeError("disk on fire")

    worker.executor.execute = explode
    worker.run_once()

    row = store.get("c1")
    assert row.status == CommandStatus.FAILED
    assert "disk on fire" in row.error


def test_heartbeat_is_rate_limited_and_marks_offline_on_stop(tmp_path):
    store = InMemoryCommandStore()
    beats = InMemoryNodeHeartbeatStore()
    clock = FrozenTimeSource(START)
    worker = _worker(tmp_path, store, heartbeat_store=beats, clock=clock)

    worker.run_once()
    worker.run_once()
    assert len(beats.history()) == 1

    clock.advance(timedelta(seconds=31))
    worker.run_once()
    assert len(beats.history()) == 2
    assert beats.get("n1").status == "online"
    assert beats.get("n1").name == "Physical Node: n1"

    worker.stop()
    worker.run_forever()
    assert beats.get("n1").status == "offline"


def test_run_forever_stops_on_event(tmp_path):
    store = InMemoryCommandStore()
    store.add(_signed("c1", "ping"))
    worker = _worker(tmp_path, store)

    thread = threading.Thread(target=worker.run_forever)
    thread.start()
    for _ in range(200):
        if store.get("c1").status == CommandStatus.DONE:
            break
        threading.Event().wait(0.01)
    worker.stop()
    thread.join(timeout=5)

    assert not thread.is_alive()
    assert store.get("c1").status == CommandStatus.DONE
    assert worker.status().last_poll_ok is True


def test_stopped_worker_does_not_poll(tmp_path):
    store = InMemoryCommandStore()
    store.add(_signed("c1", "ping"))
    worker = _worker(tmp_path, store)
    worker.stop()

    assert worker.run_once() == 0
    assert store.get("c1").status == CommandStatus.QUEUED


def test_result_rejected_by_backend_still_reaches_failed(tmp_path):
    store = _JsonColumnStore()
    store.add(_signed("c1", "read_file_head", {"path": "blob.bin"}))
    worker = _worker(tmp_path, store)
    with open(f"{worker.config.sandbox_root}/blob.bin", "wb") as handle:
        handle.write(b"ab\x00cd")

    assert worker.run_once() == 1

    row = store.get("c1")
    assert row.status == CommandStatus.FAILED
    assert row.error.startswith("Result rejected by backend: 400")
    assert worker.status().last_poll_ok is True
    failed = [e for e in store.events() if e["type"] == "command.failed"][0]
    assert failed["data"]["error_code"] == "BackendRejected"
    assert failed["data"]["status_code"] == 400
