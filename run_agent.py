import logging
import signal
import sys
from typing import Tuple

from pydantic import ValidationError

from src.config.agent_config import AgentConfig
from src.config.settings import Settings, load_settings
from src.core.time.time_source import SystemTimeSource
from src.execution.logging.structured_runtime_logger import StructuredRuntimeLogger, configure_logging
from src.execution.queue.command_store import CommandStore, InMemoryCommandStore
from src.execution.queue.rest_command_store import RestCommandStore
from src.execution.queue.sql_command_store import SqlCommandStore
from src.execution.sandbox.sandbox_executor import SandboxExecutor
from src.execution.worker.command_worker import CommandWorker
from src.execution.worker.node_heartbeat import (
    InMemoryNodeHeartbeatStore,
    NodeHeartbeatStore,
    RestNodeHeartbeatStore,
    SqlNodeHeartbeatStore,
)
from src.infrastructure.health.health_server import build_health_app, start_health_server
from src.infrastructure.supabase.rest_client import SupabaseRestClient

logger = logging.getLogger("run_agent")


def build_backend(settings: Settings) -> Tuple[CommandStore, NodeHeartbeatStore]:
    if settings.BACKEND == "rest":
        client = SupabaseRestClient(settings.SUPABASE_URL, settings.SUPABASE_SERVICE_ROLE_KEY)
        return RestCommandStore(client), RestNodeHeartbeatStore(client)
    if settings.BACKEND == "sql":
        store = SqlCommandStore.from_dsn(settings.DATABASE_URL)
        return store, SqlNodeHeartbeatStore(store.engine)
    logger.warning("Using the in-memory backend; commands are lost on exit")
    return InMemoryCommandStore(), InMemoryNodeHeartbeatStore()


def build_worker(settings: Settings) -> CommandWorker:
    config = AgentConfig.from_settings(settings)
    time_source = SystemTimeSource()
    store, heartbeat_store = build_backend(settings)
    executor = SandboxExecutor(config, time_source=time_source)
    return CommandWorker(
        config,
        store,
        executor,
        heartbeat_store=heartbeat_store,
        time_source=time_source,
        structured_logger=StructuredRuntimeLogger(node_id=config.node_id),
    )


def main() -> int:
    try:
        settings = load_settings()
    except ValidationError as exc:
        print(f"Invalid configuration:\n{exc}", file=sys.stderr)
        return 2

    configure_logging(settings.LOG_LEVEL)
    worker = build_worker(settings)
    logger.info(
        f"Node {worker.config.node_id} starting: backend={settings.BACKEND} "
        f"sandbox={worker.config.sandbox_root} allowlist={','.join(worker.config.shell_allowlist)}"
    )

    if settings.PORT:
        start_health_server(build_health_app(lambda: worker.status().as_dict()), settings.PORT)

    def _shutdown(signum, _frame):
        logger.info(f"Received signal {signum}, stopping after the current command")
        worker.stop()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    worker.run_forever()
    return 0


if __name__ == "__main__":
    sys.exit(main())
