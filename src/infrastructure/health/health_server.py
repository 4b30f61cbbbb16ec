import logging
import threading
from typing import Any, Callable, Dict

from fastapi import FastAPI
import uvicorn

logger = logging.getLogger(__name__)


def build_health_app(status_provider: Callable[[], Dict[str, Any]]) -> FastAPI:
    """
    Liveness endpoint for process supervisors. status_provider returns the
    worker's current poll bookkeeping.
    """
    app = FastAPI(title="node-agent", docs_url=None, redoc_url=None)

    @app.get("/health")
    def health() -> Dict[str, Any]:
        body: Dict[str, Any] = {"ok": True}
        body.update(status_provider())
        return body

    return app


def start_health_server(app: FastAPI, port: int, host: str = "0.0.0.0") -> threading.Thread:
    config = uvicorn.Config(app, host=host, port=port, log_level="warning")
    server = uvicorn.Server(config)
    thread = threading.Thread(target=server.run, name="health-server", daemon=True)
    thread.start()
    logger.info(f"Health endpoint listening on {host}:{port}")
    return thread
