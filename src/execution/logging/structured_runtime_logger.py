import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT, force=True)


class StructuredRuntimeLogger:
    """
    JSON-lines trace of the command pipeline (claims, rejections,
    outcomes, kill switch, poll errors).
    """

    def __init__(self, logger: Optional[logging.Logger] = None, node_id: Optional[str] = None):
        self._logger = logger or logging.getLogger("agent.runtime")
        self._node_id = node_id

    def emit(self, event_type: str, **fields: Any) -> None:
        payload: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type,
        }
        if self._node_id is not None:
            payload["node_id"] = self._node_id
        payload.update(fields)
        self._logger.info(json.dumps(payload, default=str, ensure_ascii=True))
