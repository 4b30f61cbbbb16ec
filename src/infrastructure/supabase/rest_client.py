import json
import logging
from typing import Any, Dict, List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from src.execution.queue.backend_errors import BackendRequestError, BackendUnavailable

logger = logging.getLogger(__name__)


class SupabaseRestClient:
    """
    Minimal PostgREST client for the tables the agent touches.
    Only idempotent reads are retried by the transport; writes are not,
    because a replayed conditional PATCH could hide a won claim.
    """

    def __init__(
        self,
        base_url: str,
        service_role_key: str,
        max_retries: int = 3,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or self._create_session(max_retries)
        self.session.headers.update(
            {
                "apikey": service_role_key,
                "Authorization": f"Bearer {service_role_key}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            }
        )

    def _create_session(self, max_retries: int) -> requests.Session:
        session = requests.Session()
        retry_strategy = Retry(
            total=max_retries,
            backoff_factor=0.5,
            status_forcelist=[500, 502, 503, 504],
            allowed_methods=["GET"],
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        session.mount("https://", adapter)
        session.mount("http://", adapter)
        return session

    def select(self, table: str, params: Dict[str, str]) -> List[Dict[str, Any]]:
        return self._request("GET", table, params=params) or []

    def update(
        self,
        table: str,
        filters: Dict[str, str],
        values: Dict[str, Any],
    ) -> List[Dict[str, Any]]:
        """
        PATCH rows matching filters and return the rows actually changed.
        """
        return self._request(
            "PATCH",
            table,
            params=filters,
            body=values,
            headers={"Prefer": "return=representation"},
        ) or []

    def insert(self, table: str, row: Dict[str, Any]) -> None:
        self._request("POST", table, body=row, headers={"Prefer": "return=minimal"})

    def upsert(self, table: str, row: Dict[str, Any], on_conflict: str = "id") -> None:
        self._request(
            "POST",
            table,
            params={"on_conflict": on_conflict},
            body=row,
            headers={"Prefer": "resolution=merge-duplicates,return=minimal"},
        )

    def _request(
        self,
        method: str,
        table: str,
        params: Optional[Dict[str, str]] = None,
        body: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        url = f"{self.base_url}/rest/v1/{table}"
        try:
            response = self.session.request(
                method,
                url,
                params=params,
                data=json.dumps(body, default=str) if body is not None else None,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.error(f"Backend network error on {method} {table}: {e}")
            raise BackendUnavailable(f"Request failed: {str(e)}") from e

        if response.status_code >= 400:
            self._handle_api_error(response, method, table)

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            logger.error(f"Backend invalid JSON on {method} {table}: {e}")
            raise BackendUnavailable("Invalid JSON response") from e

    def _handle_api_error(self, response, method: str, table: str) -> None:
        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {"body": data}
        description = data.get("message") or data.get("error") or response.reason or "Unknown error"

        logger.warning(f"Backend API error {response.status_code} on {method} {table}: {description}")

        if response.status_code >= 500:
            raise BackendUnavailable(f"{response.status_code}: {description}")
        raise BackendRequestError(response.status_code, str(description), data)


def eq(value: Any) -> str:
    if isinstance(value, bool):
        return f"eq.{'true' if value else 'false'}"
    return f"eq.{value}"
