"""REST client for the Supabase target store (PostgREST)."""

import json
import logging
from typing import Any, Dict, List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..config import MigrationSettings
from ..errors import TargetStoreError

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = (429, 500, 502, 503, 504)

CONFLICT_RESOLUTION = {
    "skip": "ignore-duplicates",
    "overwrite": "merge-duplicates",
}


def is_retryable_status(status_code: Optional[int]) -> bool:
    """5xx and 429 are transient; every other 4xx is a data problem."""
    if status_code is None:
        return True
    return status_code == 429 or status_code >= 500


def encode_body(payload: Any) -> str:
    """JSON request body. Dates, decimals and other driver types are sent as strings."""
    return json.dumps(payload, default=str)


class TargetStore:
    """
    Thin client for PostgREST tables under /rest/v1.

    Reads are retried by the transport (GET is idempotent). Writes are not;
    the batch loader owns write retries so it can count them.
    """

    def __init__(
        self,
        base_url: str,
        service_role_key: str,
        timeout: float = 30.0,
        read_retries: int = 3,
        session: Optional[requests.Session] = None,
    ):
        """
        Initialize the target store client.

        Args:
            base_url: Supabase project URL
            service_role_key: Service-role key, sent as apikey and bearer token
            timeout: Per-request timeout in seconds
            read_retries: Transport-level retries for GET requests
            session: Custom requests session
        """
        self.base_url = base_url.rstrip("/")
        self.rest_url = f"{self.base_url}/rest/v1"
        self.service_role_key = service_role_key
        self.timeout = timeout
        self.read_retries = read_retries
        self._session = session or self._create_session()

    @classmethod
    def from_settings(cls, settings: MigrationSettings) -> "TargetStore":
        return cls(
            base_url=settings.supabase_url,
            service_role_key=settings.supabase_service_role_key,
            timeout=settings.supabase_timeout_seconds,
            read_retries=settings.max_retries,
        )

    def _create_session(self) -> requests.Session:
        """Create a requests session with auth headers and read retries."""
        session = requests.Session()

        retries = Retry(
            total=self.read_retries,
            backoff_factor=0.5,
            status_forcelist=list(RETRYABLE_STATUS_CODES),
            allowed_methods=["GET"],
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retries)
        session.mount("https://", adapter)
        session.mount("http://", adapter)

        session.headers["apikey"] = self.service_role_key
        session.headers["Authorization"] = f"Bearer {self.service_role_key}"
        session.headers["Content-Type"] = "application/json"
        session.headers["Accept"] = "application/json"

        return session

    def _request(
        self,
        method: str,
        table: str,
        params: Optional[Dict[str, Any]] = None,
        payload: Optional[Any] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> requests.Response:
        url = f"{self.rest_url}/{table}"
        try:
            response = self._session.request(
                method,
                url,
                params=params,
                data=None if payload is None else encode_body(payload),
                headers=headers,
                timeout=self.timeout,
            )
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            raise TargetStoreError(
                f"{method} {table} failed: {e}",
                retryable=True,
            ) from e
        except requests.exceptions.RequestException as e:
            raise TargetStoreError(f"{method} {table} failed: {e}") from e

        if response.status_code >= 400:
            details: Any = response.text
            try:
                body = response.json()
                details = body
                if isinstance(body, dict):
                    message = body.get("message") or body.get("error") or str(body)
                else:
                    message = str(body)
            except ValueError:
                message = response.text or response.reason
            raise TargetStoreError(
                f"{method} {table} returned {response.status_code}: {message}",
                status_code=response.status_code,
                retryable=is_retryable_status(response.status_code),
                details=details,
            )

        return response

    def select(
        self,
        table: str,
        columns: str = "*",
        filters: Optional[Dict[str, str]] = None,
        order: Optional[str] = "id",
        page_size: int = 1000,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """
        Read rows, following limit/offset pages until exhausted.

        Args:
            table: Target table name
            columns: PostgREST select list
            filters: PostgREST filters, e.g. {"legacy_id": "not.is.null"}
            order: Order clause for stable pagination
            page_size: Rows per request
            limit: Stop after this many rows

        Returns:
            List of row dictionaries
        """
        rows: List[Dict[str, Any]] = []
        offset = 0

        while True:
            size = page_size if limit is None else min(page_size, limit - len(rows))
            if size <= 0:
                break

            params: Dict[str, Any] = {"select": columns, "limit": size, "offset": offset}
            if order:
                params["order"] = order
            if filters:
                params.update(filters)

            page = self._request("GET", table, params=params).json()
            rows.extend(page)
            offset += len(page)

            if len(page) < size:
                break

        logger.debug(f"Selected {len(rows)} rows from {table}")
        return rows

    def upsert(
        self,
        table: str,
        rows: List[Dict[str, Any]],
        conflict_policy: str = "skip",
        on_conflict: str = "id",
    ) -> None:
        """
        Insert rows, resolving primary-key conflicts by policy.

        Args:
            table: Target table name
            rows: Row dictionaries (all with the same keys)
            conflict_policy: "skip" keeps existing rows, "overwrite" merges
            on_conflict: Conflict target column(s)
        """
        if not rows:
            return
        resolution = CONFLICT_RESOLUTION.get(conflict_policy)
        if resolution is None:
            raise ValueError(f"Unknown conflict policy: {conflict_policy}")

        self._request(
            "POST",
            table,
            params={"on_conflict": on_conflict},
            payload=rows,
            headers={"Prefer": f"resolution={resolution},return=minimal"},
        )

    def insert(self, table: str, rows: List[Dict[str, Any]], returning: bool = False) -> List[Dict[str, Any]]:
        """Plain insert. Returns the created rows when returning is set."""
        if not rows:
            return []
        prefer = "return=representation" if returning else "return=minimal"
        response = self._request("POST", table, payload=rows, headers={"Prefer": prefer})
        return response.json() if returning and response.text else []

    def update(self, table: str, filters: Dict[str, str], values: Dict[str, Any]) -> None:
        """PATCH rows matching PostgREST filters, e.g. {"id": "eq.1"}."""
        if not filters:
            raise ValueError("update requires at least one filter")
        self._request(
            "PATCH",
            table,
            params=filters,
            payload=values,
            headers={"Prefer": "return=minimal"},
        )

    def health_check(self) -> bool:
        """Check that the REST endpoint answers."""
        try:
            self.select("migration_status", columns="id", order=None, limit=1)
            return True
        except TargetStoreError as e:
            logger.error(f"Target store health check failed: {e}")
            return False

    def close(self) -> None:
        self._session.close()
