"""
External job API client (Apify-style actors).

An actor run is started with an input document, reports a status while it
runs, streams a plain-text log, and leaves its output in a dataset. Only
single HTTP calls live here; retries, deadlines and the circuit breaker are
layered on top by the run drivers.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import httpx

from ..core.errors import PayloadDecodeError
from ..core.retry import check_response, decode_json
from ..observability.logging import get_logger

logger = get_logger(__name__)


class JobRunStatus:
    READY = "READY"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    TIMED_OUT = "TIMED-OUT"
    ABORTED = "ABORTED"

    TERMINAL = frozenset({SUCCEEDED, FAILED, TIMED_OUT, ABORTED})


@dataclass(frozen=True)
class JobRun:
    id: str
    status: str
    dataset_id: str | None = None
    status_message: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in JobRunStatus.TERMINAL

    @property
    def succeeded(self) -> bool:
        return self.status == JobRunStatus.SUCCEEDED

    @classmethod
    def from_api(cls, payload: Any) -> "JobRun":
        """Build from a `{"data": {...}}` run document."""
        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, dict) or "id" not in data or "status" not in data:
            raise PayloadDecodeError("Run document is missing data.id or data.status")
        return cls(
            id=data["id"],
            status=data["status"],
            dataset_id=data.get("defaultDatasetId"),
            status_message=data.get("statusMessage"),
        )


class JobClient(ABC):
    """Interface to the external job API."""

    @abstractmethod
    async def start_run(self, actor_id: str, actor_input: dict[str, Any]) -> JobRun:
        ...

    @abstractmethod
    async def get_run(self, run_id: str) -> JobRun:
        ...

    @abstractmethod
    async def get_log(self, run_id: str) -> str:
        """Full log text of the run so far."""
        ...

    @abstractmethod
    async def list_items(self, dataset_id: str, limit: int | None = None) -> list[dict[str, Any]]:
        ...


class HttpJobClient(JobClient):
    """REST client for the Apify v2 API over a shared `httpx.AsyncClient`."""

    def __init__(self, http_client: httpx.AsyncClient, base_url: str, api_token: str = ""):
        self._http_client = http_client
        self.base_url = base_url.rstrip("/")
        self._api_token = api_token

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._api_token:
            headers["Authorization"] = f"Bearer {self._api_token}"
        return headers

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        response = await self._http_client.request(
            method, f"{self.base_url}{path}", headers=self._headers(), **kwargs
        )
        return check_response(response, service="scraper")

    async def start_run(self, actor_id: str, actor_input: dict[str, Any]) -> JobRun:
        # Actor ids use "~" instead of "/" in URL paths
        path = f"/v2/acts/{actor_id.replace('/', '~')}/runs"
        run = JobRun.from_api(decode_json(await self._request("POST", path, json=actor_input)))
        logger.info("Actor run started", actor_id=actor_id, run_id=run.id)
        return run

    async def get_run(self, run_id: str) -> JobRun:
        return JobRun.from_api(decode_json(await self._request("GET", f"/v2/actor-runs/{run_id}")))

    async def get_log(self, run_id: str) -> str:
        response = await self._request("GET", f"/v2/actor-runs/{run_id}/log")
        return response.text

    async def list_items(self, dataset_id: str, limit: int | None = None) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"clean": "true", "format": "json"}
        if limit is not None:
            params["limit"] = limit
        items = decode_json(
            await self._request("GET", f"/v2/datasets/{dataset_id}/items", params=params)
        )
        if not isinstance(items, list):
            raise PayloadDecodeError(f"Dataset {dataset_id} items are not a list")
        return [item for item in items if isinstance(item, dict)]
