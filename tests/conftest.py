"""Pytest configuration and fixtures.

``FakeProvider`` simulates the bulk-export REST API end to end behind an
``httpx.MockTransport``: token grant, job listing, create, enqueue, status
and file download. Tests flip its knobs to inject failures.
"""

import json
import re
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import httpx
import pytest

# Make the project importable without installing it
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from bulkexport.lib.config import ExportConfig  # noqa: E402
from bulkexport.lib.coordinator import ExportCoordinator  # noqa: E402
from bulkexport.lib.time_utils import parse_timestamp  # noqa: E402

BASE_URL = "https://api.example.com"
EXPORT_PATH = "/bulk/v1/leads/export"
NOW = datetime(2024, 3, 1, tzinfo=timezone.utc)

_JOB_PATH = re.compile(re.escape(EXPORT_PATH) + r"/([^/]+)/(enqueue|status|file)\.json$")


def envelope(result: Optional[List[Dict[str, Any]]] = None, **kwargs: Any) -> httpx.Response:
    return httpx.Response(200, json={"success": True, "result": result or [], **kwargs})


def error_envelope(code: str, message: str) -> httpx.Response:
    return httpx.Response(
        200, json={"success": False, "errors": [{"code": code, "message": message}]}
    )


class FakeProvider:
    """In-memory bulk-export API."""

    def __init__(self) -> None:
        self.jobs: Dict[str, Dict[str, Any]] = {}
        self.rows: List[Dict[str, Any]] = []
        self.requests: List[Tuple[str, str]] = []
        self.created_filters: List[Dict[str, Any]] = []
        self.tokens_issued = 0
        self.token_failures = 0
        self.expires_in = 3600
        self.other_active_jobs = 0
        self.list_fails = False
        self.create_error: Optional[Tuple[str, str]] = None
        self.enqueue_fails = False
        self.file_missing: Dict[str, int] = {}
        self.blank_status: List[str] = []
        self._next_id = 1

    # -- test helpers -------------------------------------------------

    def add_rows(self, *rows: Tuple[int, str]) -> None:
        for record_id, created_at in rows:
            self.rows.append({"id": record_id, "createdAt": created_at})

    def complete(self, job_id: str, csv: Optional[str] = None) -> None:
        self.jobs[job_id]["status"] = "Completed"
        if csv is not None:
            self.jobs[job_id]["csv"] = csv

    def complete_all(self) -> None:
        for job_id in self.jobs:
            self.complete(job_id)

    def forget(self, job_id: str) -> None:
        del self.jobs[job_id]

    def count(self, method: str, suffix: str) -> int:
        return sum(1 for m, path in self.requests if m == method and path.endswith(suffix))

    # -- transport ----------------------------------------------------

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.requests.append((request.method, path))

        if path.endswith("/oauth/token"):
            return self._token()
        if path == f"{EXPORT_PATH}.json":
            return self._list()
        if path == f"{EXPORT_PATH}/create.json":
            return self._create(json.loads(request.content))

        match = _JOB_PATH.match(path)
        if not match:
            return httpx.Response(404, text="no route")
        job_id, action = match.groups()
        job = self.jobs.get(job_id)
        if job is None:
            return httpx.Response(404, json={"success": False, "errors": [
                {"code": "1029", "message": "Export job not found"}
            ]})
        if action == "enqueue":
            return self._enqueue(job_id, job)
        if action == "status":
            if job_id in self.blank_status:
                return envelope([])
            return envelope([{"exportId": job_id, "status": job["status"]}])
        return self._file(job_id, job)

    def _token(self) -> httpx.Response:
        if self.token_failures > 0:
            self.token_failures -= 1
            return httpx.Response(503, text="identity unavailable")
        self.tokens_issued += 1
        return httpx.Response(
            200,
            json={"access_token": f"token-{self.tokens_issued}", "expires_in": self.expires_in},
        )

    def _list(self) -> httpx.Response:
        if self.list_fails:
            return httpx.Response(500, text="boom")
        result = [{"exportId": job_id, "status": job["status"]} for job_id, job in self.jobs.items()]
        result.extend(
            {"exportId": f"other-{i}", "status": "Processing"}
            for i in range(self.other_active_jobs)
        )
        return envelope(result)

    def _create(self, body: Dict[str, Any]) -> httpx.Response:
        if self.create_error:
            return error_envelope(*self.create_error)
        job_id = f"job-{self._next_id}"
        self._next_id += 1
        self.jobs[job_id] = {"status": "Created", "filter": body["filter"], "fields": body["fields"]}
        self.created_filters.append(body["filter"])
        return envelope([{"exportId": job_id, "status": "Created", "format": "CSV"}])

    def _enqueue(self, job_id: str, job: Dict[str, Any]) -> httpx.Response:
        if self.enqueue_fails:
            return error_envelope("1035", "Unsupported filter type for target subscription")
        job["status"] = "Queued"
        return envelope([{"exportId": job_id, "status": "Queued"}])

    def _file(self, job_id: str, job: Dict[str, Any]) -> httpx.Response:
        if self.file_missing.get(job_id, 0) > 0:
            self.file_missing[job_id] -= 1
            return httpx.Response(404, text="File not found")
        if "csv" in job:
            return httpx.Response(200, text=job["csv"])
        return httpx.Response(200, text=self._render(job["filter"]))

    def _render(self, export_filter: Dict[str, Any]) -> str:
        lower = export_filter.get("id", {}).get("$gt")
        window = export_filter.get("createdAt", {})
        start = parse_timestamp(window["startAt"]) if window else None
        end = parse_timestamp(window["endAt"]) if window else None
        lines = ["id,createdAt"]
        for row in self.rows:
            created = parse_timestamp(row["createdAt"])
            if lower is not None and row["id"] <= lower:
                continue
            if start is not None and not start <= created <= end:
                continue
            lines.append(f"{row['id']},{row['createdAt']}")
        return "\n".join(lines) + "\n"


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def transport(provider: FakeProvider) -> httpx.MockTransport:
    return httpx.MockTransport(provider.handler)


@pytest.fixture
def make_config(tmp_path: Path):
    """Factory for configs pointing at tmp_path with retries that never sleep."""

    def _make(**overrides: Any) -> ExportConfig:
        options: Dict[str, Any] = {
            "client_id": "client",
            "client_secret": "secret",
            "base_url": BASE_URL,
            "sink_path": str(tmp_path / "sink.csv"),
            "state_dir": str(tmp_path / "state"),
            "start_at": "2024-01-01T00:00:00Z",
            "auth_backoff_seconds": 0,
            "fetch_backoff_seconds": 0,
            "backoff_factor": 0,
        }
        options.update(overrides)
        return ExportConfig(**options)

    return _make


@pytest.fixture
def make_coordinator(make_config, transport):
    """Factory for coordinators wired to the fake provider at a fixed clock."""
    coordinators: List[ExportCoordinator] = []

    def _make(config: Optional[ExportConfig] = None, **kwargs: Any) -> ExportCoordinator:
        kwargs.setdefault("transport", transport)
        kwargs.setdefault("now", lambda: NOW)
        coordinator = ExportCoordinator(config or make_config(), **kwargs)
        coordinators.append(coordinator)
        return coordinator

    yield _make

    for coordinator in coordinators:
        coordinator.close()
