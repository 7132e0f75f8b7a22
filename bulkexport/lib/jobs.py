"""Remote export job lifecycle and queue tracking.

A job moves through::

    Requested -> Queued -> Processing -> Completed -> (merged, removed)
    Queued | Processing -> NotFound | Failed -> (removed, not merged)

Polling is the only way to discover a terminal state. The provider caps how
many jobs may be queued or processing at once, so ``JobQueueTracker`` is
consulted before every creation.
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

import pandas as pd
import tenacity

from bulkexport.lib.client import BulkExportClient
from bulkexport.lib.config import ExportConfig
from bulkexport.lib.errors import (
    ApiError,
    CreateError,
    EnqueueError,
    NotFoundError,
    RetryableFailure,
    TransientFetchError,
)
from bulkexport.lib.time_utils import format_timestamp, parse_timestamp

logger = logging.getLogger(__name__)

__all__ = [
    "ExportJob",
    "JobLifecycleClient",
    "JobQueueTracker",
    "JobStatus",
    "validate_filter",
]


class JobStatus(Enum):
    """Lifecycle state of a remote export job."""

    REQUESTED = "Requested"
    QUEUED = "Queued"
    PROCESSING = "Processing"
    COMPLETED = "Completed"
    FAILED = "Failed"
    NOT_FOUND = "NotFound"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.NOT_FOUND)

    @property
    def is_active(self) -> bool:
        """Counts against the provider's concurrent-job quota."""
        return self in (JobStatus.QUEUED, JobStatus.PROCESSING)

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]

    @classmethod
    def from_remote(cls, raw: Optional[str]) -> "JobStatus":
        """Map a provider status string to the enum.

        Unknown strings are treated as still running, so the job keeps being
        polled instead of being dropped.
        """
        key = (raw or "").strip().lower().replace(" ", "")
        if key in _REMOTE_STATUS_MAP:
            return _REMOTE_STATUS_MAP[key]
        logger.warning("Unknown remote job status %r; treating as Processing", raw)
        return cls.PROCESSING


_STATUS_RANK = {
    JobStatus.REQUESTED: 0,
    JobStatus.QUEUED: 1,
    JobStatus.PROCESSING: 2,
    JobStatus.COMPLETED: 3,
    JobStatus.FAILED: 3,
    JobStatus.NOT_FOUND: 3,
}

_REMOTE_STATUS_MAP = {
    "created": JobStatus.REQUESTED,
    "requested": JobStatus.REQUESTED,
    "queued": JobStatus.QUEUED,
    "processing": JobStatus.PROCESSING,
    "completed": JobStatus.COMPLETED,
    "failed": JobStatus.FAILED,
    "cancelled": JobStatus.FAILED,
    "canceled": JobStatus.FAILED,
    "notfound": JobStatus.NOT_FOUND,
}


@dataclass(frozen=True)
class ExportJob:
    """A created job tracked until its output is merged or it is lost."""

    id: str
    status: JobStatus = JobStatus.REQUESTED
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None
    id_lower_bound: Optional[int] = None
    created_at: Optional[datetime] = None

    def with_status(self, status: JobStatus) -> "ExportJob":
        """Apply a polled status; transitions never move backward."""
        if status.rank < self.status.rank:
            logger.debug(
                "Ignoring backward transition %s -> %s for job %s",
                self.status.value,
                status.value,
                self.id,
            )
            return self
        return replace(self, status=status)

    def describe_window(self) -> str:
        start = format_timestamp(self.window_start) if self.window_start else "-"
        end = format_timestamp(self.window_end) if self.window_end else "-"
        return f"[{start} .. {end}] id>{self.id_lower_bound if self.id_lower_bound is not None else '-'}"

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"exportId": self.id, "status": self.status.value}
        if self.window_start:
            data["windowStart"] = format_timestamp(self.window_start)
        if self.window_end:
            data["windowEnd"] = format_timestamp(self.window_end)
        if self.id_lower_bound is not None:
            data["idLowerBound"] = self.id_lower_bound
        if self.created_at:
            data["createdAt"] = format_timestamp(self.created_at)
        return data

    @classmethod
    def from_dict(cls, data: Union[str, Dict[str, Any]]) -> "ExportJob":
        """Load a stored entry; bare id strings are accepted as Queued jobs."""
        if isinstance(data, str):
            return cls(id=data, status=JobStatus.QUEUED)

        def _ts(key: str) -> Optional[datetime]:
            value = data.get(key)
            return parse_timestamp(value) if value else None

        id_lower_bound = data.get("idLowerBound")
        return cls(
            id=str(data["exportId"]),
            status=JobStatus(data.get("status", JobStatus.QUEUED.value)),
            window_start=_ts("windowStart"),
            window_end=_ts("windowEnd"),
            id_lower_bound=int(id_lower_bound) if id_lower_bound is not None else None,
            created_at=_ts("createdAt"),
        )


def validate_filter(export_filter: Dict[str, Any]) -> None:
    """Check an export filter before sending it.

    Only ``{"id": {"$gt": n}}`` and ``{"createdAt": {"startAt", "endAt"}}``
    are supported.

    Raises:
        CreateError: If the filter is malformed
    """
    if not isinstance(export_filter, dict) or not export_filter:
        raise CreateError("Export filter must be a non-empty mapping")

    unknown = set(export_filter) - {"id", "createdAt"}
    if unknown:
        raise CreateError(
            f"Unsupported filter keys: {', '.join(sorted(unknown))}",
            details={"filter": export_filter},
        )

    if "id" in export_filter:
        id_filter = export_filter["id"]
        lower = id_filter.get("$gt") if isinstance(id_filter, dict) else None
        if not isinstance(lower, int) or isinstance(lower, bool) or lower < 0:
            raise CreateError(
                "id filter must be {'$gt': <non-negative integer>}",
                details={"filter": export_filter},
            )

    if "createdAt" in export_filter:
        window = export_filter["createdAt"]
        try:
            start = parse_timestamp(window["startAt"])
            end = parse_timestamp(window["endAt"])
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise CreateError(
                f"createdAt filter needs ISO-8601 startAt and endAt: {exc}",
                details={"filter": export_filter},
            ) from exc
        if end <= start:
            raise CreateError(
                "createdAt endAt must be after startAt",
                details={"filter": export_filter},
            )


class JobLifecycleClient:
    """Create, enqueue, poll and download a single remote export job."""

    def __init__(self, client: BulkExportClient, config: ExportConfig) -> None:
        self.client = client
        self.config = config
        self._base = "/" + config.export_path.strip("/")

    def list_jobs(self) -> List[Tuple[str, JobStatus]]:
        """List jobs known to the provider.

        Raises:
            ApiError: If the listing fails
        """
        result = self.client.request_json("GET", f"{self._base}.json")
        jobs = []
        for item in result:
            job_id = item.get("exportId")
            if job_id is None:
                continue
            jobs.append((str(job_id), JobStatus.from_remote(item.get("status"))))
        return jobs

    def create(self, export_filter: Dict[str, Any], fields: List[str]) -> str:
        """Create a job; it enters ``Requested``.

        Raises:
            CreateError: On a malformed filter or provider rejection
        """
        validate_filter(export_filter)
        body = {"fields": list(fields), "format": "CSV", "filter": export_filter}
        try:
            result = self.client.request_json(
                "POST", f"{self._base}/create.json", json_body=body
            )
        except ApiError as exc:
            raise CreateError(
                f"Provider rejected export job: {exc.message}",
                details={"filter": export_filter, "codes": ", ".join(exc.codes)},
            ) from exc

        job_id = result[0].get("exportId") if result else None
        if not job_id:
            raise CreateError(
                "Create response did not include an exportId",
                details={"filter": export_filter},
            )
        return str(job_id)

    def enqueue(self, job_id: str) -> None:
        """Move a job from ``Requested`` to ``Queued``.

        Raises:
            EnqueueError: If the provider rejects the request
        """
        try:
            self.client.request_json("POST", f"{self._base}/{job_id}/enqueue.json")
        except ApiError as exc:
            raise EnqueueError(
                f"Could not enqueue export job: {exc.message}", job_id=job_id
            ) from exc

    def poll_status(self, job_id: str) -> JobStatus:
        """Return the job's current status.

        An explicit not-found answer (provider-side expiry) maps to
        ``JobStatus.NOT_FOUND``.

        Raises:
            ApiError: For any other failure; the job should be polled again later
        """
        try:
            result = self.client.request_json("GET", f"{self._base}/{job_id}/status.json")
        except ApiError as exc:
            if exc.is_not_found:
                return JobStatus.NOT_FOUND
            raise
        if not result:
            raise ApiError("Status response did not describe the job", job_id=job_id)
        return JobStatus.from_remote(result[0].get("status"))

    def fetch_output(self, job_id: str) -> pd.DataFrame:
        """Download and decode the CSV file of a completed job.

        The provider sometimes reports the file missing right after
        completion; that case is retried with a fixed backoff. A header-only
        or empty file yields an empty frame.

        Raises:
            NotFoundError: If the job itself expired before the download
            RetryableFailure: If the file could not be downloaded this pass
        """
        attempts = self.config.fetch_max_attempts

        retryer = tenacity.Retrying(
            stop=tenacity.stop_after_attempt(attempts),
            wait=tenacity.wait_fixed(self.config.fetch_backoff_seconds),
            retry=tenacity.retry_if_exception_type(TransientFetchError),
            before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        try:
            text = retryer(self._download, job_id)
        except TransientFetchError as exc:
            raise RetryableFailure(
                f"Export file still missing after {attempts} attempts", job_id=job_id
            ) from exc

        return self._decode(text, job_id)

    def _download(self, job_id: str) -> str:
        try:
            return self.client.request_text("GET", f"{self._base}/{job_id}/file.json")
        except ApiError as exc:
            if exc.is_not_found:
                if self._job_expired(job_id):
                    raise NotFoundError(
                        "Export job expired before its file was downloaded", job_id=job_id
                    ) from exc
                raise TransientFetchError(
                    "Export file not found right after completion", job_id=job_id
                ) from exc
            raise RetryableFailure(
                f"Could not download export file: {exc.message}", job_id=job_id
            ) from exc

    def _job_expired(self, job_id: str) -> bool:
        try:
            return self.poll_status(job_id) == JobStatus.NOT_FOUND
        except ApiError:
            return False

    @staticmethod
    def _decode(text: str, job_id: str) -> pd.DataFrame:
        if not text.strip():
            return pd.DataFrame()
        try:
            return pd.read_csv(
                io.StringIO(text),
                dtype=str,
                keep_default_na=False,
            )
        except pd.errors.EmptyDataError:
            return pd.DataFrame()
        except pd.errors.ParserError as exc:
            raise RetryableFailure(f"Export file is not valid CSV: {exc}", job_id=job_id) from exc


class JobQueueTracker:
    """Counts provider jobs that occupy the concurrency budget."""

    def __init__(self, lifecycle: JobLifecycleClient) -> None:
        self.lifecycle = lifecycle

    def active_job_count(self) -> int:
        """Number of jobs currently queued or processing.

        Raises:
            ApiError: If the provider cannot be queried
        """
        return sum(1 for _, status in self.lifecycle.list_jobs() if status.is_active)

    def has_capacity(self, ceiling: int) -> bool:
        """True when another job may be created.

        A failed query counts as "no capacity" so a degraded provider never
        triggers runaway job creation.
        """
        try:
            active = self.active_job_count()
        except ApiError as exc:
            logger.warning(
                "Could not query active export jobs; assuming queue is full: %s",
                exc.message,
                extra={"event": "capacity_check_failed"},
            )
            return False

        logger.debug("Active export jobs: %d/%d", active, ceiling)
        return active < ceiling
