"""Incremental export coordinator.

Two independently scheduled passes share one durable state:

``create_export_jobs``
    Checks the provider's queue, partitions the next window after the
    watermark and creates + enqueues a job for it, looping until the queue
    is full, the record space is exhausted, or the time budget runs out.

``check_and_merge_jobs``
    Polls every pending job; merges completed output into the sink and
    advances the watermark; drops jobs the provider lost.

Both passes hold an advisory lease so at most one of them touches the
pending-job list at a time. The module-level entry points never raise: the
external scheduler only ever sees a logged ``PassResult``.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import httpx
import pandas as pd

from bulkexport.lib.auth import TokenCache
from bulkexport.lib.client import BulkExportClient
from bulkexport.lib.config import ExportConfig
from bulkexport.lib.errors import (
    ApiError,
    AuthError,
    CreateError,
    EnqueueError,
    LockHeldError,
    NotFoundError,
    RetryableFailure,
    SinkWriteError,
)
from bulkexport.lib.jobs import ExportJob, JobLifecycleClient, JobQueueTracker, JobStatus
from bulkexport.lib.lock import LeaseLock
from bulkexport.lib.partition import TIME_UNIT, gap_limit, next_window, resume_point
from bulkexport.lib.properties import JsonFilePropertyStore, PropertyStore
from bulkexport.lib.sink import CsvSink, Sink, merge
from bulkexport.lib.time_utils import EPOCH, format_timestamp, utc_now
from bulkexport.lib.watermark import PendingJobStore, Watermark, WatermarkStore

logger = logging.getLogger(__name__)

__all__ = [
    "CoordinatorState",
    "ExportCoordinator",
    "PassResult",
    "PassState",
    "StopReason",
    "check_and_merge_jobs",
    "create_export_jobs",
]

LOCK_NAME = "coordinator"
TIMESTAMP_COLUMN = "createdAt"


class CoordinatorState(Enum):
    IDLE = "idle"
    CHECKING_CAPACITY = "checking_capacity"
    PARTITIONING = "partitioning"
    CREATING_JOB = "creating_job"
    CHECKING_JOBS = "checking_jobs"
    DONE = "done"
    STOPPED = "stopped"


class PassState(Enum):
    DONE = "done"
    STOPPED = "stopped"
    FAILED = "failed"


class StopReason(Enum):
    """Why a pass ended early. Only ``AUTH_FAILED`` is an error."""

    QUEUE_FULL = "queue_full"
    TIME_BUDGET_EXCEEDED = "time_budget_exceeded"
    CREATE_FAILED = "create_failed"
    ENQUEUE_FAILED = "enqueue_failed"
    LOCK_HELD = "lock_held"
    AUTH_FAILED = "auth_failed"


@dataclass
class PassResult:
    """Outcome of one coordinator pass."""

    pass_name: str
    state: PassState = PassState.DONE
    reason: Optional[StopReason] = None
    jobs_created: List[str] = field(default_factory=list)
    jobs_merged: List[str] = field(default_factory=list)
    jobs_dropped: List[str] = field(default_factory=list)
    jobs_retained: List[str] = field(default_factory=list)
    rows_inserted: int = 0
    watermark: Optional[Watermark] = None
    elapsed_seconds: float = 0.0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.state != PassState.FAILED

    def stop(self, reason: StopReason) -> None:
        self.state = PassState.STOPPED
        self.reason = reason

    def to_dict(self) -> Dict[str, Any]:
        watermark = None
        if self.watermark is not None:
            ts = self.watermark.max_ingested_timestamp
            watermark = {
                "maxIngestedId": self.watermark.max_ingested_id,
                "maxIngestedTimestamp": format_timestamp(ts) if ts else None,
            }
        return {
            "pass": self.pass_name,
            "state": self.state.value,
            "reason": self.reason.value if self.reason else None,
            "jobs_created": self.jobs_created,
            "jobs_merged": self.jobs_merged,
            "jobs_dropped": self.jobs_dropped,
            "jobs_retained": self.jobs_retained,
            "rows_inserted": self.rows_inserted,
            "watermark": watermark,
            "elapsed_seconds": round(self.elapsed_seconds, 2),
            "error": self.error,
        }


class ExportCoordinator:
    """Orchestrates token, queue, partitioner, job client, merger and watermark.

    Collaborators default to the file-backed implementations derived from
    ``config``; tests and embedding code may inject their own.

    Example:
        with ExportCoordinator(load_config("export.yaml")) as coordinator:
            result = coordinator.create_export_jobs()
    """

    def __init__(
        self,
        config: ExportConfig,
        *,
        store: Optional[PropertyStore] = None,
        sink: Optional[Sink] = None,
        transport: Optional[httpx.BaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = utc_now,
        owner: Optional[str] = None,
    ) -> None:
        self.config = config
        self.store = store if store is not None else JsonFilePropertyStore(config.state_dir)
        self.sink = sink if sink is not None else CsvSink(config.sink_path, config.key_column)
        self.tokens = TokenCache(config, self.store, transport=transport, now=now)
        self.client = BulkExportClient(config, self.tokens, transport=transport)
        self.lifecycle = JobLifecycleClient(self.client, config)
        self.tracker = JobQueueTracker(self.lifecycle)
        self.watermarks = WatermarkStore(self.store)
        self.pending = PendingJobStore(self.store)
        self.lock = LeaseLock(
            self.store, LOCK_NAME, ttl_seconds=config.lock_ttl_seconds, owner=owner, now=now
        )
        self.state = CoordinatorState.IDLE
        self._clock = clock
        self._now = now

    def close(self) -> None:
        self.client.close()

    def __enter__(self) -> "ExportCoordinator":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Creation pass
    # ------------------------------------------------------------------

    def create_export_jobs(self) -> PassResult:
        """Create and enqueue jobs for the windows after the watermark."""
        return self._run_pass("create", self._create_jobs)

    def _create_jobs(self, result: PassResult, started: float) -> None:
        self.tokens.get_token()
        watermark = self.watermarks.load()
        pending = self.pending.load()
        epoch = self.config.start_at
        cursor = resume_point(watermark, pending, epoch=epoch)
        if cursor != watermark:
            logger.info(
                "Skipping %d window(s) already requested; resuming after %s",
                len(pending),
                cursor.describe(),
            )

        while True:
            if self._budget_exceeded(started):
                self._stop(result, StopReason.TIME_BUDGET_EXCEEDED)
                return

            self._transition(CoordinatorState.CHECKING_CAPACITY)
            if not self.tracker.has_capacity(self.config.max_concurrent_jobs):
                self._stop(result, StopReason.QUEUE_FULL)
                return

            self._transition(CoordinatorState.PARTITIONING)
            limit = gap_limit(cursor, pending, epoch=epoch)
            window = next_window(
                cursor, self.config.max_window_days, self._now(), epoch=epoch, limit=limit
            )
            if window is not None and limit is not None:
                logger.info(
                    "Re-requesting window [%s .. %s] left open by a dropped job",
                    format_timestamp(window.window_start),
                    format_timestamp(window.window_end),
                    extra={"event": "gap_refill"},
                )
            if window is None:
                self._transition(CoordinatorState.DONE)
                logger.info(
                    "No new data to export after %s",
                    cursor.describe(),
                    extra={"event": "pass_done"},
                )
                return

            self._transition(CoordinatorState.CREATING_JOB)
            export_filter = window.to_filter(self.config.use_id_filter)
            try:
                job_id = self.lifecycle.create(export_filter, self.config.fields)
            except CreateError as exc:
                logger.error(
                    "Job creation rejected; window will be retried next pass: %s",
                    exc.message,
                    extra={"event": "create_failed", "filter": export_filter},
                )
                self._stop(result, StopReason.CREATE_FAILED)
                return

            job = ExportJob(
                id=job_id,
                status=JobStatus.REQUESTED,
                window_start=window.window_start,
                window_end=window.window_end,
                id_lower_bound=window.id_lower_bound if self.config.use_id_filter else None,
                created_at=self._now(),
            )
            self.pending.add(job)
            result.jobs_created.append(job_id)

            try:
                self.lifecycle.enqueue(job_id)
            except EnqueueError as exc:
                logger.error(
                    "Created job %s could not be enqueued; it stays tracked for re-enqueue: %s",
                    job_id,
                    exc.message,
                    extra={"event": "enqueue_failed", "job_id": job_id},
                )
                self._stop(result, StopReason.ENQUEUE_FAILED)
                return

            self.pending.add(job.with_status(JobStatus.QUEUED))
            logger.info(
                "Created and enqueued export job %s for %s",
                job_id,
                job.describe_window(),
                extra={
                    "event": "job_created",
                    "job_id": job_id,
                    "window_start": window.window_start,
                    "window_end": window.window_end,
                },
            )
            pending.append(job)
            cursor = resume_point(watermark, pending, epoch=epoch)

    # ------------------------------------------------------------------
    # Status-check pass
    # ------------------------------------------------------------------

    def check_and_merge_jobs(self) -> PassResult:
        """Poll every pending job and merge the completed ones."""
        return self._run_pass("check", self._check_jobs)

    def _check_jobs(self, result: PassResult, started: float) -> None:
        self.tokens.get_token()
        self._transition(CoordinatorState.CHECKING_JOBS)

        jobs = sorted(
            self.pending.load(),
            key=lambda job: (job.window_start or EPOCH, job.created_at or EPOCH),
        )
        if not jobs:
            logger.info("No pending export jobs", extra={"event": "pass_done"})

        retained: List[ExportJob] = []
        processed = 0
        try:
            for job in jobs:
                if self._budget_exceeded(started):
                    self._stop(result, StopReason.TIME_BUDGET_EXCEEDED)
                    break

                kept = self._check_job(job, result)
                if kept is not None:
                    retained.append(kept)
                processed += 1
        finally:
            # jobs not reached, or interrupted mid-check, stay tracked as they were
            retained.extend(jobs[processed:])
            self.pending.save(retained)
            result.jobs_retained = [job.id for job in retained]

        if result.state == PassState.DONE:
            self._transition(CoordinatorState.DONE)

    def _check_job(self, job: ExportJob, result: PassResult) -> Optional[ExportJob]:
        """Return the job to keep tracking, or None once it is resolved."""
        if job.status == JobStatus.REQUESTED:
            try:
                self.lifecycle.enqueue(job.id)
                job = job.with_status(JobStatus.QUEUED)
                logger.info(
                    "Re-enqueued orphaned export job %s",
                    job.id,
                    extra={"event": "job_reenqueued", "job_id": job.id},
                )
            except EnqueueError as exc:
                logger.warning("Re-enqueue of job %s failed: %s", job.id, exc.message)

        try:
            status = self.lifecycle.poll_status(job.id)
        except ApiError as exc:
            logger.warning(
                "Could not poll export job %s; will retry next pass: %s",
                job.id,
                exc.message,
                extra={"event": "poll_failed", "job_id": job.id},
            )
            return job

        job = job.with_status(status)

        if status in (JobStatus.NOT_FOUND, JobStatus.FAILED):
            self._drop_job(job, status.value, result)
            return None

        if status != JobStatus.COMPLETED:
            logger.debug("Export job %s is %s", job.id, job.status.value)
            return job

        if not self._continues_watermark(job):
            logger.info(
                "Holding completed job %s until earlier windows are merged",
                job.id,
                extra={"event": "job_held", "job_id": job.id},
            )
            return job

        return self._merge_job(job, result)

    def _continues_watermark(self, job: ExportJob) -> bool:
        """True when the job's window starts right after the stored watermark."""
        if job.window_start is None:
            return True
        frontier = self.watermarks.load().max_ingested_timestamp or self.config.start_at
        return job.window_start <= frontier + TIME_UNIT

    def _drop_job(self, job: ExportJob, outcome: str, result: PassResult) -> None:
        logger.warning(
            "Export job %s ended as %s; window %s was not merged and will be requested again",
            job.id,
            outcome,
            job.describe_window(),
            extra={"event": "job_dropped", "job_id": job.id, "status": outcome},
        )
        result.jobs_dropped.append(job.id)

    def _merge_job(self, job: ExportJob, result: PassResult) -> Optional[ExportJob]:
        try:
            frame = self.lifecycle.fetch_output(job.id)
        except NotFoundError:
            self._drop_job(job, JobStatus.NOT_FOUND.value, result)
            return None
        except RetryableFailure as exc:
            logger.warning(
                "Output of job %s not available yet: %s",
                job.id,
                exc.message,
                extra={"event": "fetch_failed", "job_id": job.id},
            )
            return job

        self._check_window(frame, job)

        floor_key = 0
        if self.config.use_id_filter:
            floor_key = (
                job.id_lower_bound
                if job.id_lower_bound is not None
                else self.watermarks.load().max_ingested_id
            )

        try:
            merged = merge(frame, self.sink, self.config.key_column, floor_key=floor_key)
        except SinkWriteError as exc:
            logger.error(
                "Merging job %s failed; watermark left unchanged: %s",
                job.id,
                exc.message,
                extra={"event": "merge_failed", "job_id": job.id},
            )
            return job

        self.watermarks.advance(
            max_id=merged.max_key_seen if merged.inserted else None,
            timestamp=job.window_end,
        )
        result.jobs_merged.append(job.id)
        result.rows_inserted += merged.inserted
        logger.info(
            "Merged export job %s: %d new rows",
            job.id,
            merged.inserted,
            extra={"event": "job_merged", "job_id": job.id, "inserted": merged.inserted},
        )
        return None

    def _check_window(self, frame: pd.DataFrame, job: ExportJob) -> None:
        """Warn when rows fall outside the job's createdAt window.

        The id and timestamp watermarks are expected to describe the same
        resume point; rows outside the window mean they have drifted apart.
        """
        if TIMESTAMP_COLUMN not in frame.columns or frame.empty:
            return
        if job.window_start is None or job.window_end is None:
            return
        created = pd.to_datetime(frame[TIMESTAMP_COLUMN], utc=True, errors="coerce")
        outside = ((created < job.window_start) | (created > job.window_end)).sum()
        if outside:
            logger.warning(
                "%d rows of job %s lie outside its window %s",
                int(outside),
                job.id,
                job.describe_window(),
                extra={"event": "window_mismatch", "job_id": job.id},
            )

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def status(self) -> Dict[str, Any]:
        """Snapshot of the persisted state, for operators."""
        watermark = self.watermarks.load()
        ts = watermark.max_ingested_timestamp
        return {
            "watermark": {
                "maxIngestedId": watermark.max_ingested_id,
                "maxIngestedTimestamp": format_timestamp(ts) if ts else None,
            },
            "pending_jobs": [job.to_dict() for job in self.pending.load()],
            "lock": self.lock.holder(),
        }

    def reset(self) -> None:
        """Forget watermark, pending jobs, cached token and lease."""
        self.store.delete_all()
        logger.warning("Cleared all export state", extra={"event": "state_reset"})

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _run_pass(
        self,
        name: str,
        body: Callable[[PassResult, float], None],
    ) -> PassResult:
        started = self._clock()
        result = PassResult(pass_name=name)
        self._transition(CoordinatorState.IDLE)
        try:
            with self.lock.hold():
                body(result, started)
        except LockHeldError as exc:
            logger.warning(
                "Another pass is running; skipping %s pass (%s)",
                name,
                exc.owner,
                extra={"event": "pass_stopped", "reason": StopReason.LOCK_HELD.value},
            )
            result.stop(StopReason.LOCK_HELD)
        except AuthError as exc:
            logger.error(
                "Aborting %s pass: %s",
                name,
                exc.message,
                extra={"event": "pass_failed", "reason": StopReason.AUTH_FAILED.value},
            )
            result.state = PassState.FAILED
            result.reason = StopReason.AUTH_FAILED
            result.error = exc.message

        result.watermark = self.watermarks.load()
        result.elapsed_seconds = self._clock() - started
        logger.info(
            "%s pass finished: %s%s",
            name,
            result.state.value,
            f" ({result.reason.value})" if result.reason else "",
            extra={"event": "pass_finished", **result.to_dict()},
        )
        return result

    def _budget_exceeded(self, started: float) -> bool:
        return self._clock() - started > self.config.time_budget_seconds

    def _stop(self, result: PassResult, reason: StopReason) -> None:
        self._transition(CoordinatorState.STOPPED)
        logger.info(
            "Stopping pass: %s",
            reason.value,
            extra={"event": "pass_stopped", "reason": reason.value},
        )
        result.stop(reason)

    def _transition(self, state: CoordinatorState) -> None:
        logger.debug("Coordinator %s -> %s", self.state.value, state.value)
        self.state = state


def _run_entry_point(
    name: str,
    config: ExportConfig,
    action: Callable[[ExportCoordinator], PassResult],
    **kwargs: Any,
) -> PassResult:
    started = time.monotonic()
    try:
        with ExportCoordinator(config, **kwargs) as coordinator:
            return action(coordinator)
    except Exception as exc:
        logger.exception(
            "%s pass failed unexpectedly: %s",
            name,
            exc,
            extra={"event": "pass_failed"},
        )
        return PassResult(
            pass_name=name,
            state=PassState.FAILED,
            error=str(exc),
            elapsed_seconds=time.monotonic() - started,
        )


def create_export_jobs(config: ExportConfig, **kwargs: Any) -> PassResult:
    """Scheduled entry point for the creation pass. Never raises."""
    return _run_entry_point("create", config, ExportCoordinator.create_export_jobs, **kwargs)


def check_and_merge_jobs(config: ExportConfig, **kwargs: Any) -> PassResult:
    """Scheduled entry point for the status-check pass. Never raises."""
    return _run_entry_point("check", config, ExportCoordinator.check_and_merge_jobs, **kwargs)
