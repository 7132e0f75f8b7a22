"""Watermark and pending-job persistence for incremental exports.

The watermark records the highest fully-ingested position as two fields,
the maximum record id and the latest ``createdAt`` window end. Both are
advanced together and only after rows are durably merged, so a crash can
never leave a gap behind the stored position.

Property layout::

    lastMaxUID         "102"
    lastProcessedDate  "2024-01-31T00:00:00Z"
    exportIds          [{"exportId": "...", "status": "Queued", ...}, ...]
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import List, Optional

from bulkexport.lib.jobs import ExportJob
from bulkexport.lib.properties import PropertyStore
from bulkexport.lib.time_utils import format_timestamp, parse_timestamp

logger = logging.getLogger(__name__)

__all__ = [
    "PendingJobStore",
    "Watermark",
    "WatermarkStore",
]

MAX_ID_KEY = "lastMaxUID"
PROCESSED_DATE_KEY = "lastProcessedDate"
EXPORT_IDS_KEY = "exportIds"


@dataclass(frozen=True)
class Watermark:
    """Highest fully-ingested position."""

    max_ingested_id: int = 0
    max_ingested_timestamp: Optional[datetime] = None

    def __post_init__(self) -> None:
        if self.max_ingested_id < 0:
            raise ValueError("max_ingested_id must be >= 0")

    def advanced(
        self,
        max_id: Optional[int] = None,
        timestamp: Optional[datetime] = None,
    ) -> "Watermark":
        """Return a copy moved forward component-wise; never moves backward."""
        new_id = self.max_ingested_id
        if max_id is not None and max_id > new_id:
            new_id = max_id

        new_ts = self.max_ingested_timestamp
        if timestamp is not None and (new_ts is None or timestamp > new_ts):
            new_ts = timestamp

        return replace(self, max_ingested_id=new_id, max_ingested_timestamp=new_ts)

    def describe(self) -> str:
        ts = (
            format_timestamp(self.max_ingested_timestamp)
            if self.max_ingested_timestamp
            else "none"
        )
        return f"id>{self.max_ingested_id} createdAt>{ts}"


class WatermarkStore:
    """Durable, monotonic checkpoint read before partitioning."""

    def __init__(self, store: PropertyStore) -> None:
        self.store = store

    def load(self) -> Watermark:
        max_id = 0
        raw_id = self.store.get(MAX_ID_KEY)
        if raw_id:
            try:
                max_id = max(int(raw_id), 0)
            except ValueError:
                logger.warning("Invalid %s value %r; treating as 0", MAX_ID_KEY, raw_id)

        timestamp = None
        raw_ts = self.store.get(PROCESSED_DATE_KEY)
        if raw_ts:
            try:
                timestamp = parse_timestamp(raw_ts)
            except ValueError:
                logger.warning(
                    "Invalid %s value %r; treating as unset", PROCESSED_DATE_KEY, raw_ts
                )

        return Watermark(max_ingested_id=max_id, max_ingested_timestamp=timestamp)

    def advance(
        self,
        max_id: Optional[int] = None,
        timestamp: Optional[datetime] = None,
    ) -> Watermark:
        """Move the stored watermark forward and persist it.

        Call only after the corresponding rows have been written to the sink.
        """
        current = self.load()
        updated = current.advanced(max_id=max_id, timestamp=timestamp)
        if updated == current:
            return current

        if updated.max_ingested_id != current.max_ingested_id:
            self.store.set(MAX_ID_KEY, str(updated.max_ingested_id))
        if (
            updated.max_ingested_timestamp is not None
            and updated.max_ingested_timestamp != current.max_ingested_timestamp
        ):
            self.store.set(PROCESSED_DATE_KEY, format_timestamp(updated.max_ingested_timestamp))

        logger.info(
            "Advanced watermark from %s to %s",
            current.describe(),
            updated.describe(),
            extra={
                "event": "watermark_advanced",
                "max_ingested_id": updated.max_ingested_id,
                "max_ingested_timestamp": updated.max_ingested_timestamp,
            },
        )
        return updated

    def clear(self) -> None:
        self.store.delete(MAX_ID_KEY)
        self.store.delete(PROCESSED_DATE_KEY)


class PendingJobStore:
    """Durable list of created jobs whose output has not been merged yet."""

    def __init__(self, store: PropertyStore) -> None:
        self.store = store

    def load(self) -> List[ExportJob]:
        raw = self.store.get(EXPORT_IDS_KEY)
        if not raw:
            return []
        try:
            entries = json.loads(raw)
        except json.JSONDecodeError as exc:
            logger.error("Invalid %s property, ignoring pending jobs: %s", EXPORT_IDS_KEY, exc)
            return []

        jobs: List[ExportJob] = []
        for entry in entries if isinstance(entries, list) else []:
            try:
                jobs.append(ExportJob.from_dict(entry))
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping unreadable pending job %r: %s", entry, exc)
        return jobs

    def save(self, jobs: List[ExportJob]) -> None:
        if not jobs:
            self.store.delete(EXPORT_IDS_KEY)
            return
        self.store.set(EXPORT_IDS_KEY, json.dumps([job.to_dict() for job in jobs]))

    def add(self, job: ExportJob) -> None:
        """Track a job, replacing an existing entry with the same id."""
        jobs = [existing for existing in self.load() if existing.id != job.id]
        jobs.append(job)
        self.save(jobs)

    def clear(self) -> None:
        self.store.delete(EXPORT_IDS_KEY)
