"""Tabular sink and the deduplicating merger that feeds it.

``merge`` loads the sink's key set once, drops rows already present or at or
below the id watermark, and writes everything else in one batched append.
It reports the highest key it actually wrote; only that value may be used
to advance the watermark.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Optional, Protocol, Sequence, Set, Union

import pandas as pd

from bulkexport.lib.errors import SinkWriteError

logger = logging.getLogger(__name__)

__all__ = ["CsvSink", "MergeResult", "Sink", "merge", "parse_key"]


class Sink(Protocol):
    """Destination table keyed by the provider's numeric record id."""

    def get_existing_keys(self) -> Set[int]: ...

    def header(self) -> List[str]: ...

    def append_header(self, row: Sequence[str]) -> None: ...

    def append_rows(self, rows: Sequence[Sequence[Any]]) -> None: ...

    def row_count(self) -> int:
        """Physical rows including the header; 0 means empty."""
        ...


@dataclass(frozen=True)
class MergeResult:
    inserted: int
    max_key_seen: int
    skipped_existing: int = 0
    skipped_watermark: int = 0
    invalid_keys: int = 0


def parse_key(value: Any) -> Optional[int]:
    """Parse a record id cell, or None when it is not an integer."""
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    try:
        return int(text)
    except ValueError:
        return None


class CsvSink:
    """Sink stored as a local CSV file.

    Example:
        sink = CsvSink("./data/leads.csv", key_column="id")
        result = merge(frame, sink, "id")
    """

    def __init__(self, path: Union[str, Path], key_column: str = "id") -> None:
        self.path = Path(path)
        self.key_column = key_column

    def _exists(self) -> bool:
        return self.path.exists() and self.path.stat().st_size > 0

    def row_count(self) -> int:
        if not self._exists():
            return 0
        frame = pd.read_csv(self.path, dtype=str, keep_default_na=False)
        return len(frame) + 1

    def header(self) -> List[str]:
        if not self._exists():
            return []
        return [str(c) for c in pd.read_csv(self.path, nrows=0).columns]

    def get_existing_keys(self) -> Set[int]:
        if not self._exists():
            return set()
        frame = pd.read_csv(
            self.path,
            usecols=[self.key_column],
            dtype=str,
            keep_default_na=False,
        )
        keys = (parse_key(v) for v in frame[self.key_column])
        return {k for k in keys if k is not None}

    def append_header(self, row: Sequence[str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        pd.DataFrame(columns=list(row)).to_csv(self.path, index=False)

    def append_rows(self, rows: Sequence[Sequence[Any]]) -> None:
        if not rows:
            return
        frame = pd.DataFrame(list(rows), columns=self.header())
        frame.to_csv(self.path, mode="a", header=False, index=False)


def merge(
    frame: pd.DataFrame,
    sink: Sink,
    key_column: str,
    *,
    floor_key: int = 0,
) -> MergeResult:
    """Append the rows of ``frame`` whose keys are new to ``sink``.

    Args:
        frame: Decoded export file (columns are the file's header row)
        sink: Destination
        key_column: Column holding the numeric record id
        floor_key: Id watermark; rows at or below it are skipped

    Raises:
        SinkWriteError: If the payload lacks the key column or the write fails
    """
    if len(frame.columns) == 0 or frame.empty:
        return MergeResult(inserted=0, max_key_seen=0)

    payload_header = [str(c) for c in frame.columns]
    if key_column not in payload_header:
        raise SinkWriteError(
            f"Export file has no '{key_column}' column",
            details={"columns": ", ".join(payload_header)},
        )

    # Decided once: an empty sink takes the payload header as its own
    sink_is_empty = sink.row_count() == 0
    if sink_is_empty:
        header = payload_header
        existing: Set[int] = set()
    else:
        header = sink.header()
        if key_column not in header:
            raise SinkWriteError(f"Sink header has no '{key_column}' column")
        dropped = [c for c in payload_header if c not in header]
        if dropped:
            logger.warning(
                "Dropping columns not present in sink header: %s", ", ".join(dropped)
            )
        existing = sink.get_existing_keys()

    aligned = frame.reindex(columns=header, fill_value="")
    key_index = header.index(key_column)

    staged: List[List[Any]] = []
    max_key = 0
    skipped_existing = 0
    skipped_watermark = 0
    invalid = 0

    for row in aligned.itertuples(index=False, name=None):
        key = parse_key(row[key_index])
        if key is None:
            invalid += 1
            continue
        if key <= floor_key:
            skipped_watermark += 1
            continue
        if key in existing:
            skipped_existing += 1
            continue
        existing.add(key)
        staged.append(list(row))
        if key > max_key:
            max_key = key

    if invalid:
        logger.warning("Skipped %d rows with a missing or non-numeric key", invalid)

    if staged:
        try:
            if sink_is_empty:
                sink.append_header(header)
            sink.append_rows(staged)
        except Exception as exc:
            raise SinkWriteError(
                f"Failed to append {len(staged)} rows to sink", cause=exc
            ) from exc

    logger.info(
        "Merged %d new rows (%d already present, %d at or below watermark)",
        len(staged),
        skipped_existing,
        skipped_watermark,
        extra={"event": "rows_merged", "inserted": len(staged), "max_key": max_key},
    )
    return MergeResult(
        inserted=len(staged),
        max_key_seen=max_key,
        skipped_existing=skipped_existing,
        skipped_watermark=skipped_watermark,
        invalid_keys=invalid,
    )
