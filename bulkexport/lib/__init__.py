"""Export coordinator library modules.

This package contains the building blocks of an incremental bulk export:
credentials, queue tracking, partitioning, the job lifecycle, the watermark
and the deduplicating sink merger, plus the coordinator that ties them
together.
"""

from bulkexport.lib.auth import TokenCache
from bulkexport.lib.client import BulkExportClient
from bulkexport.lib.config import ExportConfig, expand_env_vars, load_config, load_env_file
from bulkexport.lib.coordinator import (
    ExportCoordinator,
    PassResult,
    PassState,
    StopReason,
    check_and_merge_jobs,
    create_export_jobs,
)
from bulkexport.lib.errors import (
    ApiError,
    AuthError,
    ConfigurationError,
    CreateError,
    EnqueueError,
    ExportError,
    LockHeldError,
    NotFoundError,
    RetryableFailure,
    SinkWriteError,
    TransientFetchError,
)
from bulkexport.lib.jobs import ExportJob, JobLifecycleClient, JobQueueTracker, JobStatus
from bulkexport.lib.lock import LeaseLock
from bulkexport.lib.logging import JSONFormatter, setup_logging
from bulkexport.lib.partition import Window, gap_limit, next_window, resume_point
from bulkexport.lib.properties import JsonFilePropertyStore, PropertyStore
from bulkexport.lib.sink import CsvSink, MergeResult, Sink, merge
from bulkexport.lib.watermark import PendingJobStore, Watermark, WatermarkStore

__all__ = [
    # Configuration
    "ExportConfig",
    "expand_env_vars",
    "load_config",
    "load_env_file",
    # Coordinator
    "ExportCoordinator",
    "PassResult",
    "PassState",
    "StopReason",
    "check_and_merge_jobs",
    "create_export_jobs",
    # Remote
    "BulkExportClient",
    "ExportJob",
    "JobLifecycleClient",
    "JobQueueTracker",
    "JobStatus",
    "TokenCache",
    # State
    "JsonFilePropertyStore",
    "LeaseLock",
    "PendingJobStore",
    "PropertyStore",
    "Watermark",
    "WatermarkStore",
    # Partitioning and merging
    "CsvSink",
    "MergeResult",
    "Sink",
    "Window",
    "gap_limit",
    "merge",
    "next_window",
    "resume_point",
    # Logging
    "JSONFormatter",
    "setup_logging",
    # Errors
    "ApiError",
    "AuthError",
    "ConfigurationError",
    "CreateError",
    "EnqueueError",
    "ExportError",
    "LockHeldError",
    "NotFoundError",
    "RetryableFailure",
    "SinkWriteError",
    "TransientFetchError",
]
