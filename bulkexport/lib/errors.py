"""Structured exception hierarchy for the export coordinator.

Every remote-call failure is converted at the operation boundary into one of
the types below so the coordinator can decide whether to abort the pass,
keep a job pending, or drop it.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

__all__ = [
    "ExportError",
    "ConfigurationError",
    "ApiError",
    "AuthError",
    "CreateError",
    "EnqueueError",
    "TransientFetchError",
    "RetryableFailure",
    "NotFoundError",
    "SinkWriteError",
    "LockHeldError",
]


class ExportError(Exception):
    """Base exception for all export errors.

    Provides structured error information for debugging.
    """

    def __init__(
        self,
        message: str,
        *,
        job_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        self.job_id = job_id
        self.details = details or {}
        self.suggestion = suggestion

        parts = [message]

        if job_id:
            parts.insert(0, f"[job {job_id}]")

        if details:
            detail_lines = [f"  {k}: {v}" for k, v in details.items()]
            parts.append("\nDetails:")
            parts.extend(detail_lines)

        if suggestion:
            parts.append(f"\nSuggestion: {suggestion}")

        super().__init__("\n".join(parts) if len(parts) > 1 else message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for structured logging."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "job_id": self.job_id,
            "details": self.details,
            "suggestion": self.suggestion,
        }


class ConfigurationError(ExportError):
    """Error in export configuration.

    Raised when configuration is invalid or incomplete.
    """

    def __init__(
        self,
        message: str,
        *,
        issues: Optional[List[str]] = None,
        **kwargs: Any,
    ) -> None:
        self.issues = issues or []

        if issues:
            issue_lines = "\n".join(f"  - {issue}" for issue in issues)
            message = f"{message}\n\nIssues found:\n{issue_lines}"

        super().__init__(message, **kwargs)


class ApiError(ExportError):
    """The provider answered with ``success: false`` or an unusable payload."""

    def __init__(
        self,
        message: str,
        *,
        codes: Optional[List[str]] = None,
        status_code: Optional[int] = None,
        **kwargs: Any,
    ) -> None:
        self.codes = codes or []
        self.status_code = status_code

        details = kwargs.pop("details", {})
        if codes:
            details["codes"] = ", ".join(codes)
        if status_code is not None:
            details["status_code"] = status_code

        super().__init__(message, details=details, **kwargs)

    @property
    def is_not_found(self) -> bool:
        if self.status_code == 404:
            return True
        return "not found" in self.message.lower()


class AuthError(ExportError):
    """Credential fetch failed after exhausting retries.

    Fatal for the current pass.
    """

    def __init__(self, message: str, *, attempts: int = 0, **kwargs: Any) -> None:
        self.attempts = attempts
        details = kwargs.pop("details", {})
        if attempts:
            details["attempts"] = attempts
        suggestion = kwargs.pop("suggestion", None) or (
            "Check client_id / client_secret and that identity_url is reachable."
        )
        super().__init__(message, details=details, suggestion=suggestion, **kwargs)


class CreateError(ExportError):
    """Job creation was rejected or the filter is malformed."""


class EnqueueError(ExportError):
    """A created job could not be enqueued.

    The job exists upstream and must be re-enqueued, never re-created.
    """


class TransientFetchError(ExportError):
    """Job file reported missing right after the job completed."""


class RetryableFailure(ExportError):
    """Output could not be fetched yet; keep the job pending for a later pass."""


class NotFoundError(ExportError):
    """The job expired server-side before its output was fetched."""


class SinkWriteError(ExportError):
    """The sink rejected a batched write."""

    def __init__(
        self,
        message: str,
        *,
        cause: Optional[Exception] = None,
        **kwargs: Any,
    ) -> None:
        self.cause = cause
        details = kwargs.pop("details", {})
        if cause:
            details["cause"] = str(cause)
            details["cause_type"] = type(cause).__name__
        super().__init__(message, details=details, **kwargs)


class LockHeldError(ExportError):
    """Another coordinator pass holds the lease."""

    def __init__(
        self,
        message: str,
        *,
        owner: Optional[str] = None,
        expires_at: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        self.owner = owner
        self.expires_at = expires_at
        details = kwargs.pop("details", {})
        if owner:
            details["owner"] = owner
        if expires_at:
            details["expires_at"] = expires_at
        super().__init__(message, details=details, **kwargs)
