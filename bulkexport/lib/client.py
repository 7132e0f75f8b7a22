"""HTTP transport for the bulk-export REST API.

Wraps an ``httpx.Client`` with bearer authentication, envelope decoding and
retry. Provider responses look like::

    {"success": true, "result": [...], "errors": [{"code": "606", "message": "..."}]}

Transient failures (transport errors, 429/5xx, provider rate-limit codes) are
retried with exponential backoff. An expired-token response invalidates the
cached credential and is retried once with a fresh one. Everything else is
raised as ``ApiError`` for the calling operation to classify.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional, Protocol

import httpx
import requests_toolbelt
import tenacity
from requests_toolbelt.utils.user_agent import user_agent
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from bulkexport import __version__
from bulkexport.lib.config import ExportConfig
from bulkexport.lib.errors import ApiError

logger = logging.getLogger(__name__)

__all__ = ["BulkExportClient", "TokenProvider", "USER_AGENT"]

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}

# Provider error codes: rate limit / concurrency limit exceeded
RETRYABLE_API_CODES = {"606", "615"}

# Provider error codes: access token invalid / expired
TOKEN_EXPIRED_CODES = {"601", "602"}

USER_AGENT = user_agent(
    "bulk-export",
    __version__,
    extras=[
        ("httpx", getattr(httpx, "__version__", "unknown")),
        ("tenacity", getattr(tenacity, "__version__", "unknown")),
        ("requests-toolbelt", getattr(requests_toolbelt, "__version__", "unknown")),
    ],
)


class TokenProvider(Protocol):
    def get_token(self) -> str: ...

    def invalidate(self) -> None: ...


def _error_codes(envelope: Dict[str, Any]) -> List[str]:
    return [
        str(error.get("code"))
        for error in envelope.get("errors") or []
        if isinstance(error, dict) and error.get("code") is not None
    ]


def _error_message(envelope: Dict[str, Any]) -> str:
    messages = [
        str(error.get("message", ""))
        for error in envelope.get("errors") or []
        if isinstance(error, dict)
    ]
    return "; ".join(m for m in messages if m) or "request was not successful"


class BulkExportClient:
    """Authenticated client for the export endpoints.

    Example:
        with BulkExportClient(config, token_cache) as client:
            jobs = client.request_json("GET", "/bulk/v1/leads/export.json")
    """

    def __init__(
        self,
        config: ExportConfig,
        token_provider: TokenProvider,
        *,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.config = config
        self.token_provider = token_provider
        self.max_retries = max(config.max_retries, 1)
        self.backoff_factor = config.backoff_factor
        self._http = httpx.Client(
            base_url=config.base_url.rstrip("/"),
            timeout=config.request_timeout_seconds,
            transport=transport,
        )

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "BulkExportClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def request_json(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        """Call an endpoint and return the envelope's ``result`` list.

        Raises:
            ApiError: On HTTP failure or ``success: false``
        """
        response = self._send(method, path, params=params, json_body=json_body)
        envelope = self._decode_envelope(response, method, path)
        result = envelope.get("result") or []
        return list(result) if isinstance(result, list) else [result]

    def request_text(self, method: str, path: str) -> str:
        """Call an endpoint that returns a raw (CSV) body.

        Raises:
            ApiError: On HTTP failure, or when a JSON error envelope comes
                back instead of the file
        """
        response = self._send(method, path)
        if response.headers.get("content-type", "").startswith("application/json"):
            self._decode_envelope(response, method, path)
        return response.text

    def _send(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        try:
            return self._send_with_retry(method, path, params=params, json_body=json_body)
        except ApiError as exc:
            if not set(exc.codes) & TOKEN_EXPIRED_CODES:
                raise
            logger.info("Access token rejected (%s); refreshing", ", ".join(exc.codes))
            self.token_provider.invalidate()
            return self._send_with_retry(method, path, params=params, json_body=json_body)

    def _send_with_retry(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]],
        json_body: Optional[Dict[str, Any]],
    ) -> httpx.Response:
        @retry(
            stop=stop_after_attempt(self.max_retries),
            wait=wait_exponential(multiplier=self.backoff_factor, max=30),
            retry=retry_if_exception(self._should_retry),
            reraise=True,
            before_sleep=before_sleep_log(logger, logging.WARNING),
        )
        def do_request() -> httpx.Response:
            headers = {
                "Authorization": f"Bearer {self.token_provider.get_token()}",
                "User-Agent": USER_AGENT,
            }
            logger.debug("%s %s params=%s", method, path, params)
            response = self._http.request(
                method, path, headers=headers, params=params, json=json_body
            )
            try:
                response.raise_for_status()
            except httpx.HTTPStatusError as exc:
                if exc.response.status_code == 429:
                    self._respect_retry_after(exc.response)
                raise
            if response.headers.get("content-type", "").startswith("application/json"):
                # Rate-limit and token errors arrive as HTTP 200 envelopes
                envelope = self._parse_json(response, method, path)
                codes = _error_codes(envelope)
                if not envelope.get("success", True) and set(codes) & (
                    RETRYABLE_API_CODES | TOKEN_EXPIRED_CODES
                ):
                    raise ApiError(f"{method} {path}: {_error_message(envelope)}", codes=codes)
            return response

        try:
            return do_request()
        except httpx.HTTPStatusError as exc:
            status_code = exc.response.status_code
            raise ApiError(
                f"{method} {path} failed with HTTP {status_code}",
                status_code=status_code,
            ) from exc
        except httpx.RequestError as exc:
            raise ApiError(f"{method} {path} failed: {exc}") from exc

    def _should_retry(self, exc: BaseException) -> bool:
        if isinstance(exc, httpx.HTTPStatusError):
            return exc.response.status_code in RETRYABLE_STATUS_CODES
        if isinstance(exc, ApiError):
            return bool(set(exc.codes) & RETRYABLE_API_CODES)
        return isinstance(exc, httpx.RequestError)

    def _respect_retry_after(self, response: httpx.Response) -> None:
        retry_after = response.headers.get("Retry-After")
        if not retry_after:
            return
        try:
            wait_seconds = float(retry_after)
        except (TypeError, ValueError):
            return
        if wait_seconds > 0:
            logger.warning(
                "Rate limited by API; sleeping %.1f seconds before retrying",
                wait_seconds,
            )
            time.sleep(wait_seconds)

    @staticmethod
    def _parse_json(response: httpx.Response, method: str, path: str) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError as exc:
            raise ApiError(f"{method} {path} returned invalid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise ApiError(f"{method} {path} returned an unexpected payload")
        return data

    def _decode_envelope(
        self, response: httpx.Response, method: str, path: str
    ) -> Dict[str, Any]:
        envelope = self._parse_json(response, method, path)
        if not envelope.get("success", False):
            raise ApiError(
                f"{method} {path}: {_error_message(envelope)}",
                codes=_error_codes(envelope),
                status_code=response.status_code,
            )
        return envelope
