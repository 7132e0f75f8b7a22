"""OAuth token acquisition and caching.

The provider issues short-lived bearer tokens through a client-credentials
grant. ``TokenCache`` keeps the current token and its expiry in the property
store so consecutive scheduled invocations reuse it instead of fetching a new
one each time.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional, Tuple

import httpx
import tenacity

from bulkexport.lib.client import USER_AGENT
from bulkexport.lib.config import ExportConfig
from bulkexport.lib.errors import ApiError, AuthError
from bulkexport.lib.properties import PropertyStore
from bulkexport.lib.time_utils import format_timestamp, parse_timestamp, utc_now

logger = logging.getLogger(__name__)

__all__ = ["TokenCache", "TOKEN_KEY", "TOKEN_EXPIRY_KEY"]

TOKEN_KEY = "token"
TOKEN_EXPIRY_KEY = "tokenExpiry"


class TokenCache:
    """Bearer credential with expiry, shared by all remote calls.

    ``get_token`` returns the cached token while ``now < expiry``; otherwise it
    fetches a new one, retrying with a fixed backoff up to
    ``auth_max_attempts`` times. When every attempt fails ``AuthError`` is
    raised and nothing is cached.

    Example:
        tokens = TokenCache(config, JsonFilePropertyStore(config.state_dir))
        headers = {"Authorization": f"Bearer {tokens.get_token()}"}
    """

    def __init__(
        self,
        config: ExportConfig,
        store: PropertyStore,
        *,
        transport: Optional[httpx.BaseTransport] = None,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self.config = config
        self.store = store
        self._transport = transport
        self._now = now

    def get_token(self) -> str:
        cached = self._cached()
        if cached:
            return cached

        token, ttl_seconds = self._fetch_with_retry()
        expiry = self._now() + timedelta(seconds=ttl_seconds)
        self.store.set(TOKEN_KEY, token)
        self.store.set(TOKEN_EXPIRY_KEY, format_timestamp(expiry))
        logger.info(
            "Fetched new access token valid until %s",
            format_timestamp(expiry),
            extra={"event": "token_fetched"},
        )
        return token

    def invalidate(self) -> None:
        """Forget the cached token so the next call fetches a fresh one."""
        self.store.delete(TOKEN_KEY)
        self.store.delete(TOKEN_EXPIRY_KEY)

    def _cached(self) -> Optional[str]:
        token = self.store.get(TOKEN_KEY)
        expiry = self.store.get(TOKEN_EXPIRY_KEY)
        if not token or not expiry:
            return None
        try:
            expires_at = parse_timestamp(expiry)
        except ValueError:
            logger.warning("Ignoring cached token with unreadable expiry %r", expiry)
            return None
        if self._now() < expires_at:
            return token
        logger.debug("Cached token expired at %s", expiry)
        return None

    def _fetch_with_retry(self) -> Tuple[str, int]:
        attempts = self.config.auth_max_attempts

        def before_sleep_handler(retry_state: tenacity.RetryCallState) -> None:
            exception = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                "Token fetch attempt %d/%d failed: %s. Retrying in %.1fs...",
                retry_state.attempt_number,
                attempts,
                exception,
                retry_state.next_action.sleep if retry_state.next_action else 0,
            )

        retryer = tenacity.Retrying(
            stop=tenacity.stop_after_attempt(attempts),
            wait=tenacity.wait_fixed(self.config.auth_backoff_seconds),
            retry=tenacity.retry_if_exception_type((httpx.HTTPError, ApiError, ValueError)),
            before_sleep=before_sleep_handler,
            reraise=True,
        )

        try:
            return retryer(self._fetch)
        except (httpx.HTTPError, ApiError, ValueError) as exc:
            raise AuthError(
                f"Could not obtain an access token after {attempts} attempts: {exc}",
                attempts=attempts,
            ) from exc

    def _fetch(self) -> Tuple[str, int]:
        params = {
            "grant_type": "client_credentials",
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
        }
        with httpx.Client(
            base_url=(self.config.identity_url or "").rstrip("/"),
            timeout=self.config.request_timeout_seconds,
            transport=self._transport,
        ) as client:
            response = client.get(
                "/oauth/token", params=params, headers={"User-Agent": USER_AGENT}
            )
            response.raise_for_status()
            data = response.json()

        token = data.get("access_token") if isinstance(data, dict) else None
        if not token:
            message = data.get("error_description") if isinstance(data, dict) else None
            raise ApiError(f"Token response did not include access_token: {message or data}")
        return str(token), int(data.get("expires_in", 0))
