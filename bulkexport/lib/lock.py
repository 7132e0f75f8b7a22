"""Advisory lease lock over the property store.

A lease is a property holding ``{"owner": ..., "expiresAt": ...}``. Acquiring
succeeds when no lease exists, the lease has expired, or the caller already
owns it. The expiry means a pass that crashed without releasing blocks
others for at most one TTL. This is not a distributed lock: it relies on the
store being shared by every coordinator process.
"""

from __future__ import annotations

import json
import logging
import os
import socket
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Callable, Iterator, Optional

from bulkexport.lib.errors import LockHeldError
from bulkexport.lib.properties import PropertyStore
from bulkexport.lib.time_utils import format_timestamp, parse_timestamp, utc_now

logger = logging.getLogger(__name__)

__all__ = ["LeaseLock", "default_owner"]

LOCK_PREFIX = "lock:"


def default_owner() -> str:
    """Owner id unique to this process invocation."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class LeaseLock:
    """Lease record with expiry, acquired at pass start and released at pass end.

    Example:
        lock = LeaseLock(store, "coordinator", ttl_seconds=600)
        with lock.hold():
            ...  # at most one pass runs here
    """

    def __init__(
        self,
        store: PropertyStore,
        name: str,
        *,
        ttl_seconds: float,
        owner: Optional[str] = None,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.key = f"{LOCK_PREFIX}{name}"
        self.ttl = timedelta(seconds=ttl_seconds)
        self.owner = owner or default_owner()
        self._now = now

    def holder(self) -> Optional[dict]:
        """Return the current unexpired lease, if any."""
        raw = self.store.get(self.key)
        if not raw:
            return None
        try:
            lease = json.loads(raw)
            expires_at = parse_timestamp(lease["expiresAt"])
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            logger.warning("Ignoring unreadable lease %s: %s", self.key, exc)
            return None
        if expires_at <= self._now():
            return None
        return lease

    def acquire(self) -> None:
        """Take the lease.

        Raises:
            LockHeldError: If another owner holds an unexpired lease
        """
        lease = self.holder()
        if lease and lease.get("owner") != self.owner:
            raise LockHeldError(
                f"Lease {self.key} is held by another pass",
                owner=lease.get("owner"),
                expires_at=lease.get("expiresAt"),
                suggestion="Wait for the other pass to finish or for the lease to expire.",
            )

        expires_at = self._now() + self.ttl
        self.store.set(
            self.key,
            json.dumps({"owner": self.owner, "expiresAt": format_timestamp(expires_at)}),
        )
        logger.debug("Acquired lease %s as %s until %s", self.key, self.owner, expires_at)

    def release(self) -> None:
        """Drop the lease if this owner still holds it."""
        raw = self.store.get(self.key)
        if not raw:
            return
        try:
            owner = json.loads(raw).get("owner")
        except (json.JSONDecodeError, AttributeError):
            owner = None
        if owner == self.owner:
            self.store.delete(self.key)
            logger.debug("Released lease %s", self.key)
        else:
            logger.warning(
                "Lease %s was taken over by %s before release", self.key, owner
            )

    @contextmanager
    def hold(self) -> Iterator["LeaseLock"]:
        self.acquire()
        try:
            yield self
        finally:
            self.release()
