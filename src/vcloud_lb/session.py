"""Credential-scoped cache of authenticated backend sessions.

Logging into vCloud Director is slow, so one authenticated session per
distinct credential set is kept for a bounded validity window and handed out
to every caller that presents the same credentials.

CONCURRENCY:
A single mutex guards the session map and the served counter. Authentication
runs outside the mutex so a slow login never blocks unrelated lookups; two
concurrent misses for the same fingerprint may therefore both authenticate,
and the later write wins.
"""

from __future__ import annotations

import hashlib
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_SESSION_VALIDITY = timedelta(minutes=20)


@dataclass(frozen=True)
class Credentials:
    """A credential/endpoint combination that owns one backend session."""

    user: str
    password: str = field(repr=False)
    org: str
    href: str
    vdc: str
    insecure: bool = False

    def fingerprint(self) -> str:
        """Digest identifying this credential set.

        Field order is part of the key: user, password, vdc, org, href.
        """
        raw = "#".join((self.user, self.password, self.vdc, self.org, self.href))
        return hashlib.sha1(raw.encode()).hexdigest()


@dataclass(frozen=True)
class Session:
    """An authenticated handle plus the bookkeeping the cache needs."""

    fingerprint: str
    created_at: datetime
    handle: Any

    def age(self, now: datetime) -> timedelta:
        return now - self.created_at


Authenticator = Callable[[Credentials], Any]


class SessionCache:
    """Maps credential fingerprints to live sessions with a validity window.

    Constructed once at process start and shared by reference, so tests can
    build isolated instances.
    """

    def __init__(
        self,
        authenticate: Authenticator,
        validity: timedelta = DEFAULT_SESSION_VALIDITY,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize an empty cache.

        Args:
            authenticate: Logs into the backend and returns an opaque handle.
                Raises AuthenticationError when credentials are rejected and
                RemoteAPIError on transport failures.
            validity: How long a session is handed out after creation.
            clock: Returns the current time; defaults to UTC wall clock.
        """
        self._authenticate = authenticate
        self._validity = validity
        self._clock = clock or (lambda: datetime.now(UTC))
        self._lock = threading.Lock()
        self._sessions: dict[str, Session] = {}
        self._served_count = 0

    @property
    def validity(self) -> timedelta:
        return self._validity

    @property
    def served_count(self) -> int:
        """Number of lookups answered from the cache."""
        with self._lock:
            return self._served_count

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def get(self, credentials: Credentials, force_refresh: bool = False) -> Session:
        """Return a valid session for ``credentials``, logging in if needed.

        Args:
            credentials: Credential set to look up.
            force_refresh: Discard any cached session and log in again.

        Returns:
            A session younger than the validity window.

        Raises:
            AuthenticationError: If the backend rejects the login. Nothing
                is cached in that case.
        """
        fingerprint = credentials.fingerprint()

        with self._lock:
            cached = self._sessions.get(fingerprint)

        if cached is not None:
            if not force_refresh and cached.age(self._clock()) <= self._validity:
                with self._lock:
                    self._served_count += 1
                return cached

            logger.debug(
                "Invalidating cached session",
                extra={
                    "fingerprint": fingerprint[:8],
                    "forced": force_refresh,
                    "age_seconds": cached.age(self._clock()).total_seconds(),
                },
            )
            with self._lock:
                # Only drop the entry we judged stale, not a fresher one
                if self._sessions.get(fingerprint) is cached:
                    del self._sessions[fingerprint]

        logger.info("Authenticating to backend", extra={"fingerprint": fingerprint[:8]})
        handle = self._authenticate(credentials)

        session = Session(fingerprint=fingerprint, created_at=self._clock(), handle=handle)
        with self._lock:
            self._sessions[fingerprint] = session
        return session

    def reset(self) -> None:
        """Drop every cached session and zero the served counter."""
        with self._lock:
            self._sessions.clear()
            self._served_count = 0
