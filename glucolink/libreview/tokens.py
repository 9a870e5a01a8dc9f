"""Bearer token cache for the LibreView session.

The server's declared expiry is ignored for validity: a token is reused for a
fixed client-side lifetime (50 minutes by default) and then replaced by a new
login.  Logins are single-flight, so concurrent callers never log in twice.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable

from glucolink.libreview.base import AuthSession, utc_now
from glucolink.libreview.client import LibreViewClient
from glucolink.libreview.credentials import CredentialStore
from glucolink.libreview.errors import LibreViewError

logger = logging.getLogger("glucolink.libreview.tokens")

DEFAULT_TOKEN_LIFETIME = timedelta(minutes=50)


class TokenManager:
    """Owns the cached ``AuthSession``; the only state it mutates."""

    def __init__(
        self,
        client: LibreViewClient,
        credentials: CredentialStore,
        lifetime: timedelta = DEFAULT_TOKEN_LIFETIME,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._client = client
        self._credentials = credentials
        self._lifetime = lifetime
        self._clock = clock
        self._session: AuthSession | None = None
        self._login_lock = asyncio.Lock()

    @property
    def session(self) -> AuthSession | None:
        return self._session

    def has_valid_session(self) -> bool:
        return self._session is not None and self._session.is_valid(self._clock())

    async def get_valid_token(self) -> str:
        """Return a cached token, logging in again once it has expired.

        Returns:
            Bearer token valid for at least the rest of its cached lifetime.

        Raises:
            NoCredentialsError:      Nothing in the credential store.
            InvalidCredentialsError: Login rejected.
            RateLimitedError:        Login throttled (HTTP 429).
            ServiceUnavailableError: Login answered 5xx.
            LibreViewError:          Any other login failure.
        """
        session = self._session
        if session is not None and session.is_valid(self._clock()):
            return session.token

        async with self._login_lock:
            # Another caller may have logged in while we waited
            session = self._session
            if session is not None and session.is_valid(self._clock()):
                return session.token

            credentials = self._credentials.get()
            ticket = await self._client.login(credentials.username, credentials.password)
            issued_at = self._clock()
            self._session = AuthSession(
                token=ticket.token,
                issued_at=issued_at,
                expires_at=issued_at + self._lifetime,
                server_expires_at=ticket.expires_at,
            )
            logger.info(
                "Cached LibreView token until %s (server expiry %s)",
                self._session.expires_at.isoformat(),
                ticket.expires_at.isoformat() if ticket.expires_at else "unknown",
            )
            return ticket.token

    def invalidate(self) -> None:
        """Drop the cached session so the next call logs in again."""
        if self._session is not None:
            logger.info("Invalidated cached LibreView token")
        self._session = None

    async def check_authentication(self) -> bool:
        """Force a fresh login with the stored credentials.

        Returns:
            True if the login succeeded, False on any LibreView failure.
        """
        self.invalidate()
        try:
            await self.get_valid_token()
        except LibreViewError as exc:
            logger.warning("Credential check failed: %s", exc.kind.value)
            return False
        return True
