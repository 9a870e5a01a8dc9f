"""Credential storage for the LibreView account.

The sync core only depends on the ``CredentialStore`` protocol.  The process
ships with an in-memory store seeded from settings; an OS keychain backend
can be plugged in by implementing the same three methods.
"""

from __future__ import annotations

import logging
import threading
from typing import Protocol

from glucolink.config import Settings
from glucolink.libreview.base import Credentials
from glucolink.libreview.errors import NoCredentialsError

logger = logging.getLogger("glucolink.libreview.credentials")


class CredentialStore(Protocol):
    def get(self) -> Credentials:
        """Return stored credentials or raise NoCredentialsError."""
        ...

    def set(self, username: str, password: str) -> None:
        ...

    def clear(self) -> None:
        ...


class InMemoryCredentialStore:
    """Thread-safe process-local credential store."""

    def __init__(self, username: str = "", password: str = "") -> None:
        self._lock = threading.Lock()
        self._credentials: Credentials | None = None
        if username or password:
            self._credentials = Credentials(username=username, password=password)

    @classmethod
    def from_settings(cls, settings: Settings) -> InMemoryCredentialStore:
        """Seed from ``GLUCOLINK_LIBREVIEW_USERNAME`` / ``_PASSWORD``."""
        return cls(settings.libreview_username, settings.libreview_password)

    def get(self) -> Credentials:
        with self._lock:
            if self._credentials is None:
                raise NoCredentialsError()
            return self._credentials

    def set(self, username: str, password: str) -> None:
        with self._lock:
            self._credentials = Credentials(username=username.strip(), password=password)
        logger.info("Stored LibreView credentials for %s", username.strip())

    def clear(self) -> None:
        with self._lock:
            self._credentials = None
        logger.info("Cleared LibreView credentials")

    @property
    def has_credentials(self) -> bool:
        with self._lock:
            return self._credentials is not None
