"""LibreView (LibreLinkUp) integration.

Modules:
    base        — Canonical Reading / AuthSession / profile models and unit conversion
    errors      — Failure taxonomy (ErrorKind + LibreViewError subclasses)
    parsing     — Tagged decode pipeline for graph payloads, timestamp parsing
    client      — httpx client for login, connections and graph endpoints
    tokens      — 50-minute bearer token cache with single-flight login
    credentials — CredentialStore protocol and in-memory implementation
"""

from glucolink.libreview.base import (
    AuthSession,
    AuthTicket,
    Credentials,
    GlucoseUnit,
    InsulinShot,
    PatientProfile,
    Reading,
)
from glucolink.libreview.errors import ErrorKind, LibreViewError

__all__ = [
    "AuthSession",
    "AuthTicket",
    "Credentials",
    "ErrorKind",
    "GlucoseUnit",
    "InsulinShot",
    "LibreViewError",
    "PatientProfile",
    "Reading",
]
