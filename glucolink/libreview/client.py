"""LibreView (LibreLinkUp) HTTP client.

API base: https://api.libreview.io

Endpoints used:
    POST /llu/auth/login                          — Email/password login
    GET  /llu/connections                         — Patients shared with this account
    GET  /llu/connections/{patientId}/graph       — Recent glucose graph

The graph request is first sent with a custom date range.  If that request
fails, or answers 200 with a body no decode stage understands, it is retried
exactly once without the range ("basic" variant).  Any other non-200 answer
is a ``NetworkError``.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone, tzinfo
from typing import Any, Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx

from glucolink.config import get_settings
from glucolink.libreview.base import AuthTicket, Reading, utc_now
from glucolink.libreview.errors import (
    AuthenticationFailedError,
    InvalidCredentialsError,
    LibreViewError,
    NetworkError,
    error_for_status,
)
from glucolink.libreview.parsing import (
    EnvelopeDecodeError,
    decode_graph_payload,
    parse_auth_ticket,
    parse_connections,
)

logger = logging.getLogger("glucolink.libreview.client")

_LOGIN_PATH = "/llu/auth/login"
_CONNECTIONS_PATH = "/llu/connections"


def resolve_timezone(name: str) -> tzinfo:
    """Return the named IANA zone, falling back to UTC when unknown."""
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r, naive timestamps will be read as UTC", name)
        return timezone.utc


class LibreViewClient:
    """Async client for the LibreLinkUp API.

    Stateless apart from configuration: tokens are passed in by the caller
    (see ``TokenManager``).
    """

    def __init__(
        self,
        base_url: str | None = None,
        product: str | None = None,
        version: str | None = None,
        timeout_seconds: float | None = None,
        local_timezone: str | tzinfo | None = None,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the client.

        Args:
            base_url:        API base (GLUCOLINK_LIBREVIEW_BASE_URL).
            product:         ``Product`` header value.
            version:         ``Version`` header value.
            timeout_seconds: Per-request httpx timeout.
            local_timezone:  Zone (name or tzinfo) for naive upstream timestamps.
            http_client:     Optional pre-configured httpx client (for testing).
            clock:           Time source for timestamp fallback.
        """
        settings = get_settings()
        self._base_url = (base_url or settings.libreview_base_url).rstrip("/")
        self._product = product or settings.libreview_product
        self._version = version or settings.libreview_version
        self._timeout = httpx.Timeout(timeout_seconds or settings.request_timeout_seconds)
        tz = local_timezone or settings.local_timezone
        self._local_tz = resolve_timezone(tz) if isinstance(tz, str) else tz
        self._http_client = http_client
        self._clock = clock

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------

    async def login(self, username: str, password: str) -> AuthTicket:
        """Exchange email/password for a bearer token.

        Args:
            username: LibreView account email.
            password: LibreView account password.

        Returns:
            AuthTicket with the token and server-declared expiry.

        Raises:
            InvalidCredentialsError:   Empty credentials or HTTP 401.
            RateLimitedError:          HTTP 429.
            ServiceUnavailableError:   HTTP 5xx.
            UnknownLibreViewError:     Any other non-200 status.
            NetworkError:              Transport failure or timeout.
            AuthenticationFailedError: 200 body without a usable ticket.
        """
        if not username.strip() or not password:
            raise InvalidCredentialsError("Username or password is empty")

        logger.info("LibreView: logging in")
        response = await self._request(
            "POST", _LOGIN_PATH, json={"email": username.strip(), "password": password}
        )
        if response.status_code != 200:
            raise error_for_status(response.status_code)

        try:
            ticket = parse_auth_ticket(response.json())
        except ValueError as exc:
            raise AuthenticationFailedError(str(exc)) from exc

        logger.info("LibreView: login succeeded (server expiry %s)", ticket.expires_at)
        return ticket

    async def list_connections(self, token: str) -> list[str]:
        """Return the patient ids shared with the logged-in account.

        Raises:
            NetworkError: Non-200 response, transport failure or bad body.
        """
        response = await self._request("GET", _CONNECTIONS_PATH, token=token)
        if response.status_code != 200:
            raise NetworkError(f"Connections request failed (HTTP {response.status_code})")
        try:
            patient_ids = parse_connections(response.json())
        except ValueError as exc:
            raise NetworkError(f"Unreadable connections response: {exc}") from exc
        logger.debug("LibreView: %d connection(s)", len(patient_ids))
        return patient_ids

    async def fetch_readings(
        self,
        patient_id: str,
        token: str,
        start_date: date | None = None,
        end_date: date | None = None,
    ) -> list[Reading]:
        """Fetch the glucose graph for a patient.

        Args:
            patient_id: Id from ``list_connections``.
            token:      Bearer token.
            start_date: First day of the requested window (inclusive).
            end_date:   Last day of the requested window (inclusive).

        Returns:
            Readings sorted newest first, in-batch collisions nudged apart.

        Raises:
            NetworkError: Both the ranged and the basic request failed.
        """
        path = f"{_CONNECTIONS_PATH}/{patient_id}/graph"

        if start_date is not None and end_date is not None:
            params = {
                "period": "custom",
                "startDate": start_date.isoformat(),
                "endDate": end_date.isoformat(),
            }
            try:
                return await self._get_graph(path, token, params)
            except (LibreViewError, EnvelopeDecodeError) as exc:
                logger.warning(
                    "Ranged graph request failed (%s), retrying basic graph request", exc
                )

        try:
            return await self._get_graph(path, token, None)
        except EnvelopeDecodeError as exc:
            raise NetworkError(f"Unreadable graph response: {exc}") from exc

    # ------------------------------------------------------------------
    # Private HTTP helpers
    # ------------------------------------------------------------------

    async def _get_graph(
        self, path: str, token: str, params: dict[str, str] | None
    ) -> list[Reading]:
        response = await self._request("GET", path, token=token, params=params)
        if response.status_code != 200:
            raise NetworkError(f"Graph request failed (HTTP {response.status_code})")
        try:
            payload = response.json()
        except ValueError as exc:
            raise EnvelopeDecodeError(f"graph body is not JSON: {exc}") from exc

        result = decode_graph_payload(payload, self._local_tz, self._clock)
        logger.info(
            "LibreView: fetched %d reading(s) [%s stage, %d skipped]",
            len(result.readings), result.stage.value, result.skipped,
        )
        return result.readings

    def _build_headers(self, token: str | None) -> dict[str, str]:
        """Build the LibreLinkUp request headers.

        Args:
            token: Bearer token, omitted for login.

        Returns:
            Header dict.
        """
        headers = {
            "Content-Type": "application/json",
            "Product": self._product,
            "Version": self._version,
            "Accept-Encoding": "gzip",
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        token: str | None = None,
        params: dict[str, str] | None = None,
        json: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """Send one request, mapping transport failures to NetworkError.

        Raises:
            NetworkError: On connection errors and timeouts.
        """
        url = f"{self._base_url}{path}"
        headers = self._build_headers(token)
        try:
            if self._http_client:
                return await self._http_client.request(
                    method, url, params=params, json=json, headers=headers, timeout=self._timeout
                )
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                return await client.request(method, url, params=params, json=json, headers=headers)
        except httpx.TransportError as exc:
            raise NetworkError(f"{method} {path} failed: {exc.__class__.__name__}") from exc
