"""Refresh engine: the single path by which upstream readings reach the store.

One refresh:
1. Publish a neutral PENDING result so observers always see a change
2. Get a valid bearer token (cached or fresh login)
3. Resolve the first LibreLinkUp connection's patient id
4. Fetch the trailing window of readings (newest first)
5. Drop readings whose exact timestamp is already stored
6. Persist the rest, or report "up to date"
7. Rebuild the history view (bucketing, trend, range status)

``refresh()`` never raises.  Every failure becomes ``RefreshResult.error``.
A refresh requested while another is in flight does not start a second sync:
it waits for the running one and returns the same result.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo
from enum import Enum
from pathlib import Path
from typing import Callable

from glucolink.config_loader import MonitoringConfig, get_monitoring_config
from glucolink.derived_metrics import AnnotatedReading, annotate, granularity_bucket
from glucolink.libreview.base import GlucoseUnit, Reading, utc_now
from glucolink.libreview.client import LibreViewClient
from glucolink.libreview.credentials import CredentialStore
from glucolink.libreview.errors import USER_MESSAGES, ErrorKind, LibreViewError
from glucolink.libreview.tokens import TokenManager
from glucolink.store.reading_store import ReadingStore
from glucolink.sync.dedup import DedupeReport, new_readings

logger = logging.getLogger("glucolink.sync.engine")


# ---------------------------------------------------------------------------
# Results and state
# ---------------------------------------------------------------------------


class RefreshOutcome(str, Enum):
    PENDING = "pending"
    UP_TO_DATE = "up_to_date"
    ADDED = "added"
    ERROR = "error"


class EngineState(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"


@dataclass(frozen=True)
class RefreshResult:
    """Outcome of one refresh, as shown to front-ends.

    Attributes:
        outcome:     PENDING while a refresh runs, then one of the final outcomes.
        count:       Readings added (ADDED only).
        error_kind:  Failure kind (ERROR only).
        detail:      Technical detail for logs (ERROR only).
        finished_at: Completion time (None while PENDING).
    """

    outcome: RefreshOutcome
    count: int = 0
    error_kind: ErrorKind | None = None
    detail: str | None = None
    finished_at: datetime | None = None

    @classmethod
    def pending(cls) -> RefreshResult:
        return cls(outcome=RefreshOutcome.PENDING)

    @classmethod
    def up_to_date(cls, at: datetime) -> RefreshResult:
        return cls(outcome=RefreshOutcome.UP_TO_DATE, finished_at=at)

    @classmethod
    def added(cls, count: int, at: datetime) -> RefreshResult:
        return cls(outcome=RefreshOutcome.ADDED, count=count, finished_at=at)

    @classmethod
    def error(cls, kind: ErrorKind, at: datetime, detail: str | None = None) -> RefreshResult:
        return cls(outcome=RefreshOutcome.ERROR, error_kind=kind, detail=detail, finished_at=at)

    @property
    def is_success(self) -> bool:
        return self.outcome in (RefreshOutcome.UP_TO_DATE, RefreshOutcome.ADDED)

    @property
    def is_error(self) -> bool:
        return self.outcome is RefreshOutcome.ERROR

    @property
    def message(self) -> str:
        if self.outcome is RefreshOutcome.ADDED:
            plural = "" if self.count == 1 else "s"
            return f"Successfully added {self.count} new reading{plural}"
        if self.outcome is RefreshOutcome.UP_TO_DATE:
            return "Already up to date with latest readings"
        if self.outcome is RefreshOutcome.ERROR and self.error_kind is not None:
            return f"Error: {USER_MESSAGES[self.error_kind]}"
        return ""


@dataclass(frozen=True)
class HistoryView:
    """Display-ready readings, newest first."""

    readings: list[AnnotatedReading] = field(default_factory=list)
    granularity_minutes: int = 0
    display_unit: GlucoseUnit = GlucoseUnit.MG_DL
    built_at: datetime | None = None

    @property
    def current(self) -> AnnotatedReading | None:
        return self.readings[0] if self.readings else None


@dataclass(frozen=True)
class CleanupResult:
    backup_path: Path
    report: DedupeReport


RefreshObserver = Callable[[RefreshResult], None]


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class SyncEngine:
    """Coordinates token, client, store and derived metrics for refreshes.

    Usage::

        engine = SyncEngine(client, tokens, store, credentials)
        await engine.startup()
        result = await engine.refresh()
        engine.history.current
    """

    def __init__(
        self,
        client: LibreViewClient,
        tokens: TokenManager,
        store: ReadingStore,
        credentials: CredentialStore,
        config: MonitoringConfig | None = None,
        local_tz: tzinfo = timezone.utc,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the engine.

        Args:
            client:      Upstream LibreView client.
            tokens:      Token cache used for every request.
            store:       Reading store (the only writer is this engine).
            credentials: Cleared when the upstream rejects the credentials.
            config:      Monitoring config; the global singleton by default.
            local_tz:    Zone for the fetch window and history buckets.
            clock:       Time source.
        """
        self._client = client
        self._tokens = tokens
        self._store = store
        self._credentials = credentials
        self._config = config or get_monitoring_config()
        self._local_tz = local_tz
        self._clock = clock

        self._state = EngineState.IDLE
        self._last_result = RefreshResult.pending()
        self._history = HistoryView(
            granularity_minutes=self._config.display.granularity_minutes,
            display_unit=self._config.display.unit,
        )
        self._retry_not_before: datetime | None = None
        self._inflight: asyncio.Future[RefreshResult] | None = None
        self._observers: list[RefreshObserver] = []

    # ------------------------------------------------------------------
    # Observable state
    # ------------------------------------------------------------------

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def last_result(self) -> RefreshResult:
        return self._last_result

    @property
    def history(self) -> HistoryView:
        return self._history

    @property
    def config(self) -> MonitoringConfig:
        return self._config

    @property
    def local_tz(self) -> tzinfo:
        return self._local_tz

    @property
    def retry_not_before(self) -> datetime | None:
        return self._retry_not_before

    def in_backoff(self, now: datetime | None = None) -> bool:
        """True while a throttling failure forbids another upstream attempt."""
        if self._retry_not_before is None:
            return False
        return (now or self._clock()) < self._retry_not_before

    def subscribe(self, observer: RefreshObserver) -> Callable[[], None]:
        """Register a callback for every published result.

        Returns:
            A function that removes the callback.
        """
        self._observers.append(observer)

        def _unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return _unsubscribe

    def _publish(self, result: RefreshResult) -> None:
        self._last_result = result
        for observer in list(self._observers):
            try:
                observer(result)
            except Exception:
                logger.exception("Refresh observer %r failed", observer)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def startup(self) -> DedupeReport | None:
        """One-time self-check: repair duplicates in a large store, then build the view.

        Returns:
            The DedupeReport when a repair ran, else None.
        """
        report = None
        count = await asyncio.to_thread(self._store.count)
        threshold = self._config.store.dedupe_threshold
        if count > threshold:
            logger.warning(
                "Store holds %d readings (threshold %d), running dedupe before first view",
                count, threshold,
            )
            report = await asyncio.to_thread(self._store.dedupe)
        await self.reload_view()
        return report

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def refresh(self) -> RefreshResult:
        """Run one refresh, or join the one already in flight.

        Returns:
            The final RefreshResult.  Never raises.
        """
        if self._inflight is not None and not self._inflight.done():
            logger.debug("Refresh already in flight, joining it")
            return await asyncio.shield(self._inflight)

        self._inflight = asyncio.ensure_future(self._run_refresh())
        # Shielded so a cancelled caller never cancels the sync itself
        return await asyncio.shield(self._inflight)

    async def _run_refresh(self) -> RefreshResult:
        self._state = EngineState.SYNCING
        self._publish(RefreshResult.pending())

        try:
            result = await self._sync()
        except LibreViewError as exc:
            result = self._handle_upstream_error(exc)
        except Exception as exc:
            logger.exception("Refresh failed unexpectedly")
            result = RefreshResult.error(ErrorKind.UNKNOWN, self._clock(), detail=str(exc))

        try:
            await self.reload_view()
        except Exception:
            logger.exception("Could not rebuild history view after refresh")

        self._state = EngineState.IDLE
        self._publish(result)
        logger.info("Refresh finished: %s", result.message)
        return result

    async def _sync(self) -> RefreshResult:
        token = await self._tokens.get_valid_token()

        patient_ids = await self._client.list_connections(token)
        if not patient_ids:
            logger.warning("No LibreLinkUp connections on this account, nothing to fetch")
            fetched: list[Reading] = []
        else:
            end_date = self._clock().astimezone(self._local_tz).date()
            start_date = end_date - timedelta(days=self._config.sync.window_days)
            fetched = await self._client.fetch_readings(
                patient_ids[0], token, start_date=start_date, end_date=end_date
            )

        existing = await asyncio.to_thread(self._store.timestamp_keys)
        fresh = new_readings(fetched, existing)
        now = self._clock()
        if not fresh:
            logger.info("Fetched %d reading(s), none new", len(fetched))
            return RefreshResult.up_to_date(now)

        inserted = await asyncio.to_thread(self._store.insert_new, fresh)
        if not inserted:
            logger.info("Fetched %d reading(s), every second already stored", len(fetched))
            return RefreshResult.up_to_date(now)
        return RefreshResult.added(inserted, now)

    def _handle_upstream_error(self, exc: LibreViewError) -> RefreshResult:
        now = self._clock()
        if exc.kind is ErrorKind.INVALID_CREDENTIALS:
            logger.warning("LibreView rejected the stored credentials, clearing them")
            self._credentials.clear()
            self._tokens.invalidate()
        elif exc.requires_backoff:
            self._retry_not_before = now + self._config.sync.retry_backoff
            logger.warning(
                "LibreView %s, next attempt not before %s",
                exc.kind.value, self._retry_not_before.isoformat(),
            )
        else:
            logger.warning("Refresh failed: %s (%s)", exc.kind.value, exc)
        return RefreshResult.error(exc.kind, now, detail=exc.detail)

    # ------------------------------------------------------------------
    # History view and maintenance
    # ------------------------------------------------------------------

    def build_history(
        self, readings: list[Reading], granularity_minutes: int | None = None
    ) -> HistoryView:
        """Apply bucketing and annotation to stored readings (pure)."""
        minutes = (
            self._config.display.granularity_minutes
            if granularity_minutes is None
            else granularity_minutes
        )
        display = self._config.display
        bucketed = granularity_bucket(readings, minutes, self._local_tz)
        annotated = annotate(
            bucketed,
            low=self._config.thresholds.low,
            high=self._config.thresholds.high,
            display_unit=display.unit,
            lookback=timedelta(minutes=self._config.trend.lookback_minutes),
            stable_rate=self._config.trend.stable_rate_mgdl_per_min,
        )
        return HistoryView(
            readings=annotated,
            granularity_minutes=minutes,
            display_unit=display.unit,
            built_at=self._clock(),
        )

    async def reload_view(self) -> HistoryView:
        readings = await asyncio.to_thread(self._store.fetch_all)
        self._history = self.build_history(readings)
        return self._history

    async def cleanup_duplicates(self, backup_dir: Path) -> CleanupResult:
        """Back up the database, repair duplicates, rebuild the view."""
        backup_path = await asyncio.to_thread(self._store.backup, backup_dir)
        report = await asyncio.to_thread(self._store.dedupe)
        await self.reload_view()
        logger.info(
            "Cleanup kept %d reading(s), removed %d (backup %s)",
            report.survivor_count, report.removed_count, backup_path,
        )
        return CleanupResult(backup_path=backup_path, report=report)

    async def clear_all_data(self) -> bool:
        deleted = await asyncio.to_thread(self._store.delete_all)
        await self.reload_view()
        return deleted
