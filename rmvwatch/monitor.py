"""
Monitoring loop for RMV appointment slots.

Сервис мониторинга в фоне:
- состояния IDLE -> RUNNING -> (PAUSED | STOPPED)
- следующий тик планируется от конца предыдущего, тики не пересекаются
- реестр уже виденных слотов по отделениям, прошедшие даты вычищаются
- ошибки тика не роняют цикл, интервал растёт при серии ошибок
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from datetime import date, datetime, timezone
from typing import Awaitable, Callable, Deque, Dict, List, Optional

from .errors import AlreadyRunning, ExtractionError, NotRunning
from .models import (
    AppointmentSlot,
    MonitorOptions,
    MonitorPhase,
    MonitorState,
    RecipientConfig,
    ScanResult,
    SessionContext,
)
from .notify import DispatchReport, NotificationDispatcher
from .scanner import AppointmentScanner
from .selector import CAPTCHA_ERROR_KIND, appointment_url
from .utils import jitter_delay

logger = logging.getLogger(__name__)


HISTORY_LIMIT = 200
# Пауза после капчи на всех отделениях сразу, как при ручном решении в браузере
CAPTCHA_COOLDOWN = 600.0

SessionFactory = Callable[[], Awaitable[SessionContext]]


class SeenSlotRegistry:
    """
    Slots already surfaced to the user, per location.

    Хранится rawKey -> дата слота, чтобы можно было чистить прошедшие даты.
    Меняется только из тика монитора, блокировки не нужны.
    """

    def __init__(self) -> None:
        self._seen: Dict[int, Dict[str, date]] = {}

    def __contains__(self, slot: object) -> bool:
        if not isinstance(slot, AppointmentSlot):
            return False
        return slot.raw_key in self._seen.get(slot.location_id, {})

    def __len__(self) -> int:
        return sum(len(bucket) for bucket in self._seen.values())

    def add(self, slot: AppointmentSlot) -> bool:
        bucket = self._seen.setdefault(slot.location_id, {})
        if slot.raw_key in bucket:
            return False
        bucket[slot.raw_key] = slot.date
        return True

    def keys(self, location_id: int) -> set[str]:
        return set(self._seen.get(location_id, {}))

    def prune(self, today: date) -> int:
        """Forget slots dated before ``today``; returns how many were dropped."""
        removed = 0
        for location_id in list(self._seen):
            bucket = self._seen[location_id]
            for key in [k for k, d in bucket.items() if d < today]:
                del bucket[key]
                removed += 1
            if not bucket:
                del self._seen[location_id]
        return removed

    def clear(self) -> None:
        self._seen.clear()


def _blocked_by_captcha(results: List[ScanResult]) -> bool:
    return bool(results) and all(
        not r.success and r.error is not None and r.error.kind == CAPTCHA_ERROR_KIND for r in results
    )


class MonitorLoop:
    """One monitor: one session, one registry, one background task."""

    def __init__(
        self,
        scanner: AppointmentScanner,
        dispatcher: NotificationDispatcher,
        options: MonitorOptions,
        recipients: RecipientConfig,
        *,
        session_factory: Optional[SessionFactory] = None,
        booking_url: str = "",
        session_max_age: float = 1800.0,
        refresh_timeout: float = 90.0,
        stop_timeout: float = 30.0,
        today: Callable[[], date] = date.today,
        history_limit: int = HISTORY_LIMIT,
        captcha_cooldown: float = CAPTCHA_COOLDOWN,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._scanner = scanner
        self._dispatcher = dispatcher
        self._options = options
        self._preferences = options.preferences
        self._recipients = recipients.model_copy(update={"channels": list(options.channels)})
        self._location_names = {loc.id: loc.name for loc in options.locations}
        self._session_factory = session_factory
        self._booking_url = booking_url
        self._session_max_age = session_max_age
        self._refresh_timeout = refresh_timeout
        self._stop_timeout = stop_timeout
        self._today = today
        self._captcha_cooldown = captcha_cooldown
        self._clock = clock

        self._state = MonitorState()
        self._registry = SeenSlotRegistry()
        self._history: Deque[ScanResult] = deque(maxlen=history_limit)
        self._session: Optional[SessionContext] = None
        self._session_expired = False
        self._interval = float(options.poll_interval_seconds)
        self._consecutive_errors = 0
        self._captcha_until: Optional[float] = None
        self._task: Optional[asyncio.Task[None]] = None
        self._stop_event = asyncio.Event()
        self._resume_event = asyncio.Event()
        self.last_report: Optional[DispatchReport] = None

    # region state for display
    @property
    def state(self) -> MonitorState:
        return self._state

    @property
    def phase(self) -> MonitorPhase:
        return self._state.phase

    @property
    def history(self) -> List[ScanResult]:
        return list(self._history)

    @property
    def registry(self) -> SeenSlotRegistry:
        return self._registry

    @property
    def registry_size(self) -> int:
        return len(self._registry)

    @property
    def session(self) -> Optional[SessionContext]:
        return self._session

    @property
    def consecutive_errors(self) -> int:
        return self._consecutive_errors

    def captcha_cooldown_remaining(self) -> float:
        if self._captcha_until is None:
            return 0.0
        return max(0.0, self._captcha_until - self._clock())

    # endregion

    # region state machine
    def start(self, session: Optional[SessionContext] = None, interval_seconds: Optional[float] = None) -> None:
        """
        Start the background loop.

        Вызывается из работающего event loop. Повторный старт -> AlreadyRunning.
        """
        if self._state.phase in (MonitorPhase.RUNNING, MonitorPhase.PAUSED):
            raise AlreadyRunning("monitor is already running")
        if session is None and self._session_factory is None:
            raise ValueError("either a session or a session_factory is required")
        if interval_seconds is not None:
            if interval_seconds <= 0:
                raise ValueError("interval_seconds must be positive")
            self._interval = float(interval_seconds)

        if self._state.phase is MonitorPhase.STOPPED:
            self._registry.clear()
            self._history.clear()

        self._session = session
        self._session_expired = False
        self._consecutive_errors = 0
        self._captcha_until = None
        self._stop_event.clear()
        self._resume_event.set()
        self._state.phase = MonitorPhase.RUNNING
        self._state.last_error = None
        self._task = asyncio.get_running_loop().create_task(self._run(), name="rmv-monitor-loop")
        logger.info("Monitor started for %s locations", len(self._options.locations))

    async def stop(self) -> None:
        """Stop the loop; an in-flight tick may finish its remote calls but its results are dropped."""
        if self._state.phase not in (MonitorPhase.RUNNING, MonitorPhase.PAUSED) or self._task is None:
            raise NotRunning("monitor is not running")
        self._state.phase = MonitorPhase.STOPPED
        self._stop_event.set()
        self._resume_event.set()
        task, self._task = self._task, None

        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=self._stop_timeout)
        except asyncio.TimeoutError:
            logger.warning("Monitor task did not stop within %.0fs, cancelling", self._stop_timeout)
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        logger.info("Monitor stopped")

    def pause(self) -> None:
        if self._state.phase is not MonitorPhase.RUNNING:
            raise NotRunning(f"cannot pause a {self._state.phase.value} monitor")
        self._state.phase = MonitorPhase.PAUSED
        self._resume_event.clear()
        logger.info("Monitor paused")

    def resume(self) -> None:
        if self._state.phase is not MonitorPhase.PAUSED:
            raise NotRunning(f"cannot resume a {self._state.phase.value} monitor")
        self._state.phase = MonitorPhase.RUNNING
        self._resume_event.set()
        logger.info("Monitor resumed")

    async def join(self) -> None:
        """Wait for the background task to finish."""
        if self._task is not None:
            await asyncio.shield(self._task)

    # endregion

    def _cancelled(self) -> bool:
        return self._stop_event.is_set()

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            if not self._resume_event.is_set():
                await self._resume_event.wait()
                continue

            try:
                await self.tick()
            except Exception as e:  # noqa: BLE001
                logger.exception("Unexpected error in monitor loop: %s", e)
                self._state.last_error = str(e) or repr(e)
                self._consecutive_errors += 1

            delay = jitter_delay(self._interval, self._options.poll_interval_variation)
            # Увеличиваем интервал при частых ошибках, чтобы не флудить сайт
            if self._consecutive_errors:
                delay *= min(5, 1 + self._consecutive_errors)
            remaining = self.captcha_cooldown_remaining()
            if remaining > delay:
                logger.warning("Captcha cooldown active for %.0f seconds", remaining)
                delay = remaining
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                continue
        logger.info("Monitor loop finished")

    async def _ensure_session(self) -> SessionContext:
        session = self._session
        if session is not None and not self._session_expired and session.age_seconds() <= self._session_max_age:
            return session
        if self._session_factory is None:
            if session is None or self._session_expired:
                raise ExtractionError("session expired and no session factory is configured")
            logger.warning("Session is %.0fs old and cannot be refreshed", session.age_seconds())
            return session

        reason = "initial" if session is None else ("expired" if self._session_expired else "stale")
        logger.info("Refreshing session (%s)", reason)
        try:
            fresh = await asyncio.wait_for(self._session_factory(), timeout=self._refresh_timeout)
        except asyncio.TimeoutError as e:
            raise ExtractionError(f"session refresh took longer than {self._refresh_timeout:.0f}s") from e
        if session is not None:
            self._scanner.forget_session(session)
        self._session = fresh
        self._session_expired = False
        return fresh

    async def tick(self) -> List[AppointmentSlot]:
        """Run one scan-and-notify cycle; returns the slots that were notified."""
        if self._cancelled():
            return []
        remaining = self.captcha_cooldown_remaining()
        if remaining > 0:
            logger.warning("Skipping check, captcha cooldown for another %.0f seconds", remaining)
            return []
        self._state.checks_count += 1
        self._state.last_check_at = datetime.now(timezone.utc)

        try:
            session = await self._ensure_session()
        except ExtractionError as e:
            logger.error("Session refresh failed, skipping this tick: %s", e)
            self._state.last_error = str(e)
            self._consecutive_errors += 1
            return []
        if self._cancelled():
            return []

        results = await self._scanner.scan(session)
        if self._cancelled():
            logger.info("Monitor stopped during scan, discarding %s results", len(results))
            return []

        today = self._today()
        matches = self.process_results(results, today)
        pruned = self._registry.prune(today)
        if pruned:
            logger.debug("Pruned %s past slots from registry", pruned)

        if any(r.session_expired for r in results):
            self._session_expired = True
        failed = [r for r in results if not r.success]
        self._state.last_error = (
            "; ".join(f"{r.location_name or r.location_id}: {r.error.message if r.error else 'failed'}" for r in failed)
            or None
        )
        if results and not any(r.success for r in results):
            self._consecutive_errors += 1
        else:
            self._consecutive_errors = 0
        if _blocked_by_captcha(results):
            self._captcha_until = self._clock() + self._captcha_cooldown
            logger.warning("Captcha on every location, pausing checks for %.0f seconds", self._captcha_cooldown)

        if not matches:
            logger.info("No new matching slots on this check (registry size %s)", len(self._registry))
            return []

        self._state.slots_found_total += len(matches)
        logger.info("Found %s new matching slots, notifying", len(matches))
        report = await self._dispatcher.notify(
            self._recipients,
            matches,
            location_names=self._location_names,
            booking_url=self._booking_url or appointment_url(session),
            cancel=self._stop_event,
        )
        self.last_report = report
        self._state.notifications_sent += len(report.succeeded)
        self._state.last_dispatch = report.summary()
        return matches

    def process_results(self, results: List[ScanResult], today: date) -> List[AppointmentSlot]:
        """
        Register unseen slots and return those matching the preferences.

        Синхронно и без ожиданий: единственный писатель реестра - тик.
        Слоты с прошедшей датой отбрасываются до сравнения.
        """
        matches: List[AppointmentSlot] = []
        for result in results:
            self._history.append(result)
            if not result.success:
                continue
            for slot in result.slots:
                if slot.date < today or slot in self._registry:
                    continue
                self._registry.add(slot)
                if self._preferences.matches(slot):
                    matches.append(slot)
                else:
                    logger.debug("Slot %s outside preferences, remembered only", slot.raw_key)
        return matches


__all__ = ["CAPTCHA_COOLDOWN", "HISTORY_LIMIT", "MonitorLoop", "SeenSlotRegistry", "SessionFactory"]
