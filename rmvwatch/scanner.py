"""
One polling cycle over all configured locations.

Для каждого отделения: сначала быстрый путь (direct replay), при
RemoteProtocolError или несовпадении схемы - откат на LocationSelector +
SlotExtractor в этом же цикле. Ошибка одного отделения не прерывает цикл.
Если сайт сообщил об истечении сессии, оставшиеся отделения этого цикла
не сканируются: токены уже недействительны.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import AsyncContextManager, List, Optional, Protocol, Set, Tuple

from playwright.async_api import Page

from .errors import RemoteProtocolError
from .extractor import SlotExtractor
from .models import ErrorInfo, Location, ScanResult, SessionContext, StrategyName
from .replay import DirectRequestReplayer
from .selector import LocationSelector

logger = logging.getLogger(__name__)


# Не больше двух отделений параллельно, чтобы не попасть под антибот
SCAN_CONCURRENCY = 2
DEFAULT_EXTRACT_TIMEOUT = 10.0


class PageProvider(Protocol):
    def open_page(self, session: Optional[SessionContext] = None) -> AsyncContextManager[Page]:
        ...


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class AppointmentScanner:
    """Runs the fast path and the UI fallback for every location of a session."""

    def __init__(
        self,
        pages: PageProvider,
        *,
        selector: Optional[LocationSelector] = None,
        extractor: Optional[SlotExtractor] = None,
        replayer: Optional[DirectRequestReplayer] = None,
        concurrency: int = SCAN_CONCURRENCY,
        location_delay: Tuple[float, float] = (1.0, 3.0),
        replay_timeout: float = 10.0,
        extract_timeout: float = DEFAULT_EXTRACT_TIMEOUT,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._pages = pages
        self._selector = selector or LocationSelector()
        self._extractor = extractor or SlotExtractor()
        self._replayer = replayer
        self._concurrency = concurrency
        self._location_delay = location_delay
        self._replay_timeout = replay_timeout
        self._extract_timeout = extract_timeout
        # сессии, для которых быстрый путь отключён (сайт сообщил об истечении)
        self._replay_disabled: Set[str] = set()

    def replay_enabled(self, session: SessionContext) -> bool:
        return self._replayer is not None and session.key not in self._replay_disabled

    def forget_session(self, session: SessionContext) -> None:
        """Drop per-session state once the monitor replaced ``session``."""
        self._replay_disabled.discard(session.key)
        if self._replayer is not None:
            self._replayer.forget(session)

    async def scan(self, session: SessionContext) -> List[ScanResult]:
        """Scan every location of ``session``; results follow the configured order."""
        semaphore = asyncio.Semaphore(self._concurrency)
        last = len(session.locations) - 1
        # выставляется первым отделением, узнавшим об истечении сессии
        expired = asyncio.Event()

        async def run(index: int, location: Location) -> ScanResult:
            async with semaphore:
                result = await self.scan_location(session, location, expired=expired)
                if index < last and self._location_delay[1] > 0 and not expired.is_set():
                    await asyncio.sleep(random.uniform(*self._location_delay))
                return result

        results = await asyncio.gather(*(run(i, loc) for i, loc in enumerate(session.locations)))
        ok = sum(1 for r in results if r.success)
        logger.info("Scan finished: %s/%s locations ok", ok, len(results))
        return list(results)

    async def scan_location(
        self,
        session: SessionContext,
        location: Location,
        *,
        expired: Optional[asyncio.Event] = None,
    ) -> ScanResult:
        started = time.monotonic()
        if expired is None:
            expired = asyncio.Event()
        try:
            return await self._scan_location(session, location, started, expired)
        except asyncio.CancelledError:
            raise
        except Exception as e:  # noqa: BLE001
            logger.warning("Scanning %s failed: %r", location.name, e)
            return ScanResult(
                location_id=location.id,
                location_name=location.name,
                success=False,
                elapsed_ms=_elapsed_ms(started),
                error=ErrorInfo(kind=type(e).__name__, message=str(e) or repr(e)),
            )

    async def _scan_location(
        self,
        session: SessionContext,
        location: Location,
        started: float,
        expired: asyncio.Event,
    ) -> ScanResult:
        fallback_reason: Optional[str] = None
        if expired.is_set():
            return self._expired_result(location, started, "session expired earlier in this cycle")

        if self.replay_enabled(session):
            assert self._replayer is not None
            try:
                slots = await asyncio.wait_for(
                    self._replayer.query(session, location),
                    timeout=self._replay_timeout,
                )
            except RemoteProtocolError as e:
                if e.session_expired:
                    self._replay_disabled.add(session.key)
                    expired.set()
                    logger.warning("Session expired while scanning %s: %s", location.name, e)
                    return self._expired_result(location, started, str(e), StrategyName.DIRECT_REPLAY)
                fallback_reason = str(e)
            except asyncio.TimeoutError:
                fallback_reason = f"replay timed out after {self._replay_timeout:.0f}s"
            else:
                return ScanResult(
                    location_id=location.id,
                    location_name=location.name,
                    strategy_used=StrategyName.DIRECT_REPLAY,
                    success=True,
                    slots=slots,
                    elapsed_ms=_elapsed_ms(started),
                )
            logger.info("Replay unusable for %s, falling back to UI: %s", location.name, fallback_reason)
            if expired.is_set():
                return self._expired_result(location, started, "session expired while replay was running")

        async with self._pages.open_page(session) as page:
            outcome = await self._selector.select(session, location, page)
            if not outcome.success or outcome.handle is None:
                error = outcome.error or ErrorInfo(kind="StrategyError", message="no strategy succeeded")
                if fallback_reason:
                    error = error.model_copy(
                        update={"details": [f"direct_replay: {fallback_reason}", *error.details]}
                    )
                logger.warning("No strategy reached the appointment step for %s", location.name)
                return ScanResult(
                    location_id=location.id,
                    location_name=location.name,
                    strategy_used=outcome.strategy_used,
                    success=False,
                    elapsed_ms=_elapsed_ms(started),
                    error=error,
                )
            extraction = await asyncio.wait_for(
                self._extractor.extract(outcome.handle),
                timeout=self._extract_timeout,
            )

        return ScanResult(
            location_id=location.id,
            location_name=location.name,
            strategy_used=outcome.strategy_used,
            success=True,
            slots=extraction.slots,
            skipped_entries=extraction.skipped,
            elapsed_ms=_elapsed_ms(started),
        )

    @staticmethod
    def _expired_result(
        location: Location,
        started: float,
        message: str,
        strategy: Optional[StrategyName] = None,
    ) -> ScanResult:
        return ScanResult(
            location_id=location.id,
            location_name=location.name,
            strategy_used=strategy,
            success=False,
            elapsed_ms=_elapsed_ms(started),
            error=ErrorInfo(kind="RemoteProtocolError", message=message),
            session_expired=True,
        )


__all__ = ["AppointmentScanner", "PageProvider", "SCAN_CONCURRENCY"]
