"""
Location selection: bring a page to the appointment step of one office.

Стратегии выбора отделения перебираются по порядку (UI_A, UI_B, UI_C).
Каждая запускается максимум один раз со своим таймаутом; ошибка стратегии
не повторяется, а передаёт ход следующей. Если не сработала ни одна,
возвращается success=False со списком всех попыток.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional, Sequence
from urllib.parse import quote, urlencode

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page

from .browser import CaptchaDetected, check_captcha, human_click, human_delay
from .errors import StrategyError
from .extractor import APPOINTMENT_STEP_SELECTORS
from .models import ErrorInfo, Location, SessionContext, StrategyName

logger = logging.getLogger(__name__)


DEFAULT_STRATEGY_TIMEOUT = 8.0
CAPTCHA_ERROR_KIND = "CaptchaDetected"

OFFICE_LIST_SELECTORS = (".QflowObjectItem", ".ListView .QflowObjectItem")
CONTINUE_WORDS = ("continue", "next", "submit", "proceed")


@dataclass
class SelectionHandle:
    """Opaque handle: a page that currently shows one office's appointment step."""

    page: Page
    location: Location
    strategy: StrategyName


@dataclass
class StrategyAttempt:
    strategy: StrategyName
    reason: str
    elapsed_ms: int
    captcha: bool = False


@dataclass
class SelectionOutcome:
    success: bool
    strategy_used: Optional[StrategyName] = None
    handle: Optional[SelectionHandle] = None
    error: Optional[ErrorInfo] = None
    attempts: List[StrategyAttempt] = field(default_factory=list)


def appointment_url(session: SessionContext, **params: object) -> str:
    query = {"AccessToken": session.access_token or ""}
    query.update({k: str(v) for k, v in params.items()})
    return f"{session.base_url}?{urlencode(query, quote_via=quote)}"


async def on_appointment_step(page: Page) -> bool:
    for sel in APPOINTMENT_STEP_SELECTORS:
        if await page.query_selector(sel):
            return True
    return False


async def wait_for_appointment_step(page: Page, strategy: StrategyName, timeout_ms: int = 6000) -> None:
    """Wait until the appointment step renders, or fail the strategy."""
    try:
        await page.wait_for_selector(", ".join(APPOINTMENT_STEP_SELECTORS), timeout=timeout_ms)
    except PlaywrightError as e:
        for sel in OFFICE_LIST_SELECTORS:
            if await page.query_selector(sel):
                raise StrategyError(strategy, "still on location selection page") from e
        raise StrategyError(strategy, "appointment step did not render") from e


class SelectionStrategy(ABC):
    """One way of reaching the appointment step for a location."""

    name: StrategyName

    def __init__(self, timeout: float = DEFAULT_STRATEGY_TIMEOUT) -> None:
        self.timeout = timeout

    @abstractmethod
    async def attempt(self, page: Page, session: SessionContext, location: Location) -> SelectionHandle:
        """Return a handle on success, raise StrategyError otherwise."""


class DirectLinkStrategy(SelectionStrategy):
    """UI_A: appointment URL with location query parameters."""

    name = StrategyName.UI_A

    @staticmethod
    def candidate_urls(session: SessionContext, location: Location) -> List[str]:
        return [
            appointment_url(session, locationId=location.id),
            appointment_url(session, StepControls_0__Model_Value=location.id, step=2),
            appointment_url(session, locationId=location.id, StepControls_0__Model_Value=location.id, step=2),
        ]

    async def attempt(self, page: Page, session: SessionContext, location: Location) -> SelectionHandle:
        reasons: List[str] = []
        for url in self.candidate_urls(session, location):
            resp = await page.goto(url, wait_until="domcontentloaded")
            if resp and resp.status >= 400:
                reasons.append(f"HTTP {resp.status}")
                continue
            await check_captcha(page)
            if await on_appointment_step(page):
                logger.info("Direct link reached appointment step for %s", location.name)
                return SelectionHandle(page, location, self.name)
            reasons.append("no appointment step")
        raise StrategyError(self.name, "; ".join(reasons) or "no candidate URLs")


class OfficeClickStrategy(SelectionStrategy):
    """UI_B: open the location step and click the office like a human would."""

    name = StrategyName.UI_B

    async def attempt(self, page: Page, session: SessionContext, location: Location) -> SelectionHandle:
        await page.goto(appointment_url(session), wait_until="domcontentloaded")
        await check_captcha(page)
        await human_delay()

        element = await page.query_selector(f'.QflowObjectItem[data-id="{location.id}"]')
        if element is None:
            # запасной вариант: поиск по названию отделения
            element = await page.query_selector(f'.QflowObjectItem:has-text("{location.name}")')
        if element is None:
            raise StrategyError(self.name, f"office button for {location.name} not found")

        await human_click(page, element)
        await wait_for_appointment_step(page, self.name)
        await check_captcha(page)
        return SelectionHandle(page, location, self.name)


class ContinueButtonStrategy(SelectionStrategy):
    """UI_C: select the office through a script click, then press continue."""

    name = StrategyName.UI_C

    async def attempt(self, page: Page, session: SessionContext, location: Location) -> SelectionHandle:
        await page.goto(appointment_url(session), wait_until="domcontentloaded")
        await check_captcha(page)

        selected = await page.evaluate(
            """id => {
                const el = document.querySelector(`[data-id="${id}"]`);
                if (!el) return false;
                el.dispatchEvent(new MouseEvent('click', {bubbles: true}));
                return true;
            }""",
            str(location.id),
        )
        if not selected:
            raise StrategyError(self.name, f"no element with data-id={location.id}")
        await human_delay(0.5, 1.0)

        if await on_appointment_step(page):
            return SelectionHandle(page, location, self.name)

        for button in await page.query_selector_all('button, input[type="submit"]'):
            text = ((await button.text_content()) or "").strip().lower()
            kind = ((await button.get_attribute("type")) or "").lower()
            if kind == "submit" or any(word in text for word in CONTINUE_WORDS):
                await button.click()
                await wait_for_appointment_step(page, self.name)
                return SelectionHandle(page, location, self.name)
        raise StrategyError(self.name, "no continue/submit control found")


def default_strategies(timeout: float = DEFAULT_STRATEGY_TIMEOUT) -> List[SelectionStrategy]:
    return [
        DirectLinkStrategy(timeout),
        OfficeClickStrategy(timeout),
        ContinueButtonStrategy(timeout),
    ]


class LocationSelector:
    """Runs the ordered strategy list until one succeeds."""

    def __init__(self, strategies: Optional[Sequence[SelectionStrategy]] = None) -> None:
        self.strategies: List[SelectionStrategy] = list(default_strategies() if strategies is None else strategies)

    async def select(self, session: SessionContext, location: Location, page: Page) -> SelectionOutcome:
        attempts: List[StrategyAttempt] = []
        for strategy in self.strategies:
            started = time.monotonic()
            captcha = False
            try:
                handle = await asyncio.wait_for(
                    strategy.attempt(page, session, location),
                    timeout=strategy.timeout,
                )
            except asyncio.TimeoutError:
                reason = f"timed out after {strategy.timeout:.1f}s"
            except StrategyError as e:
                reason = e.reason
            except CaptchaDetected as e:
                reason = str(e)
                captcha = True
            except Exception as e:  # noqa: BLE001
                reason = f"{type(e).__name__}: {e}"
            else:
                logger.info("Location %s selected via %s", location.name, strategy.name.value)
                return SelectionOutcome(
                    success=True,
                    strategy_used=strategy.name,
                    handle=handle,
                    attempts=attempts,
                )

            elapsed = int((time.monotonic() - started) * 1000)
            attempts.append(StrategyAttempt(strategy.name, reason, elapsed, captcha))
            logger.warning(
                "Strategy %s failed for %s after %sms: %s",
                strategy.name.value,
                location.name,
                elapsed,
                reason,
            )
            # небольшая пауза между стратегиями, чтобы не долбить сайт
            await asyncio.sleep(random.uniform(0.0, 0.3))

        details = [f"{a.strategy.value}: {a.reason}" for a in attempts]
        # капча хотя бы в одной стратегии: сайт нас блокирует, а не сменил разметку
        blocked = any(a.captcha for a in attempts)
        return SelectionOutcome(
            success=False,
            strategy_used=attempts[-1].strategy if attempts else None,
            error=ErrorInfo(
                kind=CAPTCHA_ERROR_KIND if blocked else "StrategyError",
                message=f"all {len(attempts)} selection strategies failed for {location.name}",
                details=details,
            ),
            attempts=attempts,
        )


__all__ = [
    "CAPTCHA_ERROR_KIND",
    "ContinueButtonStrategy",
    "DirectLinkStrategy",
    "LocationSelector",
    "OfficeClickStrategy",
    "SelectionHandle",
    "SelectionOutcome",
    "SelectionStrategy",
    "default_strategies",
]
