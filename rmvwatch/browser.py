"""
Playwright-based browser automation for the RMV appointment site.

Browser-модуль на Playwright:
- один браузер на процесс, отдельная вкладка на каждую попытку по отделению
- вкладка закрывается на любом пути выхода (ошибка, отмена, успех)
- случайные движения мыши и задержки перед кликом
- блокировка тяжёлых ресурсов (картинки, шрифты, медиа)
"""

from __future__ import annotations

import asyncio
import logging
import random
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import AsyncIterator, Optional

from playwright.async_api import (
    Browser,
    BrowserContext,
    ElementHandle,
    Page,
    Playwright,
    Route,
    async_playwright,
)

from .config import DATA_DIR, get_settings
from .models import SessionContext

logger = logging.getLogger(__name__)


STORAGE_STATE_PATH = DATA_DIR / "storage_state.json"

# Браузер пересоздаётся раз в час, чтобы не копить утечки памяти Chromium
MAX_BROWSER_LIFETIME = 3600

BLOCKED_RESOURCE_TYPES = frozenset({"image", "media", "font"})

CAPTCHA_MARKERS = (
    "captcha",
    "verify you are human",
    "checking your browser",
    "cloudflare",
)


@dataclass
class CaptchaDetected(Exception):
    """Raised when Cloudflare / captcha is detected."""

    message: str = "Captcha or Cloudflare protection detected"

    def __str__(self) -> str:
        return self.message


async def human_delay(min_delay: float = 0.3, max_delay: float = 1.2) -> None:
    """Random small delay to mimic human behaviour."""
    await asyncio.sleep(random.uniform(min_delay, max_delay))


async def human_click(page: Page, element: ElementHandle) -> None:
    """Scroll to the element, move the mouse there in a few steps and click."""
    await element.scroll_into_view_if_needed()
    box = await element.bounding_box()
    if not box:
        await element.click()
        return

    # случайная точка внутри элемента, а не строго центр
    target_x = box["x"] + box["width"] * random.uniform(0.3, 0.7)
    target_y = box["y"] + box["height"] * random.uniform(0.3, 0.7)
    start_x = random.uniform(0, target_x)
    start_y = random.uniform(0, target_y)
    await page.mouse.move(start_x, start_y)

    steps = random.randint(5, 12)
    for step in range(steps):
        t = (step + 1) / steps
        await page.mouse.move(start_x + (target_x - start_x) * t, start_y + (target_y - start_y) * t)
        await asyncio.sleep(random.uniform(0.01, 0.05))

    await human_delay(0.05, 0.2)
    await page.mouse.click(target_x, target_y, delay=random.randint(50, 150))


async def check_captcha(page: Page) -> None:
    """
    Try to detect Cloudflare / captcha presence.

    Точная разметка заглушки неизвестна, проверяем типичные признаки в тексте и заголовке.
    """
    title = (await page.title()) or ""
    body_text = (await page.text_content("body")) or ""
    lower = f"{title} {body_text[:5000]}".lower()
    if any(token in lower for token in CAPTCHA_MARKERS):
        logger.warning("Captcha / Cloudflare detected on %s", page.url)
        raise CaptchaDetected()


async def _block_heavy_resources(route: Route) -> None:
    if route.request.resource_type in BLOCKED_RESOURCE_TYPES:
        await route.abort()
    else:
        await route.continue_()


class SiteBrowser:
    """
    High-level wrapper around Playwright for the appointment site.

    Вкладки выдаются через open_page(); счётчик open_pages позволяет
    проверить, что ни одна вкладка не утекла.
    """

    def __init__(
        self,
        *,
        headless: Optional[bool] = None,
        user_agent: Optional[str] = None,
        page_load_timeout: Optional[float] = None,
    ) -> None:
        if headless is None or user_agent is None or page_load_timeout is None:
            settings = get_settings()
            headless = settings.site.headless if headless is None else headless
            user_agent = user_agent or settings.site.user_agent
            page_load_timeout = page_load_timeout or settings.timeouts.page_load_seconds
        self._headless = headless
        self._user_agent = user_agent
        self._page_load_timeout = page_load_timeout
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._startup_ts: Optional[datetime] = None
        self._lock = asyncio.Lock()
        self.open_pages = 0

    async def _ensure_browser(self, reserve: bool = False) -> BrowserContext:
        """
        Ensure browser and context are created.

        Ограничиваем время жизни браузера ~1 час: при превышении пересоздаём,
        но только когда нет открытых вкладок. С reserve=True место под вкладку
        занимается ещё под локом, иначе соседняя корутина может закрыть
        контекст между возвратом отсюда и new_page().
        """
        async with self._lock:
            context = await self._ensure_browser_unlocked()
            if reserve:
                self.open_pages += 1
            return context

    async def _ensure_browser_unlocked(self) -> BrowserContext:
        now = datetime.now(timezone.utc)
        if self._browser and self._startup_ts and self.open_pages == 0:
            lifetime = (now - self._startup_ts).total_seconds()
            if lifetime > MAX_BROWSER_LIFETIME:
                logger.info("Restarting browser after %.0f seconds", lifetime)
                await self._close_unlocked()

        if self._context:
            return self._context

        logger.info("Starting Playwright browser (headless=%s)", self._headless)
        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(
            headless=self._headless,
            args=["--no-sandbox", "--disable-dev-shm-usage"],
        )
        storage_state = STORAGE_STATE_PATH if STORAGE_STATE_PATH.exists() else None
        self._context = await self._browser.new_context(
            viewport={"width": 1366, "height": 768},
            user_agent=self._user_agent,
            storage_state=storage_state,
        )
        self._context.set_default_timeout(self._page_load_timeout * 1000)
        self._startup_ts = now
        return self._context

    @asynccontextmanager
    async def open_page(self, session: Optional[SessionContext] = None) -> AsyncIterator[Page]:
        """
        Yield a fresh page with the session cookies applied.

        Вкладка закрывается ровно один раз при любом выходе из блока.
        """
        context = await self._ensure_browser(reserve=True)
        page: Optional[Page] = None
        try:
            if session and session.cookies:
                await context.add_cookies(
                    [
                        {"name": name, "value": value, "url": session.base_url}
                        for name, value in session.cookies.items()
                    ]
                )
            page = await context.new_page()
            await page.route("**/*", _block_heavy_resources)
            yield page
        finally:
            self.open_pages -= 1
            if page is not None:
                try:
                    await page.close()
                except Exception as e:  # noqa: BLE001
                    logger.warning("Failed to close page: %s", e)

    async def cookies(self, url: str) -> dict[str, str]:
        context = await self._ensure_browser()
        return {c["name"]: c["value"] for c in await context.cookies(url)}

    async def close(self) -> None:
        """Close browser and Playwright, persisting cookies for the next start."""
        async with self._lock:
            await self._close_unlocked()

    async def _close_unlocked(self) -> None:
        logger.info("Closing Playwright browser")
        if self._context:
            try:
                STORAGE_STATE_PATH.parent.mkdir(parents=True, exist_ok=True)
                await self._context.storage_state(path=str(STORAGE_STATE_PATH))
            except Exception as e:  # noqa: BLE001
                logger.warning("Failed to save storage_state: %s", e)
            await self._context.close()
        if self._browser:
            await self._browser.close()
        if self._playwright:
            await self._playwright.stop()

        self._browser = None
        self._context = None
        self._playwright = None
        self._startup_ts = None


__all__ = [
    "CaptchaDetected",
    "SiteBrowser",
    "check_captcha",
    "human_click",
    "human_delay",
]
