"""
Session extraction: appointment URL + postal code -> SessionContext.

Открываем персональную ссылку записи, забираем токены, куки, предзаполненные
данные пользователя и список отделений. Любая проблема -> ExtractionError.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import parse_qs, urlparse

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page

from .browser import CaptchaDetected, SiteBrowser, check_captcha
from .errors import ExtractionError
from .models import Location, PersonalInfo, SessionContext, TimePreferences
from .utils import backoff_delay

logger = logging.getLogger(__name__)


APPOINTMENT_PATH_RE = re.compile(r"^/Appointment/Index/[0-9a-fA-F-]{36}/?$")
OFFICE_SELECTOR = ".QflowObjectItem[data-id]"
LOAD_ATTEMPTS = 2

_OFFICES_JS = """
els => els.map(el => ({
    id: el.getAttribute('data-id'),
    name: (el.textContent || '').trim().split('\\n')[0].trim(),
}))
"""

_PERSONAL_JS = """
() => {
    const pick = (sels) => {
        for (const sel of sels) {
            const el = document.querySelector(sel);
            if (el && el.value && el.value.trim()) return el.value.trim();
        }
        return null;
    };
    return {
        first_name: pick(['input[name*="FirstName"]', 'input[id*="FirstName"]']),
        last_name: pick(['input[name*="LastName"]', 'input[id*="LastName"]']),
        email: pick(['input[type="email"]', 'input[name*="Email"]']),
        phone: pick(['input[type="tel"]', 'input[name*="Phone"]']),
    };
}
"""

_HIDDEN_TOKENS_JS = """
() => {
    const out = {};
    for (const name of ['formJourney', '__RequestVerificationToken']) {
        const el = document.querySelector(`input[name="${name}"]`);
        if (el && el.value) out[name] = el.value;
    }
    return out;
}
"""


def parse_appointment_url(url: str) -> tuple[str, str]:
    """
    Validate a personal appointment URL and return ``(base_url, access_token)``.

    Ожидаемый вид: https://<host>/Appointment/Index/<guid>?AccessToken=<token>
    """
    if not url or not url.strip():
        raise ExtractionError("Appointment URL is empty")
    parsed = urlparse(url.strip())
    if parsed.scheme != "https" or not parsed.netloc:
        raise ExtractionError(f"Appointment URL must be an https URL: {url!r}")
    if not APPOINTMENT_PATH_RE.match(parsed.path):
        raise ExtractionError(f"Unexpected appointment URL path: {parsed.path!r}")
    tokens = parse_qs(parsed.query).get("AccessToken") or []
    if not tokens or not tokens[0].strip():
        raise ExtractionError("Appointment URL has no AccessToken parameter")
    base_url = f"{parsed.scheme}://{parsed.netloc}{parsed.path.rstrip('/')}"
    return base_url, tokens[0].strip()


def offices_to_locations(raw: Sequence[Dict[str, Any]]) -> List[Location]:
    """Convert scraped office buttons into locations, skipping junk entries."""
    locations: List[Location] = []
    seen: set[int] = set()
    for item in raw:
        try:
            loc_id = int(str(item.get("id", "")).strip())
        except ValueError:
            continue
        name = str(item.get("name") or "").strip()
        if not name or loc_id in seen:
            continue
        seen.add(loc_id)
        locations.append(Location(id=loc_id, name=name))
    return locations


def personal_from_raw(raw: Optional[Dict[str, Any]]) -> PersonalInfo:
    raw = raw or {}
    return PersonalInfo(**{k: v for k, v in raw.items() if k in PersonalInfo.model_fields and v})


class SessionExtractor:
    """Builds SessionContext objects from a personal appointment URL."""

    def __init__(self, browser: SiteBrowser, *, timeout: float = 30.0) -> None:
        self._browser = browser
        self._timeout = timeout

    async def extract(
        self,
        url: str,
        zip_code: str,
        locations: Sequence[Location],
        preferences: TimePreferences,
    ) -> SessionContext:
        base_url, access_token = parse_appointment_url(url)
        logger.info("Extracting session from %s", base_url)
        try:
            snapshot = await asyncio.wait_for(self._load(base_url, access_token), timeout=self._timeout)
        except CaptchaDetected as e:
            raise ExtractionError(f"Captcha on appointment page: {e}") from e
        except asyncio.TimeoutError as e:
            raise ExtractionError(f"Appointment page did not load within {self._timeout:.0f}s") from e
        except PlaywrightError as e:
            raise ExtractionError(f"Appointment site unreachable: {e}") from e

        offices = offices_to_locations(snapshot["offices"])
        if not offices:
            raise ExtractionError("No offices found on the location step, page structure changed?")
        known = {o.id for o in offices}
        missing = [loc.name for loc in locations if loc.id not in known]
        if missing:
            logger.warning("Configured locations not offered by the site: %s", ", ".join(missing))

        personal = personal_from_raw({**snapshot["personal"], "zip_code": zip_code})
        tokens = {"AccessToken": access_token, **snapshot["hidden"]}
        session = SessionContext(
            base_url=base_url,
            session_tokens=tokens,
            cookies=snapshot["cookies"],
            personal_info=personal,
            locations=list(locations),
            preferences=preferences,
        )
        logger.info(
            "Session extracted: %s offices on site, %s tokens, %s cookies",
            len(offices),
            len(tokens),
            len(session.cookies),
        )
        return session

    async def discover_locations(self, url: str) -> List[Location]:
        """List every office the location step offers."""
        base_url, access_token = parse_appointment_url(url)
        try:
            snapshot = await asyncio.wait_for(self._load(base_url, access_token), timeout=self._timeout)
        except (CaptchaDetected, asyncio.TimeoutError, PlaywrightError) as e:
            raise ExtractionError(f"Could not load location step: {e}") from e
        return offices_to_locations(snapshot["offices"])

    async def _load(self, base_url: str, access_token: str) -> Dict[str, Any]:
        # сетевые сбои Playwright повторяем, капчу и HTTP-ошибки - нет
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self._load_once(base_url, access_token)
            except PlaywrightError as e:
                if attempt >= LOAD_ATTEMPTS:
                    raise
                delay = backoff_delay(attempt, 3.0, 10.0)
                logger.warning("Appointment page failed to load (%s), retrying in %.0fs", e, delay)
                await asyncio.sleep(delay)

    async def _load_once(self, base_url: str, access_token: str) -> Dict[str, Any]:
        url = f"{base_url}?AccessToken={access_token}"
        async with self._browser.open_page() as page:
            resp = await page.goto(url, wait_until="domcontentloaded")
            if resp and resp.status >= 400:
                raise ExtractionError(f"Appointment page returned HTTP {resp.status}")
            await check_captcha(page)
            offices = await self._offices(page)
            return {
                "offices": offices,
                "personal": await page.evaluate(_PERSONAL_JS),
                "hidden": await page.evaluate(_HIDDEN_TOKENS_JS),
                "cookies": await self._browser.cookies(base_url),
            }

    async def _offices(self, page: Page) -> List[Dict[str, Any]]:
        try:
            await page.wait_for_selector(OFFICE_SELECTOR, timeout=10000)
        except PlaywrightError:
            return []
        return await page.eval_on_selector_all(OFFICE_SELECTOR, _OFFICES_JS)


__all__ = ["SessionExtractor", "parse_appointment_url", "offices_to_locations"]
