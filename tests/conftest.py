from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from datetime import date, time as dtime
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import pytest

from rmvwatch.browser import CaptchaDetected
from rmvwatch.config import get_settings
from rmvwatch.errors import ProviderError, StrategyError
from rmvwatch.extractor import Extraction
from rmvwatch.models import (
    AppointmentSlot,
    Location,
    SessionContext,
    StrategyName,
    TimePreferences,
)
from rmvwatch.notify import NotificationMessage
from rmvwatch.selector import SelectionHandle, SelectionStrategy

HAVERHILL = Location(id=27, name="Haverhill")
BOSTON = Location(id=12, name="Boston")
BASE_URL = "https://rmvmassdotappt.cxmflow.com/Appointment/Index/2c052fc7-571f-4b76-9790-7e91f103c408"


@pytest.fixture(autouse=True)
def _fresh_settings() -> Any:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def make_preferences() -> TimePreferences:
    return TimePreferences(
        date_range_start=date(2024, 6, 1),
        date_range_end=date(2024, 6, 30),
        time_window_start=dtime(9, 0),
        time_window_end=dtime(17, 0),
    )


def make_session(
    locations: Sequence[Location] = (HAVERHILL,),
    tokens: Optional[Dict[str, str]] = None,
) -> SessionContext:
    return SessionContext(
        base_url=BASE_URL,
        session_tokens=tokens if tokens is not None else {"AccessToken": "tok-123"},
        cookies={"ASP.NET_SessionId": "abc"},
        locations=list(locations),
        preferences=make_preferences(),
    )


def make_slot(location_id: int, day: date, at: dtime) -> AppointmentSlot:
    return AppointmentSlot(location_id=location_id, date=day, time=at)


class FakePageProvider:
    """Stands in for SiteBrowser; counts every acquired and released page."""

    def __init__(self) -> None:
        self.open_pages = 0
        self.acquired = 0
        self.released = 0

    @asynccontextmanager
    async def open_page(self, session: Optional[SessionContext] = None) -> AsyncIterator[Any]:
        self.acquired += 1
        self.open_pages += 1
        try:
            yield object()
        finally:
            self.open_pages -= 1
            self.released += 1


class ScriptedStrategy(SelectionStrategy):
    """Strategy whose behaviour is fixed up front: ok, fail, boom, captcha, hang or gate."""

    def __init__(
        self,
        name: StrategyName,
        behaviour: str,
        *,
        timeout: float = 1.0,
        calls: Optional[List[StrategyName]] = None,
        gate: Optional[asyncio.Event] = None,
    ) -> None:
        super().__init__(timeout)
        self.name = name
        self.behaviour = behaviour
        self.calls = calls if calls is not None else []
        self.gate = gate

    async def attempt(self, page: Any, session: SessionContext, location: Location) -> SelectionHandle:
        self.calls.append(self.name)
        if self.behaviour == "fail":
            raise StrategyError(self.name, "still on location selection page")
        if self.behaviour == "boom":
            raise RuntimeError("element detached")
        if self.behaviour == "captcha":
            raise CaptchaDetected()
        if self.behaviour == "hang":
            await asyncio.sleep(3600)
        if self.behaviour == "gate" and self.gate is not None:
            await self.gate.wait()
        return SelectionHandle(page, location, self.name)


class FakeExtractor:
    def __init__(self, slots: Optional[Dict[int, List[AppointmentSlot]]] = None, fail_for: Sequence[int] = ()) -> None:
        self.slots = slots or {}
        self.fail_for = set(fail_for)

    async def extract(self, handle: SelectionHandle) -> Extraction:
        if handle.location.id in self.fail_for:
            raise ValueError("calendar widget vanished")
        return Extraction(slots=list(self.slots.get(handle.location.id, [])))


class FakeReplayer:
    """Per-location scripted replay: a list of slots or an exception to raise."""

    def __init__(self, script: Dict[int, Any], delay: float = 0.0) -> None:
        self.script = script
        self.delay = delay
        self.calls: List[int] = []
        self.forgotten: List[str] = []
        self.active = 0
        self.max_active = 0

    async def query(self, session: SessionContext, location: Location) -> List[AppointmentSlot]:
        self.calls.append(location.id)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            outcome = self.script.get(location.id, [])
            if isinstance(outcome, BaseException):
                raise outcome
            return list(outcome)
        finally:
            self.active -= 1

    def forget(self, session: SessionContext) -> None:
        self.forgotten.append(session.key)


class ScriptedProvider:
    """Provider that fails until ``succeed_on`` attempt (None = always fails)."""

    def __init__(self, succeed_on: Optional[int] = 1, hang: bool = False) -> None:
        self.succeed_on = succeed_on
        self.hang = hang
        self.attempts = 0
        self.events: List[tuple[float, str]] = []

    async def send(self, recipient: str, message: NotificationMessage) -> None:
        self.attempts += 1
        if self.hang:
            await asyncio.sleep(3600)
        if self.succeed_on is None or self.attempts < self.succeed_on:
            self.events.append((time.monotonic(), "fail"))
            raise ProviderError(f"provider down (attempt {self.attempts})")
        self.events.append((time.monotonic(), "ok"))
