"""
Direct request replay: query a location's availability without a browser.

Повторяем минимальный запрос, подсмотренный в трафике браузера:
- декодируем formJourney (base64 + zlib JSON), подставляем отделение, кодируем обратно
- GET на шаг выбора времени с токенами и куками текущей сессии
- проверяем форму ответа (pydantic) прежде чем доверять слотам
- 401/403/редирект/«session expired» -> RemoteProtocolError(session_expired=True)
"""

from __future__ import annotations

import base64
import copy
import json
import logging
import zlib
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import unquote

import httpx
from bs4 import BeautifulSoup
from pydantic import BaseModel, Field, ValidationError

from .config import DEFAULT_USER_AGENT
from .errors import RemoteProtocolError
from .extractor import parse_slot_entries
from .models import AppointmentSlot, Location, SessionContext

logger = logging.getLogger(__name__)


DEFAULT_REPLAY_TIMEOUT = 10.0

EXPIRED_MARKERS = (
    "session has expired",
    "session expired",
    "your session has timed out",
    "invalid access token",
)
STEP_MARKERS = (
    ".DateTimeGrouping-Container",
    ".step-control-container.AppointmentDateTime",
    ".ServiceAppointmentDateTime",
)


def decode_form_journey(encoded: str) -> Dict[str, Any]:
    """Decode the page's hidden ``formJourney`` value into a dict."""
    raw = base64.b64decode(unquote(encoded))
    # MAX_WBITS | 32: автоопределение zlib/gzip заголовка
    text = zlib.decompress(raw, zlib.MAX_WBITS | 32).decode("utf-8")
    data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError("formJourney is not a JSON object")
    return data


def encode_form_journey(journey: Dict[str, Any]) -> str:
    packed = zlib.compress(json.dumps(journey, separators=(",", ":")).encode("utf-8"))
    return base64.b64encode(packed).decode("ascii")


def inject_location(journey: Dict[str, Any], location_id: int) -> Dict[str, Any]:
    """Return a copy of ``journey`` with the location step answered."""
    modified = copy.deepcopy(journey)
    value = str(location_id)
    controls = modified.get("StepControls")
    if not isinstance(controls, list):
        controls = []
        modified["StepControls"] = controls

    for step in controls:
        model = step.get("Model") if isinstance(step, dict) else None
        if isinstance(model, dict) and ("Value" in model or "value" in model):
            model["Value"] = value
            model["value"] = value
            break
    else:
        controls.append({"Model": {"Value": value, "value": value}, "StepIndex": 0})

    current = modified.get("CurrentStep")
    modified["CurrentStep"] = max(current, 1) if isinstance(current, int) else 1
    if "SelectionMade" in modified:
        modified["SelectionMade"] = True
    return modified


class ReplaySlotEntry(BaseModel):
    datetime: str = Field(min_length=1)
    text: str = ""
    disabled: bool = False
    serviceid: Optional[str] = None


class ReplayPayload(BaseModel):
    """Expected shape of the appointment step as seen through direct replay."""

    step_marker: str
    entries: List[ReplaySlotEntry]


def parse_replay_html(html: str) -> ReplayPayload:
    """
    Validate the appointment-step HTML and pull slot entries out of it.

    Бросает RemoteProtocolError, если страница не похожа на шаг выбора времени.
    """
    soup = BeautifulSoup(html, "html.parser")
    text = soup.get_text(" ", strip=True).lower()
    if any(marker in text for marker in EXPIRED_MARKERS):
        raise RemoteProtocolError("remote reports an expired session", session_expired=True)

    marker = next((sel for sel in STEP_MARKERS if soup.select_one(sel) is not None), None)
    if marker is None:
        if soup.select_one(".QflowObjectItem") is not None:
            raise RemoteProtocolError("replay landed on the location selection step")
        raise RemoteProtocolError("appointment step markers missing from replay response")

    raw_entries = []
    for el in soup.select(".ServiceAppointmentDateTime"):
        classes = el.get("class") or []
        raw_entries.append(
            {
                "datetime": el.get("data-datetime"),
                "text": el.get_text(strip=True),
                "disabled": "disabled" in classes or "unavailable" in classes or el.has_attr("disabled"),
                "serviceid": el.get("data-serviceid"),
            }
        )
    try:
        return ReplayPayload(step_marker=marker, entries=raw_entries)
    except ValidationError as e:
        raise RemoteProtocolError(f"replay payload failed schema validation: {e.error_count()} errors") from e


class DirectRequestReplayer:
    """Fast path poller; falls back to UI automation when the shape drifts."""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        *,
        timeout: float = DEFAULT_REPLAY_TIMEOUT,
        user_agent: str = DEFAULT_USER_AGENT,
    ) -> None:
        self._timeout = timeout
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=False,
            headers={"User-Agent": user_agent},
        )
        # (ключ сессии, id отделения) -> закодированный formJourney
        self._journeys: Dict[Tuple[str, int], str] = {}

    def build_params(self, session: SessionContext, location: Location) -> Dict[str, str]:
        params = {"AccessToken": session.access_token or ""}
        encoded = session.session_tokens.get("formJourney")
        if not encoded:
            params.update({"StepControls_0__Model_Value": str(location.id), "step": "2"})
            return params

        cache_key = (session.key, location.id)
        journey = self._journeys.get(cache_key)
        if journey is None:
            try:
                journey = encode_form_journey(inject_location(decode_form_journey(encoded), location.id))
            except (ValueError, zlib.error) as e:
                raise RemoteProtocolError(f"captured formJourney cannot be decoded: {e}") from e
            self._journeys[cache_key] = journey
        params.update({"formJourney": journey, "locationId": str(location.id), "step": "1"})
        return params

    def forget(self, session: SessionContext) -> None:
        """Drop everything derived from ``session``'s tokens."""
        for key in [k for k in self._journeys if k[0] == session.key]:
            del self._journeys[key]

    async def query(self, session: SessionContext, location: Location) -> List[AppointmentSlot]:
        params = self.build_params(session, location)
        headers = {}
        if session.cookies:
            headers["Cookie"] = "; ".join(f"{k}={v}" for k, v in session.cookies.items())

        try:
            resp = await self._client.get(session.base_url, params=params, headers=headers, timeout=self._timeout)
        except httpx.TimeoutException as e:
            raise RemoteProtocolError(f"replay timed out after {self._timeout:.0f}s") from e
        except httpx.HTTPError as e:
            raise RemoteProtocolError(f"replay transport error: {e}") from e

        try:
            if resp.status_code in (401, 403) or 300 <= resp.status_code < 400:
                raise RemoteProtocolError(
                    f"remote answered HTTP {resp.status_code}, session needs refresh",
                    session_expired=True,
                )
            if resp.status_code != 200:
                raise RemoteProtocolError(f"unexpected HTTP {resp.status_code} from replay")
            payload = parse_replay_html(resp.text)
        except RemoteProtocolError as e:
            if e.session_expired:
                self.forget(session)
            raise

        extraction = parse_slot_entries(location.id, [entry.model_dump() for entry in payload.entries])
        if extraction.skipped:
            raise RemoteProtocolError(f"{extraction.skipped} replay entries have an unknown datetime format")
        logger.info("Replay found %s slots for %s", len(extraction.slots), location.name)
        return extraction.slots

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


__all__ = [
    "DirectRequestReplayer",
    "ReplayPayload",
    "decode_form_journey",
    "encode_form_journey",
    "inject_location",
    "parse_replay_html",
]
