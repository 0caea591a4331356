from __future__ import annotations

import asyncio
from datetime import date, time
from typing import Callable, List
from urllib.parse import quote

import httpx
import pytest

from rmvwatch.errors import RemoteProtocolError
from rmvwatch.replay import (
    DirectRequestReplayer,
    decode_form_journey,
    encode_form_journey,
    inject_location,
    parse_replay_html,
)

from conftest import HAVERHILL, make_session

JOURNEY = {
    "CurrentStep": 0,
    "SelectionMade": False,
    "StepControls": [{"StepIndex": 0, "Model": {"Value": None, "value": None}}],
}

APPOINTMENT_STEP = """
<html><body>
<div class="step-control-container AppointmentDateTime">
  <div class="DateTimeGrouping-Container">
    <button class="ServiceAppointmentDateTime" data-datetime="6/10/2024 10:00:00 AM">10:00 AM</button>
    <button class="ServiceAppointmentDateTime disabled" data-datetime="6/10/2024 10:30:00 AM">10:30 AM</button>
    <button class="ServiceAppointmentDateTime" data-datetime="6/11/2024 2:15:00 PM">2:15 PM</button>
  </div>
</div>
</body></html>
"""

OFFICE_LIST = """
<html><body>
<div class="QflowObjectItem" data-id="27">Haverhill</div>
<div class="QflowObjectItem" data-id="12">Boston</div>
</body></html>
"""


def _replayer(handler: Callable[[httpx.Request], httpx.Response]) -> DirectRequestReplayer:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), follow_redirects=False)
    return DirectRequestReplayer(client, timeout=2.0)


def test_inject_location_answers_location_step() -> None:
    modified = inject_location(JOURNEY, 27)

    assert modified["StepControls"][0]["Model"]["Value"] == "27"
    assert modified["CurrentStep"] == 1
    assert modified["SelectionMade"] is True
    # исходный словарь не меняется
    assert JOURNEY["StepControls"][0]["Model"]["Value"] is None


def test_form_journey_decodes_url_quoted_value() -> None:
    encoded = quote(encode_form_journey(JOURNEY), safe="")
    assert decode_form_journey(encoded) == JOURNEY


def test_query_with_form_journey_returns_slots() -> None:
    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, text=APPOINTMENT_STEP)

    session = make_session(tokens={"AccessToken": "tok-123", "formJourney": encode_form_journey(JOURNEY)})
    replayer = _replayer(handler)
    slots = asyncio.run(replayer.query(session, HAVERHILL))

    assert [(s.date, s.time) for s in slots] == [
        (date(2024, 6, 10), time(10, 0)),
        (date(2024, 6, 11), time(14, 15)),
    ]
    params = seen[0].url.params
    assert params["AccessToken"] == "tok-123"
    assert params["locationId"] == "27"
    assert params["step"] == "1"
    assert decode_form_journey(params["formJourney"])["StepControls"][0]["Model"]["Value"] == "27"
    assert "ASP.NET_SessionId=abc" in seen[0].headers["cookie"]


def test_query_without_form_journey_uses_step_controls() -> None:
    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, text=APPOINTMENT_STEP)

    asyncio.run(_replayer(handler).query(make_session(), HAVERHILL))

    params = seen[0].url.params
    assert params["StepControls_0__Model_Value"] == "27"
    assert params["step"] == "2"
    assert "formJourney" not in params


def test_missing_datetime_fails_schema_validation() -> None:
    broken = APPOINTMENT_STEP.replace('data-datetime="6/11/2024 2:15:00 PM"', "")

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text=broken)

    with pytest.raises(RemoteProtocolError) as exc:
        asyncio.run(_replayer(handler).query(make_session(), HAVERHILL))
    assert exc.value.session_expired is False


def test_office_list_is_a_schema_mismatch() -> None:
    with pytest.raises(RemoteProtocolError, match="location selection"):
        parse_replay_html(OFFICE_LIST)


def test_redirect_signals_expired_session_and_drops_cached_journey() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(302, headers={"Location": "https://example.org/Error"})

    session = make_session(tokens={"AccessToken": "tok-123", "formJourney": encode_form_journey(JOURNEY)})
    replayer = _replayer(handler)
    with pytest.raises(RemoteProtocolError) as exc:
        asyncio.run(replayer.query(session, HAVERHILL))

    assert exc.value.session_expired is True
    assert replayer._journeys == {}


@pytest.mark.parametrize("status", [401, 403])
def test_auth_errors_signal_expired_session(status: int) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, text="denied")

    with pytest.raises(RemoteProtocolError) as exc:
        asyncio.run(_replayer(handler).query(make_session(), HAVERHILL))
    assert exc.value.session_expired is True


def test_expired_page_body_signals_expired_session() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html><body><h1>Your session has expired.</h1></body></html>")

    with pytest.raises(RemoteProtocolError) as exc:
        asyncio.run(_replayer(handler).query(make_session(), HAVERHILL))
    assert exc.value.session_expired is True


def test_server_error_is_not_an_expiry() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="oops")

    with pytest.raises(RemoteProtocolError) as exc:
        asyncio.run(_replayer(handler).query(make_session(), HAVERHILL))
    assert exc.value.session_expired is False


def test_transport_error_becomes_protocol_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(RemoteProtocolError, match="transport"):
        asyncio.run(_replayer(handler).query(make_session(), HAVERHILL))
