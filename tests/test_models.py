from __future__ import annotations

from datetime import date, time

import pytest
from pydantic import ValidationError

from rmvwatch.models import (
    AppointmentSlot,
    Location,
    MonitorOptions,
    RecipientConfig,
    ScanResult,
    SessionContext,
    Channel,
    StrategyName,
    TimePreferences,
    slot_key,
)

from conftest import make_preferences, make_slot


def test_raw_key_equal_for_equal_tuples() -> None:
    a = AppointmentSlot(location_id=27, date=date(2024, 6, 10), time=time(10, 0), display_text="10:00 AM")
    b = AppointmentSlot(location_id=27, date=date(2024, 6, 10), time=time(10, 0))
    assert a.raw_key == b.raw_key
    assert a == b
    assert len({a, b}) == 1


def test_raw_key_has_no_collisions_on_sample() -> None:
    tuples = [
        (loc, date(2024, month, day), time(hour, minute))
        for loc in (1, 2, 12, 27, 127)
        for month in (1, 6, 12)
        for day in (1, 2, 10, 11, 21)
        for hour in (1, 9, 10, 13, 21)
        for minute in (0, 5, 30)
    ]
    keys = {slot_key(*t) for t in tuples}
    assert len(keys) == len(tuples)


def test_raw_key_is_serialized() -> None:
    slot = make_slot(27, date(2024, 6, 10), time(10, 0))
    assert slot.model_dump()["raw_key"] == "27|2024-06-10|10:00:00"


def test_failed_scan_result_cannot_carry_slots() -> None:
    slot = make_slot(27, date(2024, 6, 10), time(10, 0))
    with pytest.raises(ValidationError):
        ScanResult(location_id=27, success=False, slots=[slot])

    ok = ScanResult(location_id=27, success=True, slots=[slot], strategy_used=StrategyName.UI_A)
    assert ok.slots == [slot]


def test_preferences_are_inclusive() -> None:
    prefs = make_preferences()
    assert prefs.matches(make_slot(27, date(2024, 6, 1), time(9, 0)))
    assert prefs.matches(make_slot(27, date(2024, 6, 30), time(17, 0)))
    assert not prefs.matches(make_slot(27, date(2024, 5, 31), time(10, 0)))
    assert not prefs.matches(make_slot(27, date(2024, 6, 10), time(20, 0)))
    assert not prefs.matches(make_slot(27, date(2024, 6, 10), time(8, 59)))


def test_preferences_reject_inverted_ranges() -> None:
    with pytest.raises(ValidationError):
        TimePreferences(
            date_range_start=date(2024, 7, 1),
            date_range_end=date(2024, 6, 1),
            time_window_start=time(9, 0),
            time_window_end=time(17, 0),
        )


def _options(**overrides: object) -> MonitorOptions:
    values: dict = dict(
        locations=[Location(id=27, name="Haverhill")],
        date_range_start=date(2024, 6, 1),
        date_range_end=date(2024, 6, 30),
        time_window_start=time(9, 0),
        time_window_end=time(17, 0),
    )
    values.update(overrides)
    return MonitorOptions(**values)


def test_monitor_options_bounds() -> None:
    assert _options().preferences == make_preferences()
    with pytest.raises(ValidationError):
        _options(locations=[Location(id=i, name=f"L{i}") for i in range(9)])
    with pytest.raises(ValidationError):
        _options(locations=[Location(id=1, name="A"), Location(id=1, name="B")])
    with pytest.raises(ValidationError):
        _options(locations=[])
    with pytest.raises(ValidationError):
        _options(poll_interval_seconds=5)


def test_session_context_is_frozen_and_bounded() -> None:
    session = SessionContext(
        base_url="https://example.org/Appointment/Index/x",
        session_tokens={"AccessToken": "t"},
        preferences=make_preferences(),
    )
    assert session.access_token == "t"
    with pytest.raises(ValidationError):
        session.base_url = "https://other"  # type: ignore[misc]
    with pytest.raises(ValidationError):
        SessionContext(
            base_url="https://example.org",
            locations=[Location(id=i, name=f"L{i}") for i in range(9)],
            preferences=make_preferences(),
        )


def test_recipient_addresses() -> None:
    rc = RecipientConfig(email="a@example.com", phone=None, telegram_chat_id=42)
    assert rc.address_for(Channel.EMAIL) == "a@example.com"
    assert rc.address_for(Channel.SMS) is None
    assert rc.address_for(Channel.TELEGRAM) == "42"
    assert rc.address_for(Channel.WEBHOOK) is None
    assert RecipientConfig(webhook_url="https://hooks.example.com").address_for(Channel.WEBHOOK) == "https://hooks.example.com"
