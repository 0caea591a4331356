from __future__ import annotations

import asyncio
from datetime import date, datetime, time
from typing import Any, Dict, List

import pytest

from rmvwatch.extractor import LEGACY_SLOT_SELECTOR, SLOT_SELECTOR, SlotExtractor, parse_slot_datetime, parse_slot_entries
from rmvwatch.models import StrategyName
from rmvwatch.selector import SelectionHandle

from conftest import HAVERHILL


def test_parse_site_datetime_formats() -> None:
    assert parse_slot_datetime("10/8/2025 9:30:00 AM") == datetime(2025, 10, 8, 9, 30)
    assert parse_slot_datetime(" 6/10/2024  1:15 pm ") == datetime(2024, 6, 10, 13, 15)
    assert parse_slot_datetime("2024-06-10T14:45:00") == datetime(2024, 6, 10, 14, 45)
    with pytest.raises(ValueError):
        parse_slot_datetime("next tuesday")


def test_entries_skip_and_count_malformed() -> None:
    entries = [
        {"datetime": "6/10/2024 10:00:00 AM", "text": "10:00 AM"},
        {"datetime": "6/10/2024 10:00:00 AM", "text": "duplicate"},
        {"datetime": "6/10/2024 10:30:00 AM", "disabled": True},
        {"datetime": "garbage"},
        {"text": "no attributes at all"},
        {"date": "6/11/2024", "time": "2:00 PM"},
    ]
    result = parse_slot_entries(27, entries)

    assert [(s.date, s.time) for s in result.slots] == [
        (date(2024, 6, 10), time(10, 0)),
        (date(2024, 6, 11), time(14, 0)),
    ]
    assert result.slots[0].display_text == "10:00 AM"
    assert result.skipped == 2
    assert result.unavailable == 1


def test_no_entries_is_a_valid_empty_result() -> None:
    result = parse_slot_entries(27, [])
    assert result.slots == []
    assert result.skipped == 0


class _CalendarPage:
    def __init__(self, by_selector: Dict[str, List[Dict[str, Any]]]) -> None:
        self.by_selector = by_selector
        self.queried: List[str] = []

    async def eval_on_selector_all(self, selector: str, script: str) -> List[Dict[str, Any]]:
        self.queried.append(selector)
        return self.by_selector.get(selector, [])


def test_extractor_reads_rendered_calendar() -> None:
    page = _CalendarPage({SLOT_SELECTOR: [{"datetime": "6/12/2024 9:00:00 AM", "text": "9:00 AM"}]})
    handle = SelectionHandle(page, HAVERHILL, StrategyName.UI_B)  # type: ignore[arg-type]

    result = asyncio.run(SlotExtractor().extract(handle))

    assert len(result.slots) == 1
    assert result.slots[0].location_id == 27
    assert page.queried == [SLOT_SELECTOR]


def test_extractor_falls_back_to_legacy_markup() -> None:
    page = _CalendarPage({LEGACY_SLOT_SELECTOR: [{"date": "2024-06-12", "time": "15:30"}]})
    handle = SelectionHandle(page, HAVERHILL, StrategyName.UI_C)  # type: ignore[arg-type]

    result = asyncio.run(SlotExtractor().extract(handle))

    assert result.slots[0].time == time(15, 30)
    assert page.queried == [SLOT_SELECTOR, LEGACY_SLOT_SELECTOR]
