"""
Slot extraction from a rendered appointment step.

Разбор календаря: кнопки .ServiceAppointmentDateTime[data-datetime] -> AppointmentSlot.
Битые записи пропускаются и считаются, но никогда не роняют цикл.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Iterable, List, Mapping

from .models import AppointmentSlot

if TYPE_CHECKING:
    from .selector import SelectionHandle

logger = logging.getLogger(__name__)


SLOT_SELECTOR = ".ServiceAppointmentDateTime[data-datetime]"
LEGACY_SLOT_SELECTOR = ".appointment-slot"
APPOINTMENT_STEP_SELECTORS = (
    ".ServiceAppointmentDateTime",
    ".DateTimeGrouping-Container",
    ".step-control-container.AppointmentDateTime",
    ".appointment-slot",
)

DATETIME_FORMATS = (
    "%m/%d/%Y %I:%M:%S %p",  # 10/8/2025 9:30:00 AM
    "%m/%d/%Y %I:%M %p",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%dT%H:%M",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
)
DATE_FORMATS = ("%m/%d/%Y", "%Y-%m-%d")
TIME_FORMATS = ("%I:%M:%S %p", "%I:%M %p", "%H:%M:%S", "%H:%M")

_COLLECT_JS = """
els => els.map(el => ({
    datetime: el.getAttribute('data-datetime'),
    date: el.getAttribute('data-date'),
    time: el.getAttribute('data-time'),
    text: (el.textContent || '').trim(),
    disabled: el.classList.contains('disabled')
        || el.classList.contains('unavailable')
        || el.hasAttribute('disabled'),
}))
"""

_SPACES = re.compile(r"\s+")


def _normalize(value: str) -> str:
    return _SPACES.sub(" ", value.strip()).upper()


def parse_slot_datetime(value: str) -> datetime:
    """Parse the site's ``data-datetime`` value; raises ValueError if unknown."""
    normalized = _normalize(value)
    for fmt in DATETIME_FORMATS:
        try:
            return datetime.strptime(normalized, fmt)
        except ValueError:
            continue
    raise ValueError(f"unrecognised slot datetime {value!r}")


def _parse_split(date_text: str, time_text: str) -> datetime:
    d_norm, t_norm = _normalize(date_text), _normalize(time_text)
    for d_fmt in DATE_FORMATS:
        for t_fmt in TIME_FORMATS:
            try:
                return datetime.strptime(f"{d_norm} {t_norm}", f"{d_fmt} {t_fmt}")
            except ValueError:
                continue
    raise ValueError(f"unrecognised slot date/time {date_text!r} {time_text!r}")


@dataclass
class Extraction:
    """Slots found in one view plus the number of entries that could not be parsed."""

    slots: List[AppointmentSlot] = field(default_factory=list)
    skipped: int = 0
    unavailable: int = 0


def parse_slot_entries(location_id: int, entries: Iterable[Mapping[str, Any]]) -> Extraction:
    """
    Normalize raw slot entries into AppointmentSlot objects.

    Запись считается битой, если нет ни data-datetime, ни пары date/time,
    или значение не парсится. Недоступные (disabled) записи не считаются битыми.
    """
    result = Extraction()
    seen: set[str] = set()
    for entry in entries:
        if entry.get("disabled"):
            result.unavailable += 1
            continue
        try:
            raw_dt = entry.get("datetime")
            if raw_dt:
                when = parse_slot_datetime(str(raw_dt))
            elif entry.get("date") and entry.get("time"):
                when = _parse_split(str(entry["date"]), str(entry["time"]))
            else:
                raise ValueError("entry has neither datetime nor date/time")
        except ValueError as e:
            result.skipped += 1
            logger.debug("Skipping malformed slot entry %r: %s", entry, e)
            continue

        slot = AppointmentSlot(
            location_id=location_id,
            date=when.date(),
            time=when.time(),
            display_text=(entry.get("text") or None),
        )
        if slot.raw_key in seen:
            continue
        seen.add(slot.raw_key)
        result.slots.append(slot)

    if result.skipped:
        logger.warning("Skipped %s malformed slot entries for location %s", result.skipped, location_id)
    return result


class SlotExtractor:
    """Pulls the current slot view out of a page a strategy left on the appointment step."""

    async def extract(self, handle: SelectionHandle) -> Extraction:
        page = handle.page
        entries = await page.eval_on_selector_all(SLOT_SELECTOR, _COLLECT_JS)
        if not entries:
            entries = await page.eval_on_selector_all(LEGACY_SLOT_SELECTOR, _COLLECT_JS)
        extraction = parse_slot_entries(handle.location.id, entries)
        logger.info(
            "Extracted %s slots for %s (%s skipped, %s unavailable)",
            len(extraction.slots),
            handle.location.name,
            extraction.skipped,
            extraction.unavailable,
        )
        return extraction


__all__ = [
    "APPOINTMENT_STEP_SELECTORS",
    "Extraction",
    "SLOT_SELECTOR",
    "SlotExtractor",
    "parse_slot_datetime",
    "parse_slot_entries",
]
