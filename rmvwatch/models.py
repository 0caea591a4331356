"""
Pydantic models for the RMV appointment watcher domain.

Pydantic-модели для описания слотов, сессии и результатов сканирования.
"""

from __future__ import annotations

import datetime as dt
from datetime import date, datetime, time, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator


MAX_LOCATIONS = 8


class StrategyName(str, Enum):
    UI_A = "ui_a"
    UI_B = "ui_b"
    UI_C = "ui_c"
    DIRECT_REPLAY = "direct_replay"


class Channel(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    TELEGRAM = "telegram"
    WEBHOOK = "webhook"


class MonitorPhase(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"


class Location(BaseModel):
    """RMV service center; identity is the site-assigned ``id``."""

    model_config = ConfigDict(frozen=True)

    id: int
    name: str


def slot_key(location_id: int, slot_date: date, slot_time: time) -> str:
    """Return deterministic dedup key for a (location, date, time) tuple."""
    return f"{location_id}|{slot_date.isoformat()}|{slot_time.isoformat()}"


class AppointmentSlot(BaseModel):
    """Single bookable appointment time. Equal iff ``raw_key`` is equal."""

    model_config = ConfigDict(frozen=True)

    location_id: int
    date: dt.date
    time: dt.time
    display_text: Optional[str] = None

    @computed_field  # type: ignore[misc]
    @property
    def raw_key(self) -> str:
        return slot_key(self.location_id, self.date, self.time)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, AppointmentSlot):
            return NotImplemented
        return self.raw_key == other.raw_key

    def __hash__(self) -> int:
        return hash(self.raw_key)


class PersonalInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    zip_code: Optional[str] = None

    @property
    def name(self) -> Optional[str]:
        parts = [p for p in (self.first_name, self.last_name) if p]
        return " ".join(parts) or None


class TimePreferences(BaseModel):
    """Inclusive date range and time-of-day window a slot must fall into."""

    model_config = ConfigDict(frozen=True)

    date_range_start: date
    date_range_end: date
    time_window_start: time
    time_window_end: time

    @model_validator(mode="after")
    def _check_ranges(self) -> "TimePreferences":
        if self.date_range_start > self.date_range_end:
            raise ValueError("date_range_start must not be after date_range_end")
        if self.time_window_start > self.time_window_end:
            raise ValueError("time_window_start must not be after time_window_end")
        return self

    def matches(self, slot: AppointmentSlot) -> bool:
        return (
            self.date_range_start <= slot.date <= self.date_range_end
            and self.time_window_start <= slot.time <= self.time_window_end
        )


class SessionContext(BaseModel):
    """
    One visit of the appointment site.

    Неизменяемый снимок: при истечении сессии создаётся заново.
    """

    model_config = ConfigDict(frozen=True)

    base_url: str
    session_tokens: Dict[str, str] = Field(default_factory=dict)
    cookies: Dict[str, str] = Field(default_factory=dict)
    personal_info: PersonalInfo = PersonalInfo()
    locations: List[Location] = Field(default_factory=list, max_length=MAX_LOCATIONS)
    preferences: TimePreferences
    extracted_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def access_token(self) -> Optional[str]:
        return self.session_tokens.get("AccessToken")

    @property
    def key(self) -> str:
        """Identity of this particular extraction."""
        return f"{self.access_token or self.base_url}@{self.extracted_at.isoformat()}"

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        now = now or datetime.now(timezone.utc)
        return (now - self.extracted_at).total_seconds()


class ErrorInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: str
    message: str
    details: List[str] = Field(default_factory=list)


class ScanResult(BaseModel):
    """Outcome of scanning one location in one cycle."""

    model_config = ConfigDict(frozen=True)

    location_id: int
    location_name: str = ""
    strategy_used: Optional[StrategyName] = None
    success: bool
    slots: List[AppointmentSlot] = Field(default_factory=list)
    elapsed_ms: int = 0
    error: Optional[ErrorInfo] = None
    skipped_entries: int = 0
    session_expired: bool = False
    checked_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @model_validator(mode="after")
    def _failed_has_no_slots(self) -> "ScanResult":
        if not self.success and self.slots:
            raise ValueError("unsuccessful scan result must not carry slots")
        return self


class RecipientConfig(BaseModel):
    """Where notifications go; each channel is independently optional."""

    email: Optional[str] = None
    phone: Optional[str] = None
    telegram_chat_id: Optional[int] = None
    webhook_url: Optional[str] = None
    channels: List[Channel] = Field(default_factory=lambda: [Channel.EMAIL, Channel.SMS])

    def address_for(self, channel: Channel) -> Optional[str]:
        if channel is Channel.EMAIL:
            return self.email
        if channel is Channel.SMS:
            return self.phone
        if channel is Channel.TELEGRAM and self.telegram_chat_id:
            return str(self.telegram_chat_id)
        if channel is Channel.WEBHOOK:
            return self.webhook_url
        return None


class MonitorOptions(BaseModel):
    """Options the caller supplies for one monitor."""

    locations: List[Location] = Field(min_length=1, max_length=MAX_LOCATIONS)
    date_range_start: date
    date_range_end: date
    time_window_start: time
    time_window_end: time
    poll_interval_seconds: int = Field(default=300, ge=30)
    poll_interval_variation: int = Field(default=30, ge=0)
    channels: List[Channel] = Field(default_factory=lambda: [Channel.EMAIL, Channel.SMS])

    @model_validator(mode="after")
    def _unique_locations(self) -> "MonitorOptions":
        ids = [loc.id for loc in self.locations]
        if len(ids) != len(set(ids)):
            raise ValueError("location ids must be unique")
        if self.date_range_start > self.date_range_end:
            raise ValueError("date_range_start must not be after date_range_end")
        if self.time_window_start > self.time_window_end:
            raise ValueError("time_window_start must not be after time_window_end")
        return self

    @property
    def preferences(self) -> TimePreferences:
        return TimePreferences(
            date_range_start=self.date_range_start,
            date_range_end=self.date_range_end,
            time_window_start=self.time_window_start,
            time_window_end=self.time_window_end,
        )


class MonitorState(BaseModel):
    """State of monitoring loop, exposed for display."""

    phase: MonitorPhase = MonitorPhase.IDLE
    last_check_at: Optional[datetime] = None
    last_error: Optional[str] = None
    checks_count: int = 0
    slots_found_total: int = 0
    notifications_sent: int = 0
    last_dispatch: List[str] = Field(default_factory=list)


__all__ = [
    "AppointmentSlot",
    "Channel",
    "ErrorInfo",
    "Location",
    "MAX_LOCATIONS",
    "MonitorOptions",
    "MonitorPhase",
    "MonitorState",
    "PersonalInfo",
    "RecipientConfig",
    "ScanResult",
    "SessionContext",
    "StrategyName",
    "TimePreferences",
    "slot_key",
]
