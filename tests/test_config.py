from __future__ import annotations

from datetime import date, time

import pytest
from pydantic import ValidationError

from rmvwatch.config import get_settings, parse_channels, parse_locations
from rmvwatch.models import Channel, Location

APPOINTMENT_URL = (
    "https://rmvmassdotappt.cxmflow.com/Appointment/Index/2c052fc7-571f-4b76-9790-7e91f103c408"
    "?AccessToken=tok-123"
)

OPTIONAL_VARS = (
    "BOT_TOKEN",
    "ADMIN_CHAT_ID",
    "NOTIFY_PHONE",
    "SMTP_HOST",
    "SMTP_FROM",
    "TWILIO_ACCOUNT_SID",
    "TWILIO_AUTH_TOKEN",
    "TWILIO_FROM_NUMBER",
    "POLL_INTERVAL",
    "POLL_INTERVAL_VARIATION",
    "CHANNELS",
    "HEADLESS",
    "NOTIFY_WEBHOOK_URL",
    "SMTP_DAILY_LIMIT",
    "SMTP_BACKUP_HOST",
    "TWILIO_DAILY_LIMIT",
    "TWILIO_BACKUP_ACCOUNT_SID",
)


def _base_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in OPTIONAL_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("RMV_URL", APPOINTMENT_URL)
    monkeypatch.setenv("RMV_ZIP", "01830")
    monkeypatch.setenv("LOCATIONS", "27:Haverhill, 12:Boston")
    monkeypatch.setenv("DATE_RANGE_START", "2024-06-01")
    monkeypatch.setenv("DATE_RANGE_END", "2024-06-30")
    monkeypatch.setenv("TIME_WINDOW_START", "09:00")
    monkeypatch.setenv("TIME_WINDOW_END", "17:00")
    monkeypatch.setenv("NOTIFY_EMAIL", "me@example.com")


def test_settings_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    _base_env(monkeypatch)

    settings = get_settings()

    assert settings.site.url == APPOINTMENT_URL
    assert settings.site.zip_code == "01830"
    assert settings.site.headless is True
    assert settings.monitor.locations == [Location(id=27, name="Haverhill"), Location(id=12, name="Boston")]
    assert settings.monitor.date_range_start == date(2024, 6, 1)
    assert settings.monitor.time_window_end == time(17, 0)
    assert settings.monitor.poll_interval_seconds == 300
    assert settings.monitor.channels == [Channel.EMAIL, Channel.SMS]
    assert settings.recipients.email == "me@example.com"
    assert settings.recipients.phone is None
    assert settings.bot is None
    assert settings.smtp.enabled is False
    assert settings.timeouts.session_max_age_seconds == 1800
    assert get_settings() is settings


def test_bot_settings_when_token_present(monkeypatch: pytest.MonkeyPatch) -> None:
    _base_env(monkeypatch)
    monkeypatch.setenv("BOT_TOKEN", "123:abc")
    monkeypatch.setenv("ADMIN_CHAT_ID", "4242")
    monkeypatch.setenv("CHANNELS", "email, Telegram")

    settings = get_settings()

    assert settings.bot is not None and settings.bot.admin_chat_id == 4242
    assert settings.recipients.telegram_chat_id == 4242
    assert settings.monitor.channels == [Channel.EMAIL, Channel.TELEGRAM]


def test_backup_accounts_limits_and_webhook(monkeypatch: pytest.MonkeyPatch) -> None:
    _base_env(monkeypatch)
    monkeypatch.setenv("CHANNELS", "email,webhook")
    monkeypatch.setenv("NOTIFY_WEBHOOK_URL", "https://hooks.example.com/rmv")
    monkeypatch.setenv("SMTP_HOST", "smtp.gmail.com")
    monkeypatch.setenv("SMTP_DAILY_LIMIT", "100")
    monkeypatch.setenv("SMTP_BACKUP_HOST", "smtp.mailgun.org")
    monkeypatch.setenv("SMTP_BACKUP_USER", "postmaster@example.com")

    settings = get_settings()

    assert settings.monitor.channels == [Channel.EMAIL, Channel.WEBHOOK]
    assert settings.recipients.address_for(Channel.WEBHOOK) == "https://hooks.example.com/rmv"
    assert settings.smtp.daily_limit == 100
    assert settings.smtp_backup is not None
    assert settings.smtp_backup.host == "smtp.mailgun.org"
    assert settings.smtp_backup.sender == "postmaster@example.com"
    assert settings.smtp_backup.daily_limit is None
    assert settings.twilio_backup is None


def test_too_short_interval_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    _base_env(monkeypatch)
    monkeypatch.setenv("POLL_INTERVAL", "5")
    with pytest.raises(ValidationError):
        get_settings()


def test_missing_locations_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    _base_env(monkeypatch)
    monkeypatch.setenv("LOCATIONS", "")
    with pytest.raises(ValidationError):
        get_settings()


def test_parse_helpers() -> None:
    assert parse_locations("27:Haverhill,,5") == [Location(id=27, name="Haverhill"), Location(id=5, name="5")]
    assert parse_locations(None) == []
    assert parse_channels(" SMS ,email") == [Channel.SMS, Channel.EMAIL]
    with pytest.raises(ValueError):
        parse_channels("pigeon")
