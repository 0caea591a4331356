"""
Config loading via Pydantic v2 and python-dotenv.

Загрузка конфигурации из .env и базовая валидация.
"""

from __future__ import annotations

from functools import lru_cache
import os
from datetime import date, time
from pathlib import Path
from typing import List, Mapping, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

from .models import Channel, Location, MonitorOptions, RecipientConfig


BASE_DIR = Path(__file__).resolve().parent.parent
# В Docker можно задать DATA_DIR=/app/data и смонтировать volume, тогда куки браузера сохранятся
DATA_DIR = Path(os.environ.get("DATA_DIR", str(BASE_DIR)))
ENV_PATH = BASE_DIR / ".env"

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/122.0.0.0 Safari/537.36"
)

# Явно загружаем переменные окружения из .env, если файл существует
if ENV_PATH.exists():
    load_dotenv(ENV_PATH, override=False)


class SiteConfig(BaseModel):
    url: str
    zip_code: str = ""
    headless: bool = True
    user_agent: str = DEFAULT_USER_AGENT


class SMTPConfig(BaseModel):
    host: str = ""
    port: int = Field(default=587, ge=1, le=65535)
    username: str = ""
    password: str = ""
    sender: str = ""
    starttls: bool = True
    daily_limit: Optional[int] = Field(default=None, ge=1)

    @property
    def enabled(self) -> bool:
        return bool(self.host)


class TwilioConfig(BaseModel):
    account_sid: str = ""
    auth_token: str = ""
    from_number: str = ""
    daily_limit: Optional[int] = Field(default=None, ge=1)

    @property
    def enabled(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.from_number)


class BotConfig(BaseModel):
    token: str
    admin_chat_id: int


class TimeoutConfig(BaseModel):
    strategy_seconds: float = Field(default=8.0, gt=0, le=60)
    replay_seconds: float = Field(default=10.0, gt=0, le=60)
    send_seconds: float = Field(default=15.0, gt=0, le=120)
    page_load_seconds: float = Field(default=20.0, gt=0, le=120)
    session_max_age_seconds: int = Field(default=1800, ge=60)


class LoggingConfig(BaseModel):
    logs_dir: Path = Field(default_factory=lambda: BASE_DIR / "logs")
    log_level: str = Field(default="INFO")
    max_bytes: int = Field(default=5 * 1024 * 1024)  # 5 MB
    backup_count: int = Field(default=5)


class Settings(BaseModel):
    site: SiteConfig
    monitor: MonitorOptions
    recipients: RecipientConfig
    smtp: SMTPConfig = SMTPConfig()
    twilio: TwilioConfig = TwilioConfig()
    # запасные аккаунты: берут канал на себя, если основной упал или выбрал дневной лимит
    smtp_backup: Optional[SMTPConfig] = None
    twilio_backup: Optional[TwilioConfig] = None
    bot: Optional[BotConfig] = None
    timeouts: TimeoutConfig = TimeoutConfig()
    logging: LoggingConfig = LoggingConfig()


def parse_locations(value: str | None) -> List[Location]:
    """Parse ``"27:Haverhill,12:Boston"`` into ordered locations."""
    if not value:
        return []
    locations: List[Location] = []
    for chunk in value.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        loc_id, _, name = chunk.partition(":")
        locations.append(Location(id=int(loc_id.strip()), name=name.strip() or loc_id.strip()))
    return locations


def parse_channels(value: str | None) -> List[Channel]:
    if not value:
        return []
    return [Channel(x.strip().lower()) for x in value.split(",") if x.strip()]


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None or not value.strip():
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _as_limit(value: str | None) -> Optional[int]:
    return int(value) if value and value.strip() else None


def smtp_from_env(env: Mapping[str, str], prefix: str = "SMTP") -> SMTPConfig:
    """Read one SMTP account; ``prefix="SMTP_BACKUP"`` gives the standby one."""
    return SMTPConfig(
        host=env.get(f"{prefix}_HOST", ""),
        port=int(env.get(f"{prefix}_PORT", "587") or "587"),
        username=env.get(f"{prefix}_USER", ""),
        password=env.get(f"{prefix}_PASS", ""),
        sender=env.get(f"{prefix}_FROM", "") or env.get(f"{prefix}_USER", ""),
        starttls=_as_bool(env.get(f"{prefix}_STARTTLS"), True),
        daily_limit=_as_limit(env.get(f"{prefix}_DAILY_LIMIT")),
    )


def twilio_from_env(env: Mapping[str, str], prefix: str = "TWILIO") -> TwilioConfig:
    return TwilioConfig(
        account_sid=env.get(f"{prefix}_ACCOUNT_SID", ""),
        auth_token=env.get(f"{prefix}_AUTH_TOKEN", ""),
        from_number=env.get(f"{prefix}_FROM_NUMBER", ""),
        daily_limit=_as_limit(env.get(f"{prefix}_DAILY_LIMIT")),
    )


@lru_cache
def get_settings() -> Settings:
    """
    Load and cache settings.

    Raises ValidationError if .env is incomplete or invalid.
    """
    # Собираем значения из окружения вручную, чтобы не зависеть от pydantic-settings
    env = os.environ

    try:
        site = SiteConfig(
            url=env.get("RMV_URL", ""),
            zip_code=env.get("RMV_ZIP", ""),
            headless=_as_bool(env.get("HEADLESS"), True),
            user_agent=env.get("USER_AGENT", "") or DEFAULT_USER_AGENT,
        )
        channels = parse_channels(env.get("CHANNELS", "email,sms"))
        monitor = MonitorOptions(
            locations=parse_locations(env.get("LOCATIONS")),
            date_range_start=date.fromisoformat(env.get("DATE_RANGE_START", "") or date.today().isoformat()),
            date_range_end=date.fromisoformat(env.get("DATE_RANGE_END", "") or "2099-12-31"),
            time_window_start=time.fromisoformat(env.get("TIME_WINDOW_START", "08:00")),
            time_window_end=time.fromisoformat(env.get("TIME_WINDOW_END", "17:00")),
            poll_interval_seconds=int(env.get("POLL_INTERVAL", "300")),
            poll_interval_variation=int(env.get("POLL_INTERVAL_VARIATION", "30")),
            channels=channels,
        )
        admin_chat_id = int(env.get("ADMIN_CHAT_ID", "0") or "0")
        recipients = RecipientConfig(
            email=env.get("NOTIFY_EMAIL") or None,
            phone=env.get("NOTIFY_PHONE") or None,
            telegram_chat_id=admin_chat_id or None,
            webhook_url=env.get("NOTIFY_WEBHOOK_URL") or None,
            channels=channels,
        )
        smtp = smtp_from_env(env)
        twilio = twilio_from_env(env)
        smtp_backup = smtp_from_env(env, "SMTP_BACKUP")
        twilio_backup = twilio_from_env(env, "TWILIO_BACKUP")
        bot_token = env.get("BOT_TOKEN", "")
        bot = BotConfig(token=bot_token, admin_chat_id=admin_chat_id) if bot_token else None
        timeouts = TimeoutConfig(
            strategy_seconds=float(env.get("STRATEGY_TIMEOUT", "8")),
            replay_seconds=float(env.get("REPLAY_TIMEOUT", "10")),
            send_seconds=float(env.get("SEND_TIMEOUT", "15")),
            page_load_seconds=float(env.get("PAGE_LOAD_TIMEOUT", "20")),
            session_max_age_seconds=int(env.get("SESSION_MAX_AGE", "1800")),
        )
        logging_cfg = LoggingConfig(log_level=env.get("LOG_LEVEL", "INFO"))
        return Settings(
            site=site,
            monitor=monitor,
            recipients=recipients,
            smtp=smtp,
            twilio=twilio,
            smtp_backup=smtp_backup if smtp_backup.enabled else None,
            twilio_backup=twilio_backup if twilio_backup.enabled else None,
            bot=bot,
            timeouts=timeouts,
            logging=logging_cfg,
        )
    except ValidationError:
        # Пробрасываем дальше, чтобы верхний уровень мог вывести аккуратную ошибку
        raise


__all__ = [
    "BASE_DIR",
    "DATA_DIR",
    "DEFAULT_USER_AGENT",
    "BotConfig",
    "LoggingConfig",
    "SMTPConfig",
    "Settings",
    "SiteConfig",
    "TimeoutConfig",
    "TwilioConfig",
    "get_settings",
    "parse_channels",
    "parse_locations",
    "smtp_from_env",
    "twilio_from_env",
]
