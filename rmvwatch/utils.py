"""
Logging setup and the delay arithmetic shared by the monitor and notifications.

Логирование (файл с ротацией + консоль) и расчёт пауз: интервал опроса
с джиттером и экспоненциальный backoff для ретраев.
"""

from __future__ import annotations

import logging
import random
from logging.handlers import RotatingFileHandler
from typing import Iterable

from .config import LoggingConfig, get_settings


LOG_FILE_NAME = "rmvwatch.log"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"

# Сторонние логгеры, которые на INFO пишут по строке на каждый HTTP-запрос
QUIET_LOGGERS = ("httpx", "twilio.http_client", "aiogram.event")


def setup_logging(
    logging_cfg: LoggingConfig | None = None,
    *,
    quiet: Iterable[str] = QUIET_LOGGERS,
) -> RotatingFileHandler:
    """
    Send every ``rmvwatch.*`` record to ``logs/rmvwatch.log`` and the console.

    Логгеры из ``quiet`` поднимаются до WARNING, чтобы опрос каждые пару
    минут не забивал файл запросами к сайту, Twilio и Telegram.
    """
    cfg = logging_cfg or get_settings().logging
    cfg.logs_dir.mkdir(parents=True, exist_ok=True)

    formatter = logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    file_handler = RotatingFileHandler(
        cfg.logs_dir / LOG_FILE_NAME,
        maxBytes=cfg.max_bytes,
        backupCount=cfg.backup_count,
        encoding="utf-8",
    )
    console_handler = logging.StreamHandler()
    for handler in (file_handler, console_handler):
        handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(cfg.log_level.upper())
    root.handlers[:] = [file_handler, console_handler]

    for name in quiet:
        logging.getLogger(name).setLevel(logging.WARNING)
    return file_handler


def jitter_delay(base_seconds: float, variation_seconds: float) -> float:
    """Poll interval shifted by up to ``variation_seconds`` either way, never under 1 s."""
    if variation_seconds <= 0:
        return float(base_seconds)
    return max(1.0, base_seconds + random.uniform(-variation_seconds, variation_seconds))


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Exponential delay before retry number ``attempt`` (1-based)."""
    return min(max_delay, base_delay * (2 ** max(0, attempt - 1)))


__all__ = ["LOG_FILE_NAME", "QUIET_LOGGERS", "backoff_delay", "jitter_delay", "setup_logging"]
