"""
Error taxonomy of the watcher.

Иерархия исключений: ошибки сессии, стратегий, протокола и каналов уведомлений.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .models import Channel, StrategyName


class WatchError(Exception):
    """Base class for all watcher errors."""


class ExtractionError(WatchError):
    """Cannot obtain a usable SessionContext (bad URL, site down, unknown page)."""


@dataclass
class StrategyError(WatchError):
    """One location-selection strategy failed; the next one is tried."""

    strategy: StrategyName
    reason: str

    def __str__(self) -> str:
        return f"{self.strategy.value}: {self.reason}"


class RemoteProtocolError(WatchError):
    """
    Direct replay response no longer matches the expected shape.

    session_expired=True означает, что сайт сбросил сессию и нужен новый SessionContext.
    """

    def __init__(self, message: str, *, session_expired: bool = False) -> None:
        super().__init__(message)
        self.session_expired = session_expired


class ProviderError(WatchError):
    """Notification channel failed to deliver a message."""

    def __init__(self, message: str, *, channel: Optional[Channel] = None) -> None:
        super().__init__(message)
        self.channel = channel


class AlreadyRunning(WatchError):
    """start() called on a running monitor."""


class NotRunning(WatchError):
    """stop()/pause()/resume() called in a phase that does not allow it."""


__all__ = [
    "AlreadyRunning",
    "ExtractionError",
    "NotRunning",
    "ProviderError",
    "RemoteProtocolError",
    "StrategyError",
    "WatchError",
]
