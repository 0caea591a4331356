"""
Notification dispatch: email (SMTP), SMS (Twilio), Telegram (aiogram), webhook (httpx).

Рассылка уведомлений о новых слотах:
- одна задача (NotificationJob) на каждый включённый канал
- у канала упорядоченный список провайдеров: при ошибке или исчерпанном
  дневном лимите сообщение уходит через следующий
- экспоненциальный backoff, фиксированный максимум попыток
- каналы независимы: падение одного не задерживает другой
- остановка монитора прерывает ожидание между попытками
- окончательный отказ логируется с каналом, адресатом, слотами и числом попыток
"""

from __future__ import annotations

import asyncio
import html
import logging
import smtplib
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from email.message import EmailMessage
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Sequence, Union

import httpx
from aiogram import Bot
from aiogram.exceptions import TelegramAPIError
from twilio.base.exceptions import TwilioException
from twilio.rest import Client

from .config import SMTPConfig, TwilioConfig
from .errors import ProviderError
from .models import AppointmentSlot, Channel, RecipientConfig
from .utils import backoff_delay

logger = logging.getLogger(__name__)


DEFAULT_MAX_ATTEMPTS = 4
DEFAULT_SEND_TIMEOUT = 15.0
SMS_MAX_LENGTH = 320


@dataclass(frozen=True)
class NotificationMessage:
    subject: str
    text: str
    html: str
    short: str
    # машиночитаемая версия для вебхука
    data: Dict[str, Any] = field(default_factory=dict)


def _slot_date(slot: AppointmentSlot) -> str:
    return slot.date.strftime("%a, %b %d %Y")


def _slot_time(slot: AppointmentSlot) -> str:
    return slot.time.strftime("%I:%M %p").lstrip("0")


def summarize_slots(slots: Sequence[AppointmentSlot], location_names: Mapping[int, str] | None = None) -> str:
    """Compact one-line description used in logs."""
    if not slots:
        return "no slots"
    names = location_names or {}
    first = slots[0]
    head = f"{names.get(first.location_id, first.location_id)} {first.date.isoformat()} {first.time.strftime('%H:%M')}"
    if len(slots) > 1:
        head += f" (+{len(slots) - 1} more)"
    return head


def format_message(
    slots: Sequence[AppointmentSlot],
    location_names: Mapping[int, str] | None = None,
    booking_url: str = "",
) -> NotificationMessage:
    """Build subject, plain text, HTML and SMS bodies for a batch of new slots."""
    names = location_names or {}
    ordered = sorted(slots, key=lambda s: (s.date, s.time, s.location_id))
    count = len(ordered)
    plural = "s" if count != 1 else ""

    lines = [f"Found {count} RMV appointment{plural}:", ""]
    items = []
    for slot in ordered:
        name = names.get(slot.location_id, f"Location {slot.location_id}")
        lines.append(f"- {name} - {_slot_date(slot)} at {_slot_time(slot)}")
        items.append(
            f"<li><b>{html.escape(_slot_date(slot))}</b> at <b>{html.escape(_slot_time(slot))}</b>"
            f"<br><small>{html.escape(name)}</small></li>"
        )
    if booking_url:
        lines += ["", f"Book now: {booking_url}"]
    lines += ["", "RMV appointments fill up quickly."]

    link = f'<p><a href="{html.escape(booking_url, quote=True)}">Book now</a></p>' if booking_url else ""
    body_html = (
        "<h2>New RMV appointments available</h2>"
        f"<p>Found <b>{count}</b> appointment{plural}:</p>"
        f"<ul>{''.join(items)}</ul>{link}"
    )

    if ordered:
        first = ordered[0]
        first_name = names.get(first.location_id, f"Location {first.location_id}")
        if count == 1:
            short = f"RMV: new appointment {_slot_date(first)} at {_slot_time(first)} ({first_name})."
        else:
            short = f"RMV: {count} new appointments. Earliest {_slot_date(first)} at {_slot_time(first)} ({first_name})."
    else:
        short = "RMV: no new appointments."
    if booking_url:
        short += f" Book: {booking_url}"

    return NotificationMessage(
        subject=f"RMV appointment{plural} available: {count} new",
        text="\n".join(lines),
        html=body_html,
        short=short[:SMS_MAX_LENGTH],
        data={
            "event": "appointments_found",
            "count": count,
            "appointments": [
                {
                    "location_id": slot.location_id,
                    "location": names.get(slot.location_id, f"Location {slot.location_id}"),
                    "date": slot.date.isoformat(),
                    "time": slot.time.strftime("%H:%M"),
                }
                for slot in ordered
            ],
            "booking_url": booking_url or None,
        },
    )


class NotificationProvider(Protocol):
    async def send(self, recipient: str, message: NotificationMessage) -> None:
        """Deliver ``message`` or raise ProviderError."""


class EmailProvider:
    """SMTP delivery; the blocking smtplib call runs in a worker thread."""

    channel = Channel.EMAIL

    def __init__(self, cfg: SMTPConfig, *, timeout: float = DEFAULT_SEND_TIMEOUT) -> None:
        self._cfg = cfg
        self._timeout = timeout

    async def send(self, recipient: str, message: NotificationMessage) -> None:
        if not self._cfg.enabled:
            raise ProviderError("SMTP is not configured", channel=self.channel)
        try:
            await asyncio.to_thread(self._send_sync, recipient, message)
        except (smtplib.SMTPException, OSError) as e:
            raise ProviderError(f"SMTP delivery failed: {e}", channel=self.channel) from e

    def _send_sync(self, recipient: str, message: NotificationMessage) -> None:
        msg = EmailMessage()
        msg["Subject"] = message.subject
        msg["From"] = self._cfg.sender or self._cfg.username
        msg["To"] = recipient
        msg.set_content(message.text)
        msg.add_alternative(message.html, subtype="html")

        with smtplib.SMTP(self._cfg.host, self._cfg.port, timeout=self._timeout) as server:
            if self._cfg.starttls:
                server.starttls()
            if self._cfg.username:
                server.login(self._cfg.username, self._cfg.password)
            server.send_message(msg)


class SmsProvider:
    """Twilio SMS delivery."""

    channel = Channel.SMS

    def __init__(self, cfg: TwilioConfig, client: Optional[Client] = None) -> None:
        self._cfg = cfg
        self._client = client

    def _get_client(self) -> Client:
        if self._client is None:
            self._client = Client(self._cfg.account_sid, self._cfg.auth_token)
        return self._client

    async def send(self, recipient: str, message: NotificationMessage) -> None:
        if not self._cfg.enabled:
            raise ProviderError("Twilio is not configured", channel=self.channel)
        try:
            await asyncio.to_thread(
                self._get_client().messages.create,
                body=message.short,
                from_=self._cfg.from_number,
                to=recipient,
            )
        except (TwilioException, OSError) as e:
            raise ProviderError(f"Twilio delivery failed: {e}", channel=self.channel) from e


class TelegramProvider:
    channel = Channel.TELEGRAM

    def __init__(self, bot: Bot) -> None:
        self._bot = bot

    async def send(self, recipient: str, message: NotificationMessage) -> None:
        try:
            await self._bot.send_message(chat_id=int(recipient), text=html.escape(message.text))
        except (TelegramAPIError, ValueError) as e:
            raise ProviderError(f"Telegram delivery failed: {e}", channel=self.channel) from e


class WebhookProvider:
    """POST the alert as JSON to the recipient's URL."""

    channel = Channel.WEBHOOK

    def __init__(
        self,
        *,
        timeout: float = DEFAULT_SEND_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._timeout = timeout
        self._transport = transport

    async def send(self, recipient: str, message: NotificationMessage) -> None:
        body = {
            **message.data,
            "subject": message.subject,
            "text": message.text,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.post(recipient, json=body)
                resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ProviderError(f"webhook answered HTTP {e.response.status_code}", channel=self.channel) from e
        except httpx.HTTPError as e:
            raise ProviderError(f"webhook delivery failed: {e!r}", channel=self.channel) from e
        logger.info("Webhook delivered to %s", recipient)


@dataclass
class ProviderEntry:
    """One provider inside a channel, with an optional per-day send limit."""

    provider: NotificationProvider
    name: str
    daily_limit: Optional[int] = None
    used_today: int = 0
    day: Optional[date] = None

    def exhausted(self, today: date) -> bool:
        if self.day != today:
            self.day = today
            self.used_today = 0
        return self.daily_limit is not None and self.used_today >= self.daily_limit


class ProviderChain:
    """
    Ordered providers of one channel.

    Провайдеры перебираются по порядку: ProviderError, таймаут или выбранный
    дневной лимит передают сообщение следующему. Если не справился никто,
    бросается ProviderError со списком причин, и ретраи делает диспетчер.
    """

    def __init__(
        self,
        channel: Channel,
        providers: Sequence[Union[ProviderEntry, NotificationProvider]],
        *,
        timeout: float = DEFAULT_SEND_TIMEOUT,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.channel = channel
        self.entries: List[ProviderEntry] = [
            p if isinstance(p, ProviderEntry) else ProviderEntry(p, type(p).__name__) for p in providers
        ]
        self._timeout = timeout
        self._today = today

    async def send(self, recipient: str, message: NotificationMessage) -> str:
        """Deliver through the first provider that accepts; returns its name."""
        today = self._today()
        reasons: List[str] = []
        for entry in self.entries:
            if entry.exhausted(today):
                reasons.append(f"{entry.name}: daily limit of {entry.daily_limit} reached")
                continue
            try:
                await asyncio.wait_for(entry.provider.send(recipient, message), timeout=self._timeout)
            except asyncio.TimeoutError:
                reason = f"send timed out after {self._timeout:g}s"
            except ProviderError as e:
                reason = str(e)
            except Exception as e:  # noqa: BLE001
                reason = f"{type(e).__name__}: {e}"
            else:
                entry.used_today += 1
                return entry.name
            reasons.append(f"{entry.name}: {reason}")
            logger.warning("Provider %s failed for %s: %s", entry.name, self.channel.value, reason)
        raise ProviderError("; ".join(reasons) or "no providers in chain", channel=self.channel)


ProviderSpec = Union[ProviderChain, NotificationProvider, Sequence[Union[ProviderEntry, NotificationProvider]]]


class JobState(str, Enum):
    PENDING = "pending"
    BACKOFF = "backoff"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class NotificationJob:
    """
    Retry state of one channel delivery.

    PENDING -> (SUCCEEDED | BACKOFF -> ... -> SUCCEEDED | FAILED)
    Любое нетерминальное состояние -> CANCELLED при остановке монитора.
    """

    channel: Channel
    recipient: str
    payload: NotificationMessage
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    attempt: int = 0
    state: JobState = JobState.PENDING
    next_eligible_at: float = 0.0
    last_error: Optional[str] = None

    @property
    def terminal(self) -> bool:
        return self.state in (JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELLED)

    def begin_attempt(self) -> None:
        if self.terminal:
            raise RuntimeError(f"job for {self.channel.value} is already {self.state.value}")
        self.attempt += 1

    def record_success(self) -> None:
        self.state = JobState.SUCCEEDED
        self.last_error = None

    def record_failure(self, error: str, now: float, delay: float) -> None:
        self.last_error = error
        if self.attempt >= self.max_attempts:
            self.state = JobState.FAILED
            return
        self.state = JobState.BACKOFF
        self.next_eligible_at = now + delay

    def cancel(self) -> None:
        if self.terminal:
            return
        self.state = JobState.CANCELLED
        self.last_error = "cancelled"


@dataclass(frozen=True)
class ChannelOutcome:
    channel: Channel
    recipient: str
    success: bool
    attempts: int
    error: Optional[str] = None
    provider: Optional[str] = None
    cancelled: bool = False


@dataclass
class DispatchReport:
    outcomes: List[ChannelOutcome] = field(default_factory=list)

    def by_channel(self, channel: Channel) -> Optional[ChannelOutcome]:
        return next((o for o in self.outcomes if o.channel is channel), None)

    @property
    def succeeded(self) -> List[Channel]:
        return [o.channel for o in self.outcomes if o.success]

    @property
    def failed(self) -> List[Channel]:
        return [o.channel for o in self.outcomes if not o.success and not o.cancelled]

    @property
    def cancelled(self) -> List[Channel]:
        return [o.channel for o in self.outcomes if o.cancelled]

    def summary(self) -> List[str]:
        lines = []
        for o in self.outcomes:
            status = "ok" if o.success else ("cancelled" if o.cancelled else "failed")
            line = f"{o.channel.value}: {status} ({o.attempts} attempts)"
            if o.provider:
                line += f" via {o.provider}"
            if o.error:
                line += f" - {o.error}"
            lines.append(line)
        return lines


async def _wait_or_cancel(delay: float, cancel: Optional[asyncio.Event]) -> None:
    if cancel is None:
        await asyncio.sleep(delay)
        return
    try:
        await asyncio.wait_for(cancel.wait(), timeout=delay)
    except asyncio.TimeoutError:
        pass


class NotificationDispatcher:
    """Fan-out of one alert to every configured channel with independent retries."""

    def __init__(
        self,
        providers: Mapping[Channel, ProviderSpec],
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay: float = 2.0,
        max_delay: float = 60.0,
        send_timeout: float = DEFAULT_SEND_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._chains: Dict[Channel, ProviderChain] = {}
        for channel, spec in providers.items():
            if isinstance(spec, ProviderChain):
                self._chains[channel] = spec
            elif isinstance(spec, (list, tuple)):
                self._chains[channel] = ProviderChain(channel, spec, timeout=send_timeout)
            else:
                self._chains[channel] = ProviderChain(channel, [spec], timeout=send_timeout)
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._clock = clock

    def chain(self, channel: Channel) -> Optional[ProviderChain]:
        return self._chains.get(channel)

    async def notify(
        self,
        recipients: RecipientConfig,
        slots: Sequence[AppointmentSlot],
        *,
        location_names: Mapping[int, str] | None = None,
        booking_url: str = "",
        cancel: Optional[asyncio.Event] = None,
    ) -> DispatchReport:
        """
        Send one alert per enabled channel.

        ``cancel`` - событие остановки монитора: после него новые попытки
        не начинаются, а ожидание backoff обрывается.
        """
        message = format_message(slots, location_names, booking_url)
        summary = summarize_slots(slots, location_names)
        jobs = [
            NotificationJob(
                channel=channel,
                recipient=recipients.address_for(channel) or "",
                payload=message,
                max_attempts=self._max_attempts,
            )
            for channel in dict.fromkeys(recipients.channels)
        ]
        outcomes = await asyncio.gather(*(self._run_job(job, summary, cancel) for job in jobs))
        report = DispatchReport(list(outcomes))
        logger.info("Dispatch finished: %s", "; ".join(report.summary()) or "no channels")
        return report

    async def _run_job(self, job: NotificationJob, summary: str, cancel: Optional[asyncio.Event]) -> ChannelOutcome:
        chain = self._chains.get(job.channel)
        if not job.recipient or chain is None:
            reason = "no recipient configured" if not job.recipient else "no provider configured"
            logger.error("Notification via %s skipped: %s (%s)", job.channel.value, reason, summary)
            return ChannelOutcome(job.channel, job.recipient, False, 0, reason)

        provider: Optional[str] = None
        while not job.terminal:
            wait = job.next_eligible_at - self._clock()
            if wait > 0:
                await _wait_or_cancel(wait, cancel)
            if cancel is not None and cancel.is_set():
                job.cancel()
                break
            job.begin_attempt()
            try:
                provider = await chain.send(job.recipient, job.payload)
            except ProviderError as e:
                error = str(e)
            else:
                job.record_success()
                logger.info(
                    "Notification via %s to %s sent by %s on attempt %s",
                    job.channel.value,
                    job.recipient,
                    provider,
                    job.attempt,
                )
                break

            job.record_failure(error, self._clock(), backoff_delay(job.attempt, self._base_delay, self._max_delay))
            if job.state is JobState.BACKOFF:
                logger.warning(
                    "Notification via %s failed (attempt %s/%s): %s",
                    job.channel.value,
                    job.attempt,
                    job.max_attempts,
                    error,
                )

        if job.state is JobState.FAILED:
            logger.error(
                "Notification via %s to %s failed permanently after %s attempts [%s]: %s",
                job.channel.value,
                job.recipient,
                job.attempt,
                summary,
                job.last_error,
            )
        elif job.state is JobState.CANCELLED:
            logger.info("Notification via %s cancelled after %s attempts [%s]", job.channel.value, job.attempt, summary)
        return ChannelOutcome(
            channel=job.channel,
            recipient=job.recipient,
            success=job.state is JobState.SUCCEEDED,
            attempts=job.attempt,
            error=job.last_error,
            provider=provider if job.state is JobState.SUCCEEDED else None,
            cancelled=job.state is JobState.CANCELLED,
        )


def _smtp_entry(cfg: SMTPConfig, send_timeout: float) -> ProviderEntry:
    return ProviderEntry(EmailProvider(cfg, timeout=send_timeout), f"smtp:{cfg.host}", cfg.daily_limit)


def _twilio_entry(cfg: TwilioConfig) -> ProviderEntry:
    return ProviderEntry(SmsProvider(cfg), f"twilio:{cfg.from_number}", cfg.daily_limit)


def build_providers(
    smtp: SMTPConfig,
    twilio: TwilioConfig,
    bot: Optional[Bot] = None,
    *,
    smtp_backup: Optional[SMTPConfig] = None,
    twilio_backup: Optional[TwilioConfig] = None,
    send_timeout: float = DEFAULT_SEND_TIMEOUT,
) -> Dict[Channel, ProviderChain]:
    """
    Build a provider chain for every channel that has credentials.

    Основной аккаунт идёт первым, запасной - вторым. Вебхук не требует
    учётных данных, поэтому доступен всегда; адрес задаёт получатель.
    """
    chains: Dict[Channel, ProviderChain] = {}

    email = [_smtp_entry(cfg, send_timeout) for cfg in (smtp, smtp_backup) if cfg is not None and cfg.enabled]
    if email:
        chains[Channel.EMAIL] = ProviderChain(Channel.EMAIL, email, timeout=send_timeout)

    sms = [_twilio_entry(cfg) for cfg in (twilio, twilio_backup) if cfg is not None and cfg.enabled]
    if sms:
        chains[Channel.SMS] = ProviderChain(Channel.SMS, sms, timeout=send_timeout)

    if bot is not None:
        chains[Channel.TELEGRAM] = ProviderChain(
            Channel.TELEGRAM, [ProviderEntry(TelegramProvider(bot), "telegram")], timeout=send_timeout
        )

    chains[Channel.WEBHOOK] = ProviderChain(
        Channel.WEBHOOK, [ProviderEntry(WebhookProvider(timeout=send_timeout), "webhook")], timeout=send_timeout
    )
    return chains


__all__ = [
    "ChannelOutcome",
    "DispatchReport",
    "EmailProvider",
    "JobState",
    "NotificationDispatcher",
    "NotificationJob",
    "NotificationMessage",
    "ProviderChain",
    "ProviderEntry",
    "SmsProvider",
    "TelegramProvider",
    "WebhookProvider",
    "build_providers",
    "format_message",
    "summarize_slots",
]
