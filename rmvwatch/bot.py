"""
Telegram bot entrypoint built with aiogram 3.

Основной модуль Telegram-бота:
- /start, /status, /locations
- кнопки: Запустить, Пауза, Продолжить, Остановить, Статус
- мидлвара, которая пускает только админа по chat_id
- без BOT_TOKEN мониторинг запускается без бота (только email/SMS)
"""

from __future__ import annotations

import asyncio
import html
import logging
import sys
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from aiogram import BaseMiddleware, Bot, Dispatcher, F
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ParseMode
from aiogram.filters import Command
from aiogram.types import CallbackQuery, InlineKeyboardButton, InlineKeyboardMarkup, Message
from pydantic import ValidationError

from .browser import SiteBrowser
from .config import Settings, get_settings
from .errors import ExtractionError, WatchError
from .extractor import SlotExtractor
from .models import MonitorPhase
from .monitor import MonitorLoop
from .notify import NotificationDispatcher, build_providers
from .replay import DirectRequestReplayer
from .scanner import AppointmentScanner
from .selector import LocationSelector, default_strategies
from .session import SessionExtractor
from .utils import setup_logging

logger = logging.getLogger(__name__)


PHASE_TITLES = {
    "idle": "не запускался",
    "running": "запущен",
    "paused": "на паузе",
    "stopped": "остановлен",
}


class AdminOnlyMiddleware(BaseMiddleware):
    """Allow only admin user to interact with bot."""

    def __init__(self, admin_chat_id: int) -> None:
        super().__init__()
        self.admin_chat_id = admin_chat_id

    async def __call__(
        self,
        handler: Callable[[Any, Dict[str, Any]], Awaitable[Any]],
        event: Any,
        data: Dict[str, Any],
    ) -> Any:
        chat = getattr(event, "chat", None)
        if chat is None and isinstance(event, CallbackQuery) and event.message:
            chat = event.message.chat
        if chat is not None and chat.id != self.admin_chat_id:
            if isinstance(event, Message):
                await event.answer("Этот бот предназначен только для владельца.")
            return None
        return await handler(event, data)


@dataclass
class Runtime:
    """Everything one monitor needs, wired from settings."""

    browser: SiteBrowser
    extractor: SessionExtractor
    replayer: DirectRequestReplayer
    monitor: MonitorLoop

    async def aclose(self) -> None:
        await self.replayer.aclose()
        await self.browser.close()


def build_runtime(settings: Settings, bot: Optional[Bot] = None) -> Runtime:
    timeouts = settings.timeouts
    options = settings.monitor

    browser = SiteBrowser(
        headless=settings.site.headless,
        user_agent=settings.site.user_agent,
        page_load_timeout=timeouts.page_load_seconds,
    )
    extractor = SessionExtractor(browser, timeout=timeouts.page_load_seconds * 2)
    replayer = DirectRequestReplayer(timeout=timeouts.replay_seconds, user_agent=settings.site.user_agent)
    scanner = AppointmentScanner(
        browser,
        selector=LocationSelector(default_strategies(timeouts.strategy_seconds)),
        extractor=SlotExtractor(),
        replayer=replayer,
        replay_timeout=timeouts.replay_seconds,
    )
    dispatcher = NotificationDispatcher(
        build_providers(
            settings.smtp,
            settings.twilio,
            bot,
            smtp_backup=settings.smtp_backup,
            twilio_backup=settings.twilio_backup,
            send_timeout=timeouts.send_seconds,
        ),
        send_timeout=timeouts.send_seconds,
    )

    async def session_factory():
        return await extractor.extract(
            settings.site.url,
            settings.site.zip_code,
            options.locations,
            options.preferences,
        )

    monitor = MonitorLoop(
        scanner,
        dispatcher,
        options,
        settings.recipients,
        session_factory=session_factory,
        session_max_age=timeouts.session_max_age_seconds,
    )
    return Runtime(browser=browser, extractor=extractor, replayer=replayer, monitor=monitor)


def format_status(monitor: MonitorLoop) -> str:
    st = monitor.state
    text = (
        f"📊 <b>Статус мониторинга</b>\n"
        f"Состояние: {PHASE_TITLES.get(st.phase.value, st.phase.value)}\n"
        f"Проверок выполнено: {st.checks_count}\n"
        f"Всего найдено слотов: {st.slots_found_total}\n"
        f"Уведомлений отправлено: {st.notifications_sent}\n"
        f"Слотов в реестре: {monitor.registry_size}\n"
    )
    if st.last_check_at:
        text += f"Последняя проверка: {st.last_check_at:%Y-%m-%d %H:%M:%S} UTC\n"
    if st.last_error:
        text += f"Последняя ошибка: <code>{html.escape(st.last_error)}</code>\n"
    cooldown = monitor.captcha_cooldown_remaining()
    if cooldown:
        text += f"Пауза из-за капчи: ещё {cooldown:.0f} с\n"
    if st.last_dispatch:
        text += "Последняя рассылка: " + html.escape(", ".join(st.last_dispatch)) + "\n"

    # последние результаты по каждому отделению
    latest: Dict[int, Any] = {}
    for result in monitor.history:
        latest[result.location_id] = result
    for result in latest.values():
        strategy = result.strategy_used.value if result.strategy_used else "-"
        mark = "✅" if result.success else "⚠️"
        text += f"{mark} {html.escape(result.location_name)}: {len(result.slots)} слотов ({strategy}, {result.elapsed_ms} мс)\n"
    return text


def main_keyboard() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(
        inline_keyboard=[
            [
                InlineKeyboardButton(text="▶️ Запустить", callback_data="start_monitoring"),
                InlineKeyboardButton(text="⏹ Остановить", callback_data="stop_monitoring"),
            ],
            [
                InlineKeyboardButton(text="⏸ Пауза", callback_data="pause_monitoring"),
                InlineKeyboardButton(text="⏯ Продолжить", callback_data="resume_monitoring"),
            ],
            [InlineKeyboardButton(text="ℹ️ Статус", callback_data="status")],
        ]
    )


def build_dispatcher(settings: Settings, runtime: Runtime) -> Dispatcher:
    assert settings.bot is not None
    dp = Dispatcher()
    middleware = AdminOnlyMiddleware(settings.bot.admin_chat_id)
    dp.message.middleware(middleware)
    dp.callback_query.middleware(middleware)
    monitor = runtime.monitor

    @dp.message(Command("start"))
    async def cmd_start(message: Message) -> None:
        names = ", ".join(loc.name for loc in settings.monitor.locations)
        await message.answer(
            "👋 Привет! Я слежу за свободными записями в RMV.\n\n"
            f"Отделения: {html.escape(names)}\n"
            f"Даты: {settings.monitor.date_range_start} - {settings.monitor.date_range_end}\n"
            f"Время: {settings.monitor.time_window_start:%H:%M} - {settings.monitor.time_window_end:%H:%M}\n\n"
            "Команда /locations покажет все отделения, доступные по ссылке.",
            reply_markup=main_keyboard(),
        )

    @dp.message(Command("status"))
    async def cmd_status(message: Message) -> None:
        await message.answer(format_status(monitor), reply_markup=main_keyboard())

    @dp.message(Command("locations"))
    async def cmd_locations(message: Message) -> None:
        await message.answer("Загружаю список отделений, подождите...")
        try:
            locations = await runtime.extractor.discover_locations(settings.site.url)
        except ExtractionError as e:
            await message.answer(f"Не удалось получить список отделений: <code>{html.escape(str(e))}</code>")
            return
        if not locations:
            await message.answer("Отделения не найдены.")
            return
        lines = [f"<code>{loc.id}</code> {html.escape(loc.name)}" for loc in locations]
        await message.answer("Доступные отделения (id и название):\n" + "\n".join(lines))

    async def run_action(callback: CallbackQuery, action: Callable[[], Awaitable[None]], done_text: str) -> None:
        await callback.answer()
        try:
            await action()
            text = done_text
        except WatchError as e:
            text = f"Не получилось: {html.escape(str(e))}"
        if callback.message:
            await callback.message.edit_text(text, reply_markup=main_keyboard())

    async def do_start() -> None:
        monitor.start()

    async def do_pause() -> None:
        monitor.pause()

    async def do_resume() -> None:
        monitor.resume()

    @dp.callback_query(F.data == "start_monitoring")
    async def on_start_monitoring(callback: CallbackQuery) -> None:
        await run_action(callback, do_start, "Мониторинг запущен ✅")

    @dp.callback_query(F.data == "stop_monitoring")
    async def on_stop_monitoring(callback: CallbackQuery) -> None:
        await run_action(callback, monitor.stop, "Мониторинг остановлен ⏹️")

    @dp.callback_query(F.data == "pause_monitoring")
    async def on_pause_monitoring(callback: CallbackQuery) -> None:
        await run_action(callback, do_pause, "Мониторинг на паузе ⏸")

    @dp.callback_query(F.data == "resume_monitoring")
    async def on_resume_monitoring(callback: CallbackQuery) -> None:
        await run_action(callback, do_resume, "Мониторинг продолжен ▶️")

    @dp.callback_query(F.data == "status")
    async def on_status(callback: CallbackQuery) -> None:
        await callback.answer()
        if callback.message:
            await callback.message.edit_text(format_status(monitor), reply_markup=main_keyboard())

    return dp


async def _shutdown(runtime: Runtime) -> None:
    if runtime.monitor.phase in (MonitorPhase.RUNNING, MonitorPhase.PAUSED):
        await runtime.monitor.stop()
    await runtime.aclose()


async def _run_polling(settings: Settings) -> None:
    assert settings.bot is not None
    bot = Bot(
        settings.bot.token,
        default=DefaultBotProperties(parse_mode=ParseMode.HTML),
    )
    runtime = build_runtime(settings, bot)
    dp = build_dispatcher(settings, runtime)
    try:
        await dp.start_polling(bot)
    finally:
        await _shutdown(runtime)
        await bot.session.close()


async def _run_headless(settings: Settings) -> None:
    runtime = build_runtime(settings)
    runtime.monitor.start()
    try:
        await runtime.monitor.join()
    finally:
        await _shutdown(runtime)


def main() -> None:
    """Entry point: Telegram bot when BOT_TOKEN is set, plain monitor otherwise."""
    try:
        settings = get_settings()
    except (ValidationError, ValueError) as e:
        sys.stderr.write(f"Invalid configuration:\n{e}\n")
        raise SystemExit(2) from e
    setup_logging(settings.logging)

    if settings.bot is None:
        logger.info("BOT_TOKEN is not set, running monitor without Telegram control")
        runner = _run_headless(settings)
    else:
        logger.info("Starting polling")
        runner = _run_polling(settings)
    try:
        asyncio.run(runner)
    except KeyboardInterrupt:
        logger.info("Interrupted, exiting")


if __name__ == "__main__":
    main()
