"""
Meeting Alerts — Telegram Bot.

Hosts the alert engine: loads the persisted schedule on startup, drives the
scheduler tick from the job queue, and delivers alerts to the configured
chats. A few commands let an authorized user add, remove and list meeting
alerts by hand.

Security-first: unauthorized users are silently ignored.
"""

from __future__ import annotations

import logging
from functools import wraps
from typing import TYPE_CHECKING, Any, Callable, Coroutine

from telegram import Update
from telegram.ext import (
    Application,
    ApplicationBuilder,
    CommandHandler,
    ContextTypes,
)

from src.config import settings
from src.core.errors import InvalidDateError
from src.core.timezone import to_local_display

if TYPE_CHECKING:
    from src.core.scheduler import AlertScheduler
    from src.data.alert_store import AlertStore
    from src.ports.notification_port import NotificationDispatcher

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Security: silent-ignore decorator
# ---------------------------------------------------------------------------


def authorized_only(
    func: Callable[..., Coroutine[Any, Any, None]],
) -> Callable[..., Coroutine[Any, Any, None]]:
    """Decorator that silently ignores messages from unauthorized users.

    Does NOT send any response to strangers — the bot must not reveal
    its existence to unauthorized users.
    """

    @wraps(func)
    async def wrapper(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        user = update.effective_user
        if user is None or user.id not in settings.ALLOWED_USER_IDS:
            uid = user.id if user else "unknown"
            logger.warning("Unauthorized access attempt from user_id=%s", uid)
            return  # Silent ignore
        return await func(update, context)

    return wrapper


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

_HELP_TEXT = (
    "Meeting alerts\n\n"
    "/remind <id> <YYYY-MM-DDTHH:MM> [time zone] [title] — schedule alerts\n"
    "/unremind <id> — cancel a meeting's alerts\n"
    "/alerts — list pending alerts\n"
    "/help — show this message"
)


@authorized_only
async def cmd_start(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /start — greet the user."""
    await update.message.reply_text(
        "Hi! I'll remind you before your meetings start.\n\n" + _HELP_TEXT
    )


@authorized_only
async def cmd_help(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /help."""
    await update.message.reply_text(_HELP_TEXT)


def _parse_remind_args(
    args: list[str],
) -> tuple[str, str, str | None, str | None] | None:
    """Split /remind arguments into (meeting_id, start, time_zone, title).

    The third argument is taken as a time zone when it looks like one
    ("UTC" or an IANA "Area/City" name); otherwise it starts the title.
    """
    if len(args) < 2:
        return None
    meeting_id, start = args[0], args[1]
    rest = args[2:]

    time_zone = None
    if rest and (rest[0].upper() == "UTC" or "/" in rest[0]):
        time_zone = rest[0]
        rest = rest[1:]

    title = " ".join(rest).strip() or None
    return meeting_id, start, time_zone, title


@authorized_only
async def cmd_remind(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /remind <id> <start> [tz] [title] — schedule a meeting's alerts."""
    parsed = _parse_remind_args(context.args or [])
    if parsed is None:
        await update.message.reply_text(
            "Usage: /remind <id> <YYYY-MM-DDTHH:MM> [time zone] [title]"
        )
        return

    meeting_id, start, time_zone, title = parsed
    service = context.bot_data["alert_service"]
    try:
        entries = await service.schedule_meeting(meeting_id, start, time_zone, title)
    except InvalidDateError as exc:
        logger.info("/remind rejected: %s", exc)
        await update.message.reply_text(f"Couldn't understand that time: {exc}")
        return

    pending = [e for e in entries if e.is_pending]
    if not pending:
        await update.message.reply_text(
            f"Meeting {meeting_id} has no upcoming alerts (it already started?)."
        )
        return

    labels = ", ".join(e.offset_label for e in pending)
    await update.message.reply_text(
        f"✅ {len(pending)} alerts scheduled for {title or meeting_id}: {labels}"
    )


@authorized_only
async def cmd_unremind(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /unremind <id> — cancel a meeting's alerts."""
    args = context.args
    if not args:
        await update.message.reply_text("Usage: /unremind <meeting_id>")
        return

    service = context.bot_data["alert_service"]
    count = await service.cancel_meeting(args[0])
    if count:
        await update.message.reply_text(f"🗑️ Cancelled {count} alerts for {args[0]}.")
    else:
        await update.message.reply_text(f"No pending alerts for {args[0]}.")


@authorized_only
async def cmd_alerts(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /alerts — list every pending alert in local time."""
    store: AlertStore = context.bot_data["store"]
    service = context.bot_data["alert_service"]
    pending = store.pending_entries()
    if not pending:
        await update.message.reply_text("No pending alerts.")
        return

    lines = ["Pending alerts:"]
    for entry in pending:
        local = to_local_display(entry.fire_at_utc, settings.TIMEZONE)
        name = service.meeting_title(entry.meeting_id) or entry.meeting_id
        lines.append(f"  {local.date} {local.time}  {entry.offset_label:>4}  {name}")
    await update.message.reply_text("\n".join(lines))


# ---------------------------------------------------------------------------
# Application wiring
# ---------------------------------------------------------------------------


async def _post_init(app: Application) -> None:
    """Load the persisted schedule before the job queue starts ticking."""
    store: AlertStore = app.bot_data["store"]
    loaded = await store.load()
    logger.info("Loaded %d persisted alert entries", loaded)


def build_app(
    store: AlertStore | None = None,
    dispatcher: NotificationDispatcher | None = None,
) -> Application:
    """Build and configure the Telegram Application with handlers and the alert tick.

    Args:
        store: Alert store. Defaults to a SQLite-backed store at DATABASE_PATH.
        dispatcher: Notification dispatcher. Defaults to TelegramAlertDispatcher
                    (created from the bot instance after app is built).
    """
    from src.core.alert_service import AlertService
    from src.core.scheduler import AlertScheduler
    from src.data.alert_store import AlertStore
    from src.data.db import AlertScheduleDB

    app = ApplicationBuilder().token(settings.TELEGRAM_BOT_TOKEN).post_init(_post_init).build()

    if store is None:
        backend = AlertScheduleDB(settings.DATABASE_PATH, timeout=settings.STORE_TIMEOUT_SECONDS)
        store = AlertStore(backend=backend, io_timeout=settings.STORE_TIMEOUT_SECONDS)

    service = AlertService(
        store,
        offsets=settings.ALERT_OFFSETS,
        default_time_zone=settings.TIMEZONE,
        skip_past=settings.SKIP_PAST_ALERTS,
    )

    if dispatcher is None:
        from src.adapters.telegram_notifier import TelegramAlertDispatcher, TelegramNotifier
        dispatcher = TelegramAlertDispatcher(
            TelegramNotifier(app.bot),
            recipients=settings.ALLOWED_USER_IDS,
            time_zone=settings.TIMEZONE,
            retention=settings.retention_window,
        )

    scheduler = AlertScheduler(
        store,
        dispatcher,
        tick_interval=settings.TICK_INTERVAL_SECONDS,
        max_attempts=settings.MAX_DISPATCH_ATTEMPTS,
        retention_window=settings.retention_window,
        purge_interval=settings.purge_interval,
        dispatch_timeout=settings.DISPATCH_TIMEOUT_SECONDS,
    )

    # Store collaborators in bot_data for handler access
    app.bot_data["store"] = store
    app.bot_data["alert_service"] = service
    app.bot_data["scheduler"] = scheduler

    app.add_handler(CommandHandler("start", cmd_start))
    app.add_handler(CommandHandler("help", cmd_help))
    app.add_handler(CommandHandler("remind", cmd_remind))
    app.add_handler(CommandHandler("unremind", cmd_unremind))
    app.add_handler(CommandHandler("alerts", cmd_alerts))

    _setup_alert_tick(app, scheduler)

    logger.info("Telegram bot application built with %d handlers", len(app.handlers[0]))
    return app


def _setup_alert_tick(app: Application, scheduler: AlertScheduler) -> None:
    """Register the repeating scheduler tick on the job queue."""

    async def _tick_job_callback(context: ContextTypes.DEFAULT_TYPE) -> None:
        try:
            await scheduler.tick()
        except Exception as exc:
            logger.error("Alert tick failed: %s", exc)

    app.job_queue.run_repeating(
        _tick_job_callback,
        interval=scheduler.tick_interval,
        first=0,
        name="alert_tick",
    )

    logger.info("Alert tick scheduled every %.0fs", scheduler.tick_interval)


def main() -> None:
    """Entry point: build the app and start polling."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logger.info("Starting Meeting Alerts bot...")
    app = build_app()
    app.run_polling()


if __name__ == "__main__":
    main()
