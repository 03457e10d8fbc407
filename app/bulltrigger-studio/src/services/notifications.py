from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
import hashlib
import logging
import threading
import time
from typing import Any

from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import IntegrityError

from core.config import Config
from core.db import session_scope, utcnow
from core.models import SentMessage
from services import telegram
from services.telegram import PARSE_MODE_MARKDOWN

REACTION_TRADE = "trade_yes"
REACTION_SKIP = "trade_no"
REACTIONS = (REACTION_TRADE, REACTION_SKIP)
TRADE_BUTTONS = [
    [
        {"text": "👍 Trade", "callback_data": REACTION_TRADE},
        {"text": "❌ Skip", "callback_data": REACTION_SKIP},
    ]
]

_LOCK_IDLE_SECONDS = 600.0
_registry_lock = threading.Lock()
_fingerprint_locks: dict[str, tuple[threading.Lock, float]] = {}

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DispatchOutcome:
    fingerprint: str
    message_id: int
    reminder: bool


def _fingerprint_lock(fingerprint: str) -> threading.Lock:
    # Narrows contention inside one process; the database claim decides.
    now = time.monotonic()
    cutoff = now - _LOCK_IDLE_SECONDS
    with _registry_lock:
        stale = [
            key
            for key, (lock, last_used) in _fingerprint_locks.items()
            if last_used <= cutoff and not lock.locked()
        ]
        for key in stale:
            _fingerprint_locks.pop(key, None)
        entry = _fingerprint_locks.get(fingerprint)
        lock = entry[0] if entry is not None else threading.Lock()
        _fingerprint_locks[fingerprint] = (lock, now)
        return lock


def dedup_window() -> timedelta:
    return timedelta(hours=float(Config.NOTIFICATION_DEDUP_WINDOW_HOURS))


def message_fingerprint(chat_id: str | int, text: str) -> str:
    payload = f"{str(chat_id).strip()}\n{text}".encode("utf-8")
    return hashlib.sha256(payload).hexdigest()


def _find_record(session, fingerprint: str) -> SentMessage | None:
    return (
        session.execute(
            select(SentMessage).where(SentMessage.fingerprint == fingerprint).limit(1)
        )
        .scalars()
        .first()
    )


def _claim_full_send(fingerprint: str, chat_id: str) -> bool:
    """Reserve the full alert for ``fingerprint``.

    Returns True for exactly one caller per dedup window, across processes:
    the one that inserts the record or resets an expired one. Everyone else
    sends a reminder.
    """
    now = utcnow()
    cutoff = now - dedup_window()
    try:
        with session_scope() as session:
            reset = session.execute(
                update(SentMessage)
                .where(
                    SentMessage.fingerprint == fingerprint,
                    SentMessage.first_sent_at <= cutoff,
                )
                .values(
                    chat_id=chat_id,
                    message_id=None,
                    alert_message_id=None,
                    send_count=1,
                    reaction=None,
                    first_sent_at=now,
                    last_sent_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if reset.rowcount:
                return True
            if _find_record(session, fingerprint) is not None:
                return False
            SentMessage.create(
                session,
                fingerprint=fingerprint,
                chat_id=chat_id,
                send_count=1,
                first_sent_at=now,
                last_sent_at=now,
            )
            return True
    except IntegrityError:
        logger.info("Fingerprint %s was claimed concurrently", fingerprint[:12])
        return False


def _release_claim(fingerprint: str) -> None:
    with session_scope() as session:
        session.execute(
            delete(SentMessage).where(
                SentMessage.fingerprint == fingerprint,
                SentMessage.alert_message_id.is_(None),
            )
        )


def _store_full_send(fingerprint: str, message_id: int) -> None:
    with session_scope() as session:
        session.execute(
            update(SentMessage)
            .where(SentMessage.fingerprint == fingerprint)
            .values(
                message_id=message_id,
                alert_message_id=message_id,
                last_sent_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )


def _store_reminder(fingerprint: str, message_id: int) -> None:
    with session_scope() as session:
        session.execute(
            update(SentMessage)
            .where(SentMessage.fingerprint == fingerprint)
            .values(
                message_id=message_id,
                send_count=SentMessage.send_count + 1,
                last_sent_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )


def dispatch_message(
    chat_id: str | int | None,
    text: str,
    *,
    parse_mode: str | None = PARSE_MODE_MARKDOWN,
    buttons: list[list[dict[str, str]]] | None = None,
    fingerprint: str | None = None,
) -> DispatchOutcome:
    """Send ``text`` once as a full alert, then as reminders inside the window.

    Only one dedup record exists per fingerprint. A record older than the
    dedup window is reset so the next send is a full alert again. A failed
    full send gives the claim back.
    """
    target_chat = telegram.resolve_chat_id(chat_id)
    key = fingerprint or message_fingerprint(target_chat, text)
    with _fingerprint_lock(key):
        if not _claim_full_send(key, target_chat):
            message_id = telegram.send_message(target_chat, text, formatted=False)
            _store_reminder(key, message_id)
            logger.info("Sent reminder for fingerprint %s", key[:12])
            return DispatchOutcome(fingerprint=key, message_id=message_id, reminder=True)

        try:
            message_id = telegram.send_message(
                target_chat,
                text,
                formatted=True,
                parse_mode=parse_mode,
                buttons=buttons,
            )
        except Exception:
            _release_claim(key)
            raise
        _store_full_send(key, message_id)
        return DispatchOutcome(fingerprint=key, message_id=message_id, reminder=False)


def format_signal(signal: dict[str, Any]) -> str:
    symbol = str(signal.get("symbol") or "").strip().upper()
    lines = [f"🚀 *{symbol}* signal", f"Price: {signal.get('price')}"]
    timestamp = signal.get("timestamp")
    if timestamp:
        lines.append(f"Time: {timestamp}")
    return "\n".join(lines)


def dispatch_signal(signal: dict[str, Any], chat_id: str | int | None = None) -> DispatchOutcome:
    symbol = str(signal.get("symbol") or "").strip().upper()
    if not symbol:
        raise ValueError("Signal symbol is required.")
    if signal.get("price") is None:
        raise ValueError("Signal price is required.")
    return dispatch_message(
        chat_id,
        format_signal(signal),
        parse_mode=PARSE_MODE_MARKDOWN,
        buttons=TRADE_BUTTONS,
        fingerprint=f"{symbol}_{signal.get('price')}",
    )


def record_reaction(
    message_id: int,
    reaction: str,
    chat_id: str | int | None = None,
) -> bool:
    """Store an inline button reaction on the alert it was pressed under.

    Telegram message ids are only unique per chat, so the chat narrows the
    match whenever the callback carries one.
    """
    if reaction not in REACTIONS:
        raise ValueError(f"Unknown reaction '{reaction}'.")
    conditions = [
        or_(
            SentMessage.alert_message_id == int(message_id),
            SentMessage.message_id == int(message_id),
        )
    ]
    chat = str(chat_id).strip() if chat_id is not None else ""
    if chat:
        conditions.append(SentMessage.chat_id == chat)
    with session_scope() as session:
        record = (
            session.execute(select(SentMessage).where(*conditions).limit(1))
            .scalars()
            .first()
        )
        if record is None:
            logger.warning(
                "No sent message found for Telegram message %s in chat %s",
                message_id,
                chat or "?",
            )
            return False
        record.reaction = reaction
    return True
