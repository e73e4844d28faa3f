from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Protocol

import httpx
from tenacity import RetryCallState, retry, stop_after_attempt, wait_incrementing

logger = logging.getLogger(__name__)


class NotificationKind(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    WAITLISTED = "waitlisted"
    PROMOTED = "promoted"


class Notifier(Protocol):
    def notify(self, party_id: str, kind: NotificationKind, context: Mapping[str, Any]) -> None: ...


_HEADLINES = {
    NotificationKind.ACCEPTED: "Booking confirmed",
    NotificationKind.REJECTED: "Booking rejected",
    NotificationKind.WAITLISTED: "Added to the waitlist",
    NotificationKind.PROMOTED: "Promoted from the waitlist: booking confirmed",
}


def format_notification(party_id: str, kind: NotificationKind, context: Mapping[str, Any]) -> str:
    lines = [f"{_HEADLINES[kind]}.", f"Party: {party_id}"]
    for key in ("resource_id", "window", "booking_id", "reason", "position"):
        value = context.get(key)
        if value is not None and value != "":
            lines.append(f"{key.replace('_', ' ').capitalize()}: {value}")
    return "\n".join(lines)


def send_telegram_message(*, bot_token: str, chat_id: str, text: str, timeout_seconds: float = 20.0) -> None:
    url = f"https://api.telegram.org/bot{bot_token}/sendMessage"
    payload = {
        "chat_id": chat_id,
        "text": text,
        "disable_web_page_preview": True,
    }

    with httpx.Client(timeout=timeout_seconds) as client:
        r = client.post(url, json=payload)
        r.raise_for_status()
        data = r.json()
        if not data.get("ok", False):
            raise RuntimeError(f"Telegram API error: {data}")


def _log_after_attempt(retry_state: RetryCallState) -> None:
    if retry_state.outcome is not None and retry_state.outcome.failed:
        exc = retry_state.outcome.exception()
        logger.warning(
            "Notification attempt %s failed (%s: %s)",
            retry_state.attempt_number,
            type(exc).__name__,
            exc,
        )


def _log_before_sleep(retry_state: RetryCallState) -> None:
    sleep_seconds = getattr(retry_state.next_action, "sleep", None)
    if sleep_seconds is None:
        logger.info("Retrying notification (attempt %s)", retry_state.attempt_number + 1)
        return
    logger.info("Retrying notification in %.0f sec. (attempt %s)", sleep_seconds, retry_state.attempt_number + 1)


class TelegramNotifier:
    """Relays booking outcomes to the operator Telegram chats.

    Each chat gets up to max_retries retries; retry n waits n * retry_delay_seconds.
    """

    def __init__(
        self,
        *,
        bot_token: str,
        chat_ids: tuple[str, ...],
        max_retries: int = 3,
        retry_delay_seconds: float = 60.0,
    ) -> None:
        self._bot_token = bot_token
        self._chat_ids = chat_ids
        self._max_retries = max_retries
        self._retry_delay_seconds = retry_delay_seconds

    def _send_with_retry(self, chat_id: str, text: str) -> None:
        decorated = retry(
            stop=stop_after_attempt(self._max_retries + 1),
            wait=wait_incrementing(start=self._retry_delay_seconds, increment=self._retry_delay_seconds),
            after=_log_after_attempt,
            before_sleep=_log_before_sleep,
            reraise=True,
        )(send_telegram_message)

        decorated(bot_token=self._bot_token, chat_id=chat_id, text=text)

    def notify(self, party_id: str, kind: NotificationKind, context: Mapping[str, Any]) -> None:
        text = format_notification(party_id, kind, context)
        errors: list[tuple[str, Exception]] = []

        for chat_id in self._chat_ids:
            try:
                self._send_with_retry(chat_id, text)
            except Exception as e:
                # Keep going: one broken chat must not starve the others.
                logger.warning("Failed to send telegram message to chat_id=%s (%s: %s)", chat_id, type(e).__name__, e)
                errors.append((chat_id, e))

        if errors:
            failed = ", ".join([cid for cid, _ in errors])
            raise RuntimeError(f"Failed to send telegram message to some recipients: {failed}")


class LogNotifier:
    def notify(self, party_id: str, kind: NotificationKind, context: Mapping[str, Any]) -> None:
        logger.info("Notify %s: %s %s", party_id, kind.value, dict(context))


@dataclass(frozen=True)
class Notice:
    party_id: str
    kind: NotificationKind
    context: Mapping[str, Any] = field(default_factory=dict)


class Outbox:
    """Notifier that holds notices until the ledger changes are committed."""

    def __init__(self) -> None:
        self._notices: list[Notice] = []
        self._failed: list[Notice] = []

    def notify(self, party_id: str, kind: NotificationKind, context: Mapping[str, Any]) -> None:
        self._notices.append(Notice(party_id=party_id, kind=kind, context=dict(context)))

    @property
    def notices(self) -> tuple[Notice, ...]:
        return tuple(self._notices)

    @property
    def failed(self) -> tuple[Notice, ...]:
        return tuple(self._failed)

    def discard(self) -> None:
        self._notices.clear()

    def flush(self, notifier: Notifier) -> list[Notice]:
        """Deliver every held notice. Returns the notices that failed."""
        notices, self._notices = self._notices, []
        failed: list[Notice] = []
        for notice in notices:
            try:
                notifier.notify(notice.party_id, notice.kind, notice.context)
            except Exception as e:
                # Delivery is best-effort; the committed booking state stands.
                failed.append(notice)
                logger.warning(
                    "Failed to deliver %s notification to %s (%s: %s)",
                    notice.kind.value,
                    notice.party_id,
                    type(e).__name__,
                    e,
                )
        self._failed.extend(failed)
        return failed
