from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv


def _parse_telegram_chat_ids(raw: str) -> tuple[str, ...]:
    # TELEGRAM_CHAT_ID supports a single value or a comma-separated list.
    # Examples:
    #   TELEGRAM_CHAT_ID=123456789
    #   TELEGRAM_CHAT_ID=123456789,-1001234567890
    parts = [p.strip() for p in raw.split(",")]
    parts = [p for p in parts if p]

    seen: set[str] = set()
    result: list[str] = []
    for p in parts:
        # Telegram allows numeric IDs; groups/supergroups can be negative.
        try:
            int(p)
        except ValueError as e:
            raise RuntimeError(f"Invalid TELEGRAM_CHAT_ID value: {p!r}. Expected integer chat id.") from e

        if p == "0":
            raise RuntimeError("Invalid TELEGRAM_CHAT_ID value: '0' is not a valid chat id")

        if p in seen:
            continue
        seen.add(p)
        result.append(p)

    if not result:
        raise RuntimeError("TELEGRAM_CHAT_ID is empty. Provide at least one chat id.")

    return tuple(result)


@dataclass(frozen=True)
class Settings:
    state_dir: str = "state"
    policy_file: str = "policies.json"

    # Recorded on every ledger mutation when the caller names no actor.
    default_actor: str = "system"

    # Telegram delivery is optional; without a token outcomes are only logged.
    telegram_bot_token: str | None = None
    telegram_chat_ids: tuple[str, ...] = ()

    # Retry n waits n * notify_retry_delay_seconds.
    notify_max_retries: int = 3
    notify_retry_delay_seconds: float = 60.0

    @property
    def telegram_enabled(self) -> bool:
        return bool(self.telegram_bot_token)


def _int_env(name: str, default: str, *, minimum: int) -> int:
    raw = os.getenv(name, default)
    try:
        value = int(raw)
    except ValueError as e:
        raise RuntimeError(f"Invalid {name} value: {raw!r}. Expected integer.") from e
    if value < minimum:
        raise RuntimeError(f"{name} must be >= {minimum}")
    return value


def load_settings(dotenv_path: str | None = None) -> Settings:
    # Prefer .env in repo root; dotenv_path allows overriding in tests.
    load_dotenv(dotenv_path=dotenv_path, override=False)

    default_actor = os.getenv("DEFAULT_ACTOR", "system").strip()
    if not default_actor:
        raise RuntimeError("DEFAULT_ACTOR must not be empty")

    bot_token = os.getenv("TELEGRAM_BOT_TOKEN") or None
    chat_ids: tuple[str, ...] = ()
    if bot_token:
        chat_ids = _parse_telegram_chat_ids(os.getenv("TELEGRAM_CHAT_ID", ""))

    return Settings(
        state_dir=os.getenv("STATE_DIR", "state"),
        policy_file=os.getenv("POLICY_FILE", "policies.json"),
        default_actor=default_actor,
        telegram_bot_token=bot_token,
        telegram_chat_ids=chat_ids,
        notify_max_retries=_int_env("NOTIFY_MAX_RETRIES", "3", minimum=0),
        notify_retry_delay_seconds=float(_int_env("NOTIFY_RETRY_DELAY_SECONDS", "60", minimum=0)),
    )
