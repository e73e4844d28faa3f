from __future__ import annotations

import pytest

from deskbook.config import load_settings

_ENV_VARS = (
    "STATE_DIR",
    "POLICY_FILE",
    "DEFAULT_ACTOR",
    "TELEGRAM_BOT_TOKEN",
    "TELEGRAM_CHAT_ID",
    "NOTIFY_MAX_RETRIES",
    "NOTIFY_RETRY_DELAY_SECONDS",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    # setenv first so monkeypatch remembers the original state and also
    # removes whatever a test's .env file loads.
    for name in _ENV_VARS:
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)


def test_defaults_without_any_env(monkeypatch: pytest.MonkeyPatch) -> None:
    settings = load_settings(dotenv_path=None)

    assert settings.state_dir == "state"
    assert settings.policy_file == "policies.json"
    assert settings.default_actor == "system"
    assert settings.telegram_enabled is False
    assert settings.telegram_chat_ids == ()
    assert settings.notify_max_retries == 3
    assert settings.notify_retry_delay_seconds == 60.0


def test_load_settings_parses_multiple_telegram_chat_ids(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "t")
    # Chat ids (csv) with spaces, duplicates and empty parts.
    monkeypatch.setenv("TELEGRAM_CHAT_ID", "1, 2,2,, -1003, 1")

    settings = load_settings(dotenv_path=None)
    assert settings.telegram_chat_ids == ("1", "2", "-1003")
    assert settings.telegram_enabled is True


def test_chat_ids_are_ignored_without_token(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TELEGRAM_CHAT_ID", "abc")

    settings = load_settings(dotenv_path=None)
    assert settings.telegram_chat_ids == ()


def test_load_settings_rejects_empty_telegram_chat_ids(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "t")
    monkeypatch.setenv("TELEGRAM_CHAT_ID", " , ,")

    with pytest.raises(RuntimeError, match=r"TELEGRAM_CHAT_ID is empty"):
        load_settings(dotenv_path=None)


def test_load_settings_rejects_non_integer_telegram_chat_id(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "t")
    monkeypatch.setenv("TELEGRAM_CHAT_ID", "abc")

    with pytest.raises(RuntimeError, match=r"Invalid TELEGRAM_CHAT_ID"):
        load_settings(dotenv_path=None)


def test_load_settings_rejects_zero_chat_id(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "t")
    monkeypatch.setenv("TELEGRAM_CHAT_ID", "0")

    with pytest.raises(RuntimeError, match=r"not a valid chat id"):
        load_settings(dotenv_path=None)


def test_load_settings_rejects_bad_retry_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("NOTIFY_MAX_RETRIES", "-1")
    with pytest.raises(RuntimeError, match=r"NOTIFY_MAX_RETRIES must be >= 0"):
        load_settings(dotenv_path=None)

    monkeypatch.setenv("NOTIFY_MAX_RETRIES", "2")
    monkeypatch.setenv("NOTIFY_RETRY_DELAY_SECONDS", "soon")
    with pytest.raises(RuntimeError, match=r"Invalid NOTIFY_RETRY_DELAY_SECONDS"):
        load_settings(dotenv_path=None)


def test_load_settings_rejects_blank_actor(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DEFAULT_ACTOR", "  ")

    with pytest.raises(RuntimeError, match=r"DEFAULT_ACTOR"):
        load_settings(dotenv_path=None)


def test_load_settings_reads_dotenv_without_overriding_env(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    # load_dotenv(override=False) must not overwrite already-set env vars.
    monkeypatch.setenv("DEFAULT_ACTOR", "frontdesk")

    dotenv = tmp_path / ".env"
    dotenv.write_text("DEFAULT_ACTOR=robot\nSTATE_DIR=/var/lib/deskbook\n")

    settings = load_settings(dotenv_path=str(dotenv))
    assert settings.default_actor == "frontdesk"
    assert settings.state_dir == "/var/lib/deskbook"
