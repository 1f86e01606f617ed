"""Tests for settings loading and environment overrides."""

from __future__ import annotations

import logging

from turnkit.services.settings import Settings, load_settings, redact_secret


def test_defaults_without_environment() -> None:
    settings = load_settings(environ={})

    assert settings == Settings()
    assert settings.model == "gpt-4o"
    assert settings.api_mode == "responses"
    assert settings.stream is True
    assert settings.permission_memo_scope == "instance"
    assert settings.question_timeout is None


def test_environment_overrides_are_typed() -> None:
    settings = load_settings(
        environ={
            "OPENAI_API_KEY": " sk-env ",
            "OPENAI_MODEL": "gpt-4.1-mini",
            "OPENAI_STREAM": "off",
            "TURNKIT_AUTO_APPROVE": "yes",
            "TURNKIT_REQUEST_TIMEOUT": "12.5",
            "TURNKIT_MAX_RETRIES": "5",
            "TURNKIT_QUESTION_TIMEOUT": "30",
        }
    )

    assert settings.api_key == "sk-env"
    assert settings.model == "gpt-4.1-mini"
    assert settings.stream is False
    assert settings.auto_approve is True
    assert settings.request_timeout == 12.5
    assert settings.max_retries == 5
    assert settings.question_timeout == 30.0


def test_environment_wins_over_cli_overrides() -> None:
    settings = load_settings(
        overrides={"model": "from-cli", "base_url": "http://cli", "unknown_key": "ignored"},
        environ={"OPENAI_MODEL": "from-env"},
    )

    assert settings.model == "from-env"
    assert settings.base_url == "http://cli"


def test_invalid_values_are_logged_and_ignored(caplog) -> None:
    with caplog.at_level(logging.WARNING, logger="turnkit.services.settings"):
        settings = load_settings(
            environ={
                "OPENAI_STREAM": "sometimes",
                "TURNKIT_MAX_RETRIES": "many",
                "OPENAI_API_MODE": "graphql",
            }
        )

    assert settings.stream is True
    assert settings.max_retries == 3
    assert settings.api_mode == "responses"
    assert "not a valid boolean" in caplog.text
    assert "not a valid integer" in caplog.text


def test_choices_are_normalized() -> None:
    settings = load_settings(
        overrides={"api_mode": " Chat ", "permission_memo_scope": "SESSION", "question_timeout": 0},
        environ={},
    )

    assert settings.api_mode == "chat"
    assert settings.permission_memo_scope == "session"
    assert settings.question_timeout is None


def test_metadata_overrides_merge() -> None:
    base = load_settings(overrides={"metadata": {"team": "core"}}, environ={})
    assert base.metadata == {"team": "core"}


def test_client_settings_projection() -> None:
    settings = Settings(
        base_url="http://local",
        api_key="sk-test",
        model="stub",
        max_retries=2,
        metadata={"run": 7},
        debug_logging=True,
    )

    client_settings = settings.client_settings()

    assert client_settings.base_url == "http://local"
    assert client_settings.model == "stub"
    assert client_settings.max_retries == 2
    assert client_settings.metadata == {"run": "7"}
    assert client_settings.default_headers is None
    assert client_settings.debug_logging is True


def test_redact_secret() -> None:
    assert redact_secret("") == ""
    assert redact_secret("abcd") == "****"
    assert redact_secret("sk-123456") == "sk*****56"
