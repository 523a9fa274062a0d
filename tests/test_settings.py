from __future__ import annotations

from pathlib import Path

import pytest

from telepoll.config import ConfigError
from telepoll.poller import RetryPolicy
from telepoll.settings import load_settings, validate_settings_data


def _write(tmp_path: Path, text: str) -> Path:
    config_path = tmp_path / "telepoll.toml"
    config_path.write_text(text, encoding="utf-8")
    return config_path


def test_load_settings_from_toml(tmp_path: Path) -> None:
    config_path = _write(
        tmp_path,
        'bot_token = "123:token"\n\n'
        "[polling]\n"
        "timeout_s = 30\n"
        'allowed_updates = ["message", "callback_query"]\n\n'
        "[polling.retry]\n"
        "max_attempts = 5\n"
        "initial_delay_s = 0.5\n\n"
        "[[middleware]]\n"
        "chat_ids = [1, 2]\n"
        "capacity = 4\n",
    )

    settings, loaded_path = load_settings(config_path)

    assert loaded_path == config_path
    assert settings.bot_token == "123:token"
    assert settings.polling.timeout_s == 30
    assert settings.polling.allowed_updates == ["message", "callback_query"]
    assert settings.polling.retry.to_policy() == RetryPolicy(
        max_attempts=5, initial_delay_s=0.5
    )
    assert settings.middleware[0].chat_ids == [1, 2]
    assert settings.middleware[0].capacity == 4
    assert settings.middleware[0].join_timeout_s == 0.0


def test_defaults_match_plain_long_polling(tmp_path: Path) -> None:
    settings, _ = load_settings(_write(tmp_path, 'bot_token = "t"\n'))

    assert settings.polling.timeout_s == 50
    assert settings.polling.start_after == 0
    assert settings.polling.retry.to_policy() == RetryPolicy()
    assert settings.middleware == []


def test_env_overrides_toml(tmp_path: Path, monkeypatch) -> None:
    config_path = _write(tmp_path, 'bot_token = "t"\n\n[polling]\ntimeout_s = 30\n')
    monkeypatch.setenv("TELEPOLL__POLLING__TIMEOUT_S", "5")

    settings, _ = load_settings(config_path)

    assert settings.polling.timeout_s == 5


def test_missing_config_file(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="Missing config file"):
        load_settings(tmp_path / "nope.toml")


def test_config_path_is_a_directory(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="not a file"):
        load_settings(tmp_path)


def test_malformed_toml(tmp_path: Path) -> None:
    config_path = _write(tmp_path, "bot_token = \n")

    with pytest.raises(ConfigError, match="Malformed TOML"):
        load_settings(config_path)


def test_middleware_needs_a_filter(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="chat_ids or kinds"):
        validate_settings_data(
            {"bot_token": "t", "middleware": [{"capacity": 2}]},
            config_path=tmp_path / "telepoll.toml",
        )


def test_unknown_update_kind_rejected(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        validate_settings_data(
            {"bot_token": "t", "middleware": [{"kinds": ["poll_answer"]}]},
            config_path=tmp_path / "telepoll.toml",
        )


def test_empty_bot_token_rejected(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        validate_settings_data(
            {"bot_token": "   "}, config_path=tmp_path / "telepoll.toml"
        )
