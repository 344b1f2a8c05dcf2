from __future__ import annotations

import json
from pathlib import Path

import pytest

from lexichat.config import (
    AssistantSettings,
    ConfigManager,
    load_settings,
    write_default_settings,
)


@pytest.fixture()
def config_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
    monkeypatch.setenv("APPDATA", str(tmp_path))
    return tmp_path


def test_missing_config_uses_defaults(config_home: Path) -> None:
    settings = load_settings(ConfigManager())

    assert settings == AssistantSettings()
    assert (config_home / "LexiChat").is_dir()


def test_assistant_section_overrides_defaults(config_home: Path) -> None:
    manager = ConfigManager()
    manager.save(
        {
            "assistant": {
                "primary_model": "gemini-test",
                "max_attempts": "3",
                "word_delay": 0,
                "min_words": "many",
                "unknown": "ignored",
            }
        }
    )

    settings = load_settings(manager)

    assert settings.primary_model == "gemini-test"
    assert settings.max_attempts == 3
    assert settings.word_delay == 0.0
    assert settings.min_words == 60


def test_default_settings_file_is_written_once(config_home: Path) -> None:
    manager = ConfigManager()

    assert write_default_settings(manager) is True
    stored = json.loads(manager.config_path.read_text(encoding="utf-8"))
    assert stored["assistant"]["delete_grace_period"] == 3.0
    assert load_settings(manager) == AssistantSettings()

    manager.save({"assistant": {"delete_grace_period": 5}})
    assert write_default_settings(manager) is False
    assert load_settings(manager).delete_grace_period == 5.0


def test_unreadable_config_falls_back(config_home: Path) -> None:
    manager = ConfigManager()
    manager.config_path.write_text("{not json", encoding="utf-8")

    assert load_settings(manager) == AssistantSettings()


def test_non_object_config_falls_back(config_home: Path) -> None:
    manager = ConfigManager()
    manager.config_path.write_text("[1, 2]", encoding="utf-8")

    with pytest.raises(ValueError):
        manager.load()
    assert load_settings(manager) == AssistantSettings()
