"""Application configuration management."""

from __future__ import annotations

import json
import logging
import os
import sys
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Mapping

CONFIG_DIR_NAME = "LexiChat"
SETTINGS_FILENAME = "settings.json"
ASSISTANT_SECTION = "assistant"

logger = logging.getLogger(__name__)


def get_user_config_dir(app_name: str = CONFIG_DIR_NAME) -> Path:
    """Return the configuration directory for the current user.

    The directory is created on first use. On Windows the directory is
    under ``%APPDATA%``; otherwise the XDG base directory or ``~/.config``
    is used.
    """
    if sys.platform.startswith("win"):
        base_dir = Path(os.getenv("APPDATA", Path.home()))
    else:
        base_dir = Path(os.getenv("XDG_CONFIG_HOME", Path.home() / ".config"))
    config_dir = base_dir / app_name
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


class ConfigManager:
    """Read and write the JSON settings file in the user configuration directory."""

    def __init__(
        self, app_name: str = CONFIG_DIR_NAME, *, filename: str = SETTINGS_FILENAME
    ) -> None:
        self.app_name = app_name
        self.config_dir = get_user_config_dir(app_name)
        self.config_path = self.config_dir / filename

    def exists(self) -> bool:
        return self.config_path.exists()

    def load(self) -> dict[str, Any]:
        """Return the stored settings, or an empty dictionary when there are none.

        Raises :class:`ValueError` when the file holds something other than a
        JSON object.
        """
        if not self.config_path.exists():
            return {}
        with self.config_path.open("r", encoding="utf-8") as fh:
            data = json.load(fh)
        if not isinstance(data, dict):
            raise ValueError(f"{self.config_path} does not contain a JSON object")
        return data

    def save(self, data: Mapping[str, Any]) -> None:
        with self.config_path.open("w", encoding="utf-8") as fh:
            json.dump(dict(data), fh, indent=2, sort_keys=True)
            fh.write("\n")
        logger.debug("Saved configuration", extra={"path": str(self.config_path)})

    def __repr__(self) -> str:  # pragma: no cover - debugging helper
        return f"ConfigManager(app_name={self.app_name!r}, path={self.config_path!s})"


@dataclass(slots=True)
class AssistantSettings:
    """Tunable knobs for the model client, the send loop and the reveal pacing."""

    primary_model: str = "gemini-2.5-flash"
    fallback_model: str = "gemini-2.5-flash-lite"
    base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    api_key_env: str = "GEMINI_API_KEY"
    max_retries: int = 2
    retry_backoff: float = 0.5
    request_timeout: float = 60.0
    min_words: int = 60
    min_sentences: int = 3
    max_attempts: int = 2
    whitespace_delay: float = 0.010
    word_delay: float = 0.040
    delete_grace_period: float = 3.0
    default_mode: str = "general"

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> "AssistantSettings":
        """Build settings from ``data`` ignoring unknown keys and bad values."""

        settings = cls()
        if not isinstance(data, Mapping):
            return settings
        for spec in fields(cls):
            if spec.name not in data:
                continue
            default = getattr(settings, spec.name)
            raw = data[spec.name]
            try:
                if isinstance(default, bool):
                    value: Any = str(raw).strip().lower() in {"1", "true", "yes", "on"}
                elif isinstance(default, int):
                    value = int(raw)
                elif isinstance(default, float):
                    value = float(raw)
                else:
                    value = str(raw).strip() or default
            except (TypeError, ValueError):
                logger.warning(
                    "Ignoring invalid assistant setting",
                    extra={"setting": spec.name, "value": raw},
                )
                continue
            setattr(settings, spec.name, value)
        return settings

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def load_settings(config_manager: ConfigManager | None = None) -> AssistantSettings:
    """Return :class:`AssistantSettings` stored under the ``assistant`` section."""

    manager = config_manager or ConfigManager()
    try:
        data = manager.load()
    except (OSError, ValueError) as exc:
        logger.warning("Unable to read configuration, using defaults: %s", exc)
        return AssistantSettings()
    section = data.get(ASSISTANT_SECTION)
    return AssistantSettings.from_mapping(section)


def write_default_settings(config_manager: ConfigManager | None = None) -> bool:
    """Create the settings file with every default spelled out, if it is missing.

    Returns ``True`` when a file was written. An existing file is left alone.
    """

    manager = config_manager or ConfigManager()
    if manager.exists():
        return False
    try:
        manager.save({ASSISTANT_SECTION: AssistantSettings().to_dict()})
    except OSError as exc:
        logger.warning("Unable to write default configuration: %s", exc)
        return False
    logger.info("Wrote default configuration", extra={"path": str(manager.config_path)})
    return True


__all__ = [
    "AssistantSettings",
    "ConfigManager",
    "get_user_config_dir",
    "load_settings",
    "write_default_settings",
]
