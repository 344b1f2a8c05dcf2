"""Top-level package for the LexiChat assistant client."""

from .config import AssistantSettings, ConfigManager, get_user_config_dir, load_settings  # noqa: F401
from .logging import setup_logging  # noqa: F401
