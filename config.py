import os
import sys

import yaml
from loguru import logger

from settings_schema import SettingsSchema, validate_settings

APP_VERSION = "1.0.0"
APP_DIR_NAME = "TrainingApp"


class YamlConfig:
    """Load and save settings to a YAML file."""

    def __init__(self, path: str | None = None) -> None:
        self.path = path or os.environ.get("TRAINING_SETTINGS", "settings.yaml")

    def load(self) -> dict:
        if not os.path.exists(self.path):
            return {}
        with open(self.path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{self.path} must contain a mapping")
        return data

    def save(self, data: dict) -> None:
        validate_settings(data)
        with open(self.path, "w", encoding="utf-8") as f:
            yaml.safe_dump(dict(data), f)

    def settings(self) -> SettingsSchema:
        """Return validated settings with environment overrides applied."""
        data = self.load()
        env_dir = os.environ.get("TRAINING_DATA_DIR")
        if env_dir:
            data["data_dir"] = env_dir
        return validate_settings(data)


def default_data_dir() -> str:
    base = os.environ.get("XDG_DATA_HOME") or os.path.join(
        os.path.expanduser("~"), ".local", "share"
    )
    return os.path.join(base, APP_DIR_NAME)


def resolve_data_dir(settings: SettingsSchema) -> str:
    path = os.path.expanduser(settings.data_dir) if settings.data_dir else default_data_dir()
    os.makedirs(path, exist_ok=True)
    return path


def configure_logging(level: str = "INFO") -> None:
    """Send log records to stderr at ``level``."""
    logger.remove()
    logger.add(sys.stderr, level=level.upper())
