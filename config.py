import os
import yaml

from settings_schema import SettingsSchema, validate_settings

APP_VERSION = "1.0.0"


class YamlConfig:
    """Load and save settings to a YAML file."""

    def __init__(self, path: str = "settings.yaml") -> None:
        self.path = path

    def load(self) -> dict:
        if not os.path.exists(self.path):
            return {}
        with open(self.path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{self.path} must contain a mapping")
        return data

    def save(self, data: dict) -> None:
        with open(self.path, "w", encoding="utf-8") as f:
            yaml.safe_dump(dict(data), f)


def load_settings(path: str = "settings.yaml", **overrides) -> SettingsSchema:
    """Read ``path`` and return validated settings.

    ``WORKOUT_DB`` in the environment overrides ``db_path``; keyword
    overrides that are not ``None`` win over both.
    """
    data = YamlConfig(path).load()
    env_db = os.environ.get("WORKOUT_DB")
    if env_db:
        data["db_path"] = env_db
    data.update({k: v for k, v in overrides.items() if v is not None})
    return validate_settings(data)
