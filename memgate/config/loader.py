"""Configuration loading utilities."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from memgate.config.schema import Config, ConfigError
from memgate.logging import get_logger

logger = get_logger(__name__)


def get_config_path() -> Path:
    return Path.home() / ".memgate" / "config.json"


def load_config(config_path: Path | None = None) -> Config:
    """Load configuration from a JSON file, falling back to defaults.

    A missing file yields the defaults. A file that exists but is unreadable
    or holds out-of-range values raises ``ConfigError``.
    """
    path = config_path or get_config_path()
    data: dict[str, Any] = {}
    if path.exists():
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"cannot read config {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"config {path} must contain a JSON object")
    return config_from_dict(data)


def config_from_dict(data: dict[str, Any]) -> Config:
    try:
        config = Config(**data)
    except ValidationError as e:
        logger.error("config_invalid", errors=e.error_count(), detail=str(e))
        raise ConfigError(f"invalid configuration: {e}") from e
    return config


def save_config(config: Config, config_path: Path | None = None) -> None:
    from memgate.utils.helpers import atomic_write_text

    path = config_path or get_config_path()
    payload = config.model_dump(mode="json")
    atomic_write_text(path, json.dumps(payload, indent=2, ensure_ascii=False) + "\n")
