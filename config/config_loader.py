"""
config_loader.py
-----------------
Singleton config loader. Reads config.yaml once and caches it.
All engines access thresholds through this, never hardcoded values.
"""

import os
import yaml
from typing import Any, Dict

from core.errors import ConfigurationError


_CONFIG_CACHE: Dict[str, Any] = {}

_REQUIRED_SECTIONS = [
    "text_normalization",
    "anomaly_detection",
    "recurrence_detection",
    "categorization",
    "validation",
    "storage",
]


def load_config(config_path: str | None = None) -> Dict[str, Any]:
    """
    Load and cache the YAML configuration file.

    Args:
        config_path: Path to config.yaml. Defaults to config/ relative to this file.

    Returns:
        Full config dictionary.

    Raises:
        ConfigurationError: If the file is missing, unparseable, or lacks a
            required section.
    """
    global _CONFIG_CACHE

    if _CONFIG_CACHE:
        return _CONFIG_CACHE

    if config_path is None:
        config_path = os.path.join(os.path.dirname(__file__), "config.yaml")

    if not os.path.exists(config_path):
        raise ConfigurationError(f"Configuration file not found: {config_path}")

    try:
        with open(config_path, "r") as f:
            config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in configuration file: {e}") from e

    missing = [s for s in _REQUIRED_SECTIONS if s not in (config or {})]
    if missing:
        raise ConfigurationError(f"Missing required configuration sections: {missing}")

    _CONFIG_CACHE = config
    return _CONFIG_CACHE


def get_text_normalization_config() -> Dict[str, Any]:
    """Returns the text_normalization block."""
    return load_config()["text_normalization"]


def get_anomaly_detection_config() -> Dict[str, Any]:
    """Returns the anomaly_detection block."""
    return load_config()["anomaly_detection"]


def get_recurrence_detection_config() -> Dict[str, Any]:
    """Returns the recurrence_detection block."""
    return load_config()["recurrence_detection"]


def get_categorization_config() -> Dict[str, Any]:
    """Returns the categorization block."""
    return load_config()["categorization"]


def get_validation_config() -> Dict[str, Any]:
    return load_config()["validation"]


def get_storage_config() -> Dict[str, Any]:
    return load_config()["storage"]


def reset_config() -> None:
    """Clears cached config. Useful for testing."""
    global _CONFIG_CACHE
    _CONFIG_CACHE = {}
