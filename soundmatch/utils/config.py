"""
Configuration management for the SoundMatch engine.

Loads and validates configuration from YAML files with environment
variable interpolation support.
"""

import copy
import os
import re
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv

from soundmatch.utils.errors import ConfigurationError


class ConfigManager:
    """
    Manages application configuration loaded from YAML files.

    Features:
    - YAML configuration loading
    - Environment variable interpolation (${VAR_NAME})
    - Nested key access with dot notation
    - Default value support
    - Configuration validation
    """

    def __init__(self, config_dict: Optional[Dict[str, Any]] = None):
        """
        Initialize configuration manager.

        Args:
            config_dict: Optional pre-loaded configuration dictionary
        """
        self._config: Dict[str, Any] = config_dict or {}
        self._env_pattern = re.compile(r'\$\{([^}]+)\}')

    @classmethod
    def from_file(cls, file_path: Path) -> "ConfigManager":
        """
        Create ConfigManager from YAML file.

        Raises:
            ConfigurationError: If file cannot be loaded or parsed
        """
        if not file_path.exists():
            raise ConfigurationError(
                f"Configuration file not found: {file_path}",
                config_key=str(file_path)
            )

        try:
            with open(file_path, 'r') as f:
                config_dict = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(
                f"Failed to parse YAML configuration: {e}",
                config_key=str(file_path)
            )

        if not isinstance(config_dict, dict):
            raise ConfigurationError(
                "Top-level configuration must be a mapping",
                config_key=str(file_path)
            )

        manager = cls(config_dict)
        manager._interpolate_env_vars()
        return manager

    def _interpolate_env_vars(self) -> None:
        """Replace ${ENV_VAR} patterns with environment variable values."""
        self._config = self._interpolate(self._config)

    def _interpolate(self, value: Any) -> Any:
        if isinstance(value, dict):
            return {k: self._interpolate(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self._interpolate(item) for item in value]
        if isinstance(value, str):
            return self._interpolate_string(value)
        return value

    def _interpolate_string(self, s: str) -> Any:
        """Replace ${ENV_VAR} with environment variable value."""
        def replace(match: re.Match) -> str:
            value = os.environ.get(match.group(1))
            if value is None:
                return match.group(0)  # Keep original if not found
            return value

        result = self._env_pattern.sub(replace, s)
        # A value that was entirely one placeholder is re-parsed so numbers
        # and booleans coming from the environment keep their YAML type.
        if result != s and self._env_pattern.fullmatch(s):
            try:
                return yaml.safe_load(result)
            except yaml.YAMLError:
                return result
        return result

    def get(
        self,
        key: str,
        default: Any = None,
        required: bool = False
    ) -> Any:
        """
        Get configuration value using dot notation.

        Example:
            config.get("audio.min_duration", default=5.0)
            config.get("store.directory", required=True)
        """
        value: Any = self._config

        for k in key.split('.'):
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                if required:
                    raise ConfigurationError(
                        f"Required configuration key not found: {key}",
                        config_key=key
                    )
                return default

        return value

    def get_section(self, key: str) -> Dict[str, Any]:
        """Get an entire configuration section (empty dict if missing)."""
        value = self.get(key, default={})
        if not isinstance(value, dict):
            return {}
        return value

    def set(self, key: str, value: Any) -> None:
        """Set a configuration value using dot notation."""
        keys = key.split('.')
        current = self._config

        for k in keys[:-1]:
            if k not in current:
                current[k] = {}
            current = current[k]

        current[keys[-1]] = value

    def to_dict(self) -> Dict[str, Any]:
        """Return a deep copy of the configuration."""
        return copy.deepcopy(self._config)

    def validate(self, schema: Dict[str, Any]) -> None:
        """
        Validate configuration against a schema.

        Schema format:
            {
                "audio.min_duration": {"type": (int, float), "required": True},
                "store.backend": {"type": str, "choices": ["memory", "json"]},
            }

        Raises:
            ConfigurationError: If validation fails
        """
        for key, rules in schema.items():
            value = self.get(key)
            expected_type = rules.get("type")

            if value is None:
                if rules.get("required", False):
                    raise ConfigurationError(
                        f"Required configuration missing: {key}",
                        config_key=key
                    )
                continue

            # bool is an int subclass; reject it for numeric options
            if expected_type and (
                not isinstance(value, expected_type)
                or (isinstance(value, bool) and bool not in _as_tuple(expected_type))
            ):
                names = ", ".join(t.__name__ for t in _as_tuple(expected_type))
                raise ConfigurationError(
                    f"Invalid type for {key}: expected {names}, "
                    f"got {type(value).__name__}",
                    config_key=key
                )

            choices = rules.get("choices")
            if choices is not None and value not in choices:
                raise ConfigurationError(
                    f"Invalid value for {key}: {value!r} (expected one of {choices})",
                    config_key=key
                )

            minimum = rules.get("min")
            if minimum is not None and value < minimum:
                raise ConfigurationError(
                    f"Invalid value for {key}: {value} < {minimum}",
                    config_key=key
                )


def _as_tuple(expected_type: Any) -> tuple:
    return expected_type if isinstance(expected_type, tuple) else (expected_type,)


_NUMBER = (int, float)

CONFIG_SCHEMA: Dict[str, Dict[str, Any]] = {
    "audio.min_duration": {"type": _NUMBER, "required": True, "min": 0},
    "audio.max_duration": {"type": _NUMBER, "required": True, "min": 0},
    "audio.max_file_duration_for_basic_vs_full_analysis": {"type": _NUMBER, "min": 0},
    "audio.target_sample_rate": {"type": int, "min": 1000},
    "audio.silence_rms_threshold": {"type": _NUMBER, "min": 0},
    "audio.supported_formats": {"type": list},
    "extraction.n_fft": {"type": int, "min": 64},
    "extraction.hop_length": {"type": int, "min": 1},
    "extraction.n_mfcc": {"type": int, "min": 2},
    "orchestrator.concurrency_limit": {"type": int, "required": True, "min": 1},
    "orchestrator.queue_depth": {"type": int, "required": True, "min": 0},
    "orchestrator.per_item_timeout": {"type": _NUMBER, "required": True, "min": 0},
    "orchestrator.max_batch_size": {"type": int, "min": 1},
    "scoring.scoring_weights": {"type": dict, "required": True},
    "scoring.tempo_tolerance": {"type": _NUMBER, "required": True, "min": 0},
    "scoring.similarity_thresholds": {"type": dict},
    "store.backend": {"type": str, "choices": ["memory", "json"]},
    "logging.level": {"type": str},
    "logging.format": {"type": str, "choices": ["json", "text"]},
}


def validate_config(config: Dict[str, Any]) -> None:
    """
    Validate a full configuration dict.

    Raises:
        ConfigurationError: On any type, range or consistency problem
    """
    manager = ConfigManager(config)
    manager.validate(CONFIG_SCHEMA)

    if manager.get("audio.min_duration") > manager.get("audio.max_duration"):
        raise ConfigurationError(
            "audio.min_duration must not exceed audio.max_duration",
            config_key="audio.min_duration"
        )

    if manager.get("store.backend") == "json" and not manager.get("store.directory"):
        raise ConfigurationError(
            "store.directory is required for the json backend",
            config_key="store.directory"
        )

    weights = manager.get("scoring.scoring_weights")
    for name, weight in weights.items():
        if not isinstance(weight, _NUMBER) or isinstance(weight, bool) or weight < 0:
            raise ConfigurationError(
                f"Scoring weight for {name!r} must be a non-negative number",
                config_key=f"scoring.scoring_weights.{name}"
            )
    if abs(sum(weights.values()) - 1.0) > 1e-6:
        raise ConfigurationError(
            f"Scoring weights must sum to 1.0, got {sum(weights.values()):.6f}",
            config_key="scoring.scoring_weights"
        )


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            # Weight sets are replaced whole so a partial override cannot
            # silently mix with the defaults.
            if key == "scoring_weights":
                merged[key] = copy.deepcopy(value)
            else:
                merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load configuration from file merged over the defaults.

    A ``.env`` file in the working directory is loaded first so that
    ``${VAR}`` placeholders can refer to it.

    Args:
        config_path: Optional path to config file.
                    If None, tries "config/config.yaml" then "config.yaml"

    Returns:
        Dict[str, Any]: Validated configuration dictionary
    """
    env_path = Path(".env")
    if env_path.exists():
        load_dotenv(env_path)

    if config_path is None:
        for path in (Path("config/config.yaml"), Path("config.yaml")):
            if path.exists():
                config_path = str(path)
                break

    config = get_default_config()
    if config_path:
        manager = ConfigManager.from_file(Path(config_path))
        config = _deep_merge(config, manager.to_dict())

    validate_config(config)
    return config


def get_default_config() -> Dict[str, Any]:
    """Return default configuration values."""
    return {
        "audio": {
            "supported_formats": ["wav", "flac", "ogg", "aiff", "aif", "mp3"],
            "target_sample_rate": 22050,
            "min_duration": 5.0,
            "max_duration": 1800.0,
            "max_file_duration_for_basic_vs_full_analysis": 600.0,
            "silence_rms_threshold": 1e-4,
        },
        "extraction": {
            "n_fft": 2048,
            "hop_length": 512,
            "n_mfcc": 13,
            "tempo_range": [60.0, 200.0],
        },
        "orchestrator": {
            "concurrency_limit": 4,
            "queue_depth": 16,
            "per_item_timeout": 120.0,
            "max_batch_size": 64,
        },
        "scoring": {
            "scoring_weights": {
                "tempo": 0.2,
                "key": 0.15,
                "spectral": 0.25,
                "rhythmic": 0.2,
                "declared": 0.2,
            },
            "tempo_tolerance": 20.0,
            "similarity_thresholds": {
                "notable": 0.8,
                "min_confidence": 0.3,
            },
        },
        "store": {
            "backend": "memory",
            "directory": None,
        },
        "logging": {
            "level": "INFO",
            "format": "json",
        },
    }
