"""
Centralized configuration manager.
Loads the YAML config and provides dot-path access with defaults.

Missing file -> built-in defaults. Unknown or mistyped fields only produce
warnings so a half-edited config still runs.
"""

import os
import copy
import logging

import yaml

logger = logging.getLogger(__name__)

_BASE_DIR = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
_CONFIG_DIR = os.path.join(_BASE_DIR, "config")

DEFAULTS = {
    "camera": {
        "device_id": 0,
        "width": 640,
        "height": 480,
        "fps": 30,
        "backend": "auto",
        "warmup_frames": 5,
    },
    "embedding": {
        "backend": "thumbnail",
        "model_path": "models/mobilenet_v2.onnx",
        "input_size": 224,
        "output_layer": None,
        "thumbnail_size": 24,
    },
    "mediapipe": {
        "model_complexity": 0,
        "min_detection_confidence": 0.6,
        "min_tracking_confidence": 0.5,
    },
    "classifier": {
        "k": 3,
        "metric": "euclidean",
    },
    "transmission": {
        "confidence_threshold": 0.5,
        "comparison": ">",
        "send_interval_ms": 500,
        "protocol": "analog",
    },
    "transport": {
        "kind": "simulated",
        "port": None,
        "baudrate": 115200,
        "write_timeout": 1.0,
        "drain_timeout_s": 2.0,
    },
    "session": {
        "mode": "image",
        "model_path": "data/knn_model.json",
    },
    "logging": {
        "level": "INFO",
        "file": None,
        "max_size_mb": 10,
        "backup_count": 3,
    },
}

# Schema: critical fields and their expected types
_CONFIG_SCHEMA = {
    "camera": {
        "device_id": int,
        "width": int,
        "height": int,
    },
    "classifier": {
        "k": int,
        "metric": str,
    },
    "transmission": {
        "confidence_threshold": float,
        "comparison": str,
        "send_interval_ms": float,
        "protocol": str,
    },
    "transport": {
        "kind": str,
        "baudrate": int,
    },
    "session": {
        "mode": str,
    },
}


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base dict."""
    merged = base.copy()
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class Config:
    """Singleton configuration manager."""

    _instance = None
    _data = copy.deepcopy(DEFAULTS)

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def load(self, config_path=None):
        """Load configuration from YAML, layered over the defaults."""
        config_path = config_path or os.path.join(_CONFIG_DIR, "config.yaml")

        try:
            with open(config_path, "r") as f:
                loaded = yaml.safe_load(f) or {}
            logger.info("Loaded config from %s", config_path)
        except FileNotFoundError:
            logger.warning("Config file not found: %s, using defaults", config_path)
            loaded = {}

        self._data = _deep_merge(copy.deepcopy(DEFAULTS), loaded)
        self._validate()
        return self

    def _validate(self):
        """Validate critical config fields against schema."""
        warnings = []
        for section_name, fields in _CONFIG_SCHEMA.items():
            section = self._data.get(section_name)
            if not isinstance(section, dict):
                warnings.append(f"Section '{section_name}' should be a dict, "
                                f"got {type(section).__name__}")
                continue
            for field_name, expected_type in fields.items():
                if field_name not in section:
                    continue
                value = section[field_name]
                # Allow int where float is expected
                if expected_type is float and isinstance(value, (int, float)):
                    continue
                if not isinstance(value, expected_type):
                    warnings.append(
                        f"{section_name}.{field_name}: expected {expected_type.__name__}, "
                        f"got {type(value).__name__} ({value!r})"
                    )

        for w in warnings:
            logger.warning("Config validation: %s", w)
        if not warnings:
            logger.debug("Config validation passed")
        return warnings

    def get(self, key_path: str, default=None):
        """Get nested config value using dot notation: 'camera.width'."""
        value = self._data
        for key in key_path.split("."):
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default
        return value

    def set(self, key_path: str, value):
        """Override a nested value (CLI flags)."""
        keys = key_path.split(".")
        node = self._data
        for key in keys[:-1]:
            node = node.setdefault(key, {})
        node[keys[-1]] = value

    def get_section(self, section: str) -> dict:
        return self._data.get(section, {})

    def as_dict(self) -> dict:
        return copy.deepcopy(self._data)

    @property
    def camera(self) -> dict:
        return self.get_section("camera")

    @property
    def embedding(self) -> dict:
        return self.get_section("embedding")

    @property
    def mediapipe(self) -> dict:
        return self.get_section("mediapipe")

    @property
    def classifier(self) -> dict:
        return self.get_section("classifier")

    @property
    def transmission(self) -> dict:
        return self.get_section("transmission")

    @property
    def transport(self) -> dict:
        return self.get_section("transport")

    @property
    def session(self) -> dict:
        return self.get_section("session")

    @property
    def base_dir(self) -> str:
        return _BASE_DIR

    @classmethod
    def reset(cls):
        """Reset singleton instance (for testing)."""
        cls._instance = None
        cls._data = copy.deepcopy(DEFAULTS)
