"""
Configuration management for the stencil studio.
Handles loading, saving, and managing user preferences.
"""

import copy
import json
import logging
import os
from typing import Any, Dict

from stencil_lib import (
    FidelityTier,
    InvalidSettingsError,
    ProcessingSettings,
    TierParams,
)

__all__ = [
    'ConfigManager',
]

logger = logging.getLogger(__name__)


class ConfigManager:
    """Manages application configuration and user preferences."""

    DEFAULT_CONFIG = {
        # Default processing settings
        "defaults": {
            "levels": 10,
            "opacity": 50,
            "black_and_white": False,
            "curves": {
                "all": [[0, 0], [255, 255]],
                "red": [[0, 0], [65, 15], [190, 240], [255, 255]]
            }
        },

        # k-means budgets per fidelity tier
        "quantizer": {
            "low": {"sample_stride": 4, "max_iterations": 8},
            "high": {"sample_stride": 1, "max_iterations": 30}
        },

        # Two-speed recompute policy
        "scheduler": {
            "debounce_ms": 40,
            "num_workers": 2
        },

        # Source image import
        "import": {
            "max_dimension": 1200
        },

        # Artifact export
        "export": {
            "curved_format": "JPEG",
            "curved_quality": 80
        }
    }

    def __init__(self, config_file: str = "config.json"):
        """
        Initialize config manager.

        Args:
            config_file: Path to config file
        """
        self.config_file = config_file
        self.config = self._load_config()

    def _load_config(self) -> Dict:
        """Load config from file, or fall back to defaults if missing or unreadable."""
        defaults = copy.deepcopy(self.DEFAULT_CONFIG)
        if not os.path.exists(self.config_file):
            return defaults
        try:
            with open(self.config_file, 'r', encoding='utf-8') as f:
                loaded = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Error loading config '{self.config_file}': {e}")
            return defaults
        if not isinstance(loaded, dict):
            logger.warning(f"Ignoring config '{self.config_file}': top level must be an object")
            return defaults
        # Merge with defaults to handle new settings
        return self._merge_configs(defaults, loaded)

    def _merge_configs(self, default: Dict, loaded: Dict) -> Dict:
        """
        Recursively merge loaded config with defaults.
        Ensures all default keys exist even if not in loaded config.
        """
        for key, value in default.items():
            if key in loaded:
                if isinstance(value, dict) and isinstance(loaded[key], dict):
                    default[key] = self._merge_configs(value, loaded[key])
                else:
                    default[key] = loaded[key]
        return default

    def save(self) -> bool:
        """Save current config to file."""
        try:
            with open(self.config_file, 'w', encoding='utf-8') as f:
                json.dump(self.config, f, indent=4)
            return True
        except OSError as e:
            logger.error(f"Error saving config: {e}")
            return False

    def get(self, *keys: str, default: Any = None) -> Any:
        """
        Get config value by nested keys.

        Args:
            *keys: Nested keys (e.g., "defaults", "levels")
            default: Default value if key not found

        Returns:
            Config value or default

        Example:
            config.get("defaults", "levels")  # Returns 10
        """
        value = self.config
        for key in keys:
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default
        return value

    def set(self, *keys: str, value: Any):
        """
        Set config value by nested keys.

        Example:
            config.set("defaults", "opacity", value=70)
        """
        if len(keys) == 0:
            return

        current = self.config
        for key in keys[:-1]:
            if key not in current:
                current[key] = {}
            current = current[key]

        current[keys[-1]] = value

    def get_processing_settings(self) -> ProcessingSettings:
        """
        Build the default settings snapshot.

        Raises:
            InvalidSettingsError: If the stored defaults are out of range
        """
        return ProcessingSettings(
            levels=self.get("defaults", "levels"),
            opacity=self.get("defaults", "opacity"),
            is_black_and_white=self.get("defaults", "black_and_white"),
            curves=self.get("defaults", "curves"),
        )

    def get_tier_params(self) -> Dict[FidelityTier, TierParams]:
        params = {}
        for tier in FidelityTier:
            section = self.get("quantizer", tier.value, default={})
            if not isinstance(section, dict):
                raise InvalidSettingsError(f"'quantizer.{tier.value}' must be an object")
            params[tier] = TierParams(
                sample_stride=int(section.get("sample_stride", 1)),
                max_iterations=int(section.get("max_iterations", 30)),
            )
        return params

    def get_scheduler_options(self) -> Dict[str, Any]:
        """
        Keyword arguments for PipelineScheduler.
        Invalid stored values are logged and replaced by the defaults.
        """
        defaults = self.DEFAULT_CONFIG["scheduler"]
        debounce_ms = self.get("scheduler", "debounce_ms", default=defaults["debounce_ms"])
        if isinstance(debounce_ms, bool) or not isinstance(debounce_ms, (int, float)) or debounce_ms < 0:
            logger.warning(f"Ignoring 'scheduler.debounce_ms' = {debounce_ms!r}: "
                           f"expected a non-negative number")
            debounce_ms = defaults["debounce_ms"]

        num_workers = self.get("scheduler", "num_workers", default=defaults["num_workers"])
        if isinstance(num_workers, bool) or not isinstance(num_workers, int) or num_workers < 1:
            logger.warning(f"Ignoring 'scheduler.num_workers' = {num_workers!r}: "
                           f"expected a positive integer")
            num_workers = defaults["num_workers"]

        return {
            "debounce_delay": debounce_ms / 1000.0,
            "num_workers": num_workers,
        }
