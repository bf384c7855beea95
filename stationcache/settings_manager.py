#!/usr/bin/env python3
"""
Settings Manager for the station cache builder
Handles persistent storage of builder settings in a JSON file
"""

import os
import json
import logging
from pathlib import Path
from typing import Dict, Any, Optional

import dotenv

logger = logging.getLogger(__name__)

dotenv.load_dotenv()

DEFAULT_SETTINGS_PATH = 'data/settings.json'

# Environment variables consulted when no settings file exists
ENV_SETTINGS = {
    'STATION_CACHE_DIR': 'cache.dir',
    'MARKETS_FILE': 'markets.file',
    'CHANNELS_URL': 'channels.url',
    'CHANNELS_TOKEN': 'channels.token',
    'API_TIMEOUT': 'api.timeout',
}


class SettingsManager:
    """
    Manages builder settings in a JSON file.
    Security via file permissions (600 - owner read/write only).
    """

    def __init__(self, settings_path: Optional[str] = None):
        """
        Initialize the settings manager.

        Args:
            settings_path: Path to settings file (default: $SETTINGS_PATH or data/settings.json)
        """
        self.settings_path = settings_path or os.environ.get(
            'SETTINGS_PATH',
            DEFAULT_SETTINGS_PATH
        )

    def _ensure_settings_dir(self):
        settings_dir = os.path.dirname(self.settings_path)
        if settings_dir:
            Path(settings_dir).mkdir(parents=True, exist_ok=True)

    def load_settings(self) -> Dict[str, Any]:
        """
        Load settings from file, overlaid on environment variables.

        Returns:
            Dictionary of settings
        """
        settings = self._load_from_env()

        if os.path.exists(self.settings_path):
            try:
                with open(self.settings_path, 'r') as f:
                    file_settings = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                logger.error(f"Error loading settings from {self.settings_path}: {e}")
            else:
                logger.debug(f"Settings loaded from {self.settings_path}")
                return self._deep_merge(settings, file_settings)

        if settings:
            logger.debug("Settings loaded from environment variables")
        return settings

    def save_settings(self, settings: Dict[str, Any]) -> bool:
        """
        Save settings to file with restrictive permissions.

        Returns:
            True if successful, False otherwise
        """
        try:
            self._ensure_settings_dir()
            with open(self.settings_path, 'w') as f:
                json.dump(settings, f, indent=2)

            os.chmod(self.settings_path, 0o600)

            logger.info(f"Settings saved to {self.settings_path}")
            return True
        except OSError as e:
            logger.error(f"Error saving settings: {e}")
            return False

    def update_settings(self, updates: Dict[str, Any]) -> bool:
        """
        Update specific settings without overwriting everything.

        Args:
            updates: Dictionary of settings to update (supports nested updates)
        """
        current_settings = self.load_settings()
        merged_settings = self._deep_merge(current_settings, updates)
        return self.save_settings(merged_settings)

    def _deep_merge(self, base: Dict, updates: Dict) -> Dict:
        """Deep merge two dictionaries"""
        result = base.copy()
        for key, value in updates.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value
        return result

    def _load_from_env(self) -> Dict[str, Any]:
        settings: Dict[str, Any] = {}
        for env_name, path in ENV_SETTINGS.items():
            value = os.environ.get(env_name)
            if not value:
                continue
            section, key = path.split('.', 1)
            settings.setdefault(section, {})[key] = value
        return settings

    def get_setting(self, path: str, default: Any = None) -> Any:
        """
        Get a specific setting by path (e.g., 'channels.url')

        Args:
            path: Dot-separated path to setting
            default: Default value if not found
        """
        return lookup_path(self.load_settings(), path, default)


def lookup_path(settings: Dict[str, Any], path: str, default: Any = None) -> Any:
    current: Any = settings
    for key in path.split('.'):
        if isinstance(current, dict) and key in current:
            current = current[key]
        else:
            return default
    return current


# Global settings manager instance
_settings_manager = None


def get_settings_manager() -> SettingsManager:
    """Get the global settings manager instance"""
    global _settings_manager
    if _settings_manager is None:
        _settings_manager = SettingsManager()
    return _settings_manager
