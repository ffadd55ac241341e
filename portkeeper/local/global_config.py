import json
import logging
from pathlib import Path
from typing import Any, Dict
import portkeeper.settings as default_settings

log = logging.getLogger(__name__)


class GlobalSync:
    """
    A singleton class that houses all application configuration.

    It follows a clear precedence:
    1. Base values from `settings.py` (which already honours `.env`).
    2. Overrides from `overrides.json` for keys listed in `MODIFIABLE_SETTINGS`.
    """

    def __init__(self) -> None:
        """Initializes the settings object by loading defaults and overrides."""
        self._config: Dict[str, Any] = {}
        self._load_defaults()
        self._load_overrides_from_file()

    def get(self, item: str, default: Any = None) -> Any:
        """Provides dictionary-like access to settings with a default value."""
        return self._config.get(item, default)

    def __getattr__(self, name: str) -> Any:
        """Allows attribute access to settings, raising an AttributeError if not found."""
        config = self.__dict__.get("_config", {})
        if name in config:
            return config[name]
        raise AttributeError(f"'{self.__class__.__name__}' object has no attribute '{name}'")

    def __setattr__(self, name: str, value: Any) -> None:
        if name.isupper():
            self._config[name] = value
        else:
            super().__setattr__(name, value)

    def _load_defaults(self) -> None:
        """Loads all uppercase attributes from settings.py as the baseline."""
        for key in dir(default_settings):
            if key.isupper():
                self._config[key] = getattr(default_settings, key)

    def _load_overrides_from_file(self) -> None:
        """Merges whitelisted overrides from the JSON file, coercing paths back to Path objects."""
        overrides_path = Path(self._config["OVERRIDES_JSON_PATH"])
        if not overrides_path.exists():
            return

        try:
            with overrides_path.open('r') as f:
                overrides = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            log.error(f"Failed to load or parse overrides file: {e}")
            return

        if not isinstance(overrides, dict):
            log.error(f"Overrides file '{overrides_path}' is not a JSON object. Ignoring.")
            return

        log.info(f"Loading runtime config overrides from {overrides_path}")
        for key, value in overrides.items():
            if key not in self._config["MODIFIABLE_SETTINGS"]:
                log.warning(f"Attempted to override non-modifiable setting '{key}'. Ignoring.")
                continue
            if isinstance(self._config.get(key), Path):
                value = Path(value)
            self._config[key] = value
            log.debug(f"Overridden setting: {key} = {value}")

    def get_all_settings(self) -> Dict[str, Any]:
        """Returns the entire configuration dictionary."""
        return self._config

# A singleton instance to be imported by other modules
app_globals = GlobalSync()
