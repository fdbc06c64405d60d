import threading
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from loguru import logger

from .models import SystemConfig

DEFAULT_CONFIG_PATH = Path("config/default.yaml")
LOCAL_CONFIG_PATH = Path("config/local.yaml")


def load_yaml(path: Path) -> Dict[str, Any]:
    """Load YAML file, returning empty dict if not found."""
    if not path.exists():
        return {}
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def merge_dicts(base: Dict, override: Dict) -> Dict:
    """Recursive merge of two dictionaries."""
    result = base.copy()
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = merge_dicts(result[k], v)
        else:
            result[k] = v
    return result


def resolve_config(
    overrides: Optional[Dict[str, Any]] = None,
    default_path: Path = DEFAULT_CONFIG_PATH,
    local_path: Path = LOCAL_CONFIG_PATH,
) -> SystemConfig:
    """
    Resolve config: Default < Local < overrides.
    Returns validated Pydantic SystemConfig model.

    Raises:
        pydantic.ValidationError: if the merged config is invalid
    """
    config_data = load_yaml(default_path)
    config_data = merge_dicts(config_data, load_yaml(local_path))
    if overrides:
        config_data = merge_dicts(config_data, overrides)

    return SystemConfig.from_dict(config_data)


class SystemConfigStore:
    """Holds the current system config for one process.

    ``get(with_cache=False)`` re-reads the YAML layers, so a nightly run
    always sees the file on disk rather than the value loaded at startup.
    """

    def __init__(
        self,
        default_path: Path = DEFAULT_CONFIG_PATH,
        local_path: Path = LOCAL_CONFIG_PATH,
        initial: Optional[SystemConfig] = None,
    ):
        self.default_path = Path(default_path)
        self.local_path = Path(local_path)
        self._lock = threading.Lock()
        self._config = initial
        # Explicitly set configs win over the files until the process restarts
        self._pinned = initial is not None

    def get(self, with_cache: bool = True) -> SystemConfig:
        with self._lock:
            if self._config is not None and (with_cache or self._pinned):
                return self._config

        config = resolve_config(default_path=self.default_path, local_path=self.local_path)
        with self._lock:
            self._config = config
        return config

    def set(self, config: SystemConfig) -> SystemConfig:
        logger.debug("System config replaced")
        with self._lock:
            self._config = config
            self._pinned = True
        return config
