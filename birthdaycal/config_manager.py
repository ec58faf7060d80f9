from __future__ import annotations

import copy
import errno
import logging
import os
import threading
from pathlib import Path
from typing import Any, Mapping

import yaml

from birthdaycal.models import AppConfig, default_app_config


logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config/birthdaycal.yaml"
CONFIG_PATH_ENV = "BIRTHDAYCAL_CONFIG"

# Environment variables that win over the file, e.g. to keep secrets out of it.
ENV_OVERRIDES = {
    "BIRTHDAYCAL_DAV_USER": ("dav", "user"),
    "BIRTHDAYCAL_DAV_PASSWORD": ("dav", "password"),
    "BIRTHDAYCAL_DAV_CAL_URL": ("dav", "cal_url"),
    "BIRTHDAYCAL_DAV_CARD_URL": ("dav", "card_url"),
}


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _env_overrides(environ: Mapping[str, str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for env_name, (section, key) in ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value:
            overrides.setdefault(section, {})[key] = value
    return overrides


def resolve_config_path(explicit: str | None = None) -> Path:
    return Path(explicit or os.getenv(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH)


def _dump(config_dict: dict[str, Any], path: Path) -> None:
    with path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(
            config_dict,
            handle,
            sort_keys=False,
            allow_unicode=True,
            default_flow_style=False,
        )


class ConfigManager:
    def __init__(
        self,
        config_path: str | os.PathLike[str],
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.config_path = Path(config_path)
        self._environ = os.environ if environ is None else environ
        self._lock = threading.RLock()
        self._ensure_exists()

    def _ensure_exists(self) -> None:
        if self.config_path.exists():
            return
        logger.info("Config file %s not found, writing defaults.", self.config_path)
        self.save(default_app_config())

    def _read_file(self) -> dict[str, Any]:
        with self.config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Config root must be a mapping: {self.config_path}")
        return data

    def load(self) -> AppConfig:
        with self._lock:
            data = _deep_merge(self._read_file(), _env_overrides(self._environ))
            return AppConfig.from_dict(data)

    def save(self, config: AppConfig) -> None:
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            config_dict = config.to_dict()
            tmp_path = self.config_path.with_suffix(self.config_path.suffix + ".tmp")
            _dump(config_dict, tmp_path)
            try:
                tmp_path.replace(self.config_path)
            except OSError as exc:
                # Bind-mounted single files in containers cannot be atomically replaced.
                if exc.errno != errno.EBUSY:
                    raise
                _dump(config_dict, self.config_path)
                if tmp_path.exists():
                    tmp_path.unlink()

    def update(self, payload: dict[str, Any]) -> AppConfig:
        with self._lock:
            merged = _deep_merge(self._read_file(), payload)
            config = AppConfig.from_dict(merged)
            self.save(config)
            return config

    def masked(self) -> dict[str, Any]:
        config = self.load().to_dict()
        if config.get("dav", {}).get("password"):
            config["dav"]["password"] = "***"
        return config
