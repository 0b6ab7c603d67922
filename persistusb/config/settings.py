"""Settings storage for provisioning defaults."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from loguru import logger


SETTINGS_PATH = Path(
    os.environ.get(
        "PERSISTUSB_SETTINGS_PATH",
        Path.home() / ".config" / "persistusb" / "settings.json",
    )
)

DEFAULT_SETTLE_DELAY_SECONDS = 2
DEFAULT_BOOT_SIZE_MIB = 512
DEFAULT_MAPPER_NAME = "persistcrypt"
DEFAULT_MBR_BIN_PATH = "/usr/lib/syslinux/bios/gptmbr.bin"

DEFAULT_SETTINGS: dict[str, Any] = {
    "settle_delay_seconds": DEFAULT_SETTLE_DELAY_SECONDS,
    "work_dir_parent": "/tmp",
    "mapper_name": DEFAULT_MAPPER_NAME,
    "mbr_bin_path": DEFAULT_MBR_BIN_PATH,
    "default_boot_size_mib": DEFAULT_BOOT_SIZE_MIB,
}


@dataclass
class SettingsStore:
    values: dict[str, Any] = field(default_factory=dict)


settings_store = SettingsStore()


def load_settings() -> None:
    settings_store.values = dict(DEFAULT_SETTINGS)
    if not SETTINGS_PATH.exists():
        return
    try:
        data = json.loads(SETTINGS_PATH.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as error:
        logger.warning(f"Ignoring settings file {SETTINGS_PATH}: {error}")
        return
    if not isinstance(data, dict):
        logger.warning(f"Ignoring settings file {SETTINGS_PATH}: expected a JSON object")
        return
    settings_store.values.update(data)


def get_setting(key: str, default: Any | None = None) -> Any:
    return settings_store.values.get(key, default)


def get_int(key: str, default: int = 0) -> int:
    try:
        return int(get_setting(key, default))
    except (TypeError, ValueError):
        return default


def get_float(key: str, default: float = 0.0) -> float:
    try:
        return float(get_setting(key, default))
    except (TypeError, ValueError):
        return default


load_settings()
