"""
Persistent operator settings.

Settings live in a JSON object at ``SETTINGS_PATH``. Keys that are missing from
the file take their value from ``DEFAULT_SETTINGS``; known keys whose stored
value has the wrong JSON type are ignored with a warning, so a hand-edited file
cannot turn ``split_size_mb`` into a string. Unknown keys are kept as-is.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from appliance_media.logging import get_logger

SETTINGS_PATH = Path(
    os.environ.get(
        "APPLIANCE_MEDIA_SETTINGS_PATH",
        Path.home() / ".config" / "appliance-media" / "settings.json",
    )
)

# Highest kit compatibility revision this release understands.
SUPPORTED_COMPATIBILITY_REVISION = 3

DEFAULT_UPDATE_URL = "https://go.example.com/fwlink/?linkid=appliance-media-latest"
DEFAULT_KIT_URL = "https://go.example.com/fwlink/?linkid=appliance-deployment-kit"
DEFAULT_MIN_SCRATCH_BYTES = 20 * 1024**3
DEFAULT_SPLIT_SIZE_MB = 4000
DEFAULT_VOLUME_LABEL = "APPLIANCE"

DEFAULT_SETTINGS: dict[str, Any] = {
    "update_url": DEFAULT_UPDATE_URL,
    "kit_url": DEFAULT_KIT_URL,
    "scratch_dir": str(Path.home() / ".cache" / "appliance-media"),
    "min_scratch_bytes": DEFAULT_MIN_SCRATCH_BYTES,
    "split_size_mb": DEFAULT_SPLIT_SIZE_MB,
    "allowed_bus_types": ["USB"],
    "volume_label": DEFAULT_VOLUME_LABEL,
}

log = get_logger(source="config")


@dataclass
class SettingsStore:
    values: dict[str, Any] = field(default_factory=dict)


settings_store = SettingsStore()


def _read_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as error:
        log.warning(f"Ignoring unreadable settings file {path}: {error}")
        return {}
    if not isinstance(data, dict):
        log.warning(f"Ignoring settings file {path}: expected a JSON object")
        return {}
    return data


def _accepts(key: str, value: Any) -> bool:
    if key not in DEFAULT_SETTINGS:
        return True
    return isinstance(value, type(DEFAULT_SETTINGS[key]))


def load_settings() -> None:
    """Reset the store to the defaults overlaid with the settings file."""
    values = dict(DEFAULT_SETTINGS)
    for key, value in _read_file(SETTINGS_PATH).items():
        if _accepts(key, value):
            values[key] = value
        else:
            log.warning(f"Ignoring setting {key!r}: {value!r} is not a {type(DEFAULT_SETTINGS[key]).__name__}")
    settings_store.values = values


def get_setting(key: str, default: Any | None = None) -> Any:
    return settings_store.values.get(key, default)


def get_path(key: str) -> Path:
    """Return a directory setting with ``~`` expanded."""
    return Path(get_setting(key, DEFAULT_SETTINGS.get(key))).expanduser()


def get_int(key: str, default: int = 0) -> int:
    try:
        return int(get_setting(key, default))
    except (TypeError, ValueError):
        return default


def get_list(key: str) -> list[str]:
    """Return a list setting; a single string is treated as a one-item list."""
    value = get_setting(key, DEFAULT_SETTINGS.get(key, []))
    if isinstance(value, str):
        return [value]
    return [str(item) for item in value or []]


load_settings()
