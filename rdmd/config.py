from __future__ import annotations

import os
import tomllib
from dataclasses import asdict, dataclass, replace

import tomlkit

from .constants import LINK_MDU
from .envelope import max_record_envelope_size


@dataclass(frozen=True)
class HubRuntimeConfig:
    config_path: str | None = None
    configdir: str | None = None
    identity_path: str | None = None
    database_path: str | None = None
    dest_name: str = "rdm.hub"
    announce_on_start: bool = True
    announce_period_s: float = 0.0
    hub_name: str = "rdm"
    identity_max_chars: int = 64
    username_max_chars: int = 32
    max_content_bytes: int = 280
    rate_limit_msgs_per_minute: int = 240
    ping_interval_s: float = 0.0
    ping_timeout_s: float = 0.0
    mark_delivered: bool = True
    close_superseded: bool = False
    allow_signup: bool = True
    password_iterations: int = 200_000
    history_limit: int = 200
    log_level: str = "INFO"
    log_rns_level: str = "WARNING"
    log_console: bool = True
    log_file: str | None = None
    log_format: str = "%(asctime)s %(levelname)s %(name)s[%(threadName)s]: %(message)s"
    log_datefmt: str | None = None


_LOGGING_KEYS = {
    "level": "log_level",
    "rns_level": "log_rns_level",
    "console": "log_console",
    "file": "log_file",
    "format": "log_format",
    "datefmt": "log_datefmt",
}

# Optional string settings where an empty TOML string means "unset".
_EMPTY_IS_NONE = ("configdir", "database_path", "log_file", "log_datefmt")


def load_toml(path: str) -> dict:
    with open(path, "rb") as f:
        data = tomllib.load(f)
    return data if isinstance(data, dict) else {}


def apply_config_data(base: HubRuntimeConfig, data: dict) -> HubRuntimeConfig:
    """Overlay a parsed TOML document onto ``base``.

    Keys may live at the top level or under ``[hub]``; the ``[logging]``
    table is mapped onto the ``log_*`` fields. Unknown keys are ignored.
    """
    hub = data.get("hub") if isinstance(data, dict) else None
    if isinstance(hub, dict):
        data = {**data, **hub}

    log_table = data.get("logging") if isinstance(data, dict) else None
    if isinstance(log_table, dict):
        mapped = {
            field: log_table.get(key)
            for key, field in _LOGGING_KEYS.items()
            if key in log_table
        }
        data = {**data, **mapped}

    allowed = set(asdict(base).keys())
    # This identifies where the config came from; do not let the file override it.
    allowed.discard("config_path")

    updates = {k: v for k, v in data.items() if k in allowed}

    if "announce" in data and "announce_on_start" not in updates:
        updates["announce_on_start"] = bool(data["announce"])

    for key in _EMPTY_IS_NONE:
        if key in updates and updates[key] == "":
            updates[key] = None

    return replace(base, **updates) if updates else base


def load_config_file(base: HubRuntimeConfig, path: str) -> HubRuntimeConfig:
    return apply_config_data(base, load_toml(path))


def persist_config_updates(path: str, updates: dict[str, object]) -> None:
    """Write ``updates`` into the ``[hub]`` table of the TOML file at ``path``.

    Comments and layout of the existing file are kept.
    """
    with open(path, encoding="utf-8") as f:
        doc = tomlkit.parse(f.read())

    hub = doc.get("hub")
    if hub is None:
        hub = tomlkit.table()
        doc["hub"] = hub

    for key, value in updates.items():
        hub[key] = "" if value is None else value

    file_mode = os.stat(path).st_mode
    with open(path, "w", encoding="utf-8") as f:
        f.write(tomlkit.dumps(doc))
    os.chmod(path, file_mode)


def validate_config(cfg: HubRuntimeConfig, *, mdu: int = LINK_MDU) -> None:
    """Reject settings the hub cannot honor. Raises ValueError."""
    if int(cfg.max_content_bytes) < 1:
        raise ValueError("max_content_bytes must be positive")

    # A maximum-size message between two registered users must fit one packet.
    size = max_record_envelope_size(int(cfg.max_content_bytes))
    if size > mdu:
        raise ValueError(
            f"max_content_bytes={cfg.max_content_bytes} does not fit the link MDU "
            f"({size} > {mdu} bytes)"
        )
