from __future__ import annotations

import os
from pathlib import Path


def default_rdmd_dir() -> Path:
    override = os.environ.get("RDMD_HOME")
    if override:
        return Path(override)
    return Path.home() / ".rdmd"


def default_config_path() -> Path:
    return default_rdmd_dir() / "rdmd.toml"


def default_identity_path() -> Path:
    return default_rdmd_dir() / "hub_identity"


def default_database_path() -> Path:
    return default_rdmd_dir() / "messages.db"


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    try:
        # Best-effort tightening; may fail on some filesystems.
        os.chmod(path, 0o700)
    except Exception:
        pass
