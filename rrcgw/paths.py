from __future__ import annotations

import os
from pathlib import Path


def default_rrcgw_dir() -> Path:
    override = os.environ.get("RRCGW_HOME")
    if override:
        return Path(override)
    return Path.home() / ".rrcgw"


def default_config_path() -> Path:
    return default_rrcgw_dir() / "rrcgw.toml"


def default_identity_path() -> Path:
    return default_rrcgw_dir() / "gateway_identity"


def default_users_path() -> Path:
    return default_rrcgw_dir() / "users.toml"


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    try:
        # Best-effort tightening; may fail on some filesystems.
        os.chmod(path, 0o700)
    except Exception:
        pass
