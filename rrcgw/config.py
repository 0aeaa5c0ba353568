from __future__ import annotations

import tomllib
from dataclasses import asdict, dataclass, replace
from typing import Any


@dataclass(frozen=True)
class GatewayConfig:
    config_path: str | None = None
    configdir: str | None = None
    identity_path: str | None = None
    users_path: str | None = None
    dest_name: str = "rrc.gateway"
    announce_on_start: bool = True
    announce_period_s: float = 0.0
    gateway_name: str = "rrcgw"
    token_secret: str | None = None
    token_algorithms: tuple[str, ...] = ("HS256",)
    token_issuer: str | None = None
    token_audience: str | None = None
    token_leeway_s: float = 0.0
    connect_timeout_s: float = 30.0
    username_max_chars: int = 32
    max_message_chars: int = 2000
    recheck_bans_on_send: bool = False
    max_resource_bytes: int = 256 * 1024
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

# Keys where an empty string in the file means "unset".
_OPTIONAL_STR_KEYS = (
    "configdir",
    "token_secret",
    "token_issuer",
    "token_audience",
    "log_file",
    "log_datefmt",
)


def load_toml(path: str) -> dict:
    with open(path, "rb") as f:
        data = tomllib.load(f)
    return data if isinstance(data, dict) else {}


def apply_config_data(base: GatewayConfig, data: dict) -> GatewayConfig:
    """Overlay a parsed TOML document onto ``base``.

    Accepts flat keys, a ``[gateway]`` table and a ``[logging]`` table. Unknown
    keys are ignored.
    """
    gateway = data.get("gateway") if isinstance(data, dict) else None
    if isinstance(gateway, dict):
        data = {**data, **gateway}

    log_table = data.get("logging") if isinstance(data, dict) else None
    if isinstance(log_table, dict):
        mapped: dict[str, Any] = {
            target: log_table.get(key)
            for key, target in _LOGGING_KEYS.items()
            if key in log_table
        }
        data = {**data, **mapped}

    allowed = set(asdict(base).keys())
    # This identifies where to reload from; do not let the file override it.
    allowed.discard("config_path")

    updates = {k: v for k, v in data.items() if k in allowed}

    if "token_algorithms" in updates:
        algs = updates["token_algorithms"]
        if isinstance(algs, str):
            algs = [algs]
        updates["token_algorithms"] = tuple(str(a) for a in algs if str(a).strip())

    for key in _OPTIONAL_STR_KEYS:
        if key in updates and updates[key] == "":
            updates[key] = None

    if "announce" in data and "announce_on_start" not in updates:
        updates["announce_on_start"] = bool(data["announce"])

    return replace(base, **updates) if updates else base


def load_config(path: str, base: GatewayConfig | None = None) -> GatewayConfig:
    cfg = base if base is not None else GatewayConfig()
    cfg = replace(cfg, config_path=path)
    return apply_config_data(cfg, load_toml(path))
