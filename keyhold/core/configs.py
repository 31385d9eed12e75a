"""Configuration management for keyhold.

Loads user settings from ~/.config/keyhold/config.cfg, then an optional
.env file in the same directory, then KEYHOLD_* environment variables.
Later sources win.
"""

import configparser
from dataclasses import dataclass
import os
from pathlib import Path
from typing import Dict, Optional

from dotenv import dotenv_values

CONFIG_DIR = Path.home() / ".config" / "keyhold"
CONFIG_PATH = CONFIG_DIR / "config.cfg"
ENV_PREFIX = "KEYHOLD_"

DEFAULT_REGISTRY_URL = "https://registry.keyhold.dev/v1"


@dataclass
class DaemonConfig:
    socket_path: Path
    pid_path: Path
    log_path: Path
    registry_url: str = DEFAULT_REGISTRY_URL
    request_timeout: float = 30.0
    idle_timeout: float = 0.0


def load_raw_config(path: Path = CONFIG_PATH, environ: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """
    Load configuration values from the config file, .env and environment.
    Values are returned with lowercase keys for convenience.
    """
    cfg = configparser.ConfigParser()
    data: Dict[str, str] = {}

    if path.exists():
        cfg.read(path)
        if "DEFAULT" in cfg:
            data.update({k.lower(): v for k, v in cfg["DEFAULT"].items()})

    env_file = path.parent / ".env"
    if env_file.exists():
        for key, value in dotenv_values(env_file).items():
            if key.upper().startswith(ENV_PREFIX) and value is not None:
                data[key[len(ENV_PREFIX):].lower()] = value

    environ = os.environ if environ is None else environ
    for key, value in environ.items():
        if key.startswith(ENV_PREFIX):
            data[key[len(ENV_PREFIX):].lower()] = value

    return data


def _get_float(raw: Dict[str, str], key: str, default: float) -> float:
    value = raw.get(key)
    if value is None or str(value).strip() == "":
        return default
    try:
        result = float(value)
    except ValueError:
        raise ValueError(f"Invalid number for '{key}': {value!r}") from None
    if result < 0:
        raise ValueError(f"'{key}' must not be negative")
    return result


def get_daemon_config(raw: Optional[Dict[str, str]] = None) -> DaemonConfig:
    """
    Build a DaemonConfig from raw configuration values.
    Raises ValueError if a value is malformed.
    """
    raw = load_raw_config() if raw is None else raw

    config_dir = Path(raw.get("config_dir", CONFIG_DIR)).expanduser()
    registry_url = raw.get("registry_url", DEFAULT_REGISTRY_URL).strip().rstrip("/")
    if not registry_url.startswith(("http://", "https://")):
        raise ValueError(f"registry_url must be an http(s) URL, got {registry_url!r}")

    return DaemonConfig(
        socket_path=Path(raw.get("socket_path", config_dir / "daemon.sock")).expanduser(),
        pid_path=Path(raw.get("pid_path", config_dir / "daemon.pid")).expanduser(),
        log_path=Path(raw.get("log_path", config_dir / "daemon.log")).expanduser(),
        registry_url=registry_url,
        request_timeout=_get_float(raw, "request_timeout", 30.0),
        idle_timeout=_get_float(raw, "idle_timeout", 0.0),
    )
