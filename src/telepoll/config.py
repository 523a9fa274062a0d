from __future__ import annotations

import tomllib
from pathlib import Path

HOME_CONFIG_PATH = Path.home() / ".telepoll" / "telepoll.toml"
LOCAL_CONFIG_NAME = "telepoll.toml"


class ConfigError(RuntimeError):
    pass


def resolve_config_path(path: str | Path | None = None) -> Path:
    if path:
        return Path(path).expanduser()
    local = Path.cwd() / LOCAL_CONFIG_NAME
    if local.is_file():
        return local
    return HOME_CONFIG_PATH


def read_config(cfg_path: Path) -> dict:
    if cfg_path.exists() and not cfg_path.is_file():
        raise ConfigError(f"Config path {cfg_path} exists but is not a file.")
    try:
        raw = cfg_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise ConfigError(f"Missing config file {cfg_path}.") from None
    except OSError as e:
        raise ConfigError(f"Failed to read config file {cfg_path}: {e}") from e
    try:
        return tomllib.loads(raw)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Malformed TOML in {cfg_path}: {e}") from None
