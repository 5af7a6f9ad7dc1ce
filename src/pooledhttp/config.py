"""Configuration management with XDG paths, atomic writes, and precedence resolution.

This module handles all persistent configuration for pooledhttp:

* **Directory layout** -- XDG Base Directory compliant on Linux/BSD,
  ``~/.pooledhttp/`` on macOS and Windows. See :func:`get_config_dir` and
  :func:`get_data_dir`.
* **Client config** -- A single :class:`~pooledhttp.models.ClientConfig`
  JSON file storing pool, request, and output defaults. Managed via
  :func:`load_config` and :func:`save_config`.
* **Precedence resolution** -- :func:`resolve_config` merges CLI flags,
  environment variables, and the config file into the effective
  configuration.
* **Dot-path updates** -- :func:`set_config_value` coerces and validates a
  single ``section.field`` assignment, as used by ``pooledhttp config set``.

All file writes use an atomic temp-file-then-rename strategy
(:func:`_atomic_write`) to prevent data loss on crash or power failure.
"""

from __future__ import annotations

import json
import os
import platform
import tempfile
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError

from pooledhttp.exceptions import ConfigError
from pooledhttp.models import ClientConfig

_APP_NAME = "pooledhttp"
_CONFIG_FILENAME = "config.json"

ENV_OVERRIDES: dict[str, str] = {
    "POOLEDHTTP_IDLE_TIMEOUT": "pool.idle_timeout",
    "POOLEDHTTP_REAPER_INTERVAL": "pool.reaper_interval",
    "POOLEDHTTP_MAX_DRAIN_BYTES": "pool.max_drain_bytes",
    "POOLEDHTTP_CONNECT_TIMEOUT": "request.connect_timeout",
    "POOLEDHTTP_READ_TIMEOUT": "request.read_timeout",
    "POOLEDHTTP_REDIRECT_LIMIT": "request.redirect_limit",
    "POOLEDHTTP_VERIFY_SSL": "request.verify_ssl",
    "POOLEDHTTP_OUTPUT_FORMAT": "output.format",
}
"""Environment variables recognised by :func:`resolve_config`, mapped to config keys."""


# --- XDG path resolution ---


def _is_xdg_platform() -> bool:
    """Return True if the platform supports XDG Base Directory spec (Linux/FreeBSD)."""
    return platform.system() == "Linux" or platform.system().endswith("BSD")


def _fallback_base_dir() -> Path:
    """Fallback base directory for non-XDG platforms (macOS, Windows)."""
    return Path.home() / f".{_APP_NAME}"


def _xdg_base(env_var: str, default_segments: tuple[str, ...]) -> Path:
    """Resolve an XDG base directory from an env var with fallback segments under $HOME."""
    env_value = os.environ.get(env_var, "")
    if env_value:
        return Path(env_value)
    base = Path.home()
    for seg in default_segments:
        base = base / seg
    return base


def get_config_dir() -> Path:
    """Return the configuration directory, creating it if necessary.

    On Linux/BSD: ``$XDG_CONFIG_HOME/pooledhttp/`` (default ``~/.config/pooledhttp/``).
    On macOS/Windows: ``~/.pooledhttp/``.
    """
    if _is_xdg_platform():
        path = _xdg_base("XDG_CONFIG_HOME", (".config",)) / _APP_NAME
    else:
        path = _fallback_base_dir()
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_dir() -> Path:
    """Return the data directory (crash logs), creating it if necessary.

    On Linux/BSD: ``$XDG_DATA_HOME/pooledhttp/`` (default ``~/.local/share/pooledhttp/``).
    On macOS/Windows: ``~/.pooledhttp/logs/``.
    """
    if _is_xdg_platform():
        path = _xdg_base("XDG_DATA_HOME", (".local", "share")) / _APP_NAME
    else:
        path = _fallback_base_dir() / "logs"
    path.mkdir(parents=True, exist_ok=True)
    return path


def config_path() -> Path:
    """Path to the config file."""
    return get_config_dir() / _CONFIG_FILENAME


# --- Atomic file writes ---


def _atomic_write(path: Path, data: str) -> None:
    """Write data to file atomically using temp file + rename.

    The temporary file is created in the same directory as *path* so that
    ``os.replace`` is an atomic rename on POSIX systems. On any failure the
    temp file is cleaned up.
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    fd = None
    tmp_path: Optional[str] = None
    try:
        fd = tempfile.NamedTemporaryFile(
            mode="w",
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp",
            delete=False,
            encoding="utf-8",
        )
        tmp_path = fd.name
        fd.write(data)
        fd.flush()
        os.fsync(fd.fileno())
        fd.close()
        fd = None  # prevent double-close below
        os.replace(tmp_path, path)
    except BaseException:
        if fd is not None:
            fd.close()
        if tmp_path is not None:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
        raise


# --- Load / save ---


def load_config() -> ClientConfig:
    """Load the configuration file.

    Returns:
        The deserialised :class:`~pooledhttp.models.ClientConfig`, or a
        default instance if the file does not exist.

    Raises:
        ConfigError: If the file contains invalid JSON or fails validation.
    """
    path = config_path()
    if not path.is_file():
        return ClientConfig()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        return ClientConfig.model_validate(data)
    except (json.JSONDecodeError, ValueError) as exc:
        raise ConfigError(f"Invalid config at {path}: {exc}") from exc


def save_config(config: ClientConfig) -> None:
    """Persist *config* atomically."""
    data = config.model_dump(mode="json")
    _atomic_write(config_path(), json.dumps(data, indent=2) + "\n")


# --- Dot-path updates ---


def set_config_value(config: ClientConfig, key: str, value: str) -> ClientConfig:
    """Return a copy of *config* with the dot-path *key* set to *value*.

    The string *value* is coerced to the type of the current field (bool,
    int, float, or str) and the result is re-validated.

    Raises:
        ConfigError: For an unknown key, an uncoercible value, or a value
            that fails validation.
    """
    data = config.model_dump(mode="json")
    keys = key.split(".")
    target = data
    for k in keys[:-1]:
        if k not in target or not isinstance(target[k], dict):
            raise ConfigError(f"Invalid config key: {key}")
        target = target[k]

    final_key = keys[-1]
    if final_key not in target or isinstance(target[final_key], dict):
        raise ConfigError(f"Unknown config key: {key}")

    target[final_key] = _coerce(key, target[final_key], value)
    try:
        return ClientConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid value for {key}: {exc}") from exc


def _coerce(key: str, current: Any, value: str) -> Any:
    """Coerce *value* to the type of *current*."""
    if isinstance(current, bool):
        return value.strip().lower() in ("true", "1", "yes", "on")
    try:
        if isinstance(current, int):
            return int(value)
        if isinstance(current, float):
            return float(value)
    except ValueError:
        raise ConfigError(
            f"Expected {type(current).__name__} for {key}, got: {value}"
        ) from None
    return value


# --- Precedence resolution ---


def resolve_config(cli_overrides: Optional[dict[str, str]] = None) -> ClientConfig:
    """Resolve config with full precedence chain.

    Precedence (high to low):
        1. CLI flags (*cli_overrides*, dot-path keys to string values)
        2. Environment variables (see :data:`ENV_OVERRIDES`)
        3. User config (``~/.config/pooledhttp/config.json``)
        4. Defaults

    Raises:
        ConfigError: If the config file is invalid or an override does not
            validate.
    """
    config = load_config()
    for env_var, key in ENV_OVERRIDES.items():
        value = os.environ.get(env_var)
        if value:
            config = set_config_value(config, key, value)
    for key, value in (cli_overrides or {}).items():
        config = set_config_value(config, key, value)
    return config
