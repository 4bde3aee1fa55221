"""Resolution of deployer settings from CLI, environment, and defaults."""

from __future__ import annotations

import logging
import os
from collections import abc as cabc
from dataclasses import dataclass
from pathlib import Path

from deployer._errors import ConfigurationError
from deployer._file_lock import DEFAULT_LOCK_TIMEOUT

WORKING_DIR_ENV = "DEPLOYER_WORKING_DIR"
LOCK_TIMEOUT_ENV = "DEPLOYER_LOCK_TIMEOUT"
LOG_LEVEL_ENV = "DEPLOYER_LOG_LEVEL"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass(frozen=True, slots=True)
class InputResolution:
    """Configuration for resolving an input from multiple sources."""

    env_key: str
    default: str | Path | None = None
    required: bool = False
    as_path: bool = False


def resolve_input(
    param_value: str | Path | None,
    resolution: InputResolution,
    env: cabc.Mapping[str, str] | None = None,
) -> str | Path | None:
    """Resolve input from parameter, environment variable, or default.

    Examples
    --------
    >>> resolve_input(None, InputResolution("X", default="a"), env={"X": "b"})
    'b'
    >>> resolve_input("c", InputResolution("X", default="a"), env={"X": "b"})
    'c'
    """

    if param_value is not None:
        return param_value

    env_value = (env if env is not None else os.environ).get(resolution.env_key)
    if env_value is not None:
        return Path(env_value) if resolution.as_path else env_value

    if resolution.required:
        msg = f"{resolution.env_key} is required"
        raise ConfigurationError(msg)

    return resolution.default


@dataclass(frozen=True, slots=True)
class DeployerSettings:
    """Process-wide settings shared by every command.

    Attributes
    ----------
    working_dir
        Root of the ``data`` and ``build`` trees.
    lock_timeout
        Seconds to wait for a locked environment record.
    log_level
        Name of the root logging level.
    """

    working_dir: Path = Path(".")
    lock_timeout: float = DEFAULT_LOCK_TIMEOUT
    log_level: str = "WARNING"

    @property
    def data_dir(self) -> Path:
        return self.working_dir / "data"


def _parse_timeout(raw: str | Path | None) -> float:
    try:
        timeout = float(str(raw))
    except ValueError as exc:
        msg = f"{LOCK_TIMEOUT_ENV} must be a number of seconds, got {raw!r}"
        raise ConfigurationError(msg) from exc
    if timeout < 0:
        msg = f"{LOCK_TIMEOUT_ENV} must not be negative, got {timeout}"
        raise ConfigurationError(msg)
    return timeout


def _parse_log_level(raw: str | Path | None) -> str:
    level = str(raw).upper()
    if not isinstance(logging.getLevelName(level), int):
        msg = f"{LOG_LEVEL_ENV} must be a logging level name, got {raw!r}"
        raise ConfigurationError(msg)
    return level


def resolve_settings(
    working_dir: Path | None = None,
    lock_timeout: float | None = None,
    log_level: str | None = None,
    env: cabc.Mapping[str, str] | None = None,
) -> DeployerSettings:
    """Resolve settings, preferring explicit values over ``DEPLOYER_*`` variables."""

    defaults = DeployerSettings()
    resolved_dir = resolve_input(
        working_dir,
        InputResolution(env_key=WORKING_DIR_ENV, default=defaults.working_dir, as_path=True),
        env,
    )
    resolved_timeout = resolve_input(
        None if lock_timeout is None else str(lock_timeout),
        InputResolution(env_key=LOCK_TIMEOUT_ENV, default=str(defaults.lock_timeout)),
        env,
    )
    resolved_level = resolve_input(
        log_level,
        InputResolution(env_key=LOG_LEVEL_ENV, default=defaults.log_level),
        env,
    )
    return DeployerSettings(
        working_dir=Path(str(resolved_dir)),
        lock_timeout=_parse_timeout(resolved_timeout),
        log_level=_parse_log_level(resolved_level),
    )


def configure_logging(level: str) -> None:
    """Send log records at ``level`` and above to stderr."""

    logging.basicConfig(level=level, format=LOG_FORMAT, force=True)


__all__ = [
    "DeployerSettings",
    "InputResolution",
    "configure_logging",
    "resolve_input",
    "resolve_settings",
]
