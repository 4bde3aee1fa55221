"""Loading of environment creation files.

Creation files are YAML (JSON is accepted too, being a subset of YAML)::

    environment:
      name: dev
    provider:
      provider: lxd
      profile_name: torrust-profile-dev
    ssh_credentials:
      private_key_path: /home/me/.ssh/torrust
      public_key_path: /home/me/.ssh/torrust.pub
      username: torrust
      port: 22
    tracker:
      udp_tracker_ports: [6969]
      http_tracker_ports: [7070]
      http_api:
        port: 1212
        admin_token: MyAccessToken
      database:
        driver: sqlite3
        database_name: tracker.db
    prometheus:
      scrape_interval_secs: 15

Omitting ``prometheus`` deploys the tracker without metrics.
"""

from __future__ import annotations

from collections import abc as cabc
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from deployer._errors import ConfigurationError, NameValidationError
from deployer._models import (
    DEFAULT_SSH_PORT,
    DatabaseConfig,
    DatabaseDriver,
    HetznerConfig,
    LxdConfig,
    PrometheusConfig,
    ProviderConfig,
    SshCredentials,
    TrackerConfig,
)
from deployer._names import EnvironmentName, InstanceName, ProfileName, Username


@dataclass(frozen=True, slots=True)
class CreateEnvironmentParams:
    """Validated inputs for creating an environment."""

    name: EnvironmentName
    provider_config: ProviderConfig
    ssh_credentials: SshCredentials
    ssh_port: int = DEFAULT_SSH_PORT
    tracker: TrackerConfig = field(default_factory=TrackerConfig)
    instance_name: InstanceName | None = None


def _section(payload: cabc.Mapping[str, Any], key: str, *, required: bool = True) -> dict[str, Any]:
    value = payload.get(key)
    if value is None and not required:
        return {}
    if not isinstance(value, dict):
        msg = f"Configuration section {key!r} must be a mapping"
        raise ConfigurationError(msg)
    return value


def _string(section: cabc.Mapping[str, Any], key: str, where: str) -> str:
    value = section.get(key)
    if not isinstance(value, str) or not value:
        msg = f"{where}.{key} must be a non-empty string"
        raise ConfigurationError(msg)
    return value


def _port(value: object, where: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or not 0 < value < 65536:
        msg = f"{where} must be a port number between 1 and 65535, got {value!r}"
        raise ConfigurationError(msg)
    return value


def _ports(section: cabc.Mapping[str, Any], key: str, default: tuple[int, ...]) -> tuple[int, ...]:
    value = section.get(key)
    if value is None:
        return default
    if not isinstance(value, list) or not value:
        msg = f"tracker.{key} must be a non-empty list of ports"
        raise ConfigurationError(msg)
    return tuple(_port(item, f"tracker.{key}") for item in value)


def _key_path(section: cabc.Mapping[str, Any], key: str) -> Path:
    path = Path(_string(section, key, "ssh_credentials")).expanduser()
    if not path.is_absolute():
        msg = f"ssh_credentials.{key} must be an absolute path, got {path}"
        raise ConfigurationError(msg)
    if not path.is_file():
        msg = f"ssh_credentials.{key} does not exist: {path}"
        raise ConfigurationError(msg)
    return path


def parse_provider(section: cabc.Mapping[str, Any], name: EnvironmentName) -> ProviderConfig:
    """Build the provider configuration named by ``section['provider']``."""

    match section.get("provider"):
        case "lxd":
            profile = section.get("profile_name")
            return LxdConfig(
                ProfileName(profile) if profile else ProfileName.for_environment(name)
            )
        case "hetzner":
            return HetznerConfig(
                api_token=_string(section, "api_token", "provider"),
                server_type=_string(section, "server_type", "provider"),
                location=_string(section, "location", "provider"),
                image=_string(section, "image", "provider"),
            )
        case other:
            msg = f"provider.provider must be 'lxd' or 'hetzner', got {other!r}"
            raise ConfigurationError(msg)


def parse_tracker(
    section: cabc.Mapping[str, Any], prometheus: cabc.Mapping[str, Any] | None
) -> TrackerConfig:
    defaults = TrackerConfig()
    http_api = _section(section, "http_api", required=False)
    database = _section(section, "database", required=False)
    try:
        driver = DatabaseDriver(database.get("driver", defaults.database.driver))
    except ValueError as exc:
        msg = f"tracker.database.driver must be 'sqlite3' or 'mysql', got {database.get('driver')!r}"
        raise ConfigurationError(msg) from exc
    if driver is DatabaseDriver.MYSQL:
        database_config = DatabaseConfig(
            driver=driver,
            database_name=_string(database, "database_name", "tracker.database"),
            host=database.get("host"),
            port=_port(database.get("port", 3306), "tracker.database.port"),
            username=_string(database, "username", "tracker.database"),
            password=_string(database, "password", "tracker.database"),
        )
    else:
        database_config = DatabaseConfig(
            driver=driver,
            database_name=database.get("database_name", defaults.database.database_name),
        )
    prometheus_config = None
    if prometheus is not None:
        interval = prometheus.get("scrape_interval_secs", 15)
        if isinstance(interval, bool) or not isinstance(interval, int) or interval <= 0:
            msg = "prometheus.scrape_interval_secs must be a positive integer"
            raise ConfigurationError(msg)
        prometheus_config = PrometheusConfig(interval)
    return TrackerConfig(
        udp_tracker_ports=_ports(section, "udp_tracker_ports", defaults.udp_tracker_ports),
        http_tracker_ports=_ports(section, "http_tracker_ports", defaults.http_tracker_ports),
        http_api_port=_port(http_api.get("port", defaults.http_api_port), "tracker.http_api.port"),
        admin_token=http_api.get("admin_token", defaults.admin_token),
        database=database_config,
        prometheus=prometheus_config,
    )


def parse_environment_config(payload: object) -> CreateEnvironmentParams:
    """Validate a decoded creation file.

    Raises
    ------
    ConfigurationError
        If a section is missing or a value is invalid.
    """

    if not isinstance(payload, dict):
        msg = "Environment configuration must be a mapping"
        raise ConfigurationError(msg)
    environment = _section(payload, "environment")
    credentials = _section(payload, "ssh_credentials")
    prometheus = payload.get("prometheus")
    if prometheus is not None and not isinstance(prometheus, dict):
        msg = "Configuration section 'prometheus' must be a mapping"
        raise ConfigurationError(msg)
    try:
        name = EnvironmentName(_string(environment, "name", "environment"))
        instance_name = environment.get("instance_name")
        return CreateEnvironmentParams(
            name=name,
            provider_config=parse_provider(_section(payload, "provider"), name),
            ssh_credentials=SshCredentials(
                private_key_path=_key_path(credentials, "private_key_path"),
                public_key_path=_key_path(credentials, "public_key_path"),
                username=Username(_string(credentials, "username", "ssh_credentials")),
            ),
            ssh_port=_port(credentials.get("port", DEFAULT_SSH_PORT), "ssh_credentials.port"),
            tracker=parse_tracker(_section(payload, "tracker", required=False), prometheus),
            instance_name=InstanceName(instance_name) if instance_name else None,
        )
    except NameValidationError as exc:
        raise ConfigurationError(str(exc)) from exc


def load_environment_config(path: Path) -> CreateEnvironmentParams:
    """Read and validate the creation file at ``path``."""

    try:
        payload = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as exc:
        msg = f"Cannot read environment configuration {path}: {exc}"
        raise ConfigurationError(msg) from exc
    except yaml.YAMLError as exc:
        msg = f"Environment configuration {path} is not valid YAML or JSON: {exc}"
        raise ConfigurationError(msg) from exc
    return parse_environment_config(payload)


__all__ = [
    "CreateEnvironmentParams",
    "load_environment_config",
    "parse_environment_config",
]
