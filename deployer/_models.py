"""Data models carried by every deployment environment.

The :class:`EnvironmentContext` bundles everything an environment knows that
does not depend on its lifecycle state: the user's inputs, paths derived
from the environment name, and outputs gathered at runtime.

Examples
--------
>>> from pathlib import Path
>>> internal = InternalConfig.for_environment(Path("/work"), EnvironmentName("dev"))
>>> internal.data_dir
PosixPath('/work/data/dev')
"""

from __future__ import annotations

import dataclasses
import datetime as dt
import ipaddress
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path

from deployer._names import EnvironmentName, InstanceName, ProfileName, Username

IpAddress = ipaddress.IPv4Address | ipaddress.IPv6Address

DEFAULT_SSH_PORT = 22


@dataclass(frozen=True, slots=True)
class LxdConfig:
    """Local LXD virtual machine provider settings."""

    profile_name: ProfileName

    @property
    def provider_name(self) -> str:
        return "lxd"


@dataclass(frozen=True, slots=True)
class HetznerConfig:
    """Hetzner Cloud provider settings.

    Attributes
    ----------
    api_token
        Hetzner Cloud API token; hidden from ``repr``.
    server_type
        Server type identifier (e.g., ``cx22``).
    location
        Data centre location (e.g., ``nbg1``).
    image
        Operating system image (e.g., ``ubuntu-24.04``).
    """

    api_token: str = field(repr=False)
    server_type: str
    location: str
    image: str

    @property
    def provider_name(self) -> str:
        return "hetzner"


ProviderConfig = LxdConfig | HetznerConfig


@dataclass(frozen=True, slots=True)
class SshCredentials:
    """Key pair and account used to reach the instance over SSH."""

    private_key_path: Path
    public_key_path: Path
    username: Username


class DatabaseDriver(StrEnum):
    SQLITE3 = "sqlite3"
    MYSQL = "mysql"


@dataclass(frozen=True, slots=True)
class DatabaseConfig:
    """Tracker database settings.

    MySQL connection fields are ignored for SQLite.
    """

    driver: DatabaseDriver = DatabaseDriver.SQLITE3
    database_name: str = "tracker.db"
    host: str | None = None
    port: int | None = None
    username: str | None = None
    password: str | None = field(default=None, repr=False)


@dataclass(frozen=True, slots=True)
class PrometheusConfig:
    scrape_interval_secs: int = 15


@dataclass(frozen=True, slots=True)
class TrackerConfig:
    """Snapshot of the tracker service configuration chosen at creation.

    Attributes
    ----------
    udp_tracker_ports
        Ports of the UDP tracker listeners.
    http_tracker_ports
        Ports of the HTTP tracker listeners.
    http_api_port
        Port of the tracker REST API.
    admin_token
        API admin token; hidden from ``repr``.
    database
        Database settings.
    prometheus
        Metrics scraping settings, or ``None`` to deploy without Prometheus.
    """

    udp_tracker_ports: tuple[int, ...] = (6969,)
    http_tracker_ports: tuple[int, ...] = (7070,)
    http_api_port: int = 1212
    admin_token: str = field(default="MyAccessToken", repr=False)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    prometheus: PrometheusConfig | None = field(default_factory=PrometheusConfig)


@dataclass(frozen=True, slots=True)
class UserInputs:
    """Values supplied by the user when the environment was created."""

    name: EnvironmentName
    instance_name: InstanceName
    provider_config: ProviderConfig
    ssh_credentials: SshCredentials
    ssh_port: int = DEFAULT_SSH_PORT
    tracker: TrackerConfig = field(default_factory=TrackerConfig)


@dataclass(frozen=True, slots=True)
class InternalConfig:
    """Working directories derived from the environment name."""

    build_dir: Path
    data_dir: Path

    @classmethod
    def for_environment(cls, working_dir: Path, name: EnvironmentName) -> InternalConfig:
        """Derive ``build/<name>`` and ``data/<name>`` under ``working_dir``."""

        return cls(
            build_dir=working_dir / "build" / name.value,
            data_dir=working_dir / "data" / name.value,
        )


class ProvisionMethod(StrEnum):
    """How the environment's instance came to exist."""

    PROVISIONED = "provisioned"
    REGISTERED = "registered"


@dataclass(frozen=True, slots=True)
class RuntimeOutputs:
    """Values produced by running workflows."""

    instance_ip: IpAddress | None = None
    provision_method: ProvisionMethod | None = None


@dataclass(frozen=True, slots=True)
class EnvironmentContext:
    """State-independent data of an environment.

    Examples
    --------
    >>> from pathlib import Path
    >>> name = EnvironmentName("dev")
    >>> ctx = EnvironmentContext(
    ...     user_inputs=UserInputs(
    ...         name=name,
    ...         instance_name=InstanceName.for_environment(name),
    ...         provider_config=LxdConfig(ProfileName("torrust-profile-dev")),
    ...         ssh_credentials=SshCredentials(
    ...             Path("/keys/id"), Path("/keys/id.pub"), Username("torrust")
    ...         ),
    ...     ),
    ...     internal_config=InternalConfig.for_environment(Path("/work"), name),
    ...     created_at=dt.datetime(2025, 1, 1, tzinfo=dt.UTC),
    ... )
    >>> ctx.tofu_build_dir
    PosixPath('/work/build/dev/tofu/lxd')
    """

    user_inputs: UserInputs
    internal_config: InternalConfig
    created_at: dt.datetime
    runtime_outputs: RuntimeOutputs = field(default_factory=RuntimeOutputs)

    @property
    def provider_name(self) -> str:
        return self.user_inputs.provider_config.provider_name

    @property
    def templates_dir(self) -> Path:
        return self.internal_config.data_dir / "templates"

    @property
    def traces_dir(self) -> Path:
        return self.internal_config.data_dir / "traces"

    @property
    def tofu_build_dir(self) -> Path:
        return self.internal_config.build_dir / "tofu" / self.provider_name

    @property
    def ansible_build_dir(self) -> Path:
        return self.internal_config.build_dir / "ansible"

    @property
    def is_infrastructure_managed(self) -> bool:
        """Whether the deployer owns the instance's infrastructure.

        Registered instances were created elsewhere and must never be
        destroyed by the deployer.
        """

        return self.runtime_outputs.provision_method is not ProvisionMethod.REGISTERED

    def with_runtime_outputs(
        self,
        instance_ip: IpAddress,
        provision_method: ProvisionMethod,
    ) -> EnvironmentContext:
        return dataclasses.replace(
            self,
            runtime_outputs=RuntimeOutputs(
                instance_ip=instance_ip, provision_method=provision_method
            ),
        )


@dataclass(frozen=True, slots=True)
class TofuResult:
    """Result of an OpenTofu command execution.

    Attributes
    ----------
    success
        Whether the command exited with status code ``0``.
    stdout
        Captured standard output (empty when not captured).
    stderr
        Captured standard error (empty when not captured).
    return_code
        Process exit status code returned by OpenTofu.
    """

    success: bool
    stdout: str
    stderr: str
    return_code: int


def parse_ip_address(value: str | IpAddress) -> IpAddress:
    """Return ``value`` as an IP address object.

    Examples
    --------
    >>> parse_ip_address("192.168.1.10")
    IPv4Address('192.168.1.10')
    """

    if isinstance(value, IpAddress):
        return value
    return ipaddress.ip_address(value)


__all__ = [
    "DEFAULT_SSH_PORT",
    "DatabaseConfig",
    "DatabaseDriver",
    "EnvironmentContext",
    "EnvironmentName",
    "HetznerConfig",
    "InternalConfig",
    "IpAddress",
    "LxdConfig",
    "PrometheusConfig",
    "ProviderConfig",
    "ProvisionMethod",
    "RuntimeOutputs",
    "SshCredentials",
    "TofuResult",
    "TrackerConfig",
    "UserInputs",
    "parse_ip_address",
]
