"""Command handlers that create, inspect and remove environments.

None of these handlers drive a workflow, so they never build failure
contexts; they only read and write records.
"""

from __future__ import annotations

import datetime as dt
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path

from deployer._environment import AnyEnvironmentState, Environment
from deployer._environment_config import CreateEnvironmentParams
from deployer._errors import (
    EnvironmentAlreadyExistsError,
    EnvironmentNotFoundError,
    PurgeRefusedError,
    RepositoryError,
)
from deployer._failure_context import Clock, SystemClock
from deployer._models import IpAddress
from deployer._names import EnvironmentName
from deployer._repository import (
    EnvironmentRepository,
    ListableEnvironmentRepository,
    TypedEnvironmentRepository,
)
from deployer._states import Created, Destroyed, Running

logger = logging.getLogger(__name__)

PURGEABLE_STATES = (Created, Destroyed)


def _load(repository: EnvironmentRepository, name: EnvironmentName) -> AnyEnvironmentState:
    envelope = repository.load(name)
    if envelope is None:
        raise EnvironmentNotFoundError(name.value)
    return envelope


class CreateEnvironmentHandler:
    """Persist a new environment in the ``created`` state.

    Parameters
    ----------
    repository
        Where the new record is saved.
    working_dir
        Root of the ``build`` and ``data`` trees.
    clock
        Source of the creation timestamp.
    """

    def __init__(
        self,
        repository: EnvironmentRepository,
        working_dir: Path,
        clock: Clock | None = None,
    ) -> None:
        self.repository = TypedEnvironmentRepository(repository)
        self.working_dir = working_dir
        self.clock = clock or SystemClock()

    def execute(self, params: CreateEnvironmentParams) -> Environment[Created]:
        if self.repository.exists(params.name):
            raise EnvironmentAlreadyExistsError(params.name.value)
        environment = Environment.create(
            name=params.name,
            provider_config=params.provider_config,
            ssh_credentials=params.ssh_credentials,
            working_dir=self.working_dir,
            created_at=self.clock.now(),
            instance_name=params.instance_name,
            ssh_port=params.ssh_port,
            tracker=params.tracker,
        )
        self.repository.save(environment)
        logger.info("Environment %s created", params.name)
        return environment


class PurgeHandler:
    """Forget an environment: delete its record and local directories.

    Purging does not touch remote infrastructure, so environments that may
    still own an instance are refused unless ``force`` is set.
    """

    def __init__(self, repository: EnvironmentRepository) -> None:
        self.repository = repository

    def execute(self, name: EnvironmentName, *, force: bool = False) -> None:
        envelope = _load(self.repository, name)
        if not force and not isinstance(envelope.state, PURGEABLE_STATES):
            msg = (
                f"Environment {name.value!r} is in state {envelope.state_name!r}; "
                "destroy it first or purge with force"
            )
            raise PurgeRefusedError(msg)
        self.repository.delete(name)
        for directory in (envelope.data_dir, envelope.build_dir):
            if directory.exists():
                shutil.rmtree(directory)
                logger.info("Removed %s", directory)
        logger.info("Environment %s purged", name)


@dataclass(frozen=True, slots=True)
class EnvironmentInfo:
    """Read-only view of an environment for display."""

    name: str
    state: str
    provider: str
    created_at: dt.datetime
    instance_name: str
    instance_ip: IpAddress | None = None
    ssh_username: str | None = None
    ssh_port: int | None = None
    error_details: str | None = None
    failed_step: str | None = None
    error_kind: str | None = None
    trace_file_path: Path | None = None
    service_urls: tuple[str, ...] = ()

    @property
    def ssh_command(self) -> str | None:
        if self.instance_ip is None:
            return None
        port = "" if self.ssh_port == 22 else f" -p {self.ssh_port}"
        return f"ssh {self.ssh_username}@{self.instance_ip}{port}"


def service_urls(envelope: AnyEnvironmentState) -> tuple[str, ...]:
    """Return the tracker endpoints of a running environment, if any."""

    ip = envelope.instance_ip
    if ip is None or not isinstance(envelope.state, Running):
        return ()
    host = f"[{ip}]" if ip.version == 6 else str(ip)
    tracker = envelope.tracker
    urls = [f"udp://{host}:{port}/announce" for port in tracker.udp_tracker_ports]
    urls += [f"http://{host}:{port}/announce" for port in tracker.http_tracker_ports]
    urls.append(f"http://{host}:{tracker.http_api_port}/api/health_check")
    return tuple(urls)


def environment_info(envelope: AnyEnvironmentState) -> EnvironmentInfo:
    failure = envelope.failure_context
    ip = envelope.instance_ip
    return EnvironmentInfo(
        name=envelope.name.value,
        state=envelope.state_name,
        provider=envelope.provider_name,
        created_at=envelope.created_at,
        instance_name=envelope.instance_name.value,
        instance_ip=ip,
        ssh_username=envelope.ssh_credentials.username.value if ip else None,
        ssh_port=envelope.ssh_port if ip else None,
        error_details=envelope.error_details,
        failed_step=str(failure.failed_step) if failure else None,
        error_kind=str(failure.error_kind) if failure else None,
        trace_file_path=failure.trace_file_path if failure else None,
        service_urls=service_urls(envelope),
    )


class ShowHandler:
    """Describe one environment, whatever its state."""

    def __init__(self, repository: EnvironmentRepository) -> None:
        self.repository = repository

    def execute(self, name: EnvironmentName) -> EnvironmentInfo:
        return environment_info(_load(self.repository, name))


@dataclass(frozen=True, slots=True)
class EnvironmentSummary:
    name: str
    state: str
    provider: str
    created_at: dt.datetime


@dataclass(frozen=True, slots=True)
class EnvironmentListing:
    """Summaries of readable records plus the records that failed to load."""

    environments: tuple[EnvironmentSummary, ...]
    failures: tuple[tuple[str, str], ...] = ()


class ListHandler:
    """Summarize every stored environment.

    A record that cannot be loaded is reported in
    :attr:`EnvironmentListing.failures` instead of aborting the listing.
    """

    def __init__(self, repository: ListableEnvironmentRepository) -> None:
        self.repository = repository

    def execute(self) -> EnvironmentListing:
        summaries: list[EnvironmentSummary] = []
        failures: list[tuple[str, str]] = []
        for name in self.repository.list_names():
            try:
                envelope = self.repository.load(name)
            except RepositoryError as exc:
                logger.warning("Could not load environment %s: %s", name, exc)
                failures.append((name.value, str(exc)))
                continue
            if envelope is None:
                continue
            summaries.append(
                EnvironmentSummary(
                    name=envelope.name.value,
                    state=envelope.state_name,
                    provider=envelope.provider_name,
                    created_at=envelope.created_at,
                )
            )
        return EnvironmentListing(tuple(summaries), tuple(failures))


__all__ = [
    "CreateEnvironmentHandler",
    "EnvironmentInfo",
    "EnvironmentListing",
    "EnvironmentSummary",
    "ListHandler",
    "PurgeHandler",
    "ShowHandler",
    "environment_info",
    "service_urls",
]
