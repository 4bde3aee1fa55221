"""Structured failure contexts attached to failure states.

A failure context is built exactly once, by the command handler driving a
workflow, at the moment one of the workflow's steps fails. The lifecycle
state machine only stores the context it is given.

Examples
--------
>>> import datetime as dt
>>> clock = FixedClock(dt.datetime(2025, 1, 1, 12, 0, 5, tzinfo=dt.UTC))
>>> base = build_base_failure_context(
...     clock,
...     started_at=dt.datetime(2025, 1, 1, 12, 0, 0, tzinfo=dt.UTC),
...     error_summary="cloud-init timed out",
...     trace_id_factory=lambda: TraceId("00000000-0000-4000-8000-000000000000"),
... )
>>> base.execution_duration
datetime.timedelta(seconds=5)
"""

from __future__ import annotations

import dataclasses
import datetime as dt
import uuid
from collections import abc as cabc
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import ClassVar, Protocol


class ErrorKind(StrEnum):
    """Classification of a workflow failure, used for reporting and help text."""

    CONFIGURATION = "Configuration"
    COMMAND_EXECUTION = "CommandExecution"
    NETWORK_CONNECTIVITY = "NetworkConnectivity"
    STATE_PERSISTENCE = "StatePersistence"
    TEMPLATE_RENDERING = "TemplateRendering"
    INFRASTRUCTURE_OPERATION = "InfrastructureOperation"
    CONFIGURATION_TIMEOUT = "ConfigurationTimeout"
    FILE_SYSTEM = "FileSystem"

    @property
    def help_text(self) -> str:
        return _ERROR_KIND_HELP[self]


_ERROR_KIND_HELP = {
    ErrorKind.CONFIGURATION: "Check the environment configuration file.",
    ErrorKind.COMMAND_EXECUTION: "Check that required tools are installed and on PATH.",
    ErrorKind.NETWORK_CONNECTIVITY: "Check that the instance is reachable over SSH.",
    ErrorKind.STATE_PERSISTENCE: "Check permissions of the data directory.",
    ErrorKind.TEMPLATE_RENDERING: "Check the templates in the environment data directory.",
    ErrorKind.INFRASTRUCTURE_OPERATION: "Inspect the OpenTofu output in the trace file.",
    ErrorKind.CONFIGURATION_TIMEOUT: "The instance did not become ready in time; retry later.",
    ErrorKind.FILE_SYSTEM: "Check free disk space and directory permissions.",
}


class TraceId(str):
    """Correlation identifier of one workflow execution attempt."""

    __slots__ = ()

    @classmethod
    def new(cls) -> TraceId:
        return cls(str(uuid.uuid4()))


class Clock(Protocol):
    """Source of the current time, injected to keep handlers deterministic."""

    def now(self) -> dt.datetime: ...


class SystemClock:
    """Clock reading the system time in UTC."""

    def now(self) -> dt.datetime:
        return dt.datetime.now(dt.UTC)


@dataclass(slots=True)
class FixedClock:
    """Clock returning a settable instant.

    Examples
    --------
    >>> clock = FixedClock(dt.datetime(2025, 1, 1, tzinfo=dt.UTC))
    >>> clock.advance(dt.timedelta(seconds=3)).second
    3
    """

    current: dt.datetime

    def now(self) -> dt.datetime:
        return self.current

    def advance(self, delta: dt.timedelta) -> dt.datetime:
        self.current = self.current + delta
        return self.current


@dataclass(frozen=True, slots=True)
class BaseFailureContext:
    """Timing and correlation data shared by every workflow failure.

    Attributes
    ----------
    error_summary
        Human-readable description of the failure.
    failed_at
        When the failure was captured.
    execution_started_at
        When the workflow started executing.
    execution_duration
        Time between start and failure.
    trace_id
        Correlation identifier of the attempt.
    trace_file_path
        Detailed trace log, when one was written.
    """

    error_summary: str
    failed_at: dt.datetime
    execution_started_at: dt.datetime
    execution_duration: dt.timedelta
    trace_id: TraceId
    trace_file_path: Path | None = None

    def with_trace_file(self, path: Path) -> BaseFailureContext:
        return dataclasses.replace(self, trace_file_path=path)


def build_base_failure_context(
    clock: Clock,
    started_at: dt.datetime,
    error_summary: str,
    trace_id_factory: cabc.Callable[[], TraceId] = TraceId.new,
) -> BaseFailureContext:
    """Capture the timing and correlation part of a failure context.

    Parameters
    ----------
    clock
        Clock providing the failure timestamp.
    started_at
        When the workflow started executing.
    error_summary
        Human-readable description of the failure.
    trace_id_factory
        Generator for the attempt's correlation identifier.

    Returns
    -------
    BaseFailureContext
        Context without a trace file; attach one with
        :meth:`BaseFailureContext.with_trace_file`.
    """

    failed_at = clock.now()
    return BaseFailureContext(
        error_summary=error_summary,
        failed_at=failed_at,
        execution_started_at=started_at,
        execution_duration=max(failed_at - started_at, dt.timedelta(0)),
        trace_id=trace_id_factory(),
    )


class _WorkflowStep(StrEnum):
    """Step enum whose members know how to describe themselves."""

    @property
    def description(self) -> str:
        return _STEP_DESCRIPTIONS.get(self.value, self.value)


class ProvisionStep(_WorkflowStep):
    RENDER_OPENTOFU_TEMPLATES = "RenderOpenTofuTemplates"
    OPENTOFU_INIT = "OpenTofuInit"
    OPENTOFU_VALIDATE = "OpenTofuValidate"
    OPENTOFU_PLAN = "OpenTofuPlan"
    OPENTOFU_APPLY = "OpenTofuApply"
    GET_INSTANCE_INFO = "GetInstanceInfo"
    RENDER_ANSIBLE_TEMPLATES = "RenderAnsibleTemplates"
    WAIT_SSH_CONNECTIVITY = "WaitSshConnectivity"
    CLOUD_INIT_WAIT = "CloudInitWait"


class ConfigureStep(_WorkflowStep):
    INSTALL_DOCKER = "InstallDocker"
    INSTALL_DOCKER_COMPOSE = "InstallDockerCompose"
    CONFIGURE_SECURITY_UPDATES = "ConfigureSecurityUpdates"
    CONFIGURE_FIREWALL = "ConfigureFirewall"


class ReleaseStep(_WorkflowStep):
    CREATE_TRACKER_STORAGE = "CreateTrackerStorage"
    INIT_TRACKER_DATABASE = "InitTrackerDatabase"
    RENDER_TRACKER_TEMPLATES = "RenderTrackerTemplates"
    DEPLOY_TRACKER_CONFIG_TO_REMOTE = "DeployTrackerConfigToRemote"
    CREATE_PROMETHEUS_STORAGE = "CreatePrometheusStorage"
    RENDER_PROMETHEUS_TEMPLATES = "RenderPrometheusTemplates"
    DEPLOY_PROMETHEUS_CONFIG_TO_REMOTE = "DeployPrometheusConfigToRemote"
    RENDER_DOCKER_COMPOSE_TEMPLATES = "RenderDockerComposeTemplates"
    DEPLOY_COMPOSE_FILES_TO_REMOTE = "DeployComposeFilesToRemote"


class RunStep(_WorkflowStep):
    START_SERVICES = "StartServices"
    VERIFY_SERVICES = "VerifyServices"


class DestroyStep(_WorkflowStep):
    LOAD_ENVIRONMENT = "LoadEnvironment"
    DESTROY_INFRASTRUCTURE = "DestroyInfrastructure"
    CLEANUP_STATE_FILES = "CleanupStateFiles"


_STEP_DESCRIPTIONS = {
    "RenderOpenTofuTemplates": "Rendering OpenTofu templates",
    "OpenTofuInit": "Initializing OpenTofu",
    "OpenTofuValidate": "Validating OpenTofu configuration",
    "OpenTofuPlan": "Planning infrastructure changes",
    "OpenTofuApply": "Applying infrastructure changes",
    "GetInstanceInfo": "Retrieving instance information",
    "RenderAnsibleTemplates": "Rendering Ansible templates",
    "WaitSshConnectivity": "Waiting for SSH connectivity",
    "CloudInitWait": "Waiting for cloud-init completion",
    "InstallDocker": "Installing Docker",
    "InstallDockerCompose": "Installing Docker Compose",
    "ConfigureSecurityUpdates": "Configuring automatic security updates",
    "ConfigureFirewall": "Configuring firewall",
    "CreateTrackerStorage": "Creating tracker storage directories",
    "InitTrackerDatabase": "Initializing tracker database",
    "RenderTrackerTemplates": "Rendering tracker configuration",
    "DeployTrackerConfigToRemote": "Deploying tracker configuration",
    "CreatePrometheusStorage": "Creating Prometheus storage directories",
    "RenderPrometheusTemplates": "Rendering Prometheus configuration",
    "DeployPrometheusConfigToRemote": "Deploying Prometheus configuration",
    "RenderDockerComposeTemplates": "Rendering Docker Compose files",
    "DeployComposeFilesToRemote": "Deploying Docker Compose files",
    "StartServices": "Starting services",
    "VerifyServices": "Verifying running services",
    "LoadEnvironment": "Loading environment",
    "DestroyInfrastructure": "Destroying infrastructure",
    "CleanupStateFiles": "Cleaning up state files",
}


@dataclass(frozen=True, slots=True)
class _WorkflowFailureContext:
    """Failure context of one workflow: the failed step plus its classification."""

    workflow: ClassVar[str]
    step_type: ClassVar[type[_WorkflowStep]]

    failed_step: _WorkflowStep
    error_kind: ErrorKind
    base: BaseFailureContext

    def __post_init__(self) -> None:
        if not isinstance(self.failed_step, self.step_type):
            msg = (
                f"{type(self).__name__} requires a {self.step_type.__name__}, "
                f"got {self.failed_step!r}"
            )
            raise TypeError(msg)
        if not isinstance(self.error_kind, ErrorKind):
            msg = f"error_kind must be an ErrorKind, got {self.error_kind!r}"
            raise TypeError(msg)

    @property
    def error_summary(self) -> str:
        return self.base.error_summary

    @property
    def trace_id(self) -> TraceId:
        return self.base.trace_id

    @property
    def trace_file_path(self) -> Path | None:
        return self.base.trace_file_path


@dataclass(frozen=True, slots=True)
class ProvisionFailureContext(_WorkflowFailureContext):
    workflow: ClassVar[str] = "provision"
    step_type: ClassVar[type[_WorkflowStep]] = ProvisionStep


@dataclass(frozen=True, slots=True)
class ConfigureFailureContext(_WorkflowFailureContext):
    workflow: ClassVar[str] = "configure"
    step_type: ClassVar[type[_WorkflowStep]] = ConfigureStep


@dataclass(frozen=True, slots=True)
class ReleaseFailureContext(_WorkflowFailureContext):
    workflow: ClassVar[str] = "release"
    step_type: ClassVar[type[_WorkflowStep]] = ReleaseStep


@dataclass(frozen=True, slots=True)
class RunFailureContext(_WorkflowFailureContext):
    workflow: ClassVar[str] = "run"
    step_type: ClassVar[type[_WorkflowStep]] = RunStep


@dataclass(frozen=True, slots=True)
class DestroyFailureContext(_WorkflowFailureContext):
    workflow: ClassVar[str] = "destroy"
    step_type: ClassVar[type[_WorkflowStep]] = DestroyStep


WorkflowFailureContext = (
    ProvisionFailureContext
    | ConfigureFailureContext
    | ReleaseFailureContext
    | RunFailureContext
    | DestroyFailureContext
)

WorkflowStep = ProvisionStep | ConfigureStep | ReleaseStep | RunStep | DestroyStep


__all__ = [
    "BaseFailureContext",
    "Clock",
    "ConfigureFailureContext",
    "ConfigureStep",
    "DestroyFailureContext",
    "DestroyStep",
    "ErrorKind",
    "FixedClock",
    "ProvisionFailureContext",
    "ProvisionStep",
    "ReleaseFailureContext",
    "ReleaseStep",
    "RunFailureContext",
    "RunStep",
    "SystemClock",
    "TraceId",
    "WorkflowFailureContext",
    "WorkflowStep",
    "build_base_failure_context",
]
