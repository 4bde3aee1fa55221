"""Unit tests for the forward workflow command handlers."""

from __future__ import annotations

import datetime as dt
from collections import abc as cabc

import pytest

from deployer._environment import AnyEnvironmentState, Environment
from deployer._errors import (
    ConfigurationError,
    EnvironmentNotFoundError,
    RemoteCommandError,
    StateTypeError,
    TemplateError,
    TofuCommandError,
    WorkflowFailedError,
)
from deployer._failure_context import (
    ConfigureStep,
    ErrorKind,
    FixedClock,
    ProvisionStep,
    ReleaseStep,
    RunStep,
    TraceId,
)
from deployer._models import EnvironmentContext, ProvisionMethod, TrackerConfig
from deployer._names import EnvironmentName
from deployer._repository import InMemoryEnvironmentRepository
from deployer._states import Created
from deployer._workflow_handlers import (
    ConfigureHandler,
    ProvisionHandler,
    RegisterHandler,
    ReleaseHandler,
    RunHandler,
)

EnvironmentFactory = cabc.Callable[..., Environment[Created]]
NAME = EnvironmentName("e2e-full")


def _trace_id() -> TraceId:
    return TraceId("00000000-0000-4000-8000-00000000abcd")


class FakeCollaborator:
    """Record every call; raise ``error`` from the method named ``fail_on``."""

    def __init__(
        self,
        fail_on: str | None = None,
        error: BaseException | None = None,
        instance_ip: str = "10.140.190.14",
    ) -> None:
        self.fail_on = fail_on
        self.error = error or RuntimeError(f"{fail_on} exploded")
        self.ip = instance_ip
        self.calls: list[str] = []
        self.contexts: list[EnvironmentContext] = []

    def _record(self, method: str, context: EnvironmentContext) -> None:
        self.calls.append(method)
        self.contexts.append(context)
        if method == self.fail_on:
            raise self.error

    def instance_ip(self, context: EnvironmentContext) -> str:
        self._record("instance_ip", context)
        return self.ip

    def __getattr__(self, method: str) -> cabc.Callable[[EnvironmentContext], None]:
        if method.startswith("_"):
            raise AttributeError(method)
        return lambda context: self._record(method, context)


def _seed(
    repository: InMemoryEnvironmentRepository, environment: Environment
) -> None:
    repository.save(environment.to_any())


def _stored(repository: InMemoryEnvironmentRepository) -> AnyEnvironmentState:
    envelope = repository.load(NAME)
    assert envelope is not None
    return envelope


def test_provision_success_persists_every_state(
    repository: InMemoryEnvironmentRepository,
    clock: FixedClock,
    make_environment: EnvironmentFactory,
) -> None:
    _seed(repository, make_environment())
    provisioner = FakeCollaborator()
    configurator = FakeCollaborator()

    provisioned = ProvisionHandler(repository, provisioner, configurator, clock).execute(NAME)

    assert provisioned.state_name == "provisioned"
    assert str(provisioned.instance_ip) == "10.140.190.14"
    assert [e.state_name for e in repository.saved] == ["created", "provisioning", "provisioned"]
    assert provisioner.calls == ["render_templates", "init", "validate", "plan", "apply", "instance_ip"]
    assert configurator.calls == ["render_inventory", "wait_for_ssh", "wait_for_cloud_init"]
    assert all(
        ctx.runtime_outputs.instance_ip is not None for ctx in configurator.contexts
    ), "Ansible steps need the new instance address"
    assert _stored(repository).context.runtime_outputs.provision_method is ProvisionMethod.PROVISIONED


def test_provision_failure_records_step_and_trace(
    repository: InMemoryEnvironmentRepository,
    clock: FixedClock,
    make_environment: EnvironmentFactory,
) -> None:
    environment = make_environment()
    traces_dir = environment.traces_dir
    _seed(repository, environment)
    provisioner = FakeCollaborator("apply", TofuCommandError("tofu apply failed: quota"))

    handler = ProvisionHandler(
        repository, provisioner, FakeCollaborator(), clock, trace_id_factory=_trace_id
    )
    with pytest.raises(WorkflowFailedError) as excinfo:
        handler.execute(NAME)

    failure = _stored(repository).failure_context
    assert _stored(repository).state_name == "provision_failed"
    assert failure.failed_step is ProvisionStep.OPENTOFU_APPLY
    assert failure.error_kind is ErrorKind.INFRASTRUCTURE_OPERATION
    assert failure.error_summary == "tofu apply failed: quota"
    assert failure.trace_id == "00000000-0000-4000-8000-00000000abcd"
    assert failure.trace_file_path is not None
    assert failure.trace_file_path.parent == traces_dir
    assert "OpenTofuApply" in failure.trace_file_path.read_text(encoding="utf-8")
    assert excinfo.value.step == "OpenTofuApply"
    assert excinfo.value.trace_file_path == failure.trace_file_path
    assert isinstance(excinfo.value.__cause__, TofuCommandError)


def test_provision_failure_classifies_by_error_type(
    repository: InMemoryEnvironmentRepository,
    clock: FixedClock,
    make_environment: EnvironmentFactory,
) -> None:
    _seed(repository, make_environment())
    configurator = FakeCollaborator("render_inventory", TemplateError("missing inventory"))
    with pytest.raises(WorkflowFailedError):
        ProvisionHandler(repository, FakeCollaborator(), configurator, clock).execute(NAME)
    failure = _stored(repository).failure_context
    assert failure.failed_step is ProvisionStep.RENDER_ANSIBLE_TEMPLATES
    assert failure.error_kind is ErrorKind.TEMPLATE_RENDERING


def test_provision_requires_created_state(
    repository: InMemoryEnvironmentRepository,
    clock: FixedClock,
    make_environment: EnvironmentFactory,
) -> None:
    _seed(repository, make_environment().register("10.0.0.1"))
    provisioner = FakeCollaborator()
    with pytest.raises(StateTypeError) as excinfo:
        ProvisionHandler(repository, provisioner, FakeCollaborator(), clock).execute(NAME)
    assert (excinfo.value.expected, excinfo.value.actual) == ("created", "provisioned")
    assert provisioner.calls == []


def test_unknown_environment(repository: InMemoryEnvironmentRepository, clock: FixedClock) -> None:
    with pytest.raises(EnvironmentNotFoundError, match="not found"):
        ConfigureHandler(repository, FakeCollaborator(), clock).execute(NAME)


def test_interrupt_is_recorded_then_reraised(
    repository: InMemoryEnvironmentRepository,
    clock: FixedClock,
    make_environment: EnvironmentFactory,
) -> None:
    _seed(repository, make_environment())
    provisioner = FakeCollaborator("plan", KeyboardInterrupt())
    with pytest.raises(KeyboardInterrupt):
        ProvisionHandler(repository, provisioner, FakeCollaborator(), clock).execute(NAME)
    failure = _stored(repository).failure_context
    assert failure.failed_step is ProvisionStep.OPENTOFU_PLAN
    assert failure.error_kind is ErrorKind.COMMAND_EXECUTION
    assert failure.error_summary == "Interrupted by user"


def test_unwritable_traces_do_not_mask_failure(
    repository: InMemoryEnvironmentRepository,
    clock: FixedClock,
    make_environment: EnvironmentFactory,
) -> None:
    environment = make_environment()
    environment.data_dir.mkdir(parents=True)
    environment.traces_dir.write_text("not a directory", encoding="utf-8")
    _seed(repository, environment)

    with pytest.raises(WorkflowFailedError) as excinfo:
        ProvisionHandler(
            repository, FakeCollaborator("init"), FakeCollaborator(), clock
        ).execute(NAME)
    assert _stored(repository).state_name == "provision_failed"
    assert _stored(repository).failure_context.trace_file_path is None
    assert excinfo.value.trace_file_path is None


def test_register_adopts_reachable_instance(
    repository: InMemoryEnvironmentRepository,
    make_environment: EnvironmentFactory,
) -> None:
    _seed(repository, make_environment())
    configurator = FakeCollaborator()
    RegisterHandler(repository, configurator).execute(NAME, "192.168.1.50")

    stored = _stored(repository)
    assert stored.state_name == "provisioned"
    assert stored.context.runtime_outputs.provision_method is ProvisionMethod.REGISTERED
    assert configurator.calls == ["render_inventory", "wait_for_ssh"]


def test_register_failure_leaves_environment_created(
    repository: InMemoryEnvironmentRepository,
    make_environment: EnvironmentFactory,
) -> None:
    _seed(repository, make_environment())
    configurator = FakeCollaborator("wait_for_ssh", RemoteCommandError("unreachable"))
    with pytest.raises(RemoteCommandError):
        RegisterHandler(repository, configurator).execute(NAME, "192.168.1.50")
    assert _stored(repository).state_name == "created"
    assert len(repository.saved) == 1


def test_register_rejects_invalid_address(
    repository: InMemoryEnvironmentRepository,
    make_environment: EnvironmentFactory,
) -> None:
    _seed(repository, make_environment())
    with pytest.raises(ConfigurationError, match="Invalid instance IP"):
        RegisterHandler(repository, FakeCollaborator()).execute(NAME, "999.1.1.1")


def test_configure_success_and_failure(
    repository: InMemoryEnvironmentRepository,
    clock: FixedClock,
    make_environment: EnvironmentFactory,
) -> None:
    _seed(repository, make_environment().register("10.0.0.5"))
    configurator = FakeCollaborator("configure_firewall")
    with pytest.raises(WorkflowFailedError, match="ConfigureFirewall"):
        ConfigureHandler(repository, configurator, clock).execute(NAME)
    assert configurator.calls == [
        "install_docker",
        "install_docker_compose",
        "configure_security_updates",
        "configure_firewall",
    ]
    stored = _stored(repository)
    assert stored.state_name == "configure_failed"
    assert stored.failure_context.failed_step is ConfigureStep.CONFIGURE_FIREWALL
    assert stored.failure_context.error_kind is ErrorKind.COMMAND_EXECUTION


def _configured(make_environment: EnvironmentFactory, **kwargs: object) -> Environment:
    return make_environment(**kwargs).register("10.0.0.5").start_configuring().configured()


def test_release_runs_prometheus_steps_when_enabled(
    repository: InMemoryEnvironmentRepository,
    clock: FixedClock,
    make_environment: EnvironmentFactory,
) -> None:
    _seed(repository, _configured(make_environment))
    releaser = FakeCollaborator()
    released = ReleaseHandler(repository, releaser, clock).execute(NAME)
    assert released.state_name == "released"
    assert releaser.calls == [
        "create_tracker_storage",
        "init_tracker_database",
        "render_tracker_templates",
        "deploy_tracker_config_to_remote",
        "create_prometheus_storage",
        "render_prometheus_templates",
        "deploy_prometheus_config_to_remote",
        "render_docker_compose_templates",
        "deploy_compose_files_to_remote",
    ]


def test_release_skips_prometheus_when_disabled(
    repository: InMemoryEnvironmentRepository,
    clock: FixedClock,
    make_environment: EnvironmentFactory,
) -> None:
    _seed(repository, _configured(make_environment, tracker=TrackerConfig(prometheus=None)))
    releaser = FakeCollaborator()
    ReleaseHandler(repository, releaser, clock).execute(NAME)
    assert not any("prometheus" in call for call in releaser.calls)


def test_release_failure_state(
    repository: InMemoryEnvironmentRepository,
    clock: FixedClock,
    make_environment: EnvironmentFactory,
) -> None:
    _seed(repository, _configured(make_environment))
    releaser = FakeCollaborator("render_docker_compose_templates")
    with pytest.raises(WorkflowFailedError):
        ReleaseHandler(repository, releaser, clock).execute(NAME)
    failure = _stored(repository).failure_context
    assert _stored(repository).state_name == "release_failed"
    assert failure.failed_step is ReleaseStep.RENDER_DOCKER_COMPOSE_TEMPLATES
    assert failure.error_kind is ErrorKind.TEMPLATE_RENDERING


def test_run_enters_running_then_fails_on_verification(
    repository: InMemoryEnvironmentRepository,
    clock: FixedClock,
    make_environment: EnvironmentFactory,
) -> None:
    released = _configured(make_environment).start_releasing().released()
    _seed(repository, released)
    runner = FakeCollaborator("verify_services", RemoteCommandError("health check failed"))

    with pytest.raises(WorkflowFailedError):
        RunHandler(repository, runner, clock).execute(NAME)

    states = [envelope.state_name for envelope in repository.saved]
    assert states[-2:] == ["running", "run_failed"]
    failure = _stored(repository).failure_context
    assert failure.failed_step is RunStep.VERIFY_SERVICES
    assert failure.error_kind is ErrorKind.NETWORK_CONNECTIVITY


def test_run_success(
    repository: InMemoryEnvironmentRepository,
    clock: FixedClock,
    make_environment: EnvironmentFactory,
) -> None:
    _seed(repository, _configured(make_environment).start_releasing().released())
    running = RunHandler(repository, FakeCollaborator(), clock).execute(NAME)
    assert running.state_name == "running"
    assert _stored(repository).state_name == "running"


def test_failure_duration_uses_injected_clock(
    repository: InMemoryEnvironmentRepository,
    clock: FixedClock,
    make_environment: EnvironmentFactory,
) -> None:
    class SlowCollaborator(FakeCollaborator):
        def apply(self, context: EnvironmentContext) -> None:
            clock.advance(dt.timedelta(seconds=90))
            raise TofuCommandError("timed out")

    _seed(repository, make_environment())
    with pytest.raises(WorkflowFailedError):
        ProvisionHandler(repository, SlowCollaborator(), FakeCollaborator(), clock).execute(NAME)
    base = _stored(repository).failure_context.base
    assert base.execution_duration == dt.timedelta(seconds=90)
    assert base.failed_at == clock.now()
