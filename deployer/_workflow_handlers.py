"""Command handlers driving the forward lifecycle workflows.

Each handler restores the environment to the one state it accepts, enters
the matching in-progress state, and ends in either the success state or the
workflow's failure state. Both outcomes are persisted before returning or
raising.
"""

from __future__ import annotations

import logging
from collections import abc as cabc

from deployer._collaborators import (
    ApplicationReleaser,
    InfrastructureProvisioner,
    RemoteHostConfigurator,
    ServiceRunner,
)
from deployer._environment import Environment
from deployer._errors import ConfigurationError
from deployer._failure_context import (
    Clock,
    ConfigureFailureContext,
    ConfigureStep,
    ErrorKind,
    ProvisionFailureContext,
    ProvisionStep,
    ReleaseFailureContext,
    ReleaseStep,
    RunFailureContext,
    RunStep,
    TraceId,
)
from deployer._handlers_common import WorkflowHandler
from deployer._models import ProvisionMethod, parse_ip_address
from deployer._names import EnvironmentName
from deployer._repository import EnvironmentRepository
from deployer._states import Configured, Provisioned, Released, Running

logger = logging.getLogger(__name__)


class ProvisionHandler(WorkflowHandler):
    """Create the instance of a ``created`` environment with OpenTofu."""

    workflow = "provision"

    def __init__(
        self,
        repository: EnvironmentRepository,
        provisioner: InfrastructureProvisioner,
        configurator: RemoteHostConfigurator,
        clock: Clock | None = None,
        trace_id_factory: cabc.Callable[[], TraceId] = TraceId.new,
    ) -> None:
        super().__init__(repository, clock, trace_id_factory)
        self.provisioner = provisioner
        self.configurator = configurator

    def execute(self, name: EnvironmentName) -> Environment[Provisioned]:
        created = self.load(name).try_into_created()
        provisioning = created.start_provisioning()
        self.repository.save(provisioning)

        tracker = self.new_tracker()
        context = provisioning.context
        try:
            tracker.run(
                ProvisionStep.RENDER_OPENTOFU_TEMPLATES,
                ErrorKind.TEMPLATE_RENDERING,
                self.provisioner.render_templates,
                context,
            )
            tracker.run(
                ProvisionStep.OPENTOFU_INIT,
                ErrorKind.INFRASTRUCTURE_OPERATION,
                self.provisioner.init,
                context,
            )
            tracker.run(
                ProvisionStep.OPENTOFU_VALIDATE,
                ErrorKind.INFRASTRUCTURE_OPERATION,
                self.provisioner.validate,
                context,
            )
            tracker.run(
                ProvisionStep.OPENTOFU_PLAN,
                ErrorKind.INFRASTRUCTURE_OPERATION,
                self.provisioner.plan,
                context,
            )
            tracker.run(
                ProvisionStep.OPENTOFU_APPLY,
                ErrorKind.INFRASTRUCTURE_OPERATION,
                self.provisioner.apply,
                context,
            )
            raw_ip = tracker.run(
                ProvisionStep.GET_INSTANCE_INFO,
                ErrorKind.INFRASTRUCTURE_OPERATION,
                self.provisioner.instance_ip,
                context,
            )
            instance_ip = parse_ip_address(raw_ip)
            # Later steps need the address before the environment records it.
            with_ip = context.with_runtime_outputs(instance_ip, ProvisionMethod.PROVISIONED)
            tracker.run(
                ProvisionStep.RENDER_ANSIBLE_TEMPLATES,
                ErrorKind.TEMPLATE_RENDERING,
                self.configurator.render_inventory,
                with_ip,
            )
            tracker.run(
                ProvisionStep.WAIT_SSH_CONNECTIVITY,
                ErrorKind.NETWORK_CONNECTIVITY,
                self.configurator.wait_for_ssh,
                with_ip,
            )
            tracker.run(
                ProvisionStep.CLOUD_INIT_WAIT,
                ErrorKind.CONFIGURATION_TIMEOUT,
                self.configurator.wait_for_cloud_init,
                with_ip,
            )
        except (Exception, KeyboardInterrupt) as exc:
            failure = self.capture_failure(
                ProvisionFailureContext, provisioning, tracker, exc
            )
            self.fail(provisioning.provision_failed(failure), failure, exc)

        provisioned = provisioning.provisioned(instance_ip)
        self.repository.save(provisioned)
        logger.info("Environment %s provisioned at %s", name, instance_ip)
        return provisioned


class RegisterHandler(WorkflowHandler):
    """Adopt an existing instance for a ``created`` environment.

    Registration only succeeds when the instance is reachable over SSH. On
    failure the environment stays ``created`` and the error propagates.
    """

    workflow = "register"

    def __init__(
        self,
        repository: EnvironmentRepository,
        configurator: RemoteHostConfigurator,
        clock: Clock | None = None,
        trace_id_factory: cabc.Callable[[], TraceId] = TraceId.new,
    ) -> None:
        super().__init__(repository, clock, trace_id_factory)
        self.configurator = configurator

    def execute(self, name: EnvironmentName, instance_ip: str) -> Environment[Provisioned]:
        created = self.load(name).try_into_created()
        try:
            address = parse_ip_address(instance_ip)
        except ValueError as exc:
            msg = f"Invalid instance IP address {instance_ip!r}"
            raise ConfigurationError(msg) from exc
        candidate = created.context.with_runtime_outputs(
            address, ProvisionMethod.REGISTERED
        )
        self.configurator.render_inventory(candidate)
        self.configurator.wait_for_ssh(candidate)

        provisioned = created.register(address)
        self.repository.save(provisioned)
        logger.info("Environment %s registered with instance %s", name, address)
        return provisioned


class ConfigureHandler(WorkflowHandler):
    """Install the container runtime and harden a ``provisioned`` instance."""

    workflow = "configure"

    def __init__(
        self,
        repository: EnvironmentRepository,
        configurator: RemoteHostConfigurator,
        clock: Clock | None = None,
        trace_id_factory: cabc.Callable[[], TraceId] = TraceId.new,
    ) -> None:
        super().__init__(repository, clock, trace_id_factory)
        self.configurator = configurator

    def execute(self, name: EnvironmentName) -> Environment[Configured]:
        provisioned = self.load(name).try_into_provisioned()
        configuring = provisioned.start_configuring()
        self.repository.save(configuring)

        tracker = self.new_tracker()
        context = configuring.context
        steps = (
            (ConfigureStep.INSTALL_DOCKER, self.configurator.install_docker),
            (ConfigureStep.INSTALL_DOCKER_COMPOSE, self.configurator.install_docker_compose),
            (
                ConfigureStep.CONFIGURE_SECURITY_UPDATES,
                self.configurator.configure_security_updates,
            ),
            (ConfigureStep.CONFIGURE_FIREWALL, self.configurator.configure_firewall),
        )
        try:
            for step, action in steps:
                tracker.run(step, ErrorKind.COMMAND_EXECUTION, action, context)
        except (Exception, KeyboardInterrupt) as exc:
            failure = self.capture_failure(
                ConfigureFailureContext, configuring, tracker, exc
            )
            self.fail(configuring.configure_failed(failure), failure, exc)

        configured = configuring.configured()
        self.repository.save(configured)
        return configured


class ReleaseHandler(WorkflowHandler):
    """Ship the tracker stack to a ``configured`` instance.

    Prometheus steps are skipped when the tracker configuration has no
    Prometheus section.
    """

    workflow = "release"

    def __init__(
        self,
        repository: EnvironmentRepository,
        releaser: ApplicationReleaser,
        clock: Clock | None = None,
        trace_id_factory: cabc.Callable[[], TraceId] = TraceId.new,
    ) -> None:
        super().__init__(repository, clock, trace_id_factory)
        self.releaser = releaser

    def _steps(
        self, with_prometheus: bool
    ) -> list[tuple[ReleaseStep, ErrorKind, cabc.Callable[..., None]]]:
        releaser = self.releaser
        steps = [
            (
                ReleaseStep.CREATE_TRACKER_STORAGE,
                ErrorKind.COMMAND_EXECUTION,
                releaser.create_tracker_storage,
            ),
            (
                ReleaseStep.INIT_TRACKER_DATABASE,
                ErrorKind.COMMAND_EXECUTION,
                releaser.init_tracker_database,
            ),
            (
                ReleaseStep.RENDER_TRACKER_TEMPLATES,
                ErrorKind.TEMPLATE_RENDERING,
                releaser.render_tracker_templates,
            ),
            (
                ReleaseStep.DEPLOY_TRACKER_CONFIG_TO_REMOTE,
                ErrorKind.COMMAND_EXECUTION,
                releaser.deploy_tracker_config_to_remote,
            ),
        ]
        if with_prometheus:
            steps += [
                (
                    ReleaseStep.CREATE_PROMETHEUS_STORAGE,
                    ErrorKind.COMMAND_EXECUTION,
                    releaser.create_prometheus_storage,
                ),
                (
                    ReleaseStep.RENDER_PROMETHEUS_TEMPLATES,
                    ErrorKind.TEMPLATE_RENDERING,
                    releaser.render_prometheus_templates,
                ),
                (
                    ReleaseStep.DEPLOY_PROMETHEUS_CONFIG_TO_REMOTE,
                    ErrorKind.COMMAND_EXECUTION,
                    releaser.deploy_prometheus_config_to_remote,
                ),
            ]
        steps += [
            (
                ReleaseStep.RENDER_DOCKER_COMPOSE_TEMPLATES,
                ErrorKind.TEMPLATE_RENDERING,
                releaser.render_docker_compose_templates,
            ),
            (
                ReleaseStep.DEPLOY_COMPOSE_FILES_TO_REMOTE,
                ErrorKind.COMMAND_EXECUTION,
                releaser.deploy_compose_files_to_remote,
            ),
        ]
        return steps

    def execute(self, name: EnvironmentName) -> Environment[Released]:
        configured = self.load(name).try_into_configured()
        releasing = configured.start_releasing()
        self.repository.save(releasing)

        tracker = self.new_tracker()
        context = releasing.context
        try:
            for step, error_kind, action in self._steps(
                context.user_inputs.tracker.prometheus is not None
            ):
                tracker.run(step, error_kind, action, context)
        except (Exception, KeyboardInterrupt) as exc:
            failure = self.capture_failure(ReleaseFailureContext, releasing, tracker, exc)
            self.fail(releasing.release_failed(failure), failure, exc)

        released = releasing.released()
        self.repository.save(released)
        return released


class RunHandler(WorkflowHandler):
    """Start the services of a ``released`` environment.

    The environment enters ``running`` before the services start; a failure
    while starting or verifying them moves it to ``run_failed``.
    """

    workflow = "run"

    def __init__(
        self,
        repository: EnvironmentRepository,
        runner: ServiceRunner,
        clock: Clock | None = None,
        trace_id_factory: cabc.Callable[[], TraceId] = TraceId.new,
    ) -> None:
        super().__init__(repository, clock, trace_id_factory)
        self.runner = runner

    def execute(self, name: EnvironmentName) -> Environment[Running]:
        released = self.load(name).try_into_released()
        running = released.start_running()
        self.repository.save(running)

        tracker = self.new_tracker()
        try:
            tracker.run(
                RunStep.START_SERVICES,
                ErrorKind.COMMAND_EXECUTION,
                self.runner.start_services,
                running.context,
            )
            tracker.run(
                RunStep.VERIFY_SERVICES,
                ErrorKind.NETWORK_CONNECTIVITY,
                self.runner.verify_services,
                running.context,
            )
        except (Exception, KeyboardInterrupt) as exc:
            failure = self.capture_failure(RunFailureContext, running, tracker, exc)
            self.fail(running.run_failed(failure), failure, exc)

        return running


__all__ = [
    "ConfigureHandler",
    "ProvisionHandler",
    "RegisterHandler",
    "ReleaseHandler",
    "RunHandler",
]
