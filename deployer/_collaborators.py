"""Interfaces of the external collaborators driven by command handlers.

Handlers only see these protocols. Every method receives the environment's
:class:`~deployer._models.EnvironmentContext`, so collaborators never need to
know which lifecycle state the environment is in. Any exception a method
raises is treated as the failure of the step that called it.
"""

from __future__ import annotations

from typing import Protocol

from deployer._models import EnvironmentContext


class InfrastructureProvisioner(Protocol):
    """Creates and destroys the instance backing an environment."""

    def render_templates(self, context: EnvironmentContext) -> None: ...

    def init(self, context: EnvironmentContext) -> None: ...

    def validate(self, context: EnvironmentContext) -> None: ...

    def plan(self, context: EnvironmentContext) -> None: ...

    def apply(self, context: EnvironmentContext) -> None: ...

    def instance_ip(self, context: EnvironmentContext) -> str: ...

    def destroy(self, context: EnvironmentContext) -> None: ...


class RemoteHostConfigurator(Protocol):
    """Prepares a reachable instance to host containers."""

    def render_inventory(self, context: EnvironmentContext) -> None: ...

    def wait_for_ssh(self, context: EnvironmentContext) -> None: ...

    def wait_for_cloud_init(self, context: EnvironmentContext) -> None: ...

    def install_docker(self, context: EnvironmentContext) -> None: ...

    def install_docker_compose(self, context: EnvironmentContext) -> None: ...

    def configure_security_updates(self, context: EnvironmentContext) -> None: ...

    def configure_firewall(self, context: EnvironmentContext) -> None: ...


class ApplicationReleaser(Protocol):
    """Ships tracker, metrics, and compose artefacts to the instance."""

    def create_tracker_storage(self, context: EnvironmentContext) -> None: ...

    def init_tracker_database(self, context: EnvironmentContext) -> None: ...

    def render_tracker_templates(self, context: EnvironmentContext) -> None: ...

    def deploy_tracker_config_to_remote(self, context: EnvironmentContext) -> None: ...

    def create_prometheus_storage(self, context: EnvironmentContext) -> None: ...

    def render_prometheus_templates(self, context: EnvironmentContext) -> None: ...

    def deploy_prometheus_config_to_remote(
        self, context: EnvironmentContext
    ) -> None: ...

    def render_docker_compose_templates(self, context: EnvironmentContext) -> None: ...

    def deploy_compose_files_to_remote(self, context: EnvironmentContext) -> None: ...


class ServiceRunner(Protocol):
    """Starts the released services and checks they are up."""

    def start_services(self, context: EnvironmentContext) -> None: ...

    def verify_services(self, context: EnvironmentContext) -> None: ...


__all__ = [
    "ApplicationReleaser",
    "InfrastructureProvisioner",
    "RemoteHostConfigurator",
    "ServiceRunner",
]
