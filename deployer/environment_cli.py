"""Command-line interface for managing tracker deployment environments.

Every command:
- resolves settings from its options and ``DEPLOYER_*`` variables;
- wires the repository and the OpenTofu, Ansible, and Compose collaborators;
- prints progress to stdout and errors to stderr; and
- returns 0 on success or 1 on failure.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Annotated

from cyclopts import App, Parameter

from deployer._destroy_handler import DestroyHandler
from deployer._environment_config import load_environment_config
from deployer._errors import DeployerError, StateTypeError, WorkflowFailedError
from deployer._failure_context import ErrorKind
from deployer._lifecycle_handlers import (
    CreateEnvironmentHandler,
    EnvironmentInfo,
    EnvironmentListing,
    ListHandler,
    PurgeHandler,
    ShowHandler,
)
from deployer._names import EnvironmentName
from deployer._repository import FileEnvironmentRepository
from deployer._settings import DeployerSettings, configure_logging, resolve_settings
from deployer._toolchain import (
    AnsibleConfigurator,
    AnsibleReleaser,
    ComposeServiceRunner,
    OpenTofuProvisioner,
)
from deployer._workflow_handlers import (
    ConfigureHandler,
    ProvisionHandler,
    RegisterHandler,
    ReleaseHandler,
    RunHandler,
)

app = App(
    name="tracker-deployer",
    help="Deploy and manage BitTorrent tracker environments.",
)

WorkingDirOption = Annotated[
    Path | None, Parameter(help="Root of the data and build trees.")
]
LogLevelOption = Annotated[str | None, Parameter(help="Logging level name.")]

# Command that leaves an environment in the state another command expects.
PRECEDING_COMMAND = {
    "provisioned": "provision or register",
    "configured": "configure",
    "released": "release",
}


def _settings(working_dir: Path | None, log_level: str | None) -> DeployerSettings:
    settings = resolve_settings(working_dir=working_dir, log_level=log_level)
    configure_logging(settings.log_level)
    return settings


def _repository(settings: DeployerSettings) -> FileEnvironmentRepository:
    return FileEnvironmentRepository(settings.data_dir, lock_timeout=settings.lock_timeout)


def _report_error(exc: DeployerError) -> int:
    print(f"error: {exc}", file=sys.stderr)
    if isinstance(exc, WorkflowFailedError):
        if exc.trace_file_path is not None:
            print(f"  trace: {exc.trace_file_path}", file=sys.stderr)
        print(f"  hint: {ErrorKind(exc.error_kind).help_text}", file=sys.stderr)
    elif isinstance(exc, StateTypeError) and exc.expected in PRECEDING_COMMAND:
        print(f"  hint: run {PRECEDING_COMMAND[exc.expected]} first", file=sys.stderr)
    return 1


def render_info(info: EnvironmentInfo) -> str:
    """Format an :class:`EnvironmentInfo` for the terminal."""

    lines = [
        f"Environment: {info.name}",
        f"State: {info.state}",
        f"Provider: {info.provider}",
        f"Instance: {info.instance_name}",
        f"Created: {info.created_at.isoformat()}",
    ]
    if info.instance_ip is not None:
        lines.append(f"IP address: {info.instance_ip}")
    if info.ssh_command is not None:
        lines.append(f"SSH: {info.ssh_command}")
    if info.error_details is not None:
        lines.append(f"Error: {info.error_details}")
    if info.failed_step is not None:
        lines.append(f"Failed step: {info.failed_step} ({info.error_kind})")
    if info.trace_file_path is not None:
        lines.append(f"Trace: {info.trace_file_path}")
    if info.service_urls:
        lines.append("Services:")
        lines.extend(f"  {url}" for url in info.service_urls)
    return "\n".join(lines)


def render_listing(listing: EnvironmentListing) -> str:
    if not listing.environments and not listing.failures:
        return "No environments found."
    lines = [
        f"{summary.name:<24} {summary.state:<18} {summary.provider:<8} "
        f"{summary.created_at.isoformat()}"
        for summary in listing.environments
    ]
    lines.extend(f"{name:<24} (unreadable: {reason})" for name, reason in listing.failures)
    return "\n".join(lines)


@app.command()
def create(
    env_file: Path,
    working_dir: WorkingDirOption = None,
    log_level: LogLevelOption = None,
) -> int:
    """Create an environment from a YAML or JSON environment file."""

    try:
        settings = _settings(working_dir, log_level)
        params = load_environment_config(env_file)
        environment = CreateEnvironmentHandler(
            _repository(settings), settings.working_dir
        ).execute(params)
    except DeployerError as exc:
        return _report_error(exc)
    print(f"Environment '{environment.name}' created.")
    print(f"  Data: {environment.data_dir}")
    print(f"  Build: {environment.build_dir}")
    return 0


@app.command()
def provision(
    name: str,
    working_dir: WorkingDirOption = None,
    log_level: LogLevelOption = None,
) -> int:
    """Provision the instance of a created environment with OpenTofu."""

    print(f"Provisioning environment '{name}'...")
    try:
        settings = _settings(working_dir, log_level)
        environment = ProvisionHandler(
            _repository(settings), OpenTofuProvisioner(), AnsibleConfigurator()
        ).execute(EnvironmentName(name))
    except DeployerError as exc:
        return _report_error(exc)
    print(f"Environment '{name}' provisioned at {environment.instance_ip}.")
    return 0


@app.command()
def register(
    name: str,
    instance_ip: str,
    working_dir: WorkingDirOption = None,
    log_level: LogLevelOption = None,
) -> int:
    """Register an existing instance for a created environment."""

    print(f"Registering {instance_ip} for environment '{name}'...")
    try:
        settings = _settings(working_dir, log_level)
        RegisterHandler(_repository(settings), AnsibleConfigurator()).execute(
            EnvironmentName(name), instance_ip
        )
    except DeployerError as exc:
        return _report_error(exc)
    print(f"Environment '{name}' registered.")
    return 0


@app.command()
def configure(
    name: str,
    working_dir: WorkingDirOption = None,
    log_level: LogLevelOption = None,
) -> int:
    """Install Docker and harden a provisioned instance."""

    print(f"Configuring environment '{name}'...")
    try:
        settings = _settings(working_dir, log_level)
        ConfigureHandler(_repository(settings), AnsibleConfigurator()).execute(
            EnvironmentName(name)
        )
    except DeployerError as exc:
        return _report_error(exc)
    print(f"Environment '{name}' configured.")
    return 0


@app.command()
def release(
    name: str,
    working_dir: WorkingDirOption = None,
    log_level: LogLevelOption = None,
) -> int:
    """Deploy the tracker stack to a configured instance."""

    print(f"Releasing environment '{name}'...")
    try:
        settings = _settings(working_dir, log_level)
        ReleaseHandler(_repository(settings), AnsibleReleaser()).execute(
            EnvironmentName(name)
        )
    except DeployerError as exc:
        return _report_error(exc)
    print(f"Environment '{name}' released.")
    return 0


@app.command()
def run(
    name: str,
    working_dir: WorkingDirOption = None,
    log_level: LogLevelOption = None,
) -> int:
    """Start the tracker services of a released environment."""

    print(f"Starting services of environment '{name}'...")
    try:
        settings = _settings(working_dir, log_level)
        RunHandler(_repository(settings), ComposeServiceRunner()).execute(
            EnvironmentName(name)
        )
    except DeployerError as exc:
        return _report_error(exc)
    print(f"Environment '{name}' is running.")
    return 0


@app.command()
def destroy(
    name: str,
    working_dir: WorkingDirOption = None,
    log_level: LogLevelOption = None,
) -> int:
    """Destroy an environment's infrastructure and local state."""

    print(f"Destroying environment '{name}'...")
    try:
        settings = _settings(working_dir, log_level)
        DestroyHandler(_repository(settings), OpenTofuProvisioner()).execute(
            EnvironmentName(name)
        )
    except DeployerError as exc:
        return _report_error(exc)
    print(f"Environment '{name}' destroyed.")
    return 0


@app.command()
def purge(
    name: str,
    force: bool = False,
    working_dir: WorkingDirOption = None,
    log_level: LogLevelOption = None,
) -> int:
    """Delete the record and local directories of an environment."""

    try:
        settings = _settings(working_dir, log_level)
        PurgeHandler(_repository(settings)).execute(EnvironmentName(name), force=force)
    except DeployerError as exc:
        return _report_error(exc)
    print(f"Environment '{name}' purged.")
    return 0


@app.command()
def show(
    name: str,
    working_dir: WorkingDirOption = None,
    log_level: LogLevelOption = None,
) -> int:
    """Show the state and details of one environment."""

    try:
        settings = _settings(working_dir, log_level)
        info = ShowHandler(_repository(settings)).execute(EnvironmentName(name))
    except DeployerError as exc:
        return _report_error(exc)
    print(render_info(info))
    return 0


@app.command(name="list")
def list_environments(
    working_dir: WorkingDirOption = None,
    log_level: LogLevelOption = None,
) -> int:
    """List every stored environment."""

    try:
        settings = _settings(working_dir, log_level)
        listing = ListHandler(_repository(settings)).execute()
    except DeployerError as exc:
        return _report_error(exc)
    print(render_listing(listing))
    return 1 if listing.failures else 0


def main() -> None:
    raise SystemExit(app())


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    main()
