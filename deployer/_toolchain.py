"""Default collaborators built on OpenTofu, Ansible, and Docker Compose.

Templates are expected to be pre-rendered under the environment's
``data/<name>/templates`` directory, one sub-directory per concern
(``tofu/<provider>``, ``ansible``, ``tracker``, ``prometheus``,
``docker-compose``). Each render step copies its sub-directory into the
build tree and writes the variables the playbooks and modules consume.
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

from deployer._errors import RemoteCommandError, TemplateError
from deployer._models import (
    DatabaseDriver,
    EnvironmentContext,
    HetznerConfig,
    IpAddress,
    LxdConfig,
)
from deployer._remote import (
    INVENTORY_FILE_NAME,
    VARIABLES_FILE_NAME,
    build_inventory,
    run_playbook,
    run_ssh,
    wait_for_ssh,
    write_yaml,
)
from deployer._tofu import (
    TFVARS_FILE_NAME,
    ensure_success,
    extract_instance_ip,
    tofu_apply,
    tofu_destroy,
    tofu_init,
    tofu_output,
    tofu_plan,
    tofu_validate,
    write_tfvars,
)

logger = logging.getLogger(__name__)

REMOTE_APP_DIR = "/opt/torrust"
PLAYBOOK_TIMEOUT = 900


def copy_template_tree(source: Path, destination: Path) -> None:
    """Copy a pre-rendered template directory into the build tree.

    Raises
    ------
    TemplateError
        If ``source`` is missing or cannot be copied.
    """

    if not source.is_dir():
        msg = f"Template directory {source} does not exist"
        raise TemplateError(msg)
    try:
        shutil.copytree(source, destination, dirs_exist_ok=True)
    except OSError as exc:
        msg = f"Failed to copy templates from {source} to {destination}: {exc}"
        raise TemplateError(msg) from exc
    logger.debug("Copied templates %s -> %s", source, destination)


def _require_ip(context: EnvironmentContext) -> IpAddress:
    instance_ip = context.runtime_outputs.instance_ip
    if instance_ip is None:
        msg = f"Environment {context.user_inputs.name} has no instance IP address"
        raise RemoteCommandError(msg)
    return instance_ip


def build_tfvars(context: EnvironmentContext) -> dict[str, object]:
    """Build OpenTofu variables for the environment's provider."""

    user_inputs = context.user_inputs
    variables: dict[str, object] = {
        "instance_name": user_inputs.instance_name.value,
        "ssh_public_key_path": str(user_inputs.ssh_credentials.public_key_path),
        "ssh_username": user_inputs.ssh_credentials.username.value,
        "ssh_port": user_inputs.ssh_port,
    }
    match user_inputs.provider_config:
        case LxdConfig(profile_name=profile_name):
            variables["profile_name"] = profile_name.value
        case HetznerConfig() as hetzner:
            variables["hcloud_token"] = hetzner.api_token
            variables["server_type"] = hetzner.server_type
            variables["location"] = hetzner.location
            variables["image"] = hetzner.image
    return variables


def build_release_variables(context: EnvironmentContext) -> dict[str, object]:
    """Variables shared by every release playbook."""

    tracker = context.user_inputs.tracker
    database = tracker.database
    variables: dict[str, object] = {
        "remote_app_dir": REMOTE_APP_DIR,
        "udp_tracker_ports": list(tracker.udp_tracker_ports),
        "http_tracker_ports": list(tracker.http_tracker_ports),
        "http_api_port": tracker.http_api_port,
        "tracker_admin_token": tracker.admin_token,
        "database_driver": str(database.driver),
        "database_name": database.database_name,
        "prometheus_enabled": tracker.prometheus is not None,
    }
    if database.driver is DatabaseDriver.MYSQL:
        variables.update(
            {
                "mysql_host": database.host or "mysql",
                "mysql_port": database.port or 3306,
                "mysql_user": database.username,
                "mysql_password": database.password,
            }
        )
    if tracker.prometheus is not None:
        variables["prometheus_scrape_interval"] = (
            f"{tracker.prometheus.scrape_interval_secs}s"
        )
    return variables


class OpenTofuProvisioner:
    """Provision the instance with the OpenTofu module for its provider."""

    def _var_file(self, context: EnvironmentContext) -> Path:
        return context.tofu_build_dir / TFVARS_FILE_NAME

    def render_templates(self, context: EnvironmentContext) -> None:
        copy_template_tree(
            context.templates_dir / "tofu" / context.provider_name,
            context.tofu_build_dir,
        )
        write_tfvars(self._var_file(context), build_tfvars(context))

    def init(self, context: EnvironmentContext) -> None:
        cwd = context.tofu_build_dir
        ensure_success(tofu_init(cwd), "init", cwd)

    def validate(self, context: EnvironmentContext) -> None:
        cwd = context.tofu_build_dir
        ensure_success(tofu_validate(cwd), "validate", cwd)

    def plan(self, context: EnvironmentContext) -> None:
        cwd = context.tofu_build_dir
        ensure_success(tofu_plan(cwd, self._var_file(context)), "plan", cwd)

    def apply(self, context: EnvironmentContext) -> None:
        cwd = context.tofu_build_dir
        ensure_success(tofu_apply(cwd, self._var_file(context)), "apply", cwd)

    def instance_ip(self, context: EnvironmentContext) -> str:
        return extract_instance_ip(tofu_output(context.tofu_build_dir))

    def destroy(self, context: EnvironmentContext) -> None:
        cwd = context.tofu_build_dir
        ensure_success(tofu_destroy(cwd, self._var_file(context)), "destroy", cwd)


class AnsibleConfigurator:
    """Configure the instance through the environment's Ansible playbooks.

    Parameters
    ----------
    ssh_attempts
        Connection attempts before SSH is declared unreachable.
    ssh_delay
        Seconds between SSH attempts.
    """

    def __init__(self, ssh_attempts: int = 30, ssh_delay: float = 2.0) -> None:
        self.ssh_attempts = ssh_attempts
        self.ssh_delay = ssh_delay

    def _playbook(self, context: EnvironmentContext, playbook: str) -> None:
        run_playbook(context.ansible_build_dir, playbook, timeout=PLAYBOOK_TIMEOUT)

    def render_inventory(self, context: EnvironmentContext) -> None:
        copy_template_tree(context.templates_dir / "ansible", context.ansible_build_dir)
        user_inputs = context.user_inputs
        write_yaml(
            context.ansible_build_dir / INVENTORY_FILE_NAME,
            build_inventory(
                user_inputs.ssh_credentials, _require_ip(context), user_inputs.ssh_port
            ),
        )
        write_yaml(
            context.ansible_build_dir / VARIABLES_FILE_NAME,
            {
                "ssh_port": user_inputs.ssh_port,
                **build_release_variables(context),
            },
        )

    def wait_for_ssh(self, context: EnvironmentContext) -> None:
        user_inputs = context.user_inputs
        wait_for_ssh(
            user_inputs.ssh_credentials,
            _require_ip(context),
            user_inputs.ssh_port,
            attempts=self.ssh_attempts,
            delay=self.ssh_delay,
        )

    def wait_for_cloud_init(self, context: EnvironmentContext) -> None:
        self._playbook(context, "wait-cloud-init.yml")

    def install_docker(self, context: EnvironmentContext) -> None:
        self._playbook(context, "install-docker.yml")

    def install_docker_compose(self, context: EnvironmentContext) -> None:
        self._playbook(context, "install-docker-compose.yml")

    def configure_security_updates(self, context: EnvironmentContext) -> None:
        self._playbook(context, "configure-security-updates.yml")

    def configure_firewall(self, context: EnvironmentContext) -> None:
        self._playbook(context, "configure-firewall.yml")


class AnsibleReleaser:
    """Release tracker, Prometheus, and compose artefacts with Ansible."""

    def _playbook(self, context: EnvironmentContext, playbook: str) -> None:
        run_playbook(
            context.ansible_build_dir,
            playbook,
            extra_vars_file=context.ansible_build_dir / VARIABLES_FILE_NAME,
            timeout=PLAYBOOK_TIMEOUT,
        )

    def _render(self, context: EnvironmentContext, concern: str) -> None:
        destination = context.internal_config.build_dir / concern
        copy_template_tree(context.templates_dir / concern, destination)
        write_yaml(destination / VARIABLES_FILE_NAME, build_release_variables(context))

    def create_tracker_storage(self, context: EnvironmentContext) -> None:
        self._playbook(context, "create-tracker-storage.yml")

    def init_tracker_database(self, context: EnvironmentContext) -> None:
        self._playbook(context, "init-tracker-database.yml")

    def render_tracker_templates(self, context: EnvironmentContext) -> None:
        self._render(context, "tracker")

    def deploy_tracker_config_to_remote(self, context: EnvironmentContext) -> None:
        self._playbook(context, "deploy-tracker-config.yml")

    def create_prometheus_storage(self, context: EnvironmentContext) -> None:
        self._playbook(context, "create-prometheus-storage.yml")

    def render_prometheus_templates(self, context: EnvironmentContext) -> None:
        self._render(context, "prometheus")

    def deploy_prometheus_config_to_remote(self, context: EnvironmentContext) -> None:
        self._playbook(context, "deploy-prometheus-config.yml")

    def render_docker_compose_templates(self, context: EnvironmentContext) -> None:
        self._render(context, "docker-compose")

    def deploy_compose_files_to_remote(self, context: EnvironmentContext) -> None:
        self._playbook(context, "deploy-compose-files.yml")


class ComposeServiceRunner:
    """Start the compose stack and probe the tracker API health check."""

    def start_services(self, context: EnvironmentContext) -> None:
        run_playbook(
            context.ansible_build_dir,
            "run-compose-services.yml",
            extra_vars_file=context.ansible_build_dir / VARIABLES_FILE_NAME,
            timeout=PLAYBOOK_TIMEOUT,
        )

    def verify_services(self, context: EnvironmentContext) -> None:
        user_inputs = context.user_inputs
        port = user_inputs.tracker.http_api_port
        run_ssh(
            user_inputs.ssh_credentials,
            _require_ip(context),
            user_inputs.ssh_port,
            f"curl --fail --silent --show-error http://localhost:{port}/api/health_check",
            timeout=30,
        )


__all__ = [
    "AnsibleConfigurator",
    "AnsibleReleaser",
    "ComposeServiceRunner",
    "OpenTofuProvisioner",
    "build_release_variables",
    "build_tfvars",
    "copy_template_tree",
]
