"""Command helpers for reaching the environment's instance.

Ansible playbooks and SSH probes run through :mod:`plumbum`; inventories and
playbook variables are written as YAML.
"""

from __future__ import annotations

import logging
import os
import time
from collections import abc as cabc
from dataclasses import dataclass
from pathlib import Path

import yaml
from plumbum import local
from plumbum.commands.processes import (
    CommandNotFound,
    ProcessExecutionError,
    ProcessTimedOut,
)

from deployer._errors import RemoteCommandError
from deployer._models import IpAddress, SshCredentials

logger = logging.getLogger(__name__)

INVENTORY_FILE_NAME = "inventory.yml"
VARIABLES_FILE_NAME = "variables.yml"
SSH_OPTIONS = (
    "-o",
    "StrictHostKeyChecking=no",
    "-o",
    "UserKnownHostsFile=/dev/null",
    "-o",
    "BatchMode=yes",
    "-o",
    "ConnectTimeout=5",
)


@dataclass(slots=True)
class CommandContext:
    """Execution options for :func:`run_command`."""

    env: dict[str, str] | None = None
    stdin: str | None = None
    timeout: int | None = None
    cwd: Path | None = None


def run_command(
    command: str,
    *args: str,
    context: CommandContext | None = None,
) -> str:
    """Execute an external command and return its standard output.

    Examples
    --------
    >>> run_command("printf", "hello")  # doctest: +SKIP
    'hello'
    """

    ctx = context or CommandContext()
    try:
        bound = local[command][list(args)]
        with local.cwd(ctx.cwd if ctx.cwd is not None else Path.cwd()):
            if ctx.stdin is None:
                _, stdout, _ = bound.run(env=ctx.env, timeout=ctx.timeout)
            else:
                _, stdout, _ = (bound << ctx.stdin).run(env=ctx.env, timeout=ctx.timeout)
    except ProcessTimedOut as exc:
        msg = f"Command {command!r} timed out after {ctx.timeout}s"
        raise RemoteCommandError(msg) from exc
    except ProcessExecutionError as exc:
        msg = f"Command {command!r} failed: {exc.stderr.strip()}"
        raise RemoteCommandError(msg) from exc
    except CommandNotFound as exc:
        msg = f"Command {command!r} is not installed or not on PATH"
        raise RemoteCommandError(msg) from exc
    return stdout


def ssh_args(
    credentials: SshCredentials, host: IpAddress, port: int
) -> list[str]:
    """Return the ``ssh`` arguments reaching ``host`` as the configured user.

    Examples
    --------
    >>> import ipaddress
    >>> from pathlib import Path
    >>> from deployer._names import Username
    >>> creds = SshCredentials(Path("/k/id"), Path("/k/id.pub"), Username("torrust"))
    >>> ssh_args(creds, ipaddress.ip_address("10.0.0.5"), 22)[-1]
    'torrust@10.0.0.5'
    """

    return [
        *SSH_OPTIONS,
        "-i",
        str(credentials.private_key_path),
        "-p",
        str(port),
        f"{credentials.username}@{host}",
    ]


def run_ssh(
    credentials: SshCredentials,
    host: IpAddress,
    port: int,
    remote_command: str,
    *,
    timeout: int | None = None,
) -> str:
    """Run ``remote_command`` on ``host`` over SSH."""

    return run_command(
        "ssh",
        *ssh_args(credentials, host, port),
        remote_command,
        context=CommandContext(timeout=timeout),
    )


def wait_for_ssh(
    credentials: SshCredentials,
    host: IpAddress,
    port: int,
    *,
    attempts: int = 30,
    delay: float = 2.0,
) -> None:
    """Poll ``host`` until an SSH command succeeds.

    Raises
    ------
    RemoteCommandError
        If SSH is still unreachable after ``attempts`` tries.
    """

    last_error: RemoteCommandError | None = None
    for attempt in range(1, attempts + 1):
        try:
            run_ssh(credentials, host, port, "true", timeout=10)
        except RemoteCommandError as exc:
            last_error = exc
            logger.debug("SSH attempt %d/%d to %s failed: %s", attempt, attempts, host, exc)
            if attempt < attempts:
                time.sleep(delay)
            continue
        logger.info("SSH connectivity to %s established", host)
        return
    msg = f"SSH to {host}:{port} unreachable after {attempts} attempts"
    raise RemoteCommandError(msg) from last_error


def write_yaml(path: Path, payload: cabc.Mapping[str, object]) -> Path:
    """Write ``payload`` as a YAML document and return ``path``."""

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        yaml.safe_dump(dict(payload), sort_keys=False, default_flow_style=False),
        encoding="utf-8",
    )
    return path


def build_inventory(
    credentials: SshCredentials, host: IpAddress, port: int
) -> dict[str, object]:
    """Return an Ansible inventory with a single ``torrust_servers`` host.

    Examples
    --------
    >>> import ipaddress
    >>> from pathlib import Path
    >>> from deployer._names import Username
    >>> creds = SshCredentials(Path("/k/id"), Path("/k/id.pub"), Username("torrust"))
    >>> inventory = build_inventory(creds, ipaddress.ip_address("10.0.0.5"), 22)
    >>> inventory["all"]["children"]["torrust_servers"]["hosts"]["torrust-tracker-vm"]["ansible_host"]
    '10.0.0.5'
    """

    return {
        "all": {
            "children": {
                "torrust_servers": {
                    "hosts": {
                        "torrust-tracker-vm": {
                            "ansible_host": str(host),
                            "ansible_port": port,
                            "ansible_user": str(credentials.username),
                            "ansible_ssh_private_key_file": str(
                                credentials.private_key_path
                            ),
                            "ansible_python_interpreter": "/usr/bin/python3",
                        }
                    }
                }
            }
        }
    }


def run_playbook(
    ansible_dir: Path,
    playbook: str,
    *,
    extra_vars_file: Path | None = None,
    timeout: int | None = None,
) -> str:
    """Run ``ansible-playbook`` against the inventory in ``ansible_dir``."""

    args = ["-i", INVENTORY_FILE_NAME, playbook]
    if extra_vars_file is not None:
        args.extend(["-e", f"@{extra_vars_file}"])
    logger.info("Running playbook %s", playbook)
    return run_command(
        "ansible-playbook",
        *args,
        context=CommandContext(
            env={**os.environ, "ANSIBLE_HOST_KEY_CHECKING": "False"},
            timeout=timeout,
            cwd=ansible_dir,
        ),
    )


__all__ = [
    "INVENTORY_FILE_NAME",
    "VARIABLES_FILE_NAME",
    "CommandContext",
    "build_inventory",
    "run_command",
    "run_playbook",
    "run_ssh",
    "ssh_args",
    "wait_for_ssh",
    "write_yaml",
]
