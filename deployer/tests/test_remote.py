"""Unit tests for remote command helpers."""

from __future__ import annotations

import ipaddress
from pathlib import Path

import pytest
import yaml

from deployer import _remote
from deployer._errors import RemoteCommandError
from deployer._models import SshCredentials
from deployer._remote import (
    CommandContext,
    build_inventory,
    run_command,
    run_playbook,
    wait_for_ssh,
    write_yaml,
)

HOST = ipaddress.ip_address("10.140.190.14")


def test_run_command_returns_stdout(tmp_path: Path) -> None:
    assert run_command("printf", "hello", context=CommandContext(cwd=tmp_path)) == "hello"


def test_run_command_failure_is_remote_error() -> None:
    with pytest.raises(RemoteCommandError, match="'false' failed"):
        run_command("false")


def test_run_command_missing_binary() -> None:
    with pytest.raises(RemoteCommandError, match="not installed"):
        run_command("definitely-not-a-real-command-xyz")


def test_wait_for_ssh_retries_until_success(
    monkeypatch: pytest.MonkeyPatch, ssh_keys: SshCredentials
) -> None:
    attempts: list[tuple[str, ...]] = []

    def fake_run_command(command: str, *args: str, context: CommandContext | None = None) -> str:
        attempts.append((command, *args))
        if len(attempts) < 3:
            raise RemoteCommandError("Connection refused")
        return ""

    monkeypatch.setattr(_remote, "run_command", fake_run_command)
    monkeypatch.setattr(_remote.time, "sleep", lambda _delay: None)

    wait_for_ssh(ssh_keys, HOST, 22, attempts=5, delay=0)
    assert len(attempts) == 3, "Expected polling to stop after the first success"
    assert attempts[0][0] == "ssh"
    assert attempts[0][-2:] == ("torrust@10.140.190.14", "true")


def test_wait_for_ssh_gives_up(
    monkeypatch: pytest.MonkeyPatch, ssh_keys: SshCredentials
) -> None:
    def always_fail(*_args: object, **_kwargs: object) -> str:
        raise RemoteCommandError("Connection refused")

    monkeypatch.setattr(_remote, "run_command", always_fail)
    monkeypatch.setattr(_remote.time, "sleep", lambda _delay: None)

    with pytest.raises(RemoteCommandError, match="unreachable after 2 attempts"):
        wait_for_ssh(ssh_keys, HOST, 2222, attempts=2, delay=0)


def test_inventory_points_at_instance(tmp_path: Path, ssh_keys: SshCredentials) -> None:
    path = write_yaml(tmp_path / "ansible" / "inventory.yml", build_inventory(ssh_keys, HOST, 2222))
    inventory = yaml.safe_load(path.read_text(encoding="utf-8"))
    host = inventory["all"]["children"]["torrust_servers"]["hosts"]["torrust-tracker-vm"]
    assert host["ansible_host"] == "10.140.190.14"
    assert host["ansible_port"] == 2222
    assert host["ansible_user"] == "torrust"
    assert host["ansible_ssh_private_key_file"] == str(ssh_keys.private_key_path)


def test_run_playbook_arguments(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    captured: dict[str, object] = {}

    def fake_run_command(command: str, *args: str, context: CommandContext | None = None) -> str:
        captured["command"] = command
        captured["args"] = args
        captured["context"] = context
        return ""

    monkeypatch.setattr(_remote, "run_command", fake_run_command)
    run_playbook(tmp_path, "install-docker.yml", extra_vars_file=tmp_path / "variables.yml")

    context = captured["context"]
    assert captured["command"] == "ansible-playbook"
    assert captured["args"] == (
        "-i",
        "inventory.yml",
        "install-docker.yml",
        "-e",
        f"@{tmp_path / 'variables.yml'}",
    )
    assert isinstance(context, CommandContext)
    assert context.cwd == tmp_path
    assert context.env["ANSIBLE_HOST_KEY_CHECKING"] == "False"
    assert "PATH" in context.env, "Expected the process environment to be inherited"
