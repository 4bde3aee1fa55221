"""End-to-end tests of the command-line interface with fake collaborators."""

from __future__ import annotations

from collections import abc as cabc
from pathlib import Path

import pytest
import yaml

from deployer import environment_cli as cli
from deployer._errors import TofuCommandError
from deployer._models import EnvironmentContext, SshCredentials


class FakeToolchain:
    """Stand-in for every collaborator; ``failures`` maps method names to errors."""

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.failures: dict[str, Exception] = {}

    def instance_ip(self, context: EnvironmentContext) -> str:
        self.calls.append("instance_ip")
        return "10.140.190.14"

    def __getattr__(self, method: str) -> cabc.Callable[[EnvironmentContext], None]:
        if method.startswith("_"):
            raise AttributeError(method)

        def action(context: EnvironmentContext) -> None:
            self.calls.append(method)
            if method in self.failures:
                raise self.failures[method]

        return action


@pytest.fixture
def toolchain(monkeypatch: pytest.MonkeyPatch) -> FakeToolchain:
    fake = FakeToolchain()
    for collaborator in (
        "OpenTofuProvisioner",
        "AnsibleConfigurator",
        "AnsibleReleaser",
        "ComposeServiceRunner",
    ):
        monkeypatch.setattr(cli, collaborator, lambda: fake)
    return fake


@pytest.fixture(autouse=True)
def logging_levels(monkeypatch: pytest.MonkeyPatch) -> list[str]:
    """Record requested log levels instead of reconfiguring the root logger."""

    levels: list[str] = []
    monkeypatch.setattr(cli, "configure_logging", levels.append)
    for variable in ("DEPLOYER_WORKING_DIR", "DEPLOYER_LOCK_TIMEOUT", "DEPLOYER_LOG_LEVEL"):
        monkeypatch.delenv(variable, raising=False)
    return levels


@pytest.fixture
def env_file(tmp_path: Path, ssh_keys: SshCredentials) -> Path:
    path = tmp_path / "e2e-full.yml"
    payload = {
        "environment": {"name": "e2e-full"},
        "provider": {"provider": "lxd"},
        "ssh_credentials": {
            "private_key_path": str(ssh_keys.private_key_path),
            "public_key_path": str(ssh_keys.public_key_path),
            "username": "torrust",
        },
        "prometheus": {"scrape_interval_secs": 15},
    }
    path.write_text(yaml.safe_dump(payload), encoding="utf-8")
    return path


def test_full_lifecycle(
    tmp_path: Path,
    env_file: Path,
    toolchain: FakeToolchain,
    capsys: pytest.CaptureFixture[str],
) -> None:
    work = tmp_path / "work"

    assert cli.create(env_file, working_dir=work) == 0
    assert (work / "data" / "e2e-full" / "environment.json").is_file()
    assert cli.provision("e2e-full", working_dir=work) == 0
    assert cli.configure("e2e-full", working_dir=work) == 0
    assert cli.release("e2e-full", working_dir=work) == 0
    assert cli.run("e2e-full", working_dir=work) == 0

    capsys.readouterr()
    assert cli.show("e2e-full", working_dir=work) == 0
    shown = capsys.readouterr().out
    assert "State: running" in shown
    assert "SSH: ssh torrust@10.140.190.14" in shown
    assert "udp://10.140.190.14:6969/announce" in shown

    assert cli.destroy("e2e-full", working_dir=work) == 0
    assert cli.show("e2e-full", working_dir=work) == 0
    assert "State: destroyed" in capsys.readouterr().out
    assert cli.purge("e2e-full", working_dir=work) == 0
    assert cli.list_environments(working_dir=work) == 0
    assert "No environments found." in capsys.readouterr().out
    assert "verify_services" in toolchain.calls


def test_workflow_failure_reports_trace_and_hint(
    tmp_path: Path,
    env_file: Path,
    toolchain: FakeToolchain,
    capsys: pytest.CaptureFixture[str],
) -> None:
    work = tmp_path / "work"
    toolchain.failures["apply"] = TofuCommandError("tofu apply failed: quota exceeded")
    assert cli.create(env_file, working_dir=work) == 0

    assert cli.provision("e2e-full", working_dir=work) == 1

    err = capsys.readouterr().err
    assert "error: provision failed at step 'OpenTofuApply'" in err
    assert "trace: " in err
    assert "hint: " in err
    assert cli.show("e2e-full", working_dir=work) == 0
    shown = capsys.readouterr().out
    assert "State: provision_failed" in shown
    assert "Failed step: OpenTofuApply (InfrastructureOperation)" in shown


def test_commands_reject_wrong_state(
    tmp_path: Path,
    env_file: Path,
    toolchain: FakeToolchain,
    capsys: pytest.CaptureFixture[str],
) -> None:
    work = tmp_path / "work"
    assert cli.create(env_file, working_dir=work) == 0
    assert cli.configure("e2e-full", working_dir=work) == 1
    err = capsys.readouterr().err
    assert "expected 'provisioned', found 'created'" in err
    assert "hint: run provision or register first" in err
    assert toolchain.calls == []


def test_duplicate_create_fails(
    tmp_path: Path, env_file: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    work = tmp_path / "work"
    assert cli.create(env_file, working_dir=work) == 0
    assert cli.create(env_file, working_dir=work) == 1
    assert "already exists" in capsys.readouterr().err


def test_register_and_forced_purge(
    tmp_path: Path,
    env_file: Path,
    toolchain: FakeToolchain,
    capsys: pytest.CaptureFixture[str],
) -> None:
    work = tmp_path / "work"
    assert cli.create(env_file, working_dir=work) == 0
    assert cli.register("e2e-full", "192.168.1.50", working_dir=work) == 0
    assert cli.purge("e2e-full", working_dir=work) == 1
    assert "destroy it first" in capsys.readouterr().err
    assert cli.purge("e2e-full", force=True, working_dir=work) == 0
    assert not (work / "data" / "e2e-full").exists()


def test_invalid_name_and_unknown_environment(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    assert cli.show("Not Valid", working_dir=tmp_path) == 1
    assert "Invalid environment name" in capsys.readouterr().err
    assert cli.show("ghost", working_dir=tmp_path) == 1
    assert "not found" in capsys.readouterr().err


def test_list_exits_nonzero_on_unreadable_record(
    tmp_path: Path, env_file: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    work = tmp_path / "work"
    assert cli.create(env_file, working_dir=work) == 0
    broken = work / "data" / "broken" / "environment.json"
    broken.parent.mkdir(parents=True)
    broken.write_text("[]", encoding="utf-8")

    assert cli.list_environments(working_dir=work) == 1
    out = capsys.readouterr().out
    assert "e2e-full" in out
    assert "broken" in out
    assert "unreadable" in out


def test_settings_come_from_environment(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
    env_file: Path,
    logging_levels: list[str],
) -> None:
    monkeypatch.setenv("DEPLOYER_WORKING_DIR", str(tmp_path / "from-env"))
    monkeypatch.setenv("DEPLOYER_LOG_LEVEL", "info")
    assert cli.create(env_file) == 0
    assert (tmp_path / "from-env" / "data" / "e2e-full" / "environment.json").is_file()
    assert logging_levels == ["INFO"]


def test_bad_log_level_is_reported(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.list_environments(working_dir=tmp_path, log_level="chatty") == 1
    assert "logging level name" in capsys.readouterr().err
