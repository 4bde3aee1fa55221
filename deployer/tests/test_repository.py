"""Unit tests for environment repositories."""

from __future__ import annotations

import json
import os
import stat
from collections import abc as cabc
from pathlib import Path

import pytest

from deployer._environment import Environment
from deployer._errors import RepositoryConflictError, RepositoryInternalError
from deployer._names import EnvironmentName
from deployer._repository import (
    FileEnvironmentRepository,
    InMemoryEnvironmentRepository,
    TypedEnvironmentRepository,
)
from deployer._states import Created

EnvironmentFactory = cabc.Callable[..., Environment[Created]]


def _repo(tmp_path: Path, **kwargs: float) -> FileEnvironmentRepository:
    return FileEnvironmentRepository(tmp_path / "data", **kwargs)


def test_save_then_load_round_trip(
    tmp_path: Path, make_environment: EnvironmentFactory
) -> None:
    repo = _repo(tmp_path)
    envelope = make_environment("dev").start_provisioning().provisioned("10.0.0.3").to_any()
    repo.save(envelope)

    path = repo.record_path(EnvironmentName("dev"))
    assert path == tmp_path / "data" / "dev" / "environment.json"
    assert json.loads(path.read_text(encoding="utf-8"))["state"] == "provisioned"
    assert repo.load(EnvironmentName("dev")) == envelope
    assert repo.exists(EnvironmentName("dev"))


def test_record_is_private_and_lock_released(
    tmp_path: Path, make_environment: EnvironmentFactory
) -> None:
    repo = _repo(tmp_path)
    repo.save(make_environment("dev").to_any())
    path = repo.record_path(EnvironmentName("dev"))
    assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
    assert not path.with_name("environment.json.lock").exists()
    assert not path.with_name("environment.json.tmp").exists()


def test_save_replaces_previous_record(
    tmp_path: Path, make_environment: EnvironmentFactory
) -> None:
    repo = _repo(tmp_path)
    created = make_environment("dev")
    repo.save(created.to_any())
    repo.save(created.start_provisioning().to_any())
    loaded = repo.load(EnvironmentName("dev"))
    assert loaded is not None
    assert loaded.state_name == "provisioning"


def test_load_missing_returns_none(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    assert repo.load(EnvironmentName("ghost")) is None
    assert not repo.exists(EnvironmentName("ghost"))


def test_corrupt_record_is_internal_error(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    path = repo.record_path(EnvironmentName("dev"))
    path.parent.mkdir(parents=True)
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(RepositoryInternalError, match="Corrupt environment record"):
        repo.load(EnvironmentName("dev"))


def test_locked_record_is_a_retryable_conflict(
    tmp_path: Path, make_environment: EnvironmentFactory
) -> None:
    repo = _repo(tmp_path, lock_timeout=0.05)
    lock_path = repo.record_path(EnvironmentName("dev")).with_name("environment.json.lock")
    lock_path.parent.mkdir(parents=True)
    lock_path.write_text(str(os.getpid()), encoding="utf-8")

    with pytest.raises(RepositoryConflictError) as excinfo:
        repo.save(make_environment("dev").to_any())
    assert excinfo.value.retryable
    assert excinfo.value.holder_pid == os.getpid()


def test_delete_is_idempotent(tmp_path: Path, make_environment: EnvironmentFactory) -> None:
    repo = _repo(tmp_path)
    repo.save(make_environment("dev").to_any())
    repo.delete(EnvironmentName("dev"))
    repo.delete(EnvironmentName("dev"))
    assert not repo.exists(EnvironmentName("dev"))
    assert not (tmp_path / "data" / "dev").exists()


def test_list_names_skips_foreign_directories(
    tmp_path: Path, make_environment: EnvironmentFactory
) -> None:
    repo = _repo(tmp_path)
    repo.save(make_environment("zeta").to_any())
    repo.save(make_environment("alpha").to_any())
    (tmp_path / "data" / "Not_Valid").mkdir()
    (tmp_path / "data" / "Not_Valid" / "environment.json").write_text("{}", encoding="utf-8")
    (tmp_path / "data" / "empty").mkdir()
    assert repo.list_names() == [EnvironmentName("alpha"), EnvironmentName("zeta")]


def test_typed_repository_saves_without_consuming(
    make_environment: EnvironmentFactory,
) -> None:
    inner = InMemoryEnvironmentRepository()
    typed = TypedEnvironmentRepository(inner)
    env = make_environment("dev")
    typed.save(env)
    assert not env.is_consumed
    assert inner.saved == [env.to_any()]
    assert typed.load(EnvironmentName("dev")) == env.to_any()
    typed.delete(EnvironmentName("dev"))
    assert not typed.exists(EnvironmentName("dev"))
