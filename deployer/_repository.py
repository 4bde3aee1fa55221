"""Persistence of environment envelopes.

:class:`EnvironmentRepository` is the contract command handlers depend on.
:class:`FileEnvironmentRepository` stores one JSON record per environment at
``<base_dir>/<name>/environment.json``, writing atomically under a per-record
PID lock.
"""

from __future__ import annotations

import json
import logging
import os
from collections import abc as cabc
from contextlib import suppress
from pathlib import Path
from typing import Protocol

from deployer._codec import environment_from_record, environment_to_record
from deployer._environment import AnyEnvironmentState, Environment
from deployer._errors import (
    RecordFormatError,
    RepositoryConflictError,
    RepositoryInternalError,
)
from deployer._file_lock import DEFAULT_LOCK_TIMEOUT, FileLock, LockTimeoutError
from deployer._names import EnvironmentName

logger = logging.getLogger(__name__)

RECORD_FILE_NAME = "environment.json"


class EnvironmentRepository(Protocol):
    """Storage contract for environment envelopes.

    ``save`` is atomic, ``load`` returns ``None`` for a name never saved, and
    ``delete`` is idempotent. Implementations raise
    :class:`~deployer._errors.RepositoryConflictError` when another process is
    mutating the same environment and
    :class:`~deployer._errors.RepositoryInternalError` for storage faults.
    """

    def save(self, envelope: AnyEnvironmentState) -> None: ...

    def load(self, name: EnvironmentName) -> AnyEnvironmentState | None: ...

    def exists(self, name: EnvironmentName) -> bool: ...

    def delete(self, name: EnvironmentName) -> None: ...


class ListableEnvironmentRepository(EnvironmentRepository, Protocol):
    """Repository that can also enumerate what it stores."""

    def list_names(self) -> list[EnvironmentName]: ...


def _write_atomic(path: Path, payload: str) -> None:
    """Write ``payload`` to ``path`` through a fsynced temporary file."""

    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")

    fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())
    except Exception:
        with suppress(FileNotFoundError):
            os.unlink(tmp_path)
        raise

    tmp_path.replace(path)
    os.chmod(path, 0o600)


class FileEnvironmentRepository:
    """JSON file repository with one directory per environment.

    Parameters
    ----------
    base_dir
        Directory holding one sub-directory per environment.
    lock_timeout
        Seconds to wait for another process to release a record.

    Examples
    --------
    >>> from pathlib import Path
    >>> repo = FileEnvironmentRepository(Path("data"))
    >>> repo.record_path(EnvironmentName("dev"))
    PosixPath('data/dev/environment.json')
    """

    def __init__(self, base_dir: Path, lock_timeout: float = DEFAULT_LOCK_TIMEOUT) -> None:
        self.base_dir = base_dir
        self.lock_timeout = lock_timeout

    def record_path(self, name: EnvironmentName) -> Path:
        return self.base_dir / name.value / RECORD_FILE_NAME

    def _locked(self, name: EnvironmentName) -> FileLock:
        return FileLock(self.record_path(name), timeout=self.lock_timeout)

    def _acquire(self, name: EnvironmentName) -> FileLock:
        lock = self._locked(name)
        try:
            lock.acquire()
        except LockTimeoutError as exc:
            raise RepositoryConflictError(name.value, exc.holder_pid) from exc
        except OSError as exc:
            msg = f"Failed to lock environment {name.value!r}: {exc}"
            raise RepositoryInternalError(msg) from exc
        return lock

    def save(self, envelope: AnyEnvironmentState) -> None:
        """Persist ``envelope``, replacing any previous record atomically."""

        name = envelope.name
        path = self.record_path(name)
        payload = json.dumps(environment_to_record(envelope), indent=2)
        lock = self._acquire(name)
        try:
            _write_atomic(path, payload)
        except OSError as exc:
            msg = f"Failed to save environment {name.value!r} to {path}: {exc}"
            raise RepositoryInternalError(msg) from exc
        finally:
            lock.release()
        logger.debug("Saved environment %s in state %s", name, envelope.state_name)

    def load(self, name: EnvironmentName) -> AnyEnvironmentState | None:
        """Return the stored envelope, or ``None`` if ``name`` was never saved."""

        path = self.record_path(name)
        if not path.exists():
            return None
        lock = self._acquire(name)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            msg = f"Failed to read environment {name.value!r} from {path}: {exc}"
            raise RepositoryInternalError(msg) from exc
        finally:
            lock.release()
        try:
            return environment_from_record(json.loads(text))
        except (json.JSONDecodeError, RecordFormatError) as exc:
            msg = f"Corrupt environment record {path}: {exc}"
            raise RepositoryInternalError(msg) from exc

    def exists(self, name: EnvironmentName) -> bool:
        return self.record_path(name).is_file()

    def delete(self, name: EnvironmentName) -> None:
        """Remove the record; deleting a missing record is a no-op."""

        path = self.record_path(name)
        if not path.exists():
            return
        lock = self._acquire(name)
        try:
            with suppress(FileNotFoundError):
                path.unlink()
        except OSError as exc:
            msg = f"Failed to delete environment {name.value!r}: {exc}"
            raise RepositoryInternalError(msg) from exc
        finally:
            lock.release()
        with suppress(OSError):
            # Only succeeds when nothing else lives in the directory.
            path.parent.rmdir()
        logger.debug("Deleted environment %s", name)

    def list_names(self) -> list[EnvironmentName]:
        """Return the names of all stored environments, sorted."""

        if not self.base_dir.is_dir():
            return []
        names: list[EnvironmentName] = []
        for entry in sorted(self.base_dir.iterdir()):
            if not (entry / RECORD_FILE_NAME).is_file():
                continue
            try:
                names.append(EnvironmentName(entry.name))
            except ValueError:
                logger.warning("Ignoring directory with invalid name %s", entry)
        return names


class TypedEnvironmentRepository:
    """Adapter persisting typed aggregates through an envelope repository.

    Saving never consumes the aggregate, so a handler can keep driving
    transitions on the value it just persisted.
    """

    def __init__(self, inner: EnvironmentRepository) -> None:
        self.inner = inner

    def save(self, environment: Environment) -> None:
        self.inner.save(environment.to_any())

    def load(self, name: EnvironmentName) -> AnyEnvironmentState | None:
        return self.inner.load(name)

    def exists(self, name: EnvironmentName) -> bool:
        return self.inner.exists(name)

    def delete(self, name: EnvironmentName) -> None:
        self.inner.delete(name)


class InMemoryEnvironmentRepository:
    """Repository keeping envelopes in a dictionary, for tests and dry runs."""

    def __init__(self, envelopes: cabc.Iterable[AnyEnvironmentState] = ()) -> None:
        self._records = {envelope.name: envelope for envelope in envelopes}
        self.saved: list[AnyEnvironmentState] = []

    def save(self, envelope: AnyEnvironmentState) -> None:
        self._records[envelope.name] = envelope
        self.saved.append(envelope)

    def load(self, name: EnvironmentName) -> AnyEnvironmentState | None:
        return self._records.get(name)

    def exists(self, name: EnvironmentName) -> bool:
        return name in self._records

    def delete(self, name: EnvironmentName) -> None:
        self._records.pop(name, None)

    def list_names(self) -> list[EnvironmentName]:
        return sorted(self._records, key=lambda name: name.value)


__all__ = [
    "RECORD_FILE_NAME",
    "EnvironmentRepository",
    "FileEnvironmentRepository",
    "InMemoryEnvironmentRepository",
    "ListableEnvironmentRepository",
    "TypedEnvironmentRepository",
]
