"""Exception hierarchy for the tracker deployer.

Every error raised by the deployer derives from :class:`DeployerError` so the
CLI can report failures through a single ``except`` clause while library
callers still catch the precise subclass they care about.

Examples
--------
>>> raise StateTypeError(expected="provisioned", actual="created")
Traceback (most recent call last):
...
deployer._errors.StateTypeError: Invalid state: expected 'provisioned', found 'created'
"""

from __future__ import annotations

from pathlib import Path


class DeployerError(Exception):
    """Base error for the tracker deployer.

    Parameters
    ----------
    message
        Human-readable error message describing the failure.
    """


class NameValidationError(DeployerError, ValueError):
    """Raised when an identifier fails its validation rules.

    Parameters
    ----------
    kind
        Identifier kind (for example ``"environment name"``).
    value
        The rejected input.
    reason
        Why the input was rejected.

    Examples
    --------
    >>> str(NameValidationError("environment name", "Prod", "must be lowercase"))
    "Invalid environment name 'Prod': must be lowercase"
    """

    def __init__(self, kind: str, value: str, reason: str) -> None:
        self.kind = kind
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid {kind} {value!r}: {reason}")


class StateTypeError(DeployerError):
    """Raised when an envelope is restored as the wrong state.

    Parameters
    ----------
    expected
        The state name the caller asked for.
    actual
        The state name the envelope actually holds.

    Examples
    --------
    >>> err = StateTypeError(expected="configured", actual="provisioned")
    >>> (err.expected, err.actual)
    ('configured', 'provisioned')
    """

    def __init__(self, expected: str, actual: str) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(f"Invalid state: expected {expected!r}, found {actual!r}")


class InvalidTransitionError(DeployerError):
    """Raised when a transition is not an edge of the lifecycle graph."""

    def __init__(self, source: str, target: str) -> None:
        self.source = source
        self.target = target
        super().__init__(f"Transition from {source!r} to {target!r} is not allowed")


class EnvironmentConsumedError(DeployerError):
    """Raised when an aggregate is used after it has been transitioned."""

    def __init__(self, name: str, state: str) -> None:
        self.name = name
        self.state = state
        super().__init__(
            f"Environment {name!r} in state {state!r} was consumed by a transition"
        )


class ConfigurationError(DeployerError):
    """Raised when an environment configuration file is invalid."""


class RecordFormatError(DeployerError):
    """Raised when a persisted environment record cannot be decoded."""


class RepositoryError(DeployerError):
    """Base error for environment persistence failures."""

    retryable = False


class RepositoryNotFoundError(RepositoryError):
    """Raised when an operation requires a record that does not exist."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Environment {name!r} not found")


class RepositoryConflictError(RepositoryError):
    """Raised when another process holds the environment lock.

    The operation may succeed if retried once the other process finishes.
    """

    retryable = True

    def __init__(self, name: str, holder_pid: int | None = None) -> None:
        self.name = name
        self.holder_pid = holder_pid
        holder = f" (held by PID {holder_pid})" if holder_pid is not None else ""
        super().__init__(f"Environment {name!r} is locked by another process{holder}")


class RepositoryInternalError(RepositoryError):
    """Raised for I/O, serialization, and other unexpected storage faults."""


class TraceWriterError(DeployerError):
    """Raised when a failure trace file cannot be written."""


class TofuCommandError(DeployerError):
    """Raised when an OpenTofu command fails.

    Examples
    --------
    >>> raise TofuCommandError("tofu apply failed: exit status 1")
    Traceback (most recent call last):
    ...
    deployer._errors.TofuCommandError: tofu apply failed: exit status 1
    """


class RemoteCommandError(DeployerError):
    """Raised when an external command (ansible, ssh, docker) fails."""


class TemplateError(DeployerError):
    """Raised when deployment artefacts cannot be prepared in the build tree."""


class EnvironmentAlreadyExistsError(DeployerError):
    """Raised when creating an environment whose name is already taken."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Environment {name!r} already exists")


class EnvironmentNotFoundError(RepositoryNotFoundError):
    """Raised when a command targets an environment that was never created."""


class PurgeRefusedError(DeployerError):
    """Raised when purging an environment that still owns live resources."""


class WorkflowFailedError(DeployerError):
    """Raised after a workflow failure has been recorded and persisted.

    Parameters
    ----------
    workflow
        Workflow name (``provision``, ``configure`` ...).
    step
        Step that was executing when the failure happened.
    error_kind
        Category of the failure.
    trace_file_path
        Trace file written for the failure, when one could be written.
    """

    def __init__(
        self,
        workflow: str,
        step: str,
        error_kind: str,
        summary: str,
        trace_file_path: Path | None = None,
    ) -> None:
        self.workflow = workflow
        self.step = step
        self.error_kind = error_kind
        self.summary = summary
        self.trace_file_path = trace_file_path
        super().__init__(f"{workflow} failed at step {step!r}: {summary}")


__all__ = [
    "ConfigurationError",
    "DeployerError",
    "EnvironmentAlreadyExistsError",
    "EnvironmentConsumedError",
    "EnvironmentNotFoundError",
    "InvalidTransitionError",
    "NameValidationError",
    "PurgeRefusedError",
    "RecordFormatError",
    "RemoteCommandError",
    "RepositoryConflictError",
    "RepositoryError",
    "RepositoryInternalError",
    "RepositoryNotFoundError",
    "StateTypeError",
    "TemplateError",
    "TofuCommandError",
    "TraceWriterError",
    "WorkflowFailedError",
]
