"""Lifecycle state markers and the transition graph.

Each lifecycle state is a small frozen marker. Success and in-progress
markers carry no data; failure markers carry the failure context that
explains what went wrong. ``ALLOWED_TRANSITIONS`` is the single source of
truth for which state may follow which.

Examples
--------
>>> Provisioning in ALLOWED_TRANSITIONS[Created]
True
>>> ensure_transition(Created, Configuring)
Traceback (most recent call last):
...
deployer._errors.InvalidTransitionError: Transition from 'created' to 'configuring' is not allowed
"""

from __future__ import annotations

from collections import abc as cabc
from dataclasses import dataclass
from typing import ClassVar

from deployer._errors import InvalidTransitionError
from deployer._failure_context import (
    ConfigureFailureContext,
    DestroyFailureContext,
    ProvisionFailureContext,
    ReleaseFailureContext,
    RunFailureContext,
    WorkflowFailureContext,
)


@dataclass(frozen=True, slots=True)
class State:
    """Base class of every lifecycle state marker."""

    name: ClassVar[str]
    is_error_state: ClassVar[bool] = False
    is_terminal_state: ClassVar[bool] = False

    @property
    def is_success_state(self) -> bool:
        return not self.is_error_state

    @property
    def failure_context(self) -> WorkflowFailureContext | None:
        return None


@dataclass(frozen=True, slots=True)
class Created(State):
    name: ClassVar[str] = "created"


@dataclass(frozen=True, slots=True)
class Provisioning(State):
    name: ClassVar[str] = "provisioning"


@dataclass(frozen=True, slots=True)
class Provisioned(State):
    name: ClassVar[str] = "provisioned"


@dataclass(frozen=True, slots=True)
class Configuring(State):
    name: ClassVar[str] = "configuring"


@dataclass(frozen=True, slots=True)
class Configured(State):
    name: ClassVar[str] = "configured"


@dataclass(frozen=True, slots=True)
class Releasing(State):
    name: ClassVar[str] = "releasing"


@dataclass(frozen=True, slots=True)
class Released(State):
    name: ClassVar[str] = "released"


@dataclass(frozen=True, slots=True)
class Running(State):
    name: ClassVar[str] = "running"
    is_terminal_state: ClassVar[bool] = True


@dataclass(frozen=True, slots=True)
class Destroying(State):
    name: ClassVar[str] = "destroying"


@dataclass(frozen=True, slots=True)
class Destroyed(State):
    name: ClassVar[str] = "destroyed"
    is_terminal_state: ClassVar[bool] = True


@dataclass(frozen=True, slots=True)
class FailedState(State):
    """Failure marker; ``context`` records where and why the workflow failed."""

    context_type: ClassVar[type]
    is_error_state: ClassVar[bool] = True
    is_terminal_state: ClassVar[bool] = True

    context: WorkflowFailureContext

    def __post_init__(self) -> None:
        if not isinstance(self.context, self.context_type):
            msg = (
                f"{type(self).__name__} requires a {self.context_type.__name__}, "
                f"got {type(self.context).__name__}"
            )
            raise TypeError(msg)

    @property
    def failure_context(self) -> WorkflowFailureContext:
        return self.context


@dataclass(frozen=True, slots=True)
class ProvisionFailed(FailedState):
    name: ClassVar[str] = "provision_failed"
    context_type: ClassVar[type] = ProvisionFailureContext


@dataclass(frozen=True, slots=True)
class ConfigureFailed(FailedState):
    name: ClassVar[str] = "configure_failed"
    context_type: ClassVar[type] = ConfigureFailureContext


@dataclass(frozen=True, slots=True)
class ReleaseFailed(FailedState):
    name: ClassVar[str] = "release_failed"
    context_type: ClassVar[type] = ReleaseFailureContext


@dataclass(frozen=True, slots=True)
class RunFailed(FailedState):
    name: ClassVar[str] = "run_failed"
    context_type: ClassVar[type] = RunFailureContext


@dataclass(frozen=True, slots=True)
class DestroyFailed(FailedState):
    name: ClassVar[str] = "destroy_failed"
    context_type: ClassVar[type] = DestroyFailureContext


STATE_TYPES: tuple[type[State], ...] = (
    Created,
    Provisioning,
    Provisioned,
    Configuring,
    Configured,
    Releasing,
    Released,
    Running,
    Destroying,
    Destroyed,
    ProvisionFailed,
    ConfigureFailed,
    ReleaseFailed,
    RunFailed,
    DestroyFailed,
)

STATE_TYPES_BY_NAME: cabc.Mapping[str, type[State]] = {
    state_type.name: state_type for state_type in STATE_TYPES
}

ALLOWED_TRANSITIONS: cabc.Mapping[type[State], frozenset[type[State]]] = {
    Created: frozenset({Provisioning, Provisioned}),
    Provisioning: frozenset({Provisioned, ProvisionFailed}),
    Provisioned: frozenset({Configuring, Destroying}),
    Configuring: frozenset({Configured, ConfigureFailed}),
    Configured: frozenset({Releasing, Destroying}),
    Releasing: frozenset({Released, ReleaseFailed}),
    Released: frozenset({Running, Destroying}),
    Running: frozenset({RunFailed, Destroying}),
    ProvisionFailed: frozenset({Destroying}),
    ConfigureFailed: frozenset({Destroying}),
    ReleaseFailed: frozenset({Destroying}),
    RunFailed: frozenset({Destroying}),
    Destroying: frozenset({Destroyed, DestroyFailed}),
    DestroyFailed: frozenset({Destroying}),
    Destroyed: frozenset(),
}

DESTROYABLE_STATES: tuple[type[State], ...] = tuple(
    source for source in STATE_TYPES if Destroying in ALLOWED_TRANSITIONS[source]
)


def ensure_transition(source: type[State], target: type[State]) -> None:
    """Raise :class:`InvalidTransitionError` unless ``source -> target`` is an edge."""

    if target not in ALLOWED_TRANSITIONS[source]:
        raise InvalidTransitionError(source.name, target.name)


__all__ = [
    "ALLOWED_TRANSITIONS",
    "DESTROYABLE_STATES",
    "STATE_TYPES",
    "STATE_TYPES_BY_NAME",
    "ConfigureFailed",
    "Configured",
    "Configuring",
    "Created",
    "DestroyFailed",
    "Destroyed",
    "Destroying",
    "FailedState",
    "ProvisionFailed",
    "Provisioned",
    "Provisioning",
    "ReleaseFailed",
    "Released",
    "Releasing",
    "RunFailed",
    "Running",
    "State",
    "ensure_transition",
]
