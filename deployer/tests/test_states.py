"""Unit tests for lifecycle state markers and the transition graph."""

from __future__ import annotations

from collections import abc as cabc

import pytest

from deployer._errors import InvalidTransitionError
from deployer._failure_context import (
    ErrorKind,
    ProvisionFailureContext,
    RunFailureContext,
    WorkflowFailureContext,
)
from deployer._states import (
    ALLOWED_TRANSITIONS,
    DESTROYABLE_STATES,
    STATE_TYPES,
    STATE_TYPES_BY_NAME,
    ConfigureFailed,
    Configured,
    Configuring,
    Created,
    DestroyFailed,
    Destroyed,
    Destroying,
    FailedState,
    ProvisionFailed,
    Provisioned,
    Provisioning,
    ReleaseFailed,
    Released,
    Releasing,
    RunFailed,
    Running,
    State,
    ensure_transition,
)


def test_state_names_are_unique_snake_case() -> None:
    names = [state.name for state in STATE_TYPES]
    assert len(set(names)) == len(STATE_TYPES) == 15
    assert STATE_TYPES_BY_NAME["provision_failed"] is ProvisionFailed
    assert all(name == name.lower() for name in names)


def test_every_state_has_a_transition_entry() -> None:
    assert set(ALLOWED_TRANSITIONS) == set(STATE_TYPES)


@pytest.mark.parametrize(
    ("source", "target"),
    [
        (Created, Provisioning),
        (Created, Provisioned),
        (Provisioning, Provisioned),
        (Provisioning, ProvisionFailed),
        (Provisioned, Configuring),
        (Configuring, Configured),
        (Configuring, ConfigureFailed),
        (Configured, Releasing),
        (Releasing, Released),
        (Releasing, ReleaseFailed),
        (Released, Running),
        (Running, RunFailed),
        (Destroying, Destroyed),
        (Destroying, DestroyFailed),
        (DestroyFailed, Destroying),
    ],
)
def test_lifecycle_edges_are_allowed(source: type[State], target: type[State]) -> None:
    ensure_transition(source, target)


@pytest.mark.parametrize(
    ("source", "target"),
    [
        (Created, Configuring),
        (Created, Destroying),
        (Provisioning, Destroying),
        (Configuring, Destroying),
        (Releasing, Destroying),
        (Provisioned, Released),
        (Running, Released),
        (Destroyed, Destroying),
        (Destroyed, Created),
    ],
)
def test_non_edges_are_rejected(source: type[State], target: type[State]) -> None:
    with pytest.raises(InvalidTransitionError) as excinfo:
        ensure_transition(source, target)
    assert (excinfo.value.source, excinfo.value.target) == (source.name, target.name)


def test_destroyable_states() -> None:
    assert set(DESTROYABLE_STATES) == {
        Provisioned,
        Configured,
        Released,
        Running,
        ProvisionFailed,
        ConfigureFailed,
        ReleaseFailed,
        RunFailed,
        DestroyFailed,
    }


def test_destroyed_has_no_outgoing_edges() -> None:
    assert ALLOWED_TRANSITIONS[Destroyed] == frozenset()


@pytest.mark.parametrize("state_type", STATE_TYPES)
def test_state_classification(
    state_type: type[State], make_state: cabc.Callable[[type[State]], State]
) -> None:
    state = make_state(state_type)
    is_failure = issubclass(state_type, FailedState)
    assert state.is_error_state is is_failure
    assert state.is_success_state is not is_failure
    assert (state.failure_context is not None) is is_failure
    expected_terminal = is_failure or state_type in (Running, Destroyed)
    assert state.is_terminal_state is expected_terminal


def test_failed_state_rejects_context_of_another_workflow(
    make_failure: cabc.Callable[..., WorkflowFailureContext],
) -> None:
    with pytest.raises(TypeError, match="ProvisionFailureContext"):
        ProvisionFailed(make_failure(RunFailureContext))


def test_failed_state_exposes_context(
    make_failure: cabc.Callable[..., WorkflowFailureContext],
) -> None:
    context = make_failure(ProvisionFailureContext, error_kind=ErrorKind.CONFIGURATION)
    state = ProvisionFailed(context)
    assert state.failure_context is context
    assert state.failure_context.error_kind is ErrorKind.CONFIGURATION
