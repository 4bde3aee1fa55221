from __future__ import annotations

import datetime as dt
import sys
from collections import abc as cabc
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from deployer._environment import Environment  # noqa: E402
from deployer._failure_context import (  # noqa: E402
    ConfigureFailureContext,
    ConfigureStep,
    DestroyFailureContext,
    DestroyStep,
    ErrorKind,
    FixedClock,
    ProvisionFailureContext,
    ProvisionStep,
    ReleaseFailureContext,
    ReleaseStep,
    RunFailureContext,
    RunStep,
    TraceId,
    WorkflowFailureContext,
    build_base_failure_context,
)
from deployer._models import LxdConfig, SshCredentials, TrackerConfig  # noqa: E402
from deployer._names import EnvironmentName, ProfileName, Username  # noqa: E402
from deployer._repository import InMemoryEnvironmentRepository  # noqa: E402
from deployer._states import Created, FailedState, State  # noqa: E402

START = dt.datetime(2025, 10, 7, 12, 0, 0, tzinfo=dt.UTC)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(START)


@pytest.fixture
def repository() -> InMemoryEnvironmentRepository:
    return InMemoryEnvironmentRepository()


@pytest.fixture
def ssh_keys(tmp_path: Path) -> SshCredentials:
    key_dir = tmp_path / "keys"
    key_dir.mkdir()
    private_key = key_dir / "id_torrust"
    public_key = key_dir / "id_torrust.pub"
    private_key.write_text("private\n", encoding="utf-8")
    public_key.write_text("ssh-ed25519 AAAA test\n", encoding="utf-8")
    return SshCredentials(private_key, public_key, Username("torrust"))


@pytest.fixture
def make_environment(
    tmp_path: Path, ssh_keys: SshCredentials
) -> cabc.Callable[..., Environment[Created]]:
    """Return a factory building ``created`` environments under ``tmp_path``."""

    def factory(
        name: str = "e2e-full",
        tracker: TrackerConfig | None = None,
        created_at: dt.datetime = START,
    ) -> Environment[Created]:
        env_name = EnvironmentName(name)
        return Environment.create(
            name=env_name,
            provider_config=LxdConfig(ProfileName.for_environment(env_name)),
            ssh_credentials=ssh_keys,
            working_dir=tmp_path / "work",
            created_at=created_at,
            tracker=tracker,
        )

    return factory


FAILURE_STEPS = {
    ProvisionFailureContext: ProvisionStep.OPENTOFU_APPLY,
    ConfigureFailureContext: ConfigureStep.INSTALL_DOCKER,
    ReleaseFailureContext: ReleaseStep.RENDER_TRACKER_TEMPLATES,
    RunFailureContext: RunStep.START_SERVICES,
    DestroyFailureContext: DestroyStep.DESTROY_INFRASTRUCTURE,
}


@pytest.fixture
def make_failure(clock: FixedClock) -> cabc.Callable[..., WorkflowFailureContext]:
    """Return a factory building failure contexts of a given type."""

    def factory(
        context_type: type[WorkflowFailureContext],
        summary: str = "tofu apply failed",
        error_kind: ErrorKind = ErrorKind.INFRASTRUCTURE_OPERATION,
    ) -> WorkflowFailureContext:
        base = build_base_failure_context(
            clock,
            started_at=START - dt.timedelta(seconds=42),
            error_summary=summary,
            trace_id_factory=lambda: TraceId("7f3c2a9e-0000-4000-8000-000000000001"),
        )
        return context_type(
            failed_step=FAILURE_STEPS[context_type],
            error_kind=error_kind,
            base=base,
        )

    return factory


@pytest.fixture
def make_state(
    make_failure: cabc.Callable[..., WorkflowFailureContext],
) -> cabc.Callable[[type[State]], State]:
    """Return a factory building a marker of any state type."""

    def factory(state_type: type[State]) -> State:
        if issubclass(state_type, FailedState):
            return state_type(make_failure(state_type.context_type))
        return state_type()

    return factory
