"""The environment aggregate and its type-erased envelope.

An :class:`Environment` couples the state-independent
:class:`~deployer._models.EnvironmentContext` with one lifecycle state
marker. Transitions never mutate: each returns a new aggregate holding the
destination state and marks the receiver as consumed, after which any use
of the receiver raises :class:`~deployer._errors.EnvironmentConsumedError`.

:class:`AnyEnvironmentState` is the uniform form an aggregate takes at the
persistence boundary. Command handlers load an envelope, restore it with the
``try_into_<state>`` method matching the state they expect, and erase the
result again before saving.

Examples
--------
>>> import datetime as dt
>>> from pathlib import Path
>>> from deployer._models import LxdConfig, SshCredentials
>>> from deployer._names import ProfileName, Username
>>> env = Environment.create(
...     name=EnvironmentName("dev"),
...     provider_config=LxdConfig(ProfileName("torrust-profile-dev")),
...     ssh_credentials=SshCredentials(
...         Path("/keys/id"), Path("/keys/id.pub"), Username("torrust")
...     ),
...     working_dir=Path("/work"),
...     created_at=dt.datetime(2025, 1, 1, tzinfo=dt.UTC),
... )
>>> provisioned = env.start_provisioning().provisioned("192.168.1.10")
>>> str(provisioned.instance_ip)
'192.168.1.10'
>>> provisioned.into_any().state_name
'provisioned'
"""

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Generic, TypeVar

from deployer._errors import (
    EnvironmentConsumedError,
    InvalidTransitionError,
    StateTypeError,
)
from deployer._failure_context import (
    ConfigureFailureContext,
    DestroyFailureContext,
    ProvisionFailureContext,
    ReleaseFailureContext,
    RunFailureContext,
    WorkflowFailureContext,
)
from deployer._models import (
    DEFAULT_SSH_PORT,
    EnvironmentContext,
    InternalConfig,
    IpAddress,
    ProviderConfig,
    ProvisionMethod,
    SshCredentials,
    TrackerConfig,
    UserInputs,
    parse_ip_address,
)
from deployer._names import EnvironmentName, InstanceName
from deployer._states import (
    DESTROYABLE_STATES,
    ConfigureFailed,
    Configured,
    Configuring,
    Created,
    DestroyFailed,
    Destroyed,
    Destroying,
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

logger = logging.getLogger(__name__)

S = TypeVar("S", bound=State)
T = TypeVar("T", bound=State)


class Environment(Generic[S]):
    """A deployment environment in lifecycle state ``S``.

    Parameters
    ----------
    context
        State-independent data of the environment.
    state
        Lifecycle state marker.
    """

    __slots__ = ("_consumed", "_context", "_state")
    __hash__ = None  # type: ignore[assignment]

    def __init__(self, context: EnvironmentContext, state: S) -> None:
        self._context = context
        self._state = state
        self._consumed = False

    @classmethod
    def create(
        cls,
        *,
        name: EnvironmentName,
        provider_config: ProviderConfig,
        ssh_credentials: SshCredentials,
        working_dir: Path,
        created_at: dt.datetime,
        instance_name: InstanceName | None = None,
        ssh_port: int = DEFAULT_SSH_PORT,
        tracker: TrackerConfig | None = None,
    ) -> Environment[Created]:
        """Build a new environment in the ``created`` state.

        Parameters
        ----------
        name
            Unique environment name.
        provider_config
            Infrastructure provider settings.
        ssh_credentials
            SSH key pair and account for the instance.
        working_dir
            Root under which ``build/<name>`` and ``data/<name>`` are derived.
        created_at
            Creation timestamp, normally taken from the injected clock.
        instance_name
            Instance name; derived from ``name`` when omitted.
        ssh_port
            SSH port of the instance.
        tracker
            Tracker configuration snapshot; defaults when omitted.

        Returns
        -------
        Environment[Created]
            The new aggregate.
        """

        user_inputs = UserInputs(
            name=name,
            instance_name=instance_name or InstanceName.for_environment(name),
            provider_config=provider_config,
            ssh_credentials=ssh_credentials,
            ssh_port=ssh_port,
            tracker=tracker or TrackerConfig(),
        )
        context = EnvironmentContext(
            user_inputs=user_inputs,
            internal_config=InternalConfig.for_environment(working_dir, name),
            created_at=created_at,
        )
        return Environment(context, Created())

    def __repr__(self) -> str:
        consumed = ", consumed" if self._consumed else ""
        return (
            f"Environment(name={self._context.user_inputs.name.value!r}, "
            f"state={self._state.name!r}{consumed})"
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Environment):
            return NotImplemented
        return self._context == other._context and self._state == other._state

    def _ensure_usable(self) -> None:
        if self._consumed:
            raise EnvironmentConsumedError(
                self._context.user_inputs.name.value, self._state.name
            )

    def _transition(
        self,
        sources: type[State] | tuple[type[State], ...],
        new_state: T,
        context: EnvironmentContext | None = None,
    ) -> Environment[T]:
        """Move to ``new_state``, requiring the current state to be one of ``sources``."""

        self._ensure_usable()
        if not isinstance(sources, tuple):
            sources = (sources,)
        if type(self._state) not in sources:
            raise InvalidTransitionError(self._state.name, new_state.name)
        ensure_transition(type(self._state), type(new_state))
        self._consumed = True
        logger.info(
            "Environment %s transitioned from %s to %s",
            self._context.user_inputs.name,
            self._state.name,
            new_state.name,
        )
        return Environment(context if context is not None else self._context, new_state)

    @property
    def is_consumed(self) -> bool:
        return self._consumed

    @property
    def context(self) -> EnvironmentContext:
        self._ensure_usable()
        return self._context

    @property
    def state(self) -> S:
        self._ensure_usable()
        return self._state

    @property
    def state_name(self) -> str:
        return self.state.name

    @property
    def name(self) -> EnvironmentName:
        return self.context.user_inputs.name

    @property
    def instance_name(self) -> InstanceName:
        return self.context.user_inputs.instance_name

    @property
    def provider_config(self) -> ProviderConfig:
        return self.context.user_inputs.provider_config

    @property
    def provider_name(self) -> str:
        return self.context.provider_name

    @property
    def ssh_credentials(self) -> SshCredentials:
        return self.context.user_inputs.ssh_credentials

    @property
    def ssh_port(self) -> int:
        return self.context.user_inputs.ssh_port

    @property
    def tracker(self) -> TrackerConfig:
        return self.context.user_inputs.tracker

    @property
    def build_dir(self) -> Path:
        return self.context.internal_config.build_dir

    @property
    def data_dir(self) -> Path:
        return self.context.internal_config.data_dir

    @property
    def created_at(self) -> dt.datetime:
        return self.context.created_at

    @property
    def instance_ip(self) -> IpAddress | None:
        return self.context.runtime_outputs.instance_ip

    @property
    def traces_dir(self) -> Path:
        return self.context.traces_dir

    @property
    def templates_dir(self) -> Path:
        return self.context.templates_dir

    @property
    def tofu_build_dir(self) -> Path:
        return self.context.tofu_build_dir

    @property
    def ansible_build_dir(self) -> Path:
        return self.context.ansible_build_dir

    @property
    def is_infrastructure_managed(self) -> bool:
        return self.context.is_infrastructure_managed

    # Provisioning

    def start_provisioning(self: Environment[Created]) -> Environment[Provisioning]:
        return self._transition(Created, Provisioning())

    def provisioned(
        self: Environment[Provisioning], instance_ip: str | IpAddress
    ) -> Environment[Provisioned]:
        """Record the new instance's address and finish provisioning."""

        context = self.context.with_runtime_outputs(
            parse_ip_address(instance_ip), ProvisionMethod.PROVISIONED
        )
        return self._transition(Provisioning, Provisioned(), context)

    def provision_failed(
        self: Environment[Provisioning], context: ProvisionFailureContext
    ) -> Environment[ProvisionFailed]:
        return self._transition(Provisioning, ProvisionFailed(context))

    def register(
        self: Environment[Created], instance_ip: str | IpAddress
    ) -> Environment[Provisioned]:
        """Adopt an existing instance instead of provisioning a new one.

        The environment skips ``provisioning`` and its infrastructure is marked
        as unmanaged, so destroying it never touches the instance.
        """

        context = self.context.with_runtime_outputs(
            parse_ip_address(instance_ip), ProvisionMethod.REGISTERED
        )
        return self._transition(Created, Provisioned(), context)

    # Configuration

    def start_configuring(self: Environment[Provisioned]) -> Environment[Configuring]:
        return self._transition(Provisioned, Configuring())

    def configured(self: Environment[Configuring]) -> Environment[Configured]:
        return self._transition(Configuring, Configured())

    def configure_failed(
        self: Environment[Configuring], context: ConfigureFailureContext
    ) -> Environment[ConfigureFailed]:
        return self._transition(Configuring, ConfigureFailed(context))

    # Release

    def start_releasing(self: Environment[Configured]) -> Environment[Releasing]:
        return self._transition(Configured, Releasing())

    def released(self: Environment[Releasing]) -> Environment[Released]:
        return self._transition(Releasing, Released())

    def release_failed(
        self: Environment[Releasing], context: ReleaseFailureContext
    ) -> Environment[ReleaseFailed]:
        return self._transition(Releasing, ReleaseFailed(context))

    # Run

    def start_running(self: Environment[Released]) -> Environment[Running]:
        return self._transition(Released, Running())

    def run_failed(
        self: Environment[Running], context: RunFailureContext
    ) -> Environment[RunFailed]:
        return self._transition(Running, RunFailed(context))

    # Destruction

    def start_destroying(self) -> Environment[Destroying]:
        """Begin destruction from any state with a ``destroying`` edge."""

        return self._transition(DESTROYABLE_STATES, Destroying())

    def destroyed(self: Environment[Destroying]) -> Environment[Destroyed]:
        return self._transition(Destroying, Destroyed())

    def destroy_failed(
        self: Environment[Destroying], context: DestroyFailureContext
    ) -> Environment[DestroyFailed]:
        return self._transition(Destroying, DestroyFailed(context))

    # Type erasure

    def to_any(self) -> AnyEnvironmentState:
        """Return an envelope of the current value without consuming it."""

        self._ensure_usable()
        return AnyEnvironmentState(self._context, self._state)

    def into_any(self) -> AnyEnvironmentState:
        """Erase the aggregate into an envelope, consuming it."""

        envelope = self.to_any()
        self._consumed = True
        return envelope


@dataclass(frozen=True, slots=True)
class AnyEnvironmentState:
    """An environment in any lifecycle state.

    The envelope is an immutable snapshot; restoring it never affects it, so
    the same envelope may be restored more than once. Restoring to a state
    other than the one held raises :class:`~deployer._errors.StateTypeError`
    naming both the expected and the actual state.
    """

    context: EnvironmentContext
    state: State

    def __str__(self) -> str:
        text = f"Environment '{self.name}' is in state: {self.state_name}"
        if (details := self.error_details) is not None:
            text += f" (failed at: {details})"
        return text

    def try_into(self, state_type: type[T]) -> Environment[T]:
        """Restore a typed aggregate, requiring the envelope to hold ``state_type``."""

        if type(self.state) is not state_type:
            raise StateTypeError(expected=state_type.name, actual=self.state_name)
        return Environment(self.context, self.state)

    def try_into_created(self) -> Environment[Created]:
        return self.try_into(Created)

    def try_into_provisioning(self) -> Environment[Provisioning]:
        return self.try_into(Provisioning)

    def try_into_provisioned(self) -> Environment[Provisioned]:
        return self.try_into(Provisioned)

    def try_into_configuring(self) -> Environment[Configuring]:
        return self.try_into(Configuring)

    def try_into_configured(self) -> Environment[Configured]:
        return self.try_into(Configured)

    def try_into_releasing(self) -> Environment[Releasing]:
        return self.try_into(Releasing)

    def try_into_released(self) -> Environment[Released]:
        return self.try_into(Released)

    def try_into_running(self) -> Environment[Running]:
        return self.try_into(Running)

    def try_into_destroying(self) -> Environment[Destroying]:
        return self.try_into(Destroying)

    def try_into_destroyed(self) -> Environment[Destroyed]:
        return self.try_into(Destroyed)

    def try_into_provision_failed(self) -> Environment[ProvisionFailed]:
        return self.try_into(ProvisionFailed)

    def try_into_configure_failed(self) -> Environment[ConfigureFailed]:
        return self.try_into(ConfigureFailed)

    def try_into_release_failed(self) -> Environment[ReleaseFailed]:
        return self.try_into(ReleaseFailed)

    def try_into_run_failed(self) -> Environment[RunFailed]:
        return self.try_into(RunFailed)

    def try_into_destroy_failed(self) -> Environment[DestroyFailed]:
        return self.try_into(DestroyFailed)

    @property
    def state_name(self) -> str:
        return self.state.name

    @property
    def name(self) -> EnvironmentName:
        return self.context.user_inputs.name

    @property
    def instance_name(self) -> InstanceName:
        return self.context.user_inputs.instance_name

    @property
    def provider_config(self) -> ProviderConfig:
        return self.context.user_inputs.provider_config

    @property
    def provider_name(self) -> str:
        return self.context.provider_name

    @property
    def ssh_credentials(self) -> SshCredentials:
        return self.context.user_inputs.ssh_credentials

    @property
    def ssh_port(self) -> int:
        return self.context.user_inputs.ssh_port

    @property
    def tracker(self) -> TrackerConfig:
        return self.context.user_inputs.tracker

    @property
    def instance_ip(self) -> IpAddress | None:
        return self.context.runtime_outputs.instance_ip

    @property
    def created_at(self) -> dt.datetime:
        return self.context.created_at

    @property
    def build_dir(self) -> Path:
        return self.context.internal_config.build_dir

    @property
    def data_dir(self) -> Path:
        return self.context.internal_config.data_dir

    @property
    def tofu_build_dir(self) -> Path:
        return self.context.tofu_build_dir

    @property
    def traces_dir(self) -> Path:
        return self.context.traces_dir

    @property
    def failure_context(self) -> WorkflowFailureContext | None:
        return self.state.failure_context

    @property
    def error_details(self) -> str | None:
        """Summary of the failure for failure states, ``None`` otherwise."""

        context = self.failure_context
        return context.error_summary if context is not None else None

    @property
    def is_success_state(self) -> bool:
        return self.state.is_success_state

    @property
    def is_error_state(self) -> bool:
        return self.state.is_error_state

    @property
    def is_terminal_state(self) -> bool:
        return self.state.is_terminal_state


__all__ = ["AnyEnvironmentState", "Environment"]
