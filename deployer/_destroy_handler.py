"""Command handler tearing an environment down.

Destroying is allowed from every state with a ``destroying`` edge, re-enters
an interrupted ``destroying`` environment without a new transition, and
returns an already ``destroyed`` environment unchanged.
"""

from __future__ import annotations

import logging
import shutil
from collections import abc as cabc

from deployer._collaborators import InfrastructureProvisioner
from deployer._environment import AnyEnvironmentState, Environment
from deployer._errors import StateTypeError
from deployer._failure_context import (
    Clock,
    DestroyFailureContext,
    DestroyStep,
    ErrorKind,
    TraceId,
)
from deployer._handlers_common import WorkflowHandler
from deployer._models import EnvironmentContext
from deployer._names import EnvironmentName
from deployer._repository import EnvironmentRepository
from deployer._states import DESTROYABLE_STATES, Destroyed, Destroying

logger = logging.getLogger(__name__)


def should_destroy_infrastructure(context: EnvironmentContext) -> bool:
    """Whether OpenTofu must run to destroy the environment's instance.

    True only for infrastructure the deployer created whose OpenTofu build
    directory still exists; the state the environment came from is irrelevant.
    """

    return context.is_infrastructure_managed and context.tofu_build_dir.exists()


def cleanup_state_files(context: EnvironmentContext) -> None:
    """Remove the environment's data and build directories."""

    for directory in (context.internal_config.data_dir, context.internal_config.build_dir):
        if directory.exists():
            shutil.rmtree(directory)
            logger.info("Removed %s", directory)


class DestroyHandler(WorkflowHandler):
    """Destroy infrastructure and local state of an environment.

    Parameters
    ----------
    repository
        Where environments are loaded from and persisted to.
    provisioner
        Collaborator destroying managed infrastructure.
    """

    workflow = "destroy"

    def __init__(
        self,
        repository: EnvironmentRepository,
        provisioner: InfrastructureProvisioner,
        clock: Clock | None = None,
        trace_id_factory: cabc.Callable[[], TraceId] = TraceId.new,
    ) -> None:
        super().__init__(repository, clock, trace_id_factory)
        self.provisioner = provisioner

    def _enter_destroying(self, envelope: AnyEnvironmentState) -> Environment[Destroying]:
        if isinstance(envelope.state, Destroying):
            logger.info("Environment %s is already being destroyed; resuming", envelope.name)
            return envelope.try_into_destroying()
        state_type = type(envelope.state)
        if state_type not in DESTROYABLE_STATES:
            expected = " | ".join(state.name for state in DESTROYABLE_STATES)
            raise StateTypeError(expected=expected, actual=envelope.state_name)
        destroying = envelope.try_into(state_type).start_destroying()
        self.repository.save(destroying)
        return destroying

    def execute(self, name: EnvironmentName) -> Environment[Destroyed]:
        envelope = self.load(name)
        if isinstance(envelope.state, Destroyed):
            logger.info("Environment %s is already destroyed", name)
            return envelope.try_into_destroyed()

        destroying = self._enter_destroying(envelope)
        context = destroying.context
        tracker = self.new_tracker()
        try:
            if should_destroy_infrastructure(context):
                tracker.run(
                    DestroyStep.DESTROY_INFRASTRUCTURE,
                    ErrorKind.INFRASTRUCTURE_OPERATION,
                    self.provisioner.destroy,
                    context,
                )
            elif not context.is_infrastructure_managed:
                logger.warning(
                    "Environment %s uses a registered instance; "
                    "its infrastructure will not be destroyed",
                    name,
                )
            else:
                logger.info("No OpenTofu state for %s; skipping infrastructure", name)
            tracker.run(
                DestroyStep.CLEANUP_STATE_FILES,
                ErrorKind.FILE_SYSTEM,
                cleanup_state_files,
                context,
            )
        except (Exception, KeyboardInterrupt) as exc:
            failure = self.capture_failure(DestroyFailureContext, destroying, tracker, exc)
            self.fail(destroying.destroy_failed(failure), failure, exc)

        destroyed = destroying.destroyed()
        self.repository.save(destroyed)
        logger.info("Environment %s destroyed", name)
        return destroyed


__all__ = ["DestroyHandler", "cleanup_state_files", "should_destroy_infrastructure"]
