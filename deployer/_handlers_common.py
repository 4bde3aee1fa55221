"""Machinery shared by the workflow command handlers.

Every workflow handler follows the same shape: load the envelope, restore it
to the state it expects, enter the in-progress state and persist, run its
steps while a :class:`StepTracker` remembers which one is executing, and
finally persist either the success state or a failure state carrying a
context built by :meth:`WorkflowHandler.capture_failure`.
"""

from __future__ import annotations

import dataclasses
import datetime as dt
import logging
from collections import abc as cabc
from dataclasses import dataclass, field
from typing import NoReturn, TypeVar

from deployer._environment import AnyEnvironmentState, Environment
from deployer._errors import (
    EnvironmentNotFoundError,
    RepositoryError,
    TemplateError,
    TofuCommandError,
    TraceWriterError,
    WorkflowFailedError,
)
from deployer._failure_context import (
    Clock,
    ErrorKind,
    SystemClock,
    TraceId,
    WorkflowFailureContext,
    WorkflowStep,
    build_base_failure_context,
)
from deployer._names import EnvironmentName
from deployer._repository import EnvironmentRepository, TypedEnvironmentRepository
from deployer._trace_writer import TraceWriter

logger = logging.getLogger(__name__)

R = TypeVar("R")
C = TypeVar("C", bound=WorkflowFailureContext)

INTERRUPTED_SUMMARY = "Interrupted by user"


def classify_error(error: BaseException, default: ErrorKind) -> ErrorKind:
    """Return the error kind implied by ``error``, falling back to ``default``.

    Examples
    --------
    >>> classify_error(TemplateError("missing"), ErrorKind.COMMAND_EXECUTION)
    <ErrorKind.TEMPLATE_RENDERING: 'TemplateRendering'>
    >>> classify_error(ValueError("boom"), ErrorKind.CONFIGURATION)
    <ErrorKind.CONFIGURATION: 'Configuration'>
    """

    match error:
        case KeyboardInterrupt():
            return ErrorKind.COMMAND_EXECUTION
        case RepositoryError():
            return ErrorKind.STATE_PERSISTENCE
        case TemplateError():
            return ErrorKind.TEMPLATE_RENDERING
        case TofuCommandError():
            return ErrorKind.INFRASTRUCTURE_OPERATION
        case _:
            return default


def summarize_error(error: BaseException) -> str:
    if isinstance(error, KeyboardInterrupt):
        return INTERRUPTED_SUMMARY
    return str(error) or type(error).__name__


@dataclass(slots=True)
class StepTracker:
    """Remember which step of a workflow is executing.

    Examples
    --------
    >>> from deployer._failure_context import RunStep, SystemClock
    >>> tracker = StepTracker("run", SystemClock())
    >>> tracker.run(RunStep.START_SERVICES, ErrorKind.COMMAND_EXECUTION, lambda: "up")
    'up'
    >>> tracker.current_step
    <RunStep.START_SERVICES: 'StartServices'>
    """

    workflow: str
    clock: Clock
    started_at: dt.datetime = field(init=False)
    current_step: WorkflowStep | None = field(default=None, init=False)
    current_error_kind: ErrorKind = field(default=ErrorKind.COMMAND_EXECUTION, init=False)

    def __post_init__(self) -> None:
        self.started_at = self.clock.now()

    def run(
        self,
        step: WorkflowStep,
        error_kind: ErrorKind,
        action: cabc.Callable[..., R],
        *args: object,
    ) -> R:
        self.current_step = step
        self.current_error_kind = error_kind
        logger.info("[%s] %s", self.workflow, step.description)
        return action(*args)


class WorkflowHandler:
    """Base class holding the dependencies every workflow handler needs.

    Parameters
    ----------
    repository
        Where environments are loaded from and persisted to.
    clock
        Time source for failure timestamps and trace file names.
    trace_id_factory
        Generator of per-attempt correlation identifiers.
    """

    workflow = "workflow"

    def __init__(
        self,
        repository: EnvironmentRepository,
        clock: Clock | None = None,
        trace_id_factory: cabc.Callable[[], TraceId] = TraceId.new,
    ) -> None:
        self.repository = TypedEnvironmentRepository(repository)
        self.clock = clock or SystemClock()
        self.trace_id_factory = trace_id_factory

    def load(self, name: EnvironmentName) -> AnyEnvironmentState:
        envelope = self.repository.load(name)
        if envelope is None:
            raise EnvironmentNotFoundError(name.value)
        return envelope

    def new_tracker(self) -> StepTracker:
        return StepTracker(self.workflow, self.clock)

    def capture_failure(
        self,
        context_type: type[C],
        environment: Environment,
        tracker: StepTracker,
        error: BaseException,
    ) -> C:
        """Build the failure context for ``error`` and write its trace file.

        A trace file that cannot be written is logged and left out of the
        context; the failure itself is still recorded.
        """

        if tracker.current_step is None:
            msg = f"{self.workflow} failed before any step started"
            raise RuntimeError(msg) from error
        base = build_base_failure_context(
            self.clock,
            started_at=tracker.started_at,
            error_summary=summarize_error(error),
            trace_id_factory=self.trace_id_factory,
        )
        context = context_type(
            failed_step=tracker.current_step,
            error_kind=classify_error(error, tracker.current_error_kind),
            base=base,
        )
        writer = TraceWriter(environment.traces_dir, self.clock)
        try:
            trace_path = writer.write(context, error)
        except TraceWriterError as exc:
            logger.warning("Could not write %s trace: %s", self.workflow, exc)
            return context
        return dataclasses.replace(context, base=base.with_trace_file(trace_path))

    def fail(
        self,
        failed: Environment,
        context: WorkflowFailureContext,
        error: BaseException,
    ) -> NoReturn:
        """Persist ``failed`` and raise the error callers should see.

        ``KeyboardInterrupt`` is re-raised as is; anything else surfaces as
        :class:`~deployer._errors.WorkflowFailedError` chained to ``error``.
        """

        self.repository.save(failed)
        logger.error(
            "%s of environment %s failed at %s: %s",
            self.workflow,
            failed.name,
            context.failed_step,
            context.error_summary,
        )
        if isinstance(error, KeyboardInterrupt):
            raise error
        raise WorkflowFailedError(
            workflow=self.workflow,
            step=str(context.failed_step),
            error_kind=str(context.error_kind),
            summary=context.error_summary,
            trace_file_path=context.trace_file_path,
        ) from error


__all__ = [
    "StepTracker",
    "WorkflowHandler",
    "classify_error",
    "summarize_error",
]
