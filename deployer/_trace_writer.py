"""Trace files describing workflow failures in detail.

A trace file holds what does not fit in the persisted record: the full
chain of exceptions that led to the failure. The record only keeps the
trace file's path.
"""

from __future__ import annotations

import logging
from pathlib import Path

from deployer._errors import TraceWriterError
from deployer._failure_context import Clock, WorkflowFailureContext

logger = logging.getLogger(__name__)

_WIDTH = 63
_HEAVY_RULE = "═" * _WIDTH
_LIGHT_RULE = "─" * _WIDTH


def _header(title: str) -> str:
    return f"{_HEAVY_RULE}\n{title:^{_WIDTH}}\n{_HEAVY_RULE}\n\n"


def _section(title: str) -> str:
    return f"{_LIGHT_RULE}\n{title:^{_WIDTH}}\n{_LIGHT_RULE}\n\n"


def _footer() -> str:
    return f"\n{_HEAVY_RULE}\n{'END OF TRACE':^{_WIDTH}}\n{_HEAVY_RULE}\n"


def format_error_chain(error: BaseException) -> str:
    """Render ``error`` and its causes, one ``[Level N]`` line each.

    Examples
    --------
    >>> try:
    ...     try:
    ...         raise OSError("disk full")
    ...     except OSError as exc:
    ...         raise RuntimeError("save failed") from exc
    ... except RuntimeError as err:
    ...     print(format_error_chain(err), end="")
    [Level 0] RuntimeError: save failed
    [Level 1] OSError: disk full
    """

    lines: list[str] = []
    seen: set[int] = set()
    current: BaseException | None = error
    level = 0
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        lines.append(f"[Level {level}] {type(current).__name__}: {current}")
        current = current.__cause__ or (
            None if current.__suppress_context__ else current.__context__
        )
        level += 1
    return "\n".join(lines) + "\n"


def format_metadata(context: WorkflowFailureContext) -> str:
    base = context.base
    return (
        f"Trace ID: {base.trace_id}\n"
        f"Failed At: {base.failed_at.isoformat()}\n"
        f"Execution Started: {base.execution_started_at.isoformat()}\n"
        f"Execution Duration: {base.execution_duration.total_seconds():.3f}s\n"
        f"Error Summary: {base.error_summary}\n"
        f"Failed Step: {context.failed_step} ({context.failed_step.description})\n"
        f"Error Kind: {context.error_kind}\n"
    )


class TraceWriter:
    """Write ``<YYYYmmdd-HHMMSS>-<workflow>.log`` files into a traces directory.

    Parameters
    ----------
    traces_dir
        Directory receiving the trace files.
    clock
        Clock used to timestamp file names.
    """

    def __init__(self, traces_dir: Path, clock: Clock) -> None:
        self.traces_dir = traces_dir
        self.clock = clock

    def trace_path(self, workflow: str) -> Path:
        stamp = self.clock.now().strftime("%Y%m%d-%H%M%S")
        return self.traces_dir / f"{stamp}-{workflow}.log"

    def render(self, context: WorkflowFailureContext, error: BaseException) -> str:
        title = f"{context.workflow.upper()} FAILURE TRACE"
        return (
            _header(title)
            + format_metadata(context)
            + "\n"
            + _section("ERROR CHAIN")
            + format_error_chain(error)
            + _footer()
        )

    def write(self, context: WorkflowFailureContext, error: BaseException) -> Path:
        """Write the trace for ``context`` and return its path.

        Raises
        ------
        TraceWriterError
            If the directory or file cannot be written.
        """

        path = self.trace_path(context.workflow)
        try:
            self.traces_dir.mkdir(parents=True, exist_ok=True)
            path.write_text(self.render(context, error), encoding="utf-8")
        except OSError as exc:
            msg = f"Failed to write trace file {path}: {exc}"
            raise TraceWriterError(msg) from exc
        logger.info("Wrote %s failure trace to %s", context.workflow, path)
        return path


__all__ = ["TraceWriter", "format_error_chain", "format_metadata"]
