"""Unit tests for failure trace files."""

from __future__ import annotations

from collections import abc as cabc
from pathlib import Path

import pytest

from deployer._errors import TofuCommandError, TraceWriterError
from deployer._failure_context import (
    FixedClock,
    ProvisionFailureContext,
    WorkflowFailureContext,
)
from deployer._trace_writer import TraceWriter, format_error_chain


def _chained_error() -> TofuCommandError:
    try:
        try:
            raise OSError("connection reset")
        except OSError as exc:
            raise TofuCommandError("tofu apply failed") from exc
    except TofuCommandError as err:
        return err


def test_error_chain_lists_every_level() -> None:
    chain = format_error_chain(_chained_error())
    assert chain.splitlines() == [
        "[Level 0] TofuCommandError: tofu apply failed",
        "[Level 1] OSError: connection reset",
    ]


def test_trace_file_name_and_content(
    tmp_path: Path,
    clock: FixedClock,
    make_failure: cabc.Callable[..., WorkflowFailureContext],
) -> None:
    writer = TraceWriter(tmp_path / "traces", clock)
    path = writer.write(make_failure(ProvisionFailureContext), _chained_error())

    assert path == tmp_path / "traces" / "20251007-120000-provision.log"
    content = path.read_text(encoding="utf-8")
    assert "PROVISION FAILURE TRACE" in content
    assert "Trace ID: 7f3c2a9e-0000-4000-8000-000000000001" in content
    assert "Failed Step: OpenTofuApply (Applying infrastructure changes)" in content
    assert "Execution Duration: 42.000s" in content
    assert "[Level 1] OSError: connection reset" in content
    assert content.rstrip().endswith("═" * 63)


def test_unwritable_directory_raises(
    tmp_path: Path,
    clock: FixedClock,
    make_failure: cabc.Callable[..., WorkflowFailureContext],
) -> None:
    blocker = tmp_path / "traces"
    blocker.write_text("not a directory", encoding="utf-8")
    writer = TraceWriter(blocker, clock)
    with pytest.raises(TraceWriterError, match="Failed to write trace file"):
        writer.write(make_failure(ProvisionFailureContext), RuntimeError("boom"))
