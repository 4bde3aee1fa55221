"""OpenTofu orchestration helpers for environment infrastructure."""

from __future__ import annotations

import json
import os
import subprocess
from collections import abc as cabc
from pathlib import Path

from deployer._errors import TofuCommandError
from deployer._models import TofuResult

TFVARS_FILE_NAME = "terraform.tfvars.json"
INSTANCE_IP_OUTPUT = "instance_ip"


def _validate_command_args(args: list[str]) -> None:
    """Validate OpenTofu CLI arguments for safe execution."""
    for arg in args:
        if not isinstance(arg, str):
            msg = f"OpenTofu argument must be a string, got {type(arg).__name__}"
            raise TypeError(msg)
        if any(char in arg for char in ("\x00", "\n", "\r")):
            msg = "OpenTofu argument contains an invalid control character"
            raise ValueError(msg)


def run_tofu(
    args: list[str],
    cwd: Path,
    env: cabc.Mapping[str, str] | None = None,
    *,
    capture_output: bool = True,
) -> TofuResult:
    """Execute an OpenTofu command and return the result.

    Parameters
    ----------
    args
        Command arguments (without the ``tofu`` prefix).
    cwd
        Working directory for the command.
    env
        Environment variables to set for the command.
    capture_output
        Whether to capture stdout and stderr.

    Returns
    -------
    TofuResult
        Result containing success status, output, and return code.

    Examples
    --------
    >>> from pathlib import Path
    >>> run_tofu(["version"], Path(".")).success  # doctest: +SKIP
    True
    """
    cmd = ["tofu", *args]
    merged_env = {**os.environ, **(env or {})}

    _validate_command_args(cmd)
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            env=merged_env,
            capture_output=capture_output,
            text=True,
            check=False,
        )
    except FileNotFoundError as exc:
        msg = f"OpenTofu is not installed or not on PATH: {exc}"
        raise TofuCommandError(msg) from exc

    return TofuResult(
        success=result.returncode == 0,
        stdout=result.stdout if capture_output else "",
        stderr=result.stderr if capture_output else "",
        return_code=result.returncode,
    )


def ensure_success(result: TofuResult, command: str, cwd: Path) -> TofuResult:
    """Return ``result`` or raise :class:`TofuCommandError` if it failed.

    Examples
    --------
    >>> from pathlib import Path
    >>> ok = TofuResult(success=True, stdout="", stderr="", return_code=0)
    >>> ensure_success(ok, "plan", Path(".")).return_code
    0
    """
    if not result.success:
        msg = (
            f"tofu {command} failed "
            f"(cwd={cwd}, return_code={result.return_code}): {result.stderr.strip()}"
        )
        raise TofuCommandError(msg)
    return result


def tofu_init(cwd: Path) -> TofuResult:
    return run_tofu(["init", "-input=false"], cwd)


def tofu_validate(cwd: Path) -> TofuResult:
    return run_tofu(["validate", "-no-color"], cwd)


def tofu_plan(cwd: Path, var_file: Path | None = None) -> TofuResult:
    """Run ``tofu plan``.

    Parameters
    ----------
    cwd
        OpenTofu configuration directory.
    var_file
        Optional path to a tfvars file.
    """
    args = ["plan", "-input=false"]
    if var_file:
        args.append(f"-var-file={var_file}")
    return run_tofu(args, cwd)


def tofu_apply(
    cwd: Path,
    var_file: Path | None = None,
    *,
    auto_approve: bool = True,
) -> TofuResult:
    """Run ``tofu apply``.

    Parameters
    ----------
    cwd
        OpenTofu configuration directory.
    var_file
        Optional path to a tfvars file.
    auto_approve
        Whether to auto-approve the apply.
    """
    args = ["apply", "-input=false"]
    if auto_approve:
        args.append("-auto-approve")
    if var_file:
        args.append(f"-var-file={var_file}")
    return run_tofu(args, cwd)


def tofu_destroy(cwd: Path, var_file: Path | None = None) -> TofuResult:
    args = ["destroy", "-input=false", "-auto-approve"]
    if var_file and var_file.exists():
        args.append(f"-var-file={var_file}")
    return run_tofu(args, cwd)


def tofu_output(cwd: Path, name: str | None = None) -> object:
    """Retrieve OpenTofu outputs as JSON.

    Parameters
    ----------
    cwd
        OpenTofu configuration directory.
    name
        Specific output name to retrieve.

    Returns
    -------
    object
        Parsed JSON output. If ``name`` is specified, returns the raw value.
    """
    args = ["output", "-json"]
    if name:
        args.append(name)
    result = ensure_success(run_tofu(args, cwd), "output", cwd)
    try:
        return json.loads(result.stdout)
    except json.JSONDecodeError as exc:
        msg = f"tofu output returned invalid JSON (cwd={cwd}): {exc}"
        raise TofuCommandError(msg) from exc


def extract_instance_ip(outputs: object) -> str:
    """Return the instance address from ``tofu output -json``.

    Outputs may be wrapped as ``{"value": ...}`` or be the bare value.

    Examples
    --------
    >>> extract_instance_ip({"instance_ip": {"value": "10.140.190.14"}})
    '10.140.190.14'
    """
    if not isinstance(outputs, dict) or INSTANCE_IP_OUTPUT not in outputs:
        msg = f"OpenTofu outputs do not contain {INSTANCE_IP_OUTPUT!r}"
        raise TofuCommandError(msg)
    output = outputs[INSTANCE_IP_OUTPUT]
    value = output["value"] if isinstance(output, dict) and "value" in output else output
    if not isinstance(value, str) or not value:
        msg = f"OpenTofu output {INSTANCE_IP_OUTPUT!r} is not a non-empty string"
        raise TofuCommandError(msg)
    return value


def write_tfvars(path: Path, variables: dict[str, object]) -> None:
    """Write tfvars as JSON.

    Examples
    --------
    >>> from pathlib import Path
    >>> write_tfvars(Path("vars.json"), {"instance_name": "vm"})  # doctest: +SKIP
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(variables, indent=2), encoding="utf-8")


__all__ = [
    "INSTANCE_IP_OUTPUT",
    "TFVARS_FILE_NAME",
    "ensure_success",
    "extract_instance_ip",
    "run_tofu",
    "tofu_apply",
    "tofu_destroy",
    "tofu_init",
    "tofu_output",
    "tofu_plan",
    "tofu_validate",
    "write_tfvars",
]
