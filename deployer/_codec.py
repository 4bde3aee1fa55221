"""JSON record codec for persisted environments.

A record is a flat JSON object discriminated by ``state``. Failure states
add the failure context fields next to the common ones.

Examples
--------
>>> duration_to_record(dt.timedelta(seconds=1, microseconds=500))
{'secs': 1, 'nanos': 500000}
>>> duration_from_record({"secs": 1, "nanos": 500000})
datetime.timedelta(seconds=1, microseconds=500)
"""

from __future__ import annotations

import datetime as dt
from collections import abc as cabc
from pathlib import Path
from typing import Any

from deployer._environment import AnyEnvironmentState
from deployer._errors import DeployerError, RecordFormatError
from deployer._failure_context import (
    BaseFailureContext,
    ErrorKind,
    TraceId,
    WorkflowFailureContext,
)
from deployer._models import (
    DatabaseConfig,
    DatabaseDriver,
    EnvironmentContext,
    HetznerConfig,
    InternalConfig,
    LxdConfig,
    PrometheusConfig,
    ProviderConfig,
    ProvisionMethod,
    RuntimeOutputs,
    SshCredentials,
    TrackerConfig,
    UserInputs,
    parse_ip_address,
)
from deployer._names import EnvironmentName, InstanceName, ProfileName, Username
from deployer._states import (
    STATE_TYPES_BY_NAME,
    ConfigureFailed,
    Configured,
    Configuring,
    Created,
    FailedState,
    Provisioned,
    Provisioning,
    ReleaseFailed,
    Released,
    Releasing,
    RunFailed,
    Running,
    State,
)

# States reached before any instance exists, and states that need one.
STATES_WITHOUT_INSTANCE: frozenset[type[State]] = frozenset({Created, Provisioning})
STATES_WITH_INSTANCE: frozenset[type[State]] = frozenset(
    {
        Provisioned,
        Configuring,
        Configured,
        Releasing,
        Released,
        Running,
        ConfigureFailed,
        ReleaseFailed,
        RunFailed,
    }
)

_NANOS_PER_MICRO = 1_000


def duration_to_record(value: dt.timedelta) -> dict[str, int]:
    total_micros = (value.days * 86_400 + value.seconds) * 1_000_000 + value.microseconds
    secs, micros = divmod(total_micros, 1_000_000)
    return {"secs": secs, "nanos": micros * _NANOS_PER_MICRO}


def duration_from_record(value: object) -> dt.timedelta:
    mapping = _require_mapping(value, "execution_duration")
    secs = _require_int(mapping.get("secs"), "execution_duration.secs")
    nanos = _require_int(mapping.get("nanos"), "execution_duration.nanos")
    return dt.timedelta(seconds=secs, microseconds=nanos // _NANOS_PER_MICRO)


def _timestamp_to_record(value: dt.datetime) -> str:
    return value.astimezone(dt.UTC).isoformat().replace("+00:00", "Z")


def _timestamp_from_record(value: object, field_name: str) -> dt.datetime:
    text = _require_str(value, field_name)
    try:
        parsed = dt.datetime.fromisoformat(text)
    except ValueError as exc:
        msg = f"Record field {field_name!r} is not an ISO-8601 timestamp: {text!r}"
        raise RecordFormatError(msg) from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.UTC)
    return parsed


def _require_mapping(value: object, field_name: str) -> cabc.Mapping[str, Any]:
    if not isinstance(value, cabc.Mapping):
        msg = f"Record field {field_name!r} must be an object"
        raise RecordFormatError(msg)
    return value


def _require_str(value: object, field_name: str) -> str:
    if not isinstance(value, str):
        msg = f"Record field {field_name!r} must be a string"
        raise RecordFormatError(msg)
    return value


def _optional_str(value: object, field_name: str) -> str | None:
    return None if value is None else _require_str(value, field_name)


def _require_int(value: object, field_name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        msg = f"Record field {field_name!r} must be an integer"
        raise RecordFormatError(msg)
    return value


def _optional_int(value: object, field_name: str) -> int | None:
    return None if value is None else _require_int(value, field_name)


def _port_list(value: object, field_name: str) -> tuple[int, ...]:
    if not isinstance(value, list):
        msg = f"Record field {field_name!r} must be a list of ports"
        raise RecordFormatError(msg)
    return tuple(_require_int(item, field_name) for item in value)


def provider_to_record(config: ProviderConfig) -> dict[str, object]:
    match config:
        case LxdConfig(profile_name=profile_name):
            return {"provider": "lxd", "profile_name": profile_name.value}
        case HetznerConfig():
            return {
                "provider": "hetzner",
                "api_token": config.api_token,
                "server_type": config.server_type,
                "location": config.location,
                "image": config.image,
            }
    msg = f"Unsupported provider configuration: {type(config).__name__}"
    raise TypeError(msg)


def provider_from_record(value: object) -> ProviderConfig:
    mapping = _require_mapping(value, "provider_config")
    match mapping.get("provider"):
        case "lxd":
            return LxdConfig(
                ProfileName(_require_str(mapping.get("profile_name"), "profile_name"))
            )
        case "hetzner":
            return HetznerConfig(
                api_token=_require_str(mapping.get("api_token"), "api_token"),
                server_type=_require_str(mapping.get("server_type"), "server_type"),
                location=_require_str(mapping.get("location"), "location"),
                image=_require_str(mapping.get("image"), "image"),
            )
        case other:
            msg = f"Unknown provider {other!r}"
            raise RecordFormatError(msg)


def tracker_to_record(tracker: TrackerConfig) -> dict[str, object]:
    database = tracker.database
    return {
        "udp_tracker_ports": list(tracker.udp_tracker_ports),
        "http_tracker_ports": list(tracker.http_tracker_ports),
        "http_api_port": tracker.http_api_port,
        "admin_token": tracker.admin_token,
        "database": {
            "driver": str(database.driver),
            "database_name": database.database_name,
            "host": database.host,
            "port": database.port,
            "username": database.username,
            "password": database.password,
        },
        "prometheus": (
            None
            if tracker.prometheus is None
            else {"scrape_interval_secs": tracker.prometheus.scrape_interval_secs}
        ),
    }


def tracker_from_record(value: object) -> TrackerConfig:
    mapping = _require_mapping(value, "tracker")
    database = _require_mapping(mapping.get("database"), "tracker.database")
    prometheus = mapping.get("prometheus")
    try:
        driver = DatabaseDriver(_require_str(database.get("driver"), "database.driver"))
    except ValueError as exc:
        msg = f"Unknown database driver {database.get('driver')!r}"
        raise RecordFormatError(msg) from exc
    return TrackerConfig(
        udp_tracker_ports=_port_list(mapping.get("udp_tracker_ports"), "udp_tracker_ports"),
        http_tracker_ports=_port_list(
            mapping.get("http_tracker_ports"), "http_tracker_ports"
        ),
        http_api_port=_require_int(mapping.get("http_api_port"), "http_api_port"),
        admin_token=_require_str(mapping.get("admin_token"), "admin_token"),
        database=DatabaseConfig(
            driver=driver,
            database_name=_require_str(
                database.get("database_name"), "database.database_name"
            ),
            host=_optional_str(database.get("host"), "database.host"),
            port=_optional_int(database.get("port"), "database.port"),
            username=_optional_str(database.get("username"), "database.username"),
            password=_optional_str(database.get("password"), "database.password"),
        ),
        prometheus=(
            None
            if prometheus is None
            else PrometheusConfig(
                _require_int(
                    _require_mapping(prometheus, "tracker.prometheus").get(
                        "scrape_interval_secs"
                    ),
                    "prometheus.scrape_interval_secs",
                )
            )
        ),
    )


def _failure_to_record(context: WorkflowFailureContext) -> dict[str, object]:
    base = context.base
    return {
        "failed_step": str(context.failed_step),
        "error_kind": str(context.error_kind),
        "error_summary": base.error_summary,
        "failed_at": _timestamp_to_record(base.failed_at),
        "execution_started_at": _timestamp_to_record(base.execution_started_at),
        "execution_duration": duration_to_record(base.execution_duration),
        "trace_id": str(base.trace_id),
        "trace_file_path": (
            None if base.trace_file_path is None else str(base.trace_file_path)
        ),
    }


def _failure_from_record(
    state_type: type[FailedState], record: cabc.Mapping[str, Any]
) -> WorkflowFailureContext:
    context_type = state_type.context_type
    step_text = _require_str(record.get("failed_step"), "failed_step")
    kind_text = _require_str(record.get("error_kind"), "error_kind")
    try:
        failed_step = context_type.step_type(step_text)
    except ValueError as exc:
        msg = f"Unknown {context_type.workflow} step {step_text!r}"
        raise RecordFormatError(msg) from exc
    try:
        error_kind = ErrorKind(kind_text)
    except ValueError as exc:
        msg = f"Unknown error kind {kind_text!r}"
        raise RecordFormatError(msg) from exc
    trace_file = _optional_str(record.get("trace_file_path"), "trace_file_path")
    base = BaseFailureContext(
        error_summary=_require_str(record.get("error_summary"), "error_summary"),
        failed_at=_timestamp_from_record(record.get("failed_at"), "failed_at"),
        execution_started_at=_timestamp_from_record(
            record.get("execution_started_at"), "execution_started_at"
        ),
        execution_duration=duration_from_record(record.get("execution_duration")),
        trace_id=TraceId(_require_str(record.get("trace_id"), "trace_id")),
        trace_file_path=Path(trace_file) if trace_file is not None else None,
    )
    return context_type(failed_step=failed_step, error_kind=error_kind, base=base)


def environment_to_record(envelope: AnyEnvironmentState) -> dict[str, object]:
    """Encode an envelope as a JSON-serialisable mapping.

    Parameters
    ----------
    envelope
        Environment in any state.

    Returns
    -------
    dict[str, object]
        Flat record whose ``state`` key names the lifecycle state.
    """

    context = envelope.context
    user_inputs = context.user_inputs
    credentials = user_inputs.ssh_credentials
    outputs = context.runtime_outputs
    record: dict[str, object] = {
        "state": envelope.state_name,
        "name": user_inputs.name.value,
        "instance_name": user_inputs.instance_name.value,
        "created_at": _timestamp_to_record(context.created_at),
        "provider_config": provider_to_record(user_inputs.provider_config),
        "ssh_credentials": {
            "private_key_path": str(credentials.private_key_path),
            "public_key_path": str(credentials.public_key_path),
            "username": credentials.username.value,
        },
        "ssh_port": user_inputs.ssh_port,
        "tracker": tracker_to_record(user_inputs.tracker),
        "build_dir": str(context.internal_config.build_dir),
        "data_dir": str(context.internal_config.data_dir),
        "instance_ip": None if outputs.instance_ip is None else str(outputs.instance_ip),
        "provision_method": (
            None if outputs.provision_method is None else str(outputs.provision_method)
        ),
    }
    if (failure := envelope.failure_context) is not None:
        record.update(_failure_to_record(failure))
    return record


def _decode_state(state_type: type[State], record: cabc.Mapping[str, Any]) -> State:
    if issubclass(state_type, FailedState):
        return state_type(_failure_from_record(state_type, record))
    return state_type()


def _decode_runtime_outputs(record: cabc.Mapping[str, Any]) -> RuntimeOutputs:
    ip_text = _optional_str(record.get("instance_ip"), "instance_ip")
    method_text = _optional_str(record.get("provision_method"), "provision_method")
    try:
        instance_ip = parse_ip_address(ip_text) if ip_text is not None else None
        method = ProvisionMethod(method_text) if method_text is not None else None
    except ValueError as exc:
        msg = f"Invalid runtime outputs: {exc}"
        raise RecordFormatError(msg) from exc
    return RuntimeOutputs(instance_ip=instance_ip, provision_method=method)


def _check_runtime_outputs(state_type: type[State], outputs: RuntimeOutputs) -> None:
    has_ip = outputs.instance_ip is not None
    if has_ip != (outputs.provision_method is not None):
        msg = "instance_ip and provision_method must be set together"
        raise RecordFormatError(msg)
    if has_ip and state_type in STATES_WITHOUT_INSTANCE:
        msg = f"State {state_type.name!r} cannot have an instance_ip"
        raise RecordFormatError(msg)
    if not has_ip and state_type in STATES_WITH_INSTANCE:
        msg = f"State {state_type.name!r} requires an instance_ip"
        raise RecordFormatError(msg)


def environment_from_record(record: object) -> AnyEnvironmentState:
    """Decode a record produced by :func:`environment_to_record`.

    Raises
    ------
    RecordFormatError
        If the record is malformed, names an unknown state, or holds an
        identifier that fails validation.
    """

    mapping = _require_mapping(record, "record")
    state_text = _require_str(mapping.get("state"), "state")
    state_type = STATE_TYPES_BY_NAME.get(state_text)
    if state_type is None:
        msg = f"Unknown environment state {state_text!r}"
        raise RecordFormatError(msg)

    credentials = _require_mapping(mapping.get("ssh_credentials"), "ssh_credentials")
    try:
        user_inputs = UserInputs(
            name=EnvironmentName(_require_str(mapping.get("name"), "name")),
            instance_name=InstanceName(
                _require_str(mapping.get("instance_name"), "instance_name")
            ),
            provider_config=provider_from_record(mapping.get("provider_config")),
            ssh_credentials=SshCredentials(
                private_key_path=Path(
                    _require_str(credentials.get("private_key_path"), "private_key_path")
                ),
                public_key_path=Path(
                    _require_str(credentials.get("public_key_path"), "public_key_path")
                ),
                username=Username(_require_str(credentials.get("username"), "username")),
            ),
            ssh_port=_require_int(mapping.get("ssh_port"), "ssh_port"),
            tracker=tracker_from_record(mapping.get("tracker")),
        )
        context = EnvironmentContext(
            user_inputs=user_inputs,
            internal_config=InternalConfig(
                build_dir=Path(_require_str(mapping.get("build_dir"), "build_dir")),
                data_dir=Path(_require_str(mapping.get("data_dir"), "data_dir")),
            ),
            created_at=_timestamp_from_record(mapping.get("created_at"), "created_at"),
            runtime_outputs=_decode_runtime_outputs(mapping),
        )
        _check_runtime_outputs(state_type, context.runtime_outputs)
        state = _decode_state(state_type, mapping)
    except RecordFormatError:
        raise
    except (DeployerError, TypeError) as exc:
        msg = f"Invalid environment record for state {state_text!r}: {exc}"
        raise RecordFormatError(msg) from exc
    return AnyEnvironmentState(context, state)


__all__ = [
    "duration_from_record",
    "duration_to_record",
    "environment_from_record",
    "environment_to_record",
]
