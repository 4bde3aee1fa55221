"""Validated identifiers used by deployment environments.

Each identifier wraps a plain string and validates it on construction, so an
instance that exists is always well formed.

Examples
--------
>>> str(EnvironmentName("e2e-full"))
'e2e-full'
>>> str(InstanceName.for_environment(EnvironmentName("e2e-full")))
'torrust-tracker-vm-e2e-full'
"""

from __future__ import annotations

import string
from dataclasses import dataclass

from deployer._errors import NameValidationError

INSTANCE_NAME_PREFIX = "torrust-tracker-vm-"
_MAX_LABEL_LENGTH = 63
# Longest name whose derived instance name still fits in one label.
_MAX_ENV_NAME_LENGTH = _MAX_LABEL_LENGTH - len(INSTANCE_NAME_PREFIX)
_MAX_USERNAME_LENGTH = 32
_ENV_NAME_CHARS = frozenset(string.ascii_lowercase + string.digits + "-")
_LABEL_CHARS = frozenset(string.ascii_letters + string.digits + "-")
_USERNAME_CHARS = frozenset(string.ascii_letters + string.digits + "_-")


def _environment_name_problem(value: str) -> str | None:
    if not value:
        return "must not be empty"
    if len(value) > _MAX_ENV_NAME_LENGTH:
        return f"must be at most {_MAX_ENV_NAME_LENGTH} characters"
    if value[0].isdigit():
        return "must not start with a digit"
    if any(char.isupper() for char in value):
        return "must be lowercase"
    if invalid := sorted(set(value) - _ENV_NAME_CHARS):
        return f"contains invalid characters {''.join(invalid)!r}"
    if value.startswith("-") or value.endswith("-"):
        return "must not start or end with a dash"
    if "--" in value:
        return "must not contain consecutive dashes"
    return None


def _label_problem(value: str) -> str | None:
    if not value:
        return "must not be empty"
    if len(value) > _MAX_LABEL_LENGTH:
        return f"must be at most {_MAX_LABEL_LENGTH} characters"
    if invalid := sorted(set(value) - _LABEL_CHARS):
        return f"contains invalid characters {''.join(invalid)!r}"
    if value[0].isdigit() or value[0] == "-":
        return "must not start with a digit or dash"
    if value.endswith("-"):
        return "must not end with a dash"
    return None


def _username_problem(value: str) -> str | None:
    if not value:
        return "must not be empty"
    if len(value) > _MAX_USERNAME_LENGTH:
        return f"must be at most {_MAX_USERNAME_LENGTH} characters"
    if not (value[0].isascii() and (value[0].isalpha() or value[0] == "_")):
        return "must start with a letter or underscore"
    if invalid := sorted(set(value) - _USERNAME_CHARS):
        return f"contains invalid characters {''.join(invalid)!r}"
    return None


@dataclass(frozen=True, slots=True)
class EnvironmentName:
    """Unique, human-chosen name of a deployment environment.

    Lowercase ASCII letters, digits, and single dashes; it may not start with a
    digit or begin or end with a dash. At most 44 characters long, so the
    derived instance name stays a valid label.

    Examples
    --------
    >>> EnvironmentName("staging").value
    'staging'
    >>> EnvironmentName("Staging")
    Traceback (most recent call last):
    ...
    deployer._errors.NameValidationError: Invalid environment name 'Staging': must be lowercase
    """

    value: str

    def __post_init__(self) -> None:
        if problem := _environment_name_problem(self.value):
            raise NameValidationError("environment name", self.value, problem)

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True, slots=True)
class InstanceName:
    """Name of the virtual machine or server backing an environment."""

    value: str

    def __post_init__(self) -> None:
        if problem := _label_problem(self.value):
            raise NameValidationError("instance name", self.value, problem)

    def __str__(self) -> str:
        return self.value

    @classmethod
    def for_environment(cls, name: EnvironmentName) -> InstanceName:
        """Derive the conventional instance name for ``name``."""

        return cls(f"{INSTANCE_NAME_PREFIX}{name.value}")


@dataclass(frozen=True, slots=True)
class ProfileName:
    """LXD profile name; follows the same rules as instance names."""

    value: str

    def __post_init__(self) -> None:
        if problem := _label_problem(self.value):
            raise NameValidationError("profile name", self.value, problem)

    def __str__(self) -> str:
        return self.value

    @classmethod
    def for_environment(cls, name: EnvironmentName) -> ProfileName:
        return cls(f"torrust-profile-{name.value}")


@dataclass(frozen=True, slots=True)
class Username:
    """Linux account used for SSH access to the instance."""

    value: str

    def __post_init__(self) -> None:
        if problem := _username_problem(self.value):
            raise NameValidationError("username", self.value, problem)

    def __str__(self) -> str:
        return self.value


__all__ = [
    "INSTANCE_NAME_PREFIX",
    "EnvironmentName",
    "InstanceName",
    "ProfileName",
    "Username",
]
