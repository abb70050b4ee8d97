"""
ESM Configuration Module

Defines the immutable effective configuration and merges HCL/JSON configuration
sources, given on the command line, on top of the built-in defaults.

Sources are applied strictly in command-line order. A directory source is expanded
to the ``*.hcl`` and ``*.json`` files it contains, sorted by file name, and fully
applied before the next source. Each file only overrides the keys it sets.
"""

import os
import re
import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any, Literal

import hcl
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from esm.errors import ConfigError

CONFIG_EXTENSIONS = (".hcl", ".json")

ENV_OVERRIDES = {
    "REDIS_HOST": "redis_host",
    "REDIS_PORT": "redis_port",
    "REDIS_DB": "redis_db",
}

_DURATION_UNITS_US = {
    "ns": 0.001,
    "us": 1,
    "µs": 1,
    "ms": 1_000,
    "s": 1_000_000,
    "m": 60_000_000,
    "h": 3_600_000_000,
}
_DURATION_PART = r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)"
_DURATION_RE = re.compile(f"(?:{_DURATION_PART})+")
_DURATION_PART_RE = re.compile(_DURATION_PART)


def parse_duration(value: str) -> timedelta:
    """
    Parse a Go-style duration string such as ``"72h"``, ``"1h30m"`` or ``"500ms"``.

    Args:
        value: Duration string

    Returns:
        Equivalent timedelta (sub-microsecond precision is rounded away)

    Raises:
        ValueError: If the string is not a valid duration
    """
    text = value.strip()
    if text == "0":
        return timedelta(0)
    if not _DURATION_RE.fullmatch(text):
        raise ValueError(f"invalid duration {value!r}")

    total_us = 0.0
    for number, unit in _DURATION_PART_RE.findall(text):
        total_us += float(number) * _DURATION_UNITS_US[unit]
    return timedelta(microseconds=round(total_us))


def _trim_fraction(amount: int, unit: int) -> str:
    whole, frac = divmod(amount, unit)
    if frac == 0:
        return str(whole)
    digits = len(str(unit)) - 1
    return f"{whole}.{str(frac).zfill(digits).rstrip('0')}"


def format_duration(value: timedelta) -> str:
    """Render a timedelta the way Go prints a Duration, e.g. ``72h0m0s``."""
    total_us = value // timedelta(microseconds=1)
    if total_us == 0:
        return "0s"

    sign = "-" if total_us < 0 else ""
    total_us = abs(total_us)

    if total_us < 1_000:
        return f"{sign}{total_us}µs"
    if total_us < 1_000_000:
        return f"{sign}{_trim_fraction(total_us, 1_000)}ms"

    hours, rem = divmod(total_us, 3_600_000_000)
    minutes, rem = divmod(rem, 60_000_000)
    seconds = _trim_fraction(rem, 1_000_000)
    if hours:
        return f"{sign}{hours}h{minutes}m{seconds}s"
    if minutes:
        return f"{sign}{minutes}m{seconds}s"
    return f"{sign}{seconds}s"


class EffectiveConfig(BaseModel):
    """
    Fully merged configuration consumed by logging setup and the agent.

    Instances are frozen; merging produces a new instance per applied source.
    Unknown keys and values of the wrong type are rejected.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    log_level: str = "INFO"
    enable_syslog: bool = False
    syslog_facility: str = "LOCAL0"
    log_json: bool = False

    instance_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    datacenter: str = ""
    service: str = "consul-esm"
    leader_key: str = "consul-esm/lock"
    node_reconnect_timeout: timedelta = timedelta(hours=72)
    node_probe_interval: timedelta = timedelta(seconds=10)

    redis_host: str = "redis"
    redis_port: int = 6379
    redis_db: int = 0

    @field_validator("log_level", "syslog_facility")
    @classmethod
    def normalize_upper(cls, v: str) -> str:
        return v.strip().upper()

    @field_validator("node_reconnect_timeout", "node_probe_interval", mode="before")
    @classmethod
    def parse_go_duration(cls, v: Any) -> Any:
        """Accept Go-style duration strings in addition to seconds and timedeltas."""
        if isinstance(v, str):
            return parse_duration(v)
        return v

    @field_validator("node_reconnect_timeout", "node_probe_interval")
    @classmethod
    def require_positive(cls, v: timedelta) -> timedelta:
        if v <= timedelta(0):
            raise ValueError("duration must be positive")
        return v


@dataclass(frozen=True)
class ConfigSource:
    """
    A single ``-config-file`` or ``-config-dir`` argument.

    ``kind`` records which flag supplied the path. Whether the path is read as a file
    or expanded as a directory depends only on what it points to.
    """

    kind: Literal["file", "dir"]
    path: str

    def expand(self) -> list[Path]:
        """
        Resolve this source to the configuration files it contributes, in apply order.

        Raises:
            ConfigError: If a directory cannot be listed
        """
        path = Path(self.path)

        if not path.is_dir():
            # Missing or unreadable files are reported when they are loaded
            return [path]

        try:
            entries = list(path.iterdir())
        except OSError as e:
            raise ConfigError(self.path, e.strerror or str(e)) from e

        files = [
            entry
            for entry in entries
            if entry.suffix.lower() in CONFIG_EXTENSIONS and entry.is_file()
        ]
        return sorted(files, key=lambda entry: entry.name)


def load_config_file(path: Path) -> dict[str, Any]:
    """
    Parse a single HCL or JSON configuration file.

    Args:
        path: File to read

    Returns:
        Mapping of configuration keys to raw values

    Raises:
        ConfigError: If the file cannot be read or parsed
    """
    try:
        with open(path, encoding="utf-8") as fh:
            data = hcl.load(fh)
    except OSError as e:
        raise ConfigError(str(path), e.strerror or str(e)) from e
    except ValueError as e:
        raise ConfigError(str(path), f"parse error: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(str(path), "top level must be an object")
    return data


def _describe_validation_error(error: ValidationError) -> str:
    parts = []
    for detail in error.errors():
        key = ".".join(str(loc) for loc in detail["loc"])
        if detail["type"] == "extra_forbidden":
            parts.append(f"unknown key '{key}'")
        else:
            parts.append(f"{key}: {detail['msg']}")
    return "; ".join(parts)


def apply_overrides(config: EffectiveConfig, overrides: dict[str, Any], path: str) -> EffectiveConfig:
    """Return a new config with the keys in ``overrides`` replaced, validating the result."""
    try:
        return EffectiveConfig.model_validate({**config.model_dump(), **overrides})
    except ValidationError as e:
        raise ConfigError(path, _describe_validation_error(e)) from e


def merge(base: EffectiveConfig, sources: Iterable[ConfigSource]) -> EffectiveConfig:
    """
    Merge configuration sources on top of ``base``.

    Args:
        base: Starting configuration (usually ``default_config()``)
        sources: Sources in command-line order; later sources win

    Returns:
        The effective configuration

    Raises:
        ConfigError: On the first source that cannot be expanded, read, parsed or validated
    """
    result = base
    for source in sources:
        for path in source.expand():
            result = apply_overrides(result, load_config_file(path), str(path))
    return result


def default_config() -> EffectiveConfig:
    """
    Build the base configuration.

    Redis connection settings default to the ``REDIS_HOST``, ``REDIS_PORT`` and
    ``REDIS_DB`` environment variables so the agent can run without any config file.

    Raises:
        ConfigError: If an environment value does not validate (path ``environment``)
    """
    overrides = {
        field: os.environ[name] for name, field in ENV_OVERRIDES.items() if name in os.environ
    }
    try:
        return EffectiveConfig.model_validate(overrides)
    except ValidationError as e:
        raise ConfigError("environment", _describe_validation_error(e)) from e
