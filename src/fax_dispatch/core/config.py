"""Configuration system for fax-dispatch.

The main configuration schema is validated with Pydantic. The YAML file may
reference environment variables with ``${VARIABLE_NAME}`` so that backend
credentials never have to be written to disk; references are resolved before
validation and a missing variable fails fast without echoing any value.
"""

import os
import re
from collections.abc import Mapping
from enum import StrEnum
from pathlib import Path
from typing import Annotated, Final

import yaml
from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError, field_validator

from fax_dispatch.errors import FaxDispatchError

# Matches ${VARIABLE_NAME} where VARIABLE_NAME contains letters, digits and underscores
ENV_VAR_PATTERN: Final[re.Pattern[str]] = re.compile(r"\$\{([A-Z0-9_]+)\}")

DEFAULT_CONFIG_PATH: Final[Path] = Path("config/fax-dispatch.yaml")

MAX_BATCH_COUNT: Final[int] = 100_000


class BackendConfig(BaseModel):
    """Connection settings for the fax backend REST API."""

    model_config = ConfigDict(extra="forbid")

    base_url: Annotated[
        str,
        Field(
            description="Base URL of the fax REST API, e.g. https://fax.example.com/api",
            pattern=r"^https?://\S+$",
        ),
    ]
    username: Annotated[str, Field(description="Backend login user")] = ""
    password: Annotated[SecretStr, Field(description="Backend login password")] = SecretStr("")
    request_timeout: Annotated[
        float,
        Field(
            gt=0,
            description="Total timeout per HTTP request in seconds",
        ),
    ] = 30.0
    read_retries: Annotated[
        int,
        Field(
            ge=0,
            le=10,
            description="Retries for idempotent GET calls; job creation is never retried",
        ),
    ] = 3

    @field_validator("base_url", mode="after")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")


class DispatchConfig(BaseModel):
    """Concurrency, chunking and polling behavior of the dispatcher."""

    model_config = ConfigDict(extra="forbid")

    max_concurrent: Annotated[
        int,
        Field(
            ge=1,
            le=1000,
            description="Maximum simultaneous job-creation calls",
        ),
    ] = 10
    chunk_size: Annotated[
        int,
        Field(
            ge=1,
            le=MAX_BATCH_COUNT,
            description="Units per chunk; chunks are dispatched sequentially",
        ),
    ] = 100
    poll_interval: Annotated[
        float,
        Field(
            gt=0,
            description="Seconds between status polls of one submission",
        ),
    ] = 5.0
    max_poll_attempts: Annotated[
        int,
        Field(
            ge=1,
            description="Polls before a submission is declared timed out",
        ),
    ] = 120
    default_priority: Annotated[
        str,
        Field(
            min_length=1,
            description="Priority sent with every job unless the request overrides it",
        ),
    ] = "Normal"
    cancel_monitors_on_stop: Annotated[
        bool,
        Field(
            description="Cancel running submission monitors when the dispatcher is stopped",
        ),
    ] = False


class StorageKind(StrEnum):
    MEMORY = "memory"
    SQLITE = "sqlite"


class StorageConfig(BaseModel):
    """Persistence backend selection."""

    model_config = ConfigDict(extra="forbid")

    kind: Annotated[StorageKind, Field(description="Store implementation")] = StorageKind.SQLITE
    database_path: Annotated[
        Path,
        Field(description="SQLite database file (ignored for the memory store)"),
    ] = Path("data/fax-dispatch.db")


class MetricsConfig(BaseModel):
    """Hourly metrics rollup settings."""

    model_config = ConfigDict(extra="forbid")

    enabled: Annotated[bool, Field(description="Run the periodic metrics collector")] = True
    collection_interval: Annotated[
        float,
        Field(
            gt=0,
            description="Seconds between metric collections",
        ),
    ] = 300.0


class ApplicationConfig(BaseModel):
    """Application-level settings."""

    model_config = ConfigDict(extra="forbid")

    log_level: Annotated[
        str,
        Field(
            description="Logging level",
            pattern=r"^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$",
        ),
    ] = "INFO"
    log_file: Annotated[
        Path | None,
        Field(description="Optional rotating log file"),
    ] = None
    dry_run: Annotated[
        bool,
        Field(description="Use the simulated backend instead of the real API"),
    ] = False


class MainConfig(BaseModel):
    """Main application configuration schema.

    Aggregates all configuration sections:
    - backend: fax REST API connection (required)
    - dispatch: concurrency, chunking and polling
    - storage: persistence backend
    - metrics: hourly rollup
    - application: logging and dry-run mode
    """

    model_config = ConfigDict(extra="forbid")

    backend: Annotated[BackendConfig, Field(description="Fax backend connection")]
    dispatch: Annotated[DispatchConfig, Field(description="Dispatch behavior")] = DispatchConfig()
    storage: Annotated[StorageConfig, Field(description="Persistence backend")] = StorageConfig()
    metrics: Annotated[MetricsConfig, Field(description="Metrics rollup")] = MetricsConfig()
    application: Annotated[ApplicationConfig, Field(description="Application settings")] = ApplicationConfig()


class EnvironmentVariableError(FaxDispatchError):
    """Raised when a referenced environment variable is not set."""


class ConfigurationError(FaxDispatchError):
    """Raised when configuration loading or validation fails.

    Messages are multi-line and actionable: they name the file, the failing
    field path and what to fix.
    """


def resolve_env_var(value: str) -> str:
    """Resolve ``${VARIABLE_NAME}`` references in a string value.

    Raises:
        EnvironmentVariableError: If a referenced variable is missing

    Examples:
        >>> os.environ["FAX_PASSWORD"] = "pw"
        >>> resolve_env_var("${FAX_PASSWORD}")
        'pw'
        >>> resolve_env_var("no variables here")
        'no variables here'
    """

    def replace_match(match: re.Match[str]) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            msg = (
                f"Required environment variable '{var_name}' is not set. "
                f"Please set this variable before starting the application."
            )
            raise EnvironmentVariableError(msg)
        return env_value

    return ENV_VAR_PATTERN.sub(replace_match, value)


def _resolve_item(value: object) -> object:
    if isinstance(value, str):
        return resolve_env_var(value)
    if isinstance(value, dict):
        # YAML data is untyped at load time; validated by Pydantic after resolution
        return resolve_env_vars_in_dict(value)  # pyright: ignore[reportUnknownArgumentType]  # YAML boundary
    if isinstance(value, list):
        return [_resolve_item(item) for item in value]  # pyright: ignore[reportUnknownVariableType]  # YAML list items
    return value


def resolve_env_vars_in_dict(data: Mapping[str, object]) -> dict[str, object]:
    """Recursively resolve environment variables in a YAML mapping.

    Nested mappings and lists are traversed; non-string scalars are kept as-is.

    Examples:
        >>> os.environ["FAX_USER"] = "ops"
        >>> resolve_env_vars_in_dict({"backend": {"username": "${FAX_USER}", "read_retries": 3}})
        {'backend': {'username': 'ops', 'read_retries': 3}}
    """
    return {key: _resolve_item(value) for key, value in data.items()}


def format_validation_error(error: ValidationError, *, header: str) -> list[str]:
    """Render pydantic errors as ``Field/Error/Type`` blocks."""
    lines = [header, ""]
    for item in error.errors():
        field_path = " → ".join(str(loc) for loc in item["loc"])
        lines.append(f"  Field: {field_path}")
        lines.append(f"  Error: {item['msg']}")
        lines.append(f"  Type: {item['type']}")
        lines.append("")
    return lines


def load_main_config(config_path: Path) -> MainConfig:
    """Load and validate the main configuration from a YAML file.

    Raises:
        ConfigurationError: If the file is missing, unreadable, not a YAML
            mapping, references an unset environment variable or fails
            schema validation

    Examples:
        >>> config = load_main_config(Path("config/fax-dispatch.yaml"))
        >>> config.dispatch.max_concurrent
        10
    """
    if not config_path.exists():
        msg = (
            f"Configuration file not found: {config_path}\n"
            f"Please create a configuration file at this location.\n"
            f"See config/fax-dispatch.example.yaml for the format."
        )
        raise ConfigurationError(msg)

    try:
        with config_path.open("r", encoding="utf-8") as f:
            raw_data: object = yaml.safe_load(f)  # pyright: ignore[reportAny]  # YAML boundary
    except yaml.YAMLError as e:
        msg = (
            f"Failed to parse YAML configuration file: {config_path}\n"
            f"YAML parsing error: {e}\n"
            f"Please check the file for syntax errors."
        )
        raise ConfigurationError(msg) from e
    except OSError as e:
        msg = f"Failed to read configuration file: {config_path}\nError: {e}\nPlease check file permissions."
        raise ConfigurationError(msg) from e

    if not isinstance(raw_data, dict):
        msg = (
            f"Invalid configuration file format: {config_path}\n"
            f"Expected YAML dictionary at root level, got: {type(raw_data).__name__}\n"
            f"Configuration file must contain key-value pairs."
        )
        raise ConfigurationError(msg)

    try:
        resolved_data = resolve_env_vars_in_dict(raw_data)  # pyright: ignore[reportUnknownArgumentType]  # YAML boundary
    except EnvironmentVariableError as e:
        msg = (
            f"Environment variable resolution failed in: {config_path}\n"
            f"{e}\n"
            f"Set the required environment variable before starting the application."
        )
        raise ConfigurationError(msg) from e

    try:
        config = MainConfig.model_validate(resolved_data)
    except ValidationError as e:
        error_lines = format_validation_error(e, header="Configuration validation failed:")
        error_lines.append(f"Configuration file: {config_path}")
        error_lines.append("Please fix the above errors and try again.")
        raise ConfigurationError("\n".join(error_lines)) from e

    return config
