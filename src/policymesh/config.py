# Copyright (c) PolicyMesh Contributors. All rights reserved.
# Licensed under the MIT License.
"""
Runtime configuration.

Settings come from defaults, a YAML file, or ``POLICYMESH_*`` environment
variables. Values that cannot be parsed fall back to the default and log
a warning instead of aborting start-up; values that parse but break a
constraint are rejected.
"""

import logging
from pathlib import Path
from typing import Any, Literal, Optional

import yaml
from pydantic import Field, ValidationInfo, ValidatorFunctionWrapHandler, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from policymesh.constants import (
    APPLY_MAX_ATTEMPTS_DEFAULT,
    BACKOFF_INITIAL_SECONDS_DEFAULT,
    BACKOFF_MAX_SECONDS_DEFAULT,
    CACHE_MAX_ENTRIES_DEFAULT,
    CACHE_TTL_SECONDS_DEFAULT,
    DENY_SEVERITY_THRESHOLD_DEFAULT,
    FAILURE_THRESHOLD_DEFAULT,
    HEALTH_POLL_INTERVAL_SECONDS_DEFAULT,
    METRICS_PORT_DEFAULT,
)
from policymesh.exceptions import ValidationError

logger = logging.getLogger(__name__)

ENV_PREFIX = "POLICYMESH_"

# Errors meaning "this is not a number/bool at all", as opposed to a
# parsed value that is out of range.
_PARSE_ERRORS = frozenset({
    "bool_parsing",
    "bool_type",
    "int_parsing",
    "int_from_float",
    "int_type",
    "float_parsing",
    "float_type",
})


class PolicyMeshConfig(BaseSettings):
    """Configuration for the admission and distribution paths."""

    model_config = SettingsConfigDict(env_prefix=ENV_PREFIX, extra="forbid")

    debug: bool = Field(default=False, description="Verbose logging with caller info")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")

    # Evaluation cache
    cache_ttl_seconds: float = Field(default=CACHE_TTL_SECONDS_DEFAULT, ge=0)
    cache_max_entries: int = Field(default=CACHE_MAX_ENTRIES_DEFAULT, ge=1)

    # Conflict resolution
    deny_severity_threshold: Literal["critical", "high", "medium", "low", "info"] = Field(
        default=DENY_SEVERITY_THRESHOLD_DEFAULT
    )

    # Cluster apply retries
    apply_max_attempts: int = Field(default=APPLY_MAX_ATTEMPTS_DEFAULT, ge=1, le=20)
    backoff_initial_seconds: float = Field(default=BACKOFF_INITIAL_SECONDS_DEFAULT, ge=0)
    backoff_max_seconds: float = Field(default=BACKOFF_MAX_SECONDS_DEFAULT, ge=0)

    # Rollouts
    health_poll_interval_seconds: float = Field(
        default=HEALTH_POLL_INTERVAL_SECONDS_DEFAULT, gt=0
    )
    default_failure_threshold: float = Field(default=FAILURE_THRESHOLD_DEFAULT, ge=0, le=1)

    # Audit / metrics
    audit_path: Optional[str] = Field(default=None, description="JSON-lines audit sink")
    metrics_port: int = Field(default=METRICS_PORT_DEFAULT, ge=1, le=65535)

    @field_validator("*", mode="wrap")
    @classmethod
    def _default_on_parse_error(
        cls, value: Any, handler: ValidatorFunctionWrapHandler, info: ValidationInfo
    ) -> Any:
        try:
            return handler(value)
        except PydanticValidationError as e:
            if not all(err["type"] in _PARSE_ERRORS for err in e.errors()):
                raise
            default = cls.model_fields[info.field_name].default
            logger.warning(
                "Error parsing %s%s=%r: %s. Using default value: %r",
                ENV_PREFIX, info.field_name.upper(), value, e.errors()[0]["msg"], default,
            )
            return default

    @classmethod
    def from_env(cls, **overrides: Any) -> "PolicyMeshConfig":
        """Build a config from ``POLICYMESH_*`` environment variables."""
        try:
            return cls(**overrides)
        except PydanticValidationError as e:
            raise ValidationError("Invalid configuration from environment", _errors(e)) from e

    @classmethod
    def from_yaml(cls, path: str | Path) -> "PolicyMeshConfig":
        """Load configuration from a YAML file; environment variables fill the rest."""
        with open(Path(path), "r") as f:
            data = yaml.safe_load(f) or {}
        try:
            return cls(**data)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid configuration in {path}", _errors(e)) from e


def _errors(exc: PydanticValidationError) -> list[str]:
    return [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()]
