"""Configuration management with validation.

All values are validated at load time so a misconfigured controller fails
before it starts watching anything.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from typing import Any


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_CONSTRAINT_GROUP = "constraints.gatekeeper.sh"
DEFAULT_CONSTRAINT_VERSION = "v1beta1"
DEFAULT_FINALIZER_NAME = "finalizers.gatekeeper.sh/constraint"

DEFAULT_MAX_CONCURRENT_RECONCILES = 4
MIN_CONCURRENT_RECONCILES = 1
MAX_CONCURRENT_RECONCILES = 64

DEFAULT_METRICS_PORT = 8888
MIN_METRICS_PORT = 1024
MAX_METRICS_PORT = 65535

DEFAULT_WATCH_TIMEOUT_SECONDS = 300
MIN_WATCH_TIMEOUT_SECONDS = 30
MAX_WATCH_TIMEOUT_SECONDS = 3600

DEFAULT_GATEWAY_TIMEOUT_SECONDS = 30

# Requeue backoff for failed passes
REQUEUE_BASE_DELAY_SECONDS = 0.005
REQUEUE_MAX_DELAY_SECONDS = 1000.0

# Manifest files larger than this are rejected
MAX_MANIFEST_FILE_SIZE_BYTES = 1024 * 1024

# Input validation patterns
VALID_KIND_PATTERN = r"^[A-Z][A-Za-z0-9]{0,62}$"
VALID_GROUP_PATTERN = r"^[a-z0-9]([a-z0-9.-]{0,251}[a-z0-9])?$"
VALID_VERSION_PATTERN = r"^v[0-9]+((alpha|beta)[0-9]+)?$"
VALID_FINALIZER_PATTERN = r"^[a-z0-9.-]+/[A-Za-z0-9._-]+$"


@dataclass(frozen=True)
class Config:
    """Controller configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Constraint kinds to watch, one reconciler per kind
    constraint_kinds: tuple[str, ...] = field(default_factory=tuple)

    group: str = DEFAULT_CONSTRAINT_GROUP
    version: str = DEFAULT_CONSTRAINT_VERSION
    finalizer_name: str = DEFAULT_FINALIZER_NAME

    max_concurrent_reconciles: int = DEFAULT_MAX_CONCURRENT_RECONCILES

    # 0 disables the metrics endpoint
    metrics_port: int = DEFAULT_METRICS_PORT

    watch_timeout_seconds: int = DEFAULT_WATCH_TIMEOUT_SECONDS
    gateway_timeout_seconds: int = DEFAULT_GATEWAY_TIMEOUT_SECONDS

    # JSON logs to stdout
    enable_audit_logging: bool = True

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.constraint_kinds:
            errors.append("CONSTRAINT_KINDS is required")
        for kind in self.constraint_kinds:
            if not re.match(VALID_KIND_PATTERN, kind):
                errors.append(f"CONSTRAINT_KINDS entry must match {VALID_KIND_PATTERN}: {kind}")
        if len(set(self.constraint_kinds)) != len(self.constraint_kinds):
            errors.append("CONSTRAINT_KINDS must not contain duplicates")

        if not re.match(VALID_GROUP_PATTERN, self.group):
            errors.append(f"CONSTRAINT_GROUP is not a valid API group: {self.group}")

        if not re.match(VALID_VERSION_PATTERN, self.version):
            errors.append(f"CONSTRAINT_VERSION is not a valid API version: {self.version}")

        if not re.match(VALID_FINALIZER_PATTERN, self.finalizer_name):
            errors.append(f"FINALIZER_NAME must be a qualified name: {self.finalizer_name}")

        if not (
            MIN_CONCURRENT_RECONCILES
            <= self.max_concurrent_reconciles
            <= MAX_CONCURRENT_RECONCILES
        ):
            errors.append(
                f"MAX_CONCURRENT_RECONCILES must be between {MIN_CONCURRENT_RECONCILES} "
                f"and {MAX_CONCURRENT_RECONCILES}"
            )

        if self.metrics_port != 0 and not (
            MIN_METRICS_PORT <= self.metrics_port <= MAX_METRICS_PORT
        ):
            errors.append(
                f"METRICS_PORT must be 0 or between {MIN_METRICS_PORT} and {MAX_METRICS_PORT}"
            )

        if not (
            MIN_WATCH_TIMEOUT_SECONDS <= self.watch_timeout_seconds <= MAX_WATCH_TIMEOUT_SECONDS
        ):
            errors.append(
                f"WATCH_TIMEOUT must be between {MIN_WATCH_TIMEOUT_SECONDS} "
                f"and {MAX_WATCH_TIMEOUT_SECONDS} seconds"
            )

        if self.gateway_timeout_seconds < 1:
            errors.append("GATEWAY_TIMEOUT must be at least 1 second")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls, **overrides: Any) -> Config:
        """Load configuration from environment variables.

        Keyword overrides take precedence over the environment. Every variable
        is still parsed, so a malformed value is reported even when overridden.

        Environment Variables:
            CONSTRAINT_KINDS: Comma separated constraint kinds (required)
            CONSTRAINT_GROUP: API group of constraint resources
                (default: constraints.gatekeeper.sh)
            CONSTRAINT_VERSION: API version (default: v1beta1)
            FINALIZER_NAME: Finalizer attached to every constraint
            MAX_CONCURRENT_RECONCILES: Worker pool size (default: 4)
            METRICS_PORT: Prometheus endpoint port, 0 disables (default: 8888)
            WATCH_TIMEOUT: Seconds before a watch stream is restarted (default: 300)
            GATEWAY_TIMEOUT: Timeout for API server calls in seconds (default: 30)
            ENABLE_AUDIT_LOGGING: Enable JSON logs (default: true)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        def get_kinds(value: str) -> tuple[str, ...]:
            return tuple(k.strip() for k in value.split(",") if k.strip())

        values: dict[str, Any] = dict(
            constraint_kinds=get_kinds(os.environ.get("CONSTRAINT_KINDS", "")),
            group=os.environ.get("CONSTRAINT_GROUP", DEFAULT_CONSTRAINT_GROUP),
            version=os.environ.get("CONSTRAINT_VERSION", DEFAULT_CONSTRAINT_VERSION),
            finalizer_name=os.environ.get("FINALIZER_NAME", DEFAULT_FINALIZER_NAME),
            max_concurrent_reconciles=get_int(
                "MAX_CONCURRENT_RECONCILES", DEFAULT_MAX_CONCURRENT_RECONCILES
            ),
            metrics_port=get_int("METRICS_PORT", DEFAULT_METRICS_PORT),
            watch_timeout_seconds=get_int("WATCH_TIMEOUT", DEFAULT_WATCH_TIMEOUT_SECONDS),
            gateway_timeout_seconds=get_int("GATEWAY_TIMEOUT", DEFAULT_GATEWAY_TIMEOUT_SECONDS),
            enable_audit_logging=get_bool("ENABLE_AUDIT_LOGGING", True),
        )
        values.update(overrides)
        return cls(**values)
