"""Pydantic models for constraint resources and rule tags.

These models provide:
1. Type-safe parsing of constraint objects returned by the API server
2. Lossless round-trip back to the wire shape (unknown fields are kept)
3. The rule content handed to the policy engine, stripped of status
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from .config import DEFAULT_CONSTRAINT_GROUP, DEFAULT_CONSTRAINT_VERSION


class InvalidEnforcementAction(ValueError):
    """Raised when spec.enforcementAction is present but not a string."""

    pass


class EnforcementAction(str, Enum):
    """Disposition applied when a rule is violated."""

    DENY = "deny"
    DRYRUN = "dryrun"
    UNRECOGNIZED = "unrecognized"


class RuleStatus(str, Enum):
    """Load status of a rule in the policy engine."""

    ACTIVE = "active"
    ERROR = "error"


KNOWN_ENFORCEMENT_ACTIONS: tuple[EnforcementAction, ...] = (
    EnforcementAction.DENY,
    EnforcementAction.DRYRUN,
    EnforcementAction.UNRECOGNIZED,
)

ALL_STATUSES: tuple[RuleStatus, ...] = (RuleStatus.ACTIVE, RuleStatus.ERROR)


@dataclass(frozen=True)
class Tag:
    """Metrics grouping for a cached rule."""

    enforcement_action: EnforcementAction
    status: RuleStatus


def rule_identity(kind: str, name: str) -> str:
    """Build the key joining a constraint, its cache entry and its engine rule."""
    return f"{kind}/{name}"


def split_identity(identity: str) -> tuple[str, str]:
    """Inverse of rule_identity.

    Raises:
        ValueError: If the identity is not of the form kind/name.
    """
    kind, sep, name = identity.partition("/")
    if not sep or not kind or not name:
        raise ValueError(f"Invalid rule identity: {identity!r}")
    return kind, name


def get_enforcement_action(spec: Mapping[str, Any]) -> EnforcementAction:
    """Resolve the enforcement action declared in a constraint spec.

    A missing or empty action defaults to deny. Strings outside the known
    set map to unrecognized so they still show up in metrics.

    Raises:
        InvalidEnforcementAction: If the value is not a string.
    """
    value = spec.get("enforcementAction")
    if value is None or value == "":
        return EnforcementAction.DENY
    if not isinstance(value, str):
        raise InvalidEnforcementAction(
            f"spec.enforcementAction must be a string, got {type(value).__name__}"
        )
    try:
        return EnforcementAction(value)
    except ValueError:
        return EnforcementAction.UNRECOGNIZED


def semantic_equal(desired: Mapping[str, Any], loaded: Mapping[str, Any] | None) -> bool:
    """Compare two rule contents, ignoring everything but spec and labels."""
    if loaded is None:
        return False

    def labels(content: Mapping[str, Any]) -> dict[str, Any]:
        return dict((content.get("metadata") or {}).get("labels") or {})

    return desired.get("spec") == loaded.get("spec") and labels(desired) == labels(loaded)


# =============================================================================
# Constraint resource
# =============================================================================


class ConstraintStatus(BaseModel):
    """Reconciliation-owned status sub-object.

    Fields written by other components (for example per-pod audit status)
    are kept as extras so a status write never drops them.
    """

    model_config = {"extra": "allow"}

    enforced: bool = False
    errors: list[str] = Field(default_factory=list)


class ObjectMeta(BaseModel):
    """Subset of object metadata the controller reads or writes."""

    model_config = {"extra": "allow", "populate_by_name": True}

    name: str = Field(min_length=1)
    labels: dict[str, str] | None = None
    annotations: dict[str, str] | None = None
    resource_version: str | None = Field(None, alias="resourceVersion")
    deletion_timestamp: datetime | None = Field(None, alias="deletionTimestamp")
    finalizers: list[str] = Field(default_factory=list)


class Constraint(BaseModel):
    """A constraint resource as stored by the API server."""

    model_config = {"extra": "allow", "populate_by_name": True}

    api_version: str = Field(
        f"{DEFAULT_CONSTRAINT_GROUP}/{DEFAULT_CONSTRAINT_VERSION}", alias="apiVersion"
    )
    kind: str = Field(min_length=1)
    metadata: ObjectMeta
    spec: dict[str, Any] = Field(default_factory=dict)
    status: ConstraintStatus | None = None

    @classmethod
    def from_object(cls, obj: Mapping[str, Any]) -> Constraint:
        """Parse a raw API object."""
        return cls.model_validate(obj)

    def to_object(self) -> dict[str, Any]:
        """Serialize to the wire shape accepted by the API server.

        Only unset optional fields owned by this model are dropped; None
        values inside spec or status are user data and are kept.
        """
        obj = self.model_dump(mode="json", by_alias=True)
        if obj.get("status") is None:
            obj.pop("status", None)
        metadata = obj["metadata"]
        for key in ("labels", "annotations", "resourceVersion", "deletionTimestamp"):
            if metadata.get(key) is None:
                metadata.pop(key, None)
        return obj

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def identity(self) -> str:
        return rule_identity(self.kind, self.metadata.name)

    @property
    def deletion_requested(self) -> bool:
        return self.metadata.deletion_timestamp is not None

    @property
    def enforcement_action(self) -> EnforcementAction:
        return get_enforcement_action(self.spec)

    def has_finalizer(self, finalizer: str) -> bool:
        return finalizer in self.metadata.finalizers

    def add_finalizer(self, finalizer: str) -> None:
        if finalizer not in self.metadata.finalizers:
            self.metadata.finalizers.append(finalizer)

    def remove_finalizer(self, finalizer: str) -> None:
        self.metadata.finalizers = [f for f in self.metadata.finalizers if f != finalizer]

    def rule_content(self) -> dict[str, Any]:
        """Deep copy of the object with status removed, as loaded into the engine."""
        content = self.to_object()
        content.pop("status", None)
        return content
