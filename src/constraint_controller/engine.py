"""Policy engine gateway.

The reconciler only needs three operations from the engine: read back the
rule loaded for an identity, load a rule, and unload a rule. Any engine
exposing them can be plugged in; InMemoryPolicyEngine is the in-process
registry used when no external engine is configured.
"""

from __future__ import annotations

import copy
import logging
import threading
from collections.abc import Mapping
from typing import Any, Protocol

from .models import rule_identity

logger = logging.getLogger(__name__)


class PolicyEngineError(Exception):
    """Raised when the engine cannot complete an operation."""

    pass


class RuleRegistrationError(PolicyEngineError):
    """Raised when the engine rejects rule content."""

    pass


class PolicyEngine(Protocol):
    """Operations the reconciler performs against the policy engine."""

    def get_rule(self, identity: str) -> dict[str, Any] | None:
        """Return the loaded rule content, or None if the engine does not know it."""
        ...

    def add_rule(self, content: Mapping[str, Any]) -> None:
        """Load or replace a rule. Raises RuleRegistrationError on rejection."""
        ...

    def remove_rule(self, identity: str) -> bool:
        """Unload a rule. Returns False if the engine did not know it."""
        ...


def content_identity(content: Mapping[str, Any]) -> str:
    """Derive the rule identity from raw rule content.

    Raises:
        RuleRegistrationError: If kind or metadata.name is missing.
    """
    kind = content.get("kind")
    name = (content.get("metadata") or {}).get("name")
    if not isinstance(kind, str) or not kind:
        raise RuleRegistrationError("rule content has no kind")
    if not isinstance(name, str) or not name:
        raise RuleRegistrationError("rule content has no metadata.name")
    return rule_identity(kind, name)


class InMemoryPolicyEngine:
    """Thread-safe in-process rule registry.

    Rules are stored as deep copies so later mutation of a constraint
    object by the caller never leaks into the loaded rule set.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._rules: dict[str, dict[str, Any]] = {}

    def get_rule(self, identity: str) -> dict[str, Any] | None:
        with self._lock:
            rule = self._rules.get(identity)
            return copy.deepcopy(rule) if rule is not None else None

    def add_rule(self, content: Mapping[str, Any]) -> None:
        identity = content_identity(content)
        if "status" in content:
            raise RuleRegistrationError(f"{identity}: rule content must not carry status")
        spec = content.get("spec", {})
        if not isinstance(spec, Mapping):
            raise RuleRegistrationError(f"{identity}: spec must be a mapping")

        with self._lock:
            self._rules[identity] = copy.deepcopy(dict(content))
        logger.debug("Rule loaded", extra={"identity": identity})

    def remove_rule(self, identity: str) -> bool:
        with self._lock:
            found = self._rules.pop(identity, None) is not None
        logger.debug("Rule unloaded", extra={"identity": identity, "found": found})
        return found

    def identities(self) -> list[str]:
        with self._lock:
            return sorted(self._rules)
