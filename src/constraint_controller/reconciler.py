"""Reconciliation of constraint resources into the policy engine.

Every pass re-derives what to do from the freshly fetched resource, so
passes are idempotent and tolerate redelivered or reordered notifications:

1. Processing gate closed: nothing to do
2. Resource gone: nothing to do
3. Live resource without finalizer: attach the finalizer first
4. Live resource: load the rule if the engine holds different content,
   then record the outcome in status and in the rule cache
5. Deleting resource with finalizer: unload the rule, then drop the
   finalizer so the API server can delete the object
6. Deleting resource without finalizer: already cleaned up

ORDERING: status writes and finalizer writes are separate calls. The
finalizer is only removed after the engine confirmed the rule is gone,
otherwise the object could disappear while its rule is still enforced.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

from .config import DEFAULT_FINALIZER_NAME
from .engine import PolicyEngine, PolicyEngineError
from .metrics import MetricsReporter
from .models import (
    Constraint,
    ConstraintStatus,
    EnforcementAction,
    InvalidEnforcementAction,
    RuleStatus,
    Tag,
    semantic_equal,
    split_identity,
)
from .rule_cache import RuleCache
from .store import ConstraintStore, NotFoundError, StoreError
from .switch import ProcessingGate

logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    """How the work queue should treat a finished pass."""

    DONE = "done"
    # Retry without counting a failure (lost write race, transient conflict)
    REQUEUE = "requeue"
    # Retry with backoff and surface the error
    ERROR = "error"


@dataclass
class ReconcileResult:
    """Result of a single reconciliation pass."""

    identity: str
    outcome: Outcome = Outcome.DONE
    error: Exception | None = None
    cache_mutated: bool = False
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        return self.outcome == Outcome.DONE

    @property
    def should_requeue(self) -> bool:
        return self.outcome != Outcome.DONE

    def requeue(self, error: Exception | None = None) -> ReconcileResult:
        self.outcome = Outcome.REQUEUE
        self.error = error
        return self

    def fail(self, error: Exception) -> ReconcileResult:
        self.outcome = Outcome.ERROR
        self.error = error
        return self


def _log_event(
    event_type: str,
    message: str,
    constraint: Constraint,
    action: EnforcementAction,
    status: str,
) -> None:
    logger.info(
        message,
        extra={
            "event_type": event_type,
            "constraint_kind": constraint.kind,
            "constraint_name": constraint.name,
            "constraint_action": action.value,
            "constraint_status": status,
        },
    )


class Reconciler:
    """Reconciles constraints of one kind.

    Reconcilers for different kinds share the rule cache, the policy engine
    and the processing gate. reconcile() is safe to call from several worker
    threads at once as long as no two calls share an identity.
    """

    def __init__(
        self,
        kind: str,
        *,
        store: ConstraintStore,
        engine: PolicyEngine,
        cache: RuleCache,
        gate: ProcessingGate,
        reporter: MetricsReporter,
        finalizer_name: str = DEFAULT_FINALIZER_NAME,
    ) -> None:
        self._kind = kind
        self._store = store
        self._engine = engine
        self._cache = cache
        self._gate = gate
        self._reporter = reporter
        self._finalizer = finalizer_name

    @property
    def kind(self) -> str:
        return self._kind

    def reconcile(self, identity: str) -> ReconcileResult:
        """Run one pass for the constraint behind identity.

        Store and engine failures are returned as results, never raised.
        Metrics are exported once at the end of any pass that changed the
        rule cache.
        """
        result = ReconcileResult(identity=identity)
        try:
            with self._gate.entered() as enabled:
                if not enabled:
                    logger.info(
                        "Ignoring request, constraint controller disabled",
                        extra={"identity": identity},
                    )
                    return result
                return self._reconcile_enabled(identity, result)
        finally:
            if result.cache_mutated:
                self._cache.report(self._reporter)
            result.end_time = datetime.now(UTC)

    def _reconcile_enabled(self, identity: str, result: ReconcileResult) -> ReconcileResult:
        try:
            kind, name = split_identity(identity)
        except ValueError as e:
            logger.error(
                "Dropping malformed request",
                extra={"identity": identity, "error": str(e)},
            )
            return result
        if kind != self._kind:
            logger.error(
                "Dropping request for foreign kind",
                extra={"identity": identity, "expected_kind": self._kind},
            )
            return result

        try:
            constraint = self._store.get(kind, name)
        except NotFoundError:
            # Deletion already fully processed
            return result
        except StoreError as e:
            return result.fail(e)

        try:
            action = constraint.enforcement_action
        except InvalidEnforcementAction as e:
            return result.fail(e)

        if not constraint.deletion_requested:
            return self._sync(constraint, action, result)
        if constraint.has_finalizer(self._finalizer):
            return self._finalize(constraint, action, result)
        return result

    def _attach_finalizer(self, constraint: Constraint) -> Constraint:
        """Add the finalizer, keeping the status held before the write.

        The update response carries whatever status the server stored, which
        is not necessarily what this pass read; restore ours onto it.

        Raises:
            StoreError: If the write fails.
        """
        status = constraint.status.model_copy(deep=True) if constraint.status else None
        constraint.add_finalizer(self._finalizer)
        updated = self._store.update(constraint)
        if status is not None:
            updated.status = status
        return updated

    def _sync(
        self,
        constraint: Constraint,
        action: EnforcementAction,
        result: ReconcileResult,
    ) -> ReconcileResult:
        identity = constraint.identity

        if not constraint.has_finalizer(self._finalizer):
            try:
                constraint = self._attach_finalizer(constraint)
            except StoreError as e:
                logger.info(
                    "Finalizer write failed, requeueing",
                    extra={"identity": identity, "error": str(e)},
                )
                return result.requeue(e)

        logger.info("Handling constraint update", extra={"identity": identity})

        status = constraint.status or ConstraintStatus()
        status.errors = []
        constraint.status = status

        content = constraint.rule_content()
        try:
            loaded = self._engine.get_rule(identity)
        except PolicyEngineError as e:
            logger.debug(
                "Could not read rule back from engine",
                extra={"identity": identity, "error": str(e)},
            )
            loaded = None

        if not semantic_equal(content, loaded):
            try:
                self._engine.add_rule(content)
            except PolicyEngineError as e:
                self._cache.put(identity, Tag(action, RuleStatus.ERROR))
                result.cache_mutated = True
                status.enforced = False
                status.errors.append(str(e))
                try:
                    self._store.update_status(constraint)
                except StoreError as status_err:
                    logger.error(
                        "Could not report constraint error status",
                        extra={"identity": identity, "error": str(status_err)},
                    )
                return result.fail(e)
            _log_event(
                "constraint_added",
                "Constraint added to policy engine",
                constraint,
                action,
                "enforced",
            )

        status.enforced = True
        try:
            self._store.update_status(constraint)
        except StoreError as e:
            logger.info(
                "Status write failed, requeueing",
                extra={"identity": identity, "error": str(e)},
            )
            return result.requeue(e)

        self._cache.put(identity, Tag(action, RuleStatus.ACTIVE))
        result.cache_mutated = True
        return result

    def _finalize(
        self,
        constraint: Constraint,
        action: EnforcementAction,
        result: ReconcileResult,
    ) -> ReconcileResult:
        identity = constraint.identity

        try:
            found = self._engine.remove_rule(identity)
        except PolicyEngineError as e:
            logger.error(
                "Failed to remove constraint from policy engine",
                extra={"identity": identity, "error": str(e)},
            )
            return result.fail(e)
        if not found:
            logger.info(
                "Constraint already absent from policy engine",
                extra={"identity": identity},
            )
        _log_event(
            "constraint_removed",
            "Constraint removed from policy engine",
            constraint,
            action,
            "unenforced",
        )

        constraint.remove_finalizer(self._finalizer)
        try:
            self._store.update(constraint)
        except StoreError as e:
            logger.info(
                "Finalizer removal failed, requeueing",
                extra={"identity": identity, "error": str(e)},
            )
            return result.requeue(e)

        self._cache.remove(identity)
        result.cache_mutated = True
        return result
