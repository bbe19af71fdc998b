"""Resource store gateway backed by the Kubernetes API server.

Constraints are cluster-scoped custom objects. Reads and writes go through
the custom objects API; status writes use the status subresource so a
status update never touches finalizers and vice versa.

SECURITY: Every call carries a request timeout so a hung API server
surfaces as a retryable error instead of a stuck worker.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, Protocol

from kubernetes import client
from kubernetes.client.exceptions import ApiException
from pydantic import ValidationError
from urllib3.exceptions import HTTPError

from .config import DEFAULT_GATEWAY_TIMEOUT_SECONDS
from .models import Constraint

HTTP_NOT_FOUND = 404
HTTP_CONFLICT = 409


class StoreError(Exception):
    """Raised when the API server call fails."""

    pass


class NotFoundError(StoreError):
    """Raised when the constraint does not exist."""

    pass


class ConflictError(StoreError):
    """Raised when a write loses an optimistic concurrency race."""

    pass


class ConstraintStore(Protocol):
    """Operations the reconciler performs against the resource store."""

    def get(self, kind: str, name: str) -> Constraint:
        """Fetch a constraint. Raises NotFoundError if absent."""
        ...

    def update(self, constraint: Constraint) -> Constraint:
        """Write metadata and spec. Status in the request is ignored."""
        ...

    def update_status(self, constraint: Constraint) -> Constraint:
        """Write the status subresource only."""
        ...


def plural_for_kind(kind: str) -> str:
    """Constraint CRDs are generated with the lowercased kind as plural."""
    return kind.lower()


def _translate(e: ApiException, kind: str, name: str) -> StoreError:
    if e.status == HTTP_NOT_FOUND:
        return NotFoundError(f"{kind}/{name} not found")
    if e.status == HTTP_CONFLICT:
        return ConflictError(f"{kind}/{name}: {e.reason}")
    return StoreError(f"{kind}/{name}: API server returned {e.status} {e.reason}")


class KubernetesConstraintStore:
    """ConstraintStore over the Kubernetes custom objects API."""

    def __init__(
        self,
        api: client.CustomObjectsApi | None = None,
        *,
        group: str,
        version: str,
        timeout_seconds: int = DEFAULT_GATEWAY_TIMEOUT_SECONDS,
    ) -> None:
        self._api = api or client.CustomObjectsApi()
        self._group = group
        self._version = version
        self._timeout = timeout_seconds

    def _call(
        self,
        method: Callable[..., dict[str, Any]],
        kind: str,
        name: str,
        *body: dict[str, Any],
    ) -> Constraint:
        """Invoke a custom objects API method and parse the returned object.

        Raises:
            NotFoundError: If the object does not exist.
            ConflictError: If a write carried a stale resourceVersion.
            StoreError: On any other API, transport or parse failure.
        """
        try:
            obj = method(
                self._group,
                self._version,
                plural_for_kind(kind),
                name,
                *body,
                _request_timeout=self._timeout,
            )
        except ApiException as e:
            raise _translate(e, kind, name) from e
        except (HTTPError, OSError) as e:
            # Timeouts, refused connections and dropped streams never reach
            # the API server's status handling
            raise StoreError(f"{kind}/{name}: API server unreachable: {e}") from e

        try:
            return Constraint.from_object(obj)
        except ValidationError as e:
            raise StoreError(f"{kind}/{name}: malformed object: {e}") from e

    def get(self, kind: str, name: str) -> Constraint:
        return self._call(self._api.get_cluster_custom_object, kind, name)

    def update(self, constraint: Constraint) -> Constraint:
        return self._call(
            self._api.replace_cluster_custom_object,
            constraint.kind,
            constraint.name,
            constraint.to_object(),
        )

    def update_status(self, constraint: Constraint) -> Constraint:
        return self._call(
            self._api.replace_cluster_custom_object_status,
            constraint.kind,
            constraint.name,
            constraint.to_object(),
        )
