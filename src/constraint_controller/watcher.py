"""Change notifications for constraint resources.

kopf owns the watch streams: it lists every constraint kind, follows the
stream and reconnects when the API server closes it. Only raw event handlers
are registered, so kopf never attaches finalizers or progress annotations of
its own; the reconciler keeps sole ownership of the constraint finalizer.

Every event is reduced to the rule identity of the affected object and put
on the work queue of that kind. Delivery is at-least-once and may repeat
identities already handled.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

import kopf

from .config import Config
from .models import rule_identity
from .store import plural_for_kind

logger = logging.getLogger(__name__)

# Extra time the client waits beyond the server-side watch timeout
WATCH_CLIENT_GRACE_SECONDS = 10

# None marks objects delivered by the initial listing
RELEVANT_EVENT_TYPES = frozenset({None, "ADDED", "MODIFIED", "DELETED"})


def identity_from_event(event: Mapping[str, Any]) -> str | None:
    """Extract the rule identity from a watch event, or None if irrelevant."""
    if event.get("type") not in RELEVANT_EVENT_TYPES:
        return None
    obj = event.get("object")
    if not isinstance(obj, Mapping):
        return None
    kind = obj.get("kind")
    name = (obj.get("metadata") or {}).get("name")
    if not kind or not name:
        return None
    return rule_identity(kind, name)


def event_forwarder(enqueue: Callable[[str], None]) -> Callable[..., Awaitable[None]]:
    """Build a kopf event handler that enqueues the identity of each event."""

    async def forward(event: Mapping[str, Any], **_: Any) -> None:
        identity = identity_from_event(event)
        if identity is not None:
            enqueue(identity)

    return forward


def build_settings(config: Config) -> kopf.OperatorSettings:
    """kopf settings bounded by the configured watch and gateway timeouts."""
    settings = kopf.OperatorSettings()
    # Status is the only feedback channel; no Kubernetes Events
    settings.posting.enabled = False
    settings.watching.server_timeout = config.watch_timeout_seconds
    settings.watching.client_timeout = config.watch_timeout_seconds + WATCH_CLIENT_GRACE_SECONDS
    settings.watching.connect_timeout = config.gateway_timeout_seconds
    return settings


def build_registry(
    config: Config, enqueuers: Mapping[str, Callable[[str], None]]
) -> kopf.OperatorRegistry:
    """Register one event handler per constraint kind on a private registry."""
    registry = kopf.OperatorRegistry()

    @kopf.on.login(registry=registry)
    def login(**kwargs: Any) -> Any:
        return kopf.login_via_client(**kwargs)

    for kind, enqueue in enqueuers.items():
        kopf.on.event(
            group=config.group,
            version=config.version,
            plural=plural_for_kind(kind),
            id=f"enqueue-{kind}",
            registry=registry,
        )(event_forwarder(enqueue))

    return registry


async def watch_constraints(
    config: Config,
    enqueuers: Mapping[str, Callable[[str], None]],
    stop_flag: asyncio.Event,
) -> None:
    """Watch every configured kind until stop_flag is set.

    kopf installs its own SIGINT and SIGTERM handlers when running on the
    main thread, so a signal may also end the watch before stop_flag is set.
    """
    logger.info(
        "Starting constraint watch",
        extra={"kinds": list(enqueuers), "group": config.group, "version": config.version},
    )
    await kopf.operator(
        registry=build_registry(config, enqueuers),
        settings=build_settings(config),
        clusterwide=True,
        standalone=True,
        stop_flag=stop_flag,
    )
    logger.info("Constraint watch stopped")
