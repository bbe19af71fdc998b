"""Controller runtime wiring watches, work queues and reconcilers.

ARCHITECTURE:
- One ConstraintController per constraint kind, each with its own work
  queue and reconciler
- All reconcilers share one RuleCache, one policy engine and one
  ProcessingGate
- Reconciliation passes block on network calls, so they run on a bounded
  thread pool via run_in_executor; the event loop only schedules work
- kopf watches every kind from a task on the same event loop and feeds
  identities into the work queues
"""

from __future__ import annotations

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor

from kubernetes import client

from .config import Config
from .engine import InMemoryPolicyEngine, PolicyEngine
from .metrics import MetricsReporter, PrometheusReporter
from .reconciler import Outcome, ReconcileResult, Reconciler
from .rule_cache import RuleCache
from .store import ConstraintStore, KubernetesConstraintStore
from .switch import ProcessingGate
from .watcher import watch_constraints
from .workqueue import WorkQueue

logger = logging.getLogger(__name__)


class ConstraintController:
    """Runs reconciliation passes for one kind off a work queue."""

    def __init__(
        self,
        reconciler: Reconciler,
        executor: ThreadPoolExecutor,
        *,
        max_concurrent_reconciles: int,
        queue: WorkQueue | None = None,
    ) -> None:
        self._reconciler = reconciler
        self._executor = executor
        self._workers = max_concurrent_reconciles
        self._queue = queue or WorkQueue()

    @property
    def kind(self) -> str:
        return self._reconciler.kind

    @property
    def queue(self) -> WorkQueue:
        return self._queue

    def enqueue(self, identity: str) -> None:
        """Thread-safe entry point for change notifications."""
        self._queue.add_threadsafe(identity)

    async def run(self) -> None:
        """Process keys until the queue is shut down."""
        self._queue.bind(asyncio.get_running_loop())
        logger.info(
            "Starting constraint controller",
            extra={"kind": self.kind, "workers": self._workers},
        )
        await asyncio.gather(*(self._worker() for _ in range(self._workers)))
        logger.info("Constraint controller stopped", extra={"kind": self.kind})

    def shutdown(self) -> None:
        self._queue.shutdown()

    async def _worker(self) -> None:
        loop = asyncio.get_running_loop()
        while (key := await self._queue.get()) is not None:
            try:
                result = await loop.run_in_executor(
                    self._executor, self._reconciler.reconcile, key
                )
            except Exception as e:
                logger.exception(
                    "Reconciliation raised unexpectedly",
                    extra={"identity": key, "error": str(e)},
                )
                self._queue.add_rate_limited(key)
            else:
                self._handle_result(result)
            finally:
                self._queue.done(key)

    def _handle_result(self, result: ReconcileResult) -> None:
        key = result.identity
        if result.outcome == Outcome.DONE:
            self._queue.forget(key)
            logger.debug(
                "Reconciliation completed",
                extra={"identity": key, "duration_seconds": result.duration_seconds},
            )
            return

        delay = self._queue.add_rate_limited(key)
        if result.outcome == Outcome.ERROR:
            logger.error(
                "Reconciliation failed",
                extra={
                    "identity": key,
                    "error": str(result.error),
                    "error_type": type(result.error).__name__,
                    "retry_in_seconds": delay,
                },
            )
        else:
            logger.info(
                "Reconciliation requeued",
                extra={"identity": key, "retry_in_seconds": delay},
            )


class ControllerManager:
    """Owns the shared components and one controller per constraint kind."""

    def __init__(
        self,
        config: Config,
        *,
        store: ConstraintStore | None = None,
        engine: PolicyEngine | None = None,
        reporter: MetricsReporter | None = None,
        cache: RuleCache | None = None,
        gate: ProcessingGate | None = None,
        api: client.CustomObjectsApi | None = None,
    ) -> None:
        self._config = config
        self.cache = cache or RuleCache()
        self.gate = gate or ProcessingGate()
        self.engine = engine or InMemoryPolicyEngine()
        self.reporter = reporter or PrometheusReporter()
        self._store = store or KubernetesConstraintStore(
            api,
            group=config.group,
            version=config.version,
            timeout_seconds=config.gateway_timeout_seconds,
        )
        self._executor = ThreadPoolExecutor(
            max_workers=config.max_concurrent_reconciles * len(config.constraint_kinds),
            thread_name_prefix="reconcile",
        )
        self.controllers: dict[str, ConstraintController] = {
            kind: ConstraintController(
                Reconciler(
                    kind,
                    store=self._store,
                    engine=self.engine,
                    cache=self.cache,
                    gate=self.gate,
                    reporter=self.reporter,
                    finalizer_name=config.finalizer_name,
                ),
                self._executor,
                max_concurrent_reconciles=config.max_concurrent_reconciles,
            )
            for kind in config.constraint_kinds
        }
        self._shutdown_event = asyncio.Event()
        self._stop_watch = asyncio.Event()

    async def run(self, *, watch: bool = True) -> None:
        """Run every controller, and the watch, until shutdown().

        The manager also shuts down when the watch ends on its own, which
        happens on a signal or a fatal watch error. A watch error is raised
        once the controllers have drained.
        """
        loop = asyncio.get_running_loop()
        for controller in self.controllers.values():
            controller.queue.bind(loop)
        tasks = [asyncio.create_task(c.run()) for c in self.controllers.values()]

        waiters = {asyncio.create_task(self._shutdown_event.wait())}
        watch_task: asyncio.Task[None] | None = None
        if watch:
            watch_task = asyncio.create_task(
                watch_constraints(
                    self._config,
                    {kind: c.enqueue for kind, c in self.controllers.items()},
                    self._stop_watch,
                )
            )
            waiters.add(watch_task)

        done, pending = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        for waiter in pending:
            if waiter is not watch_task:
                waiter.cancel()

        watch_error: BaseException | None = None
        if watch_task is not None:
            if watch_task in done:
                logger.warning("Constraint watch ended, shutting down")
            self._stop_watch.set()
            (watch_error,) = await asyncio.gather(watch_task, return_exceptions=True)

        for controller in self.controllers.values():
            controller.shutdown()
        await asyncio.gather(*tasks)
        self._executor.shutdown(wait=True)
        logger.info("Controller manager stopped")

        if isinstance(watch_error, Exception):
            raise watch_error

    def shutdown(self) -> None:
        """Signal the manager to stop."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()
