"""Integration tests for the controller runtime.

These tests drive ControllerManager end to end against the in-memory
Kubernetes API from k8s_mock. Most run with the watch disabled and
enqueue keys directly; the watch itself is replaced by a fake coroutine.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from unittest.mock import patch

import pytest
from k8s_mock import (
    GROUP,
    VERSION,
    MockCustomObjectsApi,
    RecordingPolicyEngine,
    RecordingReporter,
    make_constraint,
)

from constraint_controller.config import Config
from constraint_controller.manager import ControllerManager
from constraint_controller.models import EnforcementAction, RuleStatus, Tag
from constraint_controller.store import KubernetesConstraintStore

DENY_ACTIVE = Tag(EnforcementAction.DENY, RuleStatus.ACTIVE)


async def eventually(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


class TestControllerManager:
    """Tests for ControllerManager with mocked collaborators."""

    @pytest.fixture
    def api(self) -> MockCustomObjectsApi:
        return MockCustomObjectsApi()

    @pytest.fixture
    def engine(self) -> RecordingPolicyEngine:
        return RecordingPolicyEngine()

    def build(self, api: MockCustomObjectsApi, engine: RecordingPolicyEngine) -> ControllerManager:
        config = Config(constraint_kinds=("K", "J"), metrics_port=0, max_concurrent_reconciles=2)
        return ControllerManager(
            config,
            store=KubernetesConstraintStore(api, group=GROUP, version=VERSION),
            engine=engine,
            reporter=RecordingReporter(),
        )

    @pytest.mark.asyncio
    async def test_enqueued_constraints_are_reconciled(
        self, api: MockCustomObjectsApi, engine: RecordingPolicyEngine
    ) -> None:
        api.create(make_constraint("K", "a"))
        api.create(make_constraint("J", "b"))
        manager = self.build(api, engine)
        task = asyncio.create_task(manager.run(watch=False))
        await asyncio.sleep(0)

        manager.controllers["K"].enqueue("K/a")
        manager.controllers["J"].enqueue("J/b")
        await eventually(lambda: len(manager.cache) == 2)

        manager.shutdown()
        await asyncio.wait_for(task, timeout=5)

        assert engine.identities() == ["J/b", "K/a"]
        assert manager.cache.aggregate()[DENY_ACTIVE] == 2

    @pytest.mark.asyncio
    async def test_failed_pass_is_retried_with_backoff(
        self, api: MockCustomObjectsApi, engine: RecordingPolicyEngine
    ) -> None:
        """Test a registration failure is retried until it succeeds."""
        api.create(make_constraint("K", "a"))
        engine.reject_next_adds("engine warming up")
        manager = self.build(api, engine)
        task = asyncio.create_task(manager.run(watch=False))
        await asyncio.sleep(0)

        manager.controllers["K"].enqueue("K/a")
        await eventually(lambda: manager.cache.get("K/a") is not None)
        assert manager.cache.get("K/a") == Tag(EnforcementAction.DENY, RuleStatus.ERROR)

        engine.add_error = None
        await eventually(lambda: manager.cache.get("K/a") == DENY_ACTIVE)

        manager.shutdown()
        await asyncio.wait_for(task, timeout=5)

        stored = api.stored("K", "a")
        assert stored is not None
        assert stored["status"] == {"enforced": True, "errors": []}
        assert manager.controllers["K"].queue.failures("K/a") == 0

    @pytest.mark.asyncio
    async def test_deletion_flow(
        self, api: MockCustomObjectsApi, engine: RecordingPolicyEngine
    ) -> None:
        api.create(make_constraint("K", "a"))
        manager = self.build(api, engine)
        task = asyncio.create_task(manager.run(watch=False))
        await asyncio.sleep(0)

        manager.controllers["K"].enqueue("K/a")
        await eventually(lambda: manager.cache.get("K/a") == DENY_ACTIVE)
        api.request_deletion("K", "a")
        manager.controllers["K"].enqueue("K/a")
        await eventually(lambda: api.stored("K", "a") is None)

        manager.shutdown()
        await asyncio.wait_for(task, timeout=5)

        assert engine.identities() == []
        assert len(manager.cache) == 0

    @pytest.mark.asyncio
    async def test_gate_stop_pauses_processing(
        self, api: MockCustomObjectsApi, engine: RecordingPolicyEngine
    ) -> None:
        api.create(make_constraint("K", "a"))
        manager = self.build(api, engine)
        manager.gate.stop()
        task = asyncio.create_task(manager.run(watch=False))
        await asyncio.sleep(0)

        manager.controllers["K"].enqueue("K/a")
        await eventually(lambda: len(manager.controllers["K"].queue) == 0)
        await asyncio.sleep(0.05)

        manager.shutdown()
        await asyncio.wait_for(task, timeout=5)

        assert engine.total_calls == 0
        assert api.calls == []


class TestWatchLifecycle:
    """Tests for the watch task owned by ControllerManager."""

    def build(self, api: MockCustomObjectsApi) -> ControllerManager:
        config = Config(constraint_kinds=("K",), metrics_port=0, max_concurrent_reconciles=1)
        return ControllerManager(
            config,
            store=KubernetesConstraintStore(api, group=GROUP, version=VERSION),
            engine=RecordingPolicyEngine(),
            reporter=RecordingReporter(),
        )

    @pytest.mark.asyncio
    async def test_watch_feeds_queue_and_stops_on_shutdown(self) -> None:
        """Test watch events reach the reconciler and shutdown waits for the watch."""
        api = MockCustomObjectsApi()
        api.create(make_constraint("K", "a"))
        manager = self.build(api)
        watch_finished = asyncio.Event()

        async def fake_watch(
            config: Config, enqueuers: dict[str, Callable[[str], None]], stop_flag: asyncio.Event
        ) -> None:
            enqueuers["K"]("K/a")
            await stop_flag.wait()
            watch_finished.set()

        with patch("constraint_controller.manager.watch_constraints", new=fake_watch):
            task = asyncio.create_task(manager.run())
            await eventually(lambda: manager.cache.get("K/a") == DENY_ACTIVE)
            manager.shutdown()
            await asyncio.wait_for(task, timeout=5)

        assert watch_finished.is_set()

    @pytest.mark.asyncio
    async def test_watch_ending_stops_manager(self) -> None:
        """Test the manager drains when the watch returns, e.g. after a signal."""
        manager = self.build(MockCustomObjectsApi())

        async def fake_watch(*_: object) -> None:
            return None

        with patch("constraint_controller.manager.watch_constraints", new=fake_watch):
            await asyncio.wait_for(manager.run(), timeout=5)

    @pytest.mark.asyncio
    async def test_watch_failure_is_raised_after_drain(self) -> None:
        manager = self.build(MockCustomObjectsApi())

        async def fake_watch(*_: object) -> None:
            raise RuntimeError("login failed")

        with patch("constraint_controller.manager.watch_constraints", new=fake_watch):
            with pytest.raises(RuntimeError, match="login failed"):
                await asyncio.wait_for(manager.run(), timeout=5)

        assert manager.controllers["K"].queue.shutting_down
