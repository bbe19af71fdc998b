"""Tests for the processing gate."""

from __future__ import annotations

import threading

from constraint_controller.switch import ProcessingGate


class TestProcessingGate:
    """Tests for ProcessingGate."""

    def test_enabled_by_default(self) -> None:
        gate = ProcessingGate()
        assert gate.enter() is True
        gate.exit()

    def test_stop_disables_new_passes(self) -> None:
        gate = ProcessingGate()
        gate.stop()

        with gate.entered() as enabled:
            assert enabled is False

    def test_start_reenables(self) -> None:
        gate = ProcessingGate(enabled=False)
        gate.start()
        assert gate.enabled is True

    def test_stop_waits_for_in_flight_pass(self) -> None:
        """Test stop() returns only after the running pass exits."""
        gate = ProcessingGate()
        assert gate.enter() is True
        stopped = threading.Event()

        def stopper() -> None:
            gate.stop()
            stopped.set()

        t = threading.Thread(target=stopper)
        t.start()
        assert not stopped.wait(timeout=0.1)

        gate.exit()

        assert stopped.wait(timeout=2)
        t.join()
        assert gate.enabled is False

    def test_entered_releases_on_exception(self) -> None:
        gate = ProcessingGate()
        try:
            with gate.entered():
                raise ValueError("boom")
        except ValueError:
            pass

        gate.stop()
        assert gate.enabled is False
