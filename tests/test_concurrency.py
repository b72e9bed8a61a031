"""
Concurrency Module Tests
========================
Tests for PeriodicTask and Debouncer.
"""

import asyncio

import pytest

from modporter.concurrency import Debouncer, PeriodicTask


class TestPeriodicTask:
    """Tests for PeriodicTask."""

    def test_invalid_interval(self):
        with pytest.raises(ValueError):
            PeriodicTask("bad", 0, lambda: None)

    def test_start_requires_loop(self):
        task = PeriodicTask("tick", 1.0, lambda: None)
        with pytest.raises(RuntimeError):
            task.start()

    @pytest.mark.asyncio
    async def test_runs_repeatedly(self):
        calls = []
        task = PeriodicTask("tick", 0.01, lambda: calls.append(1))
        task.start()
        assert task.running
        await asyncio.sleep(0.08)
        await task.stop()
        assert not task.running
        assert len(calls) >= 2

    @pytest.mark.asyncio
    async def test_waits_first_interval_by_default(self):
        calls = []
        task = PeriodicTask("tick", 10.0, lambda: calls.append(1))
        task.start()
        await asyncio.sleep(0.02)
        await task.stop()
        assert calls == []

    @pytest.mark.asyncio
    async def test_run_immediately_awaits_coroutines(self):
        calls = []

        async def tick():
            calls.append(1)

        task = PeriodicTask("tick", 10.0, tick, run_immediately=True)
        task.start()
        await asyncio.sleep(0.02)
        await task.stop()
        assert calls == [1]

    @pytest.mark.asyncio
    async def test_failing_tick_keeps_running(self):
        calls = []

        def tick():
            calls.append(1)
            raise RuntimeError("tick failed")

        task = PeriodicTask("tick", 0.01, tick, run_immediately=True)
        task.start()
        await asyncio.sleep(0.05)
        await task.stop()
        assert len(calls) >= 2

    @pytest.mark.asyncio
    async def test_stop_when_not_started(self):
        await PeriodicTask("tick", 1.0, lambda: None).stop()


class TestDebouncer:
    """Tests for Debouncer."""

    def test_trigger_without_loop(self):
        debouncer = Debouncer(0.01, lambda: None)
        assert not debouncer.trigger()
        assert not debouncer.pending

    @pytest.mark.asyncio
    async def test_burst_coalesced(self):
        calls = []
        debouncer = Debouncer(0.02, lambda: calls.append(1))
        for _ in range(10):
            assert debouncer.trigger()
        assert debouncer.pending
        await asyncio.sleep(0.08)
        assert calls == [1]
        assert not debouncer.pending

    @pytest.mark.asyncio
    async def test_cancel(self):
        calls = []
        debouncer = Debouncer(0.01, lambda: calls.append(1))
        debouncer.trigger()
        assert debouncer.cancel()
        assert not debouncer.cancel()
        await asyncio.sleep(0.03)
        assert calls == []
