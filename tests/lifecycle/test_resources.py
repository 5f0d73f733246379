"""
Tests for lifecycle/resources.py - Resource Tracker.

Covers:
- Registration, replacement and lookup
- Priority-ordered, batched cleanup
- Retry, timeout and failure accounting
- Concurrent cleanup calls
"""
import asyncio

import pytest

from lifecycle.resources import ManagedResource, ResourcePriority, ResourceTracker


class TestRegistration:
    """Tests for register / unregister / lookups."""

    def test_register_by_fields(self, tracker):
        async def close():
            return None

        resource = tracker.register("connection", "db", close, metadata={"pool": 5})

        assert tracker.has("connection", "db")
        assert tracker.get("connection", "db") is resource
        assert resource.key == "connection:db"
        assert resource.metadata == {"pool": 5}
        assert resource.priority == ResourcePriority.MEDIUM
        assert len(tracker) == 1

    def test_register_managed_resource(self, tracker):
        resource = ManagedResource(type="file", id="log", cleanup=lambda: None,
                                   priority=ResourcePriority.LOW)
        assert tracker.register(resource) is resource
        assert tracker.get("file", "log").priority == ResourcePriority.LOW

    def test_register_requires_id_and_cleanup(self, tracker):
        with pytest.raises(ValueError):
            tracker.register("connection")

    def test_duplicate_key_replaces(self, tracker):
        first = tracker.register("service", "db", lambda: None)
        second = tracker.register("service", "db", lambda: None)

        assert first is not second
        assert tracker.get("service", "db") is second
        assert len(tracker) == 1

    def test_unregister(self, tracker):
        tracker.register("service", "db", lambda: None)

        assert tracker.unregister("service", "db") is True
        assert tracker.unregister("service", "db") is False
        assert not tracker.has("service", "db")

    def test_list_resources_by_type(self, tracker):
        tracker.register("service", "a", lambda: None)
        tracker.register("timer", "t", lambda: None)
        tracker.register("service", "b", lambda: None)

        assert [r.id for r in tracker.list_resources("service")] == ["a", "b"]
        assert len(tracker.list_resources()) == 3


class TestCleanup:
    """Tests for bulk release."""

    @pytest.mark.asyncio
    async def test_cleanup_all_unregisters_successes(self, tracker):
        released = []

        async def release(name):
            released.append(name)

        tracker.register("service", "a", lambda: release("a"))
        tracker.register("timer", "t", lambda: release("t"))

        results = await tracker.cleanup()

        assert sorted(released) == ["a", "t"]
        assert all(r.success for r in results)
        assert len(tracker) == 0

    @pytest.mark.asyncio
    async def test_cleanup_by_type(self, tracker):
        tracker.register("service", "a", lambda: None)
        tracker.register("timer", "t", lambda: None)

        results = await tracker.cleanup("service")

        assert [r.key for r in results] == ["service:a"]
        assert tracker.has("timer", "t")
        assert not tracker.has("service", "a")

    @pytest.mark.asyncio
    async def test_empty_cleanup(self, tracker):
        assert await tracker.cleanup() == []

    @pytest.mark.asyncio
    async def test_priority_tiers_run_in_order(self, tracker):
        order = []

        def closer(name):
            async def close():
                await asyncio.sleep(0.01)
                order.append(name)
            return close

        tracker.register("r", "low", closer("low"), priority=ResourcePriority.LOW)
        tracker.register("r", "medium", closer("medium"))
        tracker.register("r", "critical", closer("critical"), priority=ResourcePriority.CRITICAL)
        tracker.register("r", "high", closer("high"), priority=ResourcePriority.HIGH)

        results = await tracker.cleanup()

        assert order == ["critical", "high", "medium", "low"]
        assert [r.key for r in results] == ["r:critical", "r:high", "r:medium", "r:low"]

    @pytest.mark.asyncio
    async def test_batches_bound_concurrency(self, tracker):
        running = 0
        peak = 0

        async def close():
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1

        for index in range(7):
            tracker.register("r", str(index), close)

        await tracker.cleanup(max_concurrency=3)

        assert peak == 3
        assert len(tracker) == 0

    @pytest.mark.asyncio
    async def test_failing_cleanup_retried_then_kept(self, tracker):
        calls = 0

        def close():
            nonlocal calls
            calls += 1
            raise RuntimeError("still busy")

        tracker.register("socket", "s", close)
        tracker.register("socket", "ok", lambda: None)

        results = {r.key: r for r in await tracker.cleanup()}

        assert calls == tracker.max_retries
        assert results["socket:s"].success is False
        assert results["socket:s"].attempts == tracker.max_retries
        assert "still busy" in results["socket:s"].error
        assert results["socket:ok"].success is True
        assert tracker.has("socket", "s")
        assert not tracker.has("socket", "ok")
        assert tracker.get_stats().failed_cleanups == 1

    @pytest.mark.asyncio
    async def test_retry_succeeds(self, tracker):
        attempts = []

        def close():
            attempts.append(1)
            if len(attempts) == 1:
                raise RuntimeError("first try fails")

        tracker.register("socket", "s", close)
        [result] = await tracker.cleanup()

        assert result.success is True
        assert result.attempts == 2

    @pytest.mark.asyncio
    async def test_hanging_cleanup_times_out(self):
        tracker = ResourceTracker(default_timeout=0.05, max_retries=1)

        async def hang():
            await asyncio.Event().wait()

        tracker.register("service", "stuck", hang)
        [result] = await tracker.cleanup()

        assert result.success is False
        assert "timeout" in result.error

    @pytest.mark.asyncio
    async def test_explicit_timeout_overrides_default(self):
        tracker = ResourceTracker(default_timeout=10.0, max_retries=1)

        async def hang():
            await asyncio.Event().wait()

        tracker.register("service", "stuck", hang)
        [result] = await asyncio.wait_for(tracker.cleanup(timeout=0.05), 2.0)
        assert result.success is False

    @pytest.mark.asyncio
    async def test_concurrent_cleanup_waits_for_running_one(self, tracker):
        calls = 0
        gate = asyncio.Event()

        async def close():
            nonlocal calls
            calls += 1
            await gate.wait()

        tracker.register("service", "db", close)

        first = asyncio.ensure_future(tracker.cleanup())
        await asyncio.sleep(0.01)
        assert tracker.is_cleaning_up

        second = asyncio.ensure_future(tracker.cleanup())
        await asyncio.sleep(0.01)
        gate.set()

        first_results, second_results = await asyncio.gather(first, second)
        assert calls == 1
        assert first_results == second_results
        assert not tracker.is_cleaning_up

    @pytest.mark.asyncio
    async def test_stats(self, tracker):
        tracker.register("service", "a", lambda: None, priority=ResourcePriority.HIGH)
        tracker.register("service", "b", lambda: None)
        tracker.register("timer", "t", lambda: None)

        stats = tracker.get_stats()
        assert stats.total == 3
        assert stats.by_type == {"service": 2, "timer": 1}
        assert stats.by_priority == {"high": 1, "medium": 2}

        await tracker.cleanup()
        stats = tracker.get_stats().to_dict()
        assert stats["total"] == 0
        assert stats["failed_cleanups"] == 0
        assert stats["total_cleanup_time_ms"] >= 0
