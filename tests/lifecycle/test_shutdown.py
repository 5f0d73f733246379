"""
Tests for graceful shutdown and process wiring in lifecycle/orchestrator.py.

Covers:
- Reverse-order, best-effort shutdown
- Reentrancy guard
- Resource release and registry clearing
- Termination signal and crash callbacks
"""
import asyncio

import pytest

from lifecycle.descriptors import ServiceDescriptor


async def _start_chain(orchestrator, make_stub, **behaviour):
    """Start db <- cache <- api; ``behaviour`` maps a name to StubService options."""
    return await orchestrator.initialize_services([
        ServiceDescriptor("db", make_stub("db", **behaviour.get("db", {}))),
        ServiceDescriptor("cache", make_stub("cache", **behaviour.get("cache", {})), dependencies=["db"]),
        ServiceDescriptor("api", make_stub("api", **behaviour.get("api", {})), dependencies=["cache"]),
    ])


def _shutdowns(journal):
    return [entry.split(":", 1)[1] for entry in journal if entry.startswith("shutdown:")]


class TestGracefulShutdown:
    """Tests for ServiceOrchestrator.shutdown."""

    @pytest.mark.asyncio
    async def test_reverse_order(self, orchestrator, make_stub, journal):
        registry = await _start_chain(orchestrator, make_stub)

        report = await orchestrator.shutdown(registry)

        assert report.order == ["api", "cache", "db"]
        assert _shutdowns(journal) == ["api", "cache", "db"]
        assert report.ok
        assert orchestrator.last_shutdown is report

    @pytest.mark.asyncio
    async def test_each_service_shut_down_once(self, orchestrator, make_stub):
        registry = await _start_chain(orchestrator, make_stub)
        services = [instance for _, instance in registry.get_all_services()]

        await orchestrator.shutdown(registry)

        assert [s.shutdown_calls for s in services] == [1, 1, 1]

    @pytest.mark.asyncio
    async def test_state_cleared_afterwards(self, orchestrator, make_stub, tracker, signal_adapter):
        registry = await _start_chain(orchestrator, make_stub)

        await orchestrator.shutdown(registry)

        assert len(registry) == 0
        assert len(tracker) == 0
        assert signal_adapter.uninstall_count == 1
        assert not signal_adapter.installed
        assert orchestrator.is_shutting_down is False

    @pytest.mark.asyncio
    async def test_defaults_to_current_registry(self, orchestrator, make_stub, journal):
        await _start_chain(orchestrator, make_stub)

        report = await orchestrator.shutdown()
        assert report.order == ["api", "cache", "db"]

    @pytest.mark.asyncio
    async def test_failure_does_not_stop_remaining(self, orchestrator, make_stub, journal):
        registry = await _start_chain(orchestrator, make_stub, cache={"fail_shutdown": True})

        report = await orchestrator.shutdown(registry)

        assert _shutdowns(journal) == ["api", "cache", "db"]
        assert list(report.failed) == ["cache"]
        assert not report.ok

    @pytest.mark.asyncio
    async def test_hanging_service_times_out(self, orchestrator, make_stub, journal, fast_config):
        registry = await _start_chain(orchestrator, make_stub, api={"hang_shutdown": True})

        report = await asyncio.wait_for(
            orchestrator.shutdown(registry),
            timeout=fast_config.shutdown_timeout * 10,
        )

        assert "api" in report.failed
        assert _shutdowns(journal) == ["api", "cache", "db"]

    @pytest.mark.asyncio
    async def test_concurrent_calls_run_once(self, orchestrator, make_stub, journal):
        registry = await _start_chain(orchestrator, make_stub)

        first, second = await asyncio.gather(
            orchestrator.shutdown(registry),
            orchestrator.shutdown(registry),
        )

        assert first.skipped is False
        assert second.skipped is True
        assert _shutdowns(journal) == ["api", "cache", "db"]

    @pytest.mark.asyncio
    async def test_shutdown_of_empty_registry(self, orchestrator):
        report = await orchestrator.shutdown()
        assert report.order == []
        assert report.ok

    @pytest.mark.asyncio
    async def test_wait_for_shutdown_released(self, orchestrator, make_stub):
        registry = await _start_chain(orchestrator, make_stub)
        waiter = asyncio.ensure_future(orchestrator.wait_for_shutdown())

        await asyncio.sleep(0)
        assert not waiter.done()

        await orchestrator.shutdown(registry)
        await asyncio.wait_for(waiter, 1.0)

    @pytest.mark.asyncio
    async def test_tracker_cleanup_shuts_registry_down(self, orchestrator, make_stub, tracker, journal):
        registry = await _start_chain(orchestrator, make_stub)
        services = [instance for _, instance in registry.get_all_services()]

        results = await asyncio.wait_for(tracker.cleanup(), 2.0)

        assert all(r.success for r in results)
        assert results[0].key == "service-registry:main"
        assert _shutdowns(journal) == ["api", "cache", "db"]
        assert [s.shutdown_calls for s in services] == [1, 1, 1]
        assert len(tracker) == 0
        assert len(registry) == 0


class TestProcessEvents:
    """Termination signals and crashes reach shutdown through the adapter."""

    @pytest.mark.asyncio
    async def test_termination_signal_exits_cleanly(self, orchestrator, make_stub, journal, signal_adapter):
        await _start_chain(orchestrator, make_stub)

        await signal_adapter.on_signal("SIGTERM")

        assert _shutdowns(journal) == ["api", "cache", "db"]
        assert signal_adapter.exit_codes == [0]

    @pytest.mark.asyncio
    async def test_crash_exits_with_failure(self, orchestrator, make_stub, journal, signal_adapter):
        await _start_chain(orchestrator, make_stub)

        await signal_adapter.on_crash(RuntimeError("unhandled"))

        assert _shutdowns(journal) == ["api", "cache", "db"]
        assert signal_adapter.exit_codes == [1]

    @pytest.mark.asyncio
    async def test_signal_during_shutdown_waits_for_it(self, orchestrator, make_stub, journal, signal_adapter):
        registry = await _start_chain(orchestrator, make_stub, db={"hang_shutdown": True})
        on_signal = signal_adapter.on_signal

        running = asyncio.ensure_future(orchestrator.shutdown(registry))
        await asyncio.sleep(0.01)
        await on_signal("SIGINT")

        assert running.done()
        assert (await running).failed.keys() == {"db"}

        assert _shutdowns(journal) == ["api", "cache", "db"]
        assert signal_adapter.exit_codes == [0]

    @pytest.mark.asyncio
    async def test_failing_services_still_exit_cleanly(self, orchestrator, make_stub, signal_adapter):
        await _start_chain(orchestrator, make_stub, cache={"fail_shutdown": True})

        await signal_adapter.on_signal("SIGHUP")

        assert signal_adapter.exit_codes == [0]
        assert "cache" in orchestrator.last_shutdown.failed
