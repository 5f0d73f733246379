"""
Keystone - Test Configuration

Pytest fixtures and stub services shared by all tests.
"""
import asyncio
from typing import Any, Awaitable, Callable, List, Optional

import pytest

from config import LifecycleConfig
from lifecycle.resources import ResourceTracker
from lifecycle.signals import SignalAdapter


class FakeSignalAdapter(SignalAdapter):
    """Records installs and exits; tests fire the callbacks directly."""

    def __init__(self):
        self.on_signal: Optional[Callable[[str], Awaitable[None]]] = None
        self.on_crash: Optional[Callable[[BaseException], Awaitable[None]]] = None
        self.install_count = 0
        self.uninstall_count = 0
        self.exit_codes: List[int] = []

    @property
    def installed(self) -> bool:
        return self.on_signal is not None

    def install(self, on_signal, on_crash) -> None:
        self.on_signal = on_signal
        self.on_crash = on_crash
        self.install_count += 1

    def uninstall(self) -> None:
        self.on_signal = None
        self.on_crash = None
        self.uninstall_count += 1

    def exit(self, code: int) -> None:
        self.exit_codes.append(code)


class StubService:
    """
    Service double that records lifecycle calls into a shared journal.

    ``fail_initialize`` / ``fail_shutdown`` raise; ``hang_*`` never finish.
    """

    def __init__(
        self,
        name: str,
        journal: List[str],
        fail_initialize: bool = False,
        fail_shutdown: bool = False,
        hang_initialize: bool = False,
        hang_shutdown: bool = False,
    ):
        self.name = name
        self.journal = journal
        self.fail_initialize = fail_initialize
        self.fail_shutdown = fail_shutdown
        self.hang_initialize = hang_initialize
        self.hang_shutdown = hang_shutdown
        self.initialized = False
        self.shutdown_calls = 0

    async def initialize(self) -> None:
        self.journal.append(f"init:{self.name}")
        if self.hang_initialize:
            await asyncio.Event().wait()
        if self.fail_initialize:
            raise RuntimeError(f"{self.name} failed to initialize")
        self.initialized = True

    async def shutdown(self) -> None:
        self.journal.append(f"shutdown:{self.name}")
        self.shutdown_calls += 1
        if self.hang_shutdown:
            await asyncio.Event().wait()
        if self.fail_shutdown:
            raise RuntimeError(f"{self.name} failed to shut down")


class PlainService:
    """Service without any lifecycle hooks."""

    def __init__(self, name: str):
        self.name = name


class ServiceFactory:
    """Factory double that counts calls and keeps every instance it built."""

    def __init__(self, build: Callable[[], Any]):
        self.build = build
        self.calls = 0
        self.instances: List[Any] = []

    def __call__(self) -> Any:
        self.calls += 1
        instance = self.build()
        self.instances.append(instance)
        return instance


@pytest.fixture
def journal() -> List[str]:
    """Ordered record of lifecycle calls made on stub services."""
    return []


@pytest.fixture
def fast_config() -> LifecycleConfig:
    """Lifecycle configuration with short timeouts for tests."""
    return LifecycleConfig(
        rollback_timeout=0.2,
        shutdown_timeout=0.2,
        resource_cleanup_timeout=0.5,
        default_init_timeout=1.0,
        default_shutdown_timeout=0.5,
        default_retry_attempts=1,
        default_retry_delay=0.01,
        install_signal_handlers=True,
        termination_signals=("SIGTERM", "SIGINT", "SIGHUP"),
    )


@pytest.fixture
def signal_adapter() -> FakeSignalAdapter:
    return FakeSignalAdapter()


@pytest.fixture
def tracker() -> ResourceTracker:
    """Resource tracker that does not back off between retries."""
    return ResourceTracker(default_timeout=0.5, max_retries=2, retry_backoff=0.0)


@pytest.fixture
def orchestrator(fast_config, tracker, signal_adapter):
    """Orchestrator wired to fakes only."""
    from lifecycle.orchestrator import ServiceOrchestrator

    return ServiceOrchestrator(
        config=fast_config,
        resources=tracker,
        signal_adapter=signal_adapter,
    )


@pytest.fixture
def make_stub(journal):
    """Build a counting factory for a StubService."""

    def _make(name: str, **behaviour: Any) -> ServiceFactory:
        return ServiceFactory(lambda: StubService(name, journal, **behaviour))

    return _make
