"""
Keystone - Service Descriptors and Runtime Records

Declarative description of a startable unit and the bookkeeping the
orchestrator keeps while starting it.

Types:
    ServiceDescriptor     immutable input (name, factory, dependencies, policy)
    ServiceHandle         capability wrapper around a created instance
    ServiceRuntimeRecord  per-service state while starting / running
    ServiceStats          per-service entry of InitializationStats
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    Union,
    runtime_checkable,
)

from core.async_utils import maybe_await
from core.errors import ValidationError

DEFAULT_INIT_TIMEOUT = 30.0
DEFAULT_SHUTDOWN_TIMEOUT = 15.0
DEFAULT_RETRY_ATTEMPTS = 1
DEFAULT_RETRY_DELAY = 1.0

ServiceFactory = Callable[[], Union[Any, Awaitable[Any]]]
LifecycleHook = Callable[[], Union[None, Awaitable[None]]]
CleanupFn = Callable[[], Awaitable[bool]]


class ServiceState(Enum):
    """Start procedure states: PENDING -> INITIALIZING -> READY | FAILED."""
    PENDING = "pending"
    INITIALIZING = "initializing"
    READY = "ready"
    FAILED = "failed"


@runtime_checkable
class Initializable(Protocol):
    """Instance exposing an ``initialize()`` hook."""

    def initialize(self) -> Union[None, Awaitable[None]]:
        ...


@runtime_checkable
class Shutdownable(Protocol):
    """Instance exposing a ``shutdown()`` hook."""

    def shutdown(self) -> Union[None, Awaitable[None]]:
        ...


@dataclass(frozen=True)
class ServiceDescriptor:
    """
    Declarative description of a startable service.

    Timeouts and delays are in seconds. ``dependencies`` may be given as any
    sequence of names and is stored as a tuple.
    """
    name: str
    factory: Optional[ServiceFactory] = None
    dependencies: Tuple[str, ...] = ()
    init_timeout: float = DEFAULT_INIT_TIMEOUT
    shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT
    critical: bool = False
    retry_attempts: int = DEFAULT_RETRY_ATTEMPTS
    retry_delay: float = DEFAULT_RETRY_DELAY

    def __post_init__(self) -> None:
        deps = self.dependencies
        if deps is None:
            deps = ()
        elif isinstance(deps, str):
            deps = (deps,)
        object.__setattr__(self, "dependencies", tuple(deps))

    def describe(self) -> Dict[str, Any]:
        """Summary used in startup logs."""
        return {
            "name": self.name,
            "dependencies": list(self.dependencies),
            "timeout": self.init_timeout,
            "critical": self.critical,
        }


class ServiceHandle:
    """
    Explicit capability view of a service instance.

    Both hooks are optional; an absent hook completes immediately. The
    shutdown hook runs at most once per handle no matter how many exit paths
    ask for it.
    """

    __slots__ = ("instance", "_on_initialize", "_on_shutdown", "_shutdown_started")

    def __init__(
        self,
        instance: Any,
        on_initialize: Optional[LifecycleHook] = None,
        on_shutdown: Optional[LifecycleHook] = None,
    ):
        self.instance = instance
        self._on_initialize = on_initialize
        self._on_shutdown = on_shutdown
        self._shutdown_started = False

    @classmethod
    def wrap(cls, instance: Any) -> "ServiceHandle":
        """Build a handle from whatever lifecycle hooks ``instance`` offers."""
        on_initialize = instance.initialize if isinstance(instance, Initializable) else None
        on_shutdown = instance.shutdown if isinstance(instance, Shutdownable) else None
        return cls(instance, on_initialize=on_initialize, on_shutdown=on_shutdown)

    @property
    def can_initialize(self) -> bool:
        return self._on_initialize is not None

    @property
    def can_shutdown(self) -> bool:
        return self._on_shutdown is not None

    @property
    def is_shut_down(self) -> bool:
        return self._shutdown_started

    async def initialize(self) -> None:
        if self._on_initialize is not None:
            await maybe_await(self._on_initialize())

    async def shutdown(self) -> None:
        if self._shutdown_started:
            return
        self._shutdown_started = True
        if self._on_shutdown is not None:
            await maybe_await(self._on_shutdown())


async def _noop_cleanup() -> bool:
    return True


@dataclass
class ServiceRuntimeRecord:
    """Mutable per-service record owned by the orchestrator."""
    name: str
    critical: bool = False
    dependencies: Tuple[str, ...] = ()
    handle: Optional[ServiceHandle] = None
    cleanup: CleanupFn = _noop_cleanup
    started_at: float = field(default_factory=time.monotonic)
    finished_at: Optional[float] = None
    attempts: int = 0
    last_error: Optional[BaseException] = None
    state: ServiceState = ServiceState.PENDING

    @classmethod
    def for_descriptor(cls, descriptor: ServiceDescriptor) -> "ServiceRuntimeRecord":
        return cls(
            name=descriptor.name,
            critical=descriptor.critical,
            dependencies=descriptor.dependencies,
        )

    @property
    def instance(self) -> Any:
        return self.handle.instance if self.handle else None

    @property
    def succeeded(self) -> bool:
        return self.state == ServiceState.READY

    @property
    def duration_ms(self) -> float:
        end = self.finished_at if self.finished_at is not None else time.monotonic()
        return (end - self.started_at) * 1000


@dataclass(frozen=True)
class ServiceStats:
    """Outcome of one service in the last initialization run."""
    name: str
    duration_ms: float
    attempts: int
    success: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "duration_ms": self.duration_ms,
            "attempts": self.attempts,
            "success": self.success,
        }


@dataclass(frozen=True)
class InitializationStats:
    """Orchestrator-level statistics for the last initialization run."""
    initialized: int
    total: int
    duration_ms: float
    services: List[ServiceStats] = field(default_factory=list)

    def get(self, name: str) -> Optional[ServiceStats]:
        for stats in self.services:
            if stats.name == name:
                return stats
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "initialized": self.initialized,
            "total": self.total,
            "duration_ms": self.duration_ms,
            "services": [s.to_dict() for s in self.services],
        }


def as_descriptors(items: Sequence[Union[ServiceDescriptor, Dict[str, Any]]]) -> List[ServiceDescriptor]:
    """Accept descriptors or plain mappings with the same field names."""
    result: List[ServiceDescriptor] = []
    for item in items:
        if isinstance(item, ServiceDescriptor):
            result.append(item)
            continue
        if not isinstance(item, Mapping):
            raise ValidationError(
                "Invalid service definitions",
                errors=[f"Service definition must be a descriptor or mapping, got {type(item).__name__}"],
            ).with_context(phase="validation")
        try:
            result.append(ServiceDescriptor(**item))
        except TypeError as e:
            raise ValidationError(
                "Invalid service definitions",
                errors=[f"Service {item.get('name')} has invalid fields: {e}"],
            ).with_context(phase="validation") from e
    return result
