"""
Keystone - Service Lifecycle

Dependency-ordered startup with timeouts, bounded retry and all-or-nothing
rollback, plus the matching graceful shutdown.

Usage:
    from lifecycle import ServiceDescriptor, ServiceOrchestrator

    orchestrator = ServiceOrchestrator()
    registry = await orchestrator.initialize_services([
        ServiceDescriptor("database", Database, init_timeout=10.0),
        ServiceDescriptor("cache", Cache, dependencies=["database"]),
        ServiceDescriptor("bot", Bot, dependencies=["cache"], critical=True),
    ])
    ...
    await orchestrator.shutdown(registry)
"""
from lifecycle.bootstrap import orchestrate, run_services
from lifecycle.descriptors import (
    InitializationStats,
    ServiceDescriptor,
    ServiceHandle,
    ServiceRuntimeRecord,
    ServiceState,
    ServiceStats,
)
from lifecycle.orchestrator import RollbackReport, ServiceOrchestrator, ShutdownReport
from lifecycle.registry import ServiceRegistry
from lifecycle.resolver import DependencyResolver, find_cycle, topological_sort
from lifecycle.resources import (
    CleanupResult,
    ManagedResource,
    ResourcePriority,
    ResourceStats,
    ResourceTracker,
)
from lifecycle.signals import ProcessSignalAdapter, SignalAdapter

__all__ = [
    # Descriptors
    "ServiceDescriptor",
    "ServiceHandle",
    "ServiceRuntimeRecord",
    "ServiceState",
    "ServiceStats",
    "InitializationStats",
    # Ordering
    "DependencyResolver",
    "topological_sort",
    "find_cycle",
    "ServiceRegistry",
    # Orchestration
    "ServiceOrchestrator",
    "RollbackReport",
    "ShutdownReport",
    "orchestrate",
    "run_services",
    # Collaborators
    "ResourceTracker",
    "ManagedResource",
    "ResourcePriority",
    "CleanupResult",
    "ResourceStats",
    "SignalAdapter",
    "ProcessSignalAdapter",
]
