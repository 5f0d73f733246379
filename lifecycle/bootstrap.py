"""
Keystone - Bootstrap Helpers

Entry-point wrappers around ServiceOrchestrator.

Usage:
    async with orchestrate(descriptors) as registry:
        bot = registry.get("bot")
        await bot.run()

    # or
    asyncio.run(run_services(descriptors, main))
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, Sequence, Union

from config import LifecycleConfig
from lifecycle.descriptors import ServiceDescriptor
from lifecycle.orchestrator import ServiceOrchestrator
from lifecycle.registry import ServiceRegistry
from lifecycle.resources import ResourceTracker
from lifecycle.signals import SignalAdapter

Descriptors = Sequence[Union[ServiceDescriptor, Dict[str, Any]]]


@asynccontextmanager
async def orchestrate(
    descriptors: Descriptors,
    config: Optional[LifecycleConfig] = None,
    resources: Optional[ResourceTracker] = None,
    signal_adapter: Optional[SignalAdapter] = None,
    orchestrator: Optional[ServiceOrchestrator] = None,
) -> AsyncIterator[ServiceRegistry]:
    """
    Start ``descriptors`` and shut them down when the block exits.

    If startup fails the error propagates after rollback and the block body
    never runs.
    """
    if orchestrator is None:
        orchestrator = ServiceOrchestrator(
            config=config,
            resources=resources,
            signal_adapter=signal_adapter,
        )

    registry = await orchestrator.initialize_services(descriptors)
    try:
        yield registry
    finally:
        await orchestrator.shutdown(registry)
        # a signal or crash handler may own the shutdown
        await orchestrator.wait_until_stopped()


async def run_services(
    descriptors: Descriptors,
    main: Optional[Callable[[ServiceRegistry], Awaitable[Any]]] = None,
    config: Optional[LifecycleConfig] = None,
    orchestrator: Optional[ServiceOrchestrator] = None,
) -> Any:
    """
    Run ``main(registry)`` with all services started.

    Without ``main`` the services run until a shutdown is requested (for
    example by a termination signal).

    Usage:
        async def main(registry: ServiceRegistry):
            await registry.get("bot").run()

        asyncio.run(run_services(descriptors, main))
    """
    orchestrator = orchestrator or ServiceOrchestrator(config=config)
    async with orchestrate(descriptors, orchestrator=orchestrator) as registry:
        if main is None:
            await orchestrator.wait_for_shutdown()
            return None
        return await main(registry)
