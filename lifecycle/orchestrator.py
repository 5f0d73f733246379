"""
Keystone - Service Orchestrator

Brings a set of interdependent services up in dependency order and takes them
down again.

Startup (initialize_services):
    validate -> resolve order -> start each service sequentially
    (factory, optional initialize() under a timeout, bounded retry)
    -> on fatal failure roll back everything already started and re-raise

Exit paths:
    rollback()   concurrent, bounded cleanup of the services started so far
    shutdown()   sequential reverse-order shutdown of a running registry

Startup is all-or-nothing: the caller either receives a fully populated
ServiceRegistry or the original (context-enriched) error after rollback.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from config import LifecycleConfig, get_config
from core.async_utils import cancellable_sleep, maybe_await, with_timeout
from core.errors import (
    FactoryError,
    InitializationError,
    KeystoneError,
    StartupAbortedError,
    ValidationError,
    enrich_error,
)
from lifecycle.descriptors import (
    CleanupFn,
    InitializationStats,
    ServiceDescriptor,
    ServiceHandle,
    ServiceRuntimeRecord,
    ServiceState,
    ServiceStats,
    as_descriptors,
)
from lifecycle.registry import ServiceRegistry
from lifecycle.resolver import DependencyResolver
from lifecycle.resources import ResourcePriority, ResourceTracker
from lifecycle.signals import ProcessSignalAdapter, SignalAdapter
from observability.logging import LogContext, get_logger
from observability.tracing import create_span

logger = get_logger("keystone.lifecycle.orchestrator")
tracer = trace.get_tracer(__name__)

SERVICE_RESOURCE_TYPE = "service"
REGISTRY_RESOURCE_TYPE = "service-registry"


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


@dataclass
class RollbackReport:
    """Tally of one rollback run."""
    attempted: List[str] = field(default_factory=list)
    succeeded: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    duration_ms: float = 0.0

    @property
    def total(self) -> int:
        return len(self.attempted)

    @property
    def ok(self) -> bool:
        return not self.failed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempted": list(self.attempted),
            "succeeded": list(self.succeeded),
            "failed": dict(self.failed),
            "duration_ms": self.duration_ms,
        }


@dataclass
class ShutdownReport:
    """Outcome of one graceful shutdown call."""
    order: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    skipped: bool = False
    duration_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return not self.skipped and not self.failed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order": list(self.order),
            "failed": dict(self.failed),
            "skipped": self.skipped,
            "duration_ms": self.duration_ms,
        }


class ServiceOrchestrator:
    """
    Owns the startup and shutdown of a service graph.

    Construct one at the process entry point. Collaborators are injected:
    the resource tracker receives a cleanup closure per started service and
    the signal adapter wires termination signals and crashes to shutdown()
    once startup succeeded.

    Usage:
        orchestrator = ServiceOrchestrator()
        registry = await orchestrator.initialize_services([
            ServiceDescriptor("db", Database),
            ServiceDescriptor("cache", make_cache, dependencies=["db"]),
        ])
        ...
        await orchestrator.shutdown(registry)
    """

    def __init__(
        self,
        config: Optional[LifecycleConfig] = None,
        resources: Optional[ResourceTracker] = None,
        signal_adapter: Optional[SignalAdapter] = None,
    ):
        self.config = config or get_config().lifecycle
        self.resources = resources if resources is not None else ResourceTracker(
            default_timeout=self.config.resource_cleanup_timeout,
        )
        self.signals = signal_adapter if signal_adapter is not None else ProcessSignalAdapter(
            self.config.termination_signals,
        )
        self.registry = ServiceRegistry()
        self.last_rollback: Optional[RollbackReport] = None
        self.last_shutdown: Optional[ShutdownReport] = None

        self._resolver = DependencyResolver()
        self._handles: Dict[str, ServiceHandle] = {}
        self._stack: List[ServiceRuntimeRecord] = []
        self._records: List[ServiceRuntimeRecord] = []
        self._total = 0
        self._run_started: Optional[float] = None
        self._run_finished: Optional[float] = None
        self._is_shutting_down = False
        self._shutdown_requested = asyncio.Event()
        self._shutdown_done: Optional[asyncio.Future] = None
        self._process_exit: Optional[asyncio.Future] = None
        self._handlers_installed = False

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def initialize_services(
        self,
        descriptors: Sequence[Union[ServiceDescriptor, Dict[str, Any]]],
    ) -> ServiceRegistry:
        """
        Start every service in dependency order.

        Returns the populated registry. On any fatal failure all services
        started so far are rolled back and the original error is re-raised,
        enriched with phase and timing metadata.

        Raises:
            ValidationError: descriptors rejected before any factory ran
            DependencyError / CircularDependencyError: invalid graph
            KeystoneError: a service failed to start (after rollback)
        """
        descriptors = as_descriptors(descriptors)
        registry = ServiceRegistry()
        self.registry = registry
        self._handles = {}
        self._records = []
        self._stack = []
        self._total = len(descriptors)
        self._shutdown_requested.clear()
        self._run_started = time.monotonic()
        self._run_finished = None

        logger.info(
            "Starting service initialization",
            service_count=len(descriptors),
            services=[d.describe() for d in descriptors],
        )

        with tracer.start_as_current_span("lifecycle.initialize_services") as span, \
                LogContext(phase="startup"):
            span.set_attribute("services.total", len(descriptors))
            try:
                self._validate(descriptors)
                ordered = self._resolver.resolve(descriptors)
                logger.info(
                    "Service initialization order determined",
                    order=[d.name for d in ordered],
                )

                for descriptor in ordered:
                    await self._start_service(descriptor, registry)

            except asyncio.CancelledError:
                self._run_finished = time.monotonic()
                logger.warning("Service initialization cancelled, performing rollback")
                await self.rollback()
                raise

            except Exception as e:
                self._run_finished = time.monotonic()
                error = enrich_error(
                    e,
                    phase="service-initialization",
                    duration_ms=self._run_duration_ms(),
                    initialized_count=len(self._stack),
                    total_count=len(descriptors),
                )
                span.set_status(Status(StatusCode.ERROR, error.message))
                logger.error("Service initialization failed, performing rollback", error=error)
                await self.rollback()
                raise error

            self._run_finished = time.monotonic()
            span.set_attribute("services.initialized", len(registry))

        logger.info(
            "All services initialized successfully",
            count=len(registry),
            duration_ms=round(self._run_duration_ms(), 2),
            services=[
                {"name": r.name, "duration_ms": round(r.duration_ms, 2), "attempts": r.attempts}
                for r in self._stack
            ],
        )

        self.resources.register(
            REGISTRY_RESOURCE_TYPE,
            "main",
            lambda: self.shutdown(registry),
            priority=ResourcePriority.CRITICAL,
        )
        if self.config.install_signal_handlers:
            self._install_process_handlers()

        return registry

    def _validate(self, descriptors: Sequence[ServiceDescriptor]) -> None:
        """Collect every descriptor problem and raise them as one error."""
        errors: List[str] = []
        names = {d.name for d in descriptors if isinstance(d.name, str)}
        seen = set()

        for d in descriptors:
            if not isinstance(d.name, str) or not d.name:
                errors.append("Service definition missing valid name")
            elif d.name in seen:
                errors.append(f"Duplicate service name: {d.name}")
            else:
                seen.add(d.name)

            if d.factory is None or not callable(d.factory):
                errors.append(f"Service {d.name} missing valid factory function")

            for dep in d.dependencies:
                if dep == d.name:
                    errors.append(f"Service {d.name} depends on itself")
                elif dep not in names:
                    errors.append(f"Service {d.name} has unknown dependency: {dep}")

            attempts = d.retry_attempts
            if not _is_number(attempts) or not isinstance(attempts, int) or attempts < 1:
                errors.append(f"Service {d.name} retry_attempts must be >= 1")
            if not _is_number(d.init_timeout) or d.init_timeout <= 0:
                errors.append(f"Service {d.name} init_timeout must be > 0")
            if not _is_number(d.shutdown_timeout) or d.shutdown_timeout <= 0:
                errors.append(f"Service {d.name} shutdown_timeout must be > 0")
            if not _is_number(d.retry_delay) or d.retry_delay < 0:
                errors.append(f"Service {d.name} retry_delay must be >= 0")

        if errors:
            raise ValidationError(
                "Invalid service definitions",
                errors=errors,
            ).with_context(errors=errors, phase="validation")

    async def _start_service(self, descriptor: ServiceDescriptor, registry: ServiceRegistry) -> None:
        """
        Run the start procedure for one service.

        PENDING -> INITIALIZING -> READY | FAILED. Critical services escalate
        on their first failure; others retry until attempts run out.
        """
        name = descriptor.name
        max_attempts = descriptor.retry_attempts
        record = ServiceRuntimeRecord.for_descriptor(descriptor)
        record.state = ServiceState.INITIALIZING
        self._records.append(record)

        for attempt in range(1, max_attempts + 1):
            record.attempts = attempt
            logger.info(
                "Initializing service",
                service=name,
                attempt=attempt,
                max_attempts=max_attempts,
            )

            with tracer.start_as_current_span("lifecycle.start_service") as span:
                span.set_attribute("service.name", name)
                span.set_attribute("service.attempt", attempt)
                span.set_attribute("service.critical", descriptor.critical)
                try:
                    await self._attempt_start(descriptor, record, attempt)
                except Exception as e:
                    error = enrich_error(
                        e,
                        service=name,
                        attempt=attempt,
                        max_attempts=max_attempts,
                        duration_ms=record.duration_ms,
                    )
                    record.last_error = error
                    span.set_status(Status(StatusCode.ERROR, error.message))
                else:
                    self._on_service_ready(descriptor, record, registry)
                    return

            if attempt >= max_attempts or descriptor.critical:
                record.state = ServiceState.FAILED
                record.finished_at = time.monotonic()
                logger.error(
                    "Service initialization failed",
                    service=name,
                    attempts=attempt,
                    critical=descriptor.critical,
                    error=error,
                )
                raise error

            logger.warning(
                "Service initialization failed, retrying",
                service=name,
                attempt=attempt,
                max_attempts=max_attempts,
                retry_delay=descriptor.retry_delay,
                error=error.message,
            )
            if await cancellable_sleep(descriptor.retry_delay, self._shutdown_requested):
                record.state = ServiceState.FAILED
                record.finished_at = time.monotonic()
                aborted = StartupAbortedError(
                    f"Service {name} startup aborted by shutdown request",
                    cause=error,
                )
                aborted.__cause__ = error
                logger.warning("Shutdown requested during retry wait", service=name, attempt=attempt)
                raise aborted.with_context(
                    service=name,
                    attempt=attempt,
                    max_attempts=max_attempts,
                    phase="retry-wait",
                )

    async def _attempt_start(
        self,
        descriptor: ServiceDescriptor,
        record: ServiceRuntimeRecord,
        attempt: int,
    ) -> None:
        name = descriptor.name
        handle = await self._create_instance(descriptor)
        record.handle = handle
        record.cleanup = self._make_cleanup(descriptor, handle)

        if not handle.can_initialize:
            return

        try:
            await with_timeout(
                handle.initialize(),
                descriptor.init_timeout,
                f"Service {name} initialization timeout",
                service=name,
                attempt=attempt,
                phase="initialize",
            )
        except KeystoneError:
            raise
        except Exception as e:
            error = InitializationError(f"Service {name} initialization failed: {e}", cause=e)
            raise error.with_context(service=name, attempt=attempt, phase="initialize") from e

    async def _create_instance(self, descriptor: ServiceDescriptor) -> ServiceHandle:
        name = descriptor.name
        try:
            instance = await maybe_await(descriptor.factory())
        except KeystoneError as e:
            raise e.with_context(service=name, phase="factory-creation")
        except Exception as e:
            error = FactoryError(f"Service {name} factory failed: {e}", cause=e)
            raise error.with_context(service=name, phase="factory-creation") from e

        if instance is None:
            raise FactoryError(
                f"Service factory returned no instance for {name}"
            ).with_context(service=name, phase="factory-creation")

        if isinstance(instance, ServiceHandle):
            return instance
        return ServiceHandle.wrap(instance)

    def _make_cleanup(self, descriptor: ServiceDescriptor, handle: ServiceHandle) -> CleanupFn:
        """Closure releasing one instance; reports failure instead of raising."""
        name = descriptor.name
        timeout = descriptor.shutdown_timeout

        async def cleanup() -> bool:
            if handle.is_shut_down:
                return True
            try:
                await with_timeout(
                    handle.shutdown(),
                    timeout,
                    f"Service {name} shutdown timeout",
                    service=name,
                    phase="shutdown",
                )
            except Exception as e:
                logger.error("Failed to shutdown service", service=name, error=e)
                return False
            return True

        return cleanup

    def _on_service_ready(
        self,
        descriptor: ServiceDescriptor,
        record: ServiceRuntimeRecord,
        registry: ServiceRegistry,
    ) -> None:
        record.state = ServiceState.READY
        record.finished_at = time.monotonic()
        record.last_error = None

        registry.register(descriptor.name, record.instance)
        self._handles[descriptor.name] = record.handle
        self.resources.register(
            SERVICE_RESOURCE_TYPE,
            descriptor.name,
            record.cleanup,
            metadata={
                "critical": descriptor.critical,
                "dependencies": list(descriptor.dependencies),
                "init_duration_ms": record.duration_ms,
            },
        )
        self._stack.append(record)

        logger.info(
            "Service initialized successfully",
            service=descriptor.name,
            duration_ms=round(record.duration_ms, 2),
            attempt=record.attempts,
            max_attempts=descriptor.retry_attempts,
        )

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------

    async def rollback(self) -> RollbackReport:
        """
        Release every service started in the current run.

        Cleanups run concurrently, most recently started first, each bounded
        by ``config.rollback_timeout``. Never raises.
        """
        if not self._stack:
            logger.info("No services to rollback")
            self.last_rollback = RollbackReport()
            return self.last_rollback

        stack = list(reversed(self._stack))
        self._stack = []
        report = RollbackReport(attempted=[r.name for r in stack])
        started = time.monotonic()

        logger.info("Starting initialization rollback", services=report.attempted)

        with create_span(
            "lifecycle.rollback",
            attributes={"rollback.count": len(stack)},
            tracer_name=__name__,
        ) as span, LogContext(phase="rollback"):
            outcomes = await asyncio.gather(
                *(self._rollback_one(record) for record in stack),
                return_exceptions=True,
            )
            for record, outcome in zip(stack, outcomes):
                if outcome is True:
                    report.succeeded.append(record.name)
                elif isinstance(outcome, BaseException):
                    report.failed[record.name] = str(outcome)
                else:
                    report.failed[record.name] = outcome or "cleanup failed"

            try:
                await self.resources.cleanup(SERVICE_RESOURCE_TYPE)
            except Exception as e:
                logger.error("Resource release after rollback failed", error=e)

            self.registry.clear()
            self._handles.clear()
            report.duration_ms = (time.monotonic() - started) * 1000
            span.set_attribute("rollback.failed", len(report.failed))

        self.last_rollback = report
        logger.info(
            "Initialization rollback completed",
            successful=len(report.succeeded),
            failed=len(report.failed),
            total=report.total,
            duration_ms=round(report.duration_ms, 2),
        )
        return report

    async def _rollback_one(self, record: ServiceRuntimeRecord) -> Union[bool, str]:
        started = time.monotonic()
        logger.info("Rolling back service", service=record.name)
        try:
            released = await with_timeout(
                record.cleanup(),
                self.config.rollback_timeout,
                f"Rollback timeout for {record.name}",
                service=record.name,
                phase="rollback",
            )
        except Exception as e:
            error = enrich_error(
                e,
                service=record.name,
                phase="rollback",
                duration_ms=(time.monotonic() - started) * 1000,
            )
            logger.error("Rollback failed", service=record.name, error=error)
            return str(error)

        if not released:
            return f"Service {record.name} cleanup reported failure"

        logger.info(
            "Service rolled back successfully",
            service=record.name,
            duration_ms=round((time.monotonic() - started) * 1000, 2),
        )
        return True

    # ------------------------------------------------------------------
    # Graceful shutdown
    # ------------------------------------------------------------------

    @property
    def is_shutting_down(self) -> bool:
        return self._is_shutting_down

    def request_shutdown(self) -> None:
        """Ask for shutdown; interrupts a pending retry wait."""
        if not self._shutdown_requested.is_set():
            logger.info("Shutdown requested")
        self._shutdown_requested.set()

    async def wait_for_shutdown(self) -> None:
        await self._shutdown_requested.wait()

    async def wait_until_stopped(self) -> None:
        """
        Wait for an in-flight shutdown, and for a signal or crash handler to
        reach its exit call.
        """
        pending = [
            f for f in (self._shutdown_done, self._process_exit)
            if f is not None and not f.done()
        ]
        if pending:
            await asyncio.shield(asyncio.gather(*pending))

    async def shutdown(self, registry: Optional[ServiceRegistry] = None) -> ShutdownReport:
        """
        Stop every registered service in reverse initialization order.

        Each service gets ``config.shutdown_timeout`` seconds; failures are
        logged and the remaining services are still stopped. A call made
        while a shutdown is running returns immediately.
        """
        if self._is_shutting_down:
            logger.warning("Shutdown already in progress")
            return ShutdownReport(skipped=True)

        self._is_shutting_down = True
        self._shutdown_requested.set()
        done = asyncio.get_running_loop().create_future()
        self._shutdown_done = done
        registry = registry if registry is not None else self.registry
        report = ShutdownReport(order=registry.get_shutdown_order())
        started = time.monotonic()

        try:
            with create_span(
                "lifecycle.shutdown",
                attributes={"shutdown.count": len(report.order)},
                tracer_name=__name__,
            ), LogContext(phase="shutdown"):
                logger.info(
                    "Starting graceful shutdown",
                    services=len(report.order),
                    order=report.order,
                )

                for name in report.order:
                    await self._shutdown_one(name, registry, report)

                if self.resources.is_cleaning_up:
                    logger.info("Resource release already in progress")
                else:
                    await self.resources.cleanup()

            report.duration_ms = (time.monotonic() - started) * 1000
            logger.info(
                "Graceful shutdown completed",
                duration_ms=round(report.duration_ms, 2),
                failed=len(report.failed),
            )
        finally:
            registry.clear()
            self._handles.clear()
            self._uninstall_process_handlers()
            self._is_shutting_down = False
            done.set_result(None)

        self.last_shutdown = report
        return report

    async def _shutdown_one(self, name: str, registry: ServiceRegistry, report: ShutdownReport) -> None:
        instance = registry.get(name)
        if instance is None:
            logger.warning("Service not found during shutdown", service=name)
            return

        handle = self._handles.get(name) or ServiceHandle.wrap(instance)
        started = time.monotonic()
        try:
            await with_timeout(
                handle.shutdown(),
                self.config.shutdown_timeout,
                f"Service {name} shutdown timeout",
                service=name,
                phase="shutdown",
            )
            logger.info(
                "Service shutdown completed",
                service=name,
                duration_ms=round((time.monotonic() - started) * 1000, 2),
            )
        except Exception as e:
            error = enrich_error(
                e,
                service=name,
                phase="shutdown",
                duration_ms=(time.monotonic() - started) * 1000,
            )
            report.failed[name] = str(error)
            logger.error("Failed to shutdown service", service=name, error=error)

    # ------------------------------------------------------------------
    # Process handlers
    # ------------------------------------------------------------------

    def _install_process_handlers(self) -> None:
        try:
            self.signals.install(self._handle_termination, self._handle_crash)
        except (NotImplementedError, RuntimeError, ValueError) as e:
            logger.warning("Process handlers not installed", error=str(e))
            return
        self._handlers_installed = True

    def _uninstall_process_handlers(self) -> None:
        if not self._handlers_installed:
            return
        self._handlers_installed = False
        self.signals.uninstall()

    async def _handle_termination(self, signal_name: str) -> None:
        logger.info("Received termination signal, initiating shutdown", signal=signal_name)
        exited = self._begin_process_exit()
        try:
            self.request_shutdown()
            try:
                await self._shutdown_to_completion()
            except Exception as e:
                logger.error("Error during signal cleanup", error=e)
                self.signals.exit(1)
                return
            self.signals.exit(0)
        finally:
            exited.set_result(None)

    async def _handle_crash(self, error: BaseException) -> None:
        logger.critical("Unhandled error, performing emergency shutdown", error=error)
        exited = self._begin_process_exit()
        try:
            self.request_shutdown()
            try:
                await self._shutdown_to_completion()
            except Exception as e:
                logger.error("Emergency shutdown failed", error=e)
            self.signals.exit(1)
        finally:
            exited.set_result(None)

    def _begin_process_exit(self) -> asyncio.Future:
        exited = asyncio.get_running_loop().create_future()
        self._process_exit = exited
        return exited

    async def _shutdown_to_completion(self) -> None:
        report = await self.shutdown(self.registry)
        done = self._shutdown_done
        if report.skipped and done is not None and not done.done():
            await asyncio.shield(done)

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def _run_duration_ms(self) -> float:
        if self._run_started is None:
            return 0.0
        end = self._run_finished if self._run_finished is not None else time.monotonic()
        return (end - self._run_started) * 1000

    def get_initialization_stats(self) -> InitializationStats:
        """Per-service outcome of the most recent initialization run."""
        return InitializationStats(
            initialized=sum(1 for r in self._records if r.succeeded),
            total=self._total,
            duration_ms=self._run_duration_ms(),
            services=[
                ServiceStats(
                    name=r.name,
                    duration_ms=r.duration_ms,
                    attempts=r.attempts,
                    success=r.succeeded,
                )
                for r in self._records
            ],
        )
