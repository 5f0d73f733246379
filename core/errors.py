"""
Keystone - Unified Error Handling

Provides the error hierarchy raised by the lifecycle orchestrator and its
collaborators.

Features:
- Hierarchical exception classes with context preservation
- Stable error codes (VALIDATION_ERROR, DEPENDENCY_ERROR, CIRCULAR_DEPENDENCY,
  TIMEOUT, FACTORY_ERROR, INITIALIZATION_ERROR, STARTUP_ABORTED)
- Structured error context for debugging
- Context enrichment of errors as they propagate
- OpenTelemetry integration for error tracing
"""

from __future__ import annotations

import traceback
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import (
    Any,
    Dict,
    List,
    Optional,
    Sequence,
)

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode


class ErrorSeverity(Enum):
    """Error severity levels for prioritized handling."""

    DEBUG = "debug"      # Non-critical, informational
    INFO = "info"        # Minor issue, operation continues
    WARNING = "warning"  # Potential problem, degraded operation
    ERROR = "error"      # Significant failure, operation failed
    CRITICAL = "critical"  # System-level failure, requires immediate attention
    FATAL = "fatal"      # Unrecoverable, system shutdown required


@dataclass
class ErrorContext:
    """Structured context for error debugging and tracing."""

    operation: str
    component: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    trace_id: Optional[str] = None
    span_id: Optional[str] = None
    service_name: Optional[str] = None
    phase_name: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    stack_trace: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert context to dictionary for serialization."""
        return {
            "operation": self.operation,
            "component": self.component,
            "timestamp": self.timestamp.isoformat(),
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "service_name": self.service_name,
            "phase_name": self.phase_name,
            "metadata": self.metadata,
            "stack_trace": self.stack_trace,
        }

    @classmethod
    def from_current_span(
        cls,
        operation: str,
        component: str,
        **kwargs: Any
    ) -> "ErrorContext":
        """Create context from current OpenTelemetry span."""
        span = trace.get_current_span()
        trace_id = None
        span_id = None

        if span and span.is_recording():
            ctx = span.get_span_context()
            if ctx.is_valid:
                trace_id = format(ctx.trace_id, "032x")
                span_id = format(ctx.span_id, "016x")

        return cls(
            operation=operation,
            component=component,
            trace_id=trace_id,
            span_id=span_id,
            stack_trace=traceback.format_exc(),
            **kwargs
        )


class KeystoneError(Exception):
    """
    Base exception for all Keystone errors.

    Provides:
    - Structured error context
    - Severity level
    - Chained exception support
    - OpenTelemetry span recording
    """

    default_severity: ErrorSeverity = ErrorSeverity.ERROR
    error_code: str = "KEYSTONE_ERROR"

    def __init__(
        self,
        message: str,
        context: Optional[ErrorContext] = None,
        severity: Optional[ErrorSeverity] = None,
        cause: Optional[BaseException] = None,
        recoverable: bool = False,
        suggestions: Optional[List[str]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.context = context
        self.severity = severity or self.default_severity
        self.cause = cause
        self.recoverable = recoverable
        self.suggestions = suggestions or []
        self.timestamp = datetime.now(timezone.utc)

        self._record_to_span()

    def _record_to_span(self) -> None:
        """Record exception to current OpenTelemetry span."""
        span = trace.get_current_span()
        if span and span.is_recording():
            span.set_status(Status(StatusCode.ERROR, self.message))
            span.record_exception(self)
            span.set_attribute("error.code", self.error_code)
            span.set_attribute("error.severity", self.severity.value)
            span.set_attribute("error.recoverable", self.recoverable)
            if self.context:
                span.set_attribute("error.component", self.context.component)
                span.set_attribute("error.operation", self.context.operation)

    @property
    def metadata(self) -> Dict[str, Any]:
        """Context metadata, empty when no context is attached."""
        return self.context.metadata if self.context else {}

    @property
    def service_name(self) -> Optional[str]:
        """Name of the service the error is attributed to, if any."""
        if self.context is None:
            return None
        return self.context.service_name or self.context.metadata.get("service")

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for structured logging."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "severity": self.severity.value,
            "recoverable": self.recoverable,
            "suggestions": self.suggestions,
            "timestamp": self.timestamp.isoformat(),
            "context": self.context.to_dict() if self.context else None,
            "cause": str(self.cause) if self.cause else None,
        }

    def __str__(self) -> str:
        parts = [f"[{self.error_code}] {self.message}"]
        if self.context:
            parts.append(f" (component: {self.context.component})")
        if self.cause:
            parts.append(f" [caused by: {self.cause}]")
        return "".join(parts)

    def with_context(self, **kwargs: Any) -> "KeystoneError":
        """Add additional context to the error."""
        if self.context:
            self.context.metadata.update(kwargs)
        else:
            self.context = ErrorContext(
                operation=str(kwargs.get("phase", "unknown")),
                component="lifecycle",
                metadata=kwargs
            )
        service = kwargs.get("service")
        if service and not self.context.service_name:
            self.context.service_name = service
        return self


class ValidationError(KeystoneError):
    """Service descriptors rejected before anything was instantiated."""

    error_code = "VALIDATION_ERROR"
    default_severity = ErrorSeverity.CRITICAL

    def __init__(
        self,
        message: str,
        errors: Optional[Sequence[str]] = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.errors = list(errors or [])

    def __str__(self) -> str:
        base = super().__str__()
        if not self.errors:
            return base
        return f"{base}: " + "; ".join(self.errors)


class DependencyError(KeystoneError):
    """A service depends on a name no descriptor defines."""

    error_code = "DEPENDENCY_ERROR"
    default_severity = ErrorSeverity.CRITICAL

    def __init__(
        self,
        message: str,
        service: Optional[str] = None,
        dependency: Optional[str] = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.service = service
        self.dependency = dependency


class CircularDependencyError(DependencyError):
    """The dependency graph contains at least one cycle."""

    error_code = "CIRCULAR_DEPENDENCY"

    def __init__(
        self,
        message: str,
        sorted_services: Optional[Sequence[str]] = None,
        remaining_services: Optional[Sequence[str]] = None,
        cycle: Optional[Sequence[str]] = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.sorted_services = list(sorted_services or [])
        self.remaining_services = list(remaining_services or [])
        self.cycle = list(cycle or [])


class ServiceTimeoutError(KeystoneError, TimeoutError):
    """An operation exceeded its time budget and was abandoned."""

    error_code = "TIMEOUT"
    default_severity = ErrorSeverity.WARNING

    def __init__(
        self,
        message: str,
        timeout_seconds: Optional[float] = None,
        operation: Optional[str] = None,
        **kwargs: Any,
    ):
        super().__init__(message, recoverable=True, **kwargs)
        self.timeout_seconds = timeout_seconds
        self.operation_name = operation


class FactoryError(KeystoneError):
    """A service factory raised or produced nothing usable."""

    error_code = "FACTORY_ERROR"


class InitializationError(KeystoneError):
    """A service failed while initializing."""

    error_code = "INITIALIZATION_ERROR"


class StartupAbortedError(InitializationError):
    """A shutdown request interrupted a pending retry."""

    error_code = "STARTUP_ABORTED"
    default_severity = ErrorSeverity.WARNING


def enrich_error(error: BaseException, **context: Any) -> KeystoneError:
    """
    Attach context to an error on its way up.

    Keystone errors are enriched in place so their type and error code
    survive; anything else is wrapped in an InitializationError that keeps
    the original as its cause.
    """
    if isinstance(error, KeystoneError):
        return error.with_context(**context)

    wrapped = InitializationError(
        message=str(error) or type(error).__name__,
        cause=error,
    )
    wrapped.__cause__ = error
    return wrapped.with_context(**context)
