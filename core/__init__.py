"""
Keystone - Core Module

Foundational pieces shared by every other package:
- Unified error handling (error codes, context, span recording)
- Async utilities (timeout guard, cancellable sleep)

Core has no dependency on other Keystone packages.

Usage:
    from core import KeystoneError, with_timeout

    try:
        await with_timeout(client.connect(), 5.0, "connect timeout", service="db")
    except KeystoneError as e:
        logger.error("Connect failed", error=e)
"""

from core.errors import (
    CircularDependencyError,
    DependencyError,
    ErrorContext,
    ErrorSeverity,
    FactoryError,
    InitializationError,
    KeystoneError,
    ServiceTimeoutError,
    StartupAbortedError,
    ValidationError,
    enrich_error,
)
from core.async_utils import (
    abandoned_count,
    cancellable_sleep,
    maybe_await,
    with_timeout,
)

__all__ = [
    # Errors
    "KeystoneError",
    "ErrorContext",
    "ErrorSeverity",
    "ValidationError",
    "DependencyError",
    "CircularDependencyError",
    "ServiceTimeoutError",
    "FactoryError",
    "InitializationError",
    "StartupAbortedError",
    "enrich_error",
    # Async utilities
    "with_timeout",
    "maybe_await",
    "cancellable_sleep",
    "abandoned_count",
]
