"""
Keystone - Async Utilities

Small async building blocks shared by the lifecycle layer:
- Timeout guard that abandons (rather than cancels) slow operations
- Awaiting values that may or may not be awaitable
- Sleeps that can be interrupted by an event

Timeouts are recorded as events on the current OpenTelemetry span.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import (
    Any,
    Awaitable,
    Optional,
    Set,
    TypeVar,
    Union,
)

from opentelemetry import trace

from core.errors import ServiceTimeoutError

T = TypeVar("T")

logger = logging.getLogger("keystone.async_utils")

# Timed-out operations still running, held until they settle.
_abandoned: Set[asyncio.Future] = set()


async def maybe_await(value: Union[T, Awaitable[T]]) -> T:
    """Return ``value``, awaiting it first if it is awaitable."""
    if inspect.isawaitable(value):
        return await value
    return value


def _discard_abandoned(future: asyncio.Future) -> None:
    _abandoned.discard(future)
    if future.cancelled():
        return
    error = future.exception()
    if error is not None:
        logger.debug(f"Abandoned operation finished with error: {error!r}")


async def with_timeout(
    operation: Awaitable[T],
    timeout: float,
    message: str,
    *,
    cancel_on_timeout: bool = False,
    **context: Any,
) -> T:
    """
    Race ``operation`` against a ``timeout`` second deadline.

    If the operation settles first its result or exception propagates
    unchanged. If the deadline wins a ServiceTimeoutError carrying ``message``
    and ``context`` is raised and the operation is left running in the
    background; its eventual outcome is discarded. Pass
    ``cancel_on_timeout=True`` to cancel it instead.

    Usage:
        await with_timeout(
            client.connect(), 30.0,
            "Service db initialization timeout",
            service="db", attempt=1, phase="initialize",
        )
    """
    future = asyncio.ensure_future(operation)

    try:
        done, _ = await asyncio.wait({future}, timeout=timeout)
    except asyncio.CancelledError:
        future.cancel()
        raise

    if done:
        return future.result()

    if cancel_on_timeout:
        future.cancel()
    else:
        _abandoned.add(future)
        future.add_done_callback(_discard_abandoned)

    span = trace.get_current_span()
    if span and span.is_recording():
        span.add_event("timeout", {"timeout_seconds": timeout, "message": message})

    error = ServiceTimeoutError(
        message=message,
        timeout_seconds=timeout,
        operation=context.get("phase"),
    )
    error.with_context(timeout_seconds=timeout, **context)
    raise error


def abandoned_count() -> int:
    """Number of timed-out operations still running in the background."""
    return len(_abandoned)


async def cancellable_sleep(
    delay: float,
    cancel_event: Optional[asyncio.Event] = None,
) -> bool:
    """
    Sleep for ``delay`` seconds unless ``cancel_event`` is set first.

    Returns True when the sleep was interrupted by the event, False when the
    full delay elapsed.
    """
    if cancel_event is None:
        await asyncio.sleep(delay)
        return False

    if cancel_event.is_set():
        return True

    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return False
    return True
