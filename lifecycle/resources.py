"""
Keystone - Resource Tracker

Registry of cleanup closures keyed by ``type:id`` and released in bulk.

The orchestrator registers one entry per started service (``type="service"``)
and one for the service registry itself; both exit paths release them through
``cleanup()``. Any other component may track its own resources here too.

Cleanup behaviour:
- entries are released by priority (critical first), then registration order;
  a priority tier finishes before the next one starts
- entries run concurrently in batches of ``max_concurrency``
- every closure is bounded by a timeout and retried with linear backoff
- only successfully released entries are unregistered
- ``cleanup()`` never raises
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from itertools import groupby
from typing import Any, Callable, Dict, Iterator, List, Optional, Union

from core.async_utils import maybe_await, with_timeout
from observability.logging import get_logger

logger = get_logger("keystone.lifecycle.resources")

DEFAULT_CLEANUP_TIMEOUT = 30.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_BACKOFF = 1.0
DEFAULT_MAX_CONCURRENCY = 10


class ResourcePriority(Enum):
    """Release priority, highest first."""
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


_PRIORITY_RANK = {
    ResourcePriority.CRITICAL: 0,
    ResourcePriority.HIGH: 1,
    ResourcePriority.MEDIUM: 2,
    ResourcePriority.LOW: 3,
}


@dataclass
class ManagedResource:
    """A tracked resource and the closure that releases it."""
    type: str
    id: str
    cleanup: Callable[[], Any]
    metadata: Dict[str, Any] = field(default_factory=dict)
    priority: ResourcePriority = ResourcePriority.MEDIUM
    registered_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def key(self) -> str:
        return f"{self.type}:{self.id}"


@dataclass(frozen=True)
class CleanupResult:
    """Outcome of releasing one resource."""
    key: str
    success: bool
    attempts: int
    duration_ms: float
    error: Optional[str] = None


@dataclass(frozen=True)
class ResourceStats:
    total: int
    by_type: Dict[str, int]
    by_priority: Dict[str, int]
    failed_cleanups: int
    total_cleanup_time_ms: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "by_type": dict(self.by_type),
            "by_priority": dict(self.by_priority),
            "failed_cleanups": self.failed_cleanups,
            "total_cleanup_time_ms": self.total_cleanup_time_ms,
        }


def _batches(resources: List[ManagedResource], size: int) -> Iterator[List[ManagedResource]]:
    """Split priority-sorted resources into batches that never span two tiers."""
    for _, tier in groupby(resources, key=lambda r: _PRIORITY_RANK[r.priority]):
        members = list(tier)
        for offset in range(0, len(members), size):
            yield members[offset:offset + size]


class ResourceTracker:
    """
    Tracks cleanup closures and releases them in bulk.

    Usage:
        tracker = ResourceTracker()
        tracker.register("connection", "db-main", pool.close,
                         priority=ResourcePriority.HIGH)
        ...
        results = await tracker.cleanup("connection")
    """

    def __init__(
        self,
        default_timeout: float = DEFAULT_CLEANUP_TIMEOUT,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_backoff: float = DEFAULT_RETRY_BACKOFF,
    ):
        self.default_timeout = default_timeout
        self.max_retries = max(1, max_retries)
        self.retry_backoff = retry_backoff
        self._resources: Dict[str, ManagedResource] = {}
        self._cleanup_task: Optional[asyncio.Future] = None
        self._failed_cleanups = 0
        self._total_cleanup_time_ms = 0.0

    def register(
        self,
        resource: Union[ManagedResource, str],
        id: Optional[str] = None,
        cleanup: Optional[Callable[[], Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        priority: ResourcePriority = ResourcePriority.MEDIUM,
    ) -> ManagedResource:
        """
        Track a resource.

        Accepts either a ManagedResource or its ``type``, ``id`` and
        ``cleanup`` fields. Registering an existing ``type:id`` replaces the
        previous entry.
        """
        if not isinstance(resource, ManagedResource):
            if id is None or cleanup is None:
                raise ValueError("register() needs an id and a cleanup callable")
            resource = ManagedResource(
                type=resource,
                id=id,
                cleanup=cleanup,
                metadata=dict(metadata or {}),
                priority=priority,
            )

        if resource.key in self._resources:
            logger.warning("Resource already registered, replacing", resource=resource.key)

        self._resources[resource.key] = resource
        logger.debug(
            "Resource registered",
            resource=resource.key,
            priority=resource.priority.value,
        )
        return resource

    def unregister(self, type: str, id: str) -> bool:
        return self._resources.pop(f"{type}:{id}", None) is not None

    def get(self, type: str, id: str) -> Optional[ManagedResource]:
        return self._resources.get(f"{type}:{id}")

    def has(self, type: str, id: str) -> bool:
        return f"{type}:{id}" in self._resources

    def list_resources(self, type: Optional[str] = None) -> List[ManagedResource]:
        """Tracked resources in registration order, optionally of one type."""
        return [r for r in self._resources.values() if type is None or r.type == type]

    def __len__(self) -> int:
        return len(self._resources)

    @property
    def is_cleaning_up(self) -> bool:
        return self._cleanup_task is not None and not self._cleanup_task.done()

    async def cleanup(
        self,
        type: Optional[str] = None,
        timeout: Optional[float] = None,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        force: bool = False,
    ) -> List[CleanupResult]:
        """
        Release every tracked resource, or only those of ``type``.

        A call made while another cleanup is running waits for that run and
        returns its results, unless ``force`` is set.
        """
        if self.is_cleaning_up and not force:
            logger.info("Cleanup already in progress, waiting", resource_type=type)
            return await asyncio.shield(self._cleanup_task)

        task = asyncio.ensure_future(
            self._run_cleanup(type, timeout or self.default_timeout, max(1, max_concurrency))
        )
        self._cleanup_task = task
        try:
            return await asyncio.shield(task)
        finally:
            if self._cleanup_task is task and task.done():
                self._cleanup_task = None

    async def _run_cleanup(
        self,
        type: Optional[str],
        timeout: float,
        max_concurrency: int,
    ) -> List[CleanupResult]:
        order = {key: index for index, key in enumerate(self._resources)}
        selected = sorted(
            self.list_resources(type),
            key=lambda r: (_PRIORITY_RANK[r.priority], order[r.key]),
        )
        if not selected:
            return []

        started = time.monotonic()
        logger.info(
            "Starting resource cleanup",
            resource_type=type or "all",
            count=len(selected),
        )

        results: List[CleanupResult] = []
        for batch in _batches(selected, max_concurrency):
            outcomes = await asyncio.gather(
                *(self._release(resource, timeout) for resource in batch)
            )
            for resource, result in zip(batch, outcomes):
                if result.success:
                    # a replacement registered mid-cleanup stays tracked
                    if self._resources.get(resource.key) is resource:
                        del self._resources[resource.key]
                else:
                    self._failed_cleanups += 1
                results.append(result)

        elapsed_ms = (time.monotonic() - started) * 1000
        self._total_cleanup_time_ms += elapsed_ms
        failed = sum(1 for r in results if not r.success)
        log = logger.warning if failed else logger.info
        log(
            "Resource cleanup completed",
            resource_type=type or "all",
            successful=len(results) - failed,
            failed=failed,
            duration_ms=round(elapsed_ms, 2),
        )
        return results

    async def _release(self, resource: ManagedResource, timeout: float) -> CleanupResult:
        started = time.monotonic()
        last_error: Optional[BaseException] = None

        for attempt in range(1, self.max_retries + 1):
            try:
                await with_timeout(
                    maybe_await(resource.cleanup()),
                    timeout,
                    f"Resource {resource.key} cleanup timeout",
                    resource=resource.key,
                    attempt=attempt,
                    phase="resource-cleanup",
                )
                return CleanupResult(
                    key=resource.key,
                    success=True,
                    attempts=attempt,
                    duration_ms=(time.monotonic() - started) * 1000,
                )
            except Exception as e:
                last_error = e
                logger.warning(
                    "Resource cleanup attempt failed",
                    resource=resource.key,
                    attempt=attempt,
                    max_attempts=self.max_retries,
                    error=str(e),
                )
                if attempt < self.max_retries:
                    await asyncio.sleep(self.retry_backoff * attempt)

        logger.error(
            "Resource cleanup failed",
            resource=resource.key,
            attempts=self.max_retries,
            error=str(last_error),
        )
        return CleanupResult(
            key=resource.key,
            success=False,
            attempts=self.max_retries,
            duration_ms=(time.monotonic() - started) * 1000,
            error=str(last_error),
        )

    def get_stats(self) -> ResourceStats:
        by_type: Dict[str, int] = {}
        by_priority: Dict[str, int] = {}
        for resource in self._resources.values():
            by_type[resource.type] = by_type.get(resource.type, 0) + 1
            by_priority[resource.priority.value] = by_priority.get(resource.priority.value, 0) + 1
        return ResourceStats(
            total=len(self._resources),
            by_type=by_type,
            by_priority=by_priority,
            failed_cleanups=self._failed_cleanups,
            total_cleanup_time_ms=self._total_cleanup_time_ms,
        )
