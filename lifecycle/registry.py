"""
Keystone - Service Registry

Ordered store of successfully started service instances.

Registration order is always a valid topological order because the
orchestrator only registers a service after all of its dependencies, so the
initialization order is the registration order and the shutdown order is its
exact reverse.
"""
from __future__ import annotations

from typing import Any, Dict, Iterator, List, Optional, Tuple


class ServiceRegistry:
    """Append-only ordered map of service name to instance."""

    __slots__ = ("_services", "_order")

    def __init__(self) -> None:
        self._services: Dict[str, Any] = {}
        self._order: List[str] = []

    def register(self, name: str, service: Any) -> None:
        self._services[name] = service
        self._order.append(name)

    def get(self, name: str) -> Optional[Any]:
        return self._services.get(name)

    def has(self, name: str) -> bool:
        return name in self._services

    def get_all_services(self) -> List[Tuple[str, Any]]:
        """All ``(name, instance)`` pairs in registration order."""
        return [(name, self._services[name]) for name in self._order]

    def get_initialization_order(self) -> List[str]:
        return list(self._order)

    def get_shutdown_order(self) -> List[str]:
        return list(reversed(self._order))

    def size(self) -> int:
        return len(self._services)

    def clear(self) -> None:
        self._services.clear()
        self._order = []

    def __len__(self) -> int:
        return self.size()

    def __contains__(self, name: object) -> bool:
        return name in self._services

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._order))

    def __repr__(self) -> str:
        return f"ServiceRegistry({self._order!r})"
