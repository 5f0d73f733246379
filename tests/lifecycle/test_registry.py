"""
Tests for lifecycle/registry.py - Service Registry.
"""
from lifecycle.registry import ServiceRegistry


class TestServiceRegistry:
    """Tests for registration order and lookups."""

    def _populated(self):
        registry = ServiceRegistry()
        registry.register("db", "db-instance")
        registry.register("cache", "cache-instance")
        registry.register("api", "api-instance")
        return registry

    def test_lookups(self):
        registry = self._populated()

        assert registry.get("cache") == "cache-instance"
        assert registry.get("missing") is None
        assert registry.has("db")
        assert not registry.has("missing")
        assert "api" in registry
        assert registry.size() == 3
        assert len(registry) == 3

    def test_orders(self):
        registry = self._populated()

        assert registry.get_initialization_order() == ["db", "cache", "api"]
        assert registry.get_shutdown_order() == ["api", "cache", "db"]
        assert list(registry) == ["db", "cache", "api"]

    def test_all_services_in_registration_order(self):
        registry = self._populated()
        assert registry.get_all_services() == [
            ("db", "db-instance"),
            ("cache", "cache-instance"),
            ("api", "api-instance"),
        ]

    def test_order_lists_are_copies(self):
        registry = self._populated()

        registry.get_initialization_order().append("rogue")
        registry.get_shutdown_order().clear()

        assert registry.get_initialization_order() == ["db", "cache", "api"]
        assert registry.get_shutdown_order() == ["api", "cache", "db"]

    def test_clear(self):
        registry = self._populated()
        registry.clear()

        assert len(registry) == 0
        assert registry.get_initialization_order() == []
        assert registry.get("db") is None

    def test_repr(self):
        assert repr(self._populated()) == "ServiceRegistry(['db', 'cache', 'api'])"
