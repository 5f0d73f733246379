"""
Keystone - Configuration

Centralized configuration for the lifecycle orchestrator.
Uses environment variables with sensible defaults.
"""
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


class Environment(Enum):
    """Deployment environments."""
    DEVELOPMENT = "development"
    TESTING = "testing"
    STAGING = "staging"
    PRODUCTION = "production"


def _env_list(name: str, default: str) -> Tuple[str, ...]:
    raw = os.getenv(name, default)
    return tuple(part.strip().upper() for part in raw.split(",") if part.strip())


@dataclass
class LifecycleConfig:
    """
    Orchestrator timing and process wiring.

    All durations are in seconds. The ``default_*`` values are what a
    descriptor built through ``descriptor_defaults()`` starts from.
    """
    # Fixed budgets used by the orchestrator itself
    rollback_timeout: float = field(default_factory=lambda: float(os.getenv("KEYSTONE_ROLLBACK_TIMEOUT", "10")))
    shutdown_timeout: float = field(default_factory=lambda: float(os.getenv("KEYSTONE_SHUTDOWN_TIMEOUT", "15")))
    resource_cleanup_timeout: float = field(default_factory=lambda: float(os.getenv("KEYSTONE_RESOURCE_CLEANUP_TIMEOUT", "30")))

    # Descriptor defaults
    default_init_timeout: float = field(default_factory=lambda: float(os.getenv("KEYSTONE_INIT_TIMEOUT", "30")))
    default_shutdown_timeout: float = field(default_factory=lambda: float(os.getenv("KEYSTONE_SERVICE_SHUTDOWN_TIMEOUT", "15")))
    default_retry_attempts: int = field(default_factory=lambda: int(os.getenv("KEYSTONE_RETRY_ATTEMPTS", "1")))
    default_retry_delay: float = field(default_factory=lambda: float(os.getenv("KEYSTONE_RETRY_DELAY", "1")))

    # Process wiring after a successful start
    install_signal_handlers: bool = field(default_factory=lambda: os.getenv("KEYSTONE_SIGNAL_HANDLERS", "true").lower() == "true")
    termination_signals: Tuple[str, ...] = field(default_factory=lambda: _env_list("KEYSTONE_TERMINATION_SIGNALS", "SIGTERM,SIGINT,SIGHUP"))

    def descriptor_defaults(self) -> Dict[str, Any]:
        """Keyword defaults for building ServiceDescriptor instances."""
        return {
            "init_timeout": self.default_init_timeout,
            "shutdown_timeout": self.default_shutdown_timeout,
            "retry_attempts": self.default_retry_attempts,
            "retry_delay": self.default_retry_delay,
        }

    def validate(self) -> List[str]:
        """Return a list of configuration problems (empty when valid)."""
        errors: List[str] = []
        for name in ("rollback_timeout", "shutdown_timeout", "resource_cleanup_timeout",
                     "default_init_timeout", "default_shutdown_timeout"):
            if getattr(self, name) <= 0:
                errors.append(f"{name} must be > 0")
        if self.default_retry_attempts < 1:
            errors.append("default_retry_attempts must be >= 1")
        if self.default_retry_delay < 0:
            errors.append("default_retry_delay must be >= 0")
        return errors


@dataclass
class ObservabilityConfig:
    """Logging and tracing toggles."""
    service_name: str = field(default_factory=lambda: os.getenv("KEYSTONE_SERVICE_NAME", "keystone"))
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO").upper())
    log_json_format: bool = field(default_factory=lambda: os.getenv("LOG_FORMAT", "json").lower() == "json")
    tracing_enabled: bool = field(default_factory=lambda: os.getenv("OTEL_TRACING_ENABLED", "true").lower() == "true")
    otlp_endpoint: str = field(default_factory=lambda: os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", ""))
    trace_console_export: bool = field(default_factory=lambda: os.getenv("OTEL_CONSOLE_EXPORT", "false").lower() == "true")


@dataclass
class Config:
    """Main configuration class combining all sub-configs."""
    env: Environment = field(default_factory=lambda: Environment(os.getenv("ENVIRONMENT", "development")))
    debug: bool = field(default_factory=lambda: os.getenv("DEBUG", "false").lower() == "true")

    lifecycle: LifecycleConfig = field(default_factory=LifecycleConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.env == Environment.PRODUCTION

    def to_dict(self) -> Dict[str, Any]:
        """Convert config to dictionary."""
        return {
            "env": self.env.value,
            "debug": self.debug,
            "lifecycle": {
                "rollback_timeout": self.lifecycle.rollback_timeout,
                "shutdown_timeout": self.lifecycle.shutdown_timeout,
                "resource_cleanup_timeout": self.lifecycle.resource_cleanup_timeout,
                "default_init_timeout": self.lifecycle.default_init_timeout,
                "default_shutdown_timeout": self.lifecycle.default_shutdown_timeout,
                "default_retry_attempts": self.lifecycle.default_retry_attempts,
                "default_retry_delay": self.lifecycle.default_retry_delay,
                "install_signal_handlers": self.lifecycle.install_signal_handlers,
                "termination_signals": list(self.lifecycle.termination_signals),
            },
            "observability": {
                "service_name": self.observability.service_name,
                "log_level": self.observability.log_level,
                "log_json_format": self.observability.log_json_format,
                "tracing_enabled": self.observability.tracing_enabled,
                "otlp_endpoint": self.observability.otlp_endpoint,
                "trace_console_export": self.observability.trace_console_export,
            },
        }


# Singleton configuration instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get or create configuration singleton."""
    global _config
    if _config is None:
        _config = Config()
    return _config


def reload_config() -> Config:
    """Reload configuration from environment."""
    global _config
    load_dotenv(override=True)
    _config = Config()
    return _config
