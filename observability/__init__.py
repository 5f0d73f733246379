"""
Keystone - Observability Package

Distributed tracing and structured logging for the lifecycle orchestrator.

Components:
- tracing: OpenTelemetry distributed tracing with OTLP export
- logging: Structlog integration with trace context propagation

Usage:
    from observability import setup_observability, get_logger

    # Initialize at application startup
    setup_observability(service_name="keystone")

    logger = get_logger("keystone.app")
"""
from typing import Optional

from .logging import (
    LogContext,
    LoggingConfig,
    bind_context,
    clear_context,
    get_logger,
    setup_logging,
    shutdown_logging,
)
from .tracing import (
    TracingConfig,
    create_span,
    get_tracer,
    setup_tracing,
    shutdown_tracing,
)

__all__ = [
    # Tracing
    "setup_tracing",
    "get_tracer",
    "create_span",
    "TracingConfig",
    "shutdown_tracing",
    # Logging
    "setup_logging",
    "get_logger",
    "LoggingConfig",
    "LogContext",
    "bind_context",
    "clear_context",
    "shutdown_logging",
    # Combined setup
    "setup_observability",
    "shutdown_observability",
]

__version__ = "1.0.0"


def setup_observability(
    service_name: str = "keystone",
    otlp_endpoint: str = "",
    enabled: bool = True,
    sample_rate: float = 1.0,
    log_level: str = "INFO",
    json_logs: bool = True,
    console_traces: bool = False,
    environment: Optional[str] = None,
    log_stream: str = "stdout",
    force: bool = False,
) -> None:
    """
    Initialize tracing and logging.

    Args:
        service_name: Name of the service for telemetry
        otlp_endpoint: OTLP collector endpoint (gRPC); empty disables export
        enabled: Enable/disable tracing
        sample_rate: Trace sampling rate (0.0-1.0)
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_logs: Render logs as JSON instead of console output
        console_traces: Print finished spans to stdout
        environment: Deployment environment; read from ENVIRONMENT when omitted
        log_stream: "stdout" or "stderr" for console logs
        force: Reconfigure logging even if it was already set up
    """
    tracing_config = TracingConfig(
        service_name=service_name,
        otlp_endpoint=otlp_endpoint,
        enabled=enabled,
        sample_rate=sample_rate,
        console_export=console_traces,
    )
    logging_config = LoggingConfig(
        service_name=service_name,
        level=log_level.upper(),
        enable_trace_context=True,
        json_format=json_logs,
        console_stream=log_stream,
    )
    if environment:
        tracing_config.environment = environment
        logging_config.environment = environment

    setup_tracing(tracing_config)
    setup_logging(logging_config, force=force)


def shutdown_observability() -> None:
    """
    Flush telemetry during application shutdown.
    """
    shutdown_tracing()
    clear_context()
    shutdown_logging()
