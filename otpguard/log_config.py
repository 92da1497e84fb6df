"""
Structured Logging Setup
========================
structlog configuration shared by every otpguard module.

Usage:
    from otpguard.log_config import setup_logging
    
    # Setup at startup
    setup_logging(service_name="auth-service")
"""

import logging
import sys

import structlog


def setup_logging(
    service_name: str = "otpguard",
    level: str = "INFO",
    json_logs: bool = True,
) -> None:
    """
    Configure structlog and the stdlib root logger.
    
    Args:
        service_name: Bound onto every log line as `service`
        level: Minimum log level name
        json_logs: JSON output (production) or console output (development)
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=log_level,
    )
    
    renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer()
    )
    
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
    structlog.contextvars.bind_contextvars(service=service_name)
