"""FastAPI middleware components."""

from practicegate.api.middleware.exception_handler import setup_exception_handlers
from practicegate.api.middleware.logging import LoggingMiddleware
from practicegate.api.middleware.metrics import MetricsMiddleware

__all__ = [
    "LoggingMiddleware",
    "MetricsMiddleware",
    "setup_exception_handlers",
]
