"""FastAPI middleware components."""

from propnova.api.middleware.exception_handler import setup_exception_handlers
from propnova.api.middleware.logging import LoggingMiddleware
from propnova.api.middleware.metrics import MetricsMiddleware

__all__ = [
    "LoggingMiddleware",
    "MetricsMiddleware",
    "setup_exception_handlers",
]
