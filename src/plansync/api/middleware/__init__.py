"""FastAPI middleware components."""

from plansync.api.middleware.exception_handler import setup_exception_handlers
from plansync.api.middleware.logging import LoggingMiddleware

__all__ = [
    "LoggingMiddleware",
    "setup_exception_handlers",
]
