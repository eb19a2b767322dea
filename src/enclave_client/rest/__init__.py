"""Request/response layer module."""

from .executor import RequestExecutor, RATE_LIMIT_STATUS

__all__ = [
    "RequestExecutor",
    "RATE_LIMIT_STATUS",
]
