"""Core configuration and exceptions."""

from .config import ClientConfig, Environment, API_URLS, WS_URLS, load_config
from .exceptions import (
    EnclaveError,
    RequestError,
    RateLimited,
    TransportFailure,
    Timeout,
    RemoteError,
    ParseFailure,
    StreamError,
    AuthRequired,
    ConnectionError,
    ValidationError,
)

__all__ = [
    "ClientConfig",
    "Environment",
    "API_URLS",
    "WS_URLS",
    "load_config",
    "EnclaveError",
    "RequestError",
    "RateLimited",
    "TransportFailure",
    "Timeout",
    "RemoteError",
    "ParseFailure",
    "StreamError",
    "AuthRequired",
    "ConnectionError",
    "ValidationError",
]
