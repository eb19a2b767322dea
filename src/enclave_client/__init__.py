"""
Enclave Client

交易场所客户端的网络弹性层: 带重试的 REST 请求执行器与可自动重连的 WebSocket 订阅管理。
"""

__version__ = "1.0.0"
__author__ = "Enclave Client Team"

# Lazy imports to avoid circular dependencies
def __getattr__(name):
    if name == "connection":
        from . import connection
        return connection
    elif name == "rest":
        from . import rest
        return rest
    elif name == "core":
        from . import core
        return core
    elif name == "EnclaveClient":
        from .client import EnclaveClient
        return EnclaveClient
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")

__all__ = [
    "__version__",
    "connection",
    "rest",
    "core",
    "EnclaveClient",
]
