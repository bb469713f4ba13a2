"""
Model server backends for fmchat.
"""
from fmchat.backends.base import BaseBackend, HealthStatus, TransportError
from fmchat.backends.health import AppState, HealthMonitor
from fmchat.backends.local import LocalLLMBackend

__all__ = [
    "AppState",
    "BaseBackend",
    "HealthMonitor",
    "HealthStatus",
    "LocalLLMBackend",
    "TransportError",
]
