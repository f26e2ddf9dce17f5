"""
Inference backends for chatline.
"""
from chatline.backends.base import BackendUnavailable, BaseBackend, InvalidRequest
from chatline.backends.ollama import OllamaBackend, RelayStream, iter_fragments

__all__ = [
    "BackendUnavailable",
    "BaseBackend",
    "InvalidRequest",
    "OllamaBackend",
    "RelayStream",
    "iter_fragments",
]
