"""
Base backend abstraction.
The controller and the HTTP relay talk to the inference server only through
this interface, so tests can swap in a fake and other servers can be added.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from typing import AsyncIterator

logger = logging.getLogger(__name__)


class InvalidRequest(ValueError):
    """Caller input is malformed. Raised before the backend is contacted."""


class BackendUnavailable(Exception):
    """
    The backend could not be reached, answered with a non-success status,
    or returned no body. Nothing has been streamed when this is raised.
    """

    def __init__(self, message: str, status_code: int = 502, detail: str = ""):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.detail = detail

    def to_json(self) -> dict:
        return {"error": self.message, "detail": self.detail}


def validate_chat_request(model, messages, options) -> tuple[str, list[dict], dict]:
    """
    Check a chat request's shape and normalize it.
    Returns (model, [{role, content}, ...], options).
    """
    if not isinstance(model, str) or not model.strip():
        raise InvalidRequest("model must be a non-empty string")
    if not isinstance(messages, list):
        raise InvalidRequest("messages must be a list")

    history = []
    for i, msg in enumerate(messages):
        if not isinstance(msg, dict):
            raise InvalidRequest(f"messages[{i}] must be an object")
        role, content = msg.get("role"), msg.get("content")
        if not isinstance(role, str) or not isinstance(content, str):
            raise InvalidRequest(f"messages[{i}] needs string role and content")
        history.append({"role": role, "content": content})

    if options is None:
        options = {}
    if not isinstance(options, dict):
        raise InvalidRequest("options must be an object")

    return model.strip(), history, options


class BaseBackend(abc.ABC):
    """
    Abstract base for inference backends.
    Each backend knows how to open a text stream and report health.
    """

    def __init__(self, name: str, url: str, timeout: float = 120):
        self.name = name
        self.url = url.rstrip("/")
        self.timeout = timeout

    @abc.abstractmethod
    async def open_stream(
        self,
        model: str,
        messages: list[dict],
        options: dict | None = None,
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[str]:
        """
        Start a streaming chat request.
        Returns a single-use async iterator of text fragments.
        Raises InvalidRequest or BackendUnavailable before any text is produced.
        """
        ...

    @abc.abstractmethod
    async def health_check(self) -> bool:
        """Check if this backend is reachable and responsive."""
        ...

    @abc.abstractmethod
    async def list_models(self) -> list[str]:
        """Return list of available model names on this backend."""
        ...

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r} url={self.url!r}>"
