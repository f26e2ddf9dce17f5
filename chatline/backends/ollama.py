"""
Ollama backend — streaming chat against a local Ollama server.

Ollama's /api/chat answers with newline-delimited JSON, one object per line:
    {"model": "...", "message": {"role": "assistant", "content": "Hel"}, "done": false}
    {"error": "model not found"}
    {"done": true, ...}

The relay turns that into a flat stream of text fragments. Errors reported
by the server become inline "⚠️ ..." fragments; a dropped connection becomes
one final warning fragment. Nothing low-level leaks out as an exception once
streaming has started.
"""

from __future__ import annotations

import asyncio
import codecs
import json
import logging
from contextlib import aclosing
from typing import AsyncIterator

import httpx

from chatline.backends.base import (
    BackendUnavailable,
    BaseBackend,
    validate_chat_request,
)

logger = logging.getLogger(__name__)

WARNING_PREFIX = "⚠️ "
STREAM_ERROR_TEXT = WARNING_PREFIX + "Streaming error."

# Failures that can surface while reading the body of an open response
_READ_ERRORS = (httpx.HTTPError, httpx.StreamError, OSError)


def parse_line(line: str) -> tuple[str, bool]:
    """
    Interpret one NDJSON line.
    Returns (fragment, done). Fragment is "" when there is nothing to emit;
    non-JSON noise yields ("", False).
    """
    line = line.strip()
    if not line:
        return "", False
    try:
        chunk = json.loads(line)
    except json.JSONDecodeError:
        logger.debug("Dropping non-JSON line from upstream: %.80s", line)
        return "", False
    if not isinstance(chunk, dict):
        logger.debug("Dropping non-object line from upstream: %.80s", line)
        return "", False

    # An error line never ends the stream, even if it also says done
    if chunk.get("error"):
        return f"{WARNING_PREFIX}{chunk['error']}", False

    message = chunk.get("message")
    piece = message.get("content") if isinstance(message, dict) else None
    return (piece if isinstance(piece, str) else ""), bool(chunk.get("done"))


async def iter_fragments(
    chunks: AsyncIterator[bytes],
    cancel: asyncio.Event | None = None,
) -> AsyncIterator[str]:
    """
    Decode a byte stream of NDJSON into text fragments.
    Multi-byte characters split across chunks are handled by an incremental
    decoder. Stops at the first done line, at a set cancel event, or at EOF.
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""
    upstream = chunks.__aiter__()

    while True:
        if cancel is not None and cancel.is_set():
            logger.debug("Relay cancelled by caller")
            return
        try:
            data = await upstream.__anext__()
        except StopAsyncIteration:
            break
        except _READ_ERRORS as e:
            logger.warning("Upstream stream failed mid-read: %s", e)
            yield STREAM_ERROR_TEXT
            return

        buffer += decoder.decode(data)
        while (idx := buffer.find("\n")) != -1:
            line, buffer = buffer[:idx], buffer[idx + 1:]
            fragment, done = parse_line(line)
            if fragment:
                yield fragment
            if done:
                return

    # Upstream closed; a last line may have arrived without its newline
    buffer += decoder.decode(b"", final=True)
    fragment, _ = parse_line(buffer)
    if fragment:
        yield fragment


class RelayStream:
    """
    Text fragments from one open upstream response.
    Consumed once, front to back. The response and its client are closed
    whichever way iteration ends; aclose() may also be called directly.
    """

    def __init__(
        self,
        response: httpx.Response,
        client: httpx.AsyncClient,
        cancel: asyncio.Event | None = None,
    ):
        self._response = response
        self._client = client
        self.cancel_event = cancel or asyncio.Event()
        self._consumed = False
        self._closed = False

    def __aiter__(self) -> AsyncIterator[str]:
        if self._consumed:
            raise RuntimeError("RelayStream can only be consumed once")
        self._consumed = True
        return self._produce()

    async def _produce(self) -> AsyncIterator[str]:
        try:
            async with aclosing(iter_fragments(self._response.aiter_raw(), self.cancel_event)) as fragments:
                async for fragment in fragments:
                    yield fragment
        finally:
            await self.aclose()

    def cancel(self):
        """Stop producing before the next upstream read."""
        self.cancel_event.set()

    @property
    def closed(self) -> bool:
        return self._closed

    async def aclose(self):
        if self._closed:
            return
        self._closed = True
        try:
            await self._response.aclose()
        finally:
            await self._client.aclose()

    async def __aenter__(self) -> RelayStream:
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()


class OllamaBackend(BaseBackend):
    """Backend for local Ollama instances."""

    def __init__(
        self,
        name: str = "ollama",
        url: str = "http://localhost:11434",
        timeout: float = 120,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(name=name, url=url, timeout=timeout)
        # Tests inject an httpx.MockTransport here
        self._transport = transport

    def _client(self, timeout: float | None = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout if timeout is None else timeout,
            transport=self._transport,
        )

    async def open_stream(
        self,
        model: str,
        messages: list[dict],
        options: dict | None = None,
        cancel: asyncio.Event | None = None,
    ) -> RelayStream:
        """Open a streaming /api/chat request. See BaseBackend.open_stream."""
        model, history, options = validate_chat_request(model, messages, options)
        body = {
            "model": model,
            "messages": history,
            "options": options,
            "stream": True,
        }

        client = self._client()
        try:
            request = client.build_request("POST", f"{self.url}/api/chat", json=body)
            response = await client.send(request, stream=True)
        except httpx.HTTPError as e:
            await client.aclose()
            logger.warning("Ollama backend '%s' unreachable: %s", self.name, e)
            raise BackendUnavailable(
                "Could not connect to the model backend", detail=str(e),
            ) from e

        if not response.is_success or response.status_code == 204:
            try:
                detail = (await response.aread()).decode("utf-8", errors="replace")
            except _READ_ERRORS:
                detail = ""
            finally:
                await response.aclose()
                await client.aclose()
            logger.warning(
                "Ollama backend '%s' returned HTTP %d for model '%s'",
                self.name, response.status_code, model,
            )
            raise BackendUnavailable(
                "Could not connect to the model backend",
                detail=detail[:500] or f"HTTP {response.status_code}",
            )

        logger.debug("Streaming %d messages to '%s' via %s", len(history), model, self.name)
        return RelayStream(response, client, cancel)

    async def health_check(self) -> bool:
        """Check Ollama is reachable."""
        try:
            async with self._client(timeout=5) as client:
                resp = await client.get(f"{self.url}/api/tags")
                return resp.status_code == 200
        except httpx.HTTPError:
            return False

    async def list_models(self) -> list[str]:
        """Fetch locally available model names from Ollama."""
        try:
            async with self._client(timeout=10) as client:
                resp = await client.get(f"{self.url}/api/tags")
                resp.raise_for_status()
                data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Failed to list Ollama models from '%s': %s", self.name, e)
            return []
        models = [m.get("name") or m.get("model", "") for m in data.get("models", [])]
        return [m for m in models if m]
