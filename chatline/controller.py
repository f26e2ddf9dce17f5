"""
Conversation controller — turns one "send" into a fully persisted exchange.

Per send:
    IDLE → DRAFTING → SENDING → STREAMING → SETTLED → IDLE
with FAILED reachable from DRAFTING, SENDING and STREAMING. Every failure
leaves an assistant-authored warning in the conversation (persisted when
there is a conversation to persist it to), so the history never ends on a
half-written turn.

The selected conversation is explicit state on the controller, not a
global, and everything a UI needs to redraw is published on `events`:
    selected          {"id"}
    messages_changed  {"id", "messages"}
    draft_updated     {"id", "delta", "content"}
    state_changed     {"state"}

Titles are user-set or the default name. They are never derived from the
first message, and clear() puts the default name back.
"""

import asyncio
import enum
import logging
import time

from chatline.backends.base import BackendUnavailable, BaseBackend, InvalidRequest
from chatline.events import EventBus
from chatline.storage.models import DEFAULT_NAME, LatencyMeta, Message, utcnow
from chatline.storage.session_store import SessionStore

logger = logging.getLogger(__name__)

HISTORY_WINDOW = 12
DEFAULT_OPTIONS = {"temperature": 0.7, "top_p": 0.9}

CREATE_FAILED_TEXT = "⚠️ Could not create the conversation."
SAVE_FAILED_TEXT = "⚠️ Could not save the conversation."
BACKEND_FAILED_TEXT = "⚠️ Could not connect to the model."
UNEXPECTED_TEXT = "⚠️ Unexpected error."


class SendState(str, enum.Enum):
    IDLE = "idle"
    DRAFTING = "drafting"
    SENDING = "sending"
    STREAMING = "streaming"
    SETTLED = "settled"
    FAILED = "failed"


class ConversationController:
    """Drives one client session: selection, sending, streaming, clearing."""

    def __init__(
        self,
        store: SessionStore,
        backend: BaseBackend,
        model: str,
        options: dict | None = None,
        history_window: int = HISTORY_WINDOW,
        default_name: str = DEFAULT_NAME,
        selected_id: str | None = None,
    ):
        self.store = store
        self.backend = backend
        self.model = model
        self.options = dict(DEFAULT_OPTIONS if options is None else options)
        self.history_window = max(1, history_window)
        self.default_name = default_name
        self.events = EventBus("controller")

        self.selected_id: str | None = selected_id
        self.messages: list[Message] = []
        self.state = SendState.IDLE
        self.busy = False

    @classmethod
    def from_config(
        cls,
        cfg: dict,
        store: SessionStore,
        backend: BaseBackend,
        model: str | None = None,
        selected_id: str | None = None,
    ) -> "ConversationController":
        """Create a controller from config.yaml settings."""
        chat_cfg = cfg.get("chat", {})
        return cls(
            store=store,
            backend=backend,
            model=model or cfg.get("backend", {}).get("default_model", ""),
            options={
                "temperature": chat_cfg.get("temperature", DEFAULT_OPTIONS["temperature"]),
                "top_p": chat_cfg.get("top_p", DEFAULT_OPTIONS["top_p"]),
            },
            history_window=chat_cfg.get("history_window", HISTORY_WINDOW),
            default_name=chat_cfg.get("default_name", DEFAULT_NAME),
            selected_id=selected_id,
        )

    # ------------------------------------------------------------------
    # Session context
    # ------------------------------------------------------------------

    async def select(self, conv_id: str) -> list[Message]:
        """Make conv_id the current conversation and load its messages."""
        self.selected_id = conv_id
        self.messages = await asyncio.to_thread(self.store.get_messages, conv_id)
        self.events.publish("selected", {"id": conv_id})
        self._publish_messages()
        return self.messages

    def deselect(self):
        self.selected_id = None
        self.messages = []
        self.events.publish("selected", {"id": None})
        self._publish_messages()

    async def new_conversation(self, name: str | None = None) -> str:
        """Create a conversation and select it."""
        conv = await asyncio.to_thread(self.store.create, name or self.default_name)
        self.selected_id = conv.id
        self.messages = []
        self.events.publish("selected", {"id": conv.id})
        self._publish_messages()
        return conv.id

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _set_state(self, state: SendState):
        self.state = state
        self.events.publish("state_changed", {"state": state.value})

    def _publish_messages(self):
        self.events.publish(
            "messages_changed",
            {"id": self.selected_id, "messages": list(self.messages)},
        )

    async def _persist(self, conv_id: str, messages: list[Message]):
        await asyncio.to_thread(self.store.save_messages, conv_id, messages)

    async def _settle_failure(self, conv_id: str | None, base: list[Message], text: str):
        """Append a warning reply to `base`, show it, and persist it if possible."""
        self._set_state(SendState.FAILED)
        self.messages = [*base, Message(role="assistant", content=text, timestamp=utcnow())]
        self._publish_messages()
        if conv_id is None:
            return
        try:
            await self._persist(conv_id, self.messages)
        except (OSError, ValueError) as e:
            logger.error("Could not persist failure reply for %s: %s", conv_id, e)

    def _history(self) -> list[dict]:
        return [m.to_chat_format() for m in self.messages[-self.history_window:]]

    # ------------------------------------------------------------------
    # Send
    # ------------------------------------------------------------------

    async def send(self, text: str, cancel: asyncio.Event | None = None) -> list[Message]:
        """
        Send one user message and stream the assistant reply into the
        conversation. Returns the message list as it was left.
        A set `cancel` event stops the stream; the partial reply is kept.
        """
        text = (text or "").strip()
        if not text or self.busy:
            return self.messages

        self.busy = True
        try:
            await self._send(text, cancel)
        finally:
            self.busy = False
            self._set_state(SendState.IDLE)
        return self.messages

    async def _send(self, text: str, cancel: asyncio.Event | None):
        # Drafting: make sure there is a conversation to write to
        self._set_state(SendState.DRAFTING)
        conv_id = self.selected_id
        if conv_id is None:
            try:
                conv_id = await self.new_conversation(self.default_name)
            except OSError as e:
                logger.error("Could not create conversation: %s", e)
                await self._settle_failure(None, self.messages, CREATE_FAILED_TEXT)
                return

        # Sending: the user turn is on disk before the model is asked
        self._set_state(SendState.SENDING)
        user_msg = Message(role="user", content=text, timestamp=utcnow())
        sent = [*self.messages, user_msg]
        self.messages = sent
        self._publish_messages()
        try:
            await self._persist(conv_id, sent)
        except (OSError, ValueError) as e:
            logger.error("Could not persist user message for %s: %s", conv_id, e)
            await self._settle_failure(conv_id, sent, SAVE_FAILED_TEXT)
            return

        try:
            await self._stream_reply(conv_id, sent, cancel)
        except Exception as e:
            logger.exception("Unexpected failure while streaming reply for %s: %s", conv_id, e)
            await self._settle_failure(conv_id, sent, UNEXPECTED_TEXT)

    async def _stream_reply(self, conv_id: str, sent: list[Message], cancel: asyncio.Event | None):
        t0 = time.monotonic()
        try:
            stream = await self.backend.open_stream(
                self.model, self._history(), self.options, cancel=cancel,
            )
        except (BackendUnavailable, InvalidRequest) as e:
            logger.warning("Relay refused request for %s: %s", conv_id, e)
            await self._settle_failure(conv_id, sent, BACKEND_FAILED_TEXT)
            return

        # Streaming: the placeholder grows in place
        self._set_state(SendState.STREAMING)
        placeholder = Message(role="assistant", content="", latency=LatencyMeta())
        self.messages = [*sent, placeholder]
        self._publish_messages()

        parts: list[str] = []
        ttfb_ms: float | None = None
        try:
            async for fragment in stream:
                if ttfb_ms is None:
                    ttfb_ms = (time.monotonic() - t0) * 1000
                    placeholder.latency.time_to_first_byte_ms = ttfb_ms
                parts.append(fragment)
                placeholder.content = "".join(parts)
                self.events.publish(
                    "draft_updated",
                    {"id": conv_id, "delta": fragment, "content": placeholder.content},
                )
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        total_ms = (time.monotonic() - t0) * 1000
        final = Message(
            role="assistant",
            content="".join(parts),
            timestamp=utcnow(),
            latency=LatencyMeta(time_to_first_byte_ms=ttfb_ms, total_ms=total_ms),
        )
        self.messages = [*sent, final]
        self._publish_messages()
        await self._persist(conv_id, self.messages)
        self._set_state(SendState.SETTLED)
        logger.debug(
            "Reply for %s settled: %d chars, ttfb=%sms total=%.0fms",
            conv_id, len(final.content),
            f"{ttfb_ms:.0f}" if ttfb_ms is not None else "-", total_ms,
        )

    # ------------------------------------------------------------------
    # Clear
    # ------------------------------------------------------------------

    async def clear(self):
        """Empty the current conversation and restore the default name."""
        conv_id = self.selected_id
        if conv_id is None:
            return
        self.messages = []
        self._publish_messages()
        await self._persist(conv_id, [])
        await asyncio.to_thread(self.store.rename, conv_id, self.default_name)
