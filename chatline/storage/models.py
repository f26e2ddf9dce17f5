"""
Data models for conversation storage.
These define the shape of what gets written to disk and sent to the browser.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone

DEFAULT_NAME = "New chat"


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class LatencyMeta:
    """Timing recorded on a streamed assistant reply."""
    time_to_first_byte_ms: float | None = None
    total_ms: float | None = None

    def to_dict(self) -> dict:
        data = {}
        if self.time_to_first_byte_ms is not None:
            data["timeToFirstByteMs"] = self.time_to_first_byte_ms
        if self.total_ms is not None:
            data["totalMs"] = self.total_ms
        return data

    @classmethod
    def from_dict(cls, data: dict) -> LatencyMeta:
        # ttfbMs is the key older records were written with
        ttfb = data.get("timeToFirstByteMs", data.get("ttfbMs"))
        return cls(time_to_first_byte_ms=ttfb, total_ms=data.get("totalMs"))


@dataclass
class Message:
    """A single message in a conversation."""
    role: str = ""           # "user" or "assistant"
    content: str = ""
    timestamp: str | None = None
    latency: LatencyMeta | None = None

    def to_dict(self) -> dict:
        data = {"role": self.role, "content": self.content}
        if self.timestamp:
            data["timestamp"] = self.timestamp
        if self.latency is not None:
            data["latencyMeta"] = self.latency.to_dict()
        return data

    def to_chat_format(self) -> dict:
        """Export as the {role, content} pair the inference backend expects."""
        return {"role": self.role, "content": self.content}

    @classmethod
    def from_dict(cls, data: dict) -> Message:
        meta = data.get("latencyMeta", data.get("meta"))
        content = data.get("content", "")
        return cls(
            role=str(data.get("role", "")),
            content=content if isinstance(content, str) else str(content),
            timestamp=data.get("timestamp", data.get("ts")),
            latency=LatencyMeta.from_dict(meta) if isinstance(meta, dict) else None,
        )


@dataclass
class Conversation:
    """One persisted chat session."""
    id: str
    name: str = DEFAULT_NAME
    messages: list[Message] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "messages": [m.to_dict() for m in self.messages],
        }

    @classmethod
    def from_dict(cls, data: dict) -> Conversation:
        raw = data.get("messages") or []
        return cls(
            id=data["id"],
            name=data.get("name") or DEFAULT_NAME,
            messages=[Message.from_dict(m) for m in raw if isinstance(m, dict)],
        )


@dataclass
class IndexEntry:
    """Listing row for a conversation; name is a denormalized copy."""
    id: str
    name: str = DEFAULT_NAME
    updated_at: str = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "updatedAt": self.updated_at}

    @classmethod
    def from_dict(cls, data: dict) -> IndexEntry:
        return cls(
            id=data["id"],
            name=data.get("name") or DEFAULT_NAME,
            updated_at=data.get("updatedAt", ""),
        )
