"""
File-backed session store.
One JSON record per conversation (<id>.json) plus index.json, which lists
every conversation with its name and last-updated time so the sidebar can
be drawn without opening every record.

Every operation is a read-modify-write. Inside one process those sequences
are serialized by a lock per conversation id and a lock for the index
(always taken in that order). Separate processes writing the same
conversation still race; the last write wins.
"""

import json
import logging
import threading
from pathlib import Path
from uuid import UUID, uuid4

from chatline.events import EventBus
from chatline.storage.models import (
    DEFAULT_NAME,
    Conversation,
    IndexEntry,
    Message,
    utcnow,
)

logger = logging.getLogger(__name__)

INDEX_FILE = "index.json"


class ConversationNotFound(LookupError):
    """No record exists for the requested conversation id."""

    def __init__(self, conv_id: str):
        super().__init__(f"Conversation '{conv_id}' not found")
        self.conv_id = conv_id


def _utcnow() -> str:
    return utcnow()


def _valid_id(conv_id: str) -> bool:
    """Ids double as file names, so only canonical UUIDs are accepted."""
    if not isinstance(conv_id, str):
        return False
    try:
        return str(UUID(conv_id)) == conv_id.lower()
    except ValueError:
        return False


class SessionStore:
    """Conversation records and their index, stored as JSON files."""

    def __init__(self, chats_dir: str | Path, default_name: str = DEFAULT_NAME):
        self.chats_dir = Path(chats_dir)
        self.default_name = default_name
        self.index_path = self.chats_dir / INDEX_FILE
        self.events = EventBus("session-store")
        self._guard = threading.Lock()
        self._index_lock = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._ensure_storage()
        logger.info("Session store initialized at %s", self.chats_dir)

    # ------------------------------------------------------------------
    # Low-level file helpers
    # ------------------------------------------------------------------

    def _ensure_storage(self):
        self.chats_dir.mkdir(parents=True, exist_ok=True)
        if not self.index_path.exists():
            self._write_json(self.index_path, [])

    def _lock_for(self, conv_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(conv_id)
            if lock is None:
                lock = self._locks[conv_id] = threading.Lock()
            return lock

    def _record_path(self, conv_id: str) -> Path:
        return self.chats_dir / f"{conv_id}.json"

    @staticmethod
    def _write_json(path: Path, data):
        path.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")

    def _read_record(self, conv_id: str) -> Conversation | None:
        path = self._record_path(conv_id)
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except json.JSONDecodeError as e:
            logger.warning("Record %s is not valid JSON: %s", path, e)
            return None
        raw.setdefault("id", conv_id)
        return Conversation.from_dict(raw)

    def _write_record(self, conv: Conversation):
        self._ensure_storage()
        self._write_json(self._record_path(conv.id), conv.to_dict())

    def _read_index(self) -> list[IndexEntry]:
        """Missing or unreadable index is treated as empty."""
        try:
            raw = json.loads(self.index_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return []
        except json.JSONDecodeError as e:
            logger.warning("Index %s is not valid JSON, treating as empty: %s", self.index_path, e)
            return []
        if not isinstance(raw, list):
            return []
        return [IndexEntry.from_dict(r) for r in raw if isinstance(r, dict) and r.get("id")]

    def _write_index(self, entries: list[IndexEntry]):
        self._ensure_storage()
        self._write_json(self.index_path, [e.to_dict() for e in entries])

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def list_conversations(self) -> list[IndexEntry]:
        """Index entries, most recently active first."""
        with self._index_lock:
            entries = self._read_index()
        entries.sort(key=lambda e: e.updated_at, reverse=True)
        return entries

    def create(self, name: str | None = None) -> Conversation:
        """Create an empty conversation and register it in the index."""
        name = name if isinstance(name, str) and name.strip() else self.default_name

        conv_id = str(uuid4())
        while self._record_path(conv_id).exists():
            conv_id = str(uuid4())

        conv = Conversation(id=conv_id, name=name)
        with self._lock_for(conv_id):
            self._write_record(conv)
            with self._index_lock:
                entries = self._read_index()
                entries.append(IndexEntry(id=conv_id, name=name, updated_at=_utcnow()))
                self._write_index(entries)

        logger.debug("Created conversation %s (%s)", conv_id, name)
        self.events.publish("created", {"id": conv_id, "name": name})
        return conv

    def get(self, conv_id: str) -> Conversation:
        """Full conversation. Raises ConversationNotFound if there is no record."""
        if not _valid_id(conv_id):
            raise ConversationNotFound(conv_id)
        conv = self._read_record(conv_id)
        if conv is None:
            raise ConversationNotFound(conv_id)
        return conv

    def get_messages(self, conv_id: str) -> list[Message]:
        """Messages only; a missing conversation reads as empty."""
        if not _valid_id(conv_id):
            return []
        conv = self._read_record(conv_id)
        return conv.messages if conv else []

    def save_messages(self, conv_id: str, messages: list[Message]):
        """
        Replace the message list wholesale.
        Creates the record (default name) if needed, then refreshes the
        index entry's updatedAt. The index name is left alone.
        """
        if not _valid_id(conv_id):
            raise ValueError(f"Invalid conversation id: {conv_id!r}")

        with self._lock_for(conv_id):
            conv = self._read_record(conv_id) or Conversation(id=conv_id, name=self.default_name)
            conv.messages = list(messages)
            self._write_record(conv)

            with self._index_lock:
                entries = self._read_index()
                now = _utcnow()
                for entry in entries:
                    if entry.id == conv_id:
                        entry.updated_at = now
                        break
                else:
                    # Record exists now, so listing it does not create an orphan
                    entries.append(IndexEntry(id=conv_id, name=conv.name, updated_at=now))
                self._write_index(entries)

        logger.debug("Saved %d messages to %s", len(conv.messages), conv_id)
        self.events.publish("saved", {"id": conv_id, "count": len(conv.messages)})

    def rename(self, conv_id: str, name: str | None):
        """Rename record and index entry together. Empty name is a no-op."""
        if not isinstance(name, str) or not name:
            return
        if not _valid_id(conv_id):
            raise ConversationNotFound(conv_id)

        with self._lock_for(conv_id):
            conv = self._read_record(conv_id)
            if conv is None:
                raise ConversationNotFound(conv_id)
            conv.name = name
            self._write_record(conv)

            with self._index_lock:
                entries = self._read_index()
                now = _utcnow()
                for entry in entries:
                    if entry.id == conv_id:
                        entry.name = name
                        entry.updated_at = now
                        break
                else:
                    entries.append(IndexEntry(id=conv_id, name=name, updated_at=now))
                self._write_index(entries)

        logger.debug("Renamed %s to %s", conv_id, name)
        self.events.publish("renamed", {"id": conv_id, "name": name})

    def delete(self, conv_id: str):
        """Remove the record and its index entry. Always succeeds."""
        if _valid_id(conv_id):
            with self._lock_for(conv_id):
                self._record_path(conv_id).unlink(missing_ok=True)

        with self._index_lock:
            entries = self._read_index()
            kept = [e for e in entries if e.id != conv_id]
            if len(kept) != len(entries) or not self.index_path.exists():
                self._write_index(kept)

        with self._guard:
            self._locks.pop(conv_id, None)

        logger.debug("Deleted conversation %s", conv_id)
        self.events.publish("deleted", {"id": conv_id})
