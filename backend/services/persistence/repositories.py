"""
Async repositories over the SQLite document store.

SQLite calls run in worker threads so the event loop never blocks on disk.
"""
import asyncio
import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from core.backoff import retry_on_transient_error
from core.database import Database
from models.chat_models import ChatMessage
from models.note_models import Note, SourceFile, now_ms
from models.profile_models import UserProfile

logger = logging.getLogger(__name__)

PROFILE_ID = "current_user"


@dataclass
class StoredFileMetadata:
    id: str
    file_name: str
    mime_type: str
    size: int
    related_note_id: Optional[str]
    created_at: int


class NoteRepository:
    """Persists study-guide notes."""

    def __init__(self, database: Database):
        self.db = database

    async def list(self) -> List[Note]:
        """All notes, most recently updated first."""
        rows = await asyncio.to_thread(
            self.db.execute, "SELECT document FROM notes ORDER BY updated_at DESC"
        )
        return [Note.from_dict(json.loads(row["document"])) for row in rows]

    async def get(self, note_id: str) -> Optional[Note]:
        row = await asyncio.to_thread(
            self.db.execute_one, "SELECT document FROM notes WHERE id = ?", (note_id,)
        )
        return Note.from_dict(json.loads(row["document"])) if row else None

    @retry_on_transient_error()
    async def save(self, note: Note) -> Note:
        """Insert or update; ``created_at`` of an existing note is preserved."""
        existing = await self.get(note.id)
        if existing:
            note.created_at = existing.created_at
        note.updated_at = now_ms()
        await asyncio.to_thread(
            self.db.execute_write,
            """
            INSERT INTO notes (id, title, document, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                title = excluded.title,
                document = excluded.document,
                updated_at = excluded.updated_at
            """,
            (note.id, note.title, json.dumps(note.to_dict()), note.created_at, note.updated_at),
        )
        return note

    @retry_on_transient_error()
    async def delete(self, note_id: str) -> bool:
        """Delete a note together with its chat history and files."""
        note = await self.get(note_id)
        if note is None:
            return False
        await asyncio.to_thread(
            self.db.execute_many_writes,
            [
                ("DELETE FROM files WHERE related_note_id = ?", (note_id,)),
                ("DELETE FROM chat_histories WHERE note_id = ?", (note_id,)),
                ("DELETE FROM notes WHERE id = ?", (note_id,)),
            ],
        )
        return True

    async def search(self, query: str) -> List[Note]:
        """Notes whose title or summary contains ``query`` (case-insensitive)."""
        needle = query.lower()
        return [
            note for note in await self.list()
            if needle in note.title.lower() or needle in note.summary.lower()
        ]


class ProfileRepository:
    """Persists the single learner profile."""

    def __init__(self, database: Database):
        self.db = database

    async def get(self) -> Optional[UserProfile]:
        row = await asyncio.to_thread(
            self.db.execute_one, "SELECT document FROM profiles WHERE id = ?", (PROFILE_ID,)
        )
        return UserProfile.from_dict(json.loads(row["document"])) if row else None

    @retry_on_transient_error()
    async def save(self, profile: UserProfile) -> UserProfile:
        existing = await self.get()
        if existing:
            profile.created_at = existing.created_at
        profile.updated_at = now_ms()
        await asyncio.to_thread(
            self.db.execute_write,
            """
            INSERT INTO profiles (id, document, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                document = excluded.document,
                updated_at = excluded.updated_at
            """,
            (PROFILE_ID, json.dumps(profile.to_dict()), profile.updated_at),
        )
        return profile

    async def exists(self) -> bool:
        return await self.get() is not None

    async def delete(self) -> None:
        await asyncio.to_thread(self.db.execute_write, "DELETE FROM profiles WHERE id = ?", (PROFILE_ID,))


class ChatRepository:
    """Persists one message history per note."""

    def __init__(self, database: Database):
        self.db = database

    async def get_for_note(self, note_id: str) -> List[ChatMessage]:
        row = await asyncio.to_thread(
            self.db.execute_one, "SELECT messages FROM chat_histories WHERE note_id = ?", (note_id,)
        )
        if not row:
            return []
        return [ChatMessage.from_dict(data) for data in json.loads(row["messages"])]

    @retry_on_transient_error()
    async def save_for_note(self, note_id: str, messages: List[ChatMessage]) -> None:
        """Store a history; thinking placeholders are never persisted."""
        payload: List[Dict[str, Any]] = [m.to_dict() for m in messages if not m.is_thinking]
        await asyncio.to_thread(
            self.db.execute_write,
            """
            INSERT INTO chat_histories (note_id, messages, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(note_id) DO UPDATE SET
                messages = excluded.messages,
                updated_at = excluded.updated_at
            """,
            (note_id, json.dumps(payload), now_ms()),
        )

    async def delete_for_note(self, note_id: str) -> None:
        await asyncio.to_thread(
            self.db.execute_write, "DELETE FROM chat_histories WHERE note_id = ?", (note_id,)
        )


class StorageRepository:
    """Stores uploaded originals as blobs."""

    def __init__(self, database: Database):
        self.db = database

    @retry_on_transient_error()
    async def upload(self, source: SourceFile, related_note_id: Optional[str] = None) -> str:
        file_id = str(uuid.uuid4())
        await asyncio.to_thread(
            self.db.execute_write,
            """
            INSERT INTO files (id, related_note_id, file_name, mime_type, size, data, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (file_id, related_note_id, source.name, source.mime_type, source.size,
             source.data, now_ms()),
        )
        logger.debug(f"Stored file {source.name} as {file_id}")
        return file_id

    async def download(self, file_id: str) -> Optional[SourceFile]:
        row = await asyncio.to_thread(
            self.db.execute_one, "SELECT file_name, mime_type, data FROM files WHERE id = ?", (file_id,)
        )
        if not row:
            return None
        return SourceFile(name=row["file_name"], mime_type=row["mime_type"], data=bytes(row["data"]))

    async def get_metadata(self, file_id: str) -> Optional[StoredFileMetadata]:
        row = await asyncio.to_thread(
            self.db.execute_one,
            "SELECT id, file_name, mime_type, size, related_note_id, created_at FROM files WHERE id = ?",
            (file_id,),
        )
        return StoredFileMetadata(**dict(row)) if row else None

    async def delete(self, file_id: str) -> None:
        await asyncio.to_thread(self.db.execute_write, "DELETE FROM files WHERE id = ?", (file_id,))

    async def files_for_note(self, note_id: str) -> List[StoredFileMetadata]:
        rows = await asyncio.to_thread(
            self.db.execute,
            "SELECT id, file_name, mime_type, size, related_note_id, created_at FROM files "
            "WHERE related_note_id = ? ORDER BY created_at",
            (note_id,),
        )
        return [StoredFileMetadata(**dict(row)) for row in rows]
