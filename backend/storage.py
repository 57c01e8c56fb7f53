"""Note store interface with in-memory and JSON-file implementations."""

from __future__ import annotations

import json
import os
import threading
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional
from urllib.parse import quote, unquote

import structlog

from models import Note

log = structlog.get_logger(__name__)


class NoteStore(ABC):
    """Durable keyed storage for notes. The vector index is rebuilt from it."""

    @abstractmethod
    def load_all_for_owner(self, owner_id: str) -> List[Note]:
        """Every note of ``owner_id``, ordered by id."""

    @abstractmethod
    def get(self, owner_id: str, note_id: str) -> Optional[Note]:
        """One note, or None if it does not exist."""

    @abstractmethod
    def save(self, note: Note) -> None:
        """Insert or replace a note."""

    @abstractmethod
    def delete(self, owner_id: str, note_id: str) -> bool:
        """Remove a note. Returns False when it did not exist."""


class InMemoryNoteStore(NoteStore):
    def __init__(self):
        self._notes: Dict[str, Dict[str, Note]] = {}
        self._lock = threading.Lock()

    def load_all_for_owner(self, owner_id: str) -> List[Note]:
        with self._lock:
            notes = self._notes.get(owner_id, {})
            return [notes[note_id] for note_id in sorted(notes)]

    def get(self, owner_id: str, note_id: str) -> Optional[Note]:
        with self._lock:
            return self._notes.get(owner_id, {}).get(note_id)

    def save(self, note: Note) -> None:
        with self._lock:
            self._notes.setdefault(note.owner_id, {})[note.id] = note

    def delete(self, owner_id: str, note_id: str) -> bool:
        with self._lock:
            return self._notes.get(owner_id, {}).pop(note_id, None) is not None


class JsonNoteStore(NoteStore):
    """One JSON document per note under ``root/<owner>/<note>.json``."""

    def __init__(self, root: Optional[Path] = None):
        base_dir = Path(root) if root else Path(__file__).resolve().parent / "storage" / "notes"
        base_dir.mkdir(parents=True, exist_ok=True)
        self.notes_dir = base_dir
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def load_all_for_owner(self, owner_id: str) -> List[Note]:
        owner_dir = self._owner_dir(owner_id)
        if not owner_dir.is_dir():
            return []

        notes: List[Note] = []
        for path in sorted(owner_dir.glob("*.json")):
            try:
                notes.append(self._read_note(path, owner_id))
            except (OSError, ValueError, KeyError, TypeError) as exc:
                log.warning("note_unreadable", path=str(path), error=str(exc))
        notes.sort(key=lambda note: note.id)
        return notes

    def get(self, owner_id: str, note_id: str) -> Optional[Note]:
        path = self._note_path(owner_id, note_id)
        if not path.exists():
            return None
        return self._read_note(path, owner_id)

    def save(self, note: Note) -> None:
        payload = {
            "id": note.id,
            "owner_id": note.owner_id,
            "text": note.text,
            "created_at": note.created_at,
            "updated_at": note.updated_at,
            "tags": sorted(note.tags),
        }
        path = self._note_path(note.owner_id, note.id)
        with self._lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_suffix(".json.tmp")
            with open(tmp_path, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2)
            os.replace(tmp_path, path)

    def delete(self, owner_id: str, note_id: str) -> bool:
        path = self._note_path(owner_id, note_id)
        with self._lock:
            try:
                path.unlink()
            except FileNotFoundError:
                return False
        return True

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _owner_dir(self, owner_id: str) -> Path:
        return self.notes_dir / quote(owner_id, safe="")

    def _note_path(self, owner_id: str, note_id: str) -> Path:
        return self._owner_dir(owner_id) / f"{quote(note_id, safe='')}.json"

    def _read_note(self, path: Path, owner_id: str) -> Note:
        with open(path, "r", encoding="utf-8") as handle:
            raw = json.load(handle)

        created_at = float(raw.get("created_at", time.time()))
        updated_at = float(raw.get("updated_at", created_at))
        return Note(
            id=raw.get("id") or unquote(path.stem),
            owner_id=raw.get("owner_id") or owner_id,
            text=raw["text"],
            created_at=created_at,
            updated_at=max(updated_at, created_at),
            tags=frozenset(raw.get("tags", [])),
        )
