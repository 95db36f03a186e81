from __future__ import annotations

import json
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Mapping

if TYPE_CHECKING:
    from .engine import PlaybackPosition

BOOKMARKS_FILENAME = ".readaloud-bookmarks.json"
BOOKMARK_STATE_VERSION = 1
EXCERPT_LIMIT = 160


@dataclass(frozen=True)
class Bookmark:
    bookmark_id: str
    chapter_index: int
    sentence_index: int
    chapter_title: str
    excerpt: str
    added_at: float

    def as_payload(self) -> dict[str, object]:
        return {
            "id": self.bookmark_id,
            "chapter_index": self.chapter_index,
            "sentence_index": self.sentence_index,
            "chapter_title": self.chapter_title,
            "excerpt": self.excerpt,
            "added_at": self.added_at,
        }

    @classmethod
    def from_payload(cls, payload: object) -> "Bookmark | None":
        if not isinstance(payload, Mapping):
            return None
        bookmark_id = payload.get("id")
        chapter_index = payload.get("chapter_index")
        sentence_index = payload.get("sentence_index")
        if not isinstance(bookmark_id, str) or not bookmark_id.strip():
            return None
        if not isinstance(chapter_index, int) or not isinstance(sentence_index, int):
            return None
        chapter_title = payload.get("chapter_title")
        excerpt = payload.get("excerpt")
        added_at = payload.get("added_at")
        return cls(
            bookmark_id=bookmark_id,
            chapter_index=max(0, chapter_index),
            sentence_index=max(0, sentence_index),
            chapter_title=chapter_title if isinstance(chapter_title, str) else "",
            excerpt=excerpt if isinstance(excerpt, str) else "",
            added_at=float(added_at) if isinstance(added_at, (int, float)) else 0.0,
        )


def _bookmark_file(book_dir: Path) -> Path:
    return book_dir / BOOKMARKS_FILENAME


def _load_bookmarks(book_dir: Path) -> list[Bookmark]:
    path = _bookmark_file(book_dir)
    if not path.exists():
        return []
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return []
    if not isinstance(raw, dict) or not isinstance(raw.get("bookmarks"), list):
        return []
    entries: list[Bookmark] = []
    seen_ids: set[str] = set()
    for payload in raw["bookmarks"]:
        bookmark = Bookmark.from_payload(payload)
        if bookmark is None or bookmark.bookmark_id in seen_ids:
            continue
        seen_ids.add(bookmark.bookmark_id)
        entries.append(bookmark)
    return entries


def _save_bookmarks(book_dir: Path, entries: list[Bookmark]) -> None:
    state = {
        "version": BOOKMARK_STATE_VERSION,
        "bookmarks": [entry.as_payload() for entry in entries],
    }
    _bookmark_file(book_dir).write_text(
        json.dumps(state, ensure_ascii=False, indent=2),
        encoding="utf-8",
    )


def add_bookmark(book_dir: Path, position: "PlaybackPosition") -> Bookmark:
    bookmark = Bookmark(
        bookmark_id=uuid.uuid4().hex,
        chapter_index=position.chapter_index,
        sentence_index=position.sentence_index,
        chapter_title=position.chapter_title,
        excerpt=position.excerpt[:EXCERPT_LIMIT],
        added_at=time.time(),
    )
    entries = _load_bookmarks(book_dir)
    entries.append(bookmark)
    _save_bookmarks(book_dir, entries)
    return bookmark


def list_bookmarks(book_dir: Path) -> list[Bookmark]:
    """Return the book's bookmarks, newest first."""
    return sorted(_load_bookmarks(book_dir), key=lambda entry: entry.added_at, reverse=True)


def remove_bookmark(book_dir: Path, bookmark_id: str) -> bool:
    entries = _load_bookmarks(book_dir)
    filtered = [entry for entry in entries if entry.bookmark_id != bookmark_id]
    if len(filtered) == len(entries):
        return False
    _save_bookmarks(book_dir, filtered)
    return True
