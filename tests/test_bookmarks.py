from __future__ import annotations

import json
from pathlib import Path

from readaloud import bookmarks as bookmarks_mod
from readaloud.bookmarks import (
    BOOKMARKS_FILENAME,
    EXCERPT_LIMIT,
    add_bookmark,
    list_bookmarks,
    remove_bookmark,
)
from readaloud.engine import PlaybackPosition


def _clock(monkeypatch, *values: float) -> None:
    stamps = iter(values)
    monkeypatch.setattr(bookmarks_mod.time, "time", lambda: next(stamps))


def test_bookmarks_are_listed_newest_first(tmp_path: Path, monkeypatch) -> None:
    _clock(monkeypatch, 100.0, 200.0)
    first = add_bookmark(tmp_path, PlaybackPosition(0, 1, "One", "First line."))
    second = add_bookmark(tmp_path, PlaybackPosition(2, 0, "Three", "Later line."))

    listed = list_bookmarks(tmp_path)
    assert [b.bookmark_id for b in listed] == [second.bookmark_id, first.bookmark_id]
    assert listed[1].as_payload() == {
        "id": first.bookmark_id,
        "chapter_index": 0,
        "sentence_index": 1,
        "chapter_title": "One",
        "excerpt": "First line.",
        "added_at": 100.0,
    }
    state = json.loads((tmp_path / BOOKMARKS_FILENAME).read_text(encoding="utf-8"))
    assert state["version"] == 1
    assert len(state["bookmarks"]) == 2


def test_excerpt_is_truncated(tmp_path: Path) -> None:
    bookmark = add_bookmark(tmp_path, PlaybackPosition(0, 0, "One", "x" * 500))
    assert len(bookmark.excerpt) == EXCERPT_LIMIT
    assert list_bookmarks(tmp_path)[0].excerpt == "x" * EXCERPT_LIMIT


def test_remove_bookmark(tmp_path: Path) -> None:
    bookmark = add_bookmark(tmp_path, PlaybackPosition(0, 0, "One", "Line."))
    assert remove_bookmark(tmp_path, "unknown") is False
    assert remove_bookmark(tmp_path, bookmark.bookmark_id) is True
    assert list_bookmarks(tmp_path) == []


def test_unreadable_bookmark_file_is_empty(tmp_path: Path) -> None:
    assert list_bookmarks(tmp_path) == []
    path = tmp_path / BOOKMARKS_FILENAME
    path.write_text("{not json", encoding="utf-8")
    assert list_bookmarks(tmp_path) == []
    path.write_text(
        json.dumps(
            {
                "version": 1,
                "bookmarks": [
                    {"id": "a", "chapter_index": 1, "sentence_index": 2},
                    {"id": "a", "chapter_index": 3, "sentence_index": 4},
                    {"id": "b", "chapter_index": "x", "sentence_index": 0},
                ],
            }
        ),
        encoding="utf-8",
    )
    entries = list_bookmarks(tmp_path)
    assert [(b.bookmark_id, b.chapter_index, b.sentence_index) for b in entries] == [("a", 1, 2)]
