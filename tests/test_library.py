from __future__ import annotations

import json
from pathlib import Path

import pytest

from conftest import package_opf, simple_book_files, write_epub
from readaloud import library as library_mod
from readaloud.library import (
    BOOK_ARCHIVE_FILENAME,
    BOOK_METADATA_FILENAME,
    BookNotFoundError,
    BookRecord,
    DuplicateBookError,
    ImportSummary,
    Library,
    import_epub,
    import_epubs,
    list_books,
    progress_label,
    progress_percent,
)


def _book_with_cover(tmp_path: Path, name: str = "covered.epub") -> Path:
    files = simple_book_files([("One", ["Hello there."])])
    manifest = [
        ("nav", "nav.xhtml", "application/xhtml+xml", ' properties="nav"'),
        ("ch1", "Text/ch1.xhtml", "application/xhtml+xml", ""),
        ("cover", "Images/cover.png", "image/png", ' properties="cover-image"'),
    ]
    files["OEBPS/content.opf"] = package_opf(manifest, ["ch1"], title="Covered", author="Ann")
    files["OEBPS/Images/cover.png"] = b"\x89PNG-data"
    return write_epub(tmp_path / name, files)


def test_import_stores_archive_record_and_cover(tmp_path: Path) -> None:
    root = tmp_path / "library"
    epub = _book_with_cover(tmp_path)
    record = import_epub(root, epub)

    book_dir = root / record.book_id
    assert record.book_id == "covered"
    assert (book_dir / BOOK_ARCHIVE_FILENAME).read_bytes() == epub.read_bytes()
    assert (book_dir / "cover.png").read_bytes() == b"\x89PNG-data"
    payload = json.loads((book_dir / BOOK_METADATA_FILENAME).read_text(encoding="utf-8"))
    assert payload["title"] == "Covered"
    assert payload["author"] == "Ann"
    assert payload["filename"] == "covered.epub"
    assert payload["cover"] == "cover.png"
    assert payload["chapter_count"] == 1
    assert payload["chapters"] == [{"spine_index": 0, "href": "OEBPS/Text/ch1.xhtml", "title": "One"}]
    assert payload["last_chapter_index"] == 0
    assert payload["last_sentence_index"] == 0


def test_duplicate_file_name_is_rejected_unless_forced(tmp_path: Path, sample_epub: Path) -> None:
    root = tmp_path / "library"
    first = import_epub(root, sample_epub)
    lib = Library(root)
    lib.save_position(first.book_id, 2, 4)

    with pytest.raises(DuplicateBookError):
        import_epub(root, sample_epub)

    replaced = import_epub(root, sample_epub, force=True)
    assert [r.book_id for r in list_books(root)] == [replaced.book_id]
    assert replaced.last_chapter_index == 0
    assert lib.require_book(replaced.book_id).last_sentence_index == 0


def test_same_stem_gets_unique_directory(tmp_path: Path, sample_epub: Path) -> None:
    root = tmp_path / "library"
    other_dir = tmp_path / "other"
    other_dir.mkdir()
    twin = other_dir / "sample.EPUB"
    twin.write_bytes(sample_epub.read_bytes())
    first = import_epub(root, sample_epub)
    second = import_epub(root, twin)
    assert first.book_id == "sample"
    assert second.book_id == "sample (2)"


def test_import_epubs_summarizes_outcomes(tmp_path: Path, sample_epub: Path) -> None:
    root = tmp_path / "library"
    broken = tmp_path / "broken.epub"
    broken.write_bytes(b"not a zip")
    notes = tmp_path / "notes.txt"
    notes.write_text("skip me", encoding="utf-8")
    seen: list[Path] = []

    summary = import_epubs(root, [sample_epub, notes, broken, sample_epub], on_file=seen.append)

    assert [r.title for r in summary.imported] == ["Sample Book"]
    assert summary.skipped == [sample_epub]
    assert list(summary.failed) == [broken]
    assert seen == [sample_epub, broken, sample_epub]
    assert summary.describe() == "1 book imported · 1 already in library · 1 failed"
    assert ImportSummary().describe() == "Nothing imported"


def test_list_books_sort_modes(tmp_path: Path) -> None:
    root = tmp_path / "library"
    lib = Library(root)
    specs = [
        ("b.epub", "Beta", "Zed", 30.0),
        ("a.epub", "alpha", "", 10.0),
        ("c.epub", "Gamma", "Abe", 20.0),
    ]
    for name, title, author, added in specs:
        files = simple_book_files([("One", ["Text."])])
        manifest = [
            ("nav", "nav.xhtml", "application/xhtml+xml", ' properties="nav"'),
            ("ch1", "Text/ch1.xhtml", "application/xhtml+xml", ""),
        ]
        files["OEBPS/content.opf"] = package_opf(manifest, ["ch1"], title=title, author=author or None)
        record = import_epub(root, write_epub(tmp_path / name, files))
        lib.update_book(record.book_id, added_at=added, author=author)

    assert [r.title for r in lib.list_books("recent")] == ["Beta", "Gamma", "alpha"]
    assert [r.title for r in lib.list_books("title")] == ["alpha", "Beta", "Gamma"]
    assert [r.title for r in lib.list_books("author")] == ["Gamma", "Beta", "alpha"]
    assert [r.title for r in lib.list_books("bogus")] == ["Beta", "Gamma", "alpha"]


def test_progress_label_and_percent() -> None:
    record = BookRecord(book_id="b", title="T", author="A", filename="b.epub", chapter_count=10)
    assert progress_label(record) == "10 chapters"
    assert progress_percent(record) == 0.0
    record.last_chapter_index = 4
    assert progress_label(record) == "Ch. 5 of 10"
    assert progress_percent(record) == 40.0
    record.last_chapter_index = 0
    record.last_sentence_index = 3
    assert progress_label(record) == "Ch. 1 of 10"
    record.chapter_count = 0
    assert progress_label(record) == ""
    assert progress_percent(record) == 0.0


def test_library_store_operations(tmp_path: Path, sample_epub: Path) -> None:
    lib = Library(tmp_path / "library")
    record = lib.import_epub(sample_epub)

    assert lib.get(record.book_id) == sample_epub.read_bytes()
    assert lib.get("missing") is None
    assert [c.title for c in lib.load_chapters(record.book_id)] == ["Opening", "Middle", "Ending"]
    assert lib.load_chapters("missing") == []
    assert lib.cover_path(record.book_id) is None

    lib.save_position(record.book_id, 1, 3)
    stored = lib.load_book(record.book_id)
    assert stored is not None
    assert (stored.last_chapter_index, stored.last_sentence_index) == (1, 3)

    with pytest.raises(BookNotFoundError):
        lib.save_position("missing", 0, 0)
    assert lib.remove_book(record.book_id) is True
    assert lib.remove_book(record.book_id) is False
    assert lib.load_book(record.book_id) is None


def test_book_dir_rejects_paths_outside_library(tmp_path: Path, sample_epub: Path) -> None:
    root = tmp_path / "library"
    lib = Library(root)
    lib.import_epub(sample_epub)
    outside = tmp_path / "elsewhere"
    import_epub(outside, sample_epub)

    for book_id in ("../elsewhere/sample", "", ".", "sample/.."):
        with pytest.raises(BookNotFoundError):
            lib.book_dir(book_id)
    assert lib.remove_book("../elsewhere/sample") is False
    assert (outside / "sample").is_dir()


def test_corrupt_record_is_ignored(tmp_path: Path, sample_epub: Path) -> None:
    root = tmp_path / "library"
    record = import_epub(root, sample_epub)
    (root / record.book_id / BOOK_METADATA_FILENAME).write_text("{broken", encoding="utf-8")
    assert list_books(root) == []
    assert Library(root).load_book(record.book_id) is None


def test_failed_copy_removes_partial_book(tmp_path: Path, sample_epub: Path, monkeypatch) -> None:
    root = tmp_path / "library"

    def fail_copy(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr(library_mod.shutil, "copyfile", fail_copy)
    with pytest.raises(OSError):
        import_epub(root, sample_epub)
    assert list(root.iterdir()) == []
