from __future__ import annotations

import json
import logging
import shutil
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, Mapping, Protocol

from .epub import ChapterDescriptor, CoverImage, MalformedArchiveError, parse_epub

logger = logging.getLogger(__name__)

BOOK_METADATA_FILENAME = ".readaloud-book.json"
BOOK_ARCHIVE_FILENAME = "book.epub"
_COVER_EXTS = {
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
    "image/svg+xml": ".svg",
}
_INVALID_BOOK_CHARS = set('<>:"/\\|?*')
_SORT_MODES = {"recent", "title", "author"}
_ROOT_LOCKS: dict[Path, threading.RLock] = {}
_ROOT_LOCKS_GUARD = threading.Lock()


class BookNotFoundError(LookupError):
    """Raised when a book id has no record in the library."""


class DuplicateBookError(ValueError):
    """Raised when an EPUB with the same file name is already in the library."""


class BlobStore(Protocol):
    def get(self, book_id: str) -> bytes | None:
        ...


class RecordStore(Protocol):
    def load_book(self, book_id: str) -> "BookRecord | None":
        ...

    def load_chapters(self, book_id: str) -> list[ChapterDescriptor]:
        ...

    def save_position(self, book_id: str, chapter_index: int, sentence_index: int) -> None:
        ...


@dataclass
class BookRecord:
    book_id: str
    title: str
    author: str
    filename: str
    file_size: int = 0
    added_at: float = 0.0
    chapter_count: int = 0
    cover: str | None = None
    chapters: list[ChapterDescriptor] = field(default_factory=list)
    last_chapter_index: int = 0
    last_sentence_index: int = 0
    settings: dict[str, object] = field(default_factory=dict)

    def as_payload(self) -> dict[str, object]:
        return {
            "title": self.title,
            "author": self.author,
            "filename": self.filename,
            "file_size": self.file_size,
            "added_at": self.added_at,
            "chapter_count": self.chapter_count,
            "cover": self.cover,
            "chapters": [chapter.as_payload() for chapter in self.chapters],
            "last_chapter_index": self.last_chapter_index,
            "last_sentence_index": self.last_sentence_index,
            "settings": dict(self.settings),
        }

    @classmethod
    def from_payload(cls, book_id: str, payload: object) -> "BookRecord | None":
        if not isinstance(payload, Mapping):
            return None
        title = payload.get("title")
        if not isinstance(title, str):
            return None
        author = payload.get("author")
        filename = payload.get("filename")
        chapters: list[ChapterDescriptor] = []
        raw_chapters = payload.get("chapters")
        if isinstance(raw_chapters, list):
            for entry in raw_chapters:
                if not isinstance(entry, Mapping):
                    continue
                spine_index = entry.get("spine_index")
                href = entry.get("href")
                chapter_title = entry.get("title")
                if not isinstance(spine_index, int) or not isinstance(href, str):
                    continue
                chapters.append(
                    ChapterDescriptor(
                        spine_index=spine_index,
                        href=href,
                        title=chapter_title if isinstance(chapter_title, str) else "",
                    )
                )
        chapters.sort(key=lambda chapter: chapter.spine_index)
        chapter_count = payload.get("chapter_count")
        cover = payload.get("cover")
        settings = payload.get("settings")
        return cls(
            book_id=book_id,
            title=title,
            author=author if isinstance(author, str) else "",
            filename=filename if isinstance(filename, str) else "",
            file_size=_int_field(payload, "file_size"),
            added_at=_float_field(payload, "added_at"),
            chapter_count=chapter_count if isinstance(chapter_count, int) else len(chapters),
            cover=cover if isinstance(cover, str) and cover else None,
            chapters=chapters,
            last_chapter_index=_int_field(payload, "last_chapter_index"),
            last_sentence_index=_int_field(payload, "last_sentence_index"),
            settings=dict(settings) if isinstance(settings, Mapping) else {},
        )


def _int_field(payload: Mapping[str, object], key: str) -> int:
    value = payload.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return max(0, int(value))


def _float_field(payload: Mapping[str, object], key: str) -> float:
    value = payload.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0.0
    return float(value)


@dataclass
class ImportSummary:
    imported: list[BookRecord] = field(default_factory=list)
    skipped: list[Path] = field(default_factory=list)
    failed: dict[Path, str] = field(default_factory=dict)

    def describe(self) -> str:
        parts: list[str] = []
        if self.imported:
            count = len(self.imported)
            parts.append(f"{count} book{'s' if count != 1 else ''} imported")
        if self.skipped:
            parts.append(f"{len(self.skipped)} already in library")
        if self.failed:
            parts.append(f"{len(self.failed)} failed")
        return " · ".join(parts) or "Nothing imported"


def book_metadata_path(book_dir: Path) -> Path:
    return book_dir / BOOK_METADATA_FILENAME


def load_book_record(book_dir: Path) -> BookRecord | None:
    path = book_metadata_path(book_dir)
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return None
    return BookRecord.from_payload(book_dir.name, payload)


def write_book_record(book_dir: Path, record: BookRecord) -> Path:
    path = book_metadata_path(book_dir)
    tmp_path = path.with_name(path.name + ".tmp")
    tmp_path.write_text(
        json.dumps(record.as_payload(), ensure_ascii=False, indent=2),
        encoding="utf-8",
    )
    tmp_path.replace(path)
    return path


def is_book_dir(path: Path) -> bool:
    return path.is_dir() and book_metadata_path(path).is_file()


def _derive_book_dir_name(filename: str) -> str:
    stem = Path(Path(filename or "book").name).stem.strip() or "book"
    cleaned_chars: list[str] = []
    for ch in stem:
        if ch in _INVALID_BOOK_CHARS:
            cleaned_chars.append("_")
        elif ord(ch) < 32:
            continue
        else:
            cleaned_chars.append(ch)
    cleaned = "".join(cleaned_chars).strip(" .")
    return (cleaned or "book")[:120]


def _unique_book_dir(root: Path, filename: str) -> Path:
    base = _derive_book_dir_name(filename)
    candidate = root / base
    suffix = 2
    while candidate.exists():
        candidate = root / f"{base} ({suffix})"
        suffix += 1
    return candidate


def _write_cover(book_dir: Path, cover: CoverImage | None) -> str | None:
    if cover is None:
        return None
    ext = _COVER_EXTS.get((cover.media_type or "").lower()) or Path(cover.path).suffix.lower() or ".jpg"
    name = f"cover{ext}"
    (book_dir / name).write_bytes(cover.data)
    return name


def _iter_book_dirs(root: Path) -> Iterable[Path]:
    if not root.is_dir():
        return []
    return sorted(entry for entry in root.iterdir() if is_book_dir(entry))


def find_book_by_filename(root: Path, filename: str) -> BookRecord | None:
    for book_dir in _iter_book_dirs(root):
        record = load_book_record(book_dir)
        if record is not None and record.filename == filename:
            return record
    return None


def import_epub(root: Path, epub_path: Path, *, force: bool = False) -> BookRecord:
    """
    Parse an EPUB and store it in the library with its chapter list.

    Playback position starts at the beginning. A book whose file name is
    already present raises DuplicateBookError unless ``force`` is set, in
    which case the stored book is replaced wholesale.
    """
    epub_path = Path(epub_path)
    root.mkdir(parents=True, exist_ok=True)
    existing = find_book_by_filename(root, epub_path.name)
    if existing is not None and not force:
        raise DuplicateBookError(f"{epub_path.name} is already in the library")

    parsed = parse_epub(epub_path)
    if existing is not None:
        remove_book(root, existing.book_id)
    book_dir = _unique_book_dir(root, epub_path.name)
    book_dir.mkdir(parents=True)
    try:
        shutil.copyfile(epub_path, book_dir / BOOK_ARCHIVE_FILENAME)
        cover_name = _write_cover(book_dir, parsed.cover)
        record = BookRecord(
            book_id=book_dir.name,
            title=parsed.title,
            author=parsed.author,
            filename=epub_path.name,
            file_size=epub_path.stat().st_size,
            added_at=time.time(),
            chapter_count=len(parsed.chapters),
            cover=cover_name,
            chapters=list(parsed.chapters),
        )
        write_book_record(book_dir, record)
    except OSError:
        shutil.rmtree(book_dir, ignore_errors=True)
        raise
    logger.debug("Imported %s as %s (%d chapters)", epub_path.name, record.book_id, record.chapter_count)
    return record


def import_epubs(
    root: Path,
    paths: Iterable[Path],
    *,
    force: bool = False,
    on_file: Callable[[Path], None] | None = None,
) -> ImportSummary:
    summary = ImportSummary()
    for path in paths:
        path = Path(path)
        if path.suffix.lower() != ".epub":
            continue
        try:
            summary.imported.append(import_epub(root, path, force=force))
        except DuplicateBookError:
            summary.skipped.append(path)
        except (MalformedArchiveError, OSError) as exc:
            logger.warning("Failed to import %s: %s", path.name, exc)
            summary.failed[path] = str(exc)
        if on_file is not None:
            on_file(path)
    return summary


def list_books(root: Path, mode: str = "recent") -> list[BookRecord]:
    normalized_mode = mode.lower().strip()
    if normalized_mode not in _SORT_MODES:
        normalized_mode = "recent"
    records = [
        record
        for record in (load_book_record(book_dir) for book_dir in _iter_book_dirs(root))
        if record is not None
    ]
    if normalized_mode == "title":
        records.sort(key=lambda r: (r.title.casefold(), r.book_id.casefold()))
    elif normalized_mode == "author":
        records.sort(
            key=lambda r: (
                0 if r.author else 1,
                r.author.casefold(),
                r.title.casefold(),
                r.book_id.casefold(),
            )
        )
    else:
        records.sort(key=lambda r: (-r.added_at, r.book_id.casefold()))
    return records


def remove_book(root: Path, book_id: str) -> bool:
    book_dir = root / book_id
    if not is_book_dir(book_dir):
        return False
    shutil.rmtree(book_dir)
    return True


def progress_label(record: BookRecord) -> str:
    if record.chapter_count <= 0:
        return ""
    if record.last_chapter_index > 0 or record.last_sentence_index > 0:
        return f"Ch. {record.last_chapter_index + 1} of {record.chapter_count}"
    return f"{record.chapter_count} chapters"


def progress_percent(record: BookRecord) -> float:
    if record.chapter_count <= 0:
        return 0.0
    return min(100.0, record.last_chapter_index / record.chapter_count * 100.0)


def _lock_for_root(root: Path) -> threading.RLock:
    """Every Library on the same directory shares one lock."""
    key = root.resolve()
    with _ROOT_LOCKS_GUARD:
        lock = _ROOT_LOCKS.get(key)
        if lock is None:
            lock = _ROOT_LOCKS[key] = threading.RLock()
        return lock


class Library:
    """
    Directory-backed archive and record store.

    Each book lives in ``<root>/<book_id>/`` with the original EPUB and a JSON
    record holding metadata, chapters, playback position and settings.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root).expanduser()
        self._lock = _lock_for_root(self.root)

    def book_dir(self, book_id: str) -> Path:
        candidate = (self.root / book_id).resolve()
        try:
            candidate.relative_to(self.root.resolve())
        except ValueError as exc:
            raise BookNotFoundError(book_id) from exc
        if candidate == self.root.resolve() or not is_book_dir(candidate):
            raise BookNotFoundError(book_id)
        return candidate

    def get(self, book_id: str) -> bytes | None:
        try:
            return (self.book_dir(book_id) / BOOK_ARCHIVE_FILENAME).read_bytes()
        except (BookNotFoundError, OSError):
            return None

    def load_book(self, book_id: str) -> BookRecord | None:
        try:
            return load_book_record(self.book_dir(book_id))
        except BookNotFoundError:
            return None

    def require_book(self, book_id: str) -> BookRecord:
        record = self.load_book(book_id)
        if record is None:
            raise BookNotFoundError(book_id)
        return record

    def load_chapters(self, book_id: str) -> list[ChapterDescriptor]:
        record = self.load_book(book_id)
        return list(record.chapters) if record is not None else []

    def update_book(self, book_id: str, **changes: object) -> BookRecord:
        with self._lock:
            book_dir = self.book_dir(book_id)
            record = load_book_record(book_dir)
            if record is None:
                raise BookNotFoundError(book_id)
            for key, value in changes.items():
                setattr(record, key, value)
            write_book_record(book_dir, record)
            return record

    def update_settings(self, book_id: str, patch: Mapping[str, object]) -> BookRecord:
        with self._lock:
            record = self.require_book(book_id)
            return self.update_book(book_id, settings={**record.settings, **patch})

    def save_position(self, book_id: str, chapter_index: int, sentence_index: int) -> None:
        self.update_book(
            book_id,
            last_chapter_index=max(0, int(chapter_index)),
            last_sentence_index=max(0, int(sentence_index)),
        )

    def cover_path(self, book_id: str) -> Path | None:
        record = self.load_book(book_id)
        if record is None or not record.cover:
            return None
        path = self.book_dir(book_id) / record.cover
        return path if path.is_file() else None

    def list_books(self, mode: str = "recent") -> list[BookRecord]:
        return list_books(self.root, mode)

    def import_epub(self, epub_path: Path, *, force: bool = False) -> BookRecord:
        with self._lock:
            return import_epub(self.root, epub_path, force=force)

    def remove_book(self, book_id: str) -> bool:
        with self._lock:
            try:
                book_dir = self.book_dir(book_id)
            except BookNotFoundError:
                return False
            return remove_book(book_dir.parent, book_dir.name)
