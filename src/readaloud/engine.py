"""
Sentence-by-sentence playback over a stored book.

The engine owns a cursor (chapter, sentence) and a state machine. Control
operations are plain methods called on the event loop thread; speaking runs
in an ``asyncio.Task`` that re-checks the state after every await, so a
cancelled or superseded loop exits without touching the cursor.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from .content import EMPTY_CHAPTER_SENTENCE, ChapterLoadError, load_chapter_sentences
from .epub import ChapterDescriptor
from .library import BlobStore, BookNotFoundError, RecordStore
from .settings import PlaybackSettings
from .speech import SpeechBackend, SpeechCancelled

logger = logging.getLogger(__name__)

PERSIST_EVERY = 5

SentenceLoader = Callable[[BlobStore, str, str], list[str]]
SettingsProvider = Callable[[str], PlaybackSettings]


class PlaybackState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    STOPPED = "stopped"
    PLAYING = "playing"
    PAUSED = "paused"


@dataclass(frozen=True)
class PlaybackUpdate:
    state: PlaybackState
    chapter_index: int
    sentence_index: int
    total_chapters: int
    chapter_title: str
    current_sentence: str

    def as_payload(self) -> dict[str, object]:
        return {
            "state": self.state.value,
            "chapIdx": self.chapter_index,
            "sentIdx": self.sentence_index,
            "totalChapters": self.total_chapters,
            "chapterTitle": self.chapter_title,
            "currentSentence": self.current_sentence,
        }


@dataclass(frozen=True)
class PlaybackPosition:
    chapter_index: int
    sentence_index: int
    chapter_title: str
    excerpt: str

    def as_payload(self) -> dict[str, object]:
        return {
            "chapter_index": self.chapter_index,
            "sentence_index": self.sentence_index,
            "chapter_title": self.chapter_title,
            "excerpt": self.excerpt,
        }


def _default_settings(_book_id: str) -> PlaybackSettings:
    return PlaybackSettings()


class PlaybackEngine:
    def __init__(
        self,
        records: RecordStore,
        blobs: BlobStore,
        speech: SpeechBackend,
        on_update: Callable[[PlaybackUpdate], None] | None = None,
        settings: SettingsProvider | None = None,
        sentence_loader: SentenceLoader | None = None,
    ) -> None:
        self._records = records
        self._blobs = blobs
        self._speech = speech
        self._on_update = on_update
        self._settings = settings or _default_settings
        self._load_sentences = sentence_loader or load_chapter_sentences
        self.state = PlaybackState.IDLE
        self.book_id: str | None = None
        self.chapters: list[ChapterDescriptor] = []
        self.chapter_index = 0
        self.sentence_index = 0
        self._cache: dict[int, list[str]] = {}
        self._pending: dict[int, asyncio.Task[list[str]]] = {}
        self._generation = 0
        self._session = 0
        self._loops: set[asyncio.Task[None]] = set()
        self._background: set[asyncio.Task[None]] = set()
        self._persist_lock = threading.Lock()
        self._persist_requested = 0
        self._persist_written = 0

    # Lifecycle

    async def open(self, book_id: str) -> PlaybackUpdate:
        """
        Load a book's chapters and restore its saved position.

        Raises BookNotFoundError for an unknown book, leaving the engine idle.
        """
        self._cancel_speech()
        self._session += 1
        session = self._session
        self._cache.clear()
        self._pending.clear()
        self.book_id = None
        self.chapters = []
        self.chapter_index = 0
        self.sentence_index = 0
        self.state = PlaybackState.LOADING
        self._emit()

        try:
            record = await asyncio.to_thread(self._records.load_book, book_id)
            if record is None:
                raise BookNotFoundError(book_id)
            chapters = await asyncio.to_thread(self._records.load_chapters, book_id)
        except Exception:
            if session == self._session:
                self.state = PlaybackState.IDLE
                self._emit()
            raise
        if session != self._session:
            return self.snapshot()

        self.book_id = book_id
        self.chapters = sorted(chapters, key=lambda chapter: chapter.spine_index)
        last_chapter = max(0, len(self.chapters) - 1)
        self.chapter_index = max(0, min(record.last_chapter_index, last_chapter))
        self.sentence_index = max(0, record.last_sentence_index)
        self.state = PlaybackState.STOPPED
        return self._emit()

    def destroy(self) -> None:
        self._cancel_speech()
        self._session += 1
        self.state = PlaybackState.IDLE
        self._on_update = None

    async def join(self) -> None:
        while self._loops or self._background:
            await asyncio.gather(*self._loops, *self._background, return_exceptions=True)

    # Controls

    def play(self) -> PlaybackUpdate:
        if self.state not in (PlaybackState.PAUSED, PlaybackState.STOPPED):
            return self.snapshot()
        self.state = PlaybackState.PLAYING
        update = self._emit()
        self._start_loop()
        return update

    def pause(self) -> PlaybackUpdate:
        if self.state is not PlaybackState.PLAYING:
            return self.snapshot()
        self._cancel_speech()
        self.state = PlaybackState.PAUSED
        return self._emit()

    def stop(self) -> PlaybackUpdate:
        if not self._has_book():
            return self.snapshot()
        self._cancel_speech()
        self.state = PlaybackState.STOPPED
        update = self._emit()
        self._persist()
        return update

    def jump_to(self, chapter_index: int, sentence_index: int) -> PlaybackUpdate:
        if not self._has_book():
            return self.snapshot()
        return self._move(self._clamp_chapter(chapter_index), max(0, sentence_index))

    def restart(self) -> PlaybackUpdate:
        if not self._has_book():
            return self.snapshot()
        return self._move(0, 0)

    def rewind(self) -> PlaybackUpdate:
        if not self._has_book():
            return self.snapshot()
        return self._move(self.chapter_index, 0)

    def forward(self) -> PlaybackUpdate:
        if not self._has_book() or not self.chapters:
            return self.snapshot()
        if self.chapter_index < len(self.chapters) - 1:
            return self._move(self.chapter_index + 1, 0)
        return self._move(self.chapter_index, self.sentence_index)

    def save_position(self) -> None:
        self._persist()

    def get_position(self) -> PlaybackPosition:
        return PlaybackPosition(
            chapter_index=self.chapter_index,
            sentence_index=self.sentence_index,
            chapter_title=self._chapter_title(),
            excerpt=self._current_sentence(),
        )

    def snapshot(self) -> PlaybackUpdate:
        return PlaybackUpdate(
            state=self.state,
            chapter_index=self.chapter_index,
            sentence_index=self.sentence_index,
            total_chapters=len(self.chapters),
            chapter_title=self._chapter_title(),
            current_sentence=self._current_sentence(),
        )

    # Internals

    def _has_book(self) -> bool:
        return self.state not in (PlaybackState.IDLE, PlaybackState.LOADING)

    def _clamp_chapter(self, chapter_index: int) -> int:
        return max(0, min(chapter_index, len(self.chapters) - 1))

    def _chapter_title(self) -> str:
        if 0 <= self.chapter_index < len(self.chapters):
            return self.chapters[self.chapter_index].title
        return ""

    def _current_sentence(self) -> str:
        sentences = self._cache.get(self.chapter_index)
        if sentences is None or not 0 <= self.sentence_index < len(sentences):
            return ""
        return sentences[self.sentence_index]

    def _emit(self) -> PlaybackUpdate:
        update = self.snapshot()
        if self._on_update is not None:
            self._on_update(update)
        return update

    def _cancel_speech(self) -> None:
        self._generation += 1
        self._speech.cancel()

    def _move(self, chapter_index: int, sentence_index: int) -> PlaybackUpdate:
        was_playing = self.state is PlaybackState.PLAYING
        self._cancel_speech()
        self.chapter_index = chapter_index
        self.sentence_index = sentence_index
        update = self._emit()
        if was_playing:
            self._start_loop()
        return update

    def _persist(self) -> None:
        if self.book_id is None:
            return
        self._write_position(self._next_persist(), self.book_id, self.chapter_index, self.sentence_index)

    async def _persist_in_thread(self) -> None:
        if self.book_id is None:
            return
        await asyncio.to_thread(
            self._write_position,
            self._next_persist(),
            self.book_id,
            self.chapter_index,
            self.sentence_index,
        )

    def _next_persist(self) -> int:
        self._persist_requested += 1
        return self._persist_requested

    def _write_position(self, seq: int, book_id: str, chapter_index: int, sentence_index: int) -> None:
        # A checkpoint finishing in a worker thread must not overwrite a newer cursor.
        with self._persist_lock:
            if seq < self._persist_written:
                return
            self._persist_written = seq
            try:
                self._records.save_position(book_id, chapter_index, sentence_index)
            except (OSError, LookupError) as exc:
                logger.warning("Failed to save position for %s: %s", book_id, exc)

    def _start_loop(self) -> None:
        task = asyncio.get_running_loop().create_task(self._advance(self._generation))
        self._loops.add(task)
        task.add_done_callback(self._loops.discard)

    def _is_current(self, generation: int) -> bool:
        return self.state is PlaybackState.PLAYING and generation == self._generation

    async def _advance(self, generation: int) -> None:
        try:
            await self._run(generation)
        except Exception:
            logger.exception("Playback loop failed")
            if self._is_current(generation):
                self.state = PlaybackState.STOPPED
                self._emit()

    async def _run(self, generation: int) -> None:
        while self._is_current(generation):
            if not self.chapters:
                self.state = PlaybackState.STOPPED
                self._emit()
                return
            has_next = self.chapter_index < len(self.chapters) - 1
            try:
                sentences = await self._sentences(self.chapter_index)
            except ChapterLoadError as exc:
                if not self._is_current(generation):
                    return
                logger.warning("Skipping chapter %d: %s", self.chapter_index, exc)
                if has_next:
                    self.chapter_index += 1
                    self.sentence_index = 0
                    self._emit()
                    continue
                self.state = PlaybackState.STOPPED
                self._emit()
                return
            if not self._is_current(generation):
                return

            if self.sentence_index >= len(sentences):
                if has_next:
                    self.chapter_index += 1
                    self.sentence_index = 0
                    self._emit()
                    continue
                self.state = PlaybackState.STOPPED
                self.chapter_index = 0
                self.sentence_index = 0
                self._emit()
                await self._persist_in_thread()
                return

            if self.sentence_index == 0 and has_next:
                self._prefetch(self.chapter_index + 1)
            text = sentences[self.sentence_index]
            try:
                settings = await asyncio.to_thread(self._settings, self.book_id or "")
                if not self._is_current(generation):
                    return
                await self._speech.speak(text, settings)
            except SpeechCancelled:
                return
            except Exception as exc:
                if not self._is_current(generation):
                    return
                logger.warning(
                    "Skipping sentence %d of chapter %d: %s",
                    self.sentence_index,
                    self.chapter_index,
                    exc,
                )
                self.sentence_index += 1
                self._emit()
                continue
            if not self._is_current(generation):
                return
            self.sentence_index += 1
            self._emit()
            if self.sentence_index % PERSIST_EVERY == 0:
                await self._persist_in_thread()

    async def _sentences(self, chapter_index: int) -> list[str]:
        cached = self._cache.get(chapter_index)
        if cached is not None:
            return cached
        task = self._pending.get(chapter_index)
        if task is None:
            chapter = self.chapters[chapter_index]
            task = asyncio.get_running_loop().create_task(
                self._load(chapter_index, chapter.href, self.book_id or "", self._session)
            )
            self._pending[chapter_index] = task
            task.add_done_callback(
                lambda done, index=chapter_index: self._forget_pending(index, done)
            )
        return await asyncio.shield(task)

    def _forget_pending(self, chapter_index: int, task: asyncio.Task[list[str]]) -> None:
        if self._pending.get(chapter_index) is task:
            del self._pending[chapter_index]

    async def _load(self, chapter_index: int, href: str, book_id: str, session: int) -> list[str]:
        try:
            sentences = await asyncio.to_thread(self._load_sentences, self._blobs, book_id, href)
        except ChapterLoadError:
            raise
        except Exception as exc:
            raise ChapterLoadError(f"Failed to load chapter {href}: {exc}") from exc
        if not sentences:
            sentences = [EMPTY_CHAPTER_SENTENCE]
        if session == self._session:
            self._cache[chapter_index] = sentences
        return sentences

    def _prefetch(self, chapter_index: int) -> None:
        if chapter_index in self._cache or chapter_index in self._pending:
            return
        task = asyncio.get_running_loop().create_task(self._prefetch_quietly(chapter_index))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _prefetch_quietly(self, chapter_index: int) -> None:
        try:
            await self._sentences(chapter_index)
        except Exception as exc:
            logger.debug("Prefetch of chapter %d failed: %s", chapter_index, exc)
