from __future__ import annotations

import logging
import tempfile
import threading
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from fastapi import Body, FastAPI, File, HTTPException, Query, UploadFile
from fastapi.responses import FileResponse, JSONResponse, Response

from .bookmarks import add_bookmark, list_bookmarks, remove_bookmark
from .engine import PlaybackEngine, PlaybackPosition
from .epub import MalformedArchiveError, get_epub_cover
from .library import (
    BookNotFoundError,
    BookRecord,
    DuplicateBookError,
    Library,
    progress_label,
    progress_percent,
)
from .settings import load_settings, save_settings
from .speech import (
    DEFAULT_ENGINE_URL,
    DEFAULT_SPEAKER,
    SpeechBackend,
    VoiceVoxClient,
    VoiceVoxSpeaker,
    normalize_base_url,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WebConfig:
    root: Path
    engine_url: str = DEFAULT_ENGINE_URL
    speaker: int = DEFAULT_SPEAKER
    timeout: float = 30.0
    poll_interval: float = 0.05


SpeechFactory = Callable[[WebConfig], SpeechBackend]

_SESSION_ACTIONS = ("play", "pause", "stop", "restart", "rewind", "forward", "save")


def voicevox_speaker(config: WebConfig) -> SpeechBackend:
    client = VoiceVoxClient(
        normalize_base_url(config.engine_url),
        speaker_id=config.speaker,
        timeout=config.timeout,
    )
    return VoiceVoxSpeaker(client, poll_interval=config.poll_interval)


def _book_payload(record: BookRecord) -> dict[str, object]:
    payload: dict[str, object] = {
        "id": record.book_id,
        "title": record.title,
        "author": record.author,
        "filename": record.filename,
        "chapter_count": record.chapter_count,
        "added_at": record.added_at,
        "last_chapter_index": record.last_chapter_index,
        "last_sentence_index": record.last_sentence_index,
        "progress_label": progress_label(record),
        "progress_percent": progress_percent(record),
    }
    if record.cover:
        payload["cover_url"] = f"/api/books/{record.book_id}/cover"
    return payload


def _int_field(payload: dict[str, object], key: str) -> int:
    value = payload.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        raise HTTPException(status_code=400, detail=f"{key} must be an integer.")
    return value


def create_app(config: WebConfig, *, speech_factory: SpeechFactory | None = None) -> FastAPI:
    root = config.root.expanduser().resolve()
    root.mkdir(parents=True, exist_ok=True)

    @asynccontextmanager
    async def _lifespan(_app: FastAPI):
        yield
        _close_session()

    app = FastAPI(title="readaloud", lifespan=_lifespan)
    app.state.config = config
    app.state.root = root
    app.state.engine = None
    app.state.speech = None

    library = Library(root)
    bookmark_lock = threading.Lock()
    make_speech = speech_factory or voicevox_speaker

    def _require_book(book_id: str) -> BookRecord:
        try:
            return library.require_book(book_id)
        except BookNotFoundError as exc:
            raise HTTPException(status_code=404, detail="Book not found") from exc

    def _engine() -> PlaybackEngine:
        if app.state.engine is None:
            app.state.speech = make_speech(config)
            app.state.engine = PlaybackEngine(
                library,
                library,
                app.state.speech,
                settings=lambda book_id: load_settings(root, book_id),
            )
        return app.state.engine

    def _open_engine() -> PlaybackEngine:
        engine = app.state.engine
        if engine is None or engine.book_id is None:
            raise HTTPException(status_code=409, detail="No book is open.")
        return engine

    def _discard_engine() -> None:
        engine = app.state.engine
        speech = app.state.speech
        app.state.engine = None
        app.state.speech = None
        if engine is not None:
            engine.destroy()
        close = getattr(speech, "close", None)
        if callable(close):
            close()

    def _close_session() -> None:
        engine = app.state.engine
        if engine is not None:
            engine.save_position()
        _discard_engine()

    @app.get("/api/books")
    def api_books(sort: str = Query("recent")) -> JSONResponse:
        books = [_book_payload(record) for record in library.list_books(sort)]
        return JSONResponse({"books": books})

    @app.post("/api/books")
    async def api_import_book(
        file: UploadFile = File(...),
        force: bool = Query(False),
    ) -> JSONResponse:
        filename = Path(file.filename or "upload.epub").name
        if Path(filename).suffix.lower() != ".epub":
            raise HTTPException(status_code=400, detail="Only .epub files are supported.")
        with tempfile.TemporaryDirectory(prefix="readaloud-upload-") as tmp:
            temp_path = Path(tmp) / filename
            try:
                with temp_path.open("wb") as destination:
                    while True:
                        chunk = await file.read(1024 * 1024)
                        if not chunk:
                            break
                        destination.write(chunk)
            finally:
                await file.close()
            try:
                record = library.import_epub(temp_path, force=force)
            except DuplicateBookError as exc:
                raise HTTPException(status_code=409, detail=str(exc)) from exc
            except MalformedArchiveError as exc:
                raise HTTPException(status_code=400, detail=str(exc)) from exc
        logger.info("Imported %s as %s", filename, record.book_id)
        return JSONResponse({"book": _book_payload(record)})

    @app.delete("/api/books/{book_id}")
    async def api_delete_book(book_id: str) -> JSONResponse:
        _require_book(book_id)
        engine = app.state.engine
        if engine is not None and engine.book_id == book_id:
            _discard_engine()
        library.remove_book(book_id)
        logger.info("Removed %s", book_id)
        return JSONResponse({"removed": book_id})

    @app.get("/api/books/{book_id}/chapters")
    def api_chapters(book_id: str) -> JSONResponse:
        record = _require_book(book_id)
        chapters = [
            {"index": idx, **chapter.as_payload()} for idx, chapter in enumerate(record.chapters)
        ]
        return JSONResponse({"book": _book_payload(record), "chapters": chapters})

    @app.get("/api/books/{book_id}/cover")
    def api_cover(book_id: str) -> Response:
        _require_book(book_id)
        cover = library.cover_path(book_id)
        if cover is not None:
            return FileResponse(cover)
        # Stored cover file missing: read it straight from the archive.
        data = library.get(book_id)
        embedded = get_epub_cover(data) if data is not None else None
        if embedded is None:
            raise HTTPException(status_code=404, detail="Cover not found")
        return Response(
            content=embedded.data,
            media_type=embedded.media_type or "application/octet-stream",
        )

    @app.get("/api/books/{book_id}/bookmarks")
    def api_bookmarks(book_id: str) -> JSONResponse:
        _require_book(book_id)
        with bookmark_lock:
            entries = list_bookmarks(library.book_dir(book_id))
        return JSONResponse({"bookmarks": [entry.as_payload() for entry in entries]})

    @app.post("/api/books/{book_id}/bookmarks")
    def api_add_bookmark(
        book_id: str,
        payload: dict[str, object] | None = Body(None),
    ) -> JSONResponse:
        record = _require_book(book_id)
        if payload is None:
            payload = {}
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="Invalid payload.")
        engine = app.state.engine
        if "chapter_index" in payload or "sentence_index" in payload:
            chapter_index = _int_field(payload, "chapter_index")
            sentence_index = _int_field(payload, "sentence_index")
            if not 0 <= chapter_index < max(1, len(record.chapters)) or sentence_index < 0:
                raise HTTPException(status_code=400, detail="Position out of range.")
            excerpt = payload.get("excerpt")
            position = PlaybackPosition(
                chapter_index=chapter_index,
                sentence_index=sentence_index,
                chapter_title=record.chapters[chapter_index].title if record.chapters else "",
                excerpt=excerpt if isinstance(excerpt, str) else "",
            )
        elif engine is not None and engine.book_id == book_id:
            position = engine.get_position()
        else:
            raise HTTPException(
                status_code=400, detail="chapter_index and sentence_index are required."
            )
        with bookmark_lock:
            bookmark = add_bookmark(library.book_dir(book_id), position)
        return JSONResponse({"bookmark": bookmark.as_payload()})

    @app.delete("/api/books/{book_id}/bookmarks/{bookmark_id}")
    def api_delete_bookmark(book_id: str, bookmark_id: str) -> JSONResponse:
        _require_book(book_id)
        with bookmark_lock:
            removed = remove_bookmark(library.book_dir(book_id), bookmark_id)
        if not removed:
            raise HTTPException(status_code=404, detail="Bookmark not found.")
        return JSONResponse({"removed": bookmark_id})

    @app.get("/api/settings")
    def api_settings() -> JSONResponse:
        return JSONResponse({"settings": load_settings(root).as_payload()})

    @app.post("/api/settings")
    def api_update_settings(payload: dict[str, object] = Body(...)) -> JSONResponse:
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="Invalid payload.")
        return JSONResponse({"settings": save_settings(root, payload).as_payload()})

    @app.get("/api/books/{book_id}/settings")
    def api_book_settings(book_id: str) -> JSONResponse:
        _require_book(book_id)
        return JSONResponse({"settings": load_settings(root, book_id).as_payload()})

    @app.post("/api/books/{book_id}/settings")
    def api_update_book_settings(
        book_id: str,
        payload: dict[str, object] = Body(...),
    ) -> JSONResponse:
        _require_book(book_id)
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="Invalid payload.")
        settings = save_settings(root, payload, book_id)
        return JSONResponse({"settings": settings.as_payload()})

    @app.get("/api/session")
    async def api_session() -> JSONResponse:
        engine = app.state.engine
        if engine is None or engine.book_id is None:
            return JSONResponse({"book_id": None, "session": None})
        return JSONResponse(
            {
                "book_id": engine.book_id,
                "session": engine.snapshot().as_payload(),
                "position": engine.get_position().as_payload(),
            }
        )

    @app.delete("/api/session")
    async def api_close_session() -> JSONResponse:
        _close_session()
        return JSONResponse({"book_id": None, "session": None})

    @app.post("/api/session/open")
    async def api_open_session(payload: dict[str, object] = Body(...)) -> JSONResponse:
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="Invalid payload.")
        book_id = payload.get("book_id")
        if not isinstance(book_id, str) or not book_id.strip():
            raise HTTPException(status_code=400, detail="book_id is required.")
        engine = _engine()
        if engine.book_id is not None:
            engine.save_position()
        try:
            update = await engine.open(book_id)
        except BookNotFoundError as exc:
            raise HTTPException(status_code=404, detail="Book not found") from exc
        return JSONResponse({"book_id": book_id, "session": update.as_payload()})

    @app.post("/api/session/jump")
    async def api_jump(payload: dict[str, object] = Body(...)) -> JSONResponse:
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="Invalid payload.")
        chapter_index = _int_field(payload, "chapter_index")
        sentence_index = payload.get("sentence_index", 0)
        if isinstance(sentence_index, bool) or not isinstance(sentence_index, int):
            raise HTTPException(status_code=400, detail="sentence_index must be an integer.")
        engine = _open_engine()
        update = engine.jump_to(chapter_index, sentence_index)
        return JSONResponse({"book_id": engine.book_id, "session": update.as_payload()})

    @app.post("/api/session/{action}")
    async def api_session_action(action: str) -> JSONResponse:
        if action not in _SESSION_ACTIONS:
            raise HTTPException(status_code=404, detail=f"Unknown session action: {action}")
        engine = _open_engine()
        if action == "save":
            engine.save_position()
            update = engine.snapshot()
        else:
            update = getattr(engine, action)()
        return JSONResponse({"book_id": engine.book_id, "session": update.as_payload()})

    return app
