from __future__ import annotations

import argparse
import asyncio
import os
import socket
import sys
from importlib import metadata
from pathlib import Path
from typing import Callable

import tomllib
import uvicorn
from rich.console import Console
from rich.progress import (
    BarColumn,
    Progress,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

from .bookmarks import list_bookmarks
from .content import ChapterLoadError, load_chapter_sentences
from .engine import PlaybackEngine, PlaybackState, PlaybackUpdate
from .library import BookNotFoundError, BookRecord, Library, import_epubs, progress_label
from .logging_utils import build_uvicorn_log_config, configure_logging
from .settings import PlaybackSettings, load_settings
from .speech import (
    DEFAULT_ENGINE_URL,
    DEFAULT_SPEAKER,
    SpeechBackend,
    VoiceVoxClient,
    VoiceVoxSpeaker,
    normalize_base_url,
)
from .web import WebConfig, create_app


def _read_local_version() -> str | None:
    try:
        pyproject_path = Path(__file__).resolve().parents[2] / "pyproject.toml"
    except IndexError:  # pragma: no cover
        return None
    try:
        with pyproject_path.open("rb") as fh:
            data = tomllib.load(fh)
    except (FileNotFoundError, tomllib.TOMLDecodeError):
        return None
    return data.get("project", {}).get("version")


try:
    __version__ = metadata.version("readaloud")
except metadata.PackageNotFoundError:
    __version__ = _read_local_version() or "0.0.0+unknown"


def _default_library_root() -> str:
    return os.environ.get("READALOUD_LIBRARY") or "~/.readaloud"


def _add_version_flag(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-v",
        "--version",
        action="version",
        version=f"readaloud {__version__}",
    )


def _add_common_flags(parser: argparse.ArgumentParser) -> None:
    _add_version_flag(parser)
    parser.add_argument(
        "--library",
        default=_default_library_root(),
        help="Library directory (default: $READALOUD_LIBRARY or ~/.readaloud).",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Log debug details to stderr.",
    )


def _add_engine_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--engine-url",
        default=DEFAULT_ENGINE_URL,
        help=f"Base URL for the VoiceVox engine (default: {DEFAULT_ENGINE_URL}).",
    )
    parser.add_argument(
        "--speaker",
        type=int,
        default=DEFAULT_SPEAKER,
        help=f"VoiceVox speaker ID to use (default: {DEFAULT_SPEAKER}).",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=30.0,
        help="Seconds to wait for each VoiceVox request (default: 30).",
    )


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="readaloud",
        description=(
            "Read EPUB books aloud sentence by sentence. Commands: import, list, "
            "chapters, sentences, bookmarks, remove, play, web."
        ),
    )
    _add_version_flag(ap)
    ap.add_argument("command", nargs="?", help="Command to run.")
    return ap


def build_import_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="readaloud import",
        description="Import .epub files (or directories of them) into the library.",
    )
    _add_common_flags(ap)
    ap.add_argument("paths", nargs="+", help="EPUB files or directories.")
    ap.add_argument(
        "--force",
        action="store_true",
        help="Replace books whose file name is already in the library.",
    )
    return ap


def build_list_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="readaloud list", description="List books in the library.")
    _add_common_flags(ap)
    ap.add_argument(
        "--sort",
        choices=["recent", "title", "author"],
        default="recent",
        help="Sort order (default: recent).",
    )
    return ap


def _build_book_parser(command: str, description: str) -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog=f"readaloud {command}", description=description)
    _add_common_flags(ap)
    ap.add_argument("book", help="Book id (its directory name in the library).")
    return ap


def build_sentences_parser() -> argparse.ArgumentParser:
    ap = _build_book_parser("sentences", "Print the sentences of one chapter.")
    ap.add_argument("index", type=int, help="Chapter index (0-based).")
    return ap


def build_play_parser() -> argparse.ArgumentParser:
    ap = _build_book_parser("play", "Read a book aloud through VoiceVox.")
    _add_engine_flags(ap)
    ap.add_argument("--chapter", type=int, help="Start at this chapter index.")
    ap.add_argument("--sentence", type=int, help="Start at this sentence index.")
    ap.add_argument("--rate", type=float, help="Speech rate (0.5-2.0).")
    ap.add_argument("--pitch", type=float, help="Speech pitch (0.5-2.0).")
    return ap


def build_web_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="readaloud web",
        description="Serve the library and a playback session over HTTP.",
    )
    _add_common_flags(ap)
    _add_engine_flags(ap)
    ap.add_argument(
        "--host",
        default="127.0.0.1",
        help="Host interface for the web server (default: 127.0.0.1).",
    )
    ap.add_argument(
        "--port",
        type=int,
        default=2047,
        help="Port for the web server (default: 2047).",
    )
    return ap


def _library(args: argparse.Namespace) -> Library:
    return Library(Path(args.library).expanduser())


def _require_record(library: Library, book_id: str) -> BookRecord:
    try:
        return library.require_book(book_id)
    except BookNotFoundError:
        raise SystemExit(f"Book not found: {book_id}") from None


def _collect_epubs(raw_paths: list[str]) -> list[Path]:
    paths: list[Path] = []
    for raw in raw_paths:
        path = Path(raw).expanduser()
        if path.is_dir():
            paths.extend(sorted(p for p in path.rglob("*.epub") if p.is_file()))
        elif path.is_file():
            paths.append(path)
        else:
            raise SystemExit(f"Input path not found: {path}")
    return paths


def _run_import(args: argparse.Namespace) -> int:
    library = _library(args)
    paths = _collect_epubs(args.paths)
    console = Console(stderr=True)
    progress: Progress | None = None
    if console.is_terminal and paths:
        progress = Progress(
            TextColumn("{task.description}", justify="left"),
            BarColumn(bar_width=None),
            TaskProgressColumn(),
            TimeElapsedColumn(),
            TextColumn("{task.fields[detail]}", justify="left"),
            console=console,
            transient=True,
        )
    if progress is None:
        summary = import_epubs(library.root, paths, force=args.force)
    else:
        with progress:
            task = progress.add_task("Importing", total=len(paths), detail="")

            def _advance(path: Path) -> None:
                progress.update(task, advance=1, detail=path.name)

            summary = import_epubs(library.root, paths, force=args.force, on_file=_advance)
    for record in summary.imported:
        print(f"+ {record.title} ({record.book_id}, {record.chapter_count} chapters)")
    for path in summary.skipped:
        print(f"= {path.name} (already in library)")
    for path, reason in summary.failed.items():
        print(f"! {path.name}: {reason}", file=sys.stderr)
    print(summary.describe())
    return 1 if summary.failed and not summary.imported else 0


def _run_list(args: argparse.Namespace) -> int:
    records = _library(args).list_books(args.sort)
    console = Console()
    if not records:
        console.print("Library is empty.")
        return 0
    table = Table(show_header=True, header_style="bold")
    table.add_column("ID")
    table.add_column("Title")
    table.add_column("Author")
    table.add_column("Progress")
    for record in records:
        table.add_row(record.book_id, record.title, record.author, progress_label(record))
    console.print(table)
    return 0


def _run_chapters(args: argparse.Namespace) -> int:
    record = _require_record(_library(args), args.book)
    print(f"{record.title} by {record.author}" if record.author else record.title)
    for idx, chapter in enumerate(record.chapters):
        print(f"{idx:>4}  {chapter.title}  [{chapter.href}]")
    return 0


def _run_sentences(args: argparse.Namespace) -> int:
    library = _library(args)
    record = _require_record(library, args.book)
    if not 0 <= args.index < len(record.chapters):
        raise SystemExit(f"Chapter index out of range: {args.index} (0-{len(record.chapters) - 1})")
    chapter = record.chapters[args.index]
    try:
        sentences = load_chapter_sentences(library, record.book_id, chapter.href)
    except ChapterLoadError as exc:
        raise SystemExit(str(exc)) from exc
    for idx, sentence in enumerate(sentences):
        print(f"{idx:>5}  {sentence}")
    return 0


def _run_bookmarks(args: argparse.Namespace) -> int:
    library = _library(args)
    record = _require_record(library, args.book)
    entries = list_bookmarks(library.book_dir(record.book_id))
    if not entries:
        print("No bookmarks.")
        return 0
    for entry in entries:
        print(
            f"{entry.bookmark_id[:8]}  ch {entry.chapter_index} · s {entry.sentence_index}  "
            f"{entry.chapter_title}: {entry.excerpt}"
        )
    return 0


def _run_remove(args: argparse.Namespace) -> int:
    library = _library(args)
    record = _require_record(library, args.book)
    library.remove_book(record.book_id)
    print(f"Removed {record.title} ({record.book_id})")
    return 0


class _ConsoleSpeaker:
    """Echo each sentence to the console before handing it to the real backend."""

    def __init__(self, backend: SpeechBackend, console: Console) -> None:
        self.backend = backend
        self.console = console

    async def speak(self, text: str, settings: PlaybackSettings) -> None:
        self.console.print(text, highlight=False)
        await self.backend.speak(text, settings)

    def cancel(self) -> None:
        self.backend.cancel()


async def _play_book(
    library: Library,
    book_id: str,
    speech: SpeechBackend,
    settings: Callable[[str], PlaybackSettings],
    chapter: int | None,
    sentence: int | None,
    console: Console,
) -> None:
    def _on_update(update: PlaybackUpdate) -> None:
        if update.sentence_index == 0 and update.state is PlaybackState.PLAYING:
            console.rule(
                f"Ch. {update.chapter_index + 1} of {update.total_chapters}: {update.chapter_title}"
            )

    engine = PlaybackEngine(library, library, speech, on_update=_on_update, settings=settings)
    await engine.open(book_id)
    if chapter is not None or sentence is not None:
        engine.jump_to(
            engine.chapter_index if chapter is None else chapter,
            0 if sentence is None else sentence,
        )
    engine.play()
    try:
        await engine.join()
    except asyncio.CancelledError:
        engine.stop()
        raise


def _run_play(args: argparse.Namespace) -> int:
    library = _library(args)
    record = _require_record(library, args.book)
    try:
        base_url = normalize_base_url(args.engine_url)
    except ValueError as exc:
        raise SystemExit(str(exc)) from exc
    overrides = {"rate": args.rate, "pitch": args.pitch}

    def _settings(book_id: str) -> PlaybackSettings:
        return load_settings(library.root, book_id).merged(
            {key: value for key, value in overrides.items() if value is not None}
        )

    console = Console()
    client = VoiceVoxClient(base_url, speaker_id=args.speaker, timeout=args.timeout)
    speaker = VoiceVoxSpeaker(client)
    console.print(f"[bold]{record.title}[/bold]  {progress_label(record)}")
    console.print("Press Ctrl+C to stop.\n")
    try:
        asyncio.run(
            _play_book(
                library,
                record.book_id,
                _ConsoleSpeaker(speaker, console),
                _settings,
                args.chapter,
                args.sentence,
                console,
            )
        )
    except KeyboardInterrupt:
        print("\nInterrupted. Position saved.", flush=True)
        return 130
    finally:
        speaker.close()
    return 0


def _resolve_local_ip(host: str) -> str:
    if host not in {"0.0.0.0", "::"}:
        return host
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        try:
            sock.connect(("8.8.8.8", 80))
            return sock.getsockname()[0]
        except OSError:
            return "127.0.0.1"


def _run_web(args: argparse.Namespace) -> int:
    root = Path(args.library).expanduser().resolve()
    try:
        engine_url = normalize_base_url(args.engine_url)
    except ValueError as exc:
        raise SystemExit(str(exc)) from exc
    config = WebConfig(
        root=root,
        engine_url=engine_url,
        speaker=args.speaker,
        timeout=args.timeout,
    )
    app = create_app(config)
    url = f"http://{_resolve_local_ip(args.host)}:{args.port}/"
    print(f"Serving readaloud library from {root}")
    print(f"API URL: {url}api/books")
    print("Press Ctrl+C to stop.\n")
    uvicorn.run(
        app,
        host=args.host,
        port=args.port,
        log_config=build_uvicorn_log_config(args.debug),
    )
    return 0


_COMMANDS: dict[str, tuple[Callable[[], argparse.ArgumentParser], Callable[[argparse.Namespace], int]]] = {
    "import": (build_import_parser, _run_import),
    "list": (build_list_parser, _run_list),
    "chapters": (lambda: _build_book_parser("chapters", "List a book's chapters."), _run_chapters),
    "sentences": (build_sentences_parser, _run_sentences),
    "bookmarks": (lambda: _build_book_parser("bookmarks", "List a book's bookmarks."), _run_bookmarks),
    "remove": (lambda: _build_book_parser("remove", "Remove a book from the library."), _run_remove),
    "play": (build_play_parser, _run_play),
    "web": (build_web_parser, _run_web),
}


def main(argv: list[str] | None = None) -> int:
    if argv is None:
        argv = sys.argv[1:]

    if argv and argv[0] in _COMMANDS:
        build, run = _COMMANDS[argv[0]]
        args = build().parse_args(argv[1:])
        if argv[0] != "web":
            configure_logging(args.debug)
        return run(args)

    parser = build_parser()
    if not argv:
        parser.print_help()
        return 0
    args = parser.parse_args(argv)
    parser.error(f"unknown command: {args.command}")
    return 2


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
