from __future__ import annotations

import zipfile
from pathlib import Path

import pytest

from readaloud.content import (
    BLOCK_TAGS,
    ChapterLoadError,
    chapter_sentences,
    extract_paragraphs,
    load_chapter_sentences,
)


class DictBlobs:
    def __init__(self, blobs: dict[str, bytes]) -> None:
        self.blobs = blobs

    def get(self, book_id: str) -> bytes | None:
        return self.blobs.get(book_id)


def test_leaf_blocks_are_read_once() -> None:
    html = """<html><body>
      <div><p>First   paragraph.</p>
        <blockquote><p>Quoted <em>text</em>.</p></blockquote>
      </div>
      <ul><li>Item one</li><li><p>Item two</p></li></ul>
      <p>   </p>
    </body></html>"""
    assert extract_paragraphs(html) == [
        "First paragraph.",
        "Quoted text.",
        "Item one",
        "Item two",
    ]


def test_scripts_styles_and_nav_are_dropped() -> None:
    html = """<html><head><style>p { color: red; }</style></head><body>
      <nav><p>Skip me</p></nav>
      <script>var x = "<p>nope</p>";</script>
      <h2>Heading</h2>
      <p>Body text.</p>
    </body></html>"""
    assert extract_paragraphs(html) == ["Heading", "Body text."]


def test_document_without_blocks_falls_back_to_whole_text() -> None:
    html = "<html><body><div>Loose <span>text</span> only.</div></body></html>"
    assert extract_paragraphs(html) == ["Loose text only."]
    assert extract_paragraphs("<html><body></body></html>") == []


def test_table_cells_and_definition_lists() -> None:
    html = """<body><table><caption>Scores</caption>
      <tr><th>Name</th><td>Ten</td></tr></table>
      <dl><dt>Term</dt><dd>Meaning</dd></dl></body>"""
    assert extract_paragraphs(html) == ["Scores", "Name", "Ten", "Term", "Meaning"]
    assert {"td", "th", "dt", "dd", "caption", "figcaption"} <= BLOCK_TAGS


def test_chapter_sentences_tokenizes_each_paragraph() -> None:
    html = "<body><h1>Title</h1><p>One. Two!</p></body>"
    assert chapter_sentences(html) == ["Title", "One.", "Two!"]


def test_load_chapter_sentences_from_stored_archive(sample_epub: Path) -> None:
    blobs = DictBlobs({"book": sample_epub.read_bytes()})
    sentences = load_chapter_sentences(blobs, "book", "OEBPS/Text/ch1.xhtml")
    assert sentences == ["Opening", "Dr. Smith went home.", "He left at 3.5pm."]
    # Older records stored rooted or truncated paths.
    assert load_chapter_sentences(blobs, "book", "/ch2.xhtml") == [
        "Middle",
        "Wait... is that true?",
        "Yes!",
    ]


def test_load_chapter_sentences_errors(sample_epub: Path) -> None:
    blobs = DictBlobs({"book": sample_epub.read_bytes(), "broken": b"not a zip"})
    with pytest.raises(ChapterLoadError):
        load_chapter_sentences(blobs, "missing", "OEBPS/Text/ch1.xhtml")
    with pytest.raises(ChapterLoadError):
        load_chapter_sentences(blobs, "book", "OEBPS/Text/ch9.xhtml")
    with pytest.raises(ChapterLoadError):
        load_chapter_sentences(blobs, "broken", "OEBPS/Text/ch1.xhtml")


def test_corrupt_compressed_chapter_is_a_load_error(tmp_path: Path) -> None:
    name = "OEBPS/Text/ch1.xhtml"
    target = tmp_path / "corrupt.epub"
    with zipfile.ZipFile(target, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        zf.writestr(name, "<html><body>" + "<p>Repeated text.</p>" * 200 + "</body></html>")
    data = bytearray(target.read_bytes())
    with zipfile.ZipFile(target) as zf:
        info = zf.getinfo(name)
    offset = info.header_offset
    name_len = int.from_bytes(data[offset + 26 : offset + 28], "little")
    extra_len = int.from_bytes(data[offset + 28 : offset + 30], "little")
    start = offset + 30 + name_len + extra_len
    data[start : start + info.compress_size] = b"\xff" * info.compress_size

    blobs = DictBlobs({"book": bytes(data)})
    with pytest.raises(ChapterLoadError):
        load_chapter_sentences(blobs, "book", name)
