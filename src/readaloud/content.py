from __future__ import annotations

import warnings
import zipfile
import zlib
from enum import Enum
from typing import TYPE_CHECKING

from bs4 import BeautifulSoup, FeatureNotFound, Tag, XMLParsedAsHTMLWarning  # type: ignore

from .archive import open_archive, read_text
from .locator import locate_entry
from .sentences import tokenize_sentences

if TYPE_CHECKING:
    from .library import BlobStore


class ChapterLoadError(RuntimeError):
    """Raised when a chapter's text cannot be read from its archive."""


class TagKind(Enum):
    BLOCK = "block"
    INLINE = "inline"
    SKIP = "skip"


# Leaf blocks of these kinds become paragraphs.
_TAG_KINDS: dict[str, TagKind] = {
    "p": TagKind.BLOCK,
    "h1": TagKind.BLOCK,
    "h2": TagKind.BLOCK,
    "h3": TagKind.BLOCK,
    "h4": TagKind.BLOCK,
    "h5": TagKind.BLOCK,
    "h6": TagKind.BLOCK,
    "li": TagKind.BLOCK,
    "blockquote": TagKind.BLOCK,
    "td": TagKind.BLOCK,
    "th": TagKind.BLOCK,
    "caption": TagKind.BLOCK,
    "figcaption": TagKind.BLOCK,
    "dt": TagKind.BLOCK,
    "dd": TagKind.BLOCK,
    "script": TagKind.SKIP,
    "style": TagKind.SKIP,
    "nav": TagKind.SKIP,
}
BLOCK_TAGS = frozenset(name for name, kind in _TAG_KINDS.items() if kind is TagKind.BLOCK)

EMPTY_CHAPTER_SENTENCE = "(No readable text in this chapter.)"


def tag_kind(tag: Tag) -> TagKind:
    name = (tag.name or "").lower()
    if ":" in name:
        name = name.split(":", 1)[1]
    return _TAG_KINDS.get(name, TagKind.INLINE)


def _normalize_ws(text: str) -> str:
    return " ".join(text.split())


def _soup_from_html(markup: str) -> BeautifulSoup:
    for parser in ("lxml", "html.parser"):
        try:
            with warnings.catch_warnings():
                warnings.filterwarnings("ignore", category=XMLParsedAsHTMLWarning)
                return BeautifulSoup(markup, parser)
        except FeatureNotFound:
            continue
    return BeautifulSoup(markup, "html.parser")


def _has_block_descendant(tag: Tag) -> bool:
    return tag.find(lambda node: tag_kind(node) is TagKind.BLOCK) is not None


def _collect_leaf_blocks(node: Tag, paragraphs: list[str]) -> None:
    for child in node.children:
        if not isinstance(child, Tag):
            continue
        if tag_kind(child) is TagKind.BLOCK and not _has_block_descendant(child):
            text = _normalize_ws(child.get_text())
            if text:
                paragraphs.append(text)
            continue
        _collect_leaf_blocks(child, paragraphs)


def extract_paragraphs(markup: str) -> list[str]:
    """
    Return the readable paragraphs of one chapter document.

    Scripts, styles and navigation blocks are dropped. Text comes from leaf
    block elements (blocks with no nested block) so nested markup is never
    read twice; documents without any block markup yield their whole text as
    a single paragraph.
    """
    soup = _soup_from_html(markup)
    for tag in soup.find_all(True):
        if tag.decomposed:
            continue
        if tag_kind(tag) is TagKind.SKIP:
            tag.decompose()
    root = soup.body or soup
    paragraphs: list[str] = []
    _collect_leaf_blocks(root, paragraphs)
    if not paragraphs:
        raw = _normalize_ws(root.get_text())
        if raw:
            paragraphs.append(raw)
    return paragraphs


def chapter_sentences(markup: str) -> list[str]:
    sentences: list[str] = []
    for paragraph in extract_paragraphs(markup):
        sentences.extend(tokenize_sentences(paragraph))
    return sentences


def load_chapter_sentences(blobs: "BlobStore", book_id: str, href: str) -> list[str]:
    """
    Load one chapter from a stored archive and split it into sentences.

    Raises ChapterLoadError when the archive or the chapter entry is missing
    or unreadable.
    """
    data = blobs.get(book_id)
    if data is None:
        raise ChapterLoadError(f"Book {book_id} not found in storage")
    try:
        with open_archive(data) as zf:
            info = locate_entry(zf, href)
            if info is None:
                raise ChapterLoadError(f"Chapter not found in EPUB: {href}")
            markup = read_text(zf, info)
    except ChapterLoadError:
        raise
    except (zipfile.BadZipFile, zlib.error, EOFError, OSError, RuntimeError) as exc:
        raise ChapterLoadError(f"Failed to read chapter {href}: {exc}") from exc
    return chapter_sentences(markup)
