from __future__ import annotations

import re
import warnings
import xml.etree.ElementTree as ET
import zipfile
from dataclasses import dataclass
from pathlib import Path, PurePath
from typing import Callable

from bs4 import BeautifulSoup, XMLParsedAsHTMLWarning  # type: ignore

from .archive import ArchiveSource, open_archive, read_bytes, read_text
from .paths import dir_of, resolve_href, strip_fragment

CONTAINER_PATH = "META-INF/container.xml"
NCX_MEDIA_TYPE = "application/x-dtbncx+xml"
UNKNOWN_AUTHOR = "Unknown Author"
INTRODUCTION_TITLE = "Introduction"

_EPUB_SUFFIX_RE = re.compile(r"\.epub$", re.IGNORECASE)


class MalformedArchiveError(ValueError):
    """Raised when an EPUB lacks its container descriptor or package document."""


@dataclass(frozen=True)
class ChapterDescriptor:
    spine_index: int
    href: str
    title: str

    def as_payload(self) -> dict[str, object]:
        return {"spine_index": self.spine_index, "href": self.href, "title": self.title}


@dataclass
class CoverImage:
    path: str
    media_type: str | None
    data: bytes


@dataclass
class ParsedBook:
    title: str
    author: str
    cover: CoverImage | None
    chapters: list[ChapterDescriptor]


@dataclass
class _ManifestItem:
    item_id: str
    href: str
    media_type: str
    properties: str


@dataclass
class _Package:
    zf: zipfile.ZipFile
    opf_path: str
    opf_dir: str
    root: ET.Element
    manifest: dict[str, _ManifestItem]


def _strip_tag(tag: str) -> str:
    return tag.split("}", 1)[-1] if "}" in tag else tag


def _get_attr(elem: ET.Element, name: str) -> str | None:
    for attr, value in elem.attrib.items():
        if _strip_tag(attr) == name:
            return value
    return None


def _find_child(elem: ET.Element, name: str) -> ET.Element | None:
    for child in elem:
        if _strip_tag(child.tag) == name:
            return child
    return None


def _iter_named(elem: ET.Element, name: str):
    for node in elem.iter():
        if isinstance(node.tag, str) and _strip_tag(node.tag) == name:
            yield node


def _collapse_ws(text: str) -> str:
    return " ".join(text.split())


def _display_name(source: ArchiveSource, display_name: str | None) -> str:
    if display_name:
        name = PurePath(display_name).name
    elif isinstance(source, (str, Path)):
        name = Path(source).name
    else:
        name = getattr(source, "name", "") or ""
        name = PurePath(str(name)).name if name else ""
    return _EPUB_SUFFIX_RE.sub("", name) or "Untitled"


def _find_opf_path(zf: zipfile.ZipFile) -> str:
    try:
        container = read_text(zf, CONTAINER_PATH)
    except KeyError as exc:
        raise MalformedArchiveError(f"Invalid EPUB: missing {CONTAINER_PATH}") from exc
    try:
        root = ET.fromstring(container)
    except ET.ParseError as exc:
        raise MalformedArchiveError(f"Invalid EPUB: unreadable {CONTAINER_PATH}") from exc
    for rootfile in _iter_named(root, "rootfile"):
        full_path = _get_attr(rootfile, "full-path")
        if full_path:
            return full_path
    raise MalformedArchiveError(f"Invalid EPUB: cannot locate OPF path in {CONTAINER_PATH}")


def _load_package(zf: zipfile.ZipFile) -> _Package:
    opf_path = _find_opf_path(zf)
    try:
        opf_xml = read_text(zf, opf_path)
    except KeyError as exc:
        raise MalformedArchiveError(f"Invalid EPUB: missing OPF file at {opf_path}") from exc
    try:
        root = ET.fromstring(opf_xml)
    except ET.ParseError as exc:
        raise MalformedArchiveError(f"Invalid EPUB: unreadable OPF file at {opf_path}") from exc
    opf_dir = dir_of(opf_path)
    manifest: dict[str, _ManifestItem] = {}
    manifest_elem = _find_child(root, "manifest")
    if manifest_elem is not None:
        for item in manifest_elem:
            if _strip_tag(item.tag) != "item":
                continue
            item_id = _get_attr(item, "id")
            if not item_id or item_id in manifest:
                continue
            manifest[item_id] = _ManifestItem(
                item_id=item_id,
                href=resolve_href(opf_dir, _get_attr(item, "href") or ""),
                media_type=(_get_attr(item, "media-type") or "").strip().lower(),
                properties=(_get_attr(item, "properties") or "").strip().lower(),
            )
    return _Package(zf=zf, opf_path=opf_path, opf_dir=opf_dir, root=root, manifest=manifest)


def _metadata_text(package: _Package, name: str) -> str | None:
    metadata = _find_child(package.root, "metadata")
    if metadata is None:
        return None
    # Legacy OEB packages nest dc elements one level deeper (dc-metadata).
    for elem in _iter_named(metadata, name):
        text = "".join(elem.itertext()).strip()
        if text:
            return text
    return None


def _spine_items(package: _Package) -> list[str]:
    spine = _find_child(package.root, "spine")
    if spine is None or not package.manifest:
        return []
    items: list[str] = []
    for itemref in spine:
        if _strip_tag(itemref.tag) != "itemref":
            continue
        entry = package.manifest.get(_get_attr(itemref, "idref") or "")
        if entry is None:
            continue
        if "html" in entry.media_type or entry.media_type == "":
            items.append(entry.href)
    return items


# ---------- table of contents ----------


def _soup_from_nav(html: str) -> BeautifulSoup:
    with warnings.catch_warnings():
        warnings.filterwarnings("ignore", category=XMLParsedAsHTMLWarning)
        return BeautifulSoup(html, "html.parser")


def _parse_nav_document(html: str, nav_dir: str) -> dict[str, str]:
    soup = _soup_from_nav(html)
    navs = soup.find_all("nav")
    toc_nav = None
    for nav in navs:
        nav_type = (nav.get("epub:type") or "").lower().split()
        role = (nav.get("role") or "").lower()
        if "toc" in nav_type or role == "doc-toc":
            toc_nav = nav
            break
    if toc_nav is None:
        if not navs:
            return {}
        toc_nav = navs[0]
    toc: dict[str, str] = {}
    for anchor in toc_nav.find_all("a", href=True):
        path = strip_fragment(anchor.get("href") or "")
        if not path:
            continue
        title = _collapse_ws(anchor.get_text())
        full_href = resolve_href(nav_dir, path)
        if title and full_href not in toc:
            toc[full_href] = title
    return toc


def _parse_ncx_document(xml_text: str, ncx_dir: str) -> dict[str, str]:
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError:
        return {}
    toc: dict[str, str] = {}
    for nav_point in _iter_named(root, "navPoint"):
        content = _find_child(nav_point, "content")
        src = _get_attr(content, "src") if content is not None else None
        label_elem = _find_child(nav_point, "navLabel")
        text_elem = _find_child(label_elem, "text") if label_elem is not None else None
        label = _collapse_ws("".join(text_elem.itertext())) if text_elem is not None else ""
        if not src or not label:
            continue
        path = strip_fragment(src)
        if not path:
            continue
        full_href = resolve_href(ncx_dir, path)
        if full_href not in toc:
            toc[full_href] = label
    return toc


def _toc_from_nav(package: _Package) -> dict[str, str] | None:
    for item in package.manifest.values():
        if "nav" not in item.properties.split():
            continue
        try:
            html = read_text(package.zf, item.href)
        except KeyError:
            return None
        return _parse_nav_document(html, dir_of(item.href)) or None
    return None


def _ncx_item(package: _Package) -> _ManifestItem | None:
    spine = _find_child(package.root, "spine")
    toc_id = _get_attr(spine, "toc") if spine is not None else None
    if toc_id:
        return package.manifest.get(toc_id)
    for item in package.manifest.values():
        if item.media_type == NCX_MEDIA_TYPE:
            return item
    return None


def _toc_from_ncx(package: _Package) -> dict[str, str] | None:
    item = _ncx_item(package)
    if item is None:
        return None
    try:
        xml_text = read_text(package.zf, item.href)
    except KeyError:
        return None
    return _parse_ncx_document(xml_text, dir_of(item.href)) or None


# Order matters: the EPUB 3 nav document wins over the legacy NCX.
_TOC_STRATEGIES: tuple[Callable[[_Package], dict[str, str] | None], ...] = (
    _toc_from_nav,
    _toc_from_ncx,
)


def _toc_map(package: _Package) -> dict[str, str]:
    for strategy in _TOC_STRATEGIES:
        toc = strategy(package)
        if toc:
            return toc
    return {}


def _positional_title(index: int) -> str:
    return INTRODUCTION_TITLE if index == 0 else f"Chapter {index}"


def _build_chapters(package: _Package) -> list[ChapterDescriptor]:
    spine = _spine_items(package)
    if not spine:
        return []
    toc = _toc_map(package)
    return [
        ChapterDescriptor(
            spine_index=index,
            href=href,
            title=toc.get(href) or _positional_title(index),
        )
        for index, href in enumerate(spine)
    ]


# ---------- cover ----------


def _read_cover(package: _Package, item: _ManifestItem | None) -> CoverImage | None:
    if item is None or not item.href:
        return None
    try:
        data = read_bytes(package.zf, item.href)
    except (KeyError, zipfile.BadZipFile, OSError):
        return None
    return CoverImage(path=item.href, media_type=item.media_type or "image/jpeg", data=data)


def _cover_from_meta(package: _Package) -> CoverImage | None:
    metadata = _find_child(package.root, "metadata")
    if metadata is None:
        return None
    for meta in _iter_named(metadata, "meta"):
        if (_get_attr(meta, "name") or "").lower() != "cover":
            continue
        cover_id = (_get_attr(meta, "content") or "").strip()
        return _read_cover(package, package.manifest.get(cover_id))
    return None


def _cover_from_properties(package: _Package) -> CoverImage | None:
    for item in package.manifest.values():
        if "cover-image" in item.properties.split():
            return _read_cover(package, item)
    return None


def _cover_from_name(package: _Package) -> CoverImage | None:
    for item in package.manifest.values():
        if not item.media_type.startswith("image/"):
            continue
        if "cover" in item.item_id.lower() or "cover" in item.href.lower():
            cover = _read_cover(package, item)
            if cover is not None:
                return cover
    return None


_COVER_STRATEGIES: tuple[Callable[[_Package], CoverImage | None], ...] = (
    _cover_from_meta,
    _cover_from_properties,
    _cover_from_name,
)


def _extract_cover(package: _Package) -> CoverImage | None:
    for strategy in _COVER_STRATEGIES:
        cover = strategy(package)
        if cover is not None:
            return cover
    return None


def parse_epub(source: ArchiveSource, display_name: str | None = None) -> ParsedBook:
    """
    Parse an EPUB into metadata, a cover image and spine-ordered chapters.

    Raises MalformedArchiveError when the archive is not a zip file or lacks
    its container descriptor or package document. Missing manifests, spines,
    tables of contents and covers only degrade the result.
    """
    try:
        zf = open_archive(source)
    except zipfile.BadZipFile as exc:
        raise MalformedArchiveError("Invalid EPUB: not a zip archive") from exc
    with zf:
        package = _load_package(zf)
        title = _metadata_text(package, "title") or _display_name(source, display_name)
        author = _metadata_text(package, "creator") or UNKNOWN_AUTHOR
        return ParsedBook(
            title=title,
            author=author,
            cover=_extract_cover(package),
            chapters=_build_chapters(package),
        )


def get_epub_cover(source: ArchiveSource) -> CoverImage | None:
    """
    Extract the declared cover image from an EPUB, if present.
    """
    try:
        with open_archive(source) as zf:
            return _extract_cover(_load_package(zf))
    except (zipfile.BadZipFile, MalformedArchiveError):
        return None
