from __future__ import annotations

import re
import zipfile
from typing import Callable

from .paths import decode_href

_MARKUP_ENTRY_RE = re.compile(r"\.(x?html?|xml)$", re.IGNORECASE)


def _exact_match(zf: zipfile.ZipFile, href: str) -> zipfile.ZipInfo | None:
    try:
        return zf.getinfo(href)
    except KeyError:
        return None


def _decoded_match(zf: zipfile.ZipFile, href: str) -> zipfile.ZipInfo | None:
    decoded = decode_href(href)
    if decoded == href:
        return None
    return _exact_match(zf, decoded)


def _suffix_match(zf: zipfile.ZipFile, href: str) -> zipfile.ZipInfo | None:
    # Older imports stored truncated paths and paths with a leading slash.
    needle = decode_href(href)
    if needle.startswith("/"):
        needle = needle[1:]
    needle = needle.lower()
    if not needle:
        return None
    for info in zf.infolist():
        if info.is_dir() or not _MARKUP_ENTRY_RE.search(info.filename):
            continue
        if info.filename.lower().endswith(needle):
            return info
    return None


_LOCATE_STRATEGIES: tuple[Callable[[zipfile.ZipFile, str], zipfile.ZipInfo | None], ...] = (
    _exact_match,
    _decoded_match,
    _suffix_match,
)


def locate_entry(zf: zipfile.ZipFile, href: str) -> zipfile.ZipInfo | None:
    """
    Find the archive entry for a stored chapter reference.

    Tries an exact name, the percent-decoded name, then the first markup entry
    (archive order) whose name ends with the decoded reference. The suffix
    match can pick the wrong file when several share a name; it exists to
    recover references saved by older path resolution.
    """
    for strategy in _LOCATE_STRATEGIES:
        info = strategy(zf, href)
        if info is not None:
            return info
    return None
