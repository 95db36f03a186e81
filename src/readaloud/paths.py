from __future__ import annotations

from urllib.parse import unquote, urljoin, urlsplit

# "http" parses consistently: host in netloc, path always rooted at "/".
_RESOLVE_ROOT = "http://x/"


def decode_href(value: str) -> str:
    try:
        return unquote(value, encoding="utf-8", errors="strict")
    except UnicodeDecodeError:
        return value


def resolve_href(base_dir: str, href: str) -> str:
    """
    Resolve ``href`` against an archive directory such as ``"OEBPS/"``.

    Returns the archive-relative path with dot segments collapsed, no leading
    slash and no percent escapes.
    """
    decoded = decode_href(href)
    try:
        resolved = urljoin(f"{_RESOLVE_ROOT}{base_dir}", decoded)
        path = urlsplit(resolved).path
    except ValueError:
        return base_dir + decoded
    return decode_href(path[1:] if path.startswith("/") else path)


def dir_of(path: str) -> str:
    if "/" not in path:
        return ""
    return path[: path.rindex("/") + 1]


def strip_fragment(href: str) -> str:
    return href.split("#", 1)[0]
