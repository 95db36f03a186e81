from __future__ import annotations

import io
import zipfile
from pathlib import Path
from typing import BinaryIO, Union

ArchiveSource = Union[str, Path, bytes, bytearray, BinaryIO]

_TEXT_ENCODINGS = ("utf-8-sig", "cp1252")


def open_archive(source: ArchiveSource) -> zipfile.ZipFile:
    """Open an EPUB from a path, raw bytes or a binary file object."""
    if isinstance(source, (bytes, bytearray)):
        return zipfile.ZipFile(io.BytesIO(bytes(source)), "r")
    if isinstance(source, (str, Path)):
        return zipfile.ZipFile(Path(source), "r")
    return zipfile.ZipFile(source, "r")


def read_bytes(zf: zipfile.ZipFile, name: str | zipfile.ZipInfo) -> bytes:
    with zf.open(name, "r") as handle:
        return handle.read()


def read_text(zf: zipfile.ZipFile, name: str | zipfile.ZipInfo) -> str:
    raw = read_bytes(zf, name)
    if raw.startswith((b"\xff\xfe", b"\xfe\xff")):
        try:
            return raw.decode("utf-16")
        except UnicodeDecodeError:
            pass
    for enc in _TEXT_ENCODINGS:
        try:
            return raw.decode(enc)
        except UnicodeDecodeError:
            continue
    return raw.decode("utf-8", errors="ignore")
