from __future__ import annotations

import io
import zipfile

from readaloud.locator import locate_entry


def _archive(*names: str) -> zipfile.ZipFile:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        for name in names:
            zf.writestr(name, "<html/>")
    buffer.seek(0)
    return zipfile.ZipFile(buffer, "r")


def test_exact_name_wins() -> None:
    zf = _archive("OEBPS/Text/Ch1.html", "Ch1.html")
    info = locate_entry(zf, "Ch1.html")
    assert info is not None and info.filename == "Ch1.html"


def test_percent_decoded_name() -> None:
    zf = _archive("OEBPS/ch 1.xhtml")
    info = locate_entry(zf, "OEBPS/ch%201.xhtml")
    assert info is not None and info.filename == "OEBPS/ch 1.xhtml"


def test_suffix_match_recovers_rooted_reference() -> None:
    zf = _archive("OEBPS/styles.css", "OEBPS/Text/Ch1.html")
    info = locate_entry(zf, "/Ch1.html")
    assert info is not None and info.filename == "OEBPS/Text/Ch1.html"


def test_suffix_match_is_case_insensitive_and_first_in_archive_order() -> None:
    zf = _archive("a/Part1/CH1.XHTML", "b/Part1/ch1.xhtml")
    info = locate_entry(zf, "part1/ch1.xhtml")
    assert info is not None and info.filename == "a/Part1/CH1.XHTML"


def test_suffix_match_ignores_non_markup_entries() -> None:
    zf = _archive("OEBPS/Images/ch1.html.png")
    assert locate_entry(zf, "OEBPS/Images/ch1.html.png") is not None
    assert locate_entry(zf, "/ch1.html.png") is None


def test_missing_entry_returns_none() -> None:
    zf = _archive("OEBPS/Text/Ch1.html")
    assert locate_entry(zf, "Ch2.html") is None
    assert locate_entry(zf, "") is None
