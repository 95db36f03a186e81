from __future__ import annotations

import zipfile
from pathlib import Path

import pytest

CONTAINER_XML = """<?xml version="1.0" encoding="UTF-8"?>
<container version="1.0" xmlns="urn:oasis:names:tc:opendocument:xmlns:container">
  <rootfiles>
    <rootfile full-path="{opf_path}" media-type="application/oebps-package+xml"/>
  </rootfiles>
</container>
"""


def chapter_xhtml(title: str, *paragraphs: str) -> str:
    body = "\n".join(f"    <p>{text}</p>" for text in paragraphs)
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<html xmlns="http://www.w3.org/1999/xhtml">
  <head><title>{title}</title></head>
  <body>
    <h1>{title}</h1>
{body}
  </body>
</html>
"""


def package_opf(
    manifest: list[tuple[str, str, str, str]],
    spine: list[str],
    *,
    title: str | None = "Sample Book",
    author: str | None = "Jane Doe",
    extra_metadata: str = "",
    spine_attrs: str = "",
) -> str:
    items = "\n".join(
        f'    <item id="{item_id}" href="{href}" media-type="{media}"{props}/>'
        for item_id, href, media, props in manifest
    )
    refs = "\n".join(f'    <itemref idref="{idref}"/>' for idref in spine)
    title_xml = f"<dc:title>{title}</dc:title>" if title else ""
    author_xml = f"<dc:creator>{author}</dc:creator>" if author else ""
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<package version="3.0" unique-identifier="BookId" xmlns="http://www.idpf.org/2007/opf">
  <metadata xmlns:dc="http://purl.org/dc/elements/1.1/">
    {title_xml}
    {author_xml}
    {extra_metadata}
  </metadata>
  <manifest>
{items}
  </manifest>
  <spine{spine_attrs}>
{refs}
  </spine>
</package>
"""


def write_epub(
    target: Path,
    files: dict[str, str | bytes],
    *,
    opf_path: str | None = "OEBPS/content.opf",
) -> Path:
    with zipfile.ZipFile(target, "w") as zf:
        zf.writestr("mimetype", "application/epub+zip")
        if opf_path is not None:
            zf.writestr("META-INF/container.xml", CONTAINER_XML.format(opf_path=opf_path))
        for name, data in files.items():
            zf.writestr(name, data)
    return target


def simple_book_files(chapters: list[tuple[str, list[str]]]) -> dict[str, str | bytes]:
    """Files for a book whose chapters are listed in a nav document."""
    manifest = [("nav", "nav.xhtml", "application/xhtml+xml", ' properties="nav"')]
    spine: list[str] = []
    nav_items: list[str] = []
    files: dict[str, str | bytes] = {}
    for idx, (title, paragraphs) in enumerate(chapters, start=1):
        href = f"Text/ch{idx}.xhtml"
        manifest.append((f"ch{idx}", href, "application/xhtml+xml", ""))
        spine.append(f"ch{idx}")
        nav_items.append(f'<li><a href="{href}">{title}</a></li>')
        files[f"OEBPS/{href}"] = chapter_xhtml(title, *paragraphs)
    files["OEBPS/nav.xhtml"] = f"""<?xml version="1.0" encoding="UTF-8"?>
<html xmlns="http://www.w3.org/1999/xhtml" xmlns:epub="http://www.idpf.org/2007/ops">
  <body>
    <nav epub:type="toc"><ol>{''.join(nav_items)}</ol></nav>
  </body>
</html>
"""
    files["OEBPS/content.opf"] = package_opf(manifest, spine)
    return files


@pytest.fixture
def sample_epub(tmp_path: Path) -> Path:
    return write_epub(
        tmp_path / "sample.epub",
        simple_book_files(
            [
                ("Opening", ["Dr. Smith went home. He left at 3.5pm."]),
                ("Middle", ["Wait... is that true? Yes!"]),
                ("Ending", ["J. R. R. Tolkien wrote it."]),
            ]
        ),
    )
