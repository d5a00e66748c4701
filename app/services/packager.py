"""Render package files and write the EPUB archive."""

import io
import logging
import posixpath
import zipfile
from datetime import datetime, timezone
from html import escape
from typing import TYPE_CHECKING, List, Optional, Sequence

from app.services.models import ArchiveEntry, Item, Metadata, NavPoint

if TYPE_CHECKING:
    from app.services.epub import Epub

logger = logging.getLogger(__name__)

MIMETYPE = "application/epub+zip"
ROOT_DIR = "EPUB"
PACKAGE_PATH = f"{ROOT_DIR}/content.opf"
NAV_PATH = f"{ROOT_DIR}/nav.xhtml"
NAV_ID = "nav"
NAV_HREF = "nav.xhtml"

CONTAINER_XML = f"""<?xml version="1.0" encoding="UTF-8"?>
<container version="1.0" xmlns="urn:oasis:names:tc:opendocument:xmlns:container">
  <rootfiles>
    <rootfile full-path="{PACKAGE_PATH}" media-type="application/oebps-package+xml"/>
  </rootfiles>
</container>"""

XHTML_NAMESPACE = "http://www.w3.org/1999/xhtml"
OPS_NAMESPACE = "http://www.idpf.org/2007/ops"


def _x(value: str) -> str:
    return escape(str(value), quote=True)


def modified_timestamp(now: Optional[datetime] = None) -> str:
    """UTC timestamp for ``dcterms:modified`` without fractional seconds."""
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%SZ")


def spine_items(items: Sequence[Item], spine: Sequence[str]) -> List[Item]:
    """Resolve the reading order to XHTML items.

    Ids that do not name an XHTML item are skipped. When nothing is left,
    every XHTML item is used in manifest order.
    """
    by_id = {item.id: item for item in items}
    ordered = [by_id[item_id] for item_id in spine if item_id in by_id and by_id[item_id].is_xhtml]
    if not ordered:
        ordered = [item for item in items if item.is_xhtml]
    return ordered


def build_opf(
    metadata: Metadata,
    items: Sequence[Item],
    spine: Sequence[str],
    modified: Optional[datetime] = None,
) -> str:
    """Render the OPF package document."""
    meta = [
        f'<dc:identifier id="book-id">{_x(metadata.identifier)}</dc:identifier>',
        f'<dc:title>{_x(metadata.title)}</dc:title>',
        f'<dc:creator>{_x(metadata.creator)}</dc:creator>',
        f'<dc:language>{_x(metadata.language)}</dc:language>',
        f'<dc:date>{_x(metadata.date)}</dc:date>',
    ]
    for field in ("publisher", "description", "rights", "contributor"):
        value = getattr(metadata, field)
        if value:
            meta.append(f'<dc:{field}>{_x(value)}</dc:{field}>')
    for tag in metadata.tags:
        meta.append(f'<dc:subject>{_x(tag)}</dc:subject>')
    meta.append(f'<meta property="dcterms:modified">{modified_timestamp(modified)}</meta>')
    if metadata.cover:
        meta.append(f'<meta name="cover" content="{_x(metadata.cover)}"/>')

    manifest = [
        f'<item id="{NAV_ID}" href="{NAV_HREF}" media-type="application/xhtml+xml" properties="nav"/>'
    ]
    for item in items:
        props = f' properties="{_x(item.properties)}"' if item.properties else ''
        manifest.append(
            f'<item id="{_x(item.id)}" href="{_x(item.href)}" media-type="{_x(item.media_type)}"{props}/>'
        )

    itemrefs = [f'<itemref idref="{_x(item.id)}"/>' for item in spine_items(items, spine)]

    return "\n".join([
        '<?xml version="1.0" encoding="UTF-8"?>',
        '<package xmlns="http://www.idpf.org/2007/opf" version="3.0" unique-identifier="book-id">',
        '  <metadata xmlns:dc="http://purl.org/dc/elements/1.1/">',
        *(f'    {line}' for line in meta),
        '  </metadata>',
        '  <manifest>',
        *(f'    {line}' for line in manifest),
        '  </manifest>',
        '  <spine>',
        *(f'    {line}' for line in itemrefs),
        '  </spine>',
        '</package>',
    ])


def _render_nav_points(nav_points: Sequence[NavPoint], depth: int) -> List[str]:
    indent = "  " * depth
    lines = [f'{indent}<ol>']
    for point in nav_points:
        anchor = f'<a href="{_x(point.content)}">{_x(point.label)}</a>'
        if point.children:
            lines.append(f'{indent}  <li>{anchor}')
            lines.extend(_render_nav_points(point.children, depth + 2))
            lines.append(f'{indent}  </li>')
        else:
            lines.append(f'{indent}  <li>{anchor}</li>')
    lines.append(f'{indent}</ol>')
    return lines


def build_nav(
    toc: Sequence[NavPoint],
    items: Sequence[Item],
    spine: Sequence[str],
    language: str = "en",
) -> str:
    """Render the EPUB 3 navigation document."""
    if toc:
        entries = _render_nav_points(toc, 2)
    else:
        content = spine_items(items, spine)
        href = _x(content[0].href) if content else "#"
        entries = [
            '    <ol>',
            f'      <li><a href="{href}">Start</a></li>',
            '    </ol>',
        ]

    lang = _x(language)
    return "\n".join([
        '<?xml version="1.0" encoding="UTF-8"?>',
        '<!DOCTYPE html>',
        f'<html xmlns="{XHTML_NAMESPACE}" xmlns:epub="{OPS_NAMESPACE}" lang="{lang}" xml:lang="{lang}">',
        '<head>',
        '  <meta charset="UTF-8"/>',
        '  <title>Table of Contents</title>',
        '</head>',
        '<body>',
        '  <nav epub:type="toc" id="toc">',
        '    <h1>Table of Contents</h1>',
        *entries,
        '  </nav>',
        '</body>',
        '</html>',
    ])


def _encode(content) -> bytes:
    if isinstance(content, bytes):
        return content
    return str(content).encode("utf-8")


def item_directories(items: Sequence[Item]) -> List[str]:
    """Directories implied by item hrefs, parents first, in first-seen order."""
    directories = []
    for item in items:
        parent = posixpath.dirname(item.href)
        chain = []
        while parent:
            chain.append(parent)
            parent = posixpath.dirname(parent)
        for directory in reversed(chain):
            if directory not in directories:
                directories.append(directory)
    return directories


def package_entries(book: "Epub", modified: Optional[datetime] = None) -> List[ArchiveEntry]:
    """Every archive entry of ``book`` in write order."""
    entries = [
        ArchiveEntry("mimetype", MIMETYPE.encode("ascii"), compress=False),
        ArchiveEntry("META-INF/container.xml", CONTAINER_XML.encode("utf-8")),
        ArchiveEntry(
            NAV_PATH,
            build_nav(book.toc, book.items, book.spine, book.metadata.language).encode("utf-8"),
        ),
        ArchiveEntry(
            PACKAGE_PATH,
            build_opf(book.metadata, book.items, book.spine, modified).encode("utf-8"),
        ),
    ]
    for directory in item_directories(book.items):
        entries.append(ArchiveEntry(f"{ROOT_DIR}/{directory}/", b"", compress=False, is_directory=True))
    for item in book.items:
        entries.append(ArchiveEntry(f"{ROOT_DIR}/{item.href}", _encode(item.content)))
    return entries


class ArchiveWriter:
    """Collect entries into an in-memory ZIP archive."""

    def __init__(self):
        self._buffer = io.BytesIO()
        self._zip = zipfile.ZipFile(self._buffer, "w")
        self._names = set()

    def add_entry(self, path: str, data: bytes, compress: bool = True) -> None:
        if path in self._names:
            raise ValueError(f"Duplicate archive entry: {path}")
        self._names.add(path)

        info = zipfile.ZipInfo(path, date_time=datetime.now().timetuple()[:6])
        if path.endswith("/"):
            info.external_attr = (0o40755 << 16) | 0x10
            info.compress_type = zipfile.ZIP_STORED
        else:
            info.external_attr = 0o644 << 16
            info.compress_type = zipfile.ZIP_DEFLATED if compress else zipfile.ZIP_STORED
        self._zip.writestr(info, data)

    def finish(self) -> bytes:
        self._zip.close()
        return self._buffer.getvalue()


def write_archive(entries: Sequence[ArchiveEntry]) -> bytes:
    """Write entries, in order, and return the archive bytes."""
    writer = ArchiveWriter()
    for entry in entries:
        writer.add_entry(entry.path, entry.data, compress=entry.compress)
    archive = writer.finish()
    logger.info(f"Wrote EPUB archive with {len(entries)} entries ({len(archive)} bytes)")
    return archive
