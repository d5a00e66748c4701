import logging
import os
import tempfile
from pathlib import Path
from typing import List, Mapping, Optional, Union

from app.services.fetcher import FetchError, ResourceFetcher
from app.services.images import (
    SOURCE_DATA,
    SOURCE_REMOTE,
    ImageData,
    ImagePipeline,
    classify_source,
    image_from_data_uri,
    image_from_response,
    media_type_for_extension,
)
from app.services.models import (
    CSS_MEDIA_TYPE,
    XHTML_MEDIA_TYPE,
    ArchiveEntry,
    ChapterInput,
    Item,
    Metadata,
    NavPoint,
    chapter_parts,
)
from app.services.packager import OPS_NAMESPACE, XHTML_NAMESPACE, package_entries, write_archive
from app.services.sanitizer import Sanitizer
from app.services.xhtml import escape_attribute, escape_node_text, parse_html, plain_text_fallback, serialize_children

logger = logging.getLogger(__name__)

COVER_IMAGE_ID = "cover-image"


class EpubError(Exception):
    """Base exception for errors surfaced to the caller while building a book."""
    pass


class CoverFetchError(EpubError):
    """The cover image could not be retrieved."""
    pass


class CoverFormatError(EpubError):
    """The cover source is a data URI of the wrong shape."""
    pass


class Epub:
    """An EPUB 3 document under construction.

    Chapters, images and stylesheets are added in order; the package files
    are only rendered when ``generate`` or ``save`` is called. Instances are
    not safe for concurrent mutation.
    """

    def __init__(
        self,
        metadata: Optional[Union[Metadata, Mapping]] = None,
        fetcher: Optional[ResourceFetcher] = None,
    ):
        if isinstance(metadata, Metadata):
            self.metadata = metadata.model_copy(deep=True)
        else:
            self.metadata = Metadata(**dict(metadata or {}))
        self.items: List[Item] = []
        self.spine: List[str] = []
        self.toc: List[NavPoint] = []
        self.css_files: List[str] = []

        self._unique_id_count = 0
        self._owns_fetcher = fetcher is None
        self._fetcher = fetcher
        self._sanitizer = Sanitizer()
        self._images: Optional[ImagePipeline] = None

    # Resources

    @property
    def fetcher(self) -> ResourceFetcher:
        if self._fetcher is None:
            self._fetcher = ResourceFetcher()
        return self._fetcher

    @property
    def images(self) -> ImagePipeline:
        if self._images is None:
            self._images = ImagePipeline(self.fetcher, self._register_image)
        return self._images

    def close(self) -> None:
        if self._owns_fetcher and self._fetcher is not None:
            self._fetcher.close()
            self._fetcher = None
            self._images = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def _next_id(self, prefix: str) -> str:
        self._unique_id_count += 1
        return f"{prefix}_{self._unique_id_count}"

    def get_item(self, item_id: str) -> Optional[Item]:
        for item in self.items:
            if item.id == item_id:
                return item
        return None

    # Mutators

    def add_chapter(self, title: str, html: ChapterInput, id: Optional[str] = None) -> str:
        """Add a chapter and return the id of its first part.

        Args:
            title: Chapter title used for the TOC and the document ``<title>``
            html: An HTML string, a list of HTML strings, or ``(order, html)`` pairs
            id: Optional id; generated when omitted

        Each part becomes its own content document in the spine. Only the
        first part appears in the table of contents.
        """
        parts = chapter_parts(html)
        chapter_id = id or self._next_id("chapter")
        split = len(parts) > 1

        for number, part in enumerate(parts, start=1):
            part_id = chapter_id if number == 1 else f"{chapter_id}_part{number}"
            part_title = f"{title} (Part {number})" if split else title
            href = f"text/{part_id}.xhtml"

            self.items.append(Item(
                id=part_id,
                href=href,
                media_type=XHTML_MEDIA_TYPE,
                content=self._chapter_document(part_title, part),
            ))
            self.spine.append(part_id)

            if number == 1:
                self.toc.append(NavPoint(id=part_id, label=title, content=href))

        logger.info(f"Added chapter {chapter_id!r} ({len(parts)} part(s))")
        return chapter_id

    def add_image(self, id: str, filename: str, data: bytes, media_type: str) -> None:
        """Register binary image data under ``images/<filename>``."""
        properties = "cover-image" if id == self.metadata.cover else None
        self.items.append(Item(
            id=id,
            href=f"images/{filename}",
            media_type=media_type,
            properties=properties,
            content=data,
        ))

    def add_css(self, id: str, css: str) -> None:
        """Register a stylesheet; it is linked from chapters added after this call."""
        href = f"styles/{id}.css"
        self.items.append(Item(id=id, href=href, media_type=CSS_MEDIA_TYPE, content=css))
        self.css_files.append(href)

    def add_cover(self, source: str) -> str:
        """Set the cover from a data URI, an http(s) URL or a local file path.

        Raises:
            CoverFormatError: If a ``data:`` source is not a base64 image URI
            CoverFetchError: If the image could not be downloaded or read
        """
        image = self._load_cover(source)

        # A new cover replaces the previous one
        self.items = [item for item in self.items if item.id != COVER_IMAGE_ID]
        self.metadata = self.metadata.merged(cover=COVER_IMAGE_ID)
        self.add_image(COVER_IMAGE_ID, f"cover.{image.extension}", image.data, image.media_type)
        logger.info(f"Added cover image ({image.media_type}, {len(image.data)} bytes)")
        return COVER_IMAGE_ID

    def add_to_toc(self, id: str, title: str, parent_id: Optional[str] = None) -> None:
        """Add an entry for item ``id``, nested under ``parent_id`` when given.

        Unknown item ids and unknown parents are ignored.
        """
        item = self.get_item(id)
        if item is None:
            logger.debug(f"Ignoring TOC entry for unknown item {id!r}")
            return

        nav_point = NavPoint(id=id, label=title, content=item.href)
        if not parent_id:
            self.toc.append(nav_point)
            return

        parent = self._find_nav_point(parent_id)
        if parent is None:
            logger.debug(f"Ignoring TOC entry {id!r}: parent {parent_id!r} not found")
            return
        parent.children.append(nav_point)

    def set_metadata(self, metadata: Optional[Mapping] = None, **fields) -> None:
        """Shallow-merge ``metadata`` and keyword fields into the current metadata."""
        self.metadata = self.metadata.merged(**{**dict(metadata or {}), **fields})

    # Output

    def generate(self) -> List[ArchiveEntry]:
        """Render package files and return every archive entry in write order."""
        return package_entries(self)

    def to_bytes(self) -> bytes:
        return write_archive(self.generate())

    def save(self, path: Optional[Union[str, os.PathLike]] = None) -> Optional[bytes]:
        """Build the archive; return it, or write it to ``path``.

        The destination is only touched once the whole archive was built.
        """
        content = self.to_bytes()
        if path is None:
            return content

        destination = Path(path)
        fd, tmp_path = tempfile.mkstemp(dir=str(destination.parent), suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(content)
            os.replace(tmp_path, destination)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise
        logger.info(f"Saved EPUB to {destination}")
        return None

    # Internals

    def _find_nav_point(self, nav_id: str) -> Optional[NavPoint]:
        """Depth-first, pre-order search of the TOC tree."""
        stack = list(reversed(self.toc))
        while stack:
            point = stack.pop()
            if point.id == nav_id:
                return point
            stack.extend(reversed(point.children))
        return None

    def _register_image(self, image: ImageData) -> str:
        image_id = self._next_id("image")
        filename = f"{image_id}.{image.extension}"
        self.add_image(image_id, filename, image.data, image.media_type)
        return f"../images/{filename}"

    def _chapter_body(self, html: str) -> str:
        result = parse_html(html)
        if not result.ok:
            logger.warning(f"Chapter HTML could not be parsed, using plain text: {result.failure.reason}")
            return plain_text_fallback(html)

        body = result.body
        self._sanitizer.clean(body)
        self.images.process(body)
        return serialize_children(body).strip()

    def _chapter_document(self, title: str, html: str) -> str:
        lang = escape_attribute(self.metadata.language)
        links = [
            f'  <link rel="stylesheet" type="text/css" href="../{escape_attribute(css)}"/>'
            for css in self.css_files
        ]
        return "\n".join([
            '<?xml version="1.0" encoding="UTF-8"?>',
            '<!DOCTYPE html>',
            f'<html xmlns="{XHTML_NAMESPACE}" xmlns:epub="{OPS_NAMESPACE}" lang="{lang}" xml:lang="{lang}">',
            '<head>',
            '  <meta charset="UTF-8"/>',
            f'  <title>{escape_node_text(title)}</title>',
            *links,
            '</head>',
            '<body>',
            self._chapter_body(html),
            '</body>',
            '</html>',
        ])

    def _load_cover(self, source: str) -> ImageData:
        kind = classify_source(source)

        if kind == SOURCE_DATA:
            try:
                return image_from_data_uri(source)
            except ValueError as e:
                raise CoverFormatError(f"Invalid cover data URI: {str(e)}") from e

        if kind == SOURCE_REMOTE:
            try:
                response = self.fetcher.fetch(source)
            except FetchError as e:
                raise CoverFetchError(str(e)) from e
            if not response.ok:
                raise CoverFetchError(f"Failed to fetch cover {source}: HTTP {response.status}")
            return image_from_response(source, response, prefer_header=True)

        path = Path(source)
        try:
            data = path.read_bytes()
        except OSError as e:
            raise CoverFetchError(f"Failed to read cover {source}: {str(e)}") from e
        extension = path.suffix.lower().lstrip(".") or "bin"
        return ImageData(data=data, media_type=media_type_for_extension(extension), extension=extension)
