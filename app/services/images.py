"""Resolve images referenced by chapter HTML into container-local files."""

import base64
import binascii
import logging
import posixpath
import re
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple, Union
from urllib.parse import unquote, urlparse

from bs4 import Tag

from app.services.fetcher import FetchError, FetchResponse, ResourceFetcher

logger = logging.getLogger(__name__)

MEDIA_TYPES = {
    'jpg': 'image/jpeg',
    'jpeg': 'image/jpeg',
    'png': 'image/png',
    'gif': 'image/gif',
    'svg': 'image/svg+xml',
    'webp': 'image/webp',
}
DEFAULT_MEDIA_TYPE = 'application/octet-stream'

# Declared data URI subtypes that differ from the file extension
SUBTYPE_EXTENSIONS = {
    'jpeg': 'jpg',
    'svg+xml': 'svg',
}

DATA_URI_PATTERN = re.compile(r'^data:image/([A-Za-z0-9.+-]+);base64,(.*)$', re.DOTALL)
REMOTE_SCHEMES = ('http', 'https', 'blob')
PRESENTATION_ATTRIBUTES = ('width', 'height')

SOURCE_DATA = 'data'
SOURCE_REMOTE = 'remote'
SOURCE_LOCAL = 'local'


@dataclass
class ImageData:
    """Binary image content plus what it should be stored as."""

    data: bytes
    media_type: str
    extension: str


def media_type_for_extension(extension: Optional[str]) -> str:
    if not extension:
        return DEFAULT_MEDIA_TYPE
    return MEDIA_TYPES.get(extension.lower().lstrip('.'), DEFAULT_MEDIA_TYPE)


def extension_for_media_type(media_type: Optional[str]) -> Optional[str]:
    if not media_type:
        return None
    media_type = media_type.split(';', 1)[0].strip().lower()
    for extension, known in MEDIA_TYPES.items():
        if known == media_type:
            return extension
    return None


def url_extension(url: str) -> Optional[str]:
    """Return the lower-cased file extension of a URL or path, if any."""
    path = unquote(urlparse(url).path)
    extension = posixpath.splitext(path)[1].lower().lstrip('.')
    return extension or None


def parse_srcset(srcset: str) -> List[Tuple[str, str]]:
    """Split a ``srcset`` value into ``(url, descriptor)`` candidates.

    URLs run up to the next whitespace, so commas inside a URL (data URIs)
    survive; a trailing comma on the URL ends the candidate.
    """
    candidates = []
    position = 0
    length = len(srcset)
    while position < length:
        while position < length and (srcset[position].isspace() or srcset[position] == ','):
            position += 1
        if position >= length:
            break

        end = position
        while end < length and not srcset[end].isspace():
            end += 1
        url = srcset[position:end]
        position = end

        if url.endswith(','):
            url = url.rstrip(',')
            descriptor = ''
        else:
            comma = srcset.find(',', position)
            if comma == -1:
                comma = length
            descriptor = srcset[position:comma].strip()
            position = comma + 1

        if url:
            candidates.append((url, descriptor))
    return candidates


def descriptor_width(descriptor: str) -> int:
    """Numeric width of an ``Nw`` descriptor; anything else counts as 0."""
    for token in descriptor.split():
        if token.endswith('w') and token[:-1].isdigit():
            return int(token[:-1])
    return 0


def select_srcset_candidate(srcset: str) -> Optional[str]:
    """Pick the candidate with the largest width descriptor."""
    best_url = None
    best_width = -1
    for url, descriptor in parse_srcset(srcset):
        width = descriptor_width(descriptor)
        if width > best_width:
            best_url, best_width = url, width
    return best_url


def preferred_source(img: Tag) -> Optional[str]:
    srcset = img.get('srcset')
    if srcset:
        candidate = select_srcset_candidate(srcset)
        if candidate:
            return candidate
    src = img.get('src')
    return src.strip() if src else None


def classify_source(url: str) -> str:
    if url.lower().startswith('data:'):
        return SOURCE_DATA
    scheme = urlparse(url).scheme.lower()
    if scheme in REMOTE_SCHEMES:
        return SOURCE_REMOTE
    return SOURCE_LOCAL


def image_from_data_uri(uri: str) -> ImageData:
    """Decode a ``data:image/<subtype>;base64,<payload>`` URI.

    Raises:
        ValueError: If the URI does not have that shape or the payload is not base64
    """
    match = DATA_URI_PATTERN.match(uri.strip())
    if not match:
        raise ValueError("Data URI must look like data:image/<type>;base64,<payload>")

    subtype = match.group(1).lower()
    payload = re.sub(r'\s+', '', unquote(match.group(2)))
    try:
        data = base64.b64decode(payload, validate=True)
    except binascii.Error as e:
        raise ValueError(f"Invalid base64 payload in data URI: {str(e)}") from e

    extension = SUBTYPE_EXTENSIONS.get(subtype, subtype)
    return ImageData(data=data, media_type=media_type_for_extension(extension), extension=extension)


def image_from_response(url: str, response: FetchResponse, prefer_header: bool = False) -> ImageData:
    """Work out media type and extension of a fetched image.

    By default the URL extension wins and an ``image/*`` ``Content-Type``
    only fills in when the extension is unknown; ``prefer_header`` flips that.
    """
    extension = url_extension(url)
    header_type = response.content_type
    header_extension = extension_for_media_type(header_type)

    if prefer_header and header_extension:
        return ImageData(response.content, MEDIA_TYPES[header_extension], header_extension)
    if extension in MEDIA_TYPES:
        return ImageData(response.content, MEDIA_TYPES[extension], extension)
    if header_extension:
        return ImageData(response.content, MEDIA_TYPES[header_extension], header_extension)
    return ImageData(response.content, DEFAULT_MEDIA_TYPE, extension or 'bin')


class ImagePipeline:
    """Rewrite ``<img>`` references of a parsed fragment to packaged images.

    ``register`` stores an image in the document and returns the href the
    chapter should use for it. Sources resolved once are reused for the
    lifetime of the pipeline.
    """

    def __init__(self, fetcher: ResourceFetcher, register: Callable[[ImageData], str]):
        self.fetcher = fetcher
        self.register = register
        self._resolved: Dict[str, str] = {}

    def process(self, root: Tag) -> int:
        """Resolve images under ``root`` in place. Returns how many were rewritten."""
        planned = []
        for img in root.find_all('img'):
            source = preferred_source(img)
            if not source:
                continue
            kind = classify_source(source)
            if kind == SOURCE_LOCAL:
                continue
            planned.append((img, source, kind))

        remote = [
            source for _, source, kind in planned
            if kind == SOURCE_REMOTE and source not in self._resolved
        ]
        responses = self.fetcher.fetch_many(remote)

        rewritten = 0
        for img, source, kind in planned:
            href = self._resolved.get(source)
            if href is None:
                image = self._load(source, kind, responses)
                if image is None:
                    continue
                href = self.register(image)
                self._resolved[source] = href
            img['src'] = href
            if 'srcset' in img.attrs:
                del img['srcset']
            rewritten += 1

        self._strip_presentation_attributes(root)
        return rewritten

    def _load(
        self,
        source: str,
        kind: str,
        responses: Dict[str, Union[FetchResponse, FetchError]],
    ) -> Optional[ImageData]:
        if kind == SOURCE_DATA:
            try:
                return image_from_data_uri(source)
            except ValueError as e:
                logger.warning(f"Skipping inline image: {str(e)}")
                return None

        result = responses.get(source)
        if isinstance(result, FetchError):
            logger.warning(f"Keeping remote image reference: {str(result)}")
            return None
        if result is None or not result.ok:
            status = result.status if result is not None else 'no response'
            logger.warning(f"Keeping remote image reference {source}: HTTP {status}")
            return None
        return image_from_response(source, result)

    @staticmethod
    def _strip_presentation_attributes(root: Tag) -> None:
        for element in root.find_all(True):
            for name in PRESENTATION_ATTRIBUTES:
                if name in element.attrs:
                    del element.attrs[name]
