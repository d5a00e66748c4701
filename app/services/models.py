"""Data models for the in-memory EPUB document."""

import uuid
from dataclasses import dataclass, field
from datetime import date
from typing import List, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field

from app.core.config import settings

XHTML_MEDIA_TYPE = "application/xhtml+xml"
CSS_MEDIA_TYPE = "text/css"


def _new_identifier() -> str:
    return f"urn:uuid:{uuid.uuid4()}"


def _today() -> str:
    return date.today().isoformat()


class Metadata(BaseModel):
    """Book-level metadata written to the package document."""

    model_config = ConfigDict(extra="forbid")

    title: str = Field(default_factory=lambda: settings.default_title)
    creator: str = Field(default_factory=lambda: settings.default_creator)
    language: str = Field(default_factory=lambda: settings.default_language)
    identifier: str = Field(default_factory=_new_identifier)
    date: str = Field(default_factory=_today)
    publisher: Optional[str] = None
    description: Optional[str] = None
    rights: Optional[str] = None
    contributor: Optional[str] = None
    cover: Optional[str] = None
    tags: List[str] = Field(default_factory=list)

    def merged(self, **fields) -> "Metadata":
        """Return a copy with ``fields`` shallow-merged over this metadata."""
        return Metadata.model_validate({**self.model_dump(), **fields})


@dataclass
class Item:
    """A file registered in the package manifest."""

    id: str
    href: str
    media_type: str
    content: Union[str, bytes]
    properties: Optional[str] = None

    @property
    def is_xhtml(self) -> bool:
        return self.media_type == XHTML_MEDIA_TYPE


class NavPoint(BaseModel):
    """Single entry in the table of contents."""

    id: str
    label: str
    content: str
    children: List["NavPoint"] = Field(default_factory=list)


# Chapter input variants. Callers may pass plain Python values; they are
# normalized to one of these at the add_chapter boundary.


@dataclass(frozen=True)
class Html:
    text: str


@dataclass(frozen=True)
class HtmlParts:
    parts: Tuple[str, ...]


@dataclass(frozen=True)
class OrderedHtmlParts:
    parts: Tuple[Tuple[float, str], ...]


ChapterSource = Union[Html, HtmlParts, OrderedHtmlParts]
ChapterInput = Union[ChapterSource, str, Sequence[str], Sequence[Sequence]]


def to_chapter_source(value: ChapterInput) -> ChapterSource:
    """Classify a raw add_chapter argument into a chapter input variant."""
    if isinstance(value, (Html, HtmlParts, OrderedHtmlParts)):
        return value
    if isinstance(value, str):
        return Html(value)
    entries = list(value)
    if entries and all(isinstance(entry, str) for entry in entries):
        return HtmlParts(tuple(entries))
    pairs = []
    for entry in entries:
        if isinstance(entry, str) or len(entry) != 2:
            raise ValueError(
                "Chapter parts must be all strings or all (order, html) pairs"
            )
        order, text = entry
        pairs.append((float(order), str(text)))
    return OrderedHtmlParts(tuple(pairs))


def chapter_parts(value: ChapterInput) -> List[str]:
    """Normalize chapter input to the ordered list of HTML parts."""
    source = to_chapter_source(value)
    if isinstance(source, Html):
        parts = [source.text]
    elif isinstance(source, HtmlParts):
        parts = list(source.parts)
    else:
        # sorted() is stable, so equal orders keep their input sequence
        parts = [text for _, text in sorted(source.parts, key=lambda pair: pair[0])]

    if not parts:
        raise ValueError("Chapter content must contain at least one HTML part")
    return parts


@dataclass
class ArchiveEntry:
    """A single file destined for the EPUB archive."""

    path: str
    data: bytes
    compress: bool = True
    is_directory: bool = field(default=False)
