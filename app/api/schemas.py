from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, Field


class StylesheetIn(BaseModel):
    id: str
    css: str


class ImageIn(BaseModel):
    """An image supplied inline as base64."""

    id: str
    filename: str
    data: str = Field(description="Base64 encoded image bytes")
    media_type: str


class ChapterIn(BaseModel):
    title: str
    html: Union[str, List[str], List[Tuple[float, str]]]
    id: Optional[str] = None


class TocEntryIn(BaseModel):
    id: str
    title: str
    parent_id: Optional[str] = None


class BuildRequest(BaseModel):
    """Everything needed to assemble one book.

    Stylesheets are registered first so every chapter links them; the cover
    and images follow, then chapters in order, then extra TOC entries.
    """

    metadata: Dict[str, Any] = Field(default_factory=dict)
    stylesheets: List[StylesheetIn] = Field(default_factory=list)
    cover: Optional[str] = None
    images: List[ImageIn] = Field(default_factory=list)
    chapters: List[ChapterIn] = Field(min_length=1)
    toc: List[TocEntryIn] = Field(default_factory=list)
