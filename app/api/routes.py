import base64
import io
import logging
import re
from urllib.parse import quote

from fastapi import APIRouter, HTTPException, Request, status
from fastapi.responses import StreamingResponse

from app.api.schemas import BuildRequest
from app.core.config import settings
from app.services.epub import Epub, EpubError

router = APIRouter(prefix="/api", tags=["builder"])
logger = logging.getLogger(__name__)


def get_disposition_header(title: str) -> str:
    """Generate Content-Disposition header with RFC 5987 UTF-8 filename support"""
    epub_name = (title.strip() or "book") + ".epub"

    # RFC 5987 encoding: supports UTF-8 filenames with ASCII fallback
    encoded_name = quote(epub_name.encode('utf-8'), safe='')
    ascii_stem = re.sub(r"[^A-Za-z0-9._-]+", "_", title.strip()).strip("_.")
    ascii_fallback = f"{ascii_stem or 'book'}.epub"

    return f'attachment; filename="{ascii_fallback}"; filename*=UTF-8\'\'{encoded_name}'


def _validate_request_size(request: Request) -> None:
    """
    Reject request bodies above the configured limit.

    Args:
        request: The incoming request

    Raises:
        HTTPException: If the declared body size is too large
    """
    max_size_bytes = settings.max_request_size_mb * 1024 * 1024
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > max_size_bytes:
        raise HTTPException(
            status_code=413,
            detail=f"Request size exceeds maximum allowed size of {settings.max_request_size_mb}MB",
        )


def build_book(payload: BuildRequest) -> Epub:
    """
    Assemble an Epub from a build request.

    Args:
        payload: The validated request body

    Returns:
        The populated book; the caller is responsible for closing it
    """
    book = Epub(payload.metadata)
    try:
        for stylesheet in payload.stylesheets:
            book.add_css(stylesheet.id, stylesheet.css)

        if payload.cover:
            book.add_cover(payload.cover)

        for image in payload.images:
            data = base64.b64decode(image.data, validate=True)
            book.add_image(image.id, image.filename, data, image.media_type)

        for chapter in payload.chapters:
            book.add_chapter(chapter.title, chapter.html, chapter.id)

        for entry in payload.toc:
            book.add_to_toc(entry.id, entry.title, entry.parent_id)
    except Exception:
        book.close()
        raise
    return book


@router.post("/build")
def build_epub(payload: BuildRequest, request: Request) -> StreamingResponse:
    """
    Build an EPUB 3 file from HTML chapters, images and metadata.

    Args:
        payload: Book description
        request: The raw request, used for size checks

    Returns:
        EPUB file as a streaming response

    Raises:
        HTTPException: If the book cannot be built
    """
    logger.info(f"Received build request with {len(payload.chapters)} chapter(s)")

    try:
        _validate_request_size(request)

        book = build_book(payload)
        with book:
            epub_content = book.save()
        logger.info(f"Successfully built EPUB ({len(epub_content)} bytes)")

        disposition = get_disposition_header(book.metadata.title)

        return StreamingResponse(
            io.BytesIO(epub_content),
            media_type="application/epub+zip",
            headers={"Content-Disposition": disposition},
        )

    except HTTPException:
        raise
    except (EpubError, ValueError) as e:
        logger.error(f"Build error: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Build error: {str(e)}",
        )
    except Exception as e:
        logger.error(f"Unexpected error during build: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="An unexpected error occurred during build",
        )
