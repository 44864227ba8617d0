"""
Page rasterization.
Turns a stored source document into an ordered list of page images for the
reasoning collaborator. PDFs are rendered with pdf2image; image uploads pass
through unchanged.
"""

import asyncio
import base64
import io
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import structlog
from PIL import Image, UnidentifiedImageError
from pdf2image import convert_from_bytes
from pdf2image.exceptions import PDFInfoNotInstalledError, PDFPageCountError, PDFSyntaxError

from register_audit.errors import RasterizationError
from register_audit.storage.backends import ObjectStore

logger = structlog.get_logger(__name__)

IMAGE_MIME_BY_FORMAT = {
    "PNG": "image/png",
    "JPEG": "image/jpeg",
    "WEBP": "image/webp",
    "TIFF": "image/tiff",
}


@dataclass
class PageImage:
    page_index: int
    data: bytes
    mime_type: str = "image/png"
    width: int = 0
    height: int = 0
    source_ref: Optional[str] = None

    def to_data_uri(self) -> str:
        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.mime_type};base64,{encoded}"


class Rasterizer(ABC):
    """Source reference in, ordered non-empty page images out."""

    @abstractmethod
    async def rasterize(self, source_ref: str) -> list[PageImage]:
        ...

    async def rasterize_all(self, source_refs: list[str]) -> list[PageImage]:
        """Rasterize several sources and renumber pages across them in order."""
        pages: list[PageImage] = []
        for ref in source_refs:
            for page in await self.rasterize(ref):
                page.page_index = len(pages)
                pages.append(page)
        if not pages:
            raise RasterizationError("No pages produced from the submitted documents")
        return pages


# ─── PDF Rendering ────────────────────────────────────────────

def render_pdf_bytes(pdf_bytes: bytes, dpi: int = 200, poppler_path: Optional[str] = None) -> list[PageImage]:
    """
    Render all pages of a PDF to PNG bytes.
    Returns list of PageImage in page order.
    """
    try:
        images = convert_from_bytes(
            pdf_bytes,
            dpi=dpi,
            fmt="png",
            thread_count=2,
            poppler_path=poppler_path,
        )
    except (PDFInfoNotInstalledError, PDFPageCountError, PDFSyntaxError) as e:
        logger.error("pdf_render_failed", error=str(e))
        raise RasterizationError(f"Failed to render PDF: {e}") from e

    rendered = []
    for i, img in enumerate(images):
        buf = io.BytesIO()
        img.save(buf, "PNG")
        rendered.append(PageImage(
            page_index=i,
            data=buf.getvalue(),
            mime_type="image/png",
            width=img.width,
            height=img.height,
        ))

    logger.info("pdf_rendered", page_count=len(rendered), dpi=dpi)
    return rendered


def inspect_image(data: bytes) -> PageImage:
    """Wrap an uploaded image as a single page, reading its size and format."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            mime_type = IMAGE_MIME_BY_FORMAT.get(img.format or "", "image/png")
            return PageImage(page_index=0, data=data, mime_type=mime_type, width=img.width, height=img.height)
    except UnidentifiedImageError as e:
        raise RasterizationError("Uploaded file is neither a PDF nor a readable image") from e


class PdfRasterizer(Rasterizer):
    """Reads sources from the object store and renders them off the event loop."""

    def __init__(self, store: ObjectStore, dpi: int = 200, poppler_path: Optional[str] = None):
        self.store = store
        self.dpi = dpi
        self.poppler_path = poppler_path

    async def rasterize(self, source_ref: str) -> list[PageImage]:
        data = await self.store.get(source_ref)
        if data is None:
            raise RasterizationError(f"Source document not found: {source_ref}")

        if data[:5] == b"%PDF-":
            pages = await asyncio.to_thread(render_pdf_bytes, data, self.dpi, self.poppler_path)
        else:
            pages = [await asyncio.to_thread(inspect_image, data)]

        if not pages:
            raise RasterizationError(f"No pages rendered from {source_ref}")
        for page in pages:
            page.source_ref = source_ref
        return pages
