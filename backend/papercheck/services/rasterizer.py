"""
PDF/image to normalized page images.

Every page comes out grayscale, downscaled to roughly 75 DPI and JPEG
compressed: small enough to ship inline to a vision model, still legible.
Output is deterministic for identical input bytes.
"""

import io
import asyncio
import base64
from dataclasses import dataclass
from typing import List, Optional, Union

import fitz
from PIL import Image, ImageOps, UnidentifiedImageError

from papercheck.config import logger, MAX_CONCURRENT_RASTERIZATIONS
from papercheck.errors import RasterizationFailed, UnsupportedFormat
from papercheck.utils.file_utils import detect_document_kind, download_bytes

MAX_PAGES = 4
PDF_RENDER_DPI = 75
IMAGE_SCALE = 0.25  # ~300 DPI scans down to ~75 DPI
MIN_LONG_EDGE = 800
JPEG_QUALITY = 65
# Plain channel average rather than ITU-R 601 luma weights
GRAYSCALE_MATRIX = (1 / 3, 1 / 3, 1 / 3, 0)

# Rendering holds whole pages in memory
conversion_semaphore = asyncio.Semaphore(MAX_CONCURRENT_RASTERIZATIONS)


@dataclass(frozen=True)
class RasterPage:
    """One normalized page image."""
    index: int  # 0-based position in the source document
    data: bytes
    width: int
    height: int
    mime_type: str = "image/jpeg"

    @property
    def filename(self) -> str:
        # Zero-padded so lexical order == page order inside bundles
        return f"page_{self.index + 1:03d}.jpg"

    def to_base64(self) -> str:
        return base64.b64encode(self.data).decode()


def _flatten_to_rgb(img: Image.Image) -> Image.Image:
    if img.mode in ("RGBA", "LA", "P"):
        # Transparency goes onto white, as scanners and PDF viewers show it
        rgba = img.convert("RGBA")
        background = Image.new("RGB", rgba.size, (255, 255, 255))
        background.paste(rgba, mask=rgba.split()[-1])
        return background
    if img.mode != "RGB":
        return img.convert("RGB")
    return img


def _to_grayscale_jpeg(img: Image.Image) -> bytes:
    gray = _flatten_to_rgb(img).convert("L", GRAYSCALE_MATRIX)
    buffer = io.BytesIO()
    gray.save(buffer, format="JPEG", quality=JPEG_QUALITY, optimize=True)
    return buffer.getvalue()


def _target_size(width: int, height: int) -> tuple:
    long_edge = max(width, height)
    if long_edge <= MIN_LONG_EDGE:
        return width, height
    scale = max(IMAGE_SCALE, MIN_LONG_EDGE / long_edge)
    return max(1, round(width * scale)), max(1, round(height * scale))


def _render_pdf_page(page) -> Image.Image:
    zoom = PDF_RENDER_DPI / 72.0
    pix = page.get_pixmap(matrix=fitz.Matrix(zoom, zoom), alpha=False)
    return Image.frombytes("RGB", (pix.width, pix.height), pix.samples)


def _make_page(index: int, img: Image.Image) -> RasterPage:
    data = _to_grayscale_jpeg(img)
    return RasterPage(index=index, data=data, width=img.width, height=img.height)


def pdf_to_pages(pdf_bytes: bytes, max_pages: int = MAX_PAGES) -> List[RasterPage]:
    """Render the first max_pages pages of a PDF; later pages are dropped."""
    try:
        doc = fitz.open(stream=pdf_bytes, filetype="pdf")
    except Exception as e:
        raise UnsupportedFormat(f"Could not open document as PDF: {e}") from e

    try:
        if doc.needs_pass:
            raise UnsupportedFormat("PDF is password protected")
        if doc.page_count == 0:
            raise UnsupportedFormat("PDF has no pages")

        total = doc.page_count
        if total > max_pages:
            logger.info(f"PDF has {total} pages, rasterizing first {max_pages}")

        pages = []
        for page_num in range(min(total, max_pages)):
            try:
                img = _render_pdf_page(doc[page_num])
                pages.append(_make_page(page_num, img))
            except Exception as e:
                logger.warning(f"⚠️ Skipping PDF page {page_num + 1}: {e}")
    finally:
        doc.close()

    if not pages:
        raise RasterizationFailed("No PDF pages could be rendered")
    logger.info(f"Rasterized PDF into {len(pages)} page images")
    return pages


def image_to_pages(image_bytes: bytes) -> List[RasterPage]:
    """Normalize a single image (first frame for animated formats)."""
    try:
        img = Image.open(io.BytesIO(image_bytes))
        img.load()
    except (UnidentifiedImageError, OSError) as e:
        raise UnsupportedFormat(f"Could not open document as an image: {e}") from e

    try:
        img = _flatten_to_rgb(ImageOps.exif_transpose(img))
        resized = img.resize(_target_size(img.width, img.height), Image.LANCZOS)
        return [_make_page(0, resized)]
    except Exception as e:
        logger.warning(f"⚠️ Image page failed to render: {e}")
        raise RasterizationFailed(f"Image could not be normalized: {e}") from e


def rasterize_bytes(data: bytes, kind: Optional[str] = None) -> List[RasterPage]:
    """Synchronous core of rasterize(); kind is sniffed from the bytes when omitted."""
    kind = kind or detect_document_kind(data)
    if kind == "pdf":
        return pdf_to_pages(data)
    if kind == "image":
        return image_to_pages(data)
    raise UnsupportedFormat(f"Cannot rasterize document of kind '{kind}'")


async def rasterize(source: Union[bytes, str], kind: Optional[str] = None) -> List[RasterPage]:
    """
    Convert a PDF or image, given as bytes or a URL, into at most MAX_PAGES
    normalized page images in source order.
    """
    if isinstance(source, str):
        data = await download_bytes(source)
        kind = kind or detect_document_kind(data, source)
    else:
        data = source

    async with conversion_semaphore:
        return await asyncio.to_thread(rasterize_bytes, data, kind)
