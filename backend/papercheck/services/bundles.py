"""
Page bundles - ZIP archives of rasterized pages, persisted to the file store.
"""

import io
import uuid
import asyncio
import zipfile
from typing import List, Sequence, Tuple, Union

from papercheck.config import logger, BUNDLE_UPLOAD_BASE_DELAY
from papercheck.errors import BundleTooLarge, EmptyBundle, PersistFailed, StoreError, UnsupportedFormat
from papercheck.services.file_store import FileStore
from papercheck.services.rasterizer import RasterPage, rasterize
from papercheck.utils.file_utils import extract_zip_files

MAX_BUNDLE_BYTES = 50 * 1024 * 1024
MAX_UPLOAD_ATTEMPTS = 3
BACKOFF_MULTIPLIER = 1.5
BUNDLE_IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".webp", ".gif")

# Fixed entry timestamp keeps archives byte-identical for identical pages
_ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)


def build_bundle(pages: Sequence[RasterPage]) -> bytes:
    """Write pages into a ZIP in their given order."""
    if not pages:
        raise EmptyBundle("No pages to package")

    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_STORED) as zf:
        for position, page in enumerate(pages):
            # Name by position, not source index, so skipped pages leave no gaps
            info = zipfile.ZipInfo(f"page_{position + 1:03d}.jpg", date_time=_ZIP_EPOCH)
            zf.writestr(info, page.data)
    return buffer.getvalue()


def unpack_bundle(zip_bytes: bytes) -> List[Tuple[str, bytes]]:
    """Page images of a bundle in page order."""
    try:
        files = extract_zip_files(zip_bytes, BUNDLE_IMAGE_EXTENSIONS)
    except zipfile.BadZipFile as e:
        raise UnsupportedFormat(f"Bundle is not a valid ZIP archive: {e}") from e
    if not files:
        raise EmptyBundle("No supported image files found in bundle")
    return files


class BundlePackager:
    def __init__(self, store: FileStore, base_delay: float = BUNDLE_UPLOAD_BASE_DELAY):
        self.store = store
        self.base_delay = base_delay

    async def package_and_store(
        self,
        pages: Sequence[RasterPage],
        identifier: str,
        category: str = "answer_sheets",
    ) -> str:
        """Archive pages and upload them; returns the bundle's public URL."""
        archive = build_bundle(pages)
        if len(archive) > MAX_BUNDLE_BYTES:
            size_mb = len(archive) / (1024 * 1024)
            raise BundleTooLarge(f"Bundle too large ({size_mb:.1f}MB). Maximum size is 50MB.")

        # uuid keeps concurrent packagings of the same document from colliding
        file_name = f"{category}_{identifier}_{uuid.uuid4()}.zip"
        path = f"{category}_zip/{file_name}"

        last_error = None
        for attempt in range(MAX_UPLOAD_ATTEMPTS):
            try:
                await self.store.upload(path, archive, "application/zip")
                url = self.store.get_public_url(path)
                logger.info(f"📦 Bundle stored: {path} ({len(pages)} pages, {len(archive)} bytes)")
                return url
            except StoreError as e:
                last_error = e
                logger.warning(f"Bundle upload attempt {attempt + 1}/{MAX_UPLOAD_ATTEMPTS} failed: {e}")
                if attempt < MAX_UPLOAD_ATTEMPTS - 1:
                    wait_time = self.base_delay * (BACKOFF_MULTIPLIER ** attempt)
                    logger.info(f"Waiting {wait_time:.1f}s before retrying bundle upload")
                    await asyncio.sleep(wait_time)

        raise PersistFailed(f"Bundle upload failed after {MAX_UPLOAD_ATTEMPTS} attempts: {last_error}")

    async def bundle_document(
        self,
        source: Union[bytes, str],
        identifier: str,
        category: str = "answer_sheets",
        kind: str = None,
    ) -> str:
        """Rasterize a document and store its pages as a bundle."""
        pages = await rasterize(source, kind)
        return await self.package_and_store(pages, identifier, category)
