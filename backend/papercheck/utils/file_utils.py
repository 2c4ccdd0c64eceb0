"""
File utilities - type detection, URL helpers, downloads, ZIP extraction.
"""

import io
import os
import asyncio
import zipfile
from typing import List, Optional, Tuple
from urllib.parse import urlsplit

import httpx

from papercheck.config import logger, DOWNLOAD_ATTEMPTS, DOWNLOAD_RETRY_BASE_DELAY, DOWNLOAD_TIMEOUT_SECONDS
from papercheck.errors import DownloadFailed, DownloadTimeout

IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".webp", ".gif", ".bmp", ".tif", ".tiff")

NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
}


def url_extension(name_or_url: str) -> str:
    """Lower-case extension of a file name or URL path, ignoring any query string."""
    if not name_or_url:
        return ""
    path = urlsplit(name_or_url).path if "://" in name_or_url else name_or_url.split("?", 1)[0]
    return os.path.splitext(path)[1].lower()


def detect_document_kind(data: Optional[bytes] = None, name_or_url: str = "") -> str:
    """Return 'pdf', 'image', 'text' or 'unknown' from magic bytes first, then extension."""
    if data:
        if data[:5] == b"%PDF-":
            return "pdf"
        if data[:8] == b"\x89PNG\r\n\x1a\n" or data[:3] == b"\xff\xd8\xff" or data[:4] in (b"GIF8", b"RIFF"):
            return "image"
    ext = url_extension(name_or_url)
    if ext == ".pdf":
        return "pdf"
    if ext in IMAGE_EXTENSIONS:
        return "image"
    if ext == ".txt":
        return "text"
    return "unknown"


def add_cache_buster(url: str, timestamp: int) -> str:
    """Append cache=<timestamp> so CDNs don't serve a stale copy of a reused filename."""
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}cache={timestamp}"


def strip_query(url: str) -> str:
    return url.split("?", 1)[0]


async def download_bytes(
    url: str,
    timeout: float = DOWNLOAD_TIMEOUT_SECONDS,
    max_attempts: int = DOWNLOAD_ATTEMPTS,
    retry_delay: float = DOWNLOAD_RETRY_BASE_DELAY,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> bytes:
    """
    Fetch a URL, bypassing caches. Raises DownloadTimeout / DownloadFailed.

    Timeouts, connection errors and 5xx/429 answers are retried with a
    longer timeout each attempt (30s, 60s, 90s) and 1s, 2s, ... backoff.
    Other non-200 answers fail at once.
    """
    last_error = None
    for attempt in range(max_attempts):
        attempt_timeout = timeout * (attempt + 1)
        try:
            async with httpx.AsyncClient(timeout=attempt_timeout, follow_redirects=True, transport=transport) as client:
                response = await client.get(url, headers=NO_CACHE_HEADERS)
        except httpx.TimeoutException as e:
            logger.warning(f"⏱️ Download attempt {attempt + 1}/{max_attempts} timed out after {attempt_timeout:g}s: {url}")
            last_error = DownloadTimeout(f"Timeout while downloading {url}")
            last_error.__cause__ = e
        except httpx.HTTPError as e:
            logger.warning(f"Download attempt {attempt + 1}/{max_attempts} failed for {url}: {e}")
            last_error = DownloadFailed(f"Failed to download {url}: {e}")
            last_error.__cause__ = e
        else:
            if response.status_code == 200 and response.content:
                if attempt:
                    logger.info(f"✅ Downloaded {url} on attempt {attempt + 1}")
                return response.content
            if response.status_code == 200:
                raise DownloadFailed(f"Failed to download {url}: empty body")
            last_error = DownloadFailed(f"Failed to download {url}: HTTP {response.status_code}")
            if response.status_code < 500 and response.status_code != 429:
                raise last_error
            logger.warning(f"Download attempt {attempt + 1}/{max_attempts} got HTTP {response.status_code}: {url}")

        if attempt < max_attempts - 1:
            await asyncio.sleep(min(retry_delay * (2 ** attempt), 10))

    logger.error(f"❌ Giving up on {url} after {max_attempts} attempts: {last_error}")
    raise last_error


def extract_zip_files(zip_bytes: bytes, extensions: Tuple[str, ...] = IMAGE_EXTENSIONS) -> List[Tuple[str, bytes]]:
    """
    Extract files from a ZIP archive.
    Returns (filename, file_bytes) tuples sorted by name, which is page order for bundles.
    """
    results = []
    with zipfile.ZipFile(io.BytesIO(zip_bytes)) as zf:
        for name in zf.namelist():
            # Skip directories and hidden files
            base = os.path.basename(name)
            if name.endswith("/") or name.startswith("__MACOSX") or base.startswith("."):
                continue
            if os.path.splitext(name)[1].lower() in extensions:
                results.append((base, zf.read(name)))
            else:
                logger.warning(f"Skipping unsupported file in ZIP: {name}")
    results.sort(key=lambda item: item[0])
    return results
