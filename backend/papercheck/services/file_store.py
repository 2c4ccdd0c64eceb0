"""
File store backed by GridFS.

Blob names are opaque to the pipeline. Public URLs point at the
/api/files/{name} route, which streams the latest version of the name.
"""

import asyncio
from typing import Dict, List, Optional, Protocol
from urllib.parse import quote

from gridfs import GridFS, NoFile
from pymongo.errors import PyMongoError

from papercheck.config import logger, PUBLIC_FILES_BASE_URL
from papercheck.errors import StoreError


class FileStore(Protocol):
    async def upload(self, name: str, data: bytes, content_type: str) -> str: ...

    def get_public_url(self, name: str) -> str: ...

    async def read(self, name: str) -> Optional[tuple]: ...

    async def list(self) -> List[Dict]: ...

    async def delete(self, name: str) -> None: ...

    async def copy(self, src: str, dst: str) -> None: ...


class GridFSFileStore:
    """FileStore over a synchronous GridFS handle (calls run in a worker thread)."""

    def __init__(self, fs: GridFS, base_url: str = PUBLIC_FILES_BASE_URL):
        self._fs = fs
        self._base_url = base_url.rstrip("/")

    def get_public_url(self, name: str) -> str:
        return f"{self._base_url}/{quote(name, safe='/')}"

    async def upload(self, name: str, data: bytes, content_type: str) -> str:
        try:
            file_id = await asyncio.to_thread(
                self._fs.put, data, filename=name, contentType=content_type
            )
        except PyMongoError as e:
            raise StoreError(f"Upload of {name} failed: {e}") from e
        logger.info(f"Stored {name} ({len(data)} bytes) in GridFS")
        return str(file_id)

    def _read_sync(self, name: str) -> Optional[tuple]:
        try:
            grid_out = self._fs.get_last_version(filename=name)
        except NoFile:
            return None
        return grid_out.read(), getattr(grid_out, "content_type", None) or "application/octet-stream"

    async def read(self, name: str) -> Optional[tuple]:
        """(bytes, content_type) of the latest version, or None if absent."""
        try:
            return await asyncio.to_thread(self._read_sync, name)
        except PyMongoError as e:
            raise StoreError(f"Read of {name} failed: {e}") from e

    def _list_sync(self) -> List[Dict]:
        files = []
        for grid_out in self._fs.find():
            files.append({
                "name": grid_out.filename,
                "url": self.get_public_url(grid_out.filename),
                "createdAt": grid_out.upload_date.isoformat() if grid_out.upload_date else None,
            })
        return files

    async def list(self) -> List[Dict]:
        try:
            return await asyncio.to_thread(self._list_sync)
        except PyMongoError as e:
            raise StoreError(f"Listing files failed: {e}") from e

    def _delete_sync(self, name: str) -> int:
        deleted = 0
        for grid_out in self._fs.find({"filename": name}):
            self._fs.delete(grid_out._id)
            deleted += 1
        return deleted

    async def delete(self, name: str) -> None:
        try:
            deleted = await asyncio.to_thread(self._delete_sync, name)
        except PyMongoError as e:
            raise StoreError(f"Delete of {name} failed: {e}") from e
        logger.info(f"Deleted {deleted} GridFS version(s) of {name}")

    async def copy(self, src: str, dst: str) -> None:
        found = await self.read(src)
        if found is None:
            raise StoreError(f"Cannot copy missing file {src}")
        data, content_type = found
        await self.upload(dst, data, content_type)


def get_file_store() -> GridFSFileStore:
    from papercheck.database import fs
    return GridFSFileStore(fs)
