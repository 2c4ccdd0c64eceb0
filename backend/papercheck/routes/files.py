"""Public file access - resolves the URLs handed out by the file store."""

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import Response

from papercheck.deps import get_store
from papercheck.errors import StoreError
from papercheck.utils.file_utils import NO_CACHE_HEADERS

router = APIRouter(tags=["files"])


@router.get("/files/{name:path}")
async def get_file(name: str, store=Depends(get_store)):
    try:
        found = await store.read(name)
    except StoreError as e:
        raise HTTPException(status_code=502, detail=str(e))
    if found is None:
        raise HTTPException(status_code=404, detail="File not found")

    data, content_type = found
    return Response(content=data, media_type=content_type, headers=NO_CACHE_HEADERS)
