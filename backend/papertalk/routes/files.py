"""Serves files stored in GridFS (page images, merged PDFs, feedback audio)."""

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import Response

from papertalk.deps import get_services
from papertalk.services import Services

router = APIRouter(tags=["files"])


@router.get("/files/{file_id}")
async def get_file(file_id: str, services: Services = Depends(get_services)):
    if services.store is None:
        raise HTTPException(status_code=404, detail="File not found")

    found = await services.store.get(file_id)
    if not found:
        raise HTTPException(status_code=404, detail="File not found")

    data, content_type, filename = found
    return Response(
        content=data,
        media_type=content_type,
        headers={"Content-Disposition": f'inline; filename="{filename}"'},
    )
