from __future__ import annotations

import mimetypes

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import Response

from imageflow.domain.errors import PipelineError
from imageflow.infrastructure.api.dependencies import get_storage
from imageflow.infrastructure.storage.base import StoragePort

router = APIRouter(prefix="/api/uploads", tags=["Files"])


@router.get(
    "/{name:path}",
    summary="Download Stored File",
    responses={200: {"content": {"image/*": {}}, "description": "Image file content"}},
)
def serve_upload(name: str, storage: StoragePort = Depends(get_storage)):
    try:
        data = storage.read(name)
    except PipelineError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc
    media_type = mimetypes.guess_type(name)[0] or "application/octet-stream"
    return Response(content=data, media_type=media_type)
