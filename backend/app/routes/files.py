"""
Rutas del usuario y de sus archivos listos para descargar.

    GET    /api/user                              -> plan y cuota
    GET    /api/user-files                        -> archivos listos (24 h)
    POST   /api/user-files/{id}/mark-downloaded   -> marca como descargado
    DELETE /api/user-files/{id}                   -> borra fila y blob
    POST   /api/cleanup/expired-files             -> vence filas viejas
"""

import asyncio

from fastapi import APIRouter, Depends

from app.dependencies import get_pipeline
from app.models.schemas import CleanupResponse, UserFileResponse, UserFilesResponse, UserResponse
from app.security import CurrentUser, get_current_user
from app.services.pipeline import PipelineService

router = APIRouter()


@router.get("/api/user", response_model=UserResponse)
async def get_user(
    user: CurrentUser = Depends(get_current_user),
    pipeline: PipelineService = Depends(get_pipeline),
):
    status = await asyncio.to_thread(pipeline.ledger.preview, user.id)
    return UserResponse(
        id=user.id,
        email=user.email,
        plan=status.plan,
        conversion_count=status.used,
        monthly_conversion_count=status.monthly_used,
        daily_limit=status.limit,
        remaining=status.remaining,
        last_reset=status.last_reset,
    )


@router.get("/api/user-files", response_model=UserFilesResponse)
async def list_user_files(
    user: CurrentUser = Depends(get_current_user),
    pipeline: PipelineService = Depends(get_pipeline),
):
    rows = await pipeline.files.list_ready(user.id)
    return UserFilesResponse(files=[UserFileResponse.from_record(row) for row in rows])


@router.post("/api/user-files/{file_id}/mark-downloaded", response_model=UserFileResponse)
async def mark_downloaded(
    file_id: int,
    user: CurrentUser = Depends(get_current_user),
    pipeline: PipelineService = Depends(get_pipeline),
):
    row = await pipeline.files.mark_downloaded(user.id, file_id)
    return UserFileResponse.from_record(row)


@router.delete("/api/user-files/{file_id}")
async def delete_user_file(
    file_id: int,
    user: CurrentUser = Depends(get_current_user),
    pipeline: PipelineService = Depends(get_pipeline),
):
    await pipeline.files.delete(user.id, file_id)
    return {"success": True}


@router.post("/api/cleanup/expired-files", response_model=CleanupResponse)
async def cleanup_expired_files(
    user: CurrentUser = Depends(get_current_user),
    pipeline: PipelineService = Depends(get_pipeline),
):
    expired = await pipeline.files.expire()
    return CleanupResponse(expired=expired)
