"""
Rutas de abort y limpieza.

    POST   /api/abort/upload       -> aborta una subida encolada
    POST   /api/abort/all-uploads  -> aborta todo lo del usuario
    POST   /api/abort/conversion   -> aborta una conversion y borra el original
    DELETE /api/files              -> borrado en lote (solo rutas propias)

El cliente llama a estos endpoints DESPUES de cancelar sus propios
requests en vuelo. Abortar algo que ya termino responde 200 igual.
"""

from fastapi import APIRouter, Depends

from app.dependencies import get_pipeline
from app.errors import NoFileProvidedError
from app.models.schemas import (
    AbortConversionRequest,
    AbortResponse,
    AbortUploadRequest,
    DeleteFilesRequest,
    DeleteFilesResponse,
    DeleteResult,
)
from app.security import CurrentUser, get_current_user
from app.services.pipeline import PipelineService

router = APIRouter()


@router.post("/api/abort/upload", response_model=AbortResponse)
async def abort_upload(
    body: AbortUploadRequest,
    user: CurrentUser = Depends(get_current_user),
    pipeline: PipelineService = Depends(get_pipeline),
):
    changed = pipeline.aborts.abort_upload(user.id, body.upload_id)
    return AbortResponse(
        aborted=int(changed),
        message="Upload aborted" if changed else "Upload already finished",
    )


@router.post("/api/abort/all-uploads", response_model=AbortResponse)
async def abort_all_uploads(
    user: CurrentUser = Depends(get_current_user),
    pipeline: PipelineService = Depends(get_pipeline),
):
    count = pipeline.aborts.abort_all(user.id)
    return AbortResponse(aborted=count, message=f"Aborted {count} active operations")


@router.post("/api/abort/conversion", response_model=AbortResponse)
async def abort_conversion(
    body: AbortConversionRequest,
    user: CurrentUser = Depends(get_current_user),
    pipeline: PipelineService = Depends(get_pipeline),
):
    if not (body.file_path or body.upload_id or body.job_id):
        raise NoFileProvidedError("No file path, upload id or job id provided")
    count = await pipeline.aborts.abort_conversion(
        user.id,
        file_path=body.file_path,
        upload_id=body.upload_id,
        job_id=body.job_id,
    )
    return AbortResponse(aborted=count, message="Conversion aborted and cleaned up")


@router.delete("/api/files", response_model=DeleteFilesResponse)
async def delete_files(
    body: DeleteFilesRequest,
    user: CurrentUser = Depends(get_current_user),
    pipeline: PipelineService = Depends(get_pipeline),
):
    """
    Borra varios archivos del usuario.

    Si UNA sola ruta no empieza con "{userId}/", responde 403 con
    `invalidPaths` y no borra nada.
    """
    outcomes = await pipeline.aborts.delete_files(user.id, body.file_paths)
    success_count = sum(outcome.success for outcome in outcomes)
    return DeleteFilesResponse(
        success=success_count == len(outcomes),
        results=[DeleteResult(path=o.path, success=o.success, error=o.error) for o in outcomes],
        success_count=success_count,
        failed_count=len(outcomes) - success_count,
    )
