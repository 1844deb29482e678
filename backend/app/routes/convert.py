"""
Rutas de conversion.

    POST /api/convert                 -> convierte y responde con URL firmada
    GET  /api/convert/progress/{ref}  -> porcentaje 0-100 (polling)
    POST /api/check-batch-limit       -> "me alcanza la cuota para N archivos?"
    POST /api/client-converted        -> guarda un archivo convertido en el navegador

POST /api/convert es un request LARGO (un video puede tardar minutos).
Mientras tanto el cliente consulta /api/convert/progress con el jobId
que el mismo genero, o con el filePath/uploadId del archivo.

Toda la logica vive en services/orchestrator.py; estas funciones solo
traducen HTTP <-> servicio. Los errores de dominio (cuota, conversion,
almacenamiento) se propagan y el handler de main.py los convierte en
respuestas JSON.
"""

import asyncio

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from starlette.requests import Request

from app.config import settings
from app.dependencies import get_pipeline
from app.errors import NoFileProvidedError
from app.limiter import limiter
from app.models.schemas import (
    BatchLimitRequest,
    BatchLimitResponse,
    ClientConvertedResponse,
    ConvertRequest,
    ConvertResponse,
    ProgressResponse,
)
from app.security import CurrentUser, get_current_user
from app.services.pipeline import PipelineService
from app.services.validator import sanitize_filename

router = APIRouter()


@router.post("/api/convert", response_model=ConvertResponse)
@limiter.limit(settings.CONVERT_RATE_LIMIT)
async def convert_file(
    request: Request,
    body: ConvertRequest,
    user: CurrentUser = Depends(get_current_user),
    pipeline: PipelineService = Depends(get_pipeline),
):
    """
    Convierte un archivo ya subido (por `filePath` o por `uploadId`).

    Raises:
        NoFileProvidedError (400): no vino filePath ni uploadId.
        UnauthorizedPathError (403): el filePath no es del usuario.
        QuotaError (429): limite diario alcanzado.
        NotFoundError (404): el archivo o la subida no existen.
        ConversionFailedError (500): la herramienta fallo.
        JobAbortedError (409): el usuario aborto la conversion.
    """
    job = await pipeline.orchestrator.convert(
        user.id,
        body.format,
        quality=body.quality,
        file_path=body.file_path,
        upload_id=body.upload_id,
        job_id=body.job_id,
        original_name=body.file_name,
    )
    return ConvertResponse(
        job_id=job.id,
        download_url=job.download_url,
        output_path=job.result.key,
        expires_in=job.expires_in,
        file_size=job.result.size,
        format=job.target_format,
    )


@router.get("/api/convert/progress/{ref:path}", response_model=ProgressResponse)
async def conversion_progress(
    ref: str,
    user: CurrentUser = Depends(get_current_user),
    pipeline: PipelineService = Depends(get_pipeline),
):
    """
    Progreso de una conversion. `ref` puede ser el jobId, el filePath o el
    uploadId. Una referencia que todavia no existe reporta 0.
    """
    job = pipeline.orchestrator.find(ref, owner_id=user.id)
    if job is None:
        return ProgressResponse(progress=pipeline.orchestrator.progress(ref, owner_id=user.id))
    return ProgressResponse(progress=job.progress, status=job.state.value, phase=job.phase.value)


@router.post("/api/check-batch-limit", response_model=BatchLimitResponse)
async def check_batch_limit(
    body: BatchLimitRequest,
    user: CurrentUser = Depends(get_current_user),
    pipeline: PipelineService = Depends(get_pipeline),
):
    """Vista previa de la cuota para `fileCount` archivos. No modifica nada."""
    status = await asyncio.to_thread(pipeline.ledger.preview, user.id)
    can_convert = status.remaining >= body.file_count
    message = None
    if status.remaining == 0:
        message = "Daily conversion limit reached."
    elif not can_convert:
        message = (
            f"You can only convert {status.remaining} more "
            f"file{'' if status.remaining == 1 else 's'} today."
        )
    return BatchLimitResponse(
        can_convert=can_convert,
        remaining=status.remaining,
        requested=body.file_count,
        daily_limit=status.limit,
        plan=status.plan,
        message=message,
    )


@router.post("/api/client-converted", response_model=ClientConvertedResponse)
@limiter.limit(settings.UPLOAD_RATE_LIMIT)
async def client_converted(
    request: Request,
    file: UploadFile | None = File(None),
    format: str = Form(...),
    original_name: str | None = Form(None, alias="originalName"),
    original_format: str | None = Form(None, alias="originalFormat"),
    quality: str | None = Form(None),
    user: CurrentUser = Depends(get_current_user),
    pipeline: PipelineService = Depends(get_pipeline),
):
    """
    Guarda un archivo que el navegador ya convirtio (ej: imagenes con canvas).

    Cuenta como una conversion: verifica la cuota antes de guardar y la
    incrementa despues de firmar la URL.
    """
    if file is None:
        raise NoFileProvidedError()
    data = await file.read(settings.MAX_FILE_SIZE + 1)
    if not data:
        raise NoFileProvidedError("Uploaded file is empty")
    if len(data) > settings.MAX_FILE_SIZE:
        raise HTTPException(
            status_code=413,
            detail=f"File size exceeds {settings.MAX_FILE_SIZE // (1024 * 1024)}MB limit",
        )

    stored, url = await pipeline.orchestrator.store_client_converted(
        user.id,
        data,
        sanitize_filename(file.filename),
        format,
        original_name=original_name,
        original_format=original_format,
        quality=quality,
    )
    return ClientConvertedResponse(file_path=stored.key, download_url=url, file_size=stored.size)
