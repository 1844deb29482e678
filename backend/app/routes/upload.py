"""
Rutas de subida de archivos.

    1. POST /api/upload                   -> Sube el archivo original   [ESTE ARCHIVO]
    2. GET  /api/upload/status/{uploadId} -> Estado de una subida encolada [ESTE ARCHIVO]
    3. POST /api/convert                  -> Convierte a nuevo formato
    4. GET  /api/download/{key}           -> Descarga el resultado

Dos caminos segun el tamano
---------------------------
- Menos de 5MB: se sube a S3 DENTRO del request y se responde con
  `filePath` (la key en S3). El cliente puede convertir de inmediato.
- 5MB o mas: se guarda en disco local, se encola y se responde con
  `uploadId`. La subida a S3 sigue en segundo plano (ver
  services/upload_queue.py); /api/convert acepta el uploadId y espera.

Seguridad implementada:
- Lectura parcial: se leen MAX_FILE_SIZE + 1 bytes para detectar
  archivos gigantes sin cargarlos completos.
- Nombre sanitizado (sin rutas, sin caracteres raros).
- Validacion por magic bytes: no confiamos en el Content-Type HTTP.
- Toda key empieza con el id del usuario autenticado.
"""

import asyncio
import logging

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from starlette.requests import Request

from app.config import settings
from app.dependencies import get_pipeline
from app.errors import NoFileProvidedError, NotFoundError, StorageError, UploadFailedError
from app.limiter import limiter
from app.models.schemas import UploadResponse, UploadStatusResponse
from app.security import CurrentUser, get_current_user
from app.services.pipeline import PipelineService
from app.services.storage import build_key
from app.services.validator import sanitize_filename, validate_file

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/api/upload", response_model=UploadResponse)
@limiter.limit(settings.UPLOAD_RATE_LIMIT)
async def upload_file(
    request: Request,
    file: UploadFile | None = File(None),
    user: CurrentUser = Depends(get_current_user),
    pipeline: PipelineService = Depends(get_pipeline),
):
    """
    Recibe un archivo (multipart/form-data, campo "file").

    `request` no se usa directamente, pero SlowAPI lo necesita en la firma.

    Raises:
        NoFileProvidedError (400): no vino ningun archivo.
        QuotaError (429): el usuario ya no tiene conversiones hoy.
        HTTPException(413): el archivo excede el tamano maximo.
        HTTPException(400): el archivo no pasa la validacion.
        UploadFailedError (500): no se pudo guardar el archivo.
    """
    if file is None:
        raise NoFileProvidedError()

    # Subir algo que no se va a poder convertir solo llena el bucket.
    await asyncio.to_thread(pipeline.ledger.check, user.id, 1)

    data = await file.read(settings.MAX_FILE_SIZE + 1)
    if len(data) > settings.MAX_FILE_SIZE:
        raise HTTPException(
            status_code=413,
            detail=f"File size exceeds {settings.MAX_FILE_SIZE // (1024 * 1024)}MB limit",
        )

    safe_filename = sanitize_filename(file.filename)
    result = validate_file(data, safe_filename)
    if not result.is_valid:
        raise HTTPException(status_code=400, detail=result.error)

    if len(data) >= settings.ASYNC_UPLOAD_THRESHOLD:
        item = await pipeline.queue.enqueue(data, safe_filename, user.id, result.mime_type)
        return UploadResponse(
            upload_id=item.id,
            file_name=safe_filename,
            file_size=len(data),
            mime_type=result.mime_type,
            status=item.state.value,
        )

    key = build_key(user.id, settings.UPLOAD_PREFIX, safe_filename)
    try:
        stored = await pipeline.store.put(
            data,
            key,
            result.mime_type,
            metadata={"original-name": safe_filename, "owner-id": user.id},
        )
    except StorageError as exc:
        logger.error("Upload of %s for %s failed: %s", safe_filename, user.id, exc)
        raise UploadFailedError(f"Upload failed: {exc.message}") from exc

    return UploadResponse(
        file_path=stored.key,
        file_name=safe_filename,
        file_size=stored.size,
        mime_type=result.mime_type,
        status="completed",
    )


@router.get("/api/upload/status/{upload_id}", response_model=UploadStatusResponse)
async def upload_status(
    upload_id: str,
    user: CurrentUser = Depends(get_current_user),
    pipeline: PipelineService = Depends(get_pipeline),
):
    """Estado de una subida encolada. Las subidas de otros usuarios responden 404."""
    item = pipeline.queue.status(upload_id)
    if item is None or item.owner_id != user.id:
        raise NotFoundError("Upload not found")
    return UploadStatusResponse(
        upload_id=item.id,
        status=item.state.value,
        file_name=item.file_name,
        file_size=item.size,
        file_path=item.result.key if item.result else None,
        error=item.error,
    )
