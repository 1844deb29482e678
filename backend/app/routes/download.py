"""
Rutas de descarga.

    GET  /api/download/{key}  -> redirige a una URL firmada recien emitida
    POST /api/download/zip    -> varios archivos en un solo ZIP

Los archivos NO pasan por este servidor en la descarga individual: el
endpoint verifica que la key sea del usuario, firma una URL de 5 minutos
y responde 302. El navegador descarga directo desde S3.

El ZIP si se arma aqui (ver services/zip_bundler.py). Por defecto se
responde en streaming con dos headers extra:

    X-Files-Included:  cuantos archivos entraron al ZIP
    X-Files-Requested: cuantos se pidieron

Si alguno no se pudo descargar de S3, Included < Requested y el frontend
puede avisarle al usuario.
"""

from fastapi import APIRouter, Depends
from fastapi.responses import RedirectResponse, StreamingResponse

from app.config import settings
from app.dependencies import get_pipeline
from app.errors import NotFoundError
from app.models.schemas import ZipRequest, ZipUrlResponse
from app.security import CurrentUser, get_current_user
from app.services.abort import assert_owned
from app.services.pipeline import PipelineService

router = APIRouter()


@router.get("/api/download/{key:path}")
async def download_file(
    key: str,
    user: CurrentUser = Depends(get_current_user),
    pipeline: PipelineService = Depends(get_pipeline),
):
    """
    Redirige a una URL firmada para `key`.

    Raises:
        UnauthorizedPathError (403): la key no empieza con el id del usuario.
        NotFoundError (404): el archivo no existe (o ya expiro).
    """
    assert_owned(user.id, [key])
    if not await pipeline.store.exists(key):
        raise NotFoundError("File not found")
    signed = pipeline.store.signed_url(key, settings.SIGNED_URL_TTL)
    return RedirectResponse(signed.url, status_code=302)


@router.post("/api/download/zip")
async def download_zip(
    body: ZipRequest,
    user: CurrentUser = Depends(get_current_user),
    pipeline: PipelineService = Depends(get_pipeline),
):
    assert_owned(user.id, body.file_paths)
    bundle = await pipeline.zips.get_or_create(body.file_paths)

    if body.deliver == "url":
        signed = await pipeline.zips.publish(user.id, bundle)
        return ZipUrlResponse(
            download_url=signed.url,
            expires_in=signed.expires_in,
            files_included=bundle.included,
            files_requested=bundle.requested,
        )

    return StreamingResponse(
        pipeline.zips.iter_bytes(bundle.entry),
        media_type="application/zip",
        headers={
            "Content-Disposition": 'attachment; filename="converted-files.zip"',
            "Content-Length": str(bundle.entry.size),
            "X-Files-Included": str(bundle.included),
            "X-Files-Requested": str(bundle.requested),
        },
    )
