"""
Abort/Cleanup Coordinator: detener trabajo en curso y borrar blobs huerfanos.

Todas las operaciones son idempotentes: abortar algo que ya termino (o
que no existe) es un exito sin efectos. Asi el cliente puede reintentar
el abort sin preocuparse por carreras con el servidor.

La unica operacion que RECHAZA es el borrado: si cualquiera de las rutas
no empieza con "{owner_id}/", se rechaza el lote completo y no se borra
nada (fail-closed).
"""

import asyncio
import logging
from dataclasses import dataclass

from app.errors import StorageError, UnauthorizedPathError
from app.services.orchestrator import ConversionOrchestrator
from app.services.storage import BlobStore
from app.services.upload_queue import UploadQueue

logger = logging.getLogger(__name__)


@dataclass
class DeleteOutcome:
    path: str
    success: bool
    error: str | None = None


def invalid_paths(owner_id: str, paths: list[str]) -> list[str]:
    """Rutas que NO pertenecen a `owner_id` (su primer segmento no es el owner)."""
    prefix = f"{owner_id}/"
    return [
        path for path in paths
        if not isinstance(path, str) or not path.startswith(prefix) or ".." in path.split("/")
    ]


def assert_owned(owner_id: str, paths: list[str]) -> None:
    bad = invalid_paths(owner_id, paths)
    if bad:
        logger.warning("User %s tried to access paths outside its prefix: %s", owner_id, bad)
        raise UnauthorizedPathError(bad)


class AbortCoordinator:
    def __init__(self, queue: UploadQueue, orchestrator: ConversionOrchestrator, store: BlobStore):
        self.queue = queue
        self.orchestrator = orchestrator
        self.store = store

    def abort_upload(self, owner_id: str, upload_id: str) -> bool:
        """
        Aborta una subida encolada. Retorna True si cambio algo.

        Subidas desconocidas o ya terminadas no cambian nada; las de otro
        usuario se rechazan con UnauthorizedPathError.
        """
        item = self.queue.status(upload_id)
        if item is None or item.is_terminal:
            return False
        if item.owner_id != owner_id:
            raise UnauthorizedPathError([upload_id])
        self.queue.abort(upload_id)
        self.orchestrator.abort_for_source(owner_id, upload_id=upload_id)
        return True

    def abort_all(self, owner_id: str) -> int:
        """
        Aborta TODAS las subidas y conversiones en curso del usuario.

        El fallo de un item no impide intentar con los demas. Retorna
        cuantos items se abortaron.
        """
        aborted = 0
        for item in self.queue.active_for(owner_id):
            try:
                if self.queue.abort(item.id) is not None:
                    aborted += 1
            except Exception:
                logger.exception("Failed to abort upload %s", item.id)
        for job in self.orchestrator.active_jobs(owner_id):
            try:
                aborted += int(self.orchestrator.abort(job.id))
            except Exception:
                logger.exception("Failed to abort conversion job %s", job.id)
        logger.info("Aborted %d items for %s", aborted, owner_id)
        return aborted

    async def abort_conversion(
        self,
        owner_id: str,
        file_path: str | None = None,
        upload_id: str | None = None,
        job_id: str | None = None,
    ) -> int:
        """
        Detiene la conversion de un archivo y borra (best effort) el original.

        Acepta cualquier combinacion de filePath, uploadId y jobId.
        """
        if file_path:
            assert_owned(owner_id, [file_path])

        aborted = 0
        if job_id:
            job = self.orchestrator.get(job_id)
            if job is not None:
                if job.owner_id != owner_id:
                    raise UnauthorizedPathError([job_id])
                aborted += int(self.orchestrator.abort(job_id))
        if upload_id:
            aborted += int(self.abort_upload(owner_id, upload_id))
            # La subida pudo haber terminado y su conversion seguir en curso
            aborted += self.orchestrator.abort_for_source(owner_id, upload_id=upload_id)
            item = self.queue.status(upload_id)
            if item is not None and item.owner_id == owner_id and item.result is not None and not file_path:
                file_path = item.result.key
        if file_path:
            aborted += self.orchestrator.abort_for_source(owner_id, file_path=file_path)
            try:
                await self.store.delete(file_path)
            except StorageError as exc:
                logger.warning("Could not delete %s after abort: %s", file_path, exc)
        return aborted

    async def delete_files(self, owner_id: str, paths: list[str]) -> list[DeleteOutcome]:
        """
        Borra `paths` despues de validar que TODAS pertenecen al usuario.

        Raises:
            UnauthorizedPathError: alguna ruta es ajena; no se borro nada.
        """
        assert_owned(owner_id, paths)

        async def delete_one(path: str) -> DeleteOutcome:
            try:
                await self.store.delete(path)
                return DeleteOutcome(path=path, success=True)
            except StorageError as exc:
                logger.error("Failed to delete %s: %s", path, exc)
                return DeleteOutcome(path=path, success=False, error=exc.message)

        outcomes = await asyncio.gather(*(delete_one(path) for path in paths))
        logger.info(
            "Deleted %d/%d files for %s",
            sum(outcome.success for outcome in outcomes), len(outcomes), owner_id,
        )
        return list(outcomes)
