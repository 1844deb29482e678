"""
Cola de subidas asincronas (Upload Queue).

Problema que resuelve
---------------------
Subir un video de 400MB a S3 puede tardar mas que el timeout HTTP del
cliente. Por eso, para archivos grandes, el request solo espera a que
el archivo quede guardado en disco LOCAL (rapido) y responde con un
`uploadId`. La subida real a S3 ocurre despues, en segundo plano, y el
cliente consulta el estado con GET /api/upload/status/{uploadId}.

Ciclo de vida de cada item:

    pending --> uploading --> completed
       |            |     \\-> failed
       +------------+-------> aborted

Exclusion (single-flight)
-------------------------
Cada drenado intenta "reclamar" los items pendientes con una transicion
compare-and-set pending -> uploading. Como todo corre en un solo event
loop y _transition() no tiene ningun await adentro, la comparacion y la
asignacion son atomicas: si dos drenados compiten por el mismo item,
solo uno gana la transicion y el otro lo saltea. Nunca hay dos put()
simultaneos para el mismo item.

Limitacion conocida: la tabla vive en la memoria de ESTE proceso. Con
varias instancias detras de un balanceador, un uploadId solo es visible
en la instancia que lo recibio.
"""

import asyncio
import itertools
import logging
import os
import secrets
import time
from dataclasses import dataclass, field
from enum import Enum

from app.config import settings
from app.errors import StorageError, UploadFailedError
from app.services.scratch import read_file, remove_quietly, write_file
from app.services.storage import BlobStore, StoredFile, build_key
from app.services.tasks import BackgroundTaskSet
from app.services.validator import sanitize_filename

logger = logging.getLogger(__name__)

_sequence = itertools.count()


class UploadState(str, Enum):
    PENDING = "pending"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"


TERMINAL_STATES = {UploadState.COMPLETED, UploadState.FAILED, UploadState.ABORTED}


@dataclass
class QueuedUpload:
    """Archivo aceptado por el servidor pero todavia no guardado en S3."""

    id: str
    owner_id: str
    file_name: str
    local_path: str
    mime_type: str
    size: int
    state: UploadState = UploadState.PENDING
    error: str | None = None
    result: StoredFile | None = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    seq: int = field(default_factory=lambda: next(_sequence))

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES


def new_upload_id() -> str:
    """Id opaco ordenable por tiempo: "<epoch ms>-<8 hex aleatorios>"."""
    return f"{int(time.time() * 1000)}-{secrets.token_hex(4)}"


class UploadQueue:
    """
    Atributos:
        store (BlobStore): Destino de las subidas.
        scratch_dir (str): Donde se guardan los archivos mientras esperan.
        tasks (BackgroundTaskSet): Registro de los drenados en curso.
        retention (float): Segundos que un item terminado sigue visible
            para el polling antes de que el barrido lo elimine.
    """

    def __init__(
        self,
        store: BlobStore,
        scratch_dir: str | None = None,
        tasks: BackgroundTaskSet | None = None,
        retention: float = settings.QUEUE_RETENTION,
        clock=time.time,
    ):
        self.store = store
        self.scratch_dir = scratch_dir or os.path.join(settings.SCRATCH_DIR, "uploads")
        self.tasks = tasks if tasks is not None else BackgroundTaskSet()
        self.retention = retention
        self.clock = clock
        self._items: dict[str, QueuedUpload] = {}

    def __len__(self) -> int:
        return len(self._items)

    async def enqueue(self, data: bytes, file_name: str, owner_id: str, mime_type: str) -> QueuedUpload:
        """
        Guarda el archivo en scratch y lo encola. Dispara un drenado.

        La escritura local se completa ANTES de retornar: si falla, el
        archivo nunca entra a la cola.

        Raises:
            UploadFailedError: si no se pudo escribir en disco.
        """
        upload_id = new_upload_id()
        safe_name = sanitize_filename(file_name)
        local_path = os.path.join(self.scratch_dir, f"{upload_id}-{safe_name}")
        try:
            await asyncio.to_thread(write_file, local_path, data)
        except OSError as exc:
            logger.error("Failed to save %s locally: %s", safe_name, exc)
            raise UploadFailedError(f"Failed to save file locally: {exc}") from exc

        now = self.clock()
        item = QueuedUpload(
            id=upload_id,
            owner_id=owner_id,
            file_name=safe_name,
            local_path=local_path,
            mime_type=mime_type,
            size=len(data),
            created_at=now,
            updated_at=now,
        )
        self._items[upload_id] = item
        logger.info("Queued upload %s (%s, %d bytes) for %s", upload_id, safe_name, len(data), owner_id)

        self.tasks.spawn(self.drain(), name=f"drain-after-{upload_id}")
        return item

    def status(self, upload_id: str) -> QueuedUpload | None:
        return self._items.get(upload_id)

    def active_for(self, owner_id: str) -> list[QueuedUpload]:
        """Items de `owner_id` que todavia no terminaron."""
        return [
            item for item in self._items.values()
            if item.owner_id == owner_id and not item.is_terminal
        ]

    async def drain(self) -> int:
        """
        Reclama todos los items pendientes (en orden de creacion) y los sube.

        Retorna cuantos items reclamo ESTE drenado; los que otro drenado ya
        habia reclamado no cuentan.
        """
        pending = sorted(
            (item for item in self._items.values() if item.state is UploadState.PENDING),
            key=lambda item: (item.created_at, item.seq),
        )
        claimed = [
            item for item in pending
            if self._transition(item.id, UploadState.PENDING, UploadState.UPLOADING)
        ]
        if claimed:
            await asyncio.gather(*(self._process(item) for item in claimed))
        return len(claimed)

    def abort(self, upload_id: str) -> QueuedUpload | None:
        """
        Marca el item como abortado si todavia no termino.

        Si el put() ya estaba en vuelo no se puede interrumpir: cuando
        termine, _process() ve el estado aborted y programa el borrado
        del blob que llego a escribirse.
        """
        item = self._items.get(upload_id)
        if item is None or item.is_terminal:
            return item
        was_pending = item.state is UploadState.PENDING
        item.state = UploadState.ABORTED
        item.error = "Upload was aborted"
        item.updated_at = self.clock()
        if was_pending:
            remove_quietly(item.local_path)
        logger.info("Aborted upload %s", upload_id)
        return item

    def sweep(self) -> int:
        """Elimina de la tabla los items terminados hace mas de `retention` segundos."""
        cutoff = self.clock() - self.retention
        expired = [
            item.id for item in self._items.values()
            if item.is_terminal and item.updated_at < cutoff
        ]
        for upload_id in expired:
            del self._items[upload_id]
        if expired:
            logger.info("Swept %d finished uploads from the queue", len(expired))
        return len(expired)

    def _transition(self, upload_id: str, expected: UploadState, new: UploadState, **changes) -> bool:
        """Compare-and-set del estado. Sin awaits: atomico dentro del event loop."""
        item = self._items.get(upload_id)
        if item is None or item.state is not expected:
            return False
        item.state = new
        item.updated_at = self.clock()
        for name, value in changes.items():
            setattr(item, name, value)
        return True

    async def _process(self, item: QueuedUpload) -> None:
        key = build_key(item.owner_id, settings.UPLOAD_PREFIX, item.file_name)
        try:
            data = await asyncio.to_thread(read_file, item.local_path)
            stored = await self.store.put(
                data,
                key,
                item.mime_type,
                metadata={"original-name": item.file_name, "owner-id": item.owner_id},
            )
        except asyncio.CancelledError:
            # shutdown con el put en vuelo: el item no queda en "uploading"
            self._transition(item.id, UploadState.UPLOADING, UploadState.FAILED, error="Upload was interrupted")
            raise
        except (StorageError, OSError) as exc:
            if self._transition(item.id, UploadState.UPLOADING, UploadState.FAILED, error=str(exc)):
                logger.error("Queued upload %s failed: %s", item.id, exc)
        else:
            if self._transition(item.id, UploadState.UPLOADING, UploadState.COMPLETED, result=stored):
                logger.info("Queued upload %s stored as %s", item.id, stored.key)
            else:
                # Abortado mientras el put() estaba en vuelo: la escritura
                # aterrizo igual, la reconciliamos con un borrado.
                logger.info("Upload %s finished after abort, deleting %s", item.id, stored.key)
                self.store.schedule_delete([stored.key], delay=0)
        finally:
            await asyncio.to_thread(remove_quietly, item.local_path)
