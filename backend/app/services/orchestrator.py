"""
Conversion Orchestrator: lleva un archivo guardado hasta una URL de descarga.

Cada pedido de conversion se convierte en un ConversionJob que recorre
estas fases, SIEMPRE en este orden:

    accepted -> quota_checked -> source_resolved -> converting
             -> uploading_result -> signed -> done

y termina en exactamente uno de: completed, failed o aborted.

Orden de efectos (importante):
1. La cuota se verifica ANTES de tocar nada. Si no alcanza, el job falla
   sin haber descargado, convertido ni escrito nada.
2. La cuota se incrementa DESPUES de emitir la URL firmada. Si la subida
   del resultado falla (reintentos agotados), el usuario no pierde una
   conversion por un error nuestro.

Cuota con jobs concurrentes
---------------------------
Entre el check y el incremento hay muchos awaits. Para que dos jobs del
mismo usuario en 9/10 no pasen los dos, cada job RESERVA un lugar al
pasar el check y lo libera al cobrarse (o al fallar). Las reservas en
curso cuentan como usadas en el check siguiente. Check+reserva e
incremento+liberacion corren bajo un mismo asyncio.Lock; las secciones
criticas son una consulta a la base, los jobs siguen en paralelo.

Progreso
--------
Cada job expone un porcentaje que nunca retrocede. Si el origen es una
subida encolada, el 0-50% corresponde a la subida (pending 0, uploading
25, completed 50) y el 50-100% a la conversion.

Abort
-----
Cada job corre en su propia tarea (BackgroundTaskSet). abort() cancela
esa tarea: si ffmpeg estaba corriendo se mata el proceso. Lo que NO se
puede cancelar es un put() a S3 ya en vuelo: corre en su propia tarea
(protegida con asyncio.shield), y al abortar se espera a que termine y
se borra lo que haya escrito.

Una vez firmada la URL (fase `signed`) el job ya no se aborta: el cobro
de la cuota no puede quedar separado del resultado entregado.
"""

import asyncio
import logging
import os
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum

from app.config import settings
from app.errors import (
    ConversionFailedError,
    ConvertorError,
    JobAbortedError,
    NoFileProvidedError,
    NotFoundError,
    UnauthorizedPathError,
    UploadFailedError,
)
from app.models.records import ConversionStatus
from app.services.converter import ConversionRunner, normalize_format
from app.services.quota import QuotaLedger
from app.services.scratch import read_file, remove_quietly, write_file
from app.services.storage import BlobStore, StoredFile
from app.services.tasks import BackgroundTaskSet
from app.services.upload_queue import UploadQueue, UploadState
from app.services.user_files import UserFileRepository
from app.services.validator import detect_mime, sanitize_filename

logger = logging.getLogger(__name__)


class JobState(str, Enum):
    PENDING = "pending"
    CONVERTING = "converting"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"


class JobPhase(str, Enum):
    ACCEPTED = "accepted"
    QUOTA_CHECKED = "quota_checked"
    SOURCE_RESOLVED = "source_resolved"
    CONVERTING = "converting"
    UPLOADING_RESULT = "uploading_result"
    SIGNED = "signed"
    DONE = "done"


TERMINAL_JOB_STATES = {JobState.COMPLETED, JobState.FAILED, JobState.ABORTED}

# Progreso de la subida encolada segun su estado.
UPLOAD_PROGRESS = {
    UploadState.PENDING: 0,
    UploadState.UPLOADING: 25,
    UploadState.COMPLETED: 50,
}


@dataclass
class ConversionJob:
    id: str
    owner_id: str
    target_format: str
    quality: str
    file_path: str | None = None
    upload_id: str | None = None
    original_name: str | None = None
    state: JobState = JobState.PENDING
    phase: JobPhase = JobPhase.ACCEPTED
    progress: int = 0
    error: str | None = None
    failure: ConvertorError | None = field(default=None, repr=False)
    result: StoredFile | None = None
    download_url: str | None = None
    expires_in: int | None = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    task: asyncio.Task | None = field(default=None, repr=False)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_JOB_STATES

    @property
    def is_queued(self) -> bool:
        return self.upload_id is not None

    def advance(self, progress: float) -> None:
        """Sube el progreso; nunca lo baja."""
        self.progress = max(self.progress, min(100, int(progress)))
        self.updated_at = time.time()

    def matches(self, ref: str) -> bool:
        return ref in (self.id, self.file_path, self.upload_id)


def converted_key(owner_id: str, original_name: str, target_format: str) -> str:
    """{owner}/converted/{uuid}_{nombre original sin extension}.{formato}"""
    base = sanitize_filename(original_name).rsplit(".", 1)[0] or "file"
    return f"{owner_id}/{settings.CONVERTED_PREFIX}/{uuid.uuid4()}_{base}.{target_format}"


class ConversionOrchestrator:
    def __init__(
        self,
        store: BlobStore,
        queue: UploadQueue,
        ledger: QuotaLedger,
        files: UserFileRepository,
        runner: ConversionRunner,
        tasks: BackgroundTaskSet | None = None,
        scratch_dir: str | None = None,
        poll_interval: float = settings.QUEUE_POLL_INTERVAL,
        retention: float = settings.QUEUE_RETENTION,
    ):
        self.store = store
        self.queue = queue
        self.ledger = ledger
        self.files = files
        self.runner = runner
        self.tasks = tasks if tasks is not None else BackgroundTaskSet()
        self.scratch_dir = scratch_dir or os.path.join(settings.SCRATCH_DIR, "jobs")
        self.poll_interval = poll_interval
        self.retention = retention
        self._jobs: dict[str, ConversionJob] = {}
        self._reserved: dict[str, int] = {}
        self._quota_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # API publica
    # ------------------------------------------------------------------

    def submit(
        self,
        owner_id: str,
        target_format: str,
        quality: str = "medium",
        file_path: str | None = None,
        upload_id: str | None = None,
        job_id: str | None = None,
        original_name: str | None = None,
    ) -> ConversionJob:
        """Registra el job y lanza su tarea. No espera el resultado."""
        if not file_path and not upload_id:
            raise NoFileProvidedError("No file path or upload id provided")
        if file_path and not file_path.startswith(f"{owner_id}/"):
            raise UnauthorizedPathError([file_path])
        if job_id and job_id in self._jobs:
            existing = self._jobs[job_id]
            if existing.owner_id != owner_id:
                raise UnauthorizedPathError([job_id])
            if not existing.is_terminal:
                return existing

        job = ConversionJob(
            id=job_id or uuid.uuid4().hex,
            owner_id=owner_id,
            target_format=normalize_format(target_format),
            quality=quality,
            file_path=file_path,
            upload_id=upload_id,
            original_name=original_name,
        )
        self._jobs[job.id] = job
        job.task = self.tasks.spawn(self._run(job), name=f"conversion-{job.id}")
        logger.info("Accepted conversion job %s for %s -> %s", job.id, owner_id, job.target_format)
        return job

    async def convert(self, owner_id: str, target_format: str, **kwargs) -> ConversionJob:
        """
        Lanza el job y espera a que termine.

        Si el request que espera se cancela (el cliente se desconecto), el
        job sigue corriendo; solo abort() lo detiene.

        Raises:
            JobAbortedError: el job fue abortado.
            ConvertorError: el error que hizo fallar al job.
        """
        job = self.submit(owner_id, target_format, **kwargs)
        await asyncio.wait({job.task})
        if job.state is JobState.ABORTED:
            raise JobAbortedError()
        if job.state is JobState.FAILED:
            raise job.failure or ConversionFailedError(job.error or "unknown error")
        return job

    def get(self, job_id: str) -> ConversionJob | None:
        return self._jobs.get(job_id)

    def active_jobs(self, owner_id: str) -> list[ConversionJob]:
        return [job for job in self._jobs.values() if job.owner_id == owner_id and not job.is_terminal]

    def find(self, ref: str, owner_id: str | None = None) -> ConversionJob | None:
        """Job mas reciente cuyo id, filePath o uploadId sea `ref`."""
        job = self._jobs.get(ref)
        if job is not None and (owner_id is None or job.owner_id == owner_id):
            return job
        candidates = [
            job for job in self._jobs.values()
            if job.matches(ref) and (owner_id is None or job.owner_id == owner_id)
        ]
        return max(candidates, key=lambda job: job.created_at, default=None)

    def progress(self, ref: str, owner_id: str | None = None) -> int:
        """
        Porcentaje (0-100) para `ref`: id de job, filePath o uploadId.

        Si todavia no hay job pero `ref` es una subida encolada, se reporta
        el progreso de la subida. Referencias desconocidas reportan 0.
        """
        job = self.find(ref, owner_id)
        if job is not None:
            return job.progress
        item = self.queue.status(ref)
        if item is not None and (owner_id is None or item.owner_id == owner_id):
            return UPLOAD_PROGRESS.get(item.state, 0)
        return 0

    def abort(self, job_id: str) -> bool:
        """Cancela el job si sigue en curso y no llego a firmarse. Idempotente."""
        job = self._jobs.get(job_id)
        if job is None or job.is_terminal or job.task is None:
            return False
        if job.phase is JobPhase.SIGNED:
            logger.info("Abort of conversion job %s ignored: result already signed", job_id)
            return False
        job.task.cancel()
        logger.info("Abort requested for conversion job %s", job_id)
        return True

    def abort_for_source(self, owner_id: str, file_path: str | None = None, upload_id: str | None = None) -> int:
        count = 0
        for job in self.active_jobs(owner_id):
            if (file_path and job.file_path == file_path) or (upload_id and job.upload_id == upload_id):
                count += int(self.abort(job.id))
        return count

    def sweep(self) -> int:
        cutoff = time.time() - self.retention
        expired = [job.id for job in self._jobs.values() if job.is_terminal and job.updated_at < cutoff]
        for job_id in expired:
            del self._jobs[job_id]
        return len(expired)

    async def store_client_converted(
        self,
        owner_id: str,
        data: bytes,
        file_name: str,
        target_format: str,
        original_name: str | None = None,
        original_format: str | None = None,
        quality: str | None = None,
    ) -> tuple[StoredFile, str]:
        """
        Guarda un archivo que el navegador ya convirtio.

        Mismo orden que una conversion en el servidor: cuota primero,
        incremento despues de firmar la URL.
        """
        await self._reserve(owner_id)
        reserved = True
        try:
            fmt = normalize_format(target_format)
            key = converted_key(owner_id, original_name or file_name, fmt)
            content_type = settings.FORMAT_MIME_TYPES.get(fmt, "application/octet-stream")
            stored = await self.store.put(data, key, content_type, metadata={"original-name": file_name})
            signed = self.store.signed_url(key, settings.SIGNED_URL_TTL)
            reserved = False
            await asyncio.shield(self._charge(owner_id))
        finally:
            if reserved:
                self._release(owner_id)
        await self.files.add_ready_file(
            owner_id=owner_id,
            original_file_name=original_name or file_name,
            converted_file_name=sanitize_filename(file_name),
            original_format=original_format,
            converted_format=fmt,
            file_path=key,
            download_url=signed.url,
            file_size=stored.size,
            quality=quality,
        )
        return stored, signed.url

    # ------------------------------------------------------------------
    # Maquina de estados
    # ------------------------------------------------------------------

    def _enter(self, job: ConversionJob, phase: JobPhase, progress: float) -> None:
        job.phase = phase
        job.advance(50 + progress / 2 if job.is_queued else progress)

    def _finish(self, job: ConversionJob, state: JobState, error: str | None = None) -> None:
        job.state = state
        job.error = error
        job.updated_at = time.time()
        if state is JobState.COMPLETED:
            job.phase = JobPhase.DONE
            job.advance(100)

    async def _reserve(self, owner_id: str) -> None:
        """Check de cuota contando los jobs en curso, y reserva un lugar."""
        async with self._quota_lock:
            reserved = self._reserved.get(owner_id, 0)
            await asyncio.to_thread(self.ledger.check, owner_id, 1, reserved)
            self._reserved[owner_id] = self._reserved.get(owner_id, 0) + 1

    def _release(self, owner_id: str) -> None:
        left = self._reserved.get(owner_id, 0) - 1
        if left > 0:
            self._reserved[owner_id] = left
        else:
            self._reserved.pop(owner_id, None)

    async def _charge(self, owner_id: str) -> None:
        """Cobra la conversion y libera su reserva en el mismo paso."""
        async with self._quota_lock:
            try:
                await asyncio.to_thread(self.ledger.increment, owner_id)
            finally:
                self._release(owner_id)

    async def _discard_result(self, upload: asyncio.Future, key: str) -> None:
        """Espera al put en vuelo de un job abortado y borra lo que haya escrito."""
        await asyncio.gather(upload, return_exceptions=True)
        self.store.schedule_delete([key], delay=0)

    async def _run(self, job: ConversionJob) -> None:
        record_id = None
        local_paths: list[str] = []
        reserved = False
        upload: asyncio.Future | None = None
        key = None
        try:
            await self._reserve(job.owner_id)
            reserved = True
            job.phase = JobPhase.QUOTA_CHECKED

            source = await self._resolve_source(job)
            job.file_path = source.key
            self._enter(job, JobPhase.SOURCE_RESOLVED, 10)

            data = await self.store.get(source.key)
            mime_type = source.content_type
            if mime_type not in settings.ALLOWED_MIME_TYPES:
                mime_type = detect_mime(data)
            input_path = os.path.join(self.scratch_dir, f"{job.id}-{source.file_name}")
            local_paths.append(input_path)
            await asyncio.to_thread(write_file, input_path, data)

            original_name = job.original_name or source.file_name
            record_id = await self.files.record_conversion(job.owner_id, original_name, job.target_format)

            job.state = JobState.CONVERTING
            self._enter(job, JobPhase.CONVERTING, 20)
            result = await self.runner.run(input_path, mime_type, job.target_format, job.quality)
            local_paths.append(result.output_path)

            self._enter(job, JobPhase.UPLOADING_RESULT, 70)
            output = await asyncio.to_thread(read_file, result.output_path)
            key = converted_key(job.owner_id, original_name, result.format)
            # El put sigue aunque cancelen el job: un abort lo espera y borra.
            upload = asyncio.ensure_future(
                self.store.put(output, key, result.content_type, metadata={"original-name": original_name})
            )
            job.result = await asyncio.shield(upload)

            signed = self.store.signed_url(key, settings.SIGNED_URL_TTL)
            job.download_url = signed.url
            job.expires_in = signed.expires_in
            self._enter(job, JobPhase.SIGNED, 95)

            reserved = False
            await asyncio.shield(self._charge(job.owner_id))
            await self.files.mark_conversion(record_id, ConversionStatus.COMPLETED)
            await self.files.add_ready_file(
                owner_id=job.owner_id,
                original_file_name=original_name,
                converted_file_name=key.rsplit("/", 1)[-1],
                original_format=original_name.rsplit(".", 1)[-1].lower() if "." in original_name else None,
                converted_format=result.format,
                file_path=key,
                download_url=signed.url,
                file_size=job.result.size,
                quality=job.quality,
            )
            self._finish(job, JobState.COMPLETED)
            logger.info("Conversion job %s completed: %s", job.id, key)
        except asyncio.CancelledError:
            if job.phase is JobPhase.SIGNED:
                # Solo llega aca por el shutdown: el cobro ya esta en curso.
                self._finish(job, JobState.COMPLETED)
                logger.info("Conversion job %s completed during shutdown: %s", job.id, key)
                raise
            self._finish(job, JobState.ABORTED, "Conversion was aborted")
            if upload is not None:
                self.tasks.spawn(self._discard_result(upload, key), name=f"discard-{job.id}")
            if record_id is not None:
                self.tasks.spawn(
                    self.files.mark_conversion(record_id, ConversionStatus.FAILED, "aborted"),
                    name=f"mark-aborted-{job.id}",
                )
            logger.info("Conversion job %s aborted", job.id)
            raise
        except JobAbortedError as exc:
            job.failure = exc
            self._finish(job, JobState.ABORTED, exc.message)
        except ConvertorError as exc:
            job.failure = exc
            self._finish(job, JobState.FAILED, exc.message)
            await self.files.mark_conversion(record_id, ConversionStatus.FAILED, exc.message)
            logger.warning("Conversion job %s failed: %s", job.id, exc.message)
        except Exception as exc:
            logger.exception("Conversion job %s crashed", job.id)
            job.failure = ConversionFailedError(str(exc))
            self._finish(job, JobState.FAILED, job.failure.message)
            await self.files.mark_conversion(record_id, ConversionStatus.FAILED, str(exc))
        finally:
            if reserved:
                self._release(job.owner_id)
            for path in local_paths:
                await asyncio.to_thread(remove_quietly, path)

    async def _resolve_source(self, job: ConversionJob) -> StoredFile:
        if job.upload_id is None:
            if not await self.store.exists(job.file_path):
                raise NotFoundError("File not found")
            return await self.store.head(job.file_path)

        # Origen encolado: esperamos a que la subida termine. El limite de
        # tiempo lo pone quien espera (el request HTTP o el cliente).
        while True:
            item = self.queue.status(job.upload_id)
            if item is None:
                raise NotFoundError("Upload not found")
            if item.owner_id != job.owner_id:
                raise UnauthorizedPathError([job.upload_id])
            if item.state is UploadState.COMPLETED:
                job.original_name = job.original_name or item.file_name
                job.advance(50)
                return item.result
            if item.state is UploadState.FAILED:
                raise UploadFailedError(item.error or "Upload failed")
            if item.state is UploadState.ABORTED:
                raise JobAbortedError("Upload was aborted")
            job.advance(UPLOAD_PROGRESS[item.state])
            await asyncio.sleep(self.poll_interval)

