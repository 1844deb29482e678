"""
PipelineService: el dueno de todo el estado del pipeline.

En vez de caches y temporizadores globales a nivel de modulo, UNA
instancia de esta clase crea y conecta los componentes:

    BlobStore -> UploadQueue -> ConversionOrchestrator -> AbortCoordinator
                             -> ZipBundler
    QuotaLedger, UserFileRepository (base de datos)

El lifespan de main.py llama a start() al arrancar (crea los
directorios scratch y programa los barridos periodicos) y a shutdown()
al apagar (cancela barridos y tareas pendientes). Las rutas reciben la
instancia por dependencia (app.dependencies.get_pipeline).
"""

import logging
import os

from sqlalchemy.engine import Engine

from app.config import settings
from app.services.abort import AbortCoordinator
from app.services.converter import ConversionRunner
from app.services.orchestrator import ConversionOrchestrator
from app.services.quota import QuotaLedger
from app.services.storage import BlobStore
from app.services.tasks import BackgroundTaskSet
from app.services.upload_queue import UploadQueue
from app.services.user_files import UserFileRepository
from app.services.zip_bundler import ZipBundler

logger = logging.getLogger(__name__)


class PipelineService:
    def __init__(
        self,
        engine: Engine,
        store: BlobStore | None = None,
        runner: ConversionRunner | None = None,
        scratch_dir: str | None = None,
        poll_interval: float = settings.QUEUE_POLL_INTERVAL,
    ):
        self.tasks = BackgroundTaskSet()
        self.scratch_dir = scratch_dir or settings.SCRATCH_DIR

        self.store = store or BlobStore(tasks=self.tasks)
        # Las limpiezas diferidas del store se registran en NUESTRO set,
        # asi shutdown() tambien las cancela.
        self.store.tasks = self.tasks

        self.ledger = QuotaLedger(engine)
        self.files = UserFileRepository(engine, self.store)
        self.runner = runner or ConversionRunner(work_dir=os.path.join(self.scratch_dir, "converted"))
        self.queue = UploadQueue(
            self.store,
            scratch_dir=os.path.join(self.scratch_dir, "uploads"),
            tasks=self.tasks,
        )
        self.orchestrator = ConversionOrchestrator(
            self.store,
            self.queue,
            self.ledger,
            self.files,
            self.runner,
            tasks=self.tasks,
            scratch_dir=os.path.join(self.scratch_dir, "jobs"),
            poll_interval=poll_interval,
        )
        self.zips = ZipBundler(self.store, scratch_dir=os.path.join(self.scratch_dir, "zips"))
        self.aborts = AbortCoordinator(self.queue, self.orchestrator, self.store)
        self._started = False

    def start(self) -> None:
        """Debe llamarse desde el event loop (programa tareas periodicas)."""
        if self._started:
            return
        for sub in ("uploads", "jobs", "converted", "zips"):
            os.makedirs(os.path.join(self.scratch_dir, sub), exist_ok=True)
        self.tasks.every(settings.QUEUE_SWEEP_INTERVAL, self.queue.sweep, name="upload-queue-sweep")
        self.tasks.every(settings.QUEUE_SWEEP_INTERVAL, self.orchestrator.sweep, name="job-sweep")
        self.tasks.every(settings.ZIP_SWEEP_INTERVAL, self.zips.sweep, name="zip-cache-sweep")
        self._started = True
        logger.info("Pipeline started (scratch dir: %s)", self.scratch_dir)

    async def shutdown(self) -> None:
        await self.tasks.shutdown()
        self._started = False
        logger.info("Pipeline stopped")
