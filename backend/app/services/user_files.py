"""
Registro de archivos listos para descargar (tabla user_files) y de
conversiones (tabla conversions).

Despues de una conversion exitosa, el archivo queda 24 horas en la lista
del usuario. Las URLs firmadas guardadas expiran mucho antes que eso,
asi que al listar se regeneran las que vencen en menos de un minuto.

Como sabemos cuando vence una URL firmada? Leyendo su query string:
    SigV4: X-Amz-Date=20250101T120000Z & X-Amz-Expires=300
    SigV2: Expires=1735732800  (epoch en segundos)

El acceso a la base es sincrono y corre en asyncio.to_thread; los
borrados de blobs se programan en el event loop con schedule_delete().
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from app.config import settings
from app.errors import NotFoundError
from app.models.records import ConversionRecord, ConversionStatus, FileStatus, UserFile, as_utc, utcnow
from app.services.storage import BlobStore

logger = logging.getLogger(__name__)

# Margen antes del vencimiento a partir del cual regeneramos la URL.
REFRESH_MARGIN = timedelta(seconds=60)


def url_expires_at(url: str | None) -> datetime | None:
    """Momento (UTC aware) en que vence una URL pre-firmada, o None si no se puede saber."""
    if not url:
        return None
    query = parse_qs(urlparse(url).query)
    try:
        if "X-Amz-Date" in query and "X-Amz-Expires" in query:
            signed_at = datetime.strptime(query["X-Amz-Date"][0], "%Y%m%dT%H%M%SZ").replace(tzinfo=timezone.utc)
            return signed_at + timedelta(seconds=int(query["X-Amz-Expires"][0]))
        if "Expires" in query:
            epoch = int(query["Expires"][0])
            return datetime.fromtimestamp(epoch, tz=timezone.utc)
    except ValueError:
        return None
    return None


def needs_refresh(url: str | None, now: datetime) -> bool:
    expires_at = url_expires_at(url)
    return expires_at is None or expires_at - as_utc(now) <= REFRESH_MARGIN


class UserFileRepository:
    def __init__(self, engine: Engine, store: BlobStore, clock=utcnow):
        self.engine = engine
        self.store = store
        self.clock = clock

    # ------------------------------------------------------------------
    # conversions (bookkeeping, best effort)
    # ------------------------------------------------------------------

    async def record_conversion(self, owner_id: str, file_name: str, target_format: str) -> int | None:
        """Inserta la fila `pending`. Si la base falla, se loguea y la conversion sigue."""
        def work() -> int:
            with Session(self.engine) as session:
                record = ConversionRecord(user_id=owner_id, file_name=file_name, target_format=target_format)
                session.add(record)
                session.commit()
                session.refresh(record)
                return record.id

        try:
            return await asyncio.to_thread(work)
        except SQLAlchemyError as exc:
            logger.warning("Could not record conversion of %s: %s", file_name, exc)
            return None

    async def mark_conversion(self, record_id: int | None, status: ConversionStatus, error: str | None = None) -> None:
        if record_id is None:
            return

        def work() -> None:
            with Session(self.engine) as session:
                record = session.get(ConversionRecord, record_id)
                if record is None:
                    return
                record.status = status.value
                record.error = error
                session.add(record)
                session.commit()

        try:
            await asyncio.to_thread(work)
        except SQLAlchemyError as exc:
            logger.warning("Could not mark conversion %s as %s: %s", record_id, status.value, exc)

    # ------------------------------------------------------------------
    # user_files
    # ------------------------------------------------------------------

    async def add_ready_file(
        self,
        owner_id: str,
        original_file_name: str,
        converted_file_name: str,
        converted_format: str,
        file_path: str,
        download_url: str,
        file_size: int,
        original_format: str | None = None,
        quality: str | None = None,
    ) -> UserFile:
        def work() -> UserFile:
            now = self.clock()
            row = UserFile(
                user_id=owner_id,
                original_file_name=original_file_name,
                converted_file_name=converted_file_name,
                original_format=original_format,
                converted_format=converted_format,
                quality=quality,
                file_path=file_path,
                download_url=download_url,
                file_size=file_size,
                created_at=now,
                expires_at=now + timedelta(hours=settings.READY_FILE_TTL_HOURS),
            )
            with Session(self.engine) as session:
                session.add(row)
                session.commit()
                session.refresh(row)
                return row

        return await asyncio.to_thread(work)

    async def list_ready(self, owner_id: str) -> list[UserFile]:
        """
        Archivos `ready` no vencidos del usuario, del mas nuevo al mas viejo.

        Las URLs vencidas (o por vencer) se regeneran con TTL de 10 minutos
        y se guardan en la fila.
        """
        def work() -> list[UserFile]:
            now = self.clock()
            with Session(self.engine) as session:
                rows = session.exec(
                    select(UserFile)
                    .where(UserFile.user_id == owner_id)
                    .where(UserFile.status == FileStatus.READY.value)
                    .where(UserFile.expires_at > now)
                    .order_by(UserFile.created_at.desc())
                ).all()
                refreshed = 0
                for row in rows:
                    if needs_refresh(row.download_url, now):
                        row.download_url = self.store.signed_url(row.file_path, settings.BATCH_SIGNED_URL_TTL).url
                        session.add(row)
                        refreshed += 1
                if refreshed:
                    session.commit()
                    for row in rows:
                        session.refresh(row)
                    logger.info("Refreshed %d download URLs for %s", refreshed, owner_id)
                return list(rows)

        return await asyncio.to_thread(work)

    async def mark_downloaded(self, owner_id: str, file_id: int) -> UserFile:
        def work() -> UserFile:
            with Session(self.engine) as session:
                row = self._owned(session, owner_id, file_id)
                row.status = FileStatus.DOWNLOADED.value
                row.last_downloaded_at = self.clock()
                session.add(row)
                session.commit()
                session.refresh(row)
                return row

        return await asyncio.to_thread(work)

    async def delete(self, owner_id: str, file_id: int) -> None:
        """Borra la fila y programa el borrado del blob."""
        def work() -> str:
            with Session(self.engine) as session:
                row = self._owned(session, owner_id, file_id)
                path = row.file_path
                session.delete(row)
                session.commit()
                return path

        path = await asyncio.to_thread(work)
        self.store.schedule_delete([path], delay=0)

    async def expire(self) -> int:
        """
        Marca como `expired` las filas vencidas y programa el borrado de sus blobs.

        Retorna cuantas filas se marcaron.
        """
        def work() -> list[str]:
            now = self.clock()
            with Session(self.engine) as session:
                rows = session.exec(
                    select(UserFile)
                    .where(UserFile.expires_at <= now)
                    .where(UserFile.status != FileStatus.EXPIRED.value)
                ).all()
                paths = []
                for row in rows:
                    row.status = FileStatus.EXPIRED.value
                    session.add(row)
                    paths.append(row.file_path)
                session.commit()
                return paths

        paths = await asyncio.to_thread(work)
        if paths:
            self.store.schedule_delete(paths, delay=0)
            logger.info("Expired %d ready files", len(paths))
        return len(paths)

    @staticmethod
    def _owned(session: Session, owner_id: str, file_id: int) -> UserFile:
        row = session.get(UserFile, file_id)
        if row is None or row.user_id != owner_id:
            raise NotFoundError("File not found")
        return row
