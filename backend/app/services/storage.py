"""
Adaptador del almacenamiento de objetos (Blob Store) sobre Amazon S3.

Este modulo encapsula TODA la comunicacion con S3. Ningun otro archivo
del proyecto llama a boto3 directamente; todo pasa por BlobStore. Asi
los reintentos, los timeouts y la normalizacion de errores viven en un
solo lugar y el resto del codigo solo ve dos resultados: exito o una
excepcion StorageError con los reintentos ya agotados.

Por que reintentar?
-------------------
S3 es "eventualmente consistente" y bajo carga puede fallar de forma
transitoria: timeouts, 503 SlowDown, o un NoSuchKey para un objeto que
se acaba de escribir. Estos errores NO deben llegar al usuario en casos
normales, pero tampoco podemos esperar para siempre. Por eso cada
operacion tiene un numero maximo de intentos con backoff exponencial:

    escritura: 3 intentos, espera 2s, 4s        (timeout 30s por intento)
    lectura:   5 intentos, espera 1s, 2s, 4s, 8s (timeout 2 min + 1 min de stream)

Estructura de keys:
    {owner_id}/uploads/{uuid}.{ext}          -> archivo original
    {owner_id}/converted/{uuid}_{nombre}     -> archivo convertido
    {owner_id}/archives/{nombre}.zip         -> ZIP entregado por URL

El owner_id es SIEMPRE el primer segmento; las operaciones de borrado y
abort validan ese prefijo antes de actuar.

boto3 es sincrono: cada llamada se ejecuta en un hilo del pool por
defecto (asyncio.to_thread) para no bloquear el event loop. Un timeout
deja de esperar la respuesta, pero NO interrumpe la peticion en vuelo:
una escritura "cancelada" todavia puede aterrizar en S3.
"""

import asyncio
import logging
import os
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone

import boto3
from botocore.exceptions import BotoCoreError, ClientError, ConnectionError as BotoConnectionError
from botocore.exceptions import ReadTimeoutError

from app.config import settings
from app.errors import (
    NotFoundError,
    StorageError,
    StorageReadError,
    StorageTimeoutError,
    StorageWriteError,
)
from app.services.tasks import BackgroundTaskSet

logger = logging.getLogger(__name__)

# Codigos de error que S3 usa para "el objeto no existe". HeadObject no
# tiene body, asi que ahi el codigo llega como el status ("404").
NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}

# Status HTTP que indican un problema transitorio del lado de S3 o de un
# proxy intermedio (100 = el proxy corto la peticion en "Continue").
TRANSIENT_STATUS = {100, 500, 502, 503, 504}

# S3 acepta hasta 1000 keys por llamada a DeleteObjects.
DELETE_BATCH_SIZE = 1000

_UNSAFE_HEADER_CHARS = re.compile(r'[^\x20-\x7E]|["\\\r\n]')


@dataclass(frozen=True)
class StoredFile:
    """Referencia inmutable a un blob ya persistido en el store."""

    key: str
    size: int
    content_type: str = "application/octet-stream"
    uploaded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def owner_id(self) -> str:
        return self.key.split("/", 1)[0]

    @property
    def file_name(self) -> str:
        return self.key.rsplit("/", 1)[-1]


@dataclass(frozen=True)
class SignedUrl:
    url: str
    expires_in: int


def build_key(owner_id: str, prefix: str, filename: str) -> str:
    """
    Construye una key unica dentro del "directorio" del usuario.

    Ejemplo: build_key("u1", "uploads", "foto.png")
             -> "u1/uploads/5f0c...e2.png"
    """
    ext = filename.rsplit(".", 1)[-1].lower() if "." in filename else "bin"
    return f"{owner_id}/{prefix}/{uuid.uuid4()}.{ext}"


def sanitize_header_value(value: str) -> str:
    """Los metadatos de S3 viajan como headers HTTP: solo ASCII imprimible, sin comillas."""
    return _UNSAFE_HEADER_CHARS.sub("", value).strip()


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


def _status_code(exc: ClientError) -> int | None:
    return exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")


def is_not_found(exc: Exception) -> bool:
    if not isinstance(exc, ClientError):
        return False
    return _error_code(exc) in NOT_FOUND_CODES or _status_code(exc) == 404


def is_transient(exc: Exception) -> bool:
    """Errores de red, timeouts y 5xx: vale la pena reintentar."""
    if isinstance(exc, (asyncio.TimeoutError, BotoConnectionError, ReadTimeoutError)):
        return True
    if isinstance(exc, ClientError):
        code = _error_code(exc)
        return (
            _status_code(exc) in TRANSIENT_STATUS
            or code in {"SlowDown", "RequestTimeout", "InternalError", "ServiceUnavailable"}
        )
    return False


class BlobStore:
    """
    Servicio que encapsula las operaciones con el bucket.

    Atributos:
        client: Cliente de boto3 para S3. Se puede inyectar (tests con
            moto o con un MagicMock).
        bucket (str): Bucket donde vive todo.
        tasks (BackgroundTaskSet): Donde se registran las limpiezas
            diferidas de schedule_delete().
    """

    def __init__(
        self,
        client=None,
        bucket: str | None = None,
        tasks: BackgroundTaskSet | None = None,
        write_attempts: int = settings.STORAGE_WRITE_ATTEMPTS,
        write_base_delay: float = settings.STORAGE_WRITE_BASE_DELAY,
        write_timeout: float = settings.STORAGE_WRITE_TIMEOUT,
        read_attempts: int = settings.STORAGE_READ_ATTEMPTS,
        read_base_delay: float = settings.STORAGE_READ_BASE_DELAY,
        read_timeout: float = settings.STORAGE_READ_TIMEOUT,
        stream_timeout: float = settings.STORAGE_STREAM_TIMEOUT,
    ):
        self.client = client or boto3.client(
            "s3",
            region_name=settings.AWS_REGION,
            endpoint_url=settings.S3_ENDPOINT_URL,
        )
        self.bucket = bucket or settings.S3_BUCKET
        self.tasks = tasks if tasks is not None else BackgroundTaskSet()
        self.write_attempts = write_attempts
        self.write_base_delay = write_base_delay
        self.write_timeout = write_timeout
        self.read_attempts = read_attempts
        self.read_base_delay = read_base_delay
        self.read_timeout = read_timeout
        self.stream_timeout = stream_timeout

    # ------------------------------------------------------------------
    # Escritura
    # ------------------------------------------------------------------

    async def put(
        self,
        data: bytes,
        key: str,
        content_type: str = "application/octet-stream",
        metadata: dict | None = None,
    ) -> StoredFile:
        """
        Sube `data` bajo `key` y retorna la referencia al blob.

        Una respuesta solo cuenta como exito si trae status 200/201 Y un
        ETag (la "huella" de integridad que S3 calcula sobre el contenido).
        Sin ETag no podemos asegurar que el objeto quedo escrito, asi que
        lo tratamos como un fallo transitorio mas.

        Raises:
            StorageWriteError: si se agotan los intentos o el error no es
                reintentable (ej: AccessDenied).
        """
        params = {
            "Bucket": self.bucket,
            "Key": key,
            "Body": data,
            "ContentType": content_type,
            "ContentLength": len(data),
        }
        if metadata:
            params["Metadata"] = {k: sanitize_header_value(str(v)) for k, v in metadata.items()}

        last_error: Exception | None = None
        for attempt in range(1, self.write_attempts + 1):
            try:
                response = await asyncio.wait_for(
                    asyncio.to_thread(self.client.put_object, **params),
                    timeout=self.write_timeout,
                )
                status = response.get("ResponseMetadata", {}).get("HTTPStatusCode")
                if status not in (200, 201):
                    raise StorageWriteError(f"S3 upload failed with status {status} (expected 200/201)")
                if not response.get("ETag"):
                    raise StorageWriteError("S3 upload failed - no ETag returned")

                logger.info("Stored %s (%d bytes) on attempt %d", key, len(data), attempt)
                return StoredFile(key=key, size=len(data), content_type=content_type)
            except (ClientError, BotoCoreError, asyncio.TimeoutError, StorageWriteError) as exc:
                last_error = exc
                retryable = isinstance(exc, StorageWriteError) or is_transient(exc)
                if attempt == self.write_attempts or not retryable:
                    break
                delay = self.write_base_delay * 2 ** (attempt - 1)
                logger.warning(
                    "Upload attempt %d/%d for %s failed (%s), retrying in %.1fs",
                    attempt, self.write_attempts, key, exc, delay,
                )
                await asyncio.sleep(delay)

        logger.error("All upload attempts failed for %s: %s", key, last_error)
        raise StorageWriteError(f"Upload failed for {key}: {last_error}") from last_error

    # ------------------------------------------------------------------
    # Lectura
    # ------------------------------------------------------------------

    async def get(self, key: str) -> bytes:
        """
        Descarga un blob completo.

        Reintenta ante NoSuchKey/NotFound (consistencia eventual), timeouts
        y errores 5xx. Cualquier otro error (ej: AccessDenied) se propaga
        en el primer intento.

        Raises:
            StorageTimeoutError: si el ultimo intento fallo por timeout.
            StorageReadError: en cualquier otro caso de agotamiento.
        """
        last_error: Exception | None = None
        for attempt in range(1, self.read_attempts + 1):
            try:
                response = await asyncio.wait_for(
                    asyncio.to_thread(self.client.get_object, Bucket=self.bucket, Key=key),
                    timeout=self.read_timeout,
                )
                body = response.get("Body")
                if body is None:
                    raise StorageReadError(f"File not found or empty: {key}")
                # El stream tiene su propio limite: una conexion que entrega
                # headers pero se "cuelga" leyendo el body no debe bloquear
                # al caller indefinidamente.
                data = await asyncio.wait_for(asyncio.to_thread(body.read), timeout=self.stream_timeout)
                if attempt > 1:
                    logger.info("Download of %s succeeded on attempt %d", key, attempt)
                return data
            except (ClientError, BotoCoreError, asyncio.TimeoutError) as exc:
                last_error = exc
                retryable = is_not_found(exc) or is_transient(exc)
                if attempt == self.read_attempts or not retryable:
                    break
                delay = self.read_base_delay * 2 ** (attempt - 1)
                logger.warning(
                    "Download attempt %d/%d for %s failed (%s), retrying in %.1fs",
                    attempt, self.read_attempts, key, exc, delay,
                )
                await asyncio.sleep(delay)

        logger.error("Download of %s failed after %d attempts: %s", key, attempt, last_error)
        if isinstance(last_error, asyncio.TimeoutError):
            raise StorageTimeoutError(f"Download timed out for {key}") from last_error
        raise StorageReadError(f"Download failed for {key}: {last_error}") from last_error

    async def head(self, key: str) -> StoredFile:
        """
        Metadata del blob sin descargar su contenido (HTTP HEAD).

        Raises:
            NotFoundError: si el objeto no existe.
            StorageReadError: ante cualquier otro error.
        """
        try:
            response = await asyncio.to_thread(self.client.head_object, Bucket=self.bucket, Key=key)
        except ClientError as exc:
            if is_not_found(exc):
                raise NotFoundError("File not found") from exc
            raise StorageReadError(f"Could not read metadata for {key}: {exc}") from exc
        uploaded_at = response.get("LastModified") or datetime.now(timezone.utc)
        return StoredFile(
            key=key,
            size=int(response.get("ContentLength", 0)),
            content_type=response.get("ContentType") or "application/octet-stream",
            uploaded_at=uploaded_at,
        )

    async def exists(self, key: str) -> bool:
        """
        True si el blob existe. NUNCA lanza excepciones.

        Estrategia:
        1. HeadObject (barato, sin body).
        2. Si HEAD responde 400 (ambiguo: algunos proxies y servicios
           compatibles devuelven 400 para objetos que si existen), se
           verifica con un GET del primer byte (Range: bytes=0-0).
        3. Errores transitorios se reintentan con backoff; cualquier otra
           cosa se loguea y se trata como "no existe".
        """
        for attempt in range(1, self.read_attempts + 1):
            try:
                await asyncio.to_thread(self.client.head_object, Bucket=self.bucket, Key=key)
                return True
            except ClientError as exc:
                if is_not_found(exc):
                    return False
                if _status_code(exc) == 400:
                    logger.warning("HeadObject returned 400 for %s, verifying with a ranged GET", key)
                    return await self._exists_by_range(key)
                error: Exception = exc
            except BotoCoreError as exc:
                error = exc

            if attempt == self.read_attempts or not is_transient(error):
                logger.warning("Existence check for %s failed, treating as missing: %s", key, error)
                return False
            await asyncio.sleep(min(self.read_base_delay * 2 ** (attempt - 1), 10.0))
        return False

    async def _exists_by_range(self, key: str) -> bool:
        try:
            await asyncio.to_thread(
                self.client.get_object, Bucket=self.bucket, Key=key, Range="bytes=0-0"
            )
            return True
        except (ClientError, BotoCoreError) as exc:
            logger.warning("Ranged GET for %s also failed: %s", key, exc)
            return False

    # ------------------------------------------------------------------
    # Borrado
    # ------------------------------------------------------------------

    async def delete(self, key: str) -> None:
        try:
            await asyncio.to_thread(self.client.delete_object, Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as exc:
            raise StorageError(f"Delete failed for {key}: {exc}") from exc

    async def delete_batch(self, keys: list[str]) -> None:
        """
        Borra varias keys con DeleteObjects (de a 1000). No-op con lista vacia.

        DeleteObjects responde 200 aunque algunas keys fallen; esos fallos
        vienen en response["Errors"] y los convertimos en StorageError.
        """
        if not keys:
            return
        failed: list[str] = []
        for start in range(0, len(keys), DELETE_BATCH_SIZE):
            chunk = keys[start:start + DELETE_BATCH_SIZE]
            try:
                response = await asyncio.to_thread(
                    self.client.delete_objects,
                    Bucket=self.bucket,
                    Delete={"Objects": [{"Key": key} for key in chunk], "Quiet": True},
                )
            except (ClientError, BotoCoreError) as exc:
                raise StorageError(f"Batch delete failed: {exc}") from exc
            failed.extend(error.get("Key", "?") for error in response.get("Errors", []))
        if failed:
            raise StorageError(f"Could not delete {len(failed)} file(s)", failedKeys=failed)

    def schedule_delete(self, keys: list[str], delay: float = settings.CLEANUP_DELAY) -> None:
        """
        Programa un borrado diferido "best effort".

        La limpieza es orientativa: si falla, se loguea y listo. El caller
        nunca se entera (ni debe enterarse) del resultado.
        """
        if not keys:
            return
        self.tasks.spawn(self._delayed_delete(list(keys), delay), name=f"cleanup-{len(keys)}-files")

    async def _delayed_delete(self, keys: list[str], delay: float) -> None:
        if delay > 0:
            await asyncio.sleep(delay)
        try:
            await self.delete_batch(keys)
            logger.info("Cleaned up %d files: %s", len(keys), keys)
        except StorageError as exc:
            logger.error("Failed to cleanup files %s: %s", keys, exc)

    # ------------------------------------------------------------------
    # URLs firmadas
    # ------------------------------------------------------------------

    def signed_url(self, key: str, ttl: int = settings.SIGNED_URL_TTL) -> SignedUrl:
        """
        URL pre-firmada de lectura para `key`, valida por `ttl` segundos.

        La firma se calcula localmente con las credenciales del cliente:
        no hay ninguna llamada de red, por eso el metodo es sincrono.
        """
        filename = os.path.basename(key)
        url = self.client.generate_presigned_url(
            "get_object",
            Params={
                "Bucket": self.bucket,
                "Key": key,
                "ResponseContentDisposition": f'attachment; filename="{sanitize_header_value(filename)}"',
            },
            ExpiresIn=ttl,
        )
        return SignedUrl(url=url, expires_in=ttl)
