"""
Zip Bundler: junta varios archivos convertidos en un solo ZIP.

Cache por contenido
-------------------
La key del cache es el SHA-256 de la lista de rutas ORDENADA (y sin
duplicados). Asi ["a", "b"] y ["b", "a"] producen la misma key y el
segundo pedido reutiliza el ZIP ya armado en vez de volver a descargar
todo de S3.

Una entrada del cache solo se usa si:
    1. el archivo sigue existiendo en el disco scratch,
    2. no esta vacio (tamano > 0),
    3. tiene menos de `ttl` segundos (1 hora por defecto).
Si falla cualquiera, se descarta y se vuelve a armar.

Descargas en paralelo y tolerantes a fallos
-------------------------------------------
Los miembros se descargan todos a la vez (asyncio.gather). Si alguno
falla se SALTEA: el ZIP se arma con lo que se pudo bajar y se informa
cuantos de N entraron. Solo si no se pudo bajar NINGUNO es un error.

Dos pedidos simultaneos para el mismo conjunto pueden armar el ZIP dos
veces. Ambos resultados son equivalentes; gana el ultimo en registrarse.
"""

import asyncio
import hashlib
import logging
import os
import re
import time
import uuid
import zipfile
from dataclasses import dataclass, field
from typing import Iterator

from app.config import settings
from app.errors import NoFileProvidedError, NotFoundError, StorageError
from app.services.scratch import read_file, remove_quietly
from app.services.storage import BlobStore, SignedUrl

logger = logging.getLogger(__name__)

# Prefijo "uuid_" que agregamos a los nombres de los archivos convertidos.
_UUID_PREFIX = re.compile(r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}_")

CHUNK_SIZE = 64 * 1024


def cache_key(paths: list[str]) -> str:
    """Hash estable del CONJUNTO de rutas (el orden no importa)."""
    canonical = "\n".join(sorted(set(paths)))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def member_name(path: str) -> str:
    """'u1/converted/<uuid>_foto.webp' -> 'foto.webp'"""
    name = path.rsplit("/", 1)[-1]
    return _UUID_PREFIX.sub("", name) or name


@dataclass
class ZipCacheEntry:
    key: str
    path: str
    created_at: float
    size: int
    members: list[str] = field(default_factory=list)


@dataclass
class ZipBundle:
    entry: ZipCacheEntry
    requested: int
    cache_hit: bool

    @property
    def included(self) -> int:
        return len(self.entry.members)


def write_zip(archive_path: str, members: list[tuple[str, bytes]]) -> int:
    """
    Escribe el ZIP en un archivo temporal y lo renombra al final.

    os.replace() es atomico: nadie ve nunca un ZIP a medio escribir en
    `archive_path`. Retorna el tamano final en bytes.
    """
    os.makedirs(os.path.dirname(archive_path), exist_ok=True)
    tmp_path = f"{archive_path}.{uuid.uuid4().hex}.tmp"
    used: set[str] = set()
    try:
        with zipfile.ZipFile(tmp_path, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=9) as archive:
            for path, data in members:
                name = member_name(path)
                stem, dot, ext = name.rpartition(".")
                counter = 1
                while name in used:
                    name = f"{stem}_{counter}{dot}{ext}" if dot else f"{ext}_{counter}"
                    counter += 1
                used.add(name)
                archive.writestr(name, data)
        os.replace(tmp_path, archive_path)
    except BaseException:
        remove_quietly(tmp_path)
        raise
    return os.path.getsize(archive_path)


class ZipBundler:
    def __init__(
        self,
        store: BlobStore,
        scratch_dir: str | None = None,
        ttl: float = settings.ZIP_TTL,
        clock=time.time,
    ):
        self.store = store
        self.scratch_dir = scratch_dir or os.path.join(settings.SCRATCH_DIR, "zips")
        self.ttl = ttl
        self.clock = clock
        self._cache: dict[str, ZipCacheEntry] = {}

    def __len__(self) -> int:
        return len(self._cache)

    def get(self, key: str) -> ZipCacheEntry | None:
        return self._cache.get(key)

    async def get_or_create(self, paths: list[str]) -> ZipBundle:
        """
        Retorna el ZIP para `paths`, del cache o recien armado.

        Raises:
            NoFileProvidedError: lista vacia.
            NotFoundError: no se pudo descargar ningun miembro.
        """
        if not paths:
            raise NoFileProvidedError("No files provided")
        members = sorted(set(paths))
        key = cache_key(members)

        entry = self._cache.get(key)
        if entry is not None:
            if await asyncio.to_thread(self._is_valid, entry):
                logger.info("Zip cache hit for %d files (%s)", len(members), key[:12])
                return ZipBundle(entry=entry, requested=len(members), cache_hit=True)
            logger.info("Zip cache entry %s is stale, rebuilding", key[:12])
            self._evict(key)

        results = await asyncio.gather(*(self._fetch(path) for path in members))
        fetched = [(path, data) for path, data in zip(members, results) if data is not None]
        if not fetched:
            raise NotFoundError("None of the requested files could be downloaded")

        archive_path = os.path.join(self.scratch_dir, f"{key}.zip")
        size = await asyncio.to_thread(write_zip, archive_path, fetched)
        entry = ZipCacheEntry(
            key=key,
            path=archive_path,
            created_at=self.clock(),
            size=size,
            members=[path for path, _ in fetched],
        )
        self._cache[key] = entry
        logger.info(
            "Built zip %s with %d/%d files (%d bytes)", key[:12], len(fetched), len(members), size
        )
        return ZipBundle(entry=entry, requested=len(members), cache_hit=False)

    async def publish(self, owner_id: str, bundle: ZipBundle) -> SignedUrl:
        """
        Sube el ZIP a {owner}/archives/ y retorna una URL firmada de 10 minutos.

        El blob se borra solo despues de CLEANUP_DELAY segundos.
        """
        data = await asyncio.to_thread(read_file, bundle.entry.path)
        key = f"{owner_id}/{settings.ARCHIVE_PREFIX}/converted-files-{uuid.uuid4().hex[:12]}.zip"
        await self.store.put(data, key, "application/zip")
        signed = self.store.signed_url(key, settings.BATCH_SIGNED_URL_TTL)
        self.store.schedule_delete([key], settings.CLEANUP_DELAY)
        return signed

    def iter_bytes(self, entry: ZipCacheEntry) -> Iterator[bytes]:
        """Lee el ZIP del disco en bloques (para StreamingResponse)."""
        with open(entry.path, "rb") as f:
            while chunk := f.read(CHUNK_SIZE):
                yield chunk

    def sweep(self) -> int:
        """Elimina las entradas con mas de `ttl` segundos y sus archivos."""
        cutoff = self.clock() - self.ttl
        expired = [key for key, entry in self._cache.items() if entry.created_at <= cutoff]
        for key in expired:
            self._evict(key)
        if expired:
            logger.info("Swept %d expired zip archives", len(expired))
        return len(expired)

    def _is_valid(self, entry: ZipCacheEntry) -> bool:
        if self.clock() - entry.created_at >= self.ttl:
            return False
        try:
            return os.path.getsize(entry.path) > 0
        except OSError:
            return False

    def _evict(self, key: str) -> None:
        entry = self._cache.pop(key, None)
        if entry is not None:
            remove_quietly(entry.path)

    async def _fetch(self, path: str) -> bytes | None:
        try:
            return await self.store.get(path)
        except StorageError as exc:
            logger.warning("Skipping %s in zip: %s", path, exc)
            return None
