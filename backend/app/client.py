"""
Cliente Python (async) de la API, basado en httpx.

Es el equivalente del cliente del frontend: sube archivos, pide
conversiones, consulta progreso y, sobre todo, implementa el lado
CLIENTE del protocolo de abort:

    1. Cada llamada larga (upload/convert) corre en su propia tarea y se
       registra en `_inflight` con una referencia (nombre de archivo,
       jobId...).
    2. abort(ref) cancela esa tarea LOCAL de inmediato...
    3. ...y despues avisa al servidor (POST /api/abort/...), para que la
       cola y el orquestador tambien queden en "detenido" aunque la
       cancelacion local haya llegado antes que el request.

Uso:
    async with ConvertorClient("http://localhost:8000", token) as client:
        uploaded = await client.upload(data, "video.mov")
        result = await client.convert("mp4", upload_id=uploaded["uploadId"])
"""

import asyncio
import logging
import uuid

import httpx

logger = logging.getLogger(__name__)

# Conversiones de video grandes pueden tardar varios minutos.
CONVERT_TIMEOUT = httpx.Timeout(12 * 60, connect=10.0)
UPLOAD_TIMEOUT = httpx.Timeout(10 * 60, connect=10.0)
DEFAULT_TIMEOUT = httpx.Timeout(30.0, connect=10.0)


class ConvertorAPIError(Exception):
    """Respuesta de error de la API. `body` es el JSON completo ({"detail": ..., ...})."""

    def __init__(self, status_code: int, detail: str, body: dict | None = None):
        super().__init__(f"{status_code}: {detail}")
        self.status_code = status_code
        self.detail = detail
        self.body = body or {}


class RequestAbortedError(Exception):
    """La llamada fue cancelada localmente por abort()/abort_all()."""

    def __init__(self, ref: str):
        super().__init__(f"Request '{ref}' was aborted")
        self.ref = ref


class ConvertorClient:
    def __init__(self, base_url: str, token: str, http: httpx.AsyncClient | None = None):
        self._http = http or httpx.AsyncClient(base_url=base_url, timeout=DEFAULT_TIMEOUT)
        self._headers = {"Authorization": f"Bearer {token}"}
        self._inflight: dict[str, asyncio.Task] = {}
        self._aborted: set[str] = set()

    async def __aenter__(self) -> "ConvertorClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        for task in self._inflight.values():
            task.cancel()
        await self._http.aclose()

    @property
    def inflight(self) -> list[str]:
        return list(self._inflight)

    # ------------------------------------------------------------------
    # Operaciones
    # ------------------------------------------------------------------

    async def upload(self, data: bytes, file_name: str, ref: str | None = None) -> dict:
        """Sube un archivo. Retorna {"filePath"...} o {"uploadId"...} segun el tamano."""
        return await self._track(
            ref or file_name,
            self._request(
                "POST",
                "/api/upload",
                files={"file": (file_name, data)},
                timeout=UPLOAD_TIMEOUT,
            ),
        )

    async def upload_status(self, upload_id: str) -> dict:
        return await self._request("GET", f"/api/upload/status/{upload_id}")

    async def convert(
        self,
        target_format: str,
        file_path: str | None = None,
        upload_id: str | None = None,
        quality: str = "medium",
        job_id: str | None = None,
    ) -> dict:
        """
        Pide una conversion y espera el resultado.

        El jobId se genera aqui para poder consultar progreso y abortar
        mientras el request sigue abierto; tambien es la referencia local.
        """
        job_id = job_id or uuid.uuid4().hex
        body = {"format": target_format, "quality": quality, "jobId": job_id}
        if file_path:
            body["filePath"] = file_path
        if upload_id:
            body["uploadId"] = upload_id
        return await self._track(
            job_id,
            self._request("POST", "/api/convert", json=body, timeout=CONVERT_TIMEOUT),
        )

    async def progress(self, ref: str) -> int:
        data = await self._request("GET", f"/api/convert/progress/{ref}")
        return data["progress"]

    async def check_batch_limit(self, file_count: int) -> dict:
        return await self._request("POST", "/api/check-batch-limit", json={"fileCount": file_count})

    async def download_zip_url(self, file_paths: list[str]) -> dict:
        return await self._request(
            "POST", "/api/download/zip", json={"filePaths": file_paths, "deliver": "url"}
        )

    async def delete_files(self, file_paths: list[str]) -> dict:
        return await self._request("DELETE", "/api/files", json={"filePaths": file_paths})

    # ------------------------------------------------------------------
    # Abort
    # ------------------------------------------------------------------

    async def abort(
        self,
        ref: str,
        upload_id: str | None = None,
        file_path: str | None = None,
        job_id: str | None = None,
    ) -> dict:
        """
        Cancela la llamada local `ref` (si sigue en curso) y avisa al servidor.

        Solo con upload_id se usa /api/abort/upload; con filePath o jobId,
        /api/abort/conversion. Sin ninguno de los tres solo hay efecto local.
        """
        self._cancel_local(ref)
        if upload_id and not (file_path or job_id):
            return await self._request("POST", "/api/abort/upload", json={"uploadId": upload_id})
        if upload_id or file_path or job_id:
            body = {"uploadId": upload_id, "filePath": file_path, "jobId": job_id}
            return await self._request(
                "POST", "/api/abort/conversion", json={k: v for k, v in body.items() if v}
            )
        return {"success": True, "aborted": 0, "message": "Aborted locally"}

    async def abort_all(self) -> dict:
        for ref in list(self._inflight):
            self._cancel_local(ref)
        return await self._request("POST", "/api/abort/all-uploads")

    def _cancel_local(self, ref: str) -> None:
        task = self._inflight.get(ref)
        if task is not None and not task.done():
            self._aborted.add(ref)
            task.cancel()
            logger.info("Cancelled in-flight request %s", ref)

    # ------------------------------------------------------------------
    # Internos
    # ------------------------------------------------------------------

    async def _track(self, ref: str, coro) -> dict:
        task = asyncio.create_task(coro)
        self._inflight[ref] = task
        try:
            return await task
        except asyncio.CancelledError:
            if ref in self._aborted:
                raise RequestAbortedError(ref) from None
            task.cancel()
            raise
        finally:
            self._aborted.discard(ref)
            if self._inflight.get(ref) is task:
                del self._inflight[ref]

    async def _request(self, method: str, url: str, **kwargs) -> dict:
        response = await self._http.request(method, url, headers=self._headers, **kwargs)
        if response.is_error:
            try:
                body = response.json()
            except ValueError:
                body = {"detail": response.text}
            raise ConvertorAPIError(response.status_code, body.get("detail", response.reason_phrase), body)
        return response.json()
