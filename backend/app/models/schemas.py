"""
Modulo de esquemas (schemas) de datos de la API.

Este archivo define la ESTRUCTURA EXACTA de los datos que entran y salen
de la API, usando Pydantic. Es el "contrato" entre el frontend y el
backend.

camelCase en JSON, snake_case en Python
---------------------------------------
El frontend es JavaScript y espera `filePath`, `uploadId`,
`downloadUrl`... Todos los schemas heredan de ApiModel, que genera el
alias camelCase de cada campo (alias_generator=to_camel). En Python
seguimos escribiendo `file_path`; FastAPI serializa las respuestas con
los alias y acepta ambas formas en los requests (populate_by_name).

Flujo tipico:
    JSON del cliente -> Pydantic valida -> Objeto Python -> logica -> Pydantic serializa -> JSON
"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from app.models.records import as_utc

Quality = Literal["low", "medium", "high"]


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------- Subida ----------


class UploadResponse(ApiModel):
    """
    Respuesta de POST /api/upload.

    Archivos chicos (< 5MB) se suben a S3 en el mismo request: viene
    `file_path` y status "completed". Archivos grandes quedan en la cola:
    viene `upload_id` y status "pending"; el cliente hace polling en
    GET /api/upload/status/{upload_id}.
    """
    file_path: Optional[str] = None
    upload_id: Optional[str] = None
    file_name: str
    file_size: int
    mime_type: str
    status: str


class UploadStatusResponse(ApiModel):
    upload_id: str
    status: str
    file_name: str
    file_size: int
    file_path: Optional[str] = None
    error: Optional[str] = None


# ---------- Conversion ----------


class ConvertRequest(ApiModel):
    """
    Cuerpo de POST /api/convert. Debe venir `file_path` O `upload_id`.

    `job_id` es opcional: si el cliente lo genera, puede consultar el
    progreso y abortar con ese id mientras el request sigue abierto.
    """
    file_path: Optional[str] = None
    upload_id: Optional[str] = None
    format: str = Field(min_length=1, max_length=10)
    quality: Quality = "medium"
    job_id: Optional[str] = Field(default=None, max_length=128)
    file_name: Optional[str] = None


class ConvertResponse(ApiModel):
    job_id: str
    download_url: str
    output_path: str
    expires_in: int
    file_size: int
    format: str


class ProgressResponse(ApiModel):
    progress: int
    status: Optional[str] = None
    phase: Optional[str] = None


class BatchLimitRequest(ApiModel):
    file_count: int = Field(ge=1)


class BatchLimitResponse(ApiModel):
    can_convert: bool
    remaining: int
    requested: int
    daily_limit: int
    plan: str
    message: Optional[str] = None


class ClientConvertedResponse(ApiModel):
    file_path: str
    download_url: str
    file_size: int


# ---------- Descarga ----------


class ZipRequest(ApiModel):
    """
    Cuerpo de POST /api/download/zip.

    deliver="stream" (default) responde el ZIP directamente; "url" lo sube
    a S3 y responde una URL firmada de 10 minutos.
    """
    file_paths: list[str] = Field(min_length=1)
    deliver: Literal["stream", "url"] = "stream"


class ZipUrlResponse(ApiModel):
    download_url: str
    expires_in: int
    files_included: int
    files_requested: int


# ---------- Abort / borrado ----------


class AbortUploadRequest(ApiModel):
    upload_id: str


class AbortConversionRequest(ApiModel):
    file_path: Optional[str] = None
    upload_id: Optional[str] = None
    job_id: Optional[str] = None


class AbortResponse(ApiModel):
    success: bool = True
    aborted: int
    message: str


class DeleteFilesRequest(ApiModel):
    file_paths: list[str] = Field(min_length=1)


class DeleteResult(ApiModel):
    path: str
    success: bool
    error: Optional[str] = None


class DeleteFilesResponse(ApiModel):
    success: bool
    results: list[DeleteResult]
    success_count: int
    failed_count: int


# ---------- Usuario y archivos listos ----------


class UserResponse(ApiModel):
    id: str
    email: Optional[str] = None
    plan: str
    conversion_count: int
    monthly_conversion_count: int
    daily_limit: int
    remaining: int
    last_reset: datetime


class UserFileResponse(ApiModel):
    id: int
    original_file_name: str
    converted_file_name: str
    original_format: Optional[str] = None
    converted_format: str
    quality: Optional[str] = None
    file_path: str
    download_url: Optional[str] = None
    file_size: int
    status: str
    created_at: datetime
    expires_at: datetime
    last_downloaded_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, row) -> "UserFileResponse":
        return cls(
            id=row.id,
            original_file_name=row.original_file_name,
            converted_file_name=row.converted_file_name,
            original_format=row.original_format,
            converted_format=row.converted_format,
            quality=row.quality,
            file_path=row.file_path,
            download_url=row.download_url,
            file_size=row.file_size,
            status=row.status,
            created_at=as_utc(row.created_at),
            expires_at=as_utc(row.expires_at),
            last_downloaded_at=as_utc(row.last_downloaded_at) if row.last_downloaded_at else None,
        )


class UserFilesResponse(ApiModel):
    files: list[UserFileResponse]


class CleanupResponse(ApiModel):
    expired: int


class ErrorResponse(BaseModel):
    """
    Formato uniforme de todas las respuestas de error: {"detail": "..."}.

    Los errores de dominio pueden agregar campos (ej: `remaining` en los
    errores de cuota, `invalidPaths` en los de autorizacion).
    """
    model_config = ConfigDict(extra="allow")

    detail: str
