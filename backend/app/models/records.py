"""
Tablas de la base de datos relacional (SQLModel).

SQLModel combina SQLAlchemy (la tabla) y Pydantic (la validacion) en una
sola clase. Aqui viven SOLO los datos que deben sobrevivir a un reinicio:

- users:       plan y contadores de cuota de cada usuario (QuotaRecord)
- user_files:  archivos convertidos listos para descargar (24 h)
- conversions: registro de cada conversion y su resultado

La cola de subidas, los jobs y el cache de ZIPs son estado EN MEMORIA
del proceso (ver services/); no estan aqui.

Todas las fechas son UTC "aware" (con tzinfo) en columnas
DateTime(timezone=True). SQLite no conserva la zona horaria y las
devuelve naive; por eso toda comparacion en Python pasa por as_utc().
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """La misma fecha en UTC aware. Un valor naive se interpreta como UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def timestamp_field(**kwargs):
    return Field(sa_type=DateTime(timezone=True), **kwargs)


class Plan(str, Enum):
    FREE = "free"
    PREMIUM = "premium"


class FileStatus(str, Enum):
    READY = "ready"
    DOWNLOADED = "downloaded"
    EXPIRED = "expired"


class ConversionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class UserRecord(SQLModel, table=True):
    __tablename__ = "users"

    id: str = Field(primary_key=True)
    email: Optional[str] = None
    plan: str = Field(default=Plan.FREE.value)

    # Contador diario (el que bloquea) y mensual (solo informativo)
    conversion_count: int = Field(default=0)
    monthly_conversion_count: int = Field(default=0)
    last_reset: datetime = timestamp_field(default_factory=utcnow)

    created_at: datetime = timestamp_field(default_factory=utcnow)


class UserFile(SQLModel, table=True):
    __tablename__ = "user_files"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)

    original_file_name: str
    converted_file_name: str
    original_format: Optional[str] = None
    converted_format: str
    quality: Optional[str] = None

    file_path: str
    download_url: Optional[str] = None
    file_size: int = 0

    status: str = Field(default=FileStatus.READY.value, index=True)
    created_at: datetime = timestamp_field(default_factory=utcnow)
    expires_at: datetime = timestamp_field()
    last_downloaded_at: Optional[datetime] = timestamp_field(default=None)


class ConversionRecord(SQLModel, table=True):
    __tablename__ = "conversions"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    file_name: str
    target_format: Optional[str] = None
    status: str = Field(default=ConversionStatus.PENDING.value)
    error: Optional[str] = None
    created_at: datetime = timestamp_field(default_factory=utcnow)
