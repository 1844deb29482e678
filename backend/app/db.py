"""
Motor de base de datos.

El engine se crea a partir de DATABASE_URL. Con SQLite desactivamos
check_same_thread porque las sesiones se abren desde los hilos del pool
de asyncio.to_thread, no solo desde el hilo que creo la conexion.
"""

from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine

from app.config import settings


def make_engine(url: str | None = None, **kwargs) -> Engine:
    url = url or settings.DATABASE_URL
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    else:
        kwargs.setdefault("pool_pre_ping", True)
    return create_engine(url, echo=False, **kwargs)


def create_db_and_tables(engine: Engine) -> None:
    # Importar los modelos los registra en SQLModel.metadata
    from app.models import records  # noqa: F401

    SQLModel.metadata.create_all(engine)
