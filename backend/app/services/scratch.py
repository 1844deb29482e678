"""
Utilidades del almacenamiento local efimero (scratch).

Funciones sincronas: desde codigo async se llaman con asyncio.to_thread
para que la E/S de disco no bloquee el event loop.
"""

import logging
import os

logger = logging.getLogger(__name__)


def write_file(path: str, data: bytes) -> None:
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as f:
        f.write(data)


def read_file(path: str) -> bytes:
    with open(path, "rb") as f:
        return f.read()


def remove_quietly(path: str) -> None:
    """Borra `path` si existe. Un fallo se loguea y no se propaga."""
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning("Could not remove local file %s: %s", path, exc)
