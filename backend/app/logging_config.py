"""
Configuracion del logging de la aplicacion.

Cada modulo crea su propio logger con logging.getLogger(__name__); esta
funcion solo configura el formato y el nivel del logger raiz. Debe
llamarse UNA vez al arrancar (lo hace el lifespan de main.py).
"""

import logging
import sys

from app.config import settings


def setup_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=(level or settings.LOG_LEVEL).upper(),
        format="%(asctime)s - %(name)s - [%(levelname)s] - %(message)s",
        stream=sys.stdout,
    )
    # boto3/botocore loguean cada peticion HTTP en DEBUG/INFO; los bajamos
    # a WARNING para que nuestros propios mensajes sigan siendo legibles.
    for noisy in ("botocore", "boto3", "urllib3", "s3transfer"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
