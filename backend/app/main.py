"""
Punto de entrada principal de la aplicacion FastAPI.

Aqui se:
1. Crea la aplicacion (create_app) y su ciclo de vida (lifespan).
2. Configuran los middlewares (CORS, rate limiting).
3. Registra el handler unico de errores de dominio.
4. Registran todas las rutas.

Arquitectura:
-------------
    main.py (punto de entrada)
        |
        +-- routes/          (Controladores: reciben HTTP requests)
        |    +-- upload.py, convert.py, download.py, abort.py, files.py
        |
        +-- services/        (Logica de negocio)
        |    +-- pipeline.py       (dueno de todo el estado)
        |    +-- storage.py        (S3 con reintentos)
        |    +-- upload_queue.py   (subidas en segundo plano)
        |    +-- orchestrator.py   (jobs de conversion)
        |    +-- converter.py      (Pillow / ffmpeg)
        |    +-- zip_bundler.py    (ZIPs con cache)
        |    +-- abort.py          (abort y borrado)
        |    +-- quota.py          (cuotas por plan)
        |    +-- user_files.py     (archivos listos)
        |
        +-- models/          (schemas Pydantic y tablas SQLModel)
        +-- config.py, errors.py, security.py, limiter.py, db.py

Ciclo de vida (lifespan)
------------------------
Al arrancar: logging, tablas de la base, PipelineService.start() (que
programa los barridos periodicos). Al apagar: PipelineService.shutdown()
cancela barridos y tareas pendientes. Las rutas reciben el pipeline por
dependencia (app.state.pipeline), nunca por variables globales.

El flujo de una peticion HTTP es:
    Cliente -> CORS -> Rate limiter -> Router -> Auth -> Endpoint -> Respuesta
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from app.config import settings
from app.db import create_db_and_tables, make_engine
from app.errors import ConvertorError
from app.limiter import limiter
from app.logging_config import setup_logging
from app.models.schemas import ErrorResponse
from app.routes.abort import router as abort_router
from app.routes.convert import router as convert_router
from app.routes.download import router as download_router
from app.routes.files import router as files_router
from app.routes.upload import router as upload_router
from app.services.pipeline import PipelineService

logger = logging.getLogger(__name__)


async def convertor_error_handler(request: Request, exc: ConvertorError) -> JSONResponse:
    """
    Convierte cualquier ConvertorError en {"detail": mensaje, ...extra}.

    Los 5xx se loguean como error; el resto (cuota, 404, 403) son parte
    del funcionamiento normal y van a INFO.
    """
    level = logging.ERROR if exc.status_code >= 500 else logging.INFO
    logger.log(level, "%s %s -> %d: %s", request.method, request.url.path, exc.status_code, exc.message)
    body = ErrorResponse(detail=exc.message, **exc.extra)
    return JSONResponse(status_code=exc.status_code, content=body.model_dump())


def create_app(pipeline: PipelineService | None = None) -> FastAPI:
    """
    Construye la aplicacion.

    Parametros:
        pipeline: Pipeline ya armado (los tests inyectan uno con moto y
            SQLite en memoria). Si es None, el lifespan crea uno con la
            configuracion de settings.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging()
        service = pipeline
        if service is None:
            engine = make_engine()
            create_db_and_tables(engine)
            service = PipelineService(engine)
        app.state.pipeline = service
        service.start()
        try:
            yield
        finally:
            await service.shutdown()

    app = FastAPI(title="Media File Converter", lifespan=lifespan)

    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(ConvertorError, convertor_error_handler)

    # SEGURIDAD: NUNCA allow_origins=["*"] en produccion.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Files-Included", "X-Files-Requested"],
    )

    @app.get("/api/health")
    async def health_check():
        """Health check para load balancers y monitoreo. No requiere auth."""
        return {"status": "ok"}

    app.include_router(upload_router)
    app.include_router(convert_router)
    app.include_router(download_router)
    app.include_router(abort_router)
    app.include_router(files_router)
    return app


app = create_app()
