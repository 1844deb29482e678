"""
Modulo de configuracion centralizada de la aplicacion.

Este archivo define TODAS las constantes y configuraciones que el backend
necesita para funcionar: almacenamiento (S3), base de datos, autenticacion,
limites de cuota por plan, politicas de reintento y tiempos de expiracion
de los caches en memoria.

Centralizar la configuracion en un solo lugar tiene dos ventajas:

1. **Un solo punto de cambio:** si el bucket, la politica de reintentos o
   el limite diario del plan gratuito cambian, se modifica UN archivo.

2. **Configuracion por entorno:** usamos variables de entorno (os.getenv)
   para que la misma aplicacion corra en desarrollo, staging y produccion
   con valores distintos SIN tocar el codigo fuente.

Patron de diseno: **Singleton implicito**
La instancia `settings` se crea UNA sola vez al importar este modulo.
Los servicios reciben sus valores por constructor (con `settings` como
default), asi que en tests podemos crear servicios con valores propios
(por ejemplo, reintentos sin espera) sin modificar la instancia global.
"""

import os


def _csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings:
    """
    Clase que encapsula toda la configuracion de la aplicacion.

    Los valores numericos de tiempo estan en SEGUNDOS salvo que el nombre
    diga lo contrario (ej: READY_FILE_TTL_HOURS).
    """

    # ---------- Almacenamiento de objetos (S3) ----------

    S3_BUCKET: str = os.getenv("S3_BUCKET", "file-converter-bucket")
    AWS_REGION: str = os.getenv("AWS_REGION", "us-east-1")

    # Endpoint opcional para servicios compatibles con S3 (MinIO, R2, B2...).
    # Si es None, boto3 usa el endpoint oficial de AWS para la region.
    S3_ENDPOINT_URL: str | None = os.getenv("S3_ENDPOINT_URL") or None

    # Prefijos dentro del "directorio" de cada usuario. Todas las keys
    # tienen la forma {owner_id}/{prefijo}/{nombre}; el owner_id SIEMPRE
    # es el primer segmento (asi validamos permisos con un startswith).
    UPLOAD_PREFIX: str = "uploads"
    CONVERTED_PREFIX: str = "converted"
    ARCHIVE_PREFIX: str = "archives"

    # ---------- Politica de reintentos del Blob Store ----------

    # Escritura: 3 intentos, backoff exponencial 2s, 4s. Cada intento
    # tiene un timeout de 30 segundos.
    STORAGE_WRITE_ATTEMPTS: int = 3
    STORAGE_WRITE_BASE_DELAY: float = 2.0
    STORAGE_WRITE_TIMEOUT: float = 30.0

    # Lectura: 5 intentos, backoff 1s, 2s, 4s, 8s. S3 es "eventualmente
    # consistente" bajo carga: un objeto recien escrito puede responder
    # NoSuchKey unos instantes, por eso reintentamos tambien ese caso.
    STORAGE_READ_ATTEMPTS: int = 5
    STORAGE_READ_BASE_DELAY: float = 1.0
    STORAGE_READ_TIMEOUT: float = 120.0
    STORAGE_STREAM_TIMEOUT: float = 60.0

    # ---------- URLs firmadas ----------

    # Descargas individuales: 5 minutos. Lotes, ZIPs y listados: 10 minutos.
    SIGNED_URL_TTL: int = 300
    BATCH_SIGNED_URL_TTL: int = 600

    # Retraso por defecto de las limpiezas diferidas (scheduleDelete).
    CLEANUP_DELAY: float = 10 * 60

    # ---------- Almacenamiento local (scratch) ----------

    SCRATCH_DIR: str = os.getenv("SCRATCH_DIR", "/tmp/convertor")

    # ---------- Cola de subidas asincronas ----------

    # Archivos de 5 MB o mas se aceptan localmente y se suben a S3 en
    # segundo plano; los mas chicos se suben de forma sincrona.
    ASYNC_UPLOAD_THRESHOLD: int = 5 * 1024 * 1024
    QUEUE_RETENTION: float = 60 * 60
    QUEUE_SWEEP_INTERVAL: float = 10 * 60
    QUEUE_POLL_INTERVAL: float = 0.5

    # ---------- Cache de ZIPs ----------

    ZIP_TTL: float = 60 * 60
    ZIP_SWEEP_INTERVAL: float = 60 * 60

    # ---------- Archivos listos para descargar ----------

    READY_FILE_TTL_HOURS: int = 24

    # ---------- Limites de archivos ----------

    # 500 MB: el servicio convierte video, no solo imagenes.
    MAX_FILE_SIZE: int = 500 * 1024 * 1024

    # ---------- Planes y cuotas ----------

    # El limite DIARIO es el que bloquea conversiones; el mensual solo se
    # reporta al usuario.
    PLAN_LIMITS: dict[str, dict[str, int]] = {
        "free": {"daily": 10, "monthly": 100},
        "premium": {"daily": 100, "monthly": 1000},
    }
    DEFAULT_PLAN: str = "free"

    # ---------- Base de datos ----------

    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./convertor.db")

    # ---------- Autenticacion ----------

    # El proveedor de identidad emite JWT firmados con HS256; verificamos
    # la firma con el secreto compartido del proyecto.
    JWT_SECRET: str = os.getenv("JWT_SECRET", "change-me")
    JWT_ALG: str = os.getenv("JWT_ALG", "HS256")
    JWT_AUDIENCE: str | None = os.getenv("JWT_AUDIENCE") or None

    # ---------- Rate limiting ----------

    UPLOAD_RATE_LIMIT: str = os.getenv("UPLOAD_RATE_LIMIT", "30/minute")
    CONVERT_RATE_LIMIT: str = os.getenv("CONVERT_RATE_LIMIT", "30/minute")

    # ---------- Herramienta de conversion ----------

    FFMPEG_BINARY: str = os.getenv("FFMPEG_BINARY", "ffmpeg")

    # ---------- HTTP / logging ----------

    CORS_ORIGINS: list[str] = _csv(os.getenv("CORS_ORIGINS", "http://localhost:3000"))
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # ---------- Tipos MIME permitidos ----------

    # Lista blanca: tipo MIME detectado por magic bytes -> extensiones
    # validas. Lo que no esta listado, no entra.
    ALLOWED_MIME_TYPES: dict[str, list[str]] = {
        # Imagenes
        "image/png": [".png"],
        "image/jpeg": [".jpg", ".jpeg"],
        "image/webp": [".webp"],
        "image/gif": [".gif"],
        "image/bmp": [".bmp"],
        "image/x-ms-bmp": [".bmp"],
        "image/tiff": [".tif", ".tiff"],
        # Video
        "video/mp4": [".mp4", ".m4v", ".m4a"],
        "video/webm": [".webm"],
        "video/x-msvideo": [".avi"],
        "video/quicktime": [".mov"],
        "video/x-matroska": [".mkv"],
        "video/x-ms-asf": [".wmv"],
        "video/x-flv": [".flv"],
        "video/3gpp": [".3gp"],
        # Audio
        "audio/mpeg": [".mp3"],
        "audio/x-wav": [".wav"],
        "audio/wav": [".wav"],
        "audio/ogg": [".ogg", ".opus"],
        "audio/x-m4a": [".m4a"],
        "audio/aac": [".aac"],
        "audio/x-hx-aac-adts": [".aac"],
        "audio/flac": [".flac"],
        "audio/x-flac": [".flac"],
    }

    # Formato destino -> Content-Type del archivo convertido.
    FORMAT_MIME_TYPES: dict[str, str] = {
        "jpg": "image/jpeg",
        "jpeg": "image/jpeg",
        "png": "image/png",
        "webp": "image/webp",
        "gif": "image/gif",
        "bmp": "image/bmp",
        "tiff": "image/tiff",
        "mp4": "video/mp4",
        "webm": "video/webm",
        "avi": "video/x-msvideo",
        "mov": "video/quicktime",
        "mkv": "video/x-matroska",
        "flv": "video/x-flv",
        "m4v": "video/x-m4v",
        "3gp": "video/3gpp",
        "mp3": "audio/mpeg",
        "wav": "audio/wav",
        "ogg": "audio/ogg",
        "m4a": "audio/m4a",
        "aac": "audio/aac",
        "flac": "audio/flac",
        "opus": "audio/opus",
        "zip": "application/zip",
    }

    # ---------- Presets de calidad ----------

    # Cada preset traduce "low/medium/high" a parametros concretos:
    #   image_quality -> parametro quality de Pillow (JPEG/WebP)
    #   crf           -> Constant Rate Factor de x264/VP9 (menor = mejor)
    #   audio_bitrate -> bitrate de audio para ffmpeg
    QUALITY_PRESETS: dict[str, dict] = {
        "low": {"image_quality": 60, "crf": 32, "audio_bitrate": "96k"},
        "medium": {"image_quality": 80, "crf": 26, "audio_bitrate": "160k"},
        "high": {"image_quality": 90, "crf": 20, "audio_bitrate": "256k"},
    }


# Instancia unica de configuracion (patron Singleton implicito).
settings = Settings()
