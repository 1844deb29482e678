"""
Conversion Runner: ejecuta la herramienta de conversion sobre un archivo local.

Hay dos "motores" segun el tipo de archivo:

1. **Imagenes -> Pillow**, en el mismo proceso. La conversion es trabajo
   de CPU sincrono, asi que corre en un hilo (asyncio.to_thread) para no
   congelar el event loop mientras Pillow re-codifica los pixeles.

2. **Audio y video -> ffmpeg**, como subproceso asincrono
   (asyncio.create_subprocess_exec). El event loop sigue atendiendo otros
   requests mientras ffmpeg trabaja; solo esperamos a que termine.

El runner no sabe nada de S3, cuotas ni usuarios: recibe una ruta local
y un formato destino, y devuelve una ruta local con el resultado o lanza
ConversionFailedError con el mensaje de la herramienta. Nunca reintenta:
si la conversion fallo, casi siempre es por culpa del archivo de entrada.

Pares soportados:
    imagen -> imagen
    video  -> video | audio (extrae la pista de audio)
    audio  -> audio
"""

import asyncio
import io
import logging
import os
import uuid
from dataclasses import dataclass

from PIL import Image

from app.config import settings
from app.errors import ConversionFailedError, UnsupportedConversionError
from app.services.scratch import remove_quietly
from app.services.validator import media_kind

logger = logging.getLogger(__name__)

# Formato destino -> nombre de formato que Pillow espera en .save()
IMAGE_FORMATS = {
    "jpg": "JPEG",
    "jpeg": "JPEG",
    "png": "PNG",
    "webp": "WEBP",
    "gif": "GIF",
    "bmp": "BMP",
    "tiff": "TIFF",
}

VIDEO_FORMATS = {"mp4", "webm", "avi", "mov", "mkv", "flv", "m4v", "3gp"}
AUDIO_FORMATS = {"mp3", "wav", "ogg", "m4a", "aac", "flac", "opus"}

# Contenedores donde ffmpeg usa x264 por defecto (aceptan -crf/-preset).
_X264_CONTAINERS = {"mp4", "mkv", "mov", "m4v"}
_LOSSLESS_AUDIO = {"wav", "flac"}

# Cuantos caracteres del stderr de ffmpeg incluimos en el error.
STDERR_TAIL = 500


@dataclass(frozen=True)
class ConversionResult:
    output_path: str
    size: int
    format: str
    content_type: str


def normalize_format(target_format: str) -> str:
    return target_format.lower().lstrip(".")


def target_kind(target_format: str) -> str | None:
    fmt = normalize_format(target_format)
    if fmt in IMAGE_FORMATS:
        return "image"
    if fmt in VIDEO_FORMATS:
        return "video"
    if fmt in AUDIO_FORMATS:
        return "audio"
    return None


def check_supported(source_mime: str, target_format: str) -> None:
    """
    Rechaza ANTES de invocar nada los pares que no tienen sentido
    (ej: audio -> png). Lanza UnsupportedConversionError.
    """
    source = media_kind(source_mime)
    target = target_kind(target_format)
    allowed = {
        "image": {"image"},
        "video": {"video", "audio"},
        "audio": {"audio"},
    }
    if target is None or target not in allowed.get(source, set()):
        raise UnsupportedConversionError(
            f"Cannot convert {source_mime} to {normalize_format(target_format)}"
        )


def convert_image(data: bytes, target_format: str, quality: int) -> bytes:
    """
    Convierte una imagen a `target_format` con Pillow.

    JPEG y BMP no soportan transparencia: si la imagen tiene canal alpha
    (RGBA, LA) o paleta (P), se convierte a RGB antes de guardar; si no,
    Pillow lanza "OSError: cannot write mode RGBA as JPEG".

    Para los GIF animados solo se convierte el primer frame.
    """
    pil_format = IMAGE_FORMATS[normalize_format(target_format)]
    img = Image.open(io.BytesIO(data))
    img.load()

    if pil_format in ("JPEG", "BMP") and img.mode in ("RGBA", "LA", "P"):
        img = img.convert("RGB")

    save_kwargs = {}
    if pil_format in ("JPEG", "WEBP"):
        save_kwargs["quality"] = quality
    if pil_format in ("JPEG", "PNG"):
        save_kwargs["optimize"] = True

    buffer = io.BytesIO()
    img.save(buffer, format=pil_format, **save_kwargs)
    return buffer.getvalue()


def build_ffmpeg_args(
    binary: str, input_path: str, output_path: str, target_format: str, quality: str
) -> list[str]:
    """
    Arma la linea de comando de ffmpeg.

    Ejemplo (video -> mp4, calidad medium):
        ffmpeg -y -hide_banner -loglevel error -i in.mov
               -crf 26 -preset veryfast -b:a 160k out.mp4
    """
    fmt = normalize_format(target_format)
    preset = settings.QUALITY_PRESETS[quality]
    args = [binary, "-y", "-hide_banner", "-loglevel", "error", "-i", input_path]

    if fmt in AUDIO_FORMATS:
        # Sin -vn, ffmpeg intentaria meter la caratula/video en el archivo de audio.
        args.append("-vn")
        if fmt not in _LOSSLESS_AUDIO:
            args += ["-b:a", preset["audio_bitrate"]]
    else:
        if fmt in _X264_CONTAINERS:
            args += ["-crf", str(preset["crf"]), "-preset", "veryfast"]
        elif fmt == "webm":
            args += ["-crf", str(preset["crf"]), "-b:v", "0"]
        args += ["-b:a", preset["audio_bitrate"]]

    args.append(output_path)
    return args


class ConversionRunner:
    """
    Atributos:
        ffmpeg_binary (str): Ejecutable de ffmpeg (ruta o nombre en el PATH).
        work_dir (str): Directorio scratch donde se escriben los resultados.
    """

    def __init__(self, ffmpeg_binary: str = settings.FFMPEG_BINARY, work_dir: str | None = None):
        self.ffmpeg_binary = ffmpeg_binary
        self.work_dir = work_dir or os.path.join(settings.SCRATCH_DIR, "converted")

    async def run(
        self,
        input_path: str,
        source_mime: str,
        target_format: str,
        quality: str = "medium",
    ) -> ConversionResult:
        """
        Convierte `input_path` y devuelve el archivo resultante.

        Raises:
            UnsupportedConversionError: par origen/destino invalido o
                preset de calidad desconocido.
            ConversionFailedError: la herramienta fallo, o no produjo un
                archivo, o el archivo quedo vacio.
        """
        check_supported(source_mime, target_format)
        if quality not in settings.QUALITY_PRESETS:
            raise UnsupportedConversionError(f"Unknown quality preset '{quality}'")

        fmt = normalize_format(target_format)
        os.makedirs(self.work_dir, exist_ok=True)
        output_path = os.path.join(self.work_dir, f"{uuid.uuid4()}.{fmt}")

        try:
            if fmt in IMAGE_FORMATS:
                await self._run_image(input_path, output_path, fmt, quality)
            else:
                await self._run_ffmpeg(input_path, output_path, fmt, quality)
        except BaseException:
            # Incluye CancelledError: un resultado a medio escribir no sirve.
            remove_quietly(output_path)
            raise

        size = os.path.getsize(output_path) if os.path.exists(output_path) else 0
        if size == 0:
            remove_quietly(output_path)
            raise ConversionFailedError("Conversion produced an empty file")

        logger.info("Converted %s -> %s (%d bytes)", input_path, output_path, size)
        return ConversionResult(
            output_path=output_path,
            size=size,
            format=fmt,
            content_type=settings.FORMAT_MIME_TYPES.get(fmt, "application/octet-stream"),
        )

    async def _run_image(self, input_path: str, output_path: str, fmt: str, quality: str) -> None:
        image_quality = settings.QUALITY_PRESETS[quality]["image_quality"]

        def work() -> None:
            with open(input_path, "rb") as f:
                data = f.read()
            converted = convert_image(data, fmt, image_quality)
            with open(output_path, "wb") as f:
                f.write(converted)

        try:
            await asyncio.to_thread(work)
        except (OSError, ValueError, Image.DecompressionBombError) as exc:
            raise ConversionFailedError(str(exc)) from exc

    async def _run_ffmpeg(self, input_path: str, output_path: str, fmt: str, quality: str) -> None:
        args = build_ffmpeg_args(self.ffmpeg_binary, input_path, output_path, fmt, quality)
        logger.debug("Running %s", " ".join(args))
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise ConversionFailedError(f"{self.ffmpeg_binary} not found") from exc

        try:
            _, stderr = await process.communicate()
        except asyncio.CancelledError:
            # Abort: matamos ffmpeg para no dejar un proceso huerfano.
            process.kill()
            await process.wait()
            raise

        if process.returncode != 0:
            tail = stderr.decode(errors="replace").strip()[-STDERR_TAIL:]
            raise ConversionFailedError(tail or f"ffmpeg exited with code {process.returncode}")

