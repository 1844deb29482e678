"""
Modulo de validacion de archivos subidos.

Este servicio es la PRIMERA linea de defensa: ningun byte llega al
Blob Store sin pasar por aqui. Verifica tres cosas:
1. Que el archivo no este vacio ni exceda el tamano maximo (500MB)
2. Que su tipo MIME real (detectado por magic bytes) sea imagen, video o audio
3. Que la extension del archivo coincida con su tipo MIME real

Por que no confiamos en el Content-Type del request HTTP?
---------------------------------------------------------
Porque el cliente puede enviarlo como quiera. Un atacante podria enviar
un ejecutable (.exe) con Content-Type: video/mp4. Por eso usamos
python-magic, que lee los primeros bytes del archivo (la "firma" del
formato) para determinar el tipo real:
    - PNG:  89 50 4E 47
    - JPEG: FF D8 FF
    - MP3:  49 44 33 ("ID3") o FF FB
    - MP4:  .... 66 74 79 70 ("ftyp" en el byte 4)

Ademas del validador, este modulo expone sanitize_filename(): el nombre
que manda el cliente se usa para armar rutas locales (scratch) y
metadatos de S3, asi que nunca lo usamos tal cual.
"""

import os
import re
from dataclasses import dataclass

import magic

from app.config import settings

# Todo lo que no sea letra, numero, punto o guion se reemplaza por "_".
# "mi foto (1).png" -> "mi_foto__1_.png"
_UNSAFE_FILENAME_CHARS = re.compile(r"[^a-zA-Z0-9.-]")

# Algunas versiones de libmagic reportan variantes de estos tipos.
# Normalizamos a la forma que usa la lista blanca.
_MIME_ALIASES = {
    "audio/x-mp3": "audio/mpeg",
    "audio/mp3": "audio/mpeg",
    "audio/vnd.wave": "audio/wav",
    "audio/mp4": "audio/x-m4a",
    "video/x-m4v": "video/mp4",
}


@dataclass
class ValidationResult:
    """
    Resultado de la validacion de un archivo.

    Atributos:
        is_valid (bool): True si el archivo paso todas las validaciones.
        mime_type (str): Tipo MIME real detectado por magic bytes. Se
            retorna incluso si la validacion falla.
        error (str): Descripcion del error si is_valid es False.
    """
    is_valid: bool
    mime_type: str = ""
    error: str = ""


def sanitize_filename(filename: str | None) -> str:
    """
    Limpia un nombre de archivo para usarlo en disco y en metadatos.

    os.path.basename() elimina cualquier directorio ("../../etc/passwd"
    -> "passwd") y la expresion regular reemplaza los caracteres raros.

    Ejemplos:
        >>> sanitize_filename("../secreto/mi foto.png")
        'mi_foto.png'
        >>> sanitize_filename("")
        'file'
    """
    name = os.path.basename((filename or "").replace("\\", "/"))
    name = _UNSAFE_FILENAME_CHARS.sub("_", name).lstrip(".")
    return name or "file"


def detect_mime(data: bytes) -> str:
    """Tipo MIME real segun los magic bytes, normalizado."""
    mime_type = magic.from_buffer(data[:8192], mime=True)
    return _MIME_ALIASES.get(mime_type, mime_type)


def media_kind(mime_type: str) -> str:
    """'image', 'video' o 'audio' (la parte antes de la barra)."""
    return mime_type.split("/", 1)[0]


def validate_file(data: bytes, filename: str) -> ValidationResult:
    """
    Valida un archivo por su tamano, su tipo MIME real y su extension.

    Las validaciones van de la mas barata a la mas cara: si el archivo
    es demasiado grande no gastamos tiempo detectando su tipo.

    Parametros:
        data (bytes): Contenido completo del archivo.
        filename (str): Nombre ya sanitizado.

    Ejemplos:
        >>> validate_file(b"\\x89PNG...", "foto.png")
        ValidationResult(is_valid=True, mime_type="image/png", error="")

        >>> validate_file(b"MZ...", "video.mp4")  # .exe renombrado
        ValidationResult(is_valid=False, mime_type="application/x-dosexec",
                        error="File type 'application/x-dosexec' is not allowed")
    """
    if not data:
        return ValidationResult(is_valid=False, error="File is empty")

    if len(data) > settings.MAX_FILE_SIZE:
        return ValidationResult(
            is_valid=False,
            error=f"File size exceeds {settings.MAX_FILE_SIZE // (1024 * 1024)}MB limit",
        )

    mime_type = detect_mime(data)
    if mime_type not in settings.ALLOWED_MIME_TYPES:
        return ValidationResult(
            is_valid=False,
            mime_type=mime_type,
            error=f"File type '{mime_type}' is not allowed",
        )

    # "mi.foto.jpg" -> ".jpg"; "sin_extension" -> ""
    ext = "." + filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
    if ext not in settings.ALLOWED_MIME_TYPES[mime_type]:
        return ValidationResult(
            is_valid=False,
            mime_type=mime_type,
            error=f"Extension '{ext}' does not match detected type '{mime_type}'",
        )

    return ValidationResult(is_valid=True, mime_type=mime_type)
