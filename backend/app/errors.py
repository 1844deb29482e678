"""
Taxonomia de errores del dominio.

Los servicios lanzan estas excepciones y las rutas las dejan propagar:
un unico exception handler registrado en main.py las convierte en una
respuesta JSON {"detail": mensaje, ...extra} con el codigo HTTP de cada
clase. Asi ningun servicio necesita saber nada de HTTP, y todas las
respuestas de error tienen el mismo formato (ErrorResponse).

Jerarquia:

    ConvertorError
    +-- StorageError              (reintentos agotados en el Blob Store)
    |   +-- StorageWriteError
    |   +-- StorageReadError
    |   +-- StorageTimeoutError
    +-- QuotaError                (no reintentable hasta el proximo reset)
    |   +-- DailyLimitReachedError
    |   +-- InsufficientConversionsError
    +-- ConversionFailedError     (mensaje de la herramienta, sin reintento)
    +-- UnsupportedConversionError
    +-- UnauthorizedPathError     (prefijo de owner invalido, fail-closed)
    +-- NotFoundError
    +-- NoFileProvidedError
    +-- UploadFailedError
    +-- JobAbortedError
"""


class ConvertorError(Exception):
    """Error base. `extra` se agrega tal cual al cuerpo JSON de la respuesta."""

    status_code: int = 500

    def __init__(self, message: str, **extra):
        super().__init__(message)
        self.message = message
        self.extra = extra


class StorageError(ConvertorError):
    status_code = 502


class StorageWriteError(StorageError):
    pass


class StorageReadError(StorageError):
    pass


class StorageTimeoutError(StorageError):
    status_code = 504


class QuotaError(ConvertorError):
    status_code = 429


class DailyLimitReachedError(QuotaError):
    def __init__(self, plan: str):
        if plan == "free":
            hint = "Upgrade to premium for more conversions."
        else:
            hint = "Please try again tomorrow."
        super().__init__(
            f"Daily conversion limit reached. {hint}",
            type="daily_limit_reached",
            plan=plan,
        )


class InsufficientConversionsError(QuotaError):
    def __init__(self, remaining: int, requested: int):
        self.remaining = remaining
        self.requested = requested
        super().__init__(
            f"Not enough conversions remaining. You have {remaining} "
            f"conversion{'' if remaining == 1 else 's'} left today, but trying "
            f"to convert {requested} file{'' if requested == 1 else 's'}.",
            type="insufficient_conversions",
            remaining=remaining,
            requested=requested,
        )


class ConversionFailedError(ConvertorError):
    status_code = 500

    def __init__(self, tool_message: str):
        super().__init__(f"Conversion failed: {tool_message}")
        self.tool_message = tool_message


class UnsupportedConversionError(ConvertorError):
    status_code = 400


class UnauthorizedPathError(ConvertorError):
    status_code = 403

    def __init__(self, invalid_paths: list[str]):
        super().__init__(
            "Unauthorized: Cannot access files that don't belong to you",
            invalidPaths=invalid_paths,
        )
        self.invalid_paths = invalid_paths


class NotFoundError(ConvertorError):
    status_code = 404


class NoFileProvidedError(ConvertorError):
    status_code = 400

    def __init__(self, message: str = "No file uploaded"):
        super().__init__(message)


class UploadFailedError(ConvertorError):
    status_code = 500


class JobAbortedError(ConvertorError):
    status_code = 409

    def __init__(self, message: str = "Conversion was aborted"):
        super().__init__(message)
