"""
Excepciones HTTP personalizadas para la API.
"""

from fastapi import HTTPException, status


class NotFoundException(HTTPException):
    """Recurso no encontrado (404)."""

    def __init__(self, resource: str = "Recurso", detail: str | None = None):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=detail or f"{resource} no encontrado",
        )


class ConflictException(HTTPException):
    """Conflicto de datos (409) — ej: ticket ya registrado en la cola."""

    def __init__(self, detail: str = "El recurso ya existe"):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=detail,
        )


class ValidationException(HTTPException):
    """Error de validación de negocio (422)."""

    def __init__(self, detail: str = "Error de validación"):
        super().__init__(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=detail,
        )


class ServiceUnavailableException(HTTPException):
    """Almacenamiento no disponible (503); el cliente debe reintentar."""

    def __init__(self, detail: str = "La operación falló, intente nuevamente"):
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=detail,
            headers={"Retry-After": "1"},
        )
