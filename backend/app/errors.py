# backend/app/errors.py
"""
Service-level exceptions.

Services raise these; ``backend.app.main`` turns them into
``{"ok": false, "error": <message>}`` with the matching status code. Messages
are user-facing and in Spanish.
"""

from __future__ import annotations

from typing import Any, Optional


class LookEscolarError(Exception):
    status_code = 500
    default_message = "Error interno del servidor"

    def __init__(self, message: Optional[str] = None, *, code: Optional[str] = None, details: Any = None):
        self.message = message or self.default_message
        self.code = code
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict:
        body = {"ok": False, "error": self.message}
        if self.code:
            body["code"] = self.code
        if self.details is not None:
            body["details"] = self.details
        return body


class ValidationFailed(LookEscolarError):
    status_code = 400
    default_message = "Datos inválidos"


class Unauthorized(LookEscolarError):
    status_code = 401
    default_message = "No autorizado"


class Forbidden(LookEscolarError):
    status_code = 403
    default_message = "Acceso denegado"


class NotFound(LookEscolarError):
    status_code = 404
    default_message = "Recurso no encontrado"


class Conflict(LookEscolarError):
    status_code = 409
    default_message = "Conflicto con el estado actual"


class Gone(LookEscolarError):
    status_code = 410
    default_message = "El enlace ha expirado"


class UpstreamError(LookEscolarError):
    status_code = 502
    default_message = "Error comunicándose con un servicio externo"
