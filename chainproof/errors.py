# chainproof/errors.py
"""
Errores del núcleo de auditorías.

Cada error lleva el ``audit_id`` afectado (cuando aplica) para que las rutas
y los logs puedan reportarlo sin reconstruir el contexto.
"""
from typing import Optional


class AuditError(Exception):
    """Base de todos los errores del ciclo de vida / comparación / exportación."""

    http_status = 400

    def __init__(self, message: str, audit_id: Optional[str] = None):
        super().__init__(message)
        self.audit_id = audit_id


class AuditNotFound(AuditError):
    http_status = 404


class InvalidTransition(AuditError):
    """Cambio de estado ilegal (o progreso que retrocede). El job queda intacto."""

    http_status = 409

    def __init__(self, message: str, audit_id: Optional[str] = None,
                 current: Optional[str] = None, requested: Optional[str] = None):
        super().__init__(message, audit_id)
        self.current = current
        self.requested = requested


class AlreadyTerminal(AuditError):
    """Transición tardía sobre un job ya terminado: se ignora, no es un fallo."""

    http_status = 409

    def __init__(self, message: str, audit_id: Optional[str] = None, status: Optional[str] = None):
        super().__init__(message, audit_id)
        self.status = status


class AuditNotComparable(AuditError):
    http_status = 409


class IdenticalAudits(AuditError):
    http_status = 400


class AuditNotExportable(AuditError):
    http_status = 409


class RenderCaptureFailed(AuditError):
    http_status = 422


class SourceFetchError(AuditError):
    http_status = 502
