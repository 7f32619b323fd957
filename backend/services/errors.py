"""
Erreurs métier du flux de réception.

Chaque erreur porte un code machine (ex: RECEIVE_EXCEEDS_REMAINING), un statut
HTTP et des champs de contexte rendus à plat dans le corps de la réponse.
"""

from __future__ import annotations

from typing import Any


class ReceivingError(Exception):
    http_status: int = 500
    default_code: str = "INTERNAL"

    def __init__(self, message: str, *, code: str | None = None, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"code": self.code, "message": self.message}
        out.update(self.context)
        return out


class NotFoundError(ReceivingError):
    http_status = 404
    default_code = "NOT_FOUND"


class InvalidInputError(ReceivingError):
    http_status = 400
    default_code = "INVALID_INPUT"


class ConflictError(ReceivingError):
    http_status = 409
    default_code = "CONFLICT"


class InternalError(ReceivingError):
    pass
