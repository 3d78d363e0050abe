from __future__ import annotations

from typing import Any


class CadenceError(Exception):
    """Base error carrying the HTTP status it maps to at the API boundary."""

    status_code = 500

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.message}


class NotFoundError(CadenceError):
    status_code = 404


class ValidationError(CadenceError):
    status_code = 400


class MissingOccurrenceDateError(ValidationError):
    def __init__(self, scope: str) -> None:
        super().__init__(f"occurrenceDate required for {scope}")
        self.scope = scope


class ForbiddenError(CadenceError):
    status_code = 403


class MalformedRuleError(CadenceError):
    # Stored rules are produced by the codec, so a parse failure means corrupt data.
    status_code = 500
