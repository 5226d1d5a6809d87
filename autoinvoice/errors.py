"""
Error taxonomy for the document pipeline.

Every user-visible failure carries a stable ``code`` so web clients and
channel-reply logic can branch on it without reading the message text.
Parse failures and unresolved tenants are not exceptions; they are
pipeline outcomes (see ``autoinvoice.pipeline.PipelineState``).
"""

from __future__ import annotations

from typing import Any


class AutoInvoiceError(Exception):
    """Base class for errors surfaced to callers."""

    code = "internal_error"
    status_code = 500

    def __init__(self, message: str = "", *, errors: list[dict[str, Any]] | None = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.errors = errors or []

    def to_dict(self) -> dict[str, Any]:
        return {"reason": self.code, "message": self.message, "errors": self.errors}


class DocumentValidationError(AutoInvoiceError):
    """Malformed structured input. Never persisted."""

    code = "validation_error"
    status_code = 400

    @classmethod
    def for_field(cls, field: str, message: str) -> "DocumentValidationError":
        return cls(message, errors=[{"field": field, "message": message}])


class InvalidLineItemError(DocumentValidationError):
    code = "invalid_line_item"


class EmptyDocumentError(DocumentValidationError):
    code = "empty_document"


class QuotaExceededError(AutoInvoiceError):
    """Expected business condition: the tenant has used its monthly allowance."""

    code = "quota_exceeded"
    status_code = 403

    def __init__(self, plan: str, limit: int | None):
        super().__init__("Document limit reached. Please upgrade your plan.")
        self.plan = plan
        self.limit = limit

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["plan"] = self.plan
        payload["limit"] = self.limit
        return payload


class DocumentNotFoundError(AutoInvoiceError):
    code = "not_found"
    status_code = 404

    def __init__(self, message: str = "Document not found"):
        super().__init__(message)


class AuthenticationError(AutoInvoiceError):
    code = "unauthenticated"
    status_code = 401


class PersistenceError(AutoInvoiceError):
    """Store unavailable or constraint violation. Fatal for the request."""

    code = "persistence_failure"
    status_code = 500


class RenderingError(AutoInvoiceError):
    """PDF could not be produced. Retryable; the stored document is untouched."""

    code = "rendering_unavailable"
    status_code = 503


class NumberingConflictError(AutoInvoiceError):
    """No free document number after the bounded retries."""

    code = "numbering_conflict"
    status_code = 409
