"""
Exception types shared by the import and label services.

Kept in a dedicated module so routers, services and tests can import them
without pulling in the database layer.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional


class ImportServiceError(Exception):
    """Base class for errors raised on purpose by this service."""
    pass


class ImportValidationError(ImportServiceError):
    """Input rejected before any row is processed (mapping, empty CSV, no paid rows)."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ImportLockedError(ImportServiceError):
    """Another import holds the lease."""

    def __init__(self, message: str, lock: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.lock = lock or {}


class JobNotFoundError(ImportServiceError):
    pass


class TemplateNotFoundError(ImportServiceError):
    pass


class LabelOrderNotFoundError(ImportServiceError):
    pass


class FatalJobError(ImportServiceError):
    """Control-logic failure outside the per-row boundary; aborts the job."""
    pass


class CrmErrorDetail:
    """Structured reading of a CRM error body."""

    DUPLICATE_CONTACT = "duplicate_contact"
    RAW = "raw"

    def __init__(self, kind: str, message: str, conflicting_email: Optional[str] = None):
        self.kind = kind
        self.message = message
        self.conflicting_email = conflicting_email

    @property
    def is_duplicate_contact(self) -> bool:
        return self.kind == self.DUPLICATE_CONTACT

    def __repr__(self) -> str:
        return f"CrmErrorDetail(kind={self.kind!r}, conflicting_email={self.conflicting_email!r})"


class CrmApiError(ImportServiceError):
    """Non-2xx response from the CRM. `body` keeps the raw response text."""

    def __init__(self, status_code: int, body: str, detail: Optional[CrmErrorDetail] = None):
        super().__init__(f"API {status_code}: {body}")
        self.status_code = status_code
        self.body = body
        self.detail = detail or CrmErrorDetail(CrmErrorDetail.RAW, body)


class CarrierError(ImportServiceError):
    """The carrier middleware rejected a request or answered with something unreadable."""

    def __init__(self, message: str, errors: Optional[List[str]] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.errors = errors or []
        self.status_code = status_code


class IllegalTransitionError(ImportServiceError):
    """A label order was asked to move to a state its current state does not allow."""

    def __init__(self, message: str, current_state: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.current_state = current_state


class MergeConfirmationRequired(ImportServiceError):
    """Orders selected for a merge belong to different buyers; the caller must confirm."""

    def __init__(self, message: str, emails: Optional[List[str]] = None):
        super().__init__(message)
        self.message = message
        self.emails = emails or []
