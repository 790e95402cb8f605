"""Ledger error taxonomy shared by the database layer and the HTTP entrypoint."""

from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base class for request-scoped ledger failures that map to a 4xx response."""
    status_code = 400

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(LedgerError):
    """Malformed or missing fields; never retried automatically."""
    status_code = 400


class NotFoundError(LedgerError):
    """Missing entity, or one that belongs to another library."""
    status_code = 404


class ConflictError(LedgerError):
    """Seat/shift double booking detected at write time."""
    status_code = 409


class StateError(LedgerError):
    """Transition attempted from a non-active subscription."""
    status_code = 422
