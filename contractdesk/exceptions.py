"""
Typed errors for the agreement workflow.

Every error carries a machine-readable ``code`` and the HTTP status the API
answers with. Routers never translate messages; main.py registers one handler
for ContractDeskError that renders ``{"detail", "code", **extra()}``.

    ContractDeskError
    +-- AgreementValidationError   validation_error      422
    +-- BudgetExceededError        budget_exceeded       422
    +-- ImmutableAgreementError    agreement_immutable   409
    +-- DocumentChangedError       document_changed      409
    +-- NotFoundError              not_found             404
    +-- TokenExpired               token_expired         410
    +-- SignatureLocked            signature_locked      423
    +-- Unauthorized               unauthorized          401
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any


@dataclass(frozen=True)
class FieldError:
    field: str
    message: str

    def as_dict(self) -> dict[str, str]:
        return {"field": self.field, "message": self.message}


class ContractDeskError(Exception):
    """Base exception for all domain errors."""

    code: str = "contractdesk_error"
    status_code: int = 400

    def extra(self) -> dict[str, Any]:
        return {}


class AgreementValidationError(ContractDeskError):
    """One or more fields failed per-field or cross-field validation."""

    code = "validation_error"
    status_code = 422

    def __init__(self, errors: list[FieldError]):
        self.errors = list(errors)
        summary = "; ".join(f"{e.field}: {e.message}" for e in self.errors)
        super().__init__(f"Agreement validation failed: {summary}")

    def extra(self) -> dict[str, Any]:
        return {"errors": [e.as_dict() for e in self.errors]}


class BudgetExceededError(ContractDeskError):
    """Milestone total is over the project budget."""

    code = "budget_exceeded"
    status_code = 422

    def __init__(self, total: Decimal, budget: Decimal):
        self.total = total
        self.budget = budget
        super().__init__(f"Milestone total {total} exceeds project budget {budget}")

    def extra(self) -> dict[str, Any]:
        return {"milestone_total": str(self.total), "project_budget": str(self.budget)}


class ImmutableAgreementError(ContractDeskError):
    """Mutation attempted on a completed agreement."""

    code = "agreement_immutable"
    status_code = 409

    def __init__(self, agreement_id: int):
        self.agreement_id = agreement_id
        super().__init__(f"Agreement {agreement_id} is completed and can no longer be changed")


class DocumentChangedError(ContractDeskError):
    """The signer reviewed a different rendering than the current one."""

    code = "document_changed"
    status_code = 409

    def __init__(self, expected_hash: str):
        self.expected_hash = expected_hash
        super().__init__("Agreement has changed. Please reopen and sign again.")


class NotFoundError(ContractDeskError):
    code = "not_found"
    status_code = 404

    def __init__(self, what: str):
        self.what = what
        super().__init__(f"{what} not found")


class TokenExpired(ContractDeskError):
    """Known signing link past its expiry with no signature on file."""

    code = "token_expired"
    status_code = 410

    def __init__(self, expires_at: datetime):
        self.expires_at = expires_at
        super().__init__("Signature link has expired")

    def extra(self) -> dict[str, Any]:
        return {"expired": True, "expires_at": self.expires_at.isoformat()}


class SignatureLocked(ContractDeskError):
    """Signature edit outside the edit window or after the agreement completed."""

    code = "signature_locked"
    status_code = 423

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class Unauthorized(ContractDeskError):
    code = "unauthorized"
    status_code = 401

    def __init__(self, message: str = "Not authenticated"):
        super().__init__(message)
