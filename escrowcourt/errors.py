from __future__ import annotations


class SettlementError(RuntimeError):
    """Base for every business error the engine surfaces to callers.

    `code` is stable and machine-readable; `http_status` is what the API
    layer answers with. `context` carries ids for logging only and is never
    rendered to clients.
    """

    code = "SettlementError"
    http_status = 400

    def __init__(self, message: str = "", **context):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.context = context

    def to_dict(self) -> dict:
        return {"ok": False, "error": self.message, "code": self.code}


# Validation: rejected before any state is touched.

class ValidationFailed(SettlementError):
    code = "ValidationFailed"
    http_status = 400


class InvalidAmount(ValidationFailed):
    code = "InvalidAmount"


class OverpaymentRejected(ValidationFailed):
    code = "OverpaymentRejected"


class InvalidRefundAmount(ValidationFailed):
    code = "InvalidRefundAmount"


class InvalidEvidenceReference(ValidationFailed):
    code = "InvalidEvidenceReference"


class Unauthenticated(SettlementError):
    code = "Unauthenticated"
    http_status = 401


class Forbidden(SettlementError):
    code = "Forbidden"
    http_status = 403


class NotFound(SettlementError):
    code = "NotFound"
    http_status = 404


class EvidenceTooLarge(SettlementError):
    code = "EvidenceTooLarge"
    http_status = 413


# State conflicts: business-rule violations.

class StateConflict(SettlementError):
    code = "StateConflict"
    http_status = 409


class EscrowNotHeld(StateConflict):
    code = "EscrowNotHeld"


class EscrowNotDisputed(StateConflict):
    code = "EscrowNotDisputed"


class DisputeWindowClosed(StateConflict):
    code = "DisputeWindowClosed"


class DisputeInProgress(StateConflict):
    code = "DisputeInProgress"


class DisputeNotInvestigating(StateConflict):
    code = "DisputeNotInvestigating"


class DisputeClosed(StateConflict):
    code = "DisputeClosed"


class InvalidDisputeTransition(StateConflict):
    code = "InvalidDisputeTransition"


class DecisionRequired(StateConflict):
    code = "DecisionRequired"


class DecisionAlreadyFinal(StateConflict):
    code = "DecisionAlreadyFinal"


class PartialPaymentClosed(StateConflict):
    code = "PartialPaymentClosed"


class PaymentModeConflict(StateConflict):
    code = "PaymentModeConflict"


class ConcurrentModification(StateConflict):
    """Precondition lost to a concurrent writer. Safe for the caller to retry."""

    code = "ConcurrentModification"


# Integrity: the ledger and the materialized status disagree.

class LedgerIntegrityError(SettlementError):
    code = "LedgerIntegrityError"
    http_status = 423


class EscrowFrozen(LedgerIntegrityError):
    code = "EscrowFrozen"
