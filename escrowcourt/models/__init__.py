from escrowcourt.models.escrow_account import EscrowAccount
from escrowcourt.models.partial_payment import PartialPayment
from escrowcourt.models.dispute_case import DisputeCase
from escrowcourt.models.dispute_evidence import DisputeEvidence
from escrowcourt.models.dispute_action import DisputeAction
from escrowcourt.models.arbitration_decision import ArbitrationDecision
from escrowcourt.models.ledger_entry import LedgerEntry
from escrowcourt.models.domain_event import DomainEvent
from escrowcourt.models.job_run import JobRun
from escrowcourt.models.idempotency_key import IdempotencyKey

__all__ = [
    "EscrowAccount",
    "PartialPayment",
    "DisputeCase",
    "DisputeEvidence",
    "DisputeAction",
    "ArbitrationDecision",
    "LedgerEntry",
    "DomainEvent",
    "JobRun",
    "IdempotencyKey",
]
