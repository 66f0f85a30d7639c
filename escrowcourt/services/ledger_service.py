from __future__ import annotations

from decimal import Decimal

from sqlalchemy import func

from escrowcourt.errors import LedgerIntegrityError
from escrowcourt.extensions import db
from escrowcourt.models import LedgerEntry
from escrowcourt.services.actors import Actor
from escrowcourt.utils import clock
from escrowcourt.utils.money import quantize


class LedgerAction:
    PAYMENT = "payment"
    RELEASE = "release"
    REFUND = "refund"
    DISPUTE = "dispute"


class PaymentType:
    PARTIAL = "partial"
    ESCROW = "escrow"
    FULL = "full"


class AccountType:
    ESCROW = "escrow"
    PARTIAL = "partial"


def append_entry(
    *,
    account_type: str,
    account_id: int,
    order_id: str,
    payment_type: str,
    amount: Decimal,
    action: str,
    resulting_status: str,
    actor: Actor,
    transaction_id: str | None = None,
    decision_id: int | None = None,
    notes: str = "",
) -> LedgerEntry:
    """The only ledger mutator. Flushes but never commits: the caller's unit
    of work decides whether the entry and its transition land together."""
    last = (
        db.session.query(func.max(LedgerEntry.sequence))
        .filter(LedgerEntry.account_type == account_type, LedgerEntry.account_id == int(account_id))
        .scalar()
    )
    row = LedgerEntry(
        order_id=str(order_id),
        account_type=account_type,
        account_id=int(account_id),
        sequence=int(last or 0) + 1,
        payment_type=payment_type,
        amount=quantize(amount),
        action=action,
        resulting_status=resulting_status,
        transaction_id=transaction_id,
        decision_id=int(decision_id) if decision_id is not None else None,
        notes=(notes or "")[:500] or None,
        actor_id=actor.id[:64],
        actor_role=actor.role[:16],
        created_at=clock.utcnow(),
    )
    db.session.add(row)
    db.session.flush()
    return row


def entries_for_account(account_type: str, account_id: int) -> list[LedgerEntry]:
    return (
        LedgerEntry.query.filter_by(account_type=account_type, account_id=int(account_id))
        .order_by(LedgerEntry.sequence.asc())
        .all()
    )


def replay(order_id: str) -> list[LedgerEntry]:
    """Every entry for an order in commit order."""
    return (
        LedgerEntry.query.filter_by(order_id=str(order_id))
        .order_by(LedgerEntry.created_at.asc(), LedgerEntry.id.asc())
        .all()
    )


def fold_status(entries: list[LedgerEntry], *, allowed: dict[str, set[str]], initial: str) -> str | None:
    """Rebuild a status by walking the ledger through the account's transition map."""
    state = None
    expected_sequence = 1
    for entry in entries:
        if int(entry.sequence) != expected_sequence:
            raise LedgerIntegrityError(
                "ledger sequence gap",
                account_id=entry.account_id,
                sequence=entry.sequence,
                expected=expected_sequence,
            )
        expected_sequence += 1
        target = entry.resulting_status
        if state is None:
            if target != initial:
                raise LedgerIntegrityError("ledger does not start with the opening status", entry_id=entry.id, status=target)
        elif target not in allowed.get(state, {state}):
            raise LedgerIntegrityError(
                f"ledger transition {state}->{target} is not allowed",
                entry_id=entry.id,
            )
        state = target
    return state


def sum_amounts(entries: list[LedgerEntry], *actions: str) -> Decimal:
    total = Decimal("0.00")
    for entry in entries:
        if entry.action in actions:
            total += quantize(entry.amount)
    return total
