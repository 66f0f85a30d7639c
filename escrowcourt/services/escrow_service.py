from __future__ import annotations

import secrets
import time
from datetime import datetime, timedelta
from decimal import Decimal

from escrowcourt.errors import (
    ConcurrentModification,
    DisputeWindowClosed,
    EscrowNotDisputed,
    EscrowNotHeld,
    LedgerIntegrityError,
)
from escrowcourt.extensions import db
from escrowcourt.models import ArbitrationDecision, DisputeCase, EscrowAccount
from escrowcourt.services import ledger_service
from escrowcourt.services.actors import Actor
from escrowcourt.services.arbitration_service import settlement_plan
from escrowcourt.services.ledger_service import AccountType, LedgerAction, PaymentType
from escrowcourt.utils import clock
from escrowcourt.utils.money import ZERO, quantize

DEFAULT_DISPUTE_WINDOW_DAYS = 7


class EscrowStatus:
    HELD = "held"
    RELEASED = "released"
    DISPUTED = "disputed"
    REFUNDED = "refunded"

    TERMINAL = {RELEASED, REFUNDED}
    # Self-loops let the ledger carry money-only entries (release of a
    # partial-ruling remainder) without changing custody status.
    ALLOWED = {
        HELD: {HELD, RELEASED, DISPUTED},
        DISPUTED: {DISPUTED, RELEASED, REFUNDED},
        RELEASED: {RELEASED},
        REFUNDED: {REFUNDED},
    }


def new_transaction_id(prefix: str = "escrow") -> str:
    return f"{prefix}_{int(time.time() * 1000)}_{secrets.token_hex(5)}"


def create_account(
    *,
    order_id: str,
    customer_id: str,
    store_id: str,
    amount: Decimal,
    actor: Actor,
    release_conditions: str | None = None,
    payment_method: str | None = None,
    window_days: int = DEFAULT_DISPUTE_WINDOW_DAYS,
) -> EscrowAccount:
    now = clock.utcnow()
    account = EscrowAccount(
        order_id=order_id,
        customer_id=customer_id,
        store_id=store_id,
        amount=quantize(amount),
        payment_method=str(payment_method or "").strip()[:32] or None,
        status=EscrowStatus.HELD,
        transaction_id=new_transaction_id("escrow"),
        release_conditions=str(release_conditions or "").strip() or None,
        paid_at=now,
        dispute_deadline=now + timedelta(days=int(window_days)),
        refunded_amount=ZERO,
        released_amount=ZERO,
        frozen=False,
        version=1,
        created_at=now,
        updated_at=now,
    )
    db.session.add(account)
    db.session.flush()
    _ledger(account, LedgerAction.PAYMENT, account.amount, EscrowStatus.HELD, actor, notes="Escrow funded")
    return account


def _ledger(account: EscrowAccount, action: str, amount, status: str, actor: Actor, *, notes: str = "", decision_id=None):
    return ledger_service.append_entry(
        account_type=AccountType.ESCROW,
        account_id=int(account.id),
        order_id=account.order_id,
        payment_type=PaymentType.ESCROW,
        amount=amount,
        action=action,
        resulting_status=status,
        actor=actor,
        transaction_id=account.transaction_id,
        decision_id=decision_id,
        notes=notes,
    )


def swap_status(account: EscrowAccount, *, expected: str, target: str, **fields) -> EscrowAccount:
    """Compare-and-set on (status, version). Zero rows means someone else moved first."""
    values = {
        "status": target,
        "version": int(account.version) + 1,
        "updated_at": clock.utcnow(),
    }
    values.update(fields)
    updated = (
        EscrowAccount.query.filter(
            EscrowAccount.id == int(account.id),
            EscrowAccount.status == expected,
            EscrowAccount.version == int(account.version),
            EscrowAccount.frozen.is_(False),
        )
        .update(values, synchronize_session=False)
    )
    if updated != 1:
        raise ConcurrentModification(
            f"escrow {int(account.id)} changed concurrently; expected status {expected}",
            escrow_id=int(account.id),
        )
    db.session.refresh(account)
    return account


def has_active_dispute(account: EscrowAccount) -> bool:
    return (
        db.session.query(DisputeCase.id)
        .filter(DisputeCase.active_escrow_key == int(account.id))
        .first()
        is not None
    )


def release(account: EscrowAccount, *, actor: Actor, notes: str | None = None) -> EscrowAccount:
    if account.status != EscrowStatus.HELD:
        raise EscrowNotHeld(f"escrow is {account.status}, not held", escrow_id=int(account.id))
    now = clock.utcnow()
    swap_status(
        account,
        expected=EscrowStatus.HELD,
        target=EscrowStatus.RELEASED,
        released_at=now,
        released_amount=quantize(account.amount),
    )
    _ledger(
        account,
        LedgerAction.RELEASE,
        account.amount,
        EscrowStatus.RELEASED,
        actor,
        notes=notes or "Released by customer",
    )
    return account


def within_dispute_window(account: EscrowAccount, now: datetime | None = None) -> bool:
    now = now or clock.utcnow()
    return now <= account.dispute_deadline


def mark_disputed(account: EscrowAccount, *, actor: Actor, reason: str) -> EscrowAccount:
    if account.status != EscrowStatus.HELD:
        raise EscrowNotHeld(f"escrow is {account.status}, not held", escrow_id=int(account.id))
    now = clock.utcnow()
    if not within_dispute_window(account, now):
        raise DisputeWindowClosed(
            f"dispute window closed at {account.dispute_deadline.isoformat()}",
            escrow_id=int(account.id),
        )
    swap_status(account, expected=EscrowStatus.HELD, target=EscrowStatus.DISPUTED, disputed_at=now)
    _ledger(
        account,
        LedgerAction.DISPUTE,
        account.amount,
        EscrowStatus.DISPUTED,
        actor,
        notes=f"Dispute opened: {reason}",
    )
    return account


def resolve(account: EscrowAccount, decision: ArbitrationDecision, *, actor: Actor) -> EscrowAccount:
    """Settle a disputed escrow according to a final ruling.

    Re-applying the decision that already settled the account returns it
    untouched; no ledger rows are added.
    """
    if account.resolved_decision_id is not None and int(account.resolved_decision_id) == int(decision.id):
        return account
    if account.status != EscrowStatus.DISPUTED:
        raise EscrowNotDisputed(f"escrow is {account.status}, not disputed", escrow_id=int(account.id))

    plan = settlement_plan(decision.decision_type, account.amount, decision.refund_amount)
    now = clock.utcnow()
    reason = f"Ruling {decision.decision_type} on dispute {int(decision.dispute_id)}"

    if plan.refunds_customer:
        swap_status(
            account,
            expected=EscrowStatus.DISPUTED,
            target=EscrowStatus.REFUNDED,
            refunded_at=now,
            released_at=now if plan.release > ZERO else None,
            refunded_amount=plan.refund,
            released_amount=plan.release,
            resolved_decision_id=int(decision.id),
        )
        _ledger(account, LedgerAction.REFUND, plan.refund, EscrowStatus.REFUNDED, actor, notes=reason, decision_id=decision.id)
        if plan.release > ZERO:
            _ledger(
                account,
                LedgerAction.RELEASE,
                plan.release,
                EscrowStatus.REFUNDED,
                actor,
                notes=f"{reason}: remainder released to store",
                decision_id=decision.id,
            )
        return account

    swap_status(
        account,
        expected=EscrowStatus.DISPUTED,
        target=EscrowStatus.RELEASED,
        released_at=now,
        released_amount=plan.release,
        resolved_decision_id=int(decision.id),
    )
    _ledger(account, LedgerAction.RELEASE, plan.release, EscrowStatus.RELEASED, actor, notes=reason, decision_id=decision.id)
    return account


def release_abandoned(account: EscrowAccount, *, actor: Actor, dispute_id: int) -> EscrowAccount:
    """Dispute closed without a ruling: the funds go to the store."""
    if account.status != EscrowStatus.DISPUTED:
        raise EscrowNotDisputed(f"escrow is {account.status}, not disputed", escrow_id=int(account.id))
    swap_status(
        account,
        expected=EscrowStatus.DISPUTED,
        target=EscrowStatus.RELEASED,
        released_at=clock.utcnow(),
        released_amount=quantize(account.amount),
    )
    _ledger(
        account,
        LedgerAction.RELEASE,
        account.amount,
        EscrowStatus.RELEASED,
        actor,
        notes=f"Dispute {int(dispute_id)} closed without ruling",
    )
    return account


def verify_ledger(account: EscrowAccount) -> dict:
    """Fold the account's ledger and compare with the materialized row.

    Raises LedgerIntegrityError on any divergence.
    """
    entries = ledger_service.entries_for_account(AccountType.ESCROW, int(account.id))
    folded = ledger_service.fold_status(entries, allowed=EscrowStatus.ALLOWED, initial=EscrowStatus.HELD)
    if folded != account.status:
        raise LedgerIntegrityError(
            f"escrow {int(account.id)} status {account.status} but ledger folds to {folded}",
            escrow_id=int(account.id),
        )
    amount = quantize(account.amount)
    funded = ledger_service.sum_amounts(entries, LedgerAction.PAYMENT)
    if funded != amount:
        raise LedgerIntegrityError(
            f"escrow {int(account.id)} amount {amount} but ledger funded {funded}",
            escrow_id=int(account.id),
        )
    refunded = ledger_service.sum_amounts(entries, LedgerAction.REFUND)
    released = ledger_service.sum_amounts(entries, LedgerAction.RELEASE)
    if account.status in EscrowStatus.TERMINAL and refunded + released != amount:
        raise LedgerIntegrityError(
            f"escrow {int(account.id)} settled {refunded + released} of {amount}",
            escrow_id=int(account.id),
        )
    if account.status not in EscrowStatus.TERMINAL and refunded + released != ZERO:
        raise LedgerIntegrityError(
            f"escrow {int(account.id)} moved money while {account.status}",
            escrow_id=int(account.id),
        )
    return {
        "escrow_id": int(account.id),
        "status": account.status,
        "ledger_status": folded,
        "entries": len(entries),
        "funded": float(funded),
        "refunded": float(refunded),
        "released": float(released),
    }


def expired_candidates(*, now: datetime | None = None, limit: int = 500) -> list[EscrowAccount]:
    now = now or clock.utcnow()
    disputed_ids = db.session.query(DisputeCase.escrow_id).filter(DisputeCase.escrow_id.isnot(None))
    return (
        EscrowAccount.query.filter(
            EscrowAccount.status == EscrowStatus.HELD,
            EscrowAccount.frozen.is_(False),
            EscrowAccount.dispute_deadline < now,
            EscrowAccount.id.notin_(disputed_ids),
        )
        .order_by(EscrowAccount.dispute_deadline.asc(), EscrowAccount.id.asc())
        .limit(int(limit))
        .all()
    )
