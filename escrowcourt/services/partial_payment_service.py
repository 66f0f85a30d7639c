from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from escrowcourt.errors import (
    ConcurrentModification,
    LedgerIntegrityError,
    OverpaymentRejected,
    PartialPaymentClosed,
    ValidationFailed,
)
from escrowcourt.extensions import db
from escrowcourt.models import PartialPayment
from escrowcourt.services import ledger_service
from escrowcourt.services.actors import Actor
from escrowcourt.services.escrow_service import new_transaction_id
from escrowcourt.services.ledger_service import AccountType, LedgerAction, PaymentType
from escrowcourt.utils import clock
from escrowcourt.utils.money import ZERO, parse_amount, quantize


class PartialPaymentStatus:
    PENDING = "pending"
    PARTIAL = "partial"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"

    OPEN = {PENDING, PARTIAL}
    TERMINAL = {COMPLETED, FAILED, REFUNDED}
    ALLOWED = {
        PENDING: {PARTIAL, COMPLETED, FAILED, REFUNDED},
        PARTIAL: {PARTIAL, COMPLETED, REFUNDED},
        COMPLETED: set(),
        FAILED: set(),
        REFUNDED: set(),
    }


def parse_percentage(value) -> Decimal:
    if value is None or isinstance(value, bool) or str(value).strip() == "":
        raise ValidationFailed("percentage is required", field="percentage")
    try:
        pct = Decimal(str(value).strip())
    except Exception:
        raise ValidationFailed("percentage must be a number", field="percentage")
    if not pct.is_finite() or pct < 1 or pct > 99:
        raise ValidationFailed("percentage must be between 1 and 99", field="percentage")
    return pct


def compute_split(total: Decimal, percentage: Decimal) -> tuple[Decimal, Decimal]:
    """Paid share rounded to the cent; the remainder absorbs rounding."""
    total = quantize(total)
    paid = quantize(total * Decimal(percentage) / Decimal(100))
    return paid, total - paid


def _ledger(payment: PartialPayment, action: str, amount, status: str, actor: Actor, *, notes: str = ""):
    return ledger_service.append_entry(
        account_type=AccountType.PARTIAL,
        account_id=int(payment.id),
        order_id=payment.order_id,
        payment_type=PaymentType.PARTIAL,
        amount=amount,
        action=action,
        resulting_status=status,
        actor=actor,
        transaction_id=payment.transaction_id,
        notes=notes,
    )


def create_payment(
    *,
    order_id: str,
    customer_id: str,
    store_id: str,
    total_amount: Decimal,
    percentage: Decimal,
    actor: Actor,
    due_date: datetime | None = None,
    payment_method: str | None = None,
) -> PartialPayment:
    total = quantize(total_amount)
    paid, remaining = compute_split(total, percentage)
    if paid == ZERO:
        status = PartialPaymentStatus.PENDING
    elif remaining == ZERO:
        # Sub-cent totals can round the whole balance into the first share.
        status = PartialPaymentStatus.COMPLETED
    else:
        status = PartialPaymentStatus.PARTIAL
    now = clock.utcnow()
    payment = PartialPayment(
        order_id=order_id,
        customer_id=customer_id,
        store_id=store_id,
        total_amount=total,
        paid_amount=paid,
        remaining_amount=remaining,
        percentage=Decimal(percentage),
        payment_method=str(payment_method or "").strip()[:32] or None,
        status=status,
        transaction_id=new_transaction_id("partial"),
        due_date=due_date,
        paid_at=now if paid > ZERO else None,
        version=1,
        created_at=now,
        updated_at=now,
    )
    db.session.add(payment)
    db.session.flush()
    _ledger(payment, LedgerAction.PAYMENT, paid, status, actor, notes=f"Initial installment {percentage}%")
    return payment


def _swap(payment: PartialPayment, *, expected: str, values: dict) -> PartialPayment:
    values = dict(values)
    values["version"] = int(payment.version) + 1
    values["updated_at"] = clock.utcnow()
    updated = PartialPayment.query.filter(
        PartialPayment.id == int(payment.id),
        PartialPayment.status == expected,
        PartialPayment.version == int(payment.version),
    ).update(values, synchronize_session=False)
    if updated != 1:
        raise ConcurrentModification(
            f"partial payment {int(payment.id)} changed concurrently", payment_id=int(payment.id)
        )
    db.session.refresh(payment)
    return payment


def record_installment(payment: PartialPayment, amount, *, actor: Actor) -> PartialPayment:
    if payment.status not in PartialPaymentStatus.OPEN:
        raise PartialPaymentClosed(
            f"partial payment is {payment.status}", payment_id=int(payment.id)
        )
    additional = parse_amount(amount, field="amount")
    remaining = quantize(payment.remaining_amount)
    if additional > remaining:
        raise OverpaymentRejected(
            f"amount {additional} exceeds remaining balance {remaining}", payment_id=int(payment.id)
        )
    paid = quantize(payment.paid_amount) + additional
    remaining = quantize(payment.total_amount) - paid
    now = clock.utcnow()
    status = PartialPaymentStatus.COMPLETED if remaining == ZERO else PartialPaymentStatus.PARTIAL
    values = {
        "paid_amount": paid,
        "remaining_amount": remaining,
        "status": status,
        "paid_at": now,
    }
    if status == PartialPaymentStatus.COMPLETED:
        values["completed_at"] = now
    _swap(payment, expected=payment.status, values=values)
    _ledger(payment, LedgerAction.PAYMENT, additional, status, actor, notes="Installment received")
    return payment


def refund(payment: PartialPayment, *, actor: Actor, notes: str | None = None) -> PartialPayment:
    if payment.status not in PartialPaymentStatus.OPEN:
        raise PartialPaymentClosed(
            f"partial payment is {payment.status}", payment_id=int(payment.id)
        )
    paid = quantize(payment.paid_amount)
    _swap(
        payment,
        expected=payment.status,
        values={"status": PartialPaymentStatus.REFUNDED, "refunded_at": clock.utcnow()},
    )
    _ledger(payment, LedgerAction.REFUND, paid, PartialPaymentStatus.REFUNDED, actor, notes=notes or "Refunded by admin")
    return payment


def verify_ledger(payment: PartialPayment) -> dict:
    entries = ledger_service.entries_for_account(AccountType.PARTIAL, int(payment.id))
    initial = entries[0].resulting_status if entries else PartialPaymentStatus.PENDING
    folded = ledger_service.fold_status(entries, allowed=PartialPaymentStatus.ALLOWED, initial=initial)
    if folded != payment.status:
        raise LedgerIntegrityError(
            f"partial payment {int(payment.id)} status {payment.status} but ledger folds to {folded}",
            payment_id=int(payment.id),
        )
    paid = ledger_service.sum_amounts(entries, LedgerAction.PAYMENT)
    if paid != quantize(payment.paid_amount):
        raise LedgerIntegrityError(
            f"partial payment {int(payment.id)} paid {payment.paid_amount} but ledger received {paid}",
            payment_id=int(payment.id),
        )
    if quantize(payment.paid_amount) + quantize(payment.remaining_amount) != quantize(payment.total_amount):
        raise LedgerIntegrityError(
            f"partial payment {int(payment.id)} paid and remaining do not add up to total",
            payment_id=int(payment.id),
        )
    return {
        "payment_id": int(payment.id),
        "status": payment.status,
        "ledger_status": folded,
        "entries": len(entries),
        "paid": float(paid),
        "refunded": float(ledger_service.sum_amounts(entries, LedgerAction.REFUND)),
    }
