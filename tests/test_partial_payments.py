from __future__ import annotations

import os
import unittest
from decimal import Decimal

from escrowcourt import create_app
from escrowcourt.errors import (
    InvalidAmount,
    OverpaymentRejected,
    PartialPaymentClosed,
    PaymentModeConflict,
    ValidationFailed,
)
from escrowcourt.extensions import db
from escrowcourt.services import ledger_service
from escrowcourt.services import settlement_coordinator as coordinator
from escrowcourt.services.actors import Actor
from escrowcourt.utils.jwt_utils import create_token


class PartialPaymentTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        os.environ["SQLALCHEMY_DATABASE_URI"] = "sqlite:///:memory:"
        os.environ["ESCROWCOURT_ENV"] = "test"
        cls.app = create_app()
        cls.app.config.update(TESTING=True)
        cls.client = cls.app.test_client()
        cls.customer = Actor(id="cust-1", role="customer")
        cls.admin = Actor(id="admin-1", role="admin")

    def setUp(self):
        with self.app.app_context():
            db.session.remove()
            db.drop_all()
            db.create_all()

    def _open(self, order_id="ord-100", total=20000, percentage=40):
        return coordinator.open_partial_payment(
            self.customer,
            {
                "order_id": order_id,
                "customer_id": "cust-1",
                "store_id": "store-1",
                "total_amount": total,
                "percentage": percentage,
            },
        )

    def test_forty_percent_then_final_installment_completes(self):
        with self.app.app_context():
            payment = self._open()
            self.assertEqual(payment.status, "partial")
            self.assertEqual(payment.paid_amount, Decimal("8000.00"))
            self.assertEqual(payment.remaining_amount, Decimal("12000.00"))

            payment = coordinator.record_installment(self.customer, payment.id, 12000)
            self.assertEqual(payment.status, "completed")
            self.assertEqual(payment.remaining_amount, Decimal("0.00"))
            self.assertIsNotNone(payment.completed_at)

            entries = ledger_service.replay("ord-100")
            self.assertEqual([e.action for e in entries], ["payment", "payment"])
            self.assertEqual([e.resulting_status for e in entries], ["partial", "completed"])
            self.assertEqual([e.amount for e in entries], [Decimal("8000.00"), Decimal("12000.00")])

    def test_paid_plus_remaining_equals_total_after_every_installment(self):
        with self.app.app_context():
            payment = self._open(total="999.99", percentage=33)
            for amount in ("100.01", "0.50", "250"):
                payment = coordinator.record_installment(self.customer, payment.id, amount)
                self.assertEqual(payment.paid_amount + payment.remaining_amount, payment.total_amount)
            self.assertEqual(payment.status, "partial")

    def test_overpayment_is_rejected_without_mutation(self):
        with self.app.app_context():
            payment = self._open()
            with self.assertRaises(OverpaymentRejected):
                coordinator.record_installment(self.customer, payment.id, "12000.01")
            payment = coordinator.record_installment(self.customer, payment.id, 1)
            self.assertEqual(payment.paid_amount, Decimal("8001.00"))
            self.assertEqual(len(ledger_service.replay("ord-100")), 2)

    def test_installment_must_be_positive(self):
        with self.app.app_context():
            payment = self._open()
            with self.assertRaises(InvalidAmount):
                coordinator.record_installment(self.customer, payment.id, 0)
            with self.assertRaises(InvalidAmount):
                coordinator.record_installment(self.customer, payment.id, "-5")

    def test_completed_payment_accepts_no_more_installments(self):
        with self.app.app_context():
            payment = self._open()
            coordinator.record_installment(self.customer, payment.id, 12000)
            with self.assertRaises(PartialPaymentClosed):
                coordinator.record_installment(self.customer, payment.id, 1)

    def test_percentage_bounds(self):
        with self.app.app_context():
            for bad in (0, 100, "abc", None):
                with self.assertRaises(ValidationFailed):
                    self._open(order_id=f"ord-bad-{bad}", percentage=bad)

    def test_admin_refund_writes_refund_entry(self):
        with self.app.app_context():
            payment = self._open()
            payment = coordinator.refund_partial_payment(self.admin, payment.id, notes="order cancelled")
            self.assertEqual(payment.status, "refunded")
            last = ledger_service.replay("ord-100")[-1]
            self.assertEqual(last.action, "refund")
            self.assertEqual(last.amount, Decimal("8000.00"))
            with self.assertRaises(PartialPaymentClosed):
                coordinator.record_installment(self.customer, payment.id, 10)

    def test_order_cannot_mix_partial_and_escrow(self):
        with self.app.app_context():
            self._open()
            with self.assertRaises(PaymentModeConflict):
                coordinator.open_escrow(
                    self.customer,
                    {"order_id": "ord-100", "customer_id": "cust-1", "store_id": "store-1", "amount": 10},
                )

    def test_partial_payment_routes(self):
        headers = {"Authorization": f"Bearer {create_token('cust-1', 'customer')}"}
        res = self.client.post(
            "/api/payments/partial",
            json={
                "order_id": "ord-http",
                "customer_id": "cust-1",
                "store_id": "store-1",
                "total_amount": 20000,
                "percentage": 40,
            },
            headers=headers,
        )
        self.assertEqual(res.status_code, 201)
        payment = res.get_json()["payment"]
        self.assertEqual(payment["payment_status"], "partial")
        self.assertEqual(payment["remaining_amount"], 12000.0)

        res = self.client.post(
            f"/api/payments/partial/{payment['id']}/installments",
            json={"amount": 12000},
            headers=headers,
        )
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()["payment"]["payment_status"], "completed")

        res = self.client.post(
            "/api/payments/partial",
            json={"order_id": "ord-x", "customer_id": "cust-1", "store_id": "store-1", "total_amount": 10, "percentage": 120},
            headers=headers,
        )
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.get_json()["code"], "ValidationFailed")


if __name__ == "__main__":
    unittest.main()
