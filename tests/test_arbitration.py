from __future__ import annotations

import os
import unittest
from decimal import Decimal

from escrowcourt import create_app
from escrowcourt.errors import (
    DecisionAlreadyFinal,
    DisputeNotInvestigating,
    Forbidden,
    InvalidRefundAmount,
    ValidationFailed,
)
from escrowcourt.extensions import db
from escrowcourt.models import EscrowAccount, LedgerEntry
from escrowcourt.services import escrow_service
from escrowcourt.services import settlement_coordinator as coordinator
from escrowcourt.services.actors import Actor
from escrowcourt.services.arbitration_service import DecisionType, settlement_plan
from escrowcourt.services.escrow_service import EscrowStatus
from escrowcourt.utils.jwt_utils import create_token


class ArbitrationTestCase(unittest.TestCase):
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

    def _disputed(self, order_id="ord-1", amount=5000):
        account = coordinator.open_escrow(
            self.customer,
            {"order_id": order_id, "customer_id": "cust-1", "store_id": "store-1", "amount": amount},
        )
        account, case = coordinator.open_dispute(self.customer, account.id, {"reason": "not delivered"})
        return account, case

    def _actions(self, order_id):
        return [e.action for e in LedgerEntry.query.filter_by(order_id=order_id).order_by(LedgerEntry.id).all()]

    def test_customer_wins_refunds_in_full(self):
        with self.app.app_context():
            account, case = self._disputed()
            self.assertEqual(account.status, EscrowStatus.DISPUTED)
            self.assertEqual(case.status, "open")

            case, decision, account = coordinator.decide(
                self.admin,
                case.id,
                {"decision_type": "customer_wins", "decision_reason": "courier lost parcel", "refund_amount": 5000},
            )
            self.assertEqual(account.status, EscrowStatus.REFUNDED)
            self.assertEqual(case.status, "resolved")
            self.assertEqual(case.resolution_type, "refund")
            self.assertIsNotNone(case.resolved_at)
            self.assertTrue(decision.is_final)
            self.assertEqual(account.refunded_amount, Decimal("5000.00"))
            self.assertEqual(self._actions("ord-1"), ["payment", "dispute", "refund"])

    def test_customer_wins_ignores_requested_refund_amount(self):
        with self.app.app_context():
            _account, case = self._disputed()
            _case, decision, account = coordinator.decide(
                self.admin,
                case.id,
                {"decision_type": "customer_wins", "decision_reason": "r", "refund_amount": 10},
            )
            self.assertEqual(decision.refund_amount, Decimal("5000.00"))
            self.assertEqual(account.refunded_amount, Decimal("5000.00"))

    def test_store_wins_releases_everything(self):
        with self.app.app_context():
            _account, case = self._disputed()
            case, decision, account = coordinator.decide(
                self.admin, case.id, {"decision_type": "store_wins", "decision_reason": "tracking shows delivery"}
            )
            self.assertEqual(account.status, EscrowStatus.RELEASED)
            self.assertEqual(decision.refund_amount, Decimal("0.00"))
            self.assertEqual(case.resolution_type, "no_action")
            release = LedgerEntry.query.filter_by(order_id="ord-1", action="release").one()
            self.assertEqual(release.amount, Decimal("5000.00"))
            self.assertEqual(release.decision_id, decision.id)

    def test_partial_ruling_splits_refund_and_release(self):
        with self.app.app_context():
            _account, case = self._disputed(amount=5000)
            case, decision, account = coordinator.decide(
                self.admin,
                case.id,
                {"decision_type": "partial_customer", "decision_reason": "one item damaged", "refund_amount": "1500.50"},
            )
            self.assertEqual(account.status, EscrowStatus.REFUNDED)
            self.assertEqual(account.refunded_amount, Decimal("1500.50"))
            self.assertEqual(account.released_amount, Decimal("3499.50"))
            self.assertEqual(case.resolution_type, "partial_refund")
            self.assertEqual(case.refund_amount, Decimal("1500.50"))
            self.assertEqual(self._actions("ord-1"), ["payment", "dispute", "refund", "release"])
            self.assertEqual(escrow_service.verify_ledger(account)["ledger_status"], EscrowStatus.REFUNDED)

    def test_partial_ruling_rejects_out_of_range_refund(self):
        with self.app.app_context():
            account, case = self._disputed(amount=5000)
            for bad in ("5000", "6000"):
                with self.assertRaises(InvalidRefundAmount):
                    coordinator.decide(
                        self.admin,
                        case.id,
                        {"decision_type": "partial_store", "decision_reason": "r", "refund_amount": bad},
                    )
            with self.assertRaises(ValidationFailed):
                coordinator.decide(
                    self.admin,
                    case.id,
                    {"decision_type": "partial_store", "decision_reason": "r", "refund_amount": 0},
                )
            self.assertEqual(db.session.get(EscrowAccount, account.id).status, EscrowStatus.DISPUTED)
            self.assertEqual(self._actions("ord-1"), ["payment", "dispute"])

    def test_no_fault_zeroes_penalties(self):
        with self.app.app_context():
            _account, case = self._disputed()
            _case, decision, account = coordinator.decide(
                self.admin,
                case.id,
                {
                    "decision_type": "no_fault",
                    "decision_reason": "carrier strike",
                    "customer_penalty": 50,
                    "store_penalty": 75,
                },
            )
            self.assertEqual(decision.customer_penalty, Decimal("0.00"))
            self.assertEqual(decision.store_penalty, Decimal("0.00"))
            self.assertEqual(account.status, EscrowStatus.RELEASED)

    def test_unknown_decision_type_rejected(self):
        with self.app.app_context():
            _account, case = self._disputed()
            with self.assertRaises(ValidationFailed):
                coordinator.decide(self.admin, case.id, {"decision_type": "split", "decision_reason": "r"})
            with self.assertRaises(ValidationFailed):
                coordinator.decide(self.admin, case.id, {"decision_type": "store_wins", "decision_reason": "  "})

    def test_second_decision_is_rejected_and_reapply_is_noop(self):
        with self.app.app_context():
            _account, case = self._disputed()
            case, decision, account = coordinator.decide(
                self.admin, case.id, {"decision_type": "customer_wins", "decision_reason": "r"}
            )
            before = LedgerEntry.query.filter_by(order_id="ord-1").count()

            with self.assertRaises(DecisionAlreadyFinal):
                coordinator.decide(self.admin, case.id, {"decision_type": "store_wins", "decision_reason": "r"})

            escrow_service.resolve(account, decision, actor=self.admin)
            self.assertEqual(LedgerEntry.query.filter_by(order_id="ord-1").count(), before)
            self.assertEqual(account.status, EscrowStatus.REFUNDED)

    def test_draft_decision_does_not_settle_until_finalized(self):
        with self.app.app_context():
            _account, case = self._disputed()
            coordinator.assign_admin(self.admin, case.id)
            case, draft, account = coordinator.decide(
                self.admin,
                case.id,
                {"decision_type": "store_wins", "decision_reason": "first look", "is_final": False},
            )
            self.assertFalse(draft.is_final)
            self.assertEqual(account.status, EscrowStatus.DISPUTED)
            self.assertEqual(case.status, "investigating")

            case, revised, account = coordinator.decide(
                self.admin,
                case.id,
                {"decision_type": "partial_customer", "decision_reason": "photos", "refund_amount": 1000, "is_final": "false"},
            )
            self.assertEqual(revised.id, draft.id)
            self.assertEqual(account.status, EscrowStatus.DISPUTED)

            case, final, account = coordinator.finalize_decision(self.admin, case.id)
            self.assertTrue(final.is_final)
            self.assertEqual(case.status, "resolved")
            self.assertEqual(account.refunded_amount, Decimal("1000.00"))
            self.assertEqual(account.released_amount, Decimal("4000.00"))

            with self.assertRaises(DecisionAlreadyFinal):
                coordinator.finalize_decision(self.admin, case.id)

    def test_decision_rejected_while_escalated(self):
        with self.app.app_context():
            _account, case = self._disputed()
            coordinator.assign_admin(self.admin, case.id)
            coordinator.update_status(self.admin, case.id, "escalated")
            with self.assertRaises(DisputeNotInvestigating):
                coordinator.decide(self.admin, case.id, {"decision_type": "store_wins", "decision_reason": "r"})

            coordinator.update_status(self.admin, case.id, "investigating")
            case, _decision, account = coordinator.decide(
                self.admin, case.id, {"decision_type": "store_wins", "decision_reason": "r"}
            )
            self.assertEqual(case.status, "resolved")
            self.assertEqual(account.status, EscrowStatus.RELEASED)

    def test_only_admins_decide(self):
        with self.app.app_context():
            _account, case = self._disputed()
            with self.assertRaises(Forbidden):
                coordinator.decide(self.customer, case.id, {"decision_type": "customer_wins", "decision_reason": "r"})

    def test_settlement_plan_shapes(self):
        amount = Decimal("100.00")
        self.assertEqual(settlement_plan(DecisionType.CUSTOMER_WINS, amount, None).refund, amount)
        self.assertEqual(settlement_plan(DecisionType.STORE_WINS, amount, Decimal("40")).refund, Decimal("0.00"))
        plan = settlement_plan(DecisionType.PARTIAL_STORE, amount, Decimal("0.01"))
        self.assertEqual((plan.refund, plan.release), (Decimal("0.01"), Decimal("99.99")))
        self.assertTrue(plan.refunds_customer)

    def test_decision_route(self):
        with self.app.app_context():
            _account, case = self._disputed()
            case_id = case.id
        headers = {"Authorization": f"Bearer {create_token('admin-1', 'admin')}"}
        res = self.client.post(
            f"/api/disputes/{case_id}/decision",
            json={"decision_type": "customer_wins", "decision_reason": "no delivery scan"},
            headers=headers,
        )
        self.assertEqual(res.status_code, 200)
        body = res.get_json()
        self.assertEqual(body["dispute"]["status"], "resolved")
        self.assertEqual(body["escrow"]["escrow_status"], "refunded")
        self.assertEqual(body["decision"]["refund_amount"], 5000.0)

        res = self.client.post(
            f"/api/disputes/{case_id}/decision",
            json={"decision_type": "store_wins", "decision_reason": "again"},
            headers=headers,
        )
        self.assertEqual(res.status_code, 409)
        self.assertEqual(res.get_json()["code"], "DecisionAlreadyFinal")


if __name__ == "__main__":
    unittest.main()
