from __future__ import annotations

import json
import os
import unittest

from escrowcourt import create_app
from escrowcourt.errors import (
    DecisionRequired,
    DisputeClosed,
    DisputeNotInvestigating,
    EvidenceTooLarge,
    Forbidden,
    InvalidDisputeTransition,
    InvalidEvidenceReference,
    ValidationFailed,
)
from escrowcourt.extensions import db
from escrowcourt.models import DisputeAction, EscrowAccount, LedgerEntry
from escrowcourt.services import settlement_coordinator as coordinator
from escrowcourt.services.actors import Actor
from escrowcourt.services.escrow_service import EscrowStatus
from escrowcourt.utils.jwt_utils import create_token


class DisputeWorkflowTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        os.environ["SQLALCHEMY_DATABASE_URI"] = "sqlite:///:memory:"
        os.environ["ESCROWCOURT_ENV"] = "test"
        cls.app = create_app()
        cls.app.config.update(TESTING=True)
        cls.client = cls.app.test_client()
        cls.customer = Actor(id="cust-1", role="customer")
        cls.store = Actor(id="store-1", role="store")
        cls.stranger = Actor(id="cust-9", role="customer")
        cls.admin = Actor(id="admin-1", role="admin")

    def setUp(self):
        with self.app.app_context():
            db.session.remove()
            db.drop_all()
            db.create_all()

    def _case(self, order_id="ord-1"):
        account = coordinator.open_escrow(
            self.customer,
            {"order_id": order_id, "customer_id": "cust-1", "store_id": "store-1", "amount": 2500},
        )
        _account, case = coordinator.open_dispute(
            self.store, account.id, {"reason": "buyer claims damage", "dispute_type": "quality", "priority": "high"}
        )
        return account, case

    def _evidence(self, **overrides):
        data = {
            "evidence_type": "image",
            "file_url": "https://files.example.com/ev/1.jpg",
            "file_name": "1.jpg",
            "file_size": 2048,
            "file_type": "image/jpeg",
        }
        data.update(overrides)
        return data

    def _dispute_body(self, **overrides):
        data = {
            "order_id": "ord-1",
            "conversation_id": "conv-1",
            "customer_id": "cust-1",
            "store_id": "store-1",
            "dispute_type": "delivery",
            "subject": "never arrived",
            "description": "no parcel",
        }
        data.update(overrides)
        return data

    def _action_types(self, case_id):
        return [
            a.action_type
            for a in DisputeAction.query.filter_by(dispute_id=case_id).order_by(DisputeAction.id).all()
        ]

    def test_open_dispute_records_created_action(self):
        with self.app.app_context():
            _account, case = self._case()
            self.assertEqual(case.priority, "high")
            self.assertEqual(case.dispute_type, "quality")
            self.assertEqual(case.opened_by_role, "store")
            self.assertEqual(self._action_types(case.id), ["created"])

    def test_stranger_cannot_open_dispute(self):
        with self.app.app_context():
            account = coordinator.open_escrow(
                self.customer,
                {"order_id": "ord-1", "customer_id": "cust-1", "store_id": "store-1", "amount": 10},
            )
            with self.assertRaises(Forbidden):
                coordinator.open_dispute(self.stranger, account.id, {"reason": "x"})
            with self.assertRaises(ValidationFailed):
                coordinator.open_dispute(self.customer, account.id, {"reason": "   "})

    def test_evidence_limits(self):
        with self.app.app_context():
            _account, case = self._case()
            evidence = coordinator.add_evidence(self.customer, case.id, self._evidence(file_size=10 * 1024 * 1024))
            self.assertFalse(evidence.is_verified)

            with self.assertRaises(EvidenceTooLarge):
                coordinator.add_evidence(self.customer, case.id, self._evidence(file_size=10 * 1024 * 1024 + 1))
            with self.assertRaises(InvalidEvidenceReference):
                coordinator.add_evidence(self.customer, case.id, self._evidence(file_url="ftp://files/1.jpg"))
            with self.assertRaises(ValidationFailed):
                coordinator.add_evidence(self.customer, case.id, self._evidence(evidence_type="hologram"))
            with self.assertRaises(Forbidden):
                coordinator.add_evidence(self.stranger, case.id, self._evidence())
            self.assertEqual(self._action_types(case.id), ["created", "evidence_added"])

    def test_evidence_host_allow_list(self):
        with self.app.app_context():
            _account, case = self._case()
            self.app.config["EVIDENCE_ALLOWED_HOSTS"] = "cdn.example.com"
            try:
                with self.assertRaises(InvalidEvidenceReference):
                    coordinator.add_evidence(self.customer, case.id, self._evidence())
                coordinator.add_evidence(
                    self.customer, case.id, self._evidence(file_url="https://cdn.example.com/a.png")
                )
            finally:
                self.app.config["EVIDENCE_ALLOWED_HOSTS"] = ""

    def test_admin_verifies_evidence(self):
        with self.app.app_context():
            _account, case = self._case()
            evidence = coordinator.add_evidence(self.customer, case.id, self._evidence())
            with self.assertRaises(Forbidden):
                coordinator.verify_evidence(self.customer, case.id, evidence.id)
            evidence = coordinator.verify_evidence(self.admin, case.id, evidence.id)
            self.assertTrue(evidence.is_verified)
            self.assertEqual(evidence.verified_by, "admin-1")
            self.assertIsNotNone(evidence.verified_at)
            self.assertEqual(self._action_types(case.id)[-1], "updated")

    def test_assignment_moves_open_case_to_investigating(self):
        with self.app.app_context():
            _account, case = self._case()
            case = coordinator.assign_admin(self.admin, case.id, "admin-7")
            self.assertEqual(case.status, "investigating")
            self.assertEqual(case.assigned_admin_id, "admin-7")
            case = coordinator.assign_admin(self.admin, case.id)
            self.assertEqual(case.assigned_admin_id, "admin-1")

            coordinator.update_status(self.admin, case.id, "escalated")
            with self.assertRaises(DisputeNotInvestigating):
                coordinator.assign_admin(self.admin, case.id)
            self.assertEqual(
                self._action_types(case.id), ["created", "admin_assigned", "admin_assigned", "status_changed"]
            )

    def test_status_transitions_follow_the_map(self):
        with self.app.app_context():
            _account, case = self._case()
            with self.assertRaises(InvalidDisputeTransition):
                coordinator.update_status(self.admin, case.id, "escalated")
            with self.assertRaises(DecisionRequired):
                coordinator.update_status(self.admin, case.id, "resolved")
            with self.assertRaises(ValidationFailed):
                coordinator.update_status(self.admin, case.id, "pending")
            with self.assertRaises(Forbidden):
                coordinator.update_status(self.customer, case.id, "investigating")

            case = coordinator.update_status(self.admin, case.id, "investigating", admin_notes="looking into it")
            self.assertEqual(case.admin_notes, "looking into it")
            case = coordinator.update_status(self.admin, case.id, "escalated")
            case = coordinator.update_status(self.admin, case.id, "investigating")
            self.assertEqual(case.status, "investigating")

    def test_open_case_cannot_be_closed_directly(self):
        with self.app.app_context():
            account, case = self._case()
            with self.assertRaises(InvalidDisputeTransition):
                coordinator.update_status(self.admin, case.id, "closed")
            self.assertEqual(db.session.get(EscrowAccount, account.id).status, EscrowStatus.DISPUTED)
            self.assertEqual(LedgerEntry.query.filter_by(order_id="ord-1", action="release").count(), 0)

    def test_resolved_case_can_only_close(self):
        with self.app.app_context():
            _account, case = self._case()
            coordinator.decide(self.admin, case.id, {"decision_type": "store_wins", "decision_reason": "r"})
            with self.assertRaises(InvalidDisputeTransition):
                coordinator.update_status(self.admin, case.id, "investigating")
            case = coordinator.update_status(self.admin, case.id, "closed")
            self.assertIsNotNone(case.closed_at)
            self.assertEqual(LedgerEntry.query.filter_by(order_id="ord-1", action="release").count(), 1)

    def test_closing_without_ruling_releases_escrow(self):
        with self.app.app_context():
            account, case = self._case()
            coordinator.assign_admin(self.admin, case.id)
            case = coordinator.update_status(self.admin, case.id, "closed", admin_notes="buyer withdrew")
            account = db.session.get(EscrowAccount, account.id)
            self.assertEqual(account.status, EscrowStatus.RELEASED)
            self.assertIsNone(case.active_escrow_key)
            self.assertEqual(case.resolution_type, "no_action")
            release = LedgerEntry.query.filter_by(order_id="ord-1", action="release").one()
            self.assertIn("closed without ruling", release.notes)
            self.assertEqual(self._action_types(case.id), ["created", "admin_assigned", "status_changed"])
            closing = DisputeAction.query.filter_by(dispute_id=case.id).order_by(DisputeAction.id.desc()).first()
            self.assertEqual(json.loads(closing.metadata_json)["to_status"], "closed")

    def test_closed_case_rejects_evidence_and_transitions(self):
        with self.app.app_context():
            _account, case = self._case()
            coordinator.assign_admin(self.admin, case.id)
            coordinator.update_status(self.admin, case.id, "closed")
            with self.assertRaises(DisputeClosed):
                coordinator.add_evidence(self.customer, case.id, self._evidence())
            with self.assertRaises(DisputeClosed):
                coordinator.update_status(self.admin, case.id, "investigating")

    def test_dispute_without_escrow(self):
        with self.app.app_context():
            case = coordinator.create_dispute(
                self.customer,
                {
                    "order_id": "ord-cod",
                    "conversation_id": "conv-cod",
                    "customer_id": "cust-1",
                    "store_id": "store-1",
                    "dispute_type": "service",
                    "subject": "rude courier",
                    "description": "courier refused to wait",
                },
            )
            self.assertIsNone(case.escrow_id)
            case, decision, account = coordinator.decide(
                self.admin, case.id, {"decision_type": "customer_wins", "decision_reason": "r", "refund_amount": 20}
            )
            self.assertIsNone(account)
            self.assertEqual(case.status, "resolved")
            self.assertEqual(float(decision.refund_amount), 20.0)

    def test_create_dispute_attaches_order_escrow(self):
        with self.app.app_context():
            account = coordinator.open_escrow(
                self.customer,
                {"order_id": "ord-1", "customer_id": "cust-1", "store_id": "store-1", "amount": 30},
            )
            case = coordinator.create_dispute(self.customer, self._dispute_body())
            self.assertEqual(case.escrow_id, account.id)
            self.assertEqual(db.session.get(EscrowAccount, account.id).status, EscrowStatus.DISPUTED)

    def test_create_dispute_requires_every_field_even_with_escrow(self):
        with self.app.app_context():
            account = coordinator.open_escrow(
                self.customer,
                {"order_id": "ord-1", "customer_id": "cust-1", "store_id": "store-1", "amount": 30},
            )
            for field in coordinator.DISPUTE_REQUIRED_FIELDS:
                body = self._dispute_body(escrow_payment_id=account.id)
                body.pop(field)
                with self.assertRaises(ValidationFailed) as ctx:
                    coordinator.create_dispute(self.customer, body)
                self.assertIn(field, ctx.exception.message)
            with self.assertRaises(ValidationFailed):
                coordinator.create_dispute(self.customer, self._dispute_body(store_id="store-2"))
            self.assertEqual(db.session.get(EscrowAccount, account.id).status, EscrowStatus.HELD)
            self.assertEqual(DisputeAction.query.count(), 0)

    def test_create_dispute_route_rejects_partial_body(self):
        customer = {"Authorization": f"Bearer {create_token('cust-1', 'customer')}"}
        res = self.client.post(
            "/api/payments/escrow",
            json={"order_id": "ord-body", "customer_id": "cust-1", "store_id": "store-1", "amount": 40},
            headers=customer,
        )
        escrow_id = res.get_json()["payment"]["id"]
        res = self.client.post(
            "/api/disputes",
            json={"order_id": "ord-body", "escrow_payment_id": escrow_id, "description": "no parcel"},
            headers=customer,
        )
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.get_json()["code"], "ValidationFailed")

    def test_non_string_fields_do_not_crash(self):
        customer = {"Authorization": f"Bearer {create_token('cust-1', 'customer')}"}
        res = self.client.post(
            "/api/payments/escrow",
            json={"order_id": "ord-num", "customer_id": "cust-1", "store_id": "store-1", "amount": 40},
            headers=customer,
        )
        escrow_id = res.get_json()["payment"]["id"]
        res = self.client.post(f"/api/payments/escrow/{escrow_id}/dispute", json={"reason": 42}, headers=customer)
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()["dispute"]["subject"], "42")
        dispute_id = res.get_json()["dispute"]["id"]

        res = self.client.post(
            f"/api/disputes/{dispute_id}/evidence", json=self._evidence(file_url=12345), headers=customer
        )
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.get_json()["code"], "InvalidEvidenceReference")

    def test_listing_and_stats_are_scoped(self):
        with self.app.app_context():
            self._case(order_id="ord-1")
            coordinator.create_dispute(
                self.stranger,
                {
                    "order_id": "ord-2",
                    "conversation_id": "conv-2",
                    "customer_id": "cust-9",
                    "store_id": "store-2",
                    "dispute_type": "payment",
                    "subject": "double charge",
                    "description": "charged twice",
                    "priority": "urgent",
                },
            )
            self.assertEqual(len(coordinator.list_disputes(self.customer)), 1)
            self.assertEqual(len(coordinator.list_disputes(self.admin)), 2)
            self.assertEqual(len(coordinator.list_disputes(self.admin, priority="urgent")), 1)
            stats = coordinator.dispute_stats(self.admin)
            self.assertEqual(stats["total"], 2)
            self.assertEqual(stats["open"], 2)
            self.assertEqual(stats["urgent"], 1)
            self.assertEqual(stats["high_priority"], 1)
            self.assertEqual(coordinator.dispute_stats(self.store)["total"], 1)

    def test_dispute_routes(self):
        customer = {"Authorization": f"Bearer {create_token('cust-1', 'customer')}"}
        admin = {"Authorization": f"Bearer {create_token('admin-1', 'admin')}"}
        res = self.client.post(
            "/api/payments/escrow",
            json={"order_id": "ord-http", "customer_id": "cust-1", "store_id": "store-1", "amount": 80},
            headers=customer,
        )
        self.assertEqual(res.status_code, 201)
        escrow_id = res.get_json()["payment"]["id"]

        res = self.client.post(f"/api/payments/escrow/{escrow_id}/dispute", json={"reason": "broken"}, headers=customer)
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()["payment"]["escrow_status"], "disputed")
        dispute_id = res.get_json()["dispute"]["id"]

        res = self.client.post(
            f"/api/disputes/{dispute_id}/evidence", json=self._evidence(file_size=11 * 1024 * 1024), headers=customer
        )
        self.assertEqual(res.status_code, 413)
        self.assertEqual(res.get_json()["code"], "EvidenceTooLarge")

        res = self.client.post(f"/api/disputes/{dispute_id}/evidence", json=self._evidence(), headers=customer)
        self.assertEqual(res.status_code, 201)

        res = self.client.put(f"/api/disputes/{dispute_id}/status", json={"status": "closed"}, headers=customer)
        self.assertEqual(res.status_code, 403)

        res = self.client.get(f"/api/disputes/{dispute_id}", headers=customer)
        self.assertEqual(res.status_code, 200)
        detail = res.get_json()["dispute"]
        self.assertEqual(detail["escrow_payment"]["escrow_status"], "disputed")
        self.assertEqual(len(detail["evidence"]), 1)
        self.assertEqual([a["action_type"] for a in detail["actions"]], ["created", "evidence_added"])
        self.assertIsNone(detail["decision"])

        res = self.client.get("/api/disputes/stats", headers=admin)
        self.assertEqual(res.get_json()["stats"]["open"], 1)

    def test_action_metadata_is_json(self):
        with self.app.app_context():
            _account, case = self._case()
            coordinator.assign_admin(self.admin, case.id)
            row = DisputeAction.query.filter_by(dispute_id=case.id, action_type="admin_assigned").one()
            meta = json.loads(row.metadata_json)
            self.assertEqual(meta["from_status"], "open")
            self.assertEqual(meta["to_status"], "investigating")


if __name__ == "__main__":
    unittest.main()
