from __future__ import annotations

import os
import unittest
from unittest.mock import patch

from escrowcourt import create_app
from escrowcourt.errors import (
    ConcurrentModification,
    DisputeInProgress,
    DisputeNotInvestigating,
    EscrowFrozen,
    EscrowNotHeld,
    LedgerIntegrityError,
)
from escrowcourt.extensions import db
from escrowcourt.models import DisputeCase, EscrowAccount, LedgerEntry
from escrowcourt.services import dispute_service, escrow_service, ledger_service
from escrowcourt.services import settlement_coordinator as coordinator
from escrowcourt.services.actors import Actor
from escrowcourt.services.escrow_service import EscrowStatus
from escrowcourt.utils.jwt_utils import create_token


class ConcurrencyTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        os.environ["SQLALCHEMY_DATABASE_URI"] = "sqlite:///:memory:"
        os.environ["ESCROWCOURT_ENV"] = "test"
        cls.app = create_app()
        cls.app.config.update(TESTING=True)
        cls.customer = Actor(id="cust-1", role="customer")
        cls.admin = Actor(id="admin-1", role="admin")

    def setUp(self):
        with self.app.app_context():
            db.session.remove()
            db.drop_all()
            db.create_all()

    def _open(self, order_id="ord-1"):
        return coordinator.open_escrow(
            self.customer,
            {"order_id": order_id, "customer_id": "cust-1", "store_id": "store-1", "amount": 10000},
        )

    def test_release_then_dispute_leaves_released(self):
        with self.app.app_context():
            account = self._open()
            coordinator.release_escrow(self.customer, account.id)
            with self.assertRaises(EscrowNotHeld):
                coordinator.open_dispute(self.customer, account.id, {"reason": "too late"})
            account = db.session.get(EscrowAccount, account.id)
            self.assertEqual(account.status, EscrowStatus.RELEASED)
            self.assertEqual(DisputeCase.query.count(), 0)
            self.assertEqual(
                [e.action for e in ledger_service.entries_for_account("escrow", account.id)], ["payment", "release"]
            )

    def test_dispute_then_release_leaves_disputed(self):
        with self.app.app_context():
            account = self._open()
            coordinator.open_dispute(self.customer, account.id, {"reason": "missing"})
            with self.assertRaises(DisputeInProgress):
                coordinator.release_escrow(self.customer, account.id)
            account = db.session.get(EscrowAccount, account.id)
            self.assertEqual(account.status, EscrowStatus.DISPUTED)
            self.assertEqual(
                [e.action for e in ledger_service.entries_for_account("escrow", account.id)], ["payment", "dispute"]
            )

    def test_stale_version_loses_compare_and_set(self):
        with self.app.app_context():
            account = self._open()
            stale = db.session.get(EscrowAccount, account.id)
            EscrowAccount.query.filter_by(id=stale.id).update(
                {"version": int(stale.version) + 1}, synchronize_session=False
            )
            with self.assertRaises(ConcurrentModification):
                escrow_service.swap_status(stale, expected=EscrowStatus.HELD, target=EscrowStatus.RELEASED)
            db.session.rollback()
            self.assertEqual(db.session.get(EscrowAccount, account.id).status, EscrowStatus.HELD)

    def test_racing_release_sees_concurrent_change(self):
        with self.app.app_context():
            account = self._open()
            real_swap = escrow_service.swap_status

            def _other_writer_first(target_account, **kwargs):
                # Another request flips the row between our read and our write.
                EscrowAccount.query.filter_by(id=target_account.id).update(
                    {"version": int(target_account.version) + 1}, synchronize_session=False
                )
                return real_swap(target_account, **kwargs)

            with patch.object(escrow_service, "swap_status", side_effect=_other_writer_first):
                with self.assertRaises(ConcurrentModification):
                    coordinator.release_escrow(self.customer, account.id)
            account = db.session.get(EscrowAccount, account.id)
            self.assertEqual(account.status, EscrowStatus.HELD)
            self.assertEqual(LedgerEntry.query.filter_by(order_id="ord-1").count(), 1)

    def test_ruling_committed_during_assignment_is_kept(self):
        with self.app.app_context():
            account = self._open()
            _account, case = coordinator.open_dispute(self.customer, account.id, {"reason": "missing"})
            real_get_case = dispute_service.get_case
            ruled = []

            def _ruling_lands_first(dispute_id):
                found = real_get_case(dispute_id)
                if not ruled:
                    ruled.append(True)
                    coordinator.decide(
                        self.admin, dispute_id, {"decision_type": "customer_wins", "decision_reason": "lost"}
                    )
                return found

            with patch.object(dispute_service, "get_case", side_effect=_ruling_lands_first):
                with self.assertRaises(DisputeNotInvestigating):
                    coordinator.assign_admin(self.admin, case.id, "admin-2")
            case = db.session.get(DisputeCase, case.id)
            self.assertEqual(case.status, "resolved")
            self.assertIsNone(case.assigned_admin_id)
            self.assertTrue(case.decision.is_final)
            self.assertEqual(db.session.get(EscrowAccount, account.id).status, EscrowStatus.REFUNDED)

    def test_stale_dispute_version_loses_compare_and_set(self):
        with self.app.app_context():
            account = self._open()
            _account, case = coordinator.open_dispute(self.customer, account.id, {"reason": "missing"})
            real_swap = dispute_service.swap_case_status

            def _other_writer_first(target_case, **kwargs):
                DisputeCase.query.filter_by(id=target_case.id).update(
                    {"status": "resolved", "version": int(target_case.version) + 1}, synchronize_session=False
                )
                return real_swap(target_case, **kwargs)

            with patch.object(dispute_service, "swap_case_status", side_effect=_other_writer_first):
                with self.assertRaises(ConcurrentModification):
                    coordinator.assign_admin(self.admin, case.id, "admin-2")
            case = db.session.get(DisputeCase, case.id)
            self.assertEqual(case.status, "open")
            self.assertIsNone(case.assigned_admin_id)
            self.assertEqual([a.action_type for a in case.actions], ["created"])

    def test_only_one_live_dispute_per_escrow(self):
        with self.app.app_context():
            account = self._open()
            coordinator.open_dispute(self.customer, account.id, {"reason": "first"})
            with self.assertRaises(ConcurrentModification):
                with coordinator.unit_of_work():
                    dispute_service.open_case(
                        order_id="ord-1",
                        customer_id="cust-1",
                        store_id="store-1",
                        actor=self.customer,
                        dispute_type="other",
                        subject="second",
                        description="second",
                        escrow_id=int(account.id),
                    )
            self.assertEqual(DisputeCase.query.count(), 1)


class LedgerIntegrityTestCase(unittest.TestCase):
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

    def _tampered(self):
        account = coordinator.open_escrow(
            self.customer,
            {"order_id": "ord-1", "customer_id": "cust-1", "store_id": "store-1", "amount": 700},
        )
        EscrowAccount.query.filter_by(id=account.id).update(
            {"status": EscrowStatus.DISPUTED}, synchronize_session=False
        )
        db.session.commit()
        return int(account.id)

    def test_fold_rejects_illegal_transition(self):
        with self.app.app_context():
            account = coordinator.open_escrow(
                self.customer,
                {"order_id": "ord-1", "customer_id": "cust-1", "store_id": "store-1", "amount": 700},
            )
            coordinator.release_escrow(self.customer, account.id)
            entries = ledger_service.entries_for_account("escrow", account.id)
            entries[-1].resulting_status = EscrowStatus.REFUNDED
            with self.assertRaises(LedgerIntegrityError):
                ledger_service.fold_status(entries, allowed=EscrowStatus.ALLOWED, initial=EscrowStatus.HELD)
            db.session.rollback()

    def test_drift_freezes_escrow_and_blocks_mutations(self):
        with self.app.app_context():
            escrow_id = self._tampered()
            with patch("escrowcourt.services.settlement_coordinator.raise_alarm") as alarm:
                with self.assertRaises(LedgerIntegrityError):
                    coordinator.release_escrow(self.customer, escrow_id)
            alarm.assert_called_once()
            self.assertEqual(alarm.call_args.kwargs["escrow_id"], escrow_id)

            account = db.session.get(EscrowAccount, escrow_id)
            self.assertTrue(account.frozen)
            with self.assertRaises(EscrowFrozen):
                coordinator.open_dispute(self.customer, escrow_id, {"reason": "x"})
            self.assertEqual(LedgerEntry.query.filter_by(order_id="ord-1").count(), 1)

    def test_audit_reports_drift(self):
        with self.app.app_context():
            self._tampered()
            with patch("escrowcourt.services.settlement_coordinator.raise_alarm"):
                report = coordinator.audit_order("ord-1")
                summary = coordinator.verify_all_ledgers()
            self.assertFalse(report["ok"])
            self.assertEqual(len(report["entries"]), 1)
            self.assertEqual(report["accounts"][0]["account_type"], "escrow")
            self.assertEqual(summary["drift_count"], 1)
            self.assertTrue(EscrowAccount.query.first().frozen)

    def test_audit_of_clean_order(self):
        with self.app.app_context():
            account = coordinator.open_escrow(
                self.customer,
                {"order_id": "ord-1", "customer_id": "cust-1", "store_id": "store-1", "amount": 700},
            )
            coordinator.release_escrow(self.customer, account.id)
            report = coordinator.audit_order("ord-1")
            self.assertTrue(report["ok"])
            self.assertEqual(report["accounts"][0]["ledger_status"], EscrowStatus.RELEASED)
            self.assertEqual(report["accounts"][0]["released"], 700.0)

    def test_frozen_escrow_answers_423(self):
        with self.app.app_context():
            escrow_id = self._tampered()
            EscrowAccount.query.filter_by(id=escrow_id).update({"frozen": True}, synchronize_session=False)
            db.session.commit()
        headers = {"Authorization": f"Bearer {create_token('cust-1', 'customer')}"}
        res = self.client.put(f"/api/payments/escrow/{escrow_id}/release", headers=headers)
        self.assertEqual(res.status_code, 423)
        self.assertEqual(res.get_json()["code"], "EscrowFrozen")

        admin = {"Authorization": f"Bearer {create_token('admin-1', 'admin')}"}
        with patch("escrowcourt.services.settlement_coordinator.raise_alarm"):
            res = self.client.get("/api/admin/ledger/ord-1", headers=admin)
        self.assertEqual(res.status_code, 200)
        self.assertFalse(res.get_json()["ok"])
        res = self.client.get("/api/admin/ledger/ord-1", headers=headers)
        self.assertEqual(res.status_code, 403)


if __name__ == "__main__":
    unittest.main()
