from __future__ import annotations

import os
import unittest
from unittest.mock import patch

from flask import Flask

from escrowcourt.utils.observability import _scrub_event, init_sentry, raise_alarm


class SentryOptionalInitTestCase(unittest.TestCase):
    def test_sentry_init_is_noop_without_dsn(self):
        app = Flask(__name__)
        with patch.dict(os.environ, {"SENTRY_DSN": ""}, clear=False):
            init_sentry(app)

    def test_scrub_redacts_credentials(self):
        event = {"request": {"headers": {"Authorization": "Bearer abc", "Accept": "application/json"}}}
        scrubbed = _scrub_event(event, None)
        self.assertEqual(scrubbed["request"]["headers"]["Authorization"], "[REDACTED]")
        self.assertEqual(scrubbed["request"]["headers"]["Accept"], "application/json")

    def test_alarm_logs_critical_without_sentry(self):
        app = Flask(__name__)
        with app.app_context():
            with self.assertLogs(app.logger, level="CRITICAL") as logs:
                raise_alarm("ledger_integrity_violation", escrow_id=7)
        self.assertIn("ledger_integrity_violation", logs.output[0])
        self.assertIn('"escrow_id": 7', logs.output[0])


class ImportsBootTestCase(unittest.TestCase):
    def test_import_main_app(self):
        import importlib

        module = importlib.import_module("main")
        self.assertIsNotNone(getattr(module, "app", None))

    def test_import_task_module(self):
        import importlib

        module = importlib.import_module("escrowcourt.tasks.settlement_tasks")
        self.assertTrue(hasattr(module, "deliver_domain_event"))


if __name__ == "__main__":
    unittest.main()
