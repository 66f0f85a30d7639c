from __future__ import annotations

import argparse
import json
import os
import sys


def _bootstrap_app():
    from escrowcourt import create_app

    app = create_app()
    app.app_context().push()
    return app


def main():
    parser = argparse.ArgumentParser(description="Re-fold escrow and partial-payment ledgers and report drift.")
    parser.add_argument("--order-id", default="", help="Audit a single order instead of every account.")
    parser.add_argument("--limit", type=int, default=10000, help="Maximum accounts of each kind to check.")
    args = parser.parse_args()

    _bootstrap_app()
    from escrowcourt.services.settlement_coordinator import audit_order, verify_all_ledgers

    if args.order_id:
        summary = audit_order(args.order_id.strip())
        drift_count = sum(1 for a in summary.get("accounts", []) if not a.get("ok"))
    else:
        summary = verify_all_ledgers(limit=args.limit)
        drift_count = int(summary.get("drift_count") or 0)

    print(json.dumps(summary, indent=2, default=str))
    return 0 if drift_count == 0 else 2


if __name__ == "__main__":
    os.environ.setdefault("FLASK_APP", "main.py")
    sys.exit(main())
