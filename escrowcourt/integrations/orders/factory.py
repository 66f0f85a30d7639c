from __future__ import annotations

from escrowcourt.integrations.orders.base import OrderLookup
from escrowcourt.integrations.orders.http_provider import HttpOrderLookup


def build_order_lookup(config) -> OrderLookup | None:
    """None when no order service is configured; payments then skip the lookup."""
    url = (config.get("ORDER_SERVICE_URL") or "").strip()
    if not url:
        return None
    return HttpOrderLookup(base_url=url)
