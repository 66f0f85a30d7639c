from __future__ import annotations


class OrderLookup:
    name = "unknown"

    def exists(self, order_id: str) -> bool:
        """True if the order exists. Raises CollaboratorUnavailable when the answer is unknown."""
        raise NotImplementedError
