from __future__ import annotations

from dataclasses import dataclass


class ActorRole:
    CUSTOMER = "customer"
    STORE = "store"
    ADMIN = "admin"
    SYSTEM = "system"

    PARTIES = {CUSTOMER, STORE, ADMIN}


@dataclass(frozen=True)
class Actor:
    id: str
    role: str

    @classmethod
    def system(cls) -> "Actor":
        return cls(id="system", role=ActorRole.SYSTEM)

    @property
    def is_admin(self) -> bool:
        return self.role == ActorRole.ADMIN

    def is_party_to(self, record) -> bool:
        """True when this actor is the record's customer or store."""
        if self.role == ActorRole.CUSTOMER:
            return str(getattr(record, "customer_id", "")) == self.id
        if self.role == ActorRole.STORE:
            return str(getattr(record, "store_id", "")) == self.id
        return False
