from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class Principal:
    """Verified identity of whoever issued an operation.

    Supplied by the identity provider in front of this engine; the engine
    trusts it and never issues one.  Recorded as the `actor` of domain
    events and as `reviewed_by` on access requests.
    """

    user_id: int
    role: str  # student|admin|system

    def is_admin(self) -> bool:
        return self.role == "admin"

    @staticmethod
    def system() -> Principal:
        """Identity used by maintenance jobs (reconciliation, GC)."""
        return Principal(user_id=0, role="system")
