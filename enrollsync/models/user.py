from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class User:
    """Read model of a platform account, as far as enrollment cares."""

    id: int
    role: str = "student"  # student|admin
    is_active: bool = True
    name: str = ""

    @property
    def is_student(self) -> bool:
        return self.role == "student"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"
