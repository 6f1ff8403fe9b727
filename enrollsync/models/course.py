from __future__ import annotations

from dataclasses import dataclass

# Both spellings exist in catalog data; either means "open for enrollment".
PUBLISHED_STATUSES = frozenset({"published", "active"})


@dataclass(frozen=True, slots=True)
class Course:
    id: int
    title: str = ""
    status: str = "draft"  # draft|published|active|archived

    @property
    def is_published(self) -> bool:
        return self.status.lower() in PUBLISHED_STATUSES
