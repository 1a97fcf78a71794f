from __future__ import annotations

import enum

from pydantic import BaseModel


class ActorKind(str, enum.Enum):
    patient = "patient"
    staff = "staff"
    doctor = "doctor"


class Actor(BaseModel):
    kind: ActorKind
    id: str
    branch: str | None = None
    patient_id: str | None = None
    is_admin: bool = False
    name: str | None = None

    @property
    def branch_scope(self) -> str | None:
        """Single branch this actor is pinned to, or None for cross-branch actors."""
        if self.branch in {"SI", "SL"}:
            return self.branch
        return None
