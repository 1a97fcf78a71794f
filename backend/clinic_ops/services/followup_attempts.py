from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from clinic_ops.models.followup import Followup
from clinic_ops.models.followup_attempt import (
    FollowupAttempt,
    FollowupAttemptChannel,
    FollowupAttemptOutcome,
)
from clinic_ops.services.errors import NotFoundError


def log_followup_attempt(
    db: Session,
    *,
    followup_id: int,
    channel: FollowupAttemptChannel,
    outcome: FollowupAttemptOutcome,
    notes: str | None,
    attempted_by_name: str | None,
    staff_id: str | None,
    attempted_at: datetime | None = None,
) -> FollowupAttempt:
    followup = db.get(Followup, followup_id)
    if followup is None or followup.deleted_at is not None:
        raise NotFoundError("Followup not found")

    entry = FollowupAttempt(
        followup_id=followup_id,
        channel=channel,
        outcome=outcome,
        notes=notes,
        attempted_by_name=(attempted_by_name or "").strip() or None,
        staff_id=staff_id,
        attempted_at=attempted_at or datetime.now(timezone.utc),
    )
    db.add(entry)
    return entry


def list_followup_attempts(db: Session, followup_id: int) -> list[FollowupAttempt]:
    stmt = (
        select(FollowupAttempt)
        .where(FollowupAttempt.followup_id == followup_id)
        .order_by(FollowupAttempt.attempted_at.desc(), FollowupAttempt.id.desc())
    )
    return list(db.scalars(stmt))
