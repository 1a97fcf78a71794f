from __future__ import annotations

import enum
from datetime import date

from sqlalchemy import Date, Enum, Index, Integer, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from clinic_ops.models.base import AuditMixin, Base, SoftDeleteMixin


class FollowupStatus(str, enum.Enum):
    scheduled = "scheduled"
    completed = "completed"
    canceled = "canceled"
    skipped = "skipped"


class FollowupCancelReason(str, enum.Enum):
    canceled_rescheduled = "canceled_rescheduled"
    declined = "declined"
    duplicate = "duplicate"
    transferred = "transferred"
    wrong_number = "wrong_number"
    other = "other"


AUTO_COMPLETION_TAG = "auto_completed_by_consult_finish"

_SCHEDULED_FOLLOWUP = text("status = 'scheduled'")


class Followup(Base, AuditMixin, SoftDeleteMixin):
    __tablename__ = "followups"
    __table_args__ = (
        Index(
            "uq_followups_patient_scheduled",
            "patient_id",
            unique=True,
            postgresql_where=_SCHEDULED_FOLLOWUP,
            sqlite_where=_SCHEDULED_FOLLOWUP,
        ),
        Index("ix_followups_due_date", "due_date"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    patient_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    created_from_consultation_id: Mapped[int] = mapped_column(Integer, nullable=False)
    return_branch: Mapped[str | None] = mapped_column(String(60), nullable=True)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    tolerance_days: Mapped[int] = mapped_column(Integer, nullable=False, default=7)
    valid_until: Mapped[date | None] = mapped_column(Date, nullable=True)
    intended_outcome: Mapped[str] = mapped_column(Text, nullable=False, default="")
    expected_tests: Mapped[str] = mapped_column(Text, nullable=False, default="")
    status: Mapped[FollowupStatus] = mapped_column(
        Enum(FollowupStatus, name="followup_status"),
        nullable=False,
        default=FollowupStatus.scheduled,
    )
    cancel_reason: Mapped[str | None] = mapped_column(String(60), nullable=True)
    closed_by_consultation_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    completion_note: Mapped[str | None] = mapped_column(Text, nullable=True)
