from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import DateTime, Enum, ForeignKey, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from clinic_ops.models.base import Base


class FollowupAttemptChannel(str, enum.Enum):
    call = "call"
    sms = "sms"
    messenger = "messenger"
    email = "email"
    other = "other"


class FollowupAttemptOutcome(str, enum.Enum):
    reached_confirmed = "reached_confirmed"
    reached_declined = "reached_declined"
    no_answer = "no_answer"
    wrong_number = "wrong_number"
    callback_requested = "callback_requested"
    other = "other"


class FollowupAttempt(Base):
    __tablename__ = "followup_attempts"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    followup_id: Mapped[int] = mapped_column(
        ForeignKey("followups.id"), nullable=False, index=True
    )
    channel: Mapped[FollowupAttemptChannel] = mapped_column(
        Enum(FollowupAttemptChannel, name="followup_attempt_channel"), nullable=False
    )
    outcome: Mapped[FollowupAttemptOutcome] = mapped_column(
        Enum(FollowupAttemptOutcome, name="followup_attempt_outcome"), nullable=False
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempted_by_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    staff_id: Mapped[str | None] = mapped_column(String(120), nullable=True)
    attempted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
