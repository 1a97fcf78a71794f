from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import DateTime, Enum, ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column

from clinic_ops.models.base import AuditMixin, Base
from clinic_ops.models.encounter import BranchCode


class ConsultationStatus(str, enum.Enum):
    draft = "draft"
    done = "done"


class Consultation(Base, AuditMixin):
    __tablename__ = "consultations"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    patient_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    encounter_id: Mapped[int | None] = mapped_column(
        ForeignKey("encounters.id"), nullable=True
    )
    branch_code: Mapped[BranchCode] = mapped_column(
        Enum(BranchCode, name="branch_code"), nullable=False
    )
    doctor_id: Mapped[str | None] = mapped_column(String(120), nullable=True)
    doctor_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    consult_type: Mapped[str | None] = mapped_column(String(40), nullable=True)
    status: Mapped[ConsultationStatus] = mapped_column(
        Enum(ConsultationStatus, name="consultation_status"),
        nullable=False,
        default=ConsultationStatus.draft,
    )
    visit_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
