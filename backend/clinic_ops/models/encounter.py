from __future__ import annotations

import enum
from datetime import date

from sqlalchemy import Boolean, Date, Enum, Index, Integer, String, text
from sqlalchemy.orm import Mapped, mapped_column

from clinic_ops.models.base import AuditMixin, Base


class BranchCode(str, enum.Enum):
    SI = "SI"
    SL = "SL"


class ConsultStatus(str, enum.Enum):
    queued_for_consult = "queued_for_consult"
    in_consult = "in_consult"


ACTIVE_CONSULT_STATUSES = (ConsultStatus.queued_for_consult, ConsultStatus.in_consult)

_ACTIVE_QUEUE = text("consult_status IN ('queued_for_consult', 'in_consult')")


class Encounter(Base, AuditMixin):
    __tablename__ = "encounters"
    __table_args__ = (
        Index(
            "uq_enc_consult_queue_active",
            "branch_code",
            "visit_date_local",
            "queue_number",
            unique=True,
            postgresql_where=_ACTIVE_QUEUE,
            sqlite_where=_ACTIVE_QUEUE,
        ),
        Index("ix_encounters_branch_day", "branch_code", "visit_date_local"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    patient_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    branch_code: Mapped[BranchCode] = mapped_column(
        Enum(BranchCode, name="branch_code"), nullable=False
    )
    visit_date_local: Mapped[date] = mapped_column(Date, nullable=False)
    # Lab workflow status; the consult queue never writes it.
    status: Mapped[str] = mapped_column(String(40), nullable=False, default="intake")
    for_consult: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    consult_status: Mapped[ConsultStatus | None] = mapped_column(
        Enum(ConsultStatus, name="consult_status"), nullable=True
    )
    queue_number: Mapped[int | None] = mapped_column(Integer, nullable=True)

    @property
    def in_consult_queue(self) -> bool:
        return self.consult_status in ACTIVE_CONSULT_STATUSES
