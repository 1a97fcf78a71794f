from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict

from clinic_ops.models.consultation import ConsultationStatus
from clinic_ops.models.encounter import BranchCode
from clinic_ops.schemas.followup import AutoClearOut, PatientId


class ConsultationStart(BaseModel):
    patient_id: PatientId
    consult_type: str | None = None


class ConsultationFinish(BaseModel):
    consultation_id: int
    skip_followup_autoclear: bool = False


class ConsultationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    patient_id: str
    encounter_id: int | None = None
    branch_code: BranchCode
    doctor_id: str | None = None
    doctor_name: str | None = None
    consult_type: str | None = None
    status: ConsultationStatus
    visit_at: datetime
    finished_at: datetime | None = None


class ConsultationStartOut(BaseModel):
    consultation: ConsultationOut
    created: bool


class ConsultationFinishOut(BaseModel):
    consultation: ConsultationOut
    changed: bool
    followup_autoclear: AutoClearOut | None = None
