from __future__ import annotations

from datetime import date, datetime
from typing import Annotated

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, field_validator

from clinic_ops.models.followup import FollowupStatus
from clinic_ops.models.followup_attempt import FollowupAttemptChannel, FollowupAttemptOutcome


def _normalize_patient_id(value: str) -> str:
    cleaned = (value or "").strip().upper()
    if not cleaned:
        raise ValueError("must not be empty")
    return cleaned


PatientId = Annotated[str, AfterValidator(_normalize_patient_id)]


class FollowupUpsert(BaseModel):
    patient_id: PatientId
    created_from_consultation_id: int
    return_branch: str | None = None
    due_date: date
    intended_outcome: str = ""
    expected_tests: str = ""
    tolerance_days: int | None = Field(default=None, ge=0)


class FollowupUpdate(BaseModel):
    followup_id: int
    patient_id: PatientId
    due_date: date
    return_branch: str | None = None
    intended_outcome: str = ""
    expected_tests: str = ""
    tolerance_days: int | None = Field(default=None, ge=0)


class FollowupReschedule(BaseModel):
    followup_id: int
    patient_id: PatientId
    created_from_consultation_id: int
    new_due_date: date
    return_branch: str | None = None
    intended_outcome: str | None = None
    expected_tests: str | None = None
    tolerance_days: int | None = Field(default=None, ge=0)


class FollowupCancel(BaseModel):
    followup_id: int
    reason: str = "other"

    @field_validator("reason")
    @classmethod
    def _default_reason(cls, value: str) -> str:
        return (value or "").strip() or "other"


class FollowupAttach(BaseModel):
    followup_id: int
    closed_by_consultation_id: int
    completion_note: str | None = None


class FollowupSkip(BaseModel):
    followup_id: int
    note: str | None = None


class FollowupDelete(BaseModel):
    followup_id: int


class FollowupOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    patient_id: PatientId
    created_from_consultation_id: int
    closed_by_consultation_id: int | None = None
    return_branch: str | None = None
    due_date: date
    tolerance_days: int
    valid_until: date | None = None
    intended_outcome: str
    expected_tests: str
    status: FollowupStatus
    cancel_reason: str | None = None
    completion_note: str | None = None
    created_by: str | None = None
    updated_by: str | None = None
    created_at: datetime
    updated_at: datetime


class FollowupResult(BaseModel):
    followup: FollowupOut | None = None
    changed: bool = True
    reason: str | None = None


class PatientFollowupOut(BaseModel):
    followup: FollowupOut | None = None
    doctor_id: str | None = None
    doctor_name: str | None = None


class FollowupListOut(BaseModel):
    followups: list[FollowupOut]


class FollowupAttemptCreate(BaseModel):
    followup_id: int
    channel: FollowupAttemptChannel
    outcome: FollowupAttemptOutcome
    notes: str | None = None
    attempted_by_name: str | None = None


class FollowupAttemptOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    followup_id: int
    channel: FollowupAttemptChannel
    outcome: FollowupAttemptOutcome
    notes: str | None = None
    attempted_by_name: str | None = None
    staff_id: str | None = None
    attempted_at: datetime


class AutoClearOut(BaseModel):
    cleared: bool
    reason: str
    followup_id: int | None = None
