from __future__ import annotations

from datetime import date
from typing import Annotated

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator

from clinic_ops.models.encounter import BranchCode, ConsultStatus


def _normalize_branch(value):
    if isinstance(value, str):
        return value.strip().upper()
    return value


BranchParam = Annotated[BranchCode, BeforeValidator(_normalize_branch)]


class ConsultToggle(BaseModel):
    encounter_id: int
    branch: BranchParam
    enable: bool


class ConsultToggleOut(BaseModel):
    ok: bool = True
    encounter_id: int
    queue_number: int | None = None
    consult_status: ConsultStatus | None = None
    changed: bool = True


class ConsultReorder(BaseModel):
    branch: BranchParam
    ids: list[int] = Field(min_length=1)

    @field_validator("ids")
    @classmethod
    def _distinct_ids(cls, value: list[int]) -> list[int]:
        if len(set(value)) != len(value):
            raise ValueError("ids must not contain duplicates")
        return value


class ConsultReorderOut(BaseModel):
    ok: bool = True
    updated: int


class EncounterQueueOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    patient_id: str
    branch_code: BranchCode
    visit_date_local: date
    for_consult: bool
    consult_status: ConsultStatus | None = None
    queue_number: int | None = None
    status: str
