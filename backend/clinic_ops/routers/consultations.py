from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.orm import Session

from clinic_ops.db.session import get_db
from clinic_ops.deps import require_actor
from clinic_ops.schemas.actor import Actor
from clinic_ops.schemas.consultation import (
    ConsultationFinish,
    ConsultationFinishOut,
    ConsultationOut,
    ConsultationStart,
    ConsultationStartOut,
)
from clinic_ops.schemas.followup import AutoClearOut
from clinic_ops.services.consultations import finish_consultation, start_consultation

router = APIRouter(prefix="/consultations", tags=["consultations"])

doctor_only = require_actor("doctor", require_branch=True)


@router.post("/start", response_model=ConsultationStartOut)
def start(
    payload: ConsultationStart,
    request: Request,
    db: Session = Depends(get_db),
    actor: Actor = Depends(doctor_only),
    request_id: str | None = Header(default=None, alias="x-request-id"),
):
    consultation, created = start_consultation(
        db,
        actor=actor,
        patient_id=payload.patient_id,
        consult_type=payload.consult_type,
        request_id=request_id,
        ip_address=request.client.host if request.client else None,
    )
    return ConsultationStartOut(
        consultation=ConsultationOut.model_validate(consultation), created=created
    )


@router.post("/finish", response_model=ConsultationFinishOut)
def finish(
    payload: ConsultationFinish,
    request: Request,
    db: Session = Depends(get_db),
    actor: Actor = Depends(doctor_only),
    request_id: str | None = Header(default=None, alias="x-request-id"),
):
    consultation, changed, clear = finish_consultation(
        db,
        actor=actor,
        consultation_id=payload.consultation_id,
        skip_followup_autoclear=payload.skip_followup_autoclear,
        request_id=request_id,
        ip_address=request.client.host if request.client else None,
    )
    return ConsultationFinishOut(
        consultation=ConsultationOut.model_validate(consultation),
        changed=changed,
        followup_autoclear=(
            AutoClearOut(cleared=clear.cleared, reason=clear.reason, followup_id=clear.followup_id)
            if clear
            else None
        ),
    )
