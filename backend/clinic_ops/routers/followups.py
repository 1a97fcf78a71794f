from datetime import date

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from sqlalchemy.orm import Session

from clinic_ops.db.session import get_db
from clinic_ops.deps import require_actor
from clinic_ops.models.followup import FollowupStatus
from clinic_ops.schemas.actor import Actor
from clinic_ops.schemas.followup import (
    FollowupAttach,
    FollowupAttemptCreate,
    FollowupAttemptOut,
    FollowupCancel,
    FollowupDelete,
    FollowupListOut,
    FollowupOut,
    FollowupReschedule,
    FollowupResult,
    FollowupSkip,
    FollowupUpdate,
    FollowupUpsert,
    PatientFollowupOut,
)
from clinic_ops.services import followups as followup_service
from clinic_ops.services.audit import log_event
from clinic_ops.services.followup_attempts import list_followup_attempts, log_followup_attempt

router = APIRouter(prefix="/followups", tags=["followups"])
patient_router = APIRouter(prefix="/patient", tags=["followups"])

clinician = require_actor("doctor", "staff", require_branch=True)
staff_only = require_actor("staff", require_branch=True)


def _client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


def _result(change: followup_service.FollowupChange) -> FollowupResult:
    return FollowupResult(
        followup=FollowupOut.model_validate(change.followup) if change.followup else None,
        changed=change.changed,
        reason=change.reason,
    )


@router.post("/upsert", response_model=FollowupResult)
def upsert_followup(
    payload: FollowupUpsert,
    request: Request,
    db: Session = Depends(get_db),
    actor: Actor = Depends(clinician),
    request_id: str | None = Header(default=None, alias="x-request-id"),
):
    followup = followup_service.upsert_followup(
        db,
        actor=actor,
        patient_id=payload.patient_id,
        created_from_consultation_id=payload.created_from_consultation_id,
        due_date=payload.due_date,
        return_branch=payload.return_branch,
        intended_outcome=payload.intended_outcome,
        expected_tests=payload.expected_tests,
        tolerance_days=payload.tolerance_days,
        request_id=request_id,
        ip_address=_client_ip(request),
    )
    return FollowupResult(followup=FollowupOut.model_validate(followup), changed=True)


@router.post("/update", response_model=FollowupResult)
def update_followup(
    payload: FollowupUpdate,
    request: Request,
    db: Session = Depends(get_db),
    actor: Actor = Depends(clinician),
    request_id: str | None = Header(default=None, alias="x-request-id"),
):
    change = followup_service.update_followup(
        db,
        actor=actor,
        followup_id=payload.followup_id,
        patient_id=payload.patient_id,
        due_date=payload.due_date,
        return_branch=payload.return_branch,
        intended_outcome=payload.intended_outcome,
        expected_tests=payload.expected_tests,
        tolerance_days=payload.tolerance_days,
        request_id=request_id,
        ip_address=_client_ip(request),
    )
    return _result(change)


@router.post("/reschedule", response_model=FollowupResult)
def reschedule_followup(
    payload: FollowupReschedule,
    request: Request,
    db: Session = Depends(get_db),
    actor: Actor = Depends(staff_only),
    request_id: str | None = Header(default=None, alias="x-request-id"),
):
    change = followup_service.reschedule_followup(
        db,
        actor=actor,
        followup_id=payload.followup_id,
        patient_id=payload.patient_id,
        created_from_consultation_id=payload.created_from_consultation_id,
        new_due_date=payload.new_due_date,
        return_branch=payload.return_branch,
        intended_outcome=payload.intended_outcome,
        expected_tests=payload.expected_tests,
        tolerance_days=payload.tolerance_days,
        request_id=request_id,
        ip_address=_client_ip(request),
    )
    return _result(change)


@router.post("/cancel", response_model=FollowupResult)
def cancel_followup(
    payload: FollowupCancel,
    request: Request,
    db: Session = Depends(get_db),
    actor: Actor = Depends(clinician),
    request_id: str | None = Header(default=None, alias="x-request-id"),
):
    change = followup_service.cancel_followup(
        db,
        actor=actor,
        followup_id=payload.followup_id,
        reason=payload.reason,
        request_id=request_id,
        ip_address=_client_ip(request),
    )
    return _result(change)


@router.post("/attach", response_model=FollowupResult)
def attach_followup(
    payload: FollowupAttach,
    request: Request,
    db: Session = Depends(get_db),
    actor: Actor = Depends(clinician),
    request_id: str | None = Header(default=None, alias="x-request-id"),
):
    change = followup_service.attach_followup(
        db,
        actor=actor,
        followup_id=payload.followup_id,
        closed_by_consultation_id=payload.closed_by_consultation_id,
        completion_note=payload.completion_note,
        request_id=request_id,
        ip_address=_client_ip(request),
    )
    return _result(change)


@router.post("/skip", response_model=FollowupResult)
def skip_followup(
    payload: FollowupSkip,
    request: Request,
    db: Session = Depends(get_db),
    actor: Actor = Depends(staff_only),
    request_id: str | None = Header(default=None, alias="x-request-id"),
):
    change = followup_service.skip_followup(
        db,
        actor=actor,
        followup_id=payload.followup_id,
        note=payload.note,
        request_id=request_id,
        ip_address=_client_ip(request),
    )
    return _result(change)


@router.post("/delete", response_model=FollowupResult)
def delete_followup(
    payload: FollowupDelete,
    request: Request,
    db: Session = Depends(get_db),
    actor: Actor = Depends(staff_only),
    request_id: str | None = Header(default=None, alias="x-request-id"),
):
    change = followup_service.soft_delete_followup(
        db,
        actor=actor,
        followup_id=payload.followup_id,
        request_id=request_id,
        ip_address=_client_ip(request),
    )
    return _result(change)


@router.get("", response_model=FollowupListOut)
def list_followups(
    start: date,
    end: date,
    branch: str | None = Query(default=None),
    patient_id: str | None = Query(default=None),
    status_filter: str = Query(default="all", alias="status"),
    db: Session = Depends(get_db),
    actor: Actor = Depends(clinician),
):
    if end < start:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="end must not be before start")
    requested_status = None
    if status_filter and status_filter != "all":
        requested_status = FollowupStatus._value2member_map_.get(status_filter)
        if requested_status is None:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid status")
    requested_branch = (branch or "").strip().upper() or None
    resolved_branch = actor.branch_scope or requested_branch
    rows = followup_service.list_followups(
        db,
        start=start,
        end=end,
        branch=resolved_branch,
        patient_id=patient_id,
        status=requested_status,
    )
    return FollowupListOut(followups=[FollowupOut.model_validate(row) for row in rows])


@router.get("/patient/{patient_id}", response_model=FollowupListOut)
def patient_followups(
    patient_id: str,
    db: Session = Depends(get_db),
    _actor: Actor = Depends(clinician),
):
    rows = followup_service.patient_followup_history(db, patient_id.strip().upper())
    return FollowupListOut(followups=[FollowupOut.model_validate(row) for row in rows])


@router.post("/attempts", response_model=FollowupAttemptOut, status_code=status.HTTP_201_CREATED)
def log_attempt(
    payload: FollowupAttemptCreate,
    request: Request,
    db: Session = Depends(get_db),
    actor: Actor = Depends(staff_only),
    request_id: str | None = Header(default=None, alias="x-request-id"),
):
    entry = log_followup_attempt(
        db,
        followup_id=payload.followup_id,
        channel=payload.channel,
        outcome=payload.outcome,
        notes=payload.notes,
        attempted_by_name=payload.attempted_by_name or actor.name,
        staff_id=actor.id,
    )
    db.flush()
    log_event(
        db,
        actor=actor,
        action="followup_attempt.log",
        entity_type="followup",
        entity_id=payload.followup_id,
        after_obj=entry,
        request_id=request_id,
        ip_address=_client_ip(request),
    )
    db.commit()
    db.refresh(entry)
    return entry


@router.get("/attempts", response_model=list[FollowupAttemptOut])
def list_attempts(
    followup_id: int,
    db: Session = Depends(get_db),
    _actor: Actor = Depends(staff_only),
):
    return list_followup_attempts(db, followup_id)


@patient_router.get("/followup", response_model=PatientFollowupOut)
def my_active_followup(
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_actor("patient")),
):
    followup = followup_service.get_active_followup(db, actor.patient_id)
    if followup is None:
        return PatientFollowupOut()
    consultation = followup_service.scheduling_consultation(db, followup)
    return PatientFollowupOut(
        followup=FollowupOut.model_validate(followup),
        doctor_id=consultation.doctor_id if consultation else None,
        doctor_name=consultation.doctor_name if consultation else None,
    )
