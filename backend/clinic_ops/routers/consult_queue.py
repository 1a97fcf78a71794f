from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from sqlalchemy.orm import Session

from clinic_ops.db.session import get_db
from clinic_ops.deps import ensure_branch_access, require_actor
from clinic_ops.models.encounter import BranchCode
from clinic_ops.schemas.actor import Actor
from clinic_ops.schemas.encounter import (
    ConsultReorder,
    ConsultReorderOut,
    ConsultToggle,
    ConsultToggleOut,
    EncounterQueueOut,
)
from clinic_ops.services.consult_queue import (
    disable_consult,
    enable_consult,
    list_consult_queue,
    reorder_consult_queue,
)
from clinic_ops.services.local_dates import today_local

router = APIRouter(prefix="/staff/encounters/consult", tags=["consult-queue"])

staff_only = require_actor("staff", require_branch=True)


@router.post("/toggle", response_model=ConsultToggleOut)
def toggle_consult(
    payload: ConsultToggle,
    request: Request,
    db: Session = Depends(get_db),
    actor: Actor = Depends(staff_only),
    request_id: str | None = Header(default=None, alias="x-request-id"),
):
    ensure_branch_access(actor, payload.branch.value)
    ip_address = request.client.host if request.client else None
    if payload.enable:
        change = enable_consult(
            db,
            actor=actor,
            encounter_id=payload.encounter_id,
            branch=payload.branch,
            request_id=request_id,
            ip_address=ip_address,
        )
    else:
        change = disable_consult(
            db,
            actor=actor,
            encounter_id=payload.encounter_id,
            request_id=request_id,
            ip_address=ip_address,
        )
    return ConsultToggleOut(
        encounter_id=change.encounter.id,
        queue_number=change.encounter.queue_number,
        consult_status=change.encounter.consult_status,
        changed=change.changed,
    )


@router.post("/reorder", response_model=ConsultReorderOut)
def reorder_consult(
    payload: ConsultReorder,
    request: Request,
    db: Session = Depends(get_db),
    actor: Actor = Depends(staff_only),
    request_id: str | None = Header(default=None, alias="x-request-id"),
):
    ensure_branch_access(actor, payload.branch.value)
    updated = reorder_consult_queue(
        db,
        actor=actor,
        branch=payload.branch,
        ids=payload.ids,
        request_id=request_id,
        ip_address=request.client.host if request.client else None,
    )
    return ConsultReorderOut(updated=updated)


@router.get("/queue", response_model=list[EncounterQueueOut])
def consult_queue(
    branch: str = Query(),
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_actor("staff", "doctor", require_branch=True)),
):
    try:
        branch_code = BranchCode(branch.strip().upper())
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid branch")
    ensure_branch_access(actor, branch_code.value)
    return list_consult_queue(db, branch=branch_code, day=today_local(branch_code.value))
