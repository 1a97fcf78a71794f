from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from clinic_ops.models.consultation import Consultation, ConsultationStatus
from clinic_ops.models.encounter import BranchCode, ConsultStatus, Encounter
from clinic_ops.schemas.actor import Actor
from clinic_ops.services.audit import log_event, snapshot_model
from clinic_ops.services.errors import NotFoundError, ValidationFailed
from clinic_ops.services.followups import AutoClearResult, auto_clear_active_followup
from clinic_ops.services.local_dates import branch_timezone, local_day_bounds, to_local_date

logger = logging.getLogger("clinic_ops.consultations")


def start_consultation(
    db: Session,
    *,
    actor: Actor,
    patient_id: str,
    consult_type: str | None = None,
    now: datetime | None = None,
    request_id: str | None = None,
    ip_address: str | None = None,
) -> tuple[Consultation, bool]:
    """Return today's consultation for the patient, creating it when missing.

    A matching encounter that is waiting in the consult queue moves to
    ``in_consult``.
    """
    branch_code = actor.branch_scope
    if branch_code is None:
        raise ValidationFailed("Doctor branch is required to start a consultation")
    branch = BranchCode(branch_code)
    tz = branch_timezone(branch.value)
    current = now or datetime.now(timezone.utc)
    today = to_local_date(current, tz)
    day_start, day_end = local_day_bounds(today, tz)

    encounter = db.scalars(
        select(Encounter)
        .where(
            Encounter.patient_id == patient_id,
            Encounter.branch_code == branch,
            Encounter.visit_date_local == today,
        )
        .order_by(Encounter.created_at.asc(), Encounter.id.asc())
        .limit(1)
    ).first()

    consultation = db.scalars(
        select(Consultation)
        .where(
            Consultation.patient_id == patient_id,
            Consultation.visit_at >= day_start,
            Consultation.visit_at < day_end,
        )
        .order_by(Consultation.visit_at.desc(), Consultation.id.desc())
        .limit(1)
    ).first()

    created = consultation is None
    if created:
        consultation = Consultation(
            patient_id=patient_id,
            encounter_id=encounter.id if encounter else None,
            branch_code=branch,
            doctor_id=actor.id,
            doctor_name=actor.name,
            consult_type=(consult_type or "").strip().lower() or None,
            status=ConsultationStatus.draft,
            visit_at=current.astimezone(timezone.utc),
            created_by=actor.id,
            updated_by=actor.id,
        )
        db.add(consultation)
    else:
        consultation.doctor_id = actor.id
        consultation.doctor_name = actor.name
        consultation.branch_code = branch
        if consultation.encounter_id is None and encounter is not None:
            consultation.encounter_id = encounter.id
        if consult_type:
            consultation.consult_type = consult_type.strip().lower()
        consultation.updated_by = actor.id
    db.flush()

    if encounter is not None:
        db.execute(
            update(Encounter)
            .where(
                Encounter.id == encounter.id,
                Encounter.consult_status == ConsultStatus.queued_for_consult,
            )
            .values(consult_status=ConsultStatus.in_consult, updated_by=actor.id)
        )

    log_event(
        db,
        actor=actor,
        action="consultation.start",
        entity_type="consultation",
        entity_id=consultation.id,
        after_obj=consultation,
        request_id=request_id,
        ip_address=ip_address,
    )
    db.commit()
    db.refresh(consultation)
    logger.info(
        "consultation %s %s for patient %s at %s",
        consultation.id,
        "created" if created else "reused",
        patient_id,
        branch.value,
    )
    return consultation, created


def finish_consultation(
    db: Session,
    *,
    actor: Actor,
    consultation_id: int,
    skip_followup_autoclear: bool = False,
    now: datetime | None = None,
    request_id: str | None = None,
    ip_address: str | None = None,
) -> tuple[Consultation, bool, AutoClearResult | None]:
    """Mark a draft consultation done and auto-clear a qualifying followup.

    Both changes commit together. A consultation that is already done is
    returned unchanged and the followup is not touched again.
    """
    consultation = db.get(Consultation, consultation_id)
    if consultation is None:
        raise NotFoundError("Consultation not found")
    before_data = snapshot_model(consultation)

    result = db.execute(
        update(Consultation)
        .where(Consultation.id == consultation_id, Consultation.status == ConsultationStatus.draft)
        .values(
            status=ConsultationStatus.done,
            finished_at=now or datetime.now(timezone.utc),
            updated_by=actor.id,
        )
    )
    if not result.rowcount:
        db.rollback()
        logger.info("consultation %s already finished", consultation_id)
        return consultation, False, None

    clear = auto_clear_active_followup(
        db,
        patient_id=consultation.patient_id,
        consultation_id=consultation.id,
        consult_visit_at=consultation.visit_at,
        consult_type=consultation.consult_type,
        consult_branch=consultation.branch_code.value,
        skip=skip_followup_autoclear,
        actor=actor,
        request_id=request_id,
        ip_address=ip_address,
    )
    log_event(
        db,
        actor=actor,
        action="consultation.finish",
        entity_type="consultation",
        entity_id=consultation_id,
        before_data=before_data,
        after_data={"status": ConsultationStatus.done.value, "followup_autoclear": clear.reason},
        request_id=request_id,
        ip_address=ip_address,
    )
    db.commit()
    db.refresh(consultation)
    logger.info(
        "consultation %s finished (followup auto-clear: %s)", consultation_id, clear.reason
    )
    return consultation, True, clear
