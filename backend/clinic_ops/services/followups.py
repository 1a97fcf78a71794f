"""Follow-up lifecycle: scheduling, rescheduling, closing and auto-clear.

A patient has at most one ``scheduled`` followup. Every transition out of
``scheduled`` is a conditional update on ``status='scheduled' AND
deleted_at IS NULL``; when the predicate matches nothing the caller gets a
no-op result instead of an error.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from clinic_ops.core.settings import settings
from clinic_ops.models.consultation import Consultation
from clinic_ops.models.followup import (
    AUTO_COMPLETION_TAG,
    Followup,
    FollowupCancelReason,
    FollowupStatus,
)
from clinic_ops.schemas.actor import Actor
from clinic_ops.services.audit import log_event, snapshot_model
from clinic_ops.services.errors import ContentionError, NotFoundError
from clinic_ops.services.local_dates import (
    add_days,
    branch_timezone,
    coerce_tolerance_days,
    followup_window,
    to_local_date,
)
from clinic_ops.services.retry import RetryExhausted, retry_with_jitter

logger = logging.getLogger("clinic_ops.followups")

FOLLOWUP_CONSULT_TYPE = "followup"

BRANCH_LEGACY_NAMES = {
    "SI": "San Isidro",
    "SL": "San Leonardo",
}


@dataclass
class FollowupChange:
    followup: Followup | None
    changed: bool
    reason: str | None = None


@dataclass
class AutoClearResult:
    cleared: bool
    reason: str
    followup_id: int | None = None


def compute_valid_until(due_date: date, tolerance_days: int) -> date:
    return add_days(due_date, coerce_tolerance_days(tolerance_days))


def is_consult_within_followup_window(
    due_date: date, tolerance_days: object, consult_date: date
) -> bool:
    # due=2024-02-15, tol=30 -> window 2024-01-16..2024-03-16
    window_start, window_end = followup_window(due_date, tolerance_days)
    return window_start <= consult_date <= window_end


def _active_clause():
    return (Followup.status == FollowupStatus.scheduled, Followup.deleted_at.is_(None))


def _actor_id(actor: Actor | None) -> str | None:
    return actor.id if actor else None


def get_active_followup(db: Session, patient_id: str) -> Followup | None:
    stmt = (
        select(Followup)
        .where(Followup.patient_id == patient_id, *_active_clause())
        .order_by(Followup.due_date.asc(), Followup.id.asc())
        .limit(1)
    )
    return db.scalars(stmt).first()


def _supersede_scheduled(db: Session, *, patient_id: str, updated_by: str | None) -> int:
    # Soft-deleted rows still count as scheduled for the per-patient unique index.
    result = db.execute(
        update(Followup)
        .where(Followup.patient_id == patient_id, Followup.status == FollowupStatus.scheduled)
        .values(
            status=FollowupStatus.canceled,
            cancel_reason=FollowupCancelReason.canceled_rescheduled.value,
            updated_by=updated_by,
        )
    )
    return result.rowcount or 0


def _run_scheduling_write(db: Session, *, patient_id: str, write):
    """Run a cancel-then-insert write as one transaction, retrying on index races."""

    def _rollback(exc: BaseException, attempt: int) -> None:
        db.rollback()
        logger.warning(
            "followup scheduling race for patient %s (attempt %d): %s", patient_id, attempt, exc
        )

    try:
        return retry_with_jitter(
            lambda: get_active_followup(db, patient_id),
            write,
            max_attempts=settings.queue_slot_max_attempts,
            base_delay=settings.queue_slot_retry_delay_ms / 1000,
            jitter=settings.queue_slot_retry_jitter_ms / 1000,
            on_retry=_rollback,
        )
    except RetryExhausted as exc:
        logger.error("followup scheduling for patient %s gave up: %s", patient_id, exc)
        raise ContentionError("Follow-up was changed concurrently. Please try again.") from exc


def upsert_followup(
    db: Session,
    *,
    actor: Actor,
    patient_id: str,
    created_from_consultation_id: int,
    due_date: date,
    return_branch: str | None = None,
    intended_outcome: str = "",
    expected_tests: str = "",
    tolerance_days: int | None = None,
    request_id: str | None = None,
    ip_address: str | None = None,
) -> Followup:
    """Replace the patient's active followup with a new scheduled one."""
    tolerance = coerce_tolerance_days(
        settings.followup_default_tolerance_days if tolerance_days is None else tolerance_days
    )

    def _write(previous: Followup | None) -> Followup:
        previous_data = snapshot_model(previous)
        superseded = _supersede_scheduled(db, patient_id=patient_id, updated_by=actor.id)
        followup = Followup(
            patient_id=patient_id,
            created_from_consultation_id=created_from_consultation_id,
            return_branch=return_branch,
            due_date=due_date,
            tolerance_days=tolerance,
            valid_until=compute_valid_until(due_date, tolerance),
            intended_outcome=intended_outcome or "",
            expected_tests=expected_tests or "",
            status=FollowupStatus.scheduled,
            created_by=actor.id,
            updated_by=actor.id,
        )
        db.add(followup)
        db.flush()
        log_event(
            db,
            actor=actor,
            action="followup.upsert",
            entity_type="followup",
            entity_id=followup.id,
            before_data=previous_data,
            after_obj=followup,
            request_id=request_id,
            ip_address=ip_address,
        )
        db.commit()
        db.refresh(followup)
        logger.info(
            "followup %s scheduled for patient %s due %s (superseded %d)",
            followup.id,
            patient_id,
            due_date.isoformat(),
            superseded,
        )
        return followup

    return _run_scheduling_write(db, patient_id=patient_id, write=_write)


def reschedule_followup(
    db: Session,
    *,
    actor: Actor,
    followup_id: int,
    patient_id: str,
    created_from_consultation_id: int,
    new_due_date: date,
    return_branch: str | None = None,
    intended_outcome: str | None = None,
    expected_tests: str | None = None,
    tolerance_days: int | None = None,
    request_id: str | None = None,
    ip_address: str | None = None,
) -> FollowupChange:
    """Cancel ``followup_id`` as rescheduled and schedule its replacement.

    Both writes commit together, so a failed insert leaves the old followup
    scheduled. ``changed`` is False when the named followup had already left
    ``scheduled`` before this call; the replacement is inserted either way.
    """
    current = db.get(Followup, followup_id)
    if current is None or current.deleted_at is not None or current.patient_id != patient_id:
        raise NotFoundError("Followup not found")

    carried = {
        "return_branch": current.return_branch if return_branch is None else return_branch,
        "intended_outcome": current.intended_outcome if intended_outcome is None else intended_outcome,
        "expected_tests": current.expected_tests if expected_tests is None else expected_tests,
        "tolerance_days": coerce_tolerance_days(
            current.tolerance_days if tolerance_days is None else tolerance_days
        ),
    }

    def _write(_previous: Followup | None) -> FollowupChange:
        closed = db.execute(
            update(Followup)
            .where(Followup.id == followup_id, *_active_clause())
            .values(
                status=FollowupStatus.canceled,
                cancel_reason=FollowupCancelReason.canceled_rescheduled.value,
                updated_by=actor.id,
            )
        ).rowcount
        others = _supersede_scheduled(db, patient_id=patient_id, updated_by=actor.id)
        replacement = Followup(
            patient_id=patient_id,
            created_from_consultation_id=created_from_consultation_id,
            due_date=new_due_date,
            valid_until=compute_valid_until(new_due_date, carried["tolerance_days"]),
            status=FollowupStatus.scheduled,
            created_by=actor.id,
            updated_by=actor.id,
            **carried,
        )
        db.add(replacement)
        db.flush()
        log_event(
            db,
            actor=actor,
            action="followup.reschedule",
            entity_type="followup",
            entity_id=replacement.id,
            after_data={
                "replaced_followup_id": followup_id,
                "replaced_was_scheduled": bool(closed),
                "also_superseded": others,
                "followup": snapshot_model(replacement),
            },
            request_id=request_id,
            ip_address=ip_address,
        )
        db.commit()
        db.refresh(replacement)
        if not closed:
            logger.info(
                "followup %s was no longer scheduled; replacement %s inserted anyway",
                followup_id,
                replacement.id,
            )
        else:
            logger.info("followup %s rescheduled as %s", followup_id, replacement.id)
        return FollowupChange(
            followup=replacement,
            changed=bool(closed),
            reason=None if closed else "not_scheduled",
        )

    return _run_scheduling_write(db, patient_id=patient_id, write=_write)


def _close_scheduled(
    db: Session,
    *,
    actor: Actor | None,
    followup_id: int,
    action: str,
    values: dict,
    request_id: str | None,
    ip_address: str | None,
) -> FollowupChange:
    result = db.execute(
        update(Followup)
        .where(Followup.id == followup_id, *_active_clause())
        .values(updated_by=_actor_id(actor), **values)
    )
    if not result.rowcount:
        db.rollback()
        existing = db.get(Followup, followup_id)
        if existing is None:
            raise NotFoundError("Followup not found")
        logger.info("%s on followup %s was a no-op (status %s)", action, followup_id, existing.status.value)
        return FollowupChange(followup=None, changed=False, reason="not_scheduled")

    followup = db.get(Followup, followup_id)
    log_event(
        db,
        actor=actor,
        action=action,
        entity_type="followup",
        entity_id=followup_id,
        after_obj=followup,
        request_id=request_id,
        ip_address=ip_address,
    )
    db.commit()
    db.refresh(followup)
    logger.info("%s: followup %s is now %s", action, followup_id, followup.status.value)
    return FollowupChange(followup=followup, changed=True)


def cancel_followup(
    db: Session,
    *,
    actor: Actor,
    followup_id: int,
    reason: str = FollowupCancelReason.other.value,
    request_id: str | None = None,
    ip_address: str | None = None,
) -> FollowupChange:
    return _close_scheduled(
        db,
        actor=actor,
        followup_id=followup_id,
        action="followup.cancel",
        values={
            "status": FollowupStatus.canceled,
            "cancel_reason": (reason or "").strip() or FollowupCancelReason.other.value,
        },
        request_id=request_id,
        ip_address=ip_address,
    )


def attach_followup(
    db: Session,
    *,
    actor: Actor,
    followup_id: int,
    closed_by_consultation_id: int,
    completion_note: str | None = None,
    request_id: str | None = None,
    ip_address: str | None = None,
) -> FollowupChange:
    return _close_scheduled(
        db,
        actor=actor,
        followup_id=followup_id,
        action="followup.attach",
        values={
            "status": FollowupStatus.completed,
            "closed_by_consultation_id": closed_by_consultation_id,
            "completion_note": completion_note,
        },
        request_id=request_id,
        ip_address=ip_address,
    )


def skip_followup(
    db: Session,
    *,
    actor: Actor,
    followup_id: int,
    note: str | None = None,
    request_id: str | None = None,
    ip_address: str | None = None,
) -> FollowupChange:
    return _close_scheduled(
        db,
        actor=actor,
        followup_id=followup_id,
        action="followup.skip",
        values={"status": FollowupStatus.skipped, "completion_note": note},
        request_id=request_id,
        ip_address=ip_address,
    )


def update_followup(
    db: Session,
    *,
    actor: Actor,
    followup_id: int,
    patient_id: str,
    due_date: date,
    return_branch: str | None = None,
    intended_outcome: str = "",
    expected_tests: str = "",
    tolerance_days: int | None = None,
    request_id: str | None = None,
    ip_address: str | None = None,
) -> FollowupChange:
    current = db.get(Followup, followup_id)
    if current is None or current.patient_id != patient_id:
        raise NotFoundError("Followup not found")
    before_data = snapshot_model(current)
    tolerance = coerce_tolerance_days(
        current.tolerance_days if tolerance_days is None else tolerance_days
    )

    result = db.execute(
        update(Followup)
        .where(
            Followup.id == followup_id,
            Followup.patient_id == patient_id,
            *_active_clause(),
        )
        .values(
            due_date=due_date,
            return_branch=return_branch,
            intended_outcome=intended_outcome or "",
            expected_tests=expected_tests or "",
            tolerance_days=tolerance,
            valid_until=compute_valid_until(due_date, tolerance),
            updated_by=actor.id,
        )
    )
    if not result.rowcount:
        db.rollback()
        logger.info("followup.update on %s was a no-op (no longer scheduled)", followup_id)
        return FollowupChange(followup=None, changed=False, reason="not_scheduled")

    followup = db.get(Followup, followup_id)
    log_event(
        db,
        actor=actor,
        action="followup.update",
        entity_type="followup",
        entity_id=followup_id,
        before_data=before_data,
        after_obj=followup,
        request_id=request_id,
        ip_address=ip_address,
    )
    db.commit()
    db.refresh(followup)
    logger.info("followup %s updated, due %s", followup_id, due_date.isoformat())
    return FollowupChange(followup=followup, changed=True)


def soft_delete_followup(
    db: Session,
    *,
    actor: Actor,
    followup_id: int,
    request_id: str | None = None,
    ip_address: str | None = None,
) -> FollowupChange:
    result = db.execute(
        update(Followup)
        .where(Followup.id == followup_id, Followup.deleted_at.is_(None))
        .values(deleted_at=datetime.now(timezone.utc), deleted_by=actor.id, updated_by=actor.id)
    )
    if not result.rowcount:
        db.rollback()
        if db.get(Followup, followup_id) is None:
            raise NotFoundError("Followup not found")
        return FollowupChange(followup=None, changed=False, reason="already_deleted")

    followup = db.get(Followup, followup_id)
    log_event(
        db,
        actor=actor,
        action="followup.delete",
        entity_type="followup",
        entity_id=followup_id,
        after_obj=followup,
        request_id=request_id,
        ip_address=ip_address,
    )
    db.commit()
    db.refresh(followup)
    logger.info(
        "followup %s soft-deleted by %s (status %s)", followup_id, actor.id, followup.status.value
    )
    return FollowupChange(followup=followup, changed=True)


def list_followups(
    db: Session,
    *,
    start: date,
    end: date,
    branch: str | None = None,
    patient_id: str | None = None,
    status: FollowupStatus | None = None,
) -> list[Followup]:
    stmt = (
        select(Followup)
        .where(Followup.deleted_at.is_(None))
        .where(Followup.due_date >= start, Followup.due_date <= end)
        .order_by(Followup.due_date.asc(), Followup.id.asc())
    )
    if branch in BRANCH_LEGACY_NAMES:
        stmt = stmt.where(
            or_(
                Followup.return_branch == branch,
                Followup.return_branch.ilike(f"{BRANCH_LEGACY_NAMES[branch]}%"),
            )
        )
    if patient_id:
        stmt = stmt.where(Followup.patient_id == patient_id.strip().upper())
    if status is not None:
        stmt = stmt.where(Followup.status == status)
    return list(db.scalars(stmt))


def scheduling_consultation(db: Session, followup: Followup) -> Consultation | None:
    """The consultation that created ``followup``; its doctor is shown to the patient."""
    return db.get(Consultation, followup.created_from_consultation_id)


def patient_followup_history(db: Session, patient_id: str) -> list[Followup]:
    stmt = (
        select(Followup)
        .where(Followup.patient_id == patient_id, Followup.deleted_at.is_(None))
        .order_by(Followup.due_date.desc(), Followup.id.desc())
    )
    return list(db.scalars(stmt))


def auto_clear_active_followup(
    db: Session,
    *,
    patient_id: str | None,
    consultation_id: int | None,
    consult_visit_at: datetime | str | None,
    consult_type: str | None,
    consult_branch: str | None = None,
    skip: bool = False,
    actor: Actor | None = None,
    request_id: str | None = None,
    ip_address: str | None = None,
) -> AutoClearResult:
    """Complete the patient's active followup when a qualifying consult finishes.

    Runs inside the caller's transaction and does not commit.
    """
    if skip:
        return AutoClearResult(False, "skipped")
    if not patient_id or not consultation_id or not consult_visit_at:
        return AutoClearResult(False, "missing_data")
    if (consult_type or "").strip().lower() != FOLLOWUP_CONSULT_TYPE:
        return AutoClearResult(False, "not_followup")

    followup = get_active_followup(db, patient_id)
    if followup is None:
        return AutoClearResult(False, "no_active")
    if followup.closed_by_consultation_id:
        return AutoClearResult(False, "already_closed", followup.id)
    if followup.created_from_consultation_id == consultation_id:
        return AutoClearResult(False, "same_consult", followup.id)

    consult_date = to_local_date(consult_visit_at, branch_timezone(consult_branch))
    if not is_consult_within_followup_window(
        followup.due_date, followup.tolerance_days, consult_date
    ):
        logger.info(
            "followup %s not auto-cleared: consult date %s outside window of due %s +/- %s",
            followup.id,
            consult_date.isoformat(),
            followup.due_date.isoformat(),
            followup.tolerance_days,
        )
        return AutoClearResult(False, "outside_window", followup.id)

    completion_note = (
        f"{followup.completion_note}; {AUTO_COMPLETION_TAG}"
        if followup.completion_note
        else AUTO_COMPLETION_TAG
    )
    result = db.execute(
        update(Followup)
        .where(Followup.id == followup.id, *_active_clause())
        .values(
            status=FollowupStatus.completed,
            closed_by_consultation_id=consultation_id,
            completion_note=completion_note,
            updated_by=_actor_id(actor),
        )
    )
    if not result.rowcount:
        return AutoClearResult(False, "already_closed", followup.id)

    log_event(
        db,
        actor=actor,
        action="followup.auto_clear",
        entity_type="followup",
        entity_id=followup.id,
        after_data={
            "closed_by_consultation_id": consultation_id,
            "consult_date": consult_date.isoformat(),
            "completion_note": completion_note,
        },
        request_id=request_id,
        ip_address=ip_address,
    )
    logger.info("followup %s auto-completed by consultation %s", followup.id, consultation_id)
    return AutoClearResult(True, "cleared", followup.id)
