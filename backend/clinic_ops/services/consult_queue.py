"""Front-desk consult queue numbering per (branch, local day)."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import date
from typing import Callable, Iterable

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from clinic_ops.core.settings import settings
from clinic_ops.models.encounter import (
    ACTIVE_CONSULT_STATUSES,
    BranchCode,
    ConsultStatus,
    Encounter,
)
from clinic_ops.schemas.actor import Actor
from clinic_ops.services.audit import log_event
from clinic_ops.services.errors import ContentionError, NotFoundError
from clinic_ops.services.local_dates import today_local
from clinic_ops.services.retry import RetryExhausted, is_unique_violation, retry_with_jitter

logger = logging.getLogger("clinic_ops.consult_queue")

QUEUE_CONTENTION_MESSAGE = "Consult queue just changed. Please try again."


@dataclass
class QueueChange:
    encounter: Encounter
    changed: bool


def first_available_queue_number(used: Iterable[int | None]) -> int:
    taken = {number for number in used if number is not None}
    candidate = 1
    while candidate in taken:
        candidate += 1
    return candidate


def used_queue_numbers(db: Session, branch: BranchCode, day: date) -> set[int]:
    stmt = (
        select(Encounter.queue_number)
        .where(Encounter.branch_code == branch)
        .where(Encounter.visit_date_local == day)
        .where(Encounter.consult_status.in_(ACTIVE_CONSULT_STATUSES))
        .where(Encounter.queue_number.is_not(None))
    )
    return set(db.scalars(stmt))


def list_consult_queue(db: Session, *, branch: BranchCode, day: date) -> list[Encounter]:
    stmt = (
        select(Encounter)
        .where(Encounter.branch_code == branch)
        .where(Encounter.visit_date_local == day)
        .where(Encounter.consult_status.in_(ACTIVE_CONSULT_STATUSES))
        .order_by(Encounter.queue_number.asc().nulls_last(), Encounter.id.asc())
    )
    return list(db.scalars(stmt))


def enable_consult(
    db: Session,
    *,
    actor: Actor,
    encounter_id: int,
    branch: BranchCode,
    today: date | None = None,
    sleep: Callable[[float], None] = time.sleep,
    request_id: str | None = None,
    ip_address: str | None = None,
) -> QueueChange:
    """Put today's encounter into the branch consult queue at the first free number.

    The read-compute-write cycle is retried when a concurrent enable takes
    the same number; after the last attempt ``ContentionError`` is raised.
    """
    day = today or today_local(branch.value)
    scope = (
        Encounter.id == encounter_id,
        Encounter.branch_code == branch,
        Encounter.visit_date_local == day,
    )
    encounter = db.scalars(select(Encounter).where(*scope)).first()
    if encounter is None:
        raise NotFoundError("Encounter not found for this branch today")
    if encounter.in_consult_queue and encounter.queue_number is not None:
        return QueueChange(encounter=encounter, changed=False)

    def _compute() -> int:
        return first_available_queue_number(used_queue_numbers(db, branch, day))

    def _write(candidate: int) -> int:
        result = db.execute(
            update(Encounter)
            .where(*scope)
            .values(
                for_consult=True,
                consult_status=ConsultStatus.queued_for_consult,
                queue_number=candidate,
                updated_by=actor.id,
            )
        )
        if not result.rowcount:
            db.rollback()
            raise NotFoundError("Encounter not found for this branch today")
        log_event(
            db,
            actor=actor,
            action="consult_queue.enable",
            entity_type="encounter",
            entity_id=encounter_id,
            after_data={
                "branch_code": branch.value,
                "visit_date_local": day.isoformat(),
                "queue_number": candidate,
            },
            request_id=request_id,
            ip_address=ip_address,
        )
        db.commit()
        return candidate

    def _on_retry(exc: BaseException, attempt: int) -> None:
        db.rollback()
        logger.warning(
            "queue slot collision for encounter %s at %s %s (attempt %d)",
            encounter_id,
            branch.value,
            day.isoformat(),
            attempt,
        )

    try:
        number = retry_with_jitter(
            _compute,
            _write,
            is_retryable=is_unique_violation,
            max_attempts=settings.queue_slot_max_attempts,
            base_delay=settings.queue_slot_retry_delay_ms / 1000,
            jitter=settings.queue_slot_retry_jitter_ms / 1000,
            on_retry=_on_retry,
            sleep=sleep,
        )
    except RetryExhausted as exc:
        logger.error("queue slot assignment for encounter %s gave up: %s", encounter_id, exc)
        raise ContentionError(QUEUE_CONTENTION_MESSAGE) from exc

    encounter = db.get(Encounter, encounter_id)
    logger.info(
        "encounter %s queued for consult at %s as #%d", encounter_id, branch.value, number
    )
    return QueueChange(encounter=encounter, changed=True)


def disable_consult(
    db: Session,
    *,
    actor: Actor,
    encounter_id: int,
    request_id: str | None = None,
    ip_address: str | None = None,
) -> QueueChange:
    """Take an encounter out of the consult queue; lab ``status`` is left alone."""
    encounter = db.get(Encounter, encounter_id)
    if encounter is None:
        raise NotFoundError("Encounter not found")
    previous_number = encounter.queue_number

    db.execute(
        update(Encounter)
        .where(Encounter.id == encounter_id)
        .values(for_consult=False, consult_status=None, queue_number=None, updated_by=actor.id)
    )
    log_event(
        db,
        actor=actor,
        action="consult_queue.disable",
        entity_type="encounter",
        entity_id=encounter_id,
        before_data={"queue_number": previous_number},
        after_data={"queue_number": None},
        request_id=request_id,
        ip_address=ip_address,
    )
    db.commit()
    db.refresh(encounter)
    return QueueChange(encounter=encounter, changed=previous_number is not None)


def reorder_consult_queue(
    db: Session,
    *,
    actor: Actor,
    branch: BranchCode,
    ids: list[int],
    request_id: str | None = None,
    ip_address: str | None = None,
) -> int:
    """Renumber ``ids`` front-to-back as 1..n; returns how many rows took a number.

    Numbers are cleared first so swapping two neighbours never trips the
    active-queue unique index mid-way.
    """
    active = (
        Encounter.branch_code == branch,
        Encounter.consult_status.in_(ACTIVE_CONSULT_STATUSES),
    )
    try:
        db.execute(
            update(Encounter)
            .where(Encounter.id.in_(ids), *active)
            .values(queue_number=None)
        )
        updated = 0
        for position, encounter_id in enumerate(ids, start=1):
            result = db.execute(
                update(Encounter)
                .where(Encounter.id == encounter_id, *active)
                .values(queue_number=position, updated_by=actor.id)
            )
            updated += result.rowcount or 0
    except IntegrityError as exc:
        db.rollback()
        if not is_unique_violation(exc):
            raise
        logger.warning("consult queue reorder at %s collided: %s", branch.value, exc)
        raise ContentionError(QUEUE_CONTENTION_MESSAGE) from exc

    log_event(
        db,
        actor=actor,
        action="consult_queue.reorder",
        entity_type="consult_queue",
        entity_id=branch.value,
        after_data={"ids": ids, "updated": updated},
        request_id=request_id,
        ip_address=ip_address,
    )
    db.commit()
    logger.info("consult queue at %s reordered (%d of %d ids)", branch.value, updated, len(ids))
    return updated
