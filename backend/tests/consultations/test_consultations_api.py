from sqlalchemy import select

from clinic_ops.models import ConsultStatus, Encounter, Followup, FollowupStatus
from clinic_ops.services.local_dates import today_local


def _start(client, headers, patient_id="PAT001", consult_type="followup"):
    response = client.post(
        "/consultations/start",
        headers=headers,
        json={"patient_id": patient_id, "consult_type": consult_type},
    )
    assert response.status_code == 200, response.text
    return response.json()


def _schedule_due_today(client, headers, consult_id=9001, patient_id="PAT001"):
    response = client.post(
        "/followups/upsert",
        headers=headers,
        json={
            "patient_id": patient_id,
            "created_from_consultation_id": consult_id,
            "due_date": today_local("SI").isoformat(),
            "tolerance_days": 7,
        },
    )
    assert response.status_code == 200, response.text
    return response.json()["followup"]


def test_start_creates_then_reuses_todays_consultation(api_client, doctor_headers, db, make_encounter):
    encounter = make_encounter("PAT001", consult_status=ConsultStatus.queued_for_consult, queue_number=1)

    first = _start(api_client, doctor_headers, patient_id="pat001")
    assert first["created"] is True
    consultation = first["consultation"]
    assert consultation["patient_id"] == "PAT001"
    assert consultation["encounter_id"] == encounter.id
    assert consultation["branch_code"] == "SI"
    assert consultation["doctor_id"] == "DOC-1"
    assert consultation["status"] == "draft"

    db.expire_all()
    moved = db.get(Encounter, encounter.id)
    assert moved.consult_status == ConsultStatus.in_consult
    assert moved.queue_number == 1

    again = _start(api_client, doctor_headers, consult_type=None)
    assert again["created"] is False
    assert again["consultation"]["id"] == consultation["id"]
    assert again["consultation"]["consult_type"] == "followup"


def test_start_is_doctor_only(api_client, staff_headers):
    response = api_client.post(
        "/consultations/start", headers=staff_headers, json={"patient_id": "PAT001"}
    )
    assert response.status_code == 403


def test_finish_auto_clears_followup(api_client, doctor_headers, db):
    followup = _schedule_due_today(api_client, doctor_headers)
    consultation = _start(api_client, doctor_headers)["consultation"]

    response = api_client.post(
        "/consultations/finish",
        headers=doctor_headers,
        json={"consultation_id": consultation["id"]},
    )
    assert response.status_code == 200, response.text
    body = response.json()
    assert body["changed"] is True
    assert body["consultation"]["status"] == "done"
    assert body["consultation"]["finished_at"] is not None
    assert body["followup_autoclear"] == {
        "cleared": True,
        "reason": "cleared",
        "followup_id": followup["id"],
    }

    db.expire_all()
    stored = db.get(Followup, followup["id"])
    assert stored.status == FollowupStatus.completed
    assert stored.closed_by_consultation_id == consultation["id"]

    repeat = api_client.post(
        "/consultations/finish",
        headers=doctor_headers,
        json={"consultation_id": consultation["id"]},
    )
    assert repeat.status_code == 200, repeat.text
    assert repeat.json()["changed"] is False
    assert repeat.json()["followup_autoclear"] is None


def test_finish_with_skip_leaves_followup_scheduled(api_client, doctor_headers, db):
    followup = _schedule_due_today(api_client, doctor_headers)
    consultation = _start(api_client, doctor_headers)["consultation"]

    response = api_client.post(
        "/consultations/finish",
        headers=doctor_headers,
        json={"consultation_id": consultation["id"], "skip_followup_autoclear": True},
    )
    assert response.status_code == 200, response.text
    assert response.json()["followup_autoclear"]["reason"] == "skipped"

    db.expire_all()
    assert db.get(Followup, followup["id"]).status == FollowupStatus.scheduled


def test_finish_of_non_followup_consult_leaves_followup(api_client, doctor_headers, db):
    _schedule_due_today(api_client, doctor_headers)
    consultation = _start(api_client, doctor_headers, consult_type="new")["consultation"]

    response = api_client.post(
        "/consultations/finish",
        headers=doctor_headers,
        json={"consultation_id": consultation["id"]},
    )
    assert response.status_code == 200, response.text
    assert response.json()["followup_autoclear"]["reason"] == "not_followup"
    scheduled = db.scalars(
        select(Followup).where(Followup.status == FollowupStatus.scheduled)
    ).all()
    assert len(scheduled) == 1


def test_finish_unknown_consultation_is_404(api_client, doctor_headers):
    response = api_client.post(
        "/consultations/finish", headers=doctor_headers, json={"consultation_id": 777}
    )
    assert response.status_code == 404
    assert response.json()["error"] == "Consultation not found"
