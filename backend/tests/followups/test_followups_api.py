import pytest


def _upsert(client, headers, patient_id="pat001", due="2024-05-01", consult_id=100, **extra):
    payload = {
        "patient_id": patient_id,
        "created_from_consultation_id": consult_id,
        "due_date": due,
        **extra,
    }
    response = client.post("/followups/upsert", headers=headers, json=payload)
    assert response.status_code == 200, response.text
    return response.json()["followup"]


def test_followups_require_authentication(api_client):
    response = api_client.post("/followups/upsert", json={})
    assert response.status_code == 401
    assert response.json() == {"error": "Unauthorized"}


def test_invalid_token_is_rejected(api_client):
    response = api_client.get(
        "/patient/followup", headers={"Authorization": "Bearer not-a-jwt"}
    )
    assert response.status_code == 401


def test_patient_cannot_schedule_followups(api_client, patient_headers):
    response = api_client.post(
        "/followups/upsert",
        headers=patient_headers,
        json={"patient_id": "PAT001", "created_from_consultation_id": 1, "due_date": "2024-05-01"},
    )
    assert response.status_code == 403
    assert response.json()["error"] == "Forbidden"


def test_staff_without_branch_is_forbidden(api_client, make_headers):
    headers = make_headers("staff", "STAFF-X")
    response = api_client.post(
        "/followups/cancel", headers=headers, json={"followup_id": 1}
    )
    assert response.status_code == 403
    assert response.json()["error"] == "Branch required"


def test_missing_fields_return_error_shape(api_client, doctor_headers):
    response = api_client.post(
        "/followups/upsert",
        headers={**doctor_headers, "x-request-id": "req-422"},
        json={"patient_id": "PAT001"},
    )
    assert response.status_code == 422
    body = response.json()
    assert "due_date" in body["error"]
    assert body["request_id"] == "req-422"


def test_blank_patient_id_is_rejected(api_client, doctor_headers):
    response = api_client.post(
        "/followups/upsert",
        headers=doctor_headers,
        json={"patient_id": "   ", "created_from_consultation_id": 1, "due_date": "2024-05-01"},
    )
    assert response.status_code == 422


def test_upsert_normalizes_patient_and_supersedes(api_client, doctor_headers):
    first = _upsert(api_client, doctor_headers, tolerance_days=10, return_branch="SI")
    assert first["patient_id"] == "PAT001"
    assert first["status"] == "scheduled"
    assert first["valid_until"] == "2024-05-11"

    second = _upsert(api_client, doctor_headers, due="2024-06-01", consult_id=101)
    assert second["id"] != first["id"]

    response = api_client.get("/followups/patient/PAT001", headers=doctor_headers)
    assert response.status_code == 200, response.text
    rows = {row["id"]: row for row in response.json()["followups"]}
    assert rows[first["id"]]["status"] == "canceled"
    assert rows[first["id"]]["cancel_reason"] == "canceled_rescheduled"
    assert rows[second["id"]]["status"] == "scheduled"


def test_cancel_twice_reports_noop(api_client, doctor_headers, staff_headers):
    followup = _upsert(api_client, doctor_headers)

    first = api_client.post(
        "/followups/cancel",
        headers=staff_headers,
        json={"followup_id": followup["id"], "reason": "declined"},
    )
    second = api_client.post(
        "/followups/cancel",
        headers=staff_headers,
        json={"followup_id": followup["id"], "reason": "other"},
    )

    assert first.status_code == 200, first.text
    assert first.json()["changed"] is True
    assert first.json()["followup"]["cancel_reason"] == "declined"
    assert second.status_code == 200, second.text
    assert second.json() == {"followup": None, "changed": False, "reason": "not_scheduled"}


def test_cancel_unknown_followup_is_404(api_client, staff_headers):
    response = api_client.post("/followups/cancel", headers=staff_headers, json={"followup_id": 999})
    assert response.status_code == 404
    assert response.json()["error"] == "Followup not found"


def test_reschedule_is_staff_only(api_client, doctor_headers, staff_headers):
    followup = _upsert(api_client, doctor_headers, intended_outcome="Review x-ray")
    payload = {
        "followup_id": followup["id"],
        "patient_id": "PAT001",
        "created_from_consultation_id": 100,
        "new_due_date": "2024-05-09",
    }

    forbidden = api_client.post("/followups/reschedule", headers=doctor_headers, json=payload)
    assert forbidden.status_code == 403

    response = api_client.post("/followups/reschedule", headers=staff_headers, json=payload)
    assert response.status_code == 200, response.text
    body = response.json()
    assert body["changed"] is True
    assert body["followup"]["due_date"] == "2024-05-09"
    assert body["followup"]["intended_outcome"] == "Review x-ray"


def test_attach_and_skip(api_client, doctor_headers, staff_headers):
    followup = _upsert(api_client, doctor_headers)
    attached = api_client.post(
        "/followups/attach",
        headers=doctor_headers,
        json={"followup_id": followup["id"], "closed_by_consultation_id": 200},
    )
    assert attached.status_code == 200, attached.text
    assert attached.json()["followup"]["status"] == "completed"

    skipped = api_client.post(
        "/followups/skip", headers=staff_headers, json={"followup_id": followup["id"]}
    )
    assert skipped.status_code == 200, skipped.text
    assert skipped.json()["changed"] is False


def test_list_followups_by_range_and_status(api_client, doctor_headers, admin_headers):
    _upsert(api_client, doctor_headers, patient_id="PAT001", due="2024-05-01", return_branch="SI")
    _upsert(api_client, doctor_headers, patient_id="PAT002", due="2024-05-03", return_branch="SL")
    _upsert(api_client, doctor_headers, patient_id="PAT003", due="2024-07-01", return_branch="SI")

    response = api_client.get(
        "/followups",
        headers=doctor_headers,
        params={"start": "2024-05-01", "end": "2024-05-31", "status": "scheduled"},
    )
    assert response.status_code == 200, response.text
    assert [row["patient_id"] for row in response.json()["followups"]] == ["PAT001"]

    response = api_client.get(
        "/followups",
        headers=admin_headers,
        params={"start": "2024-05-01", "end": "2024-05-31"},
    )
    assert response.status_code == 200, response.text
    assert [row["patient_id"] for row in response.json()["followups"]] == ["PAT001", "PAT002"]


@pytest.mark.parametrize(
    "params,message",
    [
        ({"start": "2024-05-31", "end": "2024-05-01"}, "end must not be before start"),
        ({"start": "2024-05-01", "end": "2024-05-31", "status": "pending"}, "Invalid status"),
    ],
)
def test_list_followups_rejects_bad_filters(api_client, staff_headers, params, message):
    response = api_client.get("/followups", headers=staff_headers, params=params)
    assert response.status_code == 400
    assert response.json()["error"] == message


def test_delete_hides_followup(api_client, doctor_headers, staff_headers):
    followup = _upsert(api_client, doctor_headers)
    response = api_client.post(
        "/followups/delete", headers=staff_headers, json={"followup_id": followup["id"]}
    )
    assert response.status_code == 200, response.text

    response = api_client.get("/followups/patient/PAT001", headers=staff_headers)
    assert response.json()["followups"] == []


def test_contact_attempts_are_logged_newest_first(api_client, doctor_headers, staff_headers):
    followup = _upsert(api_client, doctor_headers)

    for outcome in ("no_answer", "reached_confirmed"):
        response = api_client.post(
            "/followups/attempts",
            headers=staff_headers,
            json={"followup_id": followup["id"], "channel": "call", "outcome": outcome},
        )
        assert response.status_code == 201, response.text
        assert response.json()["attempted_by_name"] == "Front Desk SI"
        assert response.json()["staff_id"] == "STAFF-SI-1"

    response = api_client.get(
        "/followups/attempts", headers=staff_headers, params={"followup_id": followup["id"]}
    )
    assert response.status_code == 200, response.text
    assert [row["outcome"] for row in response.json()] == ["reached_confirmed", "no_answer"]

    forbidden = api_client.get(
        "/followups/attempts", headers=doctor_headers, params={"followup_id": followup["id"]}
    )
    assert forbidden.status_code == 403


def test_attempt_on_missing_followup_is_404(api_client, staff_headers):
    response = api_client.post(
        "/followups/attempts",
        headers=staff_headers,
        json={"followup_id": 12345, "channel": "sms", "outcome": "no_answer"},
    )
    assert response.status_code == 404


def test_patient_sees_only_own_active_followup(api_client, doctor_headers, patient_headers):
    due = "2024-05-15"
    _upsert(api_client, doctor_headers, patient_id="PAT001", due=due)
    _upsert(api_client, doctor_headers, patient_id="PAT002", due=due)

    response = api_client.get("/patient/followup", headers=patient_headers)
    assert response.status_code == 200, response.text
    assert response.json()["followup"]["patient_id"] == "PAT001"


def test_session_cookie_is_accepted(api_client, patient_headers):
    token = patient_headers["Authorization"].split(" ", 1)[1]
    api_client.cookies.set("clinic_session", token)
    response = api_client.get("/patient/followup")
    assert response.status_code == 200, response.text
    assert response.json() == {"followup": None, "doctor_id": None, "doctor_name": None}


def test_audit_log_is_admin_only(api_client, doctor_headers, staff_headers, admin_headers):
    followup = _upsert(api_client, doctor_headers)

    assert api_client.get("/audit", headers=staff_headers).status_code == 403

    response = api_client.get(
        "/audit",
        headers=admin_headers,
        params={"entity_type": "followup", "entity_id": str(followup["id"])},
    )
    assert response.status_code == 200, response.text
    entries = response.json()
    assert [entry["action"] for entry in entries] == ["followup.upsert"]
    assert entries[0]["actor_id"] == "DOC-1"


def test_patient_followup_names_the_scheduling_doctor(api_client, doctor_headers, patient_headers):
    response = api_client.post(
        "/consultations/start", headers=doctor_headers, json={"patient_id": "PAT001"}
    )
    assert response.status_code == 200, response.text
    consultation = response.json()["consultation"]
    assert consultation["doctor_name"] == "Dr. Santos"

    _upsert(api_client, doctor_headers, patient_id="PAT001", consult_id=consultation["id"])

    response = api_client.get("/patient/followup", headers=patient_headers)
    assert response.status_code == 200, response.text
    body = response.json()
    assert body["followup"]["created_from_consultation_id"] == consultation["id"]
    assert body["doctor_id"] == "DOC-1"
    assert body["doctor_name"] == "Dr. Santos"


def test_patient_followup_without_known_consultation_has_no_doctor(
    api_client, doctor_headers, patient_headers
):
    _upsert(api_client, doctor_headers, patient_id="PAT001", consult_id=4321)

    response = api_client.get("/patient/followup", headers=patient_headers)
    assert response.status_code == 200, response.text
    body = response.json()
    assert body["followup"]["patient_id"] == "PAT001"
    assert body["doctor_id"] is None
    assert body["doctor_name"] is None
