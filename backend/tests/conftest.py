import os

os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["SECRET_KEY"] = "clinic-ops-test-secret-key-0123456789abcdef"
os.environ["APP_TZ"] = "Asia/Manila"
os.environ["QUEUE_SLOT_RETRY_DELAY_MS"] = "0"
os.environ["QUEUE_SLOT_RETRY_JITTER_MS"] = "0"

from datetime import date

import pytest
from fastapi.testclient import TestClient

from clinic_ops.core.security import create_access_token
from clinic_ops.core.settings import settings
from clinic_ops.db.session import SessionLocal, engine
from clinic_ops.main import app
from clinic_ops.models import Base, BranchCode, ConsultStatus, Encounter
from clinic_ops.schemas.actor import Actor, ActorKind
from clinic_ops.services.local_dates import today_local


@pytest.fixture(autouse=True)
def _schema():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db(_schema):
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def api_client(_schema):
    with TestClient(app) as client:
        yield client


def _token(kind: str, sub: str, **claims) -> str:
    return create_access_token(
        subject=sub,
        secret=settings.secret_key,
        alg=settings.jwt_alg,
        expires_minutes=30,
        extra={"kind": kind, **claims},
    )


def bearer(kind: str, sub: str, **claims) -> dict[str, str]:
    return {"Authorization": f"Bearer {_token(kind, sub, **claims)}"}


@pytest.fixture
def staff_headers():
    return bearer("staff", "STAFF-SI-1", branch="SI", name="Front Desk SI")


@pytest.fixture
def admin_headers():
    return bearer("staff", "ADM-1", branch="ALL", is_admin=True, name="Admin")


@pytest.fixture
def doctor_headers():
    return bearer("doctor", "DOC-1", branch="SI", name="Dr. Santos")


@pytest.fixture
def patient_headers():
    return bearer("patient", "PAT001", patient_id="PAT001")


@pytest.fixture
def staff_actor():
    return Actor(kind=ActorKind.staff, id="STAFF-SI-1", branch="SI", name="Front Desk SI")


@pytest.fixture
def doctor_actor():
    return Actor(kind=ActorKind.doctor, id="DOC-1", branch="SI", name="Dr. Santos")


@pytest.fixture
def make_encounter(db):
    def _make(
        patient_id: str,
        *,
        branch: BranchCode = BranchCode.SI,
        day: date | None = None,
        queue_number: int | None = None,
        consult_status: ConsultStatus | None = None,
        status: str = "intake",
    ) -> Encounter:
        encounter = Encounter(
            patient_id=patient_id,
            branch_code=branch,
            visit_date_local=day or today_local(branch.value),
            status=status,
            for_consult=consult_status is not None,
            consult_status=consult_status,
            queue_number=queue_number,
        )
        db.add(encounter)
        db.commit()
        db.refresh(encounter)
        return encounter

    return _make


@pytest.fixture
def make_headers():
    return bearer
