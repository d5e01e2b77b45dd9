from __future__ import annotations

import os
import tempfile
from pathlib import Path

# Keep the app's startup hook away from the developer database.
os.environ.setdefault("WARDFLOW_DB_FILE", str(Path(tempfile.gettempdir()) / "wardflow-pytest.db"))

import pytest  # noqa: E402
import httpx  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402
from sqlmodel import SQLModel, Session, create_engine  # noqa: E402

from database import get_atd, get_lab, get_session  # noqa: E402
from main import app, build_services  # noqa: E402
from models import Patient, User, UserRole  # noqa: E402
from repository import InMemoryRepository  # noqa: E402
from services.atd import AtdEngine  # noqa: E402
from services.auth import hash_password  # noqa: E402
from services.lab import LabOrderTracker  # noqa: E402
from services.locks import LockManager  # noqa: E402

TEST_ENGINE = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)


def _override_get_session():
    with Session(TEST_ENGINE) as session:
        yield session


@pytest.fixture(autouse=True)
def reset_db():
    SQLModel.metadata.drop_all(TEST_ENGINE)
    SQLModel.metadata.create_all(TEST_ENGINE)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def sql_engine():
    return TEST_ENGINE


@pytest.fixture
def file_engine(tmp_path):
    """SQLite file with a regular connection pool, as the app runs in production."""
    db_engine = create_engine(
        f"sqlite:///{tmp_path / 'wardflow-threads.db'}",
        connect_args={"check_same_thread": False},
    )
    SQLModel.metadata.create_all(db_engine)
    yield db_engine
    db_engine.dispose()


@pytest.fixture
def services():
    return build_services(TEST_ENGINE)


def _install_overrides(services):
    atd, lab = services
    app.dependency_overrides[get_session] = _override_get_session
    app.dependency_overrides[get_atd] = lambda: atd
    app.dependency_overrides[get_lab] = lambda: lab


@pytest.fixture
def client(services):
    _install_overrides(services)
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
async def async_client(services):
    _install_overrides(services)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as test_client:
        yield test_client
    app.dependency_overrides.clear()


# --- Service-level fixtures (no HTTP) ---


def fast_locks() -> LockManager:
    return LockManager(timeout=0.2, attempts=2, backoff=0.01)


@pytest.fixture
def memory_repo():
    return InMemoryRepository()


@pytest.fixture
def atd(memory_repo):
    return AtdEngine(memory_repo, fast_locks())


@pytest.fixture
def lab(atd):
    return LabOrderTracker(atd.repository, atd.locks, atd.ledger)


@pytest.fixture
def make_patient(memory_repo):
    def _make(name: str = "Patient One") -> int:
        patient = memory_repo.transaction(lambda uow: uow.put(Patient(name=name, age=40, gender="Female")))
        return patient.id

    return _make


# --- HTTP fixtures ---


@pytest.fixture
def seeded_users():
    users = {
        "doctor": {
            "name": "Doctor",
            "email": "doctor@wardflow.local",
            "password": "doctor123",
            "role": UserRole.DOCTOR,
            "department": "Medicine",
        },
        "nurse": {
            "name": "Nurse",
            "email": "nurse@wardflow.local",
            "password": "nurse123",
            "role": UserRole.NURSE,
            "department": "Nursing",
        },
        "lab_tech": {
            "name": "Lab Tech",
            "email": "lab@wardflow.local",
            "password": "lab123",
            "role": UserRole.LAB_TECH,
            "department": "Laboratory",
        },
        "admin": {
            "name": "Admin",
            "email": "admin@wardflow.local",
            "password": "admin123",
            "role": UserRole.ADMIN,
            "department": "Operations",
        },
    }

    with Session(TEST_ENGINE) as session:
        for spec in users.values():
            session.add(
                User(
                    name=spec["name"],
                    email=spec["email"],
                    password_hash=hash_password(spec["password"]),
                    role=spec["role"],
                    department=spec["department"],
                )
            )
        session.commit()

    return users


def _login(client: TestClient, email: str, password: str) -> dict[str, str]:
    response = client.post("/auth/login", json={"email": email, "password": password})
    assert response.status_code == 200, response.text
    token = response.json()["access_token"]
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def doctor_headers(client: TestClient, seeded_users):
    return _login(client, seeded_users["doctor"]["email"], seeded_users["doctor"]["password"])


@pytest.fixture
def nurse_headers(client: TestClient, seeded_users):
    return _login(client, seeded_users["nurse"]["email"], seeded_users["nurse"]["password"])


@pytest.fixture
def lab_headers(client: TestClient, seeded_users):
    return _login(client, seeded_users["lab_tech"]["email"], seeded_users["lab_tech"]["password"])


@pytest.fixture
def admin_headers(client: TestClient, seeded_users):
    return _login(client, seeded_users["admin"]["email"], seeded_users["admin"]["password"])


@pytest.fixture
def patient_id(client: TestClient, doctor_headers):
    response = client.post(
        "/patients",
        headers=doctor_headers,
        json={"name": "Patient One", "age": 44, "gender": "Female"},
    )
    assert response.status_code == 201, response.text
    return response.json()["id"]


@pytest.fixture
def icu(client: TestClient, admin_headers):
    response = client.post("/wards", headers=admin_headers, json={"name": "ICU", "bed_count": 2})
    assert response.status_code == 201, response.text
    return response.json()
