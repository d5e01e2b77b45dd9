import os
from pathlib import Path

from fastapi import Request
from sqlalchemy import inspect
from sqlmodel import SQLModel, Session, create_engine

DB_FILE = Path(os.getenv("WARDFLOW_DB_FILE", str(Path(__file__).resolve().parent / "wardflow.db")))
DATABASE_URL = f"sqlite:///{DB_FILE}"

engine = create_engine(DATABASE_URL, echo=False, connect_args={"check_same_thread": False})


REQUIRED_COLUMNS = {
    "user": {"id", "name", "email", "password_hash", "role", "department", "is_active", "created_at"},
    "patient": {"id", "name", "age", "gender", "contact", "is_active", "created_at"},
    "ward": {"id", "name", "capacity", "created_at"},
    "bed": {"id", "ward_id", "label", "status", "occupant_admission_id", "updated_at"},
    "admission": {
        "id",
        "patient_id",
        "admitting_ward_id",
        "admitting_bed_id",
        "current_ward_id",
        "current_bed_id",
        "state",
        "admitted_at",
        "discharged_at",
    },
    "transferrecord": {"id", "admission_id", "from_bed_id", "to_bed_id", "created_at"},
    "laborder": {"id", "admission_id", "test_type", "state", "ordered_at"},
    "labresult": {"id", "lab_order_id", "payload", "recorded_at"},
}


def _schema_needs_rebuild() -> bool:
    inspector = inspect(engine)
    existing_tables = set(inspector.get_table_names())

    for table_name, required_cols in REQUIRED_COLUMNS.items():
        if table_name not in existing_tables:
            continue
        existing_cols = {col["name"] for col in inspector.get_columns(table_name)}
        if not required_cols.issubset(existing_cols):
            return True

    return False


def create_db():
    if _schema_needs_rebuild():
        print("[DB] Schema mismatch detected. Rebuilding local SQLite schema.")
        SQLModel.metadata.drop_all(engine)
    SQLModel.metadata.create_all(engine)


def get_session():
    with Session(engine) as session:
        yield session


def get_atd(request: Request):
    """The lifecycle engine built at startup (see main.lifespan)."""
    return request.app.state.atd


def get_lab(request: Request):
    return request.app.state.lab
