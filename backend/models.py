from datetime import UTC, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import Column, Index, JSON, text
from sqlmodel import SQLModel, Field


def utcnow() -> datetime:
    return datetime.now(UTC)


class UserRole(str, Enum):
    DOCTOR = "doctor"
    NURSE = "nurse"
    LAB_TECH = "lab_tech"
    ADMIN = "admin"


class BedStatus(str, Enum):
    FREE = "FREE"
    OCCUPIED = "OCCUPIED"


class AdmissionState(str, Enum):
    ACTIVE = "ACTIVE"
    DISCHARGED = "DISCHARGED"


class LabOrderState(str, Enum):
    ORDERED = "ORDERED"
    RESULTED = "RESULTED"
    CANCELLED = "CANCELLED"


class User(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    email: str = Field(unique=True, index=True)
    password_hash: str
    role: UserRole
    department: str = ""
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)


class Patient(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True)
    age: int
    gender: str
    blood_group: Optional[str] = None
    contact: Optional[str] = None
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)


class Ward(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(unique=True, index=True)
    capacity: int = 0
    created_at: datetime = Field(default_factory=utcnow)


class Bed(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    ward_id: int = Field(foreign_key="ward.id", index=True)
    label: str
    status: BedStatus = Field(default=BedStatus.FREE, index=True)
    # Unique: an admission can hold at most one bed.
    occupant_admission_id: Optional[int] = Field(default=None, unique=True)
    updated_at: datetime = Field(default_factory=utcnow)


class Admission(SQLModel, table=True):
    __table_args__ = (
        Index(
            "ux_admission_one_active_per_patient",
            "patient_id",
            unique=True,
            sqlite_where=text("state = 'ACTIVE'"),
            postgresql_where=text("state = 'ACTIVE'"),
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    patient_id: int = Field(foreign_key="patient.id", index=True)
    admitting_ward_id: int = Field(foreign_key="ward.id")
    admitting_bed_id: int = Field(foreign_key="bed.id")
    current_ward_id: Optional[int] = Field(default=None, foreign_key="ward.id", index=True)
    current_bed_id: Optional[int] = Field(default=None, foreign_key="bed.id")
    state: AdmissionState = Field(default=AdmissionState.ACTIVE, index=True)
    notes: str = ""
    discharge_notes: str = ""
    admitted_by: Optional[int] = Field(default=None, foreign_key="user.id")
    discharged_by: Optional[int] = Field(default=None, foreign_key="user.id")
    admitted_at: datetime = Field(default_factory=utcnow)
    discharged_at: Optional[datetime] = None


class TransferRecord(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    admission_id: int = Field(foreign_key="admission.id", index=True)
    from_bed_id: int = Field(foreign_key="bed.id")
    to_bed_id: int = Field(foreign_key="bed.id")
    from_ward_id: int = Field(foreign_key="ward.id")
    to_ward_id: int = Field(foreign_key="ward.id")
    reason: str = ""
    transferred_by: Optional[int] = Field(default=None, foreign_key="user.id")
    created_at: datetime = Field(default_factory=utcnow)


class LabOrder(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    admission_id: int = Field(foreign_key="admission.id", index=True)
    test_type: str
    state: LabOrderState = Field(default=LabOrderState.ORDERED, index=True)
    ordered_by: Optional[int] = Field(default=None, foreign_key="user.id")
    ordered_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class LabResult(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    # One result per order.
    lab_order_id: int = Field(foreign_key="laborder.id", unique=True)
    payload: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    recorded_by: Optional[int] = Field(default=None, foreign_key="user.id")
    recorded_at: datetime = Field(default_factory=utcnow)
