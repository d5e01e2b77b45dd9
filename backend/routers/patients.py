from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import func
from sqlmodel import Session, select

from database import get_atd, get_session
from models import Patient, User, UserRole
from services.atd import AtdEngine
from services.auth import get_current_user, require_roles

router = APIRouter(prefix="/patients", tags=["patients"])

requires_clinical_staff = require_roles(UserRole.DOCTOR, UserRole.NURSE, UserRole.ADMIN)


class PatientCreate(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    age: int = Field(ge=0, le=130)
    gender: str = Field(min_length=1, max_length=32)
    blood_group: Optional[str] = Field(default=None, max_length=10)
    contact: Optional[str] = Field(default=None, max_length=64)


class PatientUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    age: Optional[int] = Field(default=None, ge=0, le=130)
    gender: Optional[str] = Field(default=None, min_length=1, max_length=32)
    blood_group: Optional[str] = Field(default=None, max_length=10)
    contact: Optional[str] = Field(default=None, max_length=64)


def _get_patient_or_404(patient_id: int, session: Session) -> Patient:
    patient = session.get(Patient, patient_id)
    if not patient:
        raise HTTPException(404, "Patient not found")
    return patient


@router.post("", status_code=201)
def create_patient(
    body: PatientCreate,
    session: Session = Depends(get_session),
    _current_user: User = Depends(requires_clinical_staff),
):
    name = body.name.strip()
    gender = body.gender.strip()
    if not name:
        raise HTTPException(422, "Patient name cannot be empty")
    if not gender:
        raise HTTPException(422, "Gender cannot be empty")

    patient = Patient(
        name=name,
        age=body.age,
        gender=gender,
        blood_group=body.blood_group,
        contact=body.contact,
    )
    session.add(patient)
    session.commit()
    session.refresh(patient)
    return patient


@router.get("")
def list_patients(
    session: Session = Depends(get_session),
    _current_user: User = Depends(get_current_user),
    include_inactive: bool = Query(False),
    search: str = Query("", max_length=120),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=100),
):
    query = select(Patient)
    if not include_inactive:
        query = query.where(Patient.is_active == True)  # noqa: E712
    if search.strip():
        query = query.where(Patient.name.contains(search.strip()))  # type: ignore[union-attr]
    total = session.exec(select(func.count()).select_from(query.subquery())).one()
    patients = session.exec(
        query.order_by(Patient.created_at.asc(), Patient.id.asc())  # type: ignore[union-attr]
        .offset((page - 1) * page_size)
        .limit(page_size)
    ).all()
    return {"patients": patients, "total": total, "page": page, "page_size": page_size}


@router.get("/{patient_id}")
def get_patient(
    patient_id: int,
    session: Session = Depends(get_session),
    atd: AtdEngine = Depends(get_atd),
    _current_user: User = Depends(get_current_user),
):
    patient = _get_patient_or_404(patient_id, session)
    result = patient.model_dump()
    result["active_admission"] = atd.find_active_admission(patient_id)
    return result


@router.get("/{patient_id}/admissions")
def patient_admissions(
    patient_id: int,
    session: Session = Depends(get_session),
    atd: AtdEngine = Depends(get_atd),
    _current_user: User = Depends(get_current_user),
):
    _get_patient_or_404(patient_id, session)
    return atd.list_patient_admissions(patient_id)


@router.patch("/{patient_id}")
def update_patient(
    patient_id: int,
    body: PatientUpdate,
    session: Session = Depends(get_session),
    _current_user: User = Depends(requires_clinical_staff),
):
    patient = _get_patient_or_404(patient_id, session)
    for field, value in body.model_dump(exclude_unset=True).items():
        setattr(patient, field, value.strip() if isinstance(value, str) else value)

    session.add(patient)
    session.commit()
    session.refresh(patient)
    return patient


@router.delete("/{patient_id}")
def deactivate_patient(
    patient_id: int,
    atd: AtdEngine = Depends(get_atd),
    _current_user: User = Depends(require_roles(UserRole.DOCTOR, UserRole.ADMIN)),
):
    atd.deactivate_patient(patient_id)
    return {"detail": "Patient deactivated"}
