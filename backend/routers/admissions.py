from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from database import get_atd
from models import User, UserRole
from services.atd import AtdEngine
from services.auth import get_current_user, require_roles

router = APIRouter(prefix="/admissions", tags=["admissions"])

requires_bed_staff = require_roles(UserRole.DOCTOR, UserRole.NURSE, UserRole.ADMIN)


class AdmitRequest(BaseModel):
    patient_id: int
    bed_id: int
    notes: str = Field(default="", max_length=2000)


@router.post("", status_code=201)
def admit_patient(
    body: AdmitRequest,
    atd: AtdEngine = Depends(get_atd),
    current_user: User = Depends(requires_bed_staff),
):
    return atd.admit(body.patient_id, body.bed_id, notes=body.notes, admitted_by=current_user.id)


@router.get("")
def list_admissions(
    ward_id: int,
    atd: AtdEngine = Depends(get_atd),
    _current_user: User = Depends(get_current_user),
):
    return atd.list_admissions_by_ward(ward_id)


@router.get("/consistency")
def consistency_report(
    atd: AtdEngine = Depends(get_atd),
    _current_user: User = Depends(require_roles(UserRole.ADMIN)),
):
    problems = atd.check_consistency()
    return {"consistent": not problems, "problems": problems}


@router.get("/{admission_id}")
def get_admission(
    admission_id: int,
    atd: AtdEngine = Depends(get_atd),
    _current_user: User = Depends(get_current_user),
):
    return atd.get_admission(admission_id)


@router.get("/{admission_id}/transfers")
def admission_transfers(
    admission_id: int,
    atd: AtdEngine = Depends(get_atd),
    _current_user: User = Depends(get_current_user),
):
    return atd.list_transfers(admission_id)
