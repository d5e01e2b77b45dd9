from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from database import get_atd
from models import User, UserRole
from services.atd import AtdEngine
from services.auth import require_roles

router = APIRouter(prefix="/discharges", tags=["discharges"])


class DischargeRequest(BaseModel):
    admission_id: int
    notes: str = Field(default="", max_length=2000)


@router.post("")
def discharge_patient(
    body: DischargeRequest,
    atd: AtdEngine = Depends(get_atd),
    current_user: User = Depends(require_roles(UserRole.DOCTOR, UserRole.ADMIN)),
):
    return atd.discharge(body.admission_id, notes=body.notes, discharged_by=current_user.id)
