from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from database import get_atd
from models import User, UserRole
from services.atd import AtdEngine
from services.auth import get_current_user, require_roles

router = APIRouter(prefix="/transfers", tags=["transfers"])


class TransferRequest(BaseModel):
    admission_id: int
    to_bed_id: int
    reason: str = Field(default="", max_length=2000)


@router.post("")
def transfer_patient(
    body: TransferRequest,
    atd: AtdEngine = Depends(get_atd),
    current_user: User = Depends(require_roles(UserRole.DOCTOR, UserRole.NURSE, UserRole.ADMIN)),
):
    admission = atd.transfer(
        body.admission_id,
        body.to_bed_id,
        reason=body.reason,
        transferred_by=current_user.id,
    )
    result = admission.model_dump()
    result["transfer"] = atd.list_transfers(body.admission_id)[-1]
    return result


@router.get("")
def list_transfers(
    admission_id: int,
    atd: AtdEngine = Depends(get_atd),
    _current_user: User = Depends(get_current_user),
):
    return atd.list_transfers(admission_id)
