from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from database import get_atd
from models import User, UserRole
from services.atd import AtdEngine
from services.auth import get_current_user, require_roles

router = APIRouter(prefix="/wards", tags=["wards"])


class WardCreate(BaseModel):
    name: str = Field(min_length=1, max_length=80)
    bed_count: int
    label_prefix: str = Field(default="B", min_length=1, max_length=8)


@router.post("", status_code=201)
def register_ward(
    body: WardCreate,
    atd: AtdEngine = Depends(get_atd),
    _current_user: User = Depends(require_roles(UserRole.ADMIN)),
):
    ward = atd.register_ward(body.name, body.bed_count, body.label_prefix.strip() or "B")
    result = ward.model_dump()
    result["beds"] = atd.list_beds(ward.id)
    return result


@router.get("")
def list_wards(
    atd: AtdEngine = Depends(get_atd),
    _current_user: User = Depends(get_current_user),
):
    return [atd.ward_census(ward.id) for ward in atd.list_wards()]


@router.get("/beds/{bed_id}")
def get_bed(
    bed_id: int,
    atd: AtdEngine = Depends(get_atd),
    _current_user: User = Depends(get_current_user),
):
    return atd.get_bed(bed_id)


@router.get("/{ward_id}")
def get_ward(
    ward_id: int,
    atd: AtdEngine = Depends(get_atd),
    _current_user: User = Depends(get_current_user),
):
    result = atd.get_ward(ward_id).model_dump()
    result["beds"] = atd.list_beds(ward_id)
    return result


@router.get("/{ward_id}/beds")
def list_beds(
    ward_id: int,
    atd: AtdEngine = Depends(get_atd),
    _current_user: User = Depends(get_current_user),
):
    return atd.list_beds(ward_id)


@router.get("/{ward_id}/beds/available")
def available_beds(
    ward_id: int,
    limit: int = Query(50, ge=1, le=500),
    atd: AtdEngine = Depends(get_atd),
    _current_user: User = Depends(get_current_user),
):
    beds = []
    for bed in atd.available_beds(ward_id):
        beds.append(bed)
        if len(beds) >= limit:
            break
    return beds


@router.get("/{ward_id}/census")
def ward_census(
    ward_id: int,
    atd: AtdEngine = Depends(get_atd),
    _current_user: User = Depends(get_current_user),
):
    return atd.ward_census(ward_id)


@router.get("/{ward_id}/admissions")
def ward_admissions(
    ward_id: int,
    atd: AtdEngine = Depends(get_atd),
    _current_user: User = Depends(get_current_user),
):
    return atd.list_admissions_by_ward(ward_id)
