from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from database import get_lab
from models import User, UserRole
from services.auth import get_current_user, require_roles
from services.lab import LabOrderTracker

tests_router = APIRouter(prefix="/lab/tests", tags=["lab"])
results_router = APIRouter(prefix="/lab/results", tags=["lab"])


class LabOrderCreate(BaseModel):
    admission_id: int
    test_type: str = Field(min_length=1, max_length=120)


class LabResultCreate(BaseModel):
    lab_order_id: int
    payload: dict[str, Any] = Field(default_factory=dict)


def _order_response(lab: LabOrderTracker, order_id: int) -> dict:
    data = lab.get_order(order_id).model_dump()
    data["result"] = lab.result_for_order(order_id)
    return data


@tests_router.post("", status_code=201)
def order_test(
    body: LabOrderCreate,
    lab: LabOrderTracker = Depends(get_lab),
    current_user: User = Depends(require_roles(UserRole.DOCTOR, UserRole.ADMIN)),
):
    return lab.order(body.admission_id, body.test_type, ordered_by=current_user.id)


@tests_router.get("")
def list_tests(
    admission_id: int,
    lab: LabOrderTracker = Depends(get_lab),
    _current_user: User = Depends(get_current_user),
):
    return lab.list_orders(admission_id)


@tests_router.get("/{order_id}")
def get_test(
    order_id: int,
    lab: LabOrderTracker = Depends(get_lab),
    _current_user: User = Depends(get_current_user),
):
    return _order_response(lab, order_id)


@tests_router.post("/{order_id}/cancel")
def cancel_test(
    order_id: int,
    lab: LabOrderTracker = Depends(get_lab),
    _current_user: User = Depends(require_roles(UserRole.DOCTOR, UserRole.ADMIN)),
):
    return lab.cancel(order_id)


@results_router.post("", status_code=201)
def record_result(
    body: LabResultCreate,
    lab: LabOrderTracker = Depends(get_lab),
    current_user: User = Depends(require_roles(UserRole.LAB_TECH, UserRole.ADMIN)),
):
    return lab.record_result(body.lab_order_id, body.payload, recorded_by=current_user.id)


@results_router.get("/{result_id}")
def get_result(
    result_id: int,
    lab: LabOrderTracker = Depends(get_lab),
    _current_user: User = Depends(get_current_user),
):
    return lab.get_result(result_id)
