from __future__ import annotations

import logging
from typing import Optional

from errors import NotFoundError, StateError, ValidationError
from models import Admission, AdmissionState, LabOrder, LabOrderState, LabResult, utcnow
from repository import Repository, UnitOfWork, run_atomically
from services.ledger import AdmissionLedger
from services.locks import LockManager, admission_key, lab_order_key
from state_machine import LAB_ORDER, validate_transition

logger = logging.getLogger("wardflow.lab")


class LabOrderTracker:
    def __init__(
        self,
        repository: Repository,
        locks: Optional[LockManager] = None,
        ledger: Optional[AdmissionLedger] = None,
    ):
        self.repository = repository
        self.locks = locks or LockManager()
        self.ledger = ledger or AdmissionLedger()

    def _run(self, fn):
        return run_atomically(self.repository, fn)

    def _get_order(self, uow: UnitOfWork, order_id: int) -> LabOrder:
        order = uow.get(LabOrder, order_id)
        if not order:
            raise NotFoundError(f"Lab order #{order_id} not found")
        return order

    def order(self, admission_id: int, test_type: str, *, ordered_by: Optional[int] = None) -> LabOrder:
        test_type = (test_type or "").strip()
        if not test_type:
            raise ValidationError("Test type cannot be empty")

        def _order(uow: UnitOfWork) -> LabOrder:
            admission = self.ledger.get(uow, admission_id)
            if admission.state != AdmissionState.ACTIVE:
                raise StateError(f"Cannot order tests for admission #{admission_id}: it is {admission.state.value}")
            return uow.put(LabOrder(admission_id=admission_id, test_type=test_type, ordered_by=ordered_by))

        # Same lock as discharge, so an order cannot slip in after the stay closes.
        with self.locks.hold(admission_key(admission_id)):
            order = self._run(_order)

        logger.info("[LAB] Order #%s '%s' for admission #%s", order.id, test_type, admission_id)
        return order

    def record_result(self, order_id: int, payload: dict, *, recorded_by: Optional[int] = None) -> LabResult:
        if not isinstance(payload, dict):
            raise ValidationError("Result payload must be an object")

        def _record(uow: UnitOfWork) -> LabResult:
            order = self._get_order(uow, order_id)
            validate_transition(LAB_ORDER, order.state, LabOrderState.RESULTED)
            order.state = LabOrderState.RESULTED
            order.updated_at = utcnow()
            uow.put(order)
            return uow.put(LabResult(lab_order_id=order_id, payload=payload, recorded_by=recorded_by))

        with self.locks.hold(lab_order_key(order_id)):
            result = self._run(_record)

        logger.info("[LAB] Result #%s recorded for order #%s", result.id, order_id)
        return result

    def cancel(self, order_id: int) -> LabOrder:
        def _cancel(uow: UnitOfWork) -> LabOrder:
            order = self._get_order(uow, order_id)
            validate_transition(LAB_ORDER, order.state, LabOrderState.CANCELLED)
            order.state = LabOrderState.CANCELLED
            order.updated_at = utcnow()
            return uow.put(order)

        with self.locks.hold(lab_order_key(order_id)):
            order = self._run(_cancel)

        logger.info("[LAB] Order #%s cancelled", order_id)
        return order

    def get_order(self, order_id: int) -> LabOrder:
        return self._run(lambda uow: self._get_order(uow, order_id))

    def list_orders(self, admission_id: int) -> list[LabOrder]:
        def _list(uow: UnitOfWork) -> list[LabOrder]:
            if not uow.get(Admission, admission_id):
                raise NotFoundError(f"Admission #{admission_id} not found")
            return uow.query(LabOrder, admission_id=admission_id)

        return self._run(_list)

    def get_result(self, result_id: int) -> LabResult:
        def _get(uow: UnitOfWork) -> LabResult:
            result = uow.get(LabResult, result_id)
            if not result:
                raise NotFoundError(f"Lab result #{result_id} not found")
            return result

        return self._run(_get)

    def result_for_order(self, order_id: int) -> Optional[LabResult]:
        def _find(uow: UnitOfWork) -> Optional[LabResult]:
            self._get_order(uow, order_id)
            results = uow.query(LabResult, lab_order_id=order_id)
            return results[0] if results else None

        return self._run(_find)
