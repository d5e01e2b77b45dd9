from __future__ import annotations

from typing import Optional

from errors import ConflictError, NotFoundError, StateError
from models import Admission, AdmissionState, Bed, utcnow
from repository import UnitOfWork
from state_machine import ADMISSION, validate_transition


class AdmissionLedger:
    """Admission records and their lifecycle. Mutated only through the ATD engine."""

    def get(self, uow: UnitOfWork, admission_id: int) -> Admission:
        admission = uow.get(Admission, admission_id)
        if not admission:
            raise NotFoundError(f"Admission #{admission_id} not found")
        return admission

    def find_active_by_patient(self, uow: UnitOfWork, patient_id: int) -> Optional[Admission]:
        active = uow.query(Admission, patient_id=patient_id, state=AdmissionState.ACTIVE)
        return active[0] if active else None

    def open(
        self,
        uow: UnitOfWork,
        patient_id: int,
        bed: Bed,
        *,
        notes: str = "",
        admitted_by: Optional[int] = None,
    ) -> Admission:
        existing = self.find_active_by_patient(uow, patient_id)
        if existing:
            raise ConflictError(
                f"Patient #{patient_id} already has an active admission (#{existing.id})"
            )
        admission = Admission(
            patient_id=patient_id,
            admitting_ward_id=bed.ward_id,
            admitting_bed_id=bed.id,
            current_ward_id=bed.ward_id,
            current_bed_id=bed.id,
            state=AdmissionState.ACTIVE,
            notes=notes,
            admitted_by=admitted_by,
        )
        return uow.put(admission)

    def relocate(self, uow: UnitOfWork, admission_id: int, bed: Bed) -> Admission:
        admission = self.get(uow, admission_id)
        if admission.state != AdmissionState.ACTIVE:
            raise StateError(f"Admission #{admission_id} is {admission.state.value}; it cannot be relocated")
        admission.current_bed_id = bed.id
        admission.current_ward_id = bed.ward_id
        return uow.put(admission)

    def close(
        self,
        uow: UnitOfWork,
        admission_id: int,
        *,
        notes: str = "",
        discharged_by: Optional[int] = None,
    ) -> Admission:
        admission = self.get(uow, admission_id)
        validate_transition(ADMISSION, admission.state, AdmissionState.DISCHARGED)
        admission.state = AdmissionState.DISCHARGED
        admission.discharged_at = utcnow()
        admission.discharge_notes = notes
        admission.discharged_by = discharged_by
        admission.current_bed_id = None
        admission.current_ward_id = None
        return uow.put(admission)

    def list_by_ward(self, uow: UnitOfWork, ward_id: int) -> list[Admission]:
        return uow.query(Admission, current_ward_id=ward_id, state=AdmissionState.ACTIVE)

    def list_by_patient(self, uow: UnitOfWork, patient_id: int) -> list[Admission]:
        return uow.query(Admission, patient_id=patient_id)
