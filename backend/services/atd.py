"""Admission / transfer / discharge orchestration.

Each public mutation takes the locks for every bed and admission it touches
(in the global order defined by ``services.locks``), then runs its sub-steps
as a single unit of work. Either all sub-steps commit or none do, so a bed is
Occupied exactly when an Active admission names it as its current bed.
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import Optional

from errors import ConflictError, NotFoundError, StateError, ValidationError
from models import Admission, AdmissionState, Bed, BedStatus, Patient, TransferRecord, Ward
from repository import Repository, UnitOfWork, run_atomically
from services.ledger import AdmissionLedger
from services.locks import LockManager, admission_key, bed_key, patient_key, ward_name_key
from services.registry import AvailableBeds, BedRegistry
from state_machine import ADMISSION, validate_transition

logger = logging.getLogger("wardflow.atd")


class AtdEngine:
    def __init__(
        self,
        repository: Repository,
        locks: Optional[LockManager] = None,
        registry: Optional[BedRegistry] = None,
        ledger: Optional[AdmissionLedger] = None,
    ):
        self.repository = repository
        self.locks = locks or LockManager()
        self.registry = registry or BedRegistry()
        self.ledger = ledger or AdmissionLedger()

    def _run(self, fn):
        return run_atomically(self.repository, fn)

    def _peek_active(self, admission_id: int) -> Admission:
        admission = self._run(lambda uow: self.ledger.get(uow, admission_id))
        if admission.state != AdmissionState.ACTIVE:
            raise StateError(f"Admission #{admission_id} is {admission.state.value}")
        return admission

    @staticmethod
    def _ensure_unmoved(admission: Admission, expected_bed_id: Optional[int]):
        if admission.state != AdmissionState.ACTIVE:
            raise StateError(f"Admission #{admission.id} is {admission.state.value}")
        if admission.current_bed_id != expected_bed_id:
            raise ConflictError(f"Admission #{admission.id} was moved by another request; retry")

    # --- Ward / bed inventory ---

    def register_ward(self, name: str, bed_count: int, label_prefix: str = "B") -> Ward:
        with self.locks.hold(ward_name_key(name)):
            ward = self._run(lambda uow: self.registry.register_ward(uow, name, bed_count, label_prefix))
        logger.info("[WARD] Registered '%s' (#%s) with %s beds", ward.name, ward.id, bed_count)
        return ward

    # --- Patients ---

    def deactivate_patient(self, patient_id: int) -> Patient:
        """Soft-delete a patient; refused while the patient holds an Active admission.

        Runs under the patient lock that ``admit`` also takes, so a concurrent
        admission either lands first (and this raises) or sees the patient inactive.
        """

        def _deactivate(uow: UnitOfWork) -> Patient:
            patient = uow.get(Patient, patient_id)
            if not patient:
                raise NotFoundError(f"Patient #{patient_id} not found")
            active = self.ledger.find_active_by_patient(uow, patient_id)
            if active:
                raise ConflictError(
                    f"Patient #{patient_id} is admitted (admission #{active.id}); discharge first"
                )
            patient.is_active = False
            return uow.put(patient)

        with self.locks.hold(patient_key(patient_id)):
            patient = self._run(_deactivate)

        logger.info("[PATIENT] Deactivated patient #%s", patient_id)
        return patient

    # --- Lifecycle ---

    def admit(
        self,
        patient_id: int,
        bed_id: int,
        *,
        notes: str = "",
        admitted_by: Optional[int] = None,
    ) -> Admission:
        def _admit(uow: UnitOfWork) -> Admission:
            patient = uow.get(Patient, patient_id)
            if not patient or not patient.is_active:
                raise NotFoundError(f"Patient #{patient_id} not found")
            bed = self.registry.get_bed(uow, bed_id)
            admission = self.ledger.open(uow, patient_id, bed, notes=notes.strip(), admitted_by=admitted_by)
            self.registry.occupy(uow, bed_id, admission.id)
            return admission

        with self.locks.hold(bed_key(bed_id), patient_key(patient_id)):
            admission = self._run(_admit)

        logger.info("[ADMIT] Admission #%s: patient #%s -> bed #%s", admission.id, patient_id, bed_id)
        return admission

    def transfer(
        self,
        admission_id: int,
        to_bed_id: int,
        *,
        reason: str = "",
        transferred_by: Optional[int] = None,
    ) -> Admission:
        from_bed_id = self._peek_active(admission_id).current_bed_id
        if from_bed_id == to_bed_id:
            raise ValidationError("Destination bed must differ from the current bed")

        def _transfer(uow: UnitOfWork) -> Admission:
            admission = self.ledger.get(uow, admission_id)
            self._ensure_unmoved(admission, from_bed_id)
            to_bed = self.registry.get_bed(uow, to_bed_id)
            from_bed = self.registry.release(uow, from_bed_id)
            self.registry.occupy(uow, to_bed_id, admission_id)
            admission = self.ledger.relocate(uow, admission_id, to_bed)
            uow.put(
                TransferRecord(
                    admission_id=admission_id,
                    from_bed_id=from_bed.id,
                    to_bed_id=to_bed.id,
                    from_ward_id=from_bed.ward_id,
                    to_ward_id=to_bed.ward_id,
                    reason=reason.strip(),
                    transferred_by=transferred_by,
                )
            )
            return admission

        with self.locks.hold(bed_key(from_bed_id), bed_key(to_bed_id), admission_key(admission_id)):
            admission = self._run(_transfer)

        logger.info("[TRANSFER] Admission #%s: bed #%s -> bed #%s", admission_id, from_bed_id, to_bed_id)
        return admission

    def discharge(
        self,
        admission_id: int,
        *,
        notes: str = "",
        discharged_by: Optional[int] = None,
    ) -> Admission:
        peek = self._run(lambda uow: self.ledger.get(uow, admission_id))
        validate_transition(ADMISSION, peek.state, AdmissionState.DISCHARGED)
        bed_id = peek.current_bed_id

        def _discharge(uow: UnitOfWork) -> Admission:
            admission = self.ledger.get(uow, admission_id)
            validate_transition(ADMISSION, admission.state, AdmissionState.DISCHARGED)
            self._ensure_unmoved(admission, bed_id)
            self.registry.release(uow, bed_id)
            return self.ledger.close(uow, admission_id, notes=notes.strip(), discharged_by=discharged_by)

        with self.locks.hold(bed_key(bed_id), admission_key(admission_id)):
            admission = self._run(_discharge)

        logger.info("[DISCHARGE] Admission #%s released bed #%s", admission_id, bed_id)
        return admission

    # --- Reads ---

    def get_bed(self, bed_id: int) -> Bed:
        return self._run(lambda uow: self.registry.get_bed(uow, bed_id))

    def get_ward(self, ward_id: int) -> Ward:
        return self._run(lambda uow: self.registry.get_ward(uow, ward_id))

    def list_wards(self) -> list[Ward]:
        return self._run(self.registry.list_wards)

    def list_beds(self, ward_id: int) -> list[Bed]:
        return self._run(lambda uow: self.registry.list_beds(uow, ward_id))

    def ward_census(self, ward_id: int) -> dict:
        return self._run(lambda uow: self.registry.ward_census(uow, ward_id))

    def available_beds(self, ward_id: int) -> AvailableBeds:
        self.get_ward(ward_id)

        def _page(after_id, limit):
            return self._run(lambda uow: self.registry.free_beds_page(uow, ward_id, after_id, limit))

        return AvailableBeds(_page)

    def get_admission(self, admission_id: int) -> Admission:
        return self._run(lambda uow: self.ledger.get(uow, admission_id))

    def find_active_admission(self, patient_id: int) -> Optional[Admission]:
        return self._run(lambda uow: self.ledger.find_active_by_patient(uow, patient_id))

    def list_admissions_by_ward(self, ward_id: int) -> list[Admission]:
        def _list(uow: UnitOfWork) -> list[Admission]:
            self.registry.get_ward(uow, ward_id)
            return self.ledger.list_by_ward(uow, ward_id)

        return self._run(_list)

    def list_patient_admissions(self, patient_id: int) -> list[Admission]:
        return self._run(lambda uow: self.ledger.list_by_patient(uow, patient_id))

    def list_transfers(self, admission_id: int) -> list[TransferRecord]:
        def _list(uow: UnitOfWork) -> list[TransferRecord]:
            self.ledger.get(uow, admission_id)
            return uow.query(TransferRecord, admission_id=admission_id)

        return self._run(_list)

    def check_consistency(self) -> list[str]:
        """List violations of the bed/admission invariants. Empty means consistent.

        Reads are not locked, so run it against a quiescent store or treat a
        non-empty answer from a busy one as advisory.
        """

        def _check(uow: UnitOfWork) -> list[str]:
            problems: list[str] = []
            beds = uow.query(Bed)
            active = {admission.id: admission for admission in uow.query(Admission, state=AdmissionState.ACTIVE)}

            for bed in beds:
                if bed.status == BedStatus.FREE:
                    if bed.occupant_admission_id is not None:
                        problems.append(f"Bed #{bed.id} is free but names admission #{bed.occupant_admission_id}")
                    continue
                admission = active.get(bed.occupant_admission_id)
                if admission is None:
                    problems.append(
                        f"Bed #{bed.id} is occupied by admission #{bed.occupant_admission_id}, which is not active"
                    )
                elif admission.current_bed_id != bed.id:
                    problems.append(
                        f"Bed #{bed.id} is occupied by admission #{admission.id}, "
                        f"whose current bed is #{admission.current_bed_id}"
                    )

            occupied = {bed.occupant_admission_id: bed for bed in beds if bed.status == BedStatus.OCCUPIED}
            for admission in active.values():
                bed = occupied.get(admission.id)
                if bed is None or bed.id != admission.current_bed_id:
                    problems.append(
                        f"Active admission #{admission.id} claims bed #{admission.current_bed_id}, "
                        "which it does not occupy"
                    )

            per_patient = Counter(admission.patient_id for admission in active.values())
            for patient_id, count in sorted(per_patient.items()):
                if count > 1:
                    problems.append(f"Patient #{patient_id} has {count} active admissions")

            return problems

        return self._run(_check)
