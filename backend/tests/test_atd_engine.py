import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from errors import ConflictError, NotFoundError, StateError, ValidationError
from models import Admission, AdmissionState, Bed, BedStatus, LabOrderState, Patient, Ward
from repository import InMemoryRepository, SqlRepository
from services.atd import AtdEngine
from services.lab import LabOrderTracker
from services.locks import LockManager, patient_key


def _snapshot(engine: AtdEngine):
    def _read(uow):
        beds = [(bed.id, bed.status, bed.occupant_admission_id) for bed in uow.query(Bed)]
        admissions = [(a.id, a.state, a.current_bed_id) for a in uow.query(Admission)]
        return beds, admissions

    return engine.repository.transaction(_read)


def test_icu_admit_transfer_lab_discharge_scenario(atd, lab, make_patient):
    ward = atd.register_ward("ICU", 2)
    b1, b2 = atd.list_beds(ward.id)
    assert (b1.label, b2.label) == ("B1", "B2")
    p1 = make_patient("P1")

    a1 = atd.admit(p1, b1.id)
    assert a1.state == AdmissionState.ACTIVE
    assert atd.get_bed(b1.id).status == BedStatus.OCCUPIED
    assert atd.get_bed(b1.id).occupant_admission_id == a1.id

    moved = atd.transfer(a1.id, b2.id, reason="step-down")
    assert moved.current_bed_id == b2.id
    assert atd.get_bed(b1.id).status == BedStatus.FREE
    assert atd.get_bed(b2.id).occupant_admission_id == a1.id
    [record] = atd.list_transfers(a1.id)
    assert (record.from_bed_id, record.to_bed_id, record.reason) == (b1.id, b2.id, "step-down")

    l1 = lab.order(a1.id, "CBC")
    assert l1.state == LabOrderState.ORDERED
    result = lab.record_result(l1.id, {"wbc": 6.1, "hgb": 13.2})
    assert result.lab_order_id == l1.id
    assert lab.get_order(l1.id).state == LabOrderState.RESULTED

    discharged = atd.discharge(a1.id)
    assert discharged.state == AdmissionState.DISCHARGED
    assert discharged.discharged_at is not None
    assert discharged.current_bed_id is None
    assert atd.get_bed(b2.id).status == BedStatus.FREE

    with pytest.raises(StateError):
        atd.discharge(a1.id)
    assert atd.check_consistency() == []


def test_second_discharge_fails_and_leaves_state_unchanged(atd, make_patient):
    ward = atd.register_ward("General", 1)
    [bed] = atd.list_beds(ward.id)
    admission = atd.admit(make_patient(), bed.id)

    atd.discharge(admission.id, notes="stable")
    after_first = _snapshot(atd)

    with pytest.raises(StateError):
        atd.discharge(admission.id, notes="again")
    assert _snapshot(atd) == after_first
    assert atd.get_admission(admission.id).discharge_notes == "stable"


def test_admit_conflicts(atd, make_patient):
    ward = atd.register_ward("ICU", 2)
    b1, b2 = atd.list_beds(ward.id)
    p1, p2 = make_patient("P1"), make_patient("P2")

    first = atd.admit(p1, b1.id)

    with pytest.raises(ConflictError):
        atd.admit(p1, b2.id)
    with pytest.raises(ConflictError):
        atd.admit(p2, b1.id)
    with pytest.raises(NotFoundError):
        atd.admit(999, b2.id)
    with pytest.raises(NotFoundError):
        atd.admit(p2, 999)

    assert atd.get_bed(b2.id).status == BedStatus.FREE
    assert atd.find_active_admission(p1).id == first.id
    assert atd.find_active_admission(p2) is None
    assert atd.check_consistency() == []


def test_transfer_guards(atd, make_patient):
    ward = atd.register_ward("ICU", 3)
    b1, b2, b3 = atd.list_beds(ward.id)
    a1 = atd.admit(make_patient("P1"), b1.id)
    a2 = atd.admit(make_patient("P2"), b2.id)

    with pytest.raises(ValidationError):
        atd.transfer(a1.id, b1.id)
    with pytest.raises(ConflictError):
        atd.transfer(a1.id, b2.id)
    with pytest.raises(NotFoundError):
        atd.transfer(a1.id, 404)
    with pytest.raises(NotFoundError):
        atd.transfer(404, b3.id)

    # Failed attempts leave the source bed held by its admission.
    assert atd.get_bed(b1.id).occupant_admission_id == a1.id
    assert atd.get_admission(a1.id).current_bed_id == b1.id

    atd.discharge(a2.id)
    with pytest.raises(StateError):
        atd.transfer(a2.id, b3.id)
    assert atd.check_consistency() == []


def test_admission_queries_by_ward(atd, make_patient):
    icu = atd.register_ward("ICU", 2)
    general = atd.register_ward("General", 2)
    icu_bed = atd.list_beds(icu.id)[0]
    general_bed = atd.list_beds(general.id)[0]

    a1 = atd.admit(make_patient("P1"), icu_bed.id)
    a2 = atd.admit(make_patient("P2"), general_bed.id)
    assert [a.id for a in atd.list_admissions_by_ward(icu.id)] == [a1.id]

    atd.transfer(a2.id, atd.list_beds(icu.id)[1].id)
    assert [a.id for a in atd.list_admissions_by_ward(icu.id)] == [a1.id, a2.id]
    assert atd.list_admissions_by_ward(general.id) == []
    assert [bed.id for bed in atd.available_beds(general.id)] == [bed.id for bed in atd.list_beds(general.id)]
    assert list(atd.available_beds(icu.id)) == []

    with pytest.raises(NotFoundError):
        atd.list_admissions_by_ward(999)
    with pytest.raises(NotFoundError):
        atd.available_beds(999)


def _fail_occupy_after_release(engine: AtdEngine, monkeypatch):
    real_occupy = engine.registry.occupy

    def _occupy(uow, bed_id, admission_id):
        if bed_id == 2:
            raise RuntimeError("simulated crash between release and occupy")
        return real_occupy(uow, bed_id, admission_id)

    monkeypatch.setattr(engine.registry, "occupy", _occupy)


def _seed_transfer_case(engine: AtdEngine):
    ward = engine.register_ward("ICU", 2)
    b1, b2 = engine.list_beds(ward.id)
    assert b2.id == 2
    patient = engine.repository.transaction(lambda uow: uow.put(Patient(name="P1", age=50, gender="Male")))
    return engine.admit(patient.id, b1.id), b1, b2


@pytest.mark.parametrize(
    "make_repository",
    [
        pytest.param(lambda db_engine: InMemoryRepository(), id="memory-atomic"),
        pytest.param(lambda db_engine: InMemoryRepository(atomic=False), id="memory-compensating"),
        pytest.param(lambda db_engine: SqlRepository(db_engine), id="sql"),
    ],
)
def test_interrupted_transfer_leaves_original_state(make_repository, sql_engine, monkeypatch):
    engine = AtdEngine(make_repository(sql_engine), LockManager(timeout=0.2, attempts=2, backoff=0.01))
    admission, b1, b2 = _seed_transfer_case(engine)
    before = _snapshot(engine)

    _fail_occupy_after_release(engine, monkeypatch)
    with pytest.raises(RuntimeError):
        engine.transfer(admission.id, b2.id)

    assert _snapshot(engine) == before
    assert engine.get_bed(b1.id).occupant_admission_id == admission.id
    assert engine.get_admission(admission.id).current_bed_id == b1.id
    assert engine.list_transfers(admission.id) == []
    assert engine.check_consistency() == []

    monkeypatch.undo()
    engine.transfer(admission.id, b2.id)
    assert engine.get_admission(admission.id).current_bed_id == b2.id
    assert engine.check_consistency() == []


def _add_patient(engine: AtdEngine, name: str) -> int:
    patient = engine.repository.transaction(lambda uow: uow.put(Patient(name=name, age=50, gender="Male")))
    return patient.id


@pytest.fixture(params=["memory", "sql-file"])
def threaded_repo(request):
    if request.param == "memory":
        return InMemoryRepository()
    return SqlRepository(request.getfixturevalue("file_engine"))


def test_parallel_admits_to_one_bed(threaded_repo):
    engine = AtdEngine(threaded_repo, LockManager(timeout=2.0, attempts=3, backoff=0.01))
    ward = engine.register_ward("ICU", 1)
    [bed] = engine.list_beds(ward.id)
    patients = [_add_patient(engine, f"P{n}") for n in range(12)]
    start = threading.Barrier(len(patients))

    def _admit(patient_id):
        start.wait()
        try:
            return engine.admit(patient_id, bed.id)
        except ConflictError as exc:
            return exc

    with ThreadPoolExecutor(max_workers=len(patients)) as pool:
        outcomes = list(pool.map(_admit, patients))

    admitted = [outcome for outcome in outcomes if isinstance(outcome, Admission)]
    conflicts = [outcome for outcome in outcomes if isinstance(outcome, ConflictError)]
    assert len(admitted) == 1
    assert len(conflicts) == len(patients) - 1

    final = engine.get_bed(bed.id)
    assert final.status == BedStatus.OCCUPIED
    assert final.occupant_admission_id == admitted[0].id
    assert engine.check_consistency() == []


def test_racing_transfers_to_one_bed(make_patient, memory_repo):
    engine = AtdEngine(memory_repo, LockManager(timeout=2.0, attempts=3, backoff=0.01))
    ward = engine.register_ward("ICU", 7)
    beds = engine.list_beds(ward.id)
    target = beds[-1]
    admissions = [engine.admit(make_patient(f"P{n}"), bed.id) for n, bed in enumerate(beds[:-1])]
    start = threading.Barrier(len(admissions))

    def _transfer(admission):
        start.wait()
        try:
            return engine.transfer(admission.id, target.id)
        except ConflictError as exc:
            return exc

    with ThreadPoolExecutor(max_workers=len(admissions)) as pool:
        outcomes = list(pool.map(_transfer, admissions))

    winners = [outcome for outcome in outcomes if isinstance(outcome, Admission)]
    assert len(winners) == 1
    assert sum(isinstance(outcome, ConflictError) for outcome in outcomes) == len(admissions) - 1
    assert engine.get_bed(target.id).occupant_admission_id == winners[0].id
    assert [bed.id for bed in engine.available_beds(ward.id)] == [winners[0].admitting_bed_id]
    assert engine.check_consistency() == []


def test_racing_discharges_succeed_once(make_patient, memory_repo):
    engine = AtdEngine(memory_repo, LockManager(timeout=2.0, attempts=3, backoff=0.01))
    ward = engine.register_ward("ICU", 1)
    admission = engine.admit(make_patient(), engine.list_beds(ward.id)[0].id)
    start = threading.Barrier(6)

    def _discharge(_):
        start.wait()
        try:
            return engine.discharge(admission.id)
        except StateError as exc:
            return exc

    with ThreadPoolExecutor(max_workers=6) as pool:
        outcomes = list(pool.map(_discharge, range(6)))

    assert sum(isinstance(outcome, Admission) for outcome in outcomes) == 1
    assert sum(isinstance(outcome, StateError) for outcome in outcomes) == 5
    assert engine.check_consistency() == []


def test_consistency_check_reports_broken_invariants(atd, make_patient):
    ward = atd.register_ward("ICU", 2)
    b1, b2 = atd.list_beds(ward.id)
    admission = atd.admit(make_patient(), b1.id)

    def _corrupt(uow):
        bed = uow.get(Bed, b2.id)
        bed.status = BedStatus.OCCUPIED
        bed.occupant_admission_id = 77
        uow.put(bed)
        stale = uow.get(Admission, admission.id)
        stale.current_bed_id = b2.id
        uow.put(stale)

    atd.repository.transaction(_corrupt)
    problems = atd.check_consistency()
    assert any("Bed #2" in problem and "#77" in problem for problem in problems)
    assert any(f"Active admission #{admission.id}" in problem for problem in problems)


def test_lab_tracker_shares_admission_lock_with_discharge(make_patient, memory_repo):
    locks = LockManager(timeout=2.0, attempts=3, backoff=0.01)
    engine = AtdEngine(memory_repo, locks)
    tracker = LabOrderTracker(memory_repo, locks, engine.ledger)
    ward = engine.register_ward("ICU", 1)
    admission = engine.admit(make_patient(), engine.list_beds(ward.id)[0].id)

    engine.discharge(admission.id)
    with pytest.raises(StateError):
        tracker.order(admission.id, "CBC")


def test_icu_scenario_on_a_file_database(file_engine):
    locks = LockManager(timeout=0.5, attempts=2, backoff=0.01)
    engine = AtdEngine(SqlRepository(file_engine), locks)
    tracker = LabOrderTracker(engine.repository, locks, engine.ledger)
    ward = engine.register_ward("ICU", 2)
    b1, b2 = engine.list_beds(ward.id)
    admission = engine.admit(_add_patient(engine, "P1"), b1.id)

    engine.transfer(admission.id, b2.id, reason="step-down")
    order = tracker.order(admission.id, "CBC")
    tracker.record_result(order.id, {"wbc": 6.1})
    discharged = engine.discharge(admission.id)

    assert discharged.state == AdmissionState.DISCHARGED
    assert discharged.discharged_at is not None
    assert engine.get_admission(admission.id).discharged_at is not None
    assert [bed.status for bed in engine.list_beds(ward.id)] == [BedStatus.FREE, BedStatus.FREE]
    assert tracker.get_order(order.id).state == LabOrderState.RESULTED
    assert len(engine.list_transfers(admission.id)) == 1
    with pytest.raises(StateError):
        engine.discharge(admission.id)
    assert engine.check_consistency() == []


def test_deactivation_takes_the_patient_lock(atd, make_patient):
    ward = atd.register_ward("ICU", 1)
    [bed] = atd.list_beds(ward.id)
    patient_id = make_patient()

    with atd.locks.hold(patient_key(patient_id)):
        with pytest.raises(ConflictError, match="busy"):
            atd.deactivate_patient(patient_id)

    admission = atd.admit(patient_id, bed.id)
    with pytest.raises(ConflictError, match="admitted"):
        atd.deactivate_patient(patient_id)

    atd.discharge(admission.id)
    assert atd.deactivate_patient(patient_id).is_active is False
    with pytest.raises(NotFoundError):
        atd.admit(patient_id, bed.id)
    with pytest.raises(NotFoundError):
        atd.deactivate_patient(999)


def test_racing_admit_and_deactivate_never_strand_a_bed(make_patient, memory_repo):
    engine = AtdEngine(memory_repo, LockManager(timeout=2.0, attempts=3, backoff=0.01))
    ward = engine.register_ward("General", 10)

    for bed in engine.list_beds(ward.id):
        patient_id = make_patient(f"Racer {bed.id}")
        start = threading.Barrier(2)

        def _admit():
            start.wait()
            try:
                return engine.admit(patient_id, bed.id)
            except NotFoundError as exc:
                return exc

        def _deactivate():
            start.wait()
            try:
                return engine.deactivate_patient(patient_id)
            except ConflictError as exc:
                return exc

        with ThreadPoolExecutor(max_workers=2) as pool:
            admitted = pool.submit(_admit)
            deactivated = pool.submit(_deactivate)
            outcomes = (admitted.result(), deactivated.result())

        patient = memory_repo.transaction(lambda uow: uow.get(Patient, patient_id))
        active = engine.find_active_admission(patient_id)
        if isinstance(outcomes[0], Admission):
            assert isinstance(outcomes[1], ConflictError)
            assert patient.is_active and active.id == outcomes[0].id
        else:
            assert isinstance(outcomes[0], NotFoundError)
            assert not patient.is_active and active is None
            assert engine.get_bed(bed.id).status == BedStatus.FREE

    assert engine.check_consistency() == []


def test_concurrent_ward_registrations_with_one_name(memory_repo):
    engine = AtdEngine(memory_repo, LockManager(timeout=2.0, attempts=3, backoff=0.01))
    start = threading.Barrier(8)

    def _register(_):
        start.wait()
        try:
            return engine.register_ward("ICU", 2)
        except ConflictError as exc:
            return exc

    with ThreadPoolExecutor(max_workers=8) as pool:
        outcomes = list(pool.map(_register, range(8)))

    assert sum(isinstance(outcome, Ward) for outcome in outcomes) == 1
    assert sum(isinstance(outcome, ConflictError) for outcome in outcomes) == 7
    assert [ward.name for ward in engine.list_wards()] == ["ICU"]
    assert len(memory_repo.transaction(lambda uow: uow.query(Bed))) == 2
