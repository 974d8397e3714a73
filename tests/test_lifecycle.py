from datetime import date

import pytest
from sqlalchemy import func, select

from conftest import TODAY, worker_data
from workforce import db, lifecycle
from workforce.errors import DuplicateWorkerError, InvalidTransitionError, ValidationError, WorkerNotFoundError
from workforce.lifecycle import Outcome
from workforce.models import ACTIVE, INACTIVE, RETURNED, Farm, Inactive, Room, Worker
from workforce.periods import Period


def fresh(model, ident):
    db.session.expire_all()
    return db.session.get(model, ident)


def create(seeded, **overrides):
    return lifecycle.create_worker(worker_data(seeded.farm_a, **overrides), actor_id=seeded.admin_a, today=TODAY)


@pytest.fixture()
def w1(seeded, sink):
    """Scenario A: W1 created in farm A, room R1, on 2024-01-01."""
    return create(seeded, room_number="R1", items=["Matelas"]).worker.id


@pytest.fixture()
def w1_exited(seeded, w1):
    """Scenario B: W1 leaves on 2024-03-01."""
    lifecycle.edit_worker(w1, {"exit_date": "2024-03-01", "exit_reason": "maladie"}, actor_id=seeded.admin_a, today=TODAY)
    return w1


def test_scenario_a_create_assigns_room_and_opens_period(seeded, w1, sink):
    room = fresh(Room, seeded.r1)
    worker = db.session.get(Worker, w1)
    assert room.occupant_ids == [w1] and room.current_occupancy == 1
    assert worker.history == [Period(date(2024, 1, 1), None, None, "R1", "North", seeded.farm_a)]
    assert worker.lifecycle == lifecycle.Active()
    assert worker.sector == "North"
    assert db.session.get(Farm, seeded.farm_a).total_workers == 1
    assert [a.item_name for a in worker.allocated_items] == ["Matelas"]
    # superadmins hear about new workers
    assert [e.recipient_id for e in sink.delivered] == [seeded.central]
    assert sink.delivered[0].type == "worker_created"


def test_scenario_b_exit_closes_period_and_frees_room(seeded, w1_exited, sink):
    worker = fresh(Worker, w1_exited)
    assert worker.status == INACTIVE
    assert worker.lifecycle == Inactive(date(2024, 3, 1), "maladie")
    assert fresh(Room, seeded.r1).current_occupancy == 0
    assert fresh(Room, seeded.r1).occupant_ids == []
    [period] = worker.history
    assert period.exit_date == date(2024, 3, 1) and period.exit_reason == "maladie"
    history = lifecycle.worker_history(w1_exited, today=TODAY)
    assert [s.days for s in history.summaries] == [60]
    assert all(a.status == RETURNED and a.returned_at for a in worker.allocated_items)
    assert db.session.get(Farm, seeded.farm_a).total_workers == 0
    assert sink.delivered[-1].type == "worker_exit_recorded"


def test_scenario_c_cross_farm_registration_is_parked(seeded, w1, sink):
    data = worker_data(seeded.farm_b, name="Youssef Amrani")
    result = lifecycle.create_worker(data, actor_id=seeded.admin_b, today=TODAY)
    assert result.outcome is Outcome.PENDING_RESOLUTION
    assert result.worker is None and "pending" in result.message
    farm_b_workers = db.session.scalars(select(Worker).where(Worker.farm_id == seeded.farm_b)).all()
    assert farm_b_workers == []
    assert [(e.recipient_id, e.recipient_farm_id) for e in result.events] == [(seeded.admin_a, str(seeded.farm_a))]
    assert result.events[0].action_payload["workerId"] == w1
    assert result.events[-1] in sink.delivered


def test_cross_farm_conflict_without_admins_warns(seeded, w1, sink):
    result = lifecycle.create_worker(worker_data(seeded.farm_b), actor_id=seeded.admin_a, today=TODAY)
    assert result.outcome is Outcome.PENDING_RESOLUTION
    assert result.events == []
    assert any("No administrator" in w for w in result.warnings)


def test_scenario_d_reregistration_reactivates(seeded, w1_exited):
    data = worker_data(seeded.farm_a, entry_date="2024-04-01")
    asked = lifecycle.create_worker(data, today=TODAY)
    assert asked.outcome is Outcome.CONFIRMATION_REQUIRED
    assert asked.worker.id == w1_exited

    result = lifecycle.create_worker(data, accept_existing=True, today=TODAY)
    worker = fresh(Worker, w1_exited)
    assert result.outcome is Outcome.COMPLETED and result.worker.id == w1_exited
    assert worker.return_count == 1 and worker.status == ACTIVE
    assert worker.exit_date is None and worker.exit_reason is None
    assert worker.history == [
        Period(date(2024, 1, 1), date(2024, 3, 1), "maladie", "R1", "North", seeded.farm_a),
        Period(date(2024, 4, 1), None, None, None, None, seeded.farm_a),
    ]
    assert db.session.scalar(select(func.count(Worker.id))) == 1


def test_scenario_e_gender_mismatch_drops_room(seeded, sink):
    result = create(seeded, national_id="F1", name="Amina Idrissi", gender="female", room_number="R1")
    worker = fresh(Worker, result.worker.id)
    room = db.session.get(Room, seeded.r1)
    assert result.outcome is Outcome.COMPLETED
    assert worker.room_number is None and worker.sector is None
    assert room.occupant_ids == [] and room.current_occupancy == 0
    assert any("reserved for men" in w for w in result.warnings)


def test_scenario_f_bulk_delete_clears_farm_rooms(seeded, sink):
    first = create(seeded, national_id="A1", room_number="R1").worker.id
    second = create(seeded, national_id="A2", name="Salma B", gender="female", room_number="R2").worker.id
    room = db.session.get(Room, seeded.r2)
    room.occupant_ids = [second, 31337]
    room.current_occupancy = 2
    db.session.commit()

    result = lifecycle.bulk_delete_workers([first, second])
    assert result.deleted_ids == [first, second]
    for room_id in (seeded.r1, seeded.r2):
        room = fresh(Room, room_id)
        assert room.occupant_ids == [] and room.current_occupancy == 0
    assert db.session.get(Farm, seeded.farm_a).total_workers == 0


def test_bulk_delete_with_unknown_id_deletes_nothing(seeded, w1):
    with pytest.raises(WorkerNotFoundError):
        lifecycle.bulk_delete_workers([w1, 999])
    assert fresh(Worker, w1) is not None
    assert fresh(Room, seeded.r1).occupant_ids == [w1]


def test_partial_bulk_delete_keeps_other_occupants(seeded, sink):
    first = create(seeded, national_id="A1", room_number="R1").worker.id
    second = create(seeded, national_id="A2", name="Karim T", room_number="R1").worker.id
    lifecycle.bulk_delete_workers([first])
    assert fresh(Room, seeded.r1).occupant_ids == [second]


def test_delete_worker_frees_room_and_recounts(seeded, w1):
    result = lifecycle.delete_worker(w1)
    assert result.deleted_ids == [w1]
    assert fresh(Worker, w1) is None
    assert db.session.get(Room, seeded.r1).occupant_ids == []
    assert db.session.get(Farm, seeded.farm_a).total_workers == 0


def test_same_farm_duplicate_is_rejected(seeded, w1):
    with pytest.raises(DuplicateWorkerError) as err:
        create(seeded, name="Someone Else")
    assert "Youssef Amrani" in err.value.message
    assert db.session.scalar(select(func.count(Worker.id))) == 1


def test_transfer_moves_worker_and_notifies_previous_farm(seeded, w1_exited, sink):
    result = lifecycle.transfer_worker(w1_exited, seeded.farm_b, "2024-05-01", room_number="R1",
                                       actor_id=seeded.admin_b, today=TODAY)
    worker = fresh(Worker, w1_exited)
    assert worker.farm_id == seeded.farm_b and worker.status == ACTIVE
    assert worker.return_count == 1 and worker.sector == "East"
    assert [p.farm_id for p in worker.history] == [seeded.farm_a, seeded.farm_b]
    assert db.session.get(Room, seeded.b1).occupant_ids == [w1_exited]
    assert [(e.type, e.recipient_id) for e in result.events] == [("worker_moved_from_farm", seeded.admin_a)]
    assert db.session.get(Farm, seeded.farm_b).total_workers == 1


def test_create_routes_transfer_candidate(seeded, w1_exited, sink):
    data = worker_data(seeded.farm_b, entry_date="2024-05-01")
    asked = lifecycle.create_worker(data, today=TODAY)
    assert asked.outcome is Outcome.CONFIRMATION_REQUIRED
    assert asked.resolution.disposition.value == "transfer_candidate"
    result = lifecycle.create_worker(data, accept_existing=True, today=TODAY)
    assert result.worker.farm_id == seeded.farm_b


def test_reactivating_active_worker_is_refused(seeded, w1):
    with pytest.raises(InvalidTransitionError):
        lifecycle.reactivate_worker(w1, "2024-05-01")


def test_transfer_of_active_worker_is_refused(seeded, w1):
    with pytest.raises(InvalidTransitionError):
        lifecycle.transfer_worker(w1, seeded.farm_b, "2024-05-01")


def test_reactivation_cannot_predate_last_exit(seeded, w1_exited):
    with pytest.raises(ValidationError):
        lifecycle.reactivate_worker(w1_exited, "2024-02-01")


def test_reactivation_closes_stray_open_periods(seeded, w1_exited):
    worker = db.session.get(Worker, w1_exited)
    worker.replace_history(worker.history + [Period(date(2024, 2, 1), farm_id=seeded.farm_a)])
    db.session.commit()
    lifecycle.reactivate_worker(w1_exited, "2024-04-01")
    worker = fresh(Worker, w1_exited)
    assert [p.exit_date for p in worker.history] == [date(2024, 3, 1), date(2024, 3, 1), None]


def test_exit_date_validation(seeded, w1):
    with pytest.raises(ValidationError):
        lifecycle.edit_worker(w1, {"exit_date": "2023-12-31"}, today=TODAY)
    with pytest.raises(ValidationError):
        lifecycle.edit_worker(w1, {"exit_date": "2024-07-01"}, today=TODAY)
    assert fresh(Worker, w1).status == ACTIVE


def test_clearing_exit_date_requires_reactivation(seeded, w1_exited):
    with pytest.raises(InvalidTransitionError):
        lifecycle.edit_worker(w1_exited, {"exit_date": None}, today=TODAY)


def test_edit_national_id_collision_blocks(seeded, w1):
    other = create(seeded, national_id="X2", name="Omar Fassi").worker.id
    with pytest.raises(DuplicateWorkerError):
        lifecycle.edit_worker(other, {"national_id": " x1 "}, today=TODAY)
    assert fresh(Worker, other).national_id == "X2"


def test_entry_date_change_folds_into_history(seeded, w1, sink):
    result = lifecycle.edit_worker(w1, {"entry_date": "2023-12-15", "birth_date": "2000-06-02"}, today=TODAY)
    worker = fresh(Worker, w1)
    assert [p.entry_date for p in worker.history] == [date(2023, 12, 15)]
    assert worker.age == 23
    assert result.events[0].type == "worker_updated"


def test_entry_date_cannot_land_on_another_period(seeded, w1):
    worker = db.session.get(Worker, w1)
    earlier = Period(date(2023, 1, 1), date(2023, 2, 1), "fin contrat", farm_id=seeded.farm_a)
    worker.replace_history([earlier] + worker.history)
    db.session.commit()

    with pytest.raises(ValidationError):
        lifecycle.edit_worker(w1, {"entry_date": "2023-01-01"}, today=TODAY)
    worker = fresh(Worker, w1)
    assert worker.status == ACTIVE and worker.entry_date == date(2024, 1, 1)
    assert [(p.entry_date, p.is_open) for p in worker.history] == [(date(2023, 1, 1), False), (date(2024, 1, 1), True)]


def test_item_selection_changes(seeded, w1):
    result = lifecycle.edit_worker(w1, {"items": ["Armoire"]}, today=TODAY)
    worker = fresh(Worker, w1)
    assert [(a.item_name, a.status) for a in worker.allocated_items] == [("Matelas", RETURNED)]
    assert any("Armoire" in w for w in result.warnings)


def test_bulk_exits_report_per_row(seeded, w1, sink):
    other = create(seeded, national_id="X2", name="Omar Fassi").worker.id
    result = lifecycle.bulk_record_exits(
        [
            {"worker_id": w1, "exit_date": "2024-05-01", "exit_reason": "fin contrat"},
            {"worker_id": other, "exit_date": "2023-01-01"},
            {"worker_id": 999, "exit_date": "2024-05-01"},
        ],
        today=TODAY,
    )
    assert result.succeeded == [w1]
    assert [e["worker_id"] for e in result.errors] == [other, 999]
    assert fresh(Worker, w1).status == INACTIVE
    assert db.session.get(Worker, other).status == ACTIVE


def test_bulk_allocate_skips_inactive_and_held(seeded, w1_exited, sink):
    other = create(seeded, national_id="X2", name="Omar Fassi", items=["Matelas"]).worker.id
    result = lifecycle.bulk_allocate_items([other, w1_exited], ["Matelas", "Couverture"])
    assert result.succeeded == [other]
    assert result.errors[0]["worker_id"] == w1_exited
    assert any("Couverture" in w for w in result.warnings)
    assert len(fresh(Worker, other).allocated_items) == 1


def test_heal_marks_stale_active_workers_inactive(seeded, w1):
    worker = db.session.get(Worker, w1)
    worker.exit_date = date(2024, 2, 1)
    stray = Worker(name="Ghost", national_id="G0", gender="male", farm_id=seeded.farm_a, status=INACTIVE)
    db.session.add(stray)
    db.session.commit()

    report = lifecycle.heal_inconsistent_statuses(today=TODAY)
    assert report.healed == [w1] and report.unresolved == [stray.id]
    worker = fresh(Worker, w1)
    assert worker.status == INACTIVE
    assert worker.history[0].exit_date == date(2024, 2, 1)
    assert db.session.get(Room, seeded.r1).occupant_ids == []
    assert lifecycle.heal_inconsistent_statuses(today=TODAY).healed == []


def test_create_validates_input(seeded):
    with pytest.raises(ValidationError):
        create(seeded, gender="x")
    with pytest.raises(ValidationError):
        create(seeded, entry_date="01/02/2024")
    with pytest.raises(ValidationError):
        lifecycle.create_worker(worker_data(999), today=TODAY)
