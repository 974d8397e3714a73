"""Worker lifecycle operations.

Every operation follows the same order: the conflict resolver runs before
anything is written, history is folded next, then the worker's new state is
decided and the rooms are reconciled against it.  All of that commits as one
unit of work; notification events are delivered only after the commit.

A worker moves through ``new -> active``, ``active -> inactive`` (exit date
recorded), ``inactive -> active`` (reactivation in the same farm, or a
transfer to another one) and finally ``deleted``.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import List, Optional

from sqlalchemy import select

from . import db, store
from . import notifications as notify
from . import occupancy, stock
from .conflicts import Disposition, Resolution, resolve_registration
from .errors import DuplicateWorkerError, InvalidTransitionError, LifecycleError, ValidationError, WorkerNotFoundError
from .models import ACTIVE, GENDERS, FEMALE, MALE, Active, Inactive, Worker, age_on, normalize_national_id
from .occupancy import WorkerState
from .periods import (
    Period,
    WorkHistory,
    canonicalize,
    close_all_periods,
    close_current_period,
    move_entry_date,
    previous_farm_id,
    reconstruct,
)

logger = logging.getLogger(__name__)

GENDER_ALIASES = {
    "m": MALE, "male": MALE, "h": MALE, "homme": MALE, "man": MALE,
    "f": FEMALE, "female": FEMALE, "femme": FEMALE, "woman": FEMALE,
}

# fields a caller may set directly on a worker
PLAIN_FIELDS = ("name", "matricule", "phone", "sector", "supervisor_id")


class Outcome(str, Enum):
    COMPLETED = "completed"
    PENDING_RESOLUTION = "pending_resolution"
    CONFIRMATION_REQUIRED = "confirmation_required"


@dataclass
class OperationResult:
    outcome: Outcome
    worker: Optional[Worker] = None
    warnings: List[str] = field(default_factory=list)
    events: list = field(default_factory=list)
    resolution: Optional[Resolution] = None
    deleted_ids: List[int] = field(default_factory=list)
    message: Optional[str] = None


@dataclass
class BatchResult:
    succeeded: List[int] = field(default_factory=list)
    errors: List[dict] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    events: list = field(default_factory=list)


@dataclass
class HealReport:
    healed: List[int] = field(default_factory=list)
    unresolved: List[int] = field(default_factory=list)


def parse_date(value, field_name, required=False) -> Optional[date]:
    if value is None or value == "":
        if required:
            raise ValidationError(f"{field_name} is required", field=field_name)
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError:
        raise ValidationError(f"{field_name} must be a date (YYYY-MM-DD), got {value!r}", field=field_name)


def parse_gender(value) -> str:
    gender = GENDER_ALIASES.get(str(value or "").strip().lower())
    if gender not in GENDERS:
        raise ValidationError(f"gender must be one of {', '.join(GENDERS)}, got {value!r}", field="gender")
    return gender


def _text(value) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _reason(value) -> Optional[str]:
    value = _text(value)
    return None if value is None or value.lower() == "none" else value


def _farm_id(value):
    try:
        farm_id = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"farm_id must be an integer, got {value!r}", field="farm_id")
    if store.get_farm(farm_id) is None:
        raise ValidationError(f"Farm {farm_id} does not exist", field="farm_id")
    return farm_id


def _farm_label(farm_id) -> str:
    farm = store.get_farm(farm_id) if farm_id is not None else None
    return farm.name if farm is not None else f"farm {farm_id}"


def _validate_exit(worker, exit_date, today):
    if worker.entry_date and exit_date < worker.entry_date:
        raise ValidationError(
            f"Exit date {exit_date} is before the entry date {worker.entry_date}", field="exit_date"
        )
    if exit_date > today:
        raise ValidationError(f"Exit date {exit_date} is in the future", field="exit_date")


def _ensure_no_active_twin(worker, farm_id):
    """Refuse to activate ``worker`` while another record of the same person is active."""

    resolution = resolve_registration(worker.national_id, farm_id, exclude_worker_id=worker.id)
    if resolution.existing is not None and resolution.existing.status == ACTIVE:
        raise DuplicateWorkerError(
            resolution.message,
            worker_id=resolution.existing.id,
            farm_id=resolution.existing.farm_id,
        )


def _refresh_farm_totals(*farm_ids):
    for farm_id in {f for f in farm_ids if f is not None}:
        store.recompute_farm_total(farm_id)


def _store_history(worker, periods):
    canonical = canonicalize(periods, worker.snapshot_period())
    if canonical != worker.history:
        worker.replace_history(canonical)


def _record_exit(worker, periods, exit_date, reason, when=None):
    """Close the current period, then mark the worker inactive and take its items back."""

    periods = close_current_period(
        periods, worker.entry_date, exit_date, reason, fallback=worker.snapshot_period()
    )
    worker.lifecycle = Inactive(exit_date, reason)
    stock.return_items(worker, when=when)
    return periods


def _exit_events(worker, actor_id):
    return notify.exit_recorded_events(
        worker, _farm_label(worker.farm_id), notify.superadmin_recipients(actor_id), actor_id
    )


def create_worker(data, actor_id=None, accept_existing=False, today=None) -> OperationResult:
    """Register a worker in ``data["farm_id"]``.

    Returns ``pending_resolution`` when the person is active in another farm
    and ``confirmation_required`` when an inactive record of them exists,
    unless ``accept_existing`` asks to reopen that record directly.
    """

    today = today or date.today()
    name = _text(data.get("name"))
    national_id = _text(data.get("national_id"))
    if not name:
        raise ValidationError("name is required", field="name")
    if not national_id:
        raise ValidationError("national_id is required", field="national_id")
    gender = parse_gender(data.get("gender"))
    farm_id = _farm_id(data.get("farm_id"))
    entry_date = parse_date(data.get("entry_date"), "entry_date", required=True)
    birth_date = parse_date(data.get("birth_date"), "birth_date")

    resolution = resolve_registration(national_id, farm_id, name)
    existing = resolution.existing

    if resolution.disposition is Disposition.REJECT:
        raise DuplicateWorkerError(resolution.message, worker_id=existing.id, farm_id=existing.farm_id)

    if resolution.disposition is Disposition.CROSS_FARM_CONFLICT:
        recipients = notify.farm_admin_recipients(existing.farm_id, actor_id)
        events = notify.cross_farm_conflict_events(existing, _farm_label(farm_id), recipients, actor_id)
        warnings = resolution.warnings
        if not events:
            warnings.append(f"No administrator of farm {existing.farm_id} can be notified about this conflict")
        warnings += notify.deliver(events)
        logger.info("Registration of %s in farm %s parked: active in farm %s", existing.national_id_key, farm_id, existing.farm_id)
        return OperationResult(
            Outcome.PENDING_RESOLUTION, warnings=warnings, events=events,
            resolution=resolution, message=resolution.message,
        )

    if resolution.disposition in (Disposition.REACTIVATION_CANDIDATE, Disposition.TRANSFER_CANDIDATE):
        if not accept_existing:
            return OperationResult(
                Outcome.CONFIRMATION_REQUIRED, worker=existing, warnings=resolution.warnings,
                resolution=resolution, message=resolution.message,
            )
        room_number = _text(data.get("room_number"))
        sector = _text(data.get("sector"))
        if resolution.disposition is Disposition.REACTIVATION_CANDIDATE:
            result = reactivate_worker(existing.id, entry_date, room_number, sector, actor_id)
        else:
            result = transfer_worker(existing.id, farm_id, entry_date, room_number, sector, actor_id)
        result.resolution = resolution
        result.warnings = resolution.warnings + result.warnings
        return result

    warnings = resolution.warnings
    with store.atomic():
        worker = Worker(
            national_id=national_id,
            name=name,
            gender=gender,
            farm_id=farm_id,
            matricule=_text(data.get("matricule")),
            phone=_text(data.get("phone")),
            birth_date=birth_date,
            age=age_on(birth_date, today) if birth_date else data.get("age"),
            room_number=_text(data.get("room_number")),
            sector=_text(data.get("sector")),
            supervisor_id=data.get("supervisor_id"),
            entry_date=entry_date,
            return_count=0,
        )
        worker.lifecycle = Active()
        db.session.add(worker)
        db.session.flush()
        warnings += occupancy.reconcile_on_change(worker, WorkerState())
        worker.replace_history([worker.snapshot_period()])
        warnings += stock.allocate_items(worker, data.get("items"), actor_id)
        _refresh_farm_totals(farm_id)
        events = notify.new_worker_events(
            worker, _farm_label(farm_id), notify.superadmin_recipients(actor_id), actor_id
        )
    logger.info("Worker %s (%s) created in farm %s", worker.id, worker.national_id_key, farm_id)
    warnings += notify.deliver(events)
    return OperationResult(Outcome.COMPLETED, worker=worker, warnings=warnings, events=events, resolution=resolution)


def edit_worker(worker_id, changes, actor_id=None, today=None) -> OperationResult:
    """Apply ``changes`` to a worker; keys that are absent stay unchanged.

    An ``exit_date`` on an active worker records the exit.  Clearing the exit
    date of an inactive worker is refused; that is what reactivation is for.
    """

    today = today or date.today()
    worker = store.get_worker(worker_id)
    before = WorkerState.of(worker)
    old_entry = worker.entry_date
    old_farm = worker.farm_id
    was_active = worker.is_active
    warnings = []
    exited = False

    with store.atomic():
        if "national_id" in changes:
            national_id = _text(changes["national_id"])
            if not national_id:
                raise ValidationError("national_id cannot be empty", field="national_id")
            if normalize_national_id(national_id) != worker.national_id_key:
                resolution = resolve_registration(national_id, worker.farm_id, exclude_worker_id=worker.id)
                if resolution.existing is not None:
                    raise DuplicateWorkerError(
                        f"National ID {national_id} already belongs to {resolution.existing.name} "
                        f"(worker {resolution.existing.id}, farm {resolution.existing.farm_id})",
                        worker_id=resolution.existing.id,
                        farm_id=resolution.existing.farm_id,
                    )
            worker.national_id = national_id

        for key in PLAIN_FIELDS:
            if key in changes:
                value = changes[key] if key == "supervisor_id" else _text(changes[key])
                if key == "name" and not value:
                    raise ValidationError("name cannot be empty", field="name")
                setattr(worker, key, value)
        if "gender" in changes:
            worker.gender = parse_gender(changes["gender"])
        if "birth_date" in changes:
            worker.birth_date = parse_date(changes["birth_date"], "birth_date")
            worker.age = age_on(worker.birth_date, today) if worker.birth_date else None
        if "farm_id" in changes:
            worker.farm_id = _farm_id(changes["farm_id"])
        if "room_number" in changes:
            worker.room_number = _text(changes["room_number"])

        periods = worker.history
        if "entry_date" in changes:
            entry_date = parse_date(changes["entry_date"], "entry_date", required=True)
            if entry_date != old_entry:
                if any(p.entry_date == entry_date for p in periods):
                    raise ValidationError(f"A work period already starts on {entry_date}", field="entry_date")
                periods = move_entry_date(periods, old_entry, entry_date)
                worker.entry_date = entry_date

        if "exit_date" in changes:
            exit_date = parse_date(changes["exit_date"], "exit_date")
            reason = _reason(changes.get("exit_reason", worker.exit_reason))
            if exit_date is None:
                if not was_active:
                    raise InvalidTransitionError(
                        "An inactive worker's exit date cannot be cleared; reactivate the worker instead",
                        worker_id=worker.id,
                    )
            else:
                _validate_exit(worker, exit_date, today)
                periods = _record_exit(worker, periods, exit_date, reason)
                exited = was_active
        elif "exit_reason" in changes and not worker.is_active:
            reason = _reason(changes["exit_reason"])
            periods = close_current_period(
                periods, worker.entry_date, worker.exit_date, reason, fallback=worker.snapshot_period()
            )
            worker.lifecycle = Inactive(worker.exit_date, reason)

        if "items" in changes and worker.is_active:
            warnings += stock.apply_item_selection(worker, changes["items"], actor_id)

        warnings += occupancy.reconcile_on_change(worker, before)
        _store_history(worker, periods)
        if worker.farm_id != old_farm or worker.status != before.status:
            _refresh_farm_totals(old_farm, worker.farm_id)

        events = []
        if exited:
            events = _exit_events(worker, actor_id)
        elif worker.entry_date != old_entry:
            events = notify.entry_date_changed_events(
                worker, old_entry, _farm_label(worker.farm_id), notify.superadmin_recipients(actor_id), actor_id
            )

    if exited:
        logger.info("Exit recorded for worker %s on %s", worker.id, worker.exit_date)
    warnings += notify.deliver(events)
    return OperationResult(Outcome.COMPLETED, worker=worker, warnings=warnings, events=events)


def _reopen(worker, farm_id, entry_date, room_number, sector):
    """Close the whole history and open a new period on ``entry_date``."""

    if worker.is_active:
        raise InvalidTransitionError(
            f"{worker.name} is still active in farm {worker.farm_id}; record an exit first",
            worker_id=worker.id,
        )
    if worker.exit_date and entry_date < worker.exit_date:
        raise ValidationError(
            f"Entry date {entry_date} is before the last exit on {worker.exit_date}", field="entry_date"
        )
    periods = close_all_periods(canonicalize(worker.history, worker.snapshot_period()), worker.exit_date)
    if any(p.entry_date == entry_date for p in periods):
        raise ValidationError(f"A work period already starts on {entry_date}", field="entry_date")
    _ensure_no_active_twin(worker, farm_id)

    before = WorkerState.of(worker)
    worker.farm_id = farm_id
    worker.entry_date = entry_date
    worker.lifecycle = Active()
    worker.return_count = (worker.return_count or 0) + 1
    worker.room_number = _text(room_number)
    worker.sector = _text(sector)
    warnings = occupancy.reconcile_on_change(worker, before)
    periods.append(
        Period(entry_date, room_number=worker.room_number, sector=worker.sector, farm_id=farm_id)
    )
    worker.replace_history(canonicalize(periods, None))
    return warnings


def reactivate_worker(worker_id, entry_date, room_number=None, sector=None, actor_id=None) -> OperationResult:
    worker = store.get_worker(worker_id)
    entry_date = parse_date(entry_date, "entry_date", required=True)
    with store.atomic():
        warnings = _reopen(worker, worker.farm_id, entry_date, room_number, sector)
        _refresh_farm_totals(worker.farm_id)
    logger.info("Worker %s reactivated in farm %s by %s (return %d)", worker.id, worker.farm_id, actor_id, worker.return_count)
    return OperationResult(Outcome.COMPLETED, worker=worker, warnings=warnings)


def transfer_worker(worker_id, farm_id, entry_date, room_number=None, sector=None, actor_id=None) -> OperationResult:
    """Move an inactive worker to ``farm_id`` and tell its previous farm."""

    worker = store.get_worker(worker_id)
    farm_id = _farm_id(farm_id)
    entry_date = parse_date(entry_date, "entry_date", required=True)
    if farm_id == worker.farm_id:
        raise InvalidTransitionError(
            f"Worker {worker.id} already belongs to farm {farm_id}; reactivate it instead", worker_id=worker.id
        )
    origin = worker.farm_id
    previous = previous_farm_id(worker.history, origin, exclude=farm_id)

    with store.atomic():
        warnings = _reopen(worker, farm_id, entry_date, room_number, sector)
        _refresh_farm_totals(origin, farm_id)
        events = []
        if previous is not None:
            recipients = notify.farm_admin_recipients(previous, actor_id)
            events = notify.worker_moved_events(
                worker, _farm_label(previous), _farm_label(farm_id), recipients, actor_id
            )
            if not events:
                warnings.append(f"No administrator of farm {previous} can be notified about this transfer")
    logger.info("Worker %s transferred from farm %s to farm %s", worker.id, origin, farm_id)
    warnings += notify.deliver(events)
    return OperationResult(Outcome.COMPLETED, worker=worker, warnings=warnings, events=events)


def _remove(worker):
    if worker.is_active and worker.room_number:
        occupancy.remove_worker_from_room(worker.id, worker.farm_id, worker.room_number)
    db.session.delete(worker)


def delete_worker(worker_id, actor_id=None) -> OperationResult:
    worker = store.get_worker(worker_id)
    farm_id = worker.farm_id
    with store.atomic():
        _remove(worker)
        db.session.flush()
        _refresh_farm_totals(farm_id)
    logger.info("Worker %s deleted from farm %s", worker_id, farm_id)
    return OperationResult(Outcome.COMPLETED, deleted_ids=[worker_id])


def bulk_delete_workers(worker_ids, actor_id=None) -> OperationResult:
    """Delete several workers in one transaction.

    When the batch takes out every active worker of a farm, all rooms of
    that farm are emptied as well, stray occupant ids included.
    """

    ids = []
    for value in worker_ids or []:
        try:
            worker_id = int(value)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid worker id {value!r}", field="worker_ids")
        if worker_id not in ids:
            ids.append(worker_id)
    if not ids:
        raise ValidationError("No worker ids given", field="worker_ids")

    workers = [store.get_worker(worker_id) for worker_id in ids]
    farm_ids = {w.farm_id for w in workers}
    leaving = {f: {w.id for w in workers if w.farm_id == f and w.is_active} for f in farm_ids}

    with store.atomic():
        remaining = {f: {w.id for w in store.active_workers(farm_id=f)} for f in farm_ids}
        for worker in workers:
            _remove(worker)
        db.session.flush()
        for farm_id in sorted(farm_ids):
            if remaining[farm_id] and remaining[farm_id] <= leaving[farm_id]:
                occupancy.clear_farm_rooms(farm_id)
            _refresh_farm_totals(farm_id)
    logger.info("Bulk deleted %d worker(s) from farm(s) %s", len(ids), sorted(farm_ids))
    return OperationResult(Outcome.COMPLETED, deleted_ids=ids)


def bulk_record_exits(entries, actor_id=None, today=None) -> BatchResult:
    """Record exits for several workers, each in its own transaction."""

    today = today or date.today()
    result = BatchResult()
    for entry in entries or []:
        worker_id = entry.get("worker_id")
        try:
            worker = store.get_worker(worker_id)
            if not worker.is_active:
                raise InvalidTransitionError(f"{worker.name} has already left", worker_id=worker.id)
            if not entry.get("exit_date"):
                raise ValidationError("exit_date is required", field="exit_date")
            outcome = edit_worker(
                worker.id,
                {"exit_date": entry.get("exit_date"), "exit_reason": entry.get("exit_reason")},
                actor_id=actor_id,
                today=today,
            )
        except LifecycleError as exc:
            result.errors.append({"worker_id": worker_id, "error": exc.message, "code": exc.code})
            continue
        result.succeeded.append(outcome.worker.id)
        result.warnings += outcome.warnings
        result.events += outcome.events
    if result.errors:
        logger.warning("%d of %d exit(s) were refused", len(result.errors), len(entries or []))
    return result


def bulk_allocate_items(worker_ids, item_names, actor_id=None) -> BatchResult:
    result = BatchResult()
    if not item_names:
        raise ValidationError("No items selected", field="items")
    with store.atomic():
        for worker_id in worker_ids or []:
            worker = db.session.get(Worker, worker_id)
            if worker is None:
                result.errors.append({"worker_id": worker_id, "error": f"Worker {worker_id} not found", "code": WorkerNotFoundError.code})
                continue
            if not worker.is_active:
                result.errors.append({"worker_id": worker_id, "error": f"{worker.name} is inactive", "code": InvalidTransitionError.code})
                continue
            result.warnings += stock.allocate_items(worker, item_names, actor_id)
            result.succeeded.append(worker.id)
    return result


def heal_inconsistent_statuses(today=None) -> HealReport:
    """Mark workers with a past exit date but an active status as inactive.

    Inactive workers without an exit date are reported but left alone; there
    is no date to close their period with.
    """

    today = today or date.today()
    report = HealReport()
    with store.atomic():
        stale = db.session.scalars(
            select(Worker).where(Worker.status == ACTIVE, Worker.exit_date.is_not(None)).order_by(Worker.id)
        ).all()
        for worker in stale:
            if worker.exit_date > today:
                continue
            before = WorkerState.of(worker)
            periods = _record_exit(worker, worker.history, worker.exit_date, _reason(worker.exit_reason))
            occupancy.reconcile_on_change(worker, before)
            _store_history(worker, periods)
            _refresh_farm_totals(worker.farm_id)
            report.healed.append(worker.id)
            logger.warning("Worker %s had exit date %s but was active; marked inactive", worker.id, worker.exit_date)
        report.unresolved = db.session.scalars(
            select(Worker.id).where(Worker.status != ACTIVE, Worker.exit_date.is_(None)).order_by(Worker.id)
        ).all()
    for worker_id in report.unresolved:
        logger.warning("Worker %s is inactive without an exit date", worker_id)
    return report


def worker_history(worker_id, today=None) -> WorkHistory:
    worker = store.get_worker(worker_id)
    return reconstruct(worker.history, worker.snapshot_period(), today or date.today())
