"""Room occupancy synchronizer.

A room stores the ids of its occupants and a count; a worker stores the
number of the room it sleeps in.  The functions here keep both sides in
agreement: only active workers of the room's farm and matching gender may
be listed, and ``current_occupancy`` always equals the list length.

Room writes go through :func:`store.swap_room_occupants`, a compare-and-swap
on ``rooms.version``.  When another writer got there first the room is
re-read and the same change re-applied, a bounded number of times.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from flask import current_app

from . import store
from .errors import RoomContentionError
from .models import ACTIVE, MEN_ROOM, Room

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkerState:
    """The part of a worker the occupancy of a room depends on."""

    farm_id: Optional[int] = None
    room_number: Optional[str] = None
    status: Optional[str] = None
    gender: Optional[str] = None

    @classmethod
    def of(cls, worker) -> "WorkerState":
        return cls(worker.farm_id, worker.room_number, worker.status, worker.gender)

    @property
    def is_housed(self) -> bool:
        return self.status == ACTIVE and bool(self.room_number)


@dataclass
class RoomOutcome:
    assigned: bool
    room: Optional[Room] = None
    warning: Optional[str] = None


@dataclass
class SweepReport:
    rooms_checked: int = 0
    rooms_fixed: int = 0
    removed: dict = field(default_factory=dict)


def _unique(ids) -> List[int]:
    seen = set()
    unique = []
    for worker_id in ids:
        if worker_id not in seen:
            seen.add(worker_id)
            unique.append(worker_id)
    return unique


def _write_room(room: Room, change: Callable[[List[int]], Optional[List[int]]]) -> bool:
    """Apply ``change`` to the room's occupant list and store the result.

    ``change`` receives the latest list and returns the new one, or None when
    the list itself needs no change.  A drifted count is rewritten either way.
    Returns True if the room was written.
    """

    retries = current_app.config.get("ROOM_COMMIT_RETRIES", 3)
    for attempt in range(1, retries + 2):
        current = list(room.occupant_ids or [])
        target = change(current)
        if target is None:
            target = current
        if target == current and room.current_occupancy == len(current):
            return False
        if room.current_occupancy != len(current):
            logger.warning(
                "Room %s of farm %s counted %s occupant(s) but lists %d, correcting",
                room.number, room.farm_id, room.current_occupancy, len(current),
            )
        if store.swap_room_occupants(room, target):
            return True
        logger.warning(
            "Room %s of farm %s was changed concurrently (attempt %d of %d)",
            room.number, room.farm_id, attempt, retries + 1,
        )
        store.reload(room)
    raise RoomContentionError(room.farm_id, room.number, retries + 1)


def _category_label(category) -> str:
    return "men" if category == MEN_ROOM else "women"


def add_worker_to_room(worker_id, farm_id, room_number, gender) -> RoomOutcome:
    room = store.find_room(farm_id, room_number)
    if room is None:
        return RoomOutcome(False, warning=f"Room {room_number} does not exist in farm {farm_id}; no room was assigned")
    if not room.accepts(gender):
        return RoomOutcome(
            False,
            room=room,
            warning=f"Room {room.number} is reserved for {_category_label(room.gender_category)}; no room was assigned",
        )

    changed = []

    def append(current):
        changed.clear()
        if worker_id in current:
            return None
        changed.append(worker_id)
        return current + [worker_id]

    if _write_room(room, append) and changed:
        logger.info("Worker %s added to room %s of farm %s", worker_id, room.number, farm_id)
    warning = None
    if room.total_capacity and room.current_occupancy > room.total_capacity:
        warning = f"Room {room.number} now holds {room.current_occupancy} workers for {room.total_capacity} places"
    return RoomOutcome(True, room=room, warning=warning)


def remove_worker_from_room(worker_id, farm_id, room_number) -> RoomOutcome:
    room = store.find_room(farm_id, room_number)
    if room is None:
        logger.warning("Room %s of farm %s not found while removing worker %s", room_number, farm_id, worker_id)
        return RoomOutcome(False)

    changed = []

    def drop(current):
        changed.clear()
        if worker_id not in current:
            return None
        changed.append(worker_id)
        return [i for i in current if i != worker_id]

    if _write_room(room, drop) and changed:
        logger.info("Worker %s removed from room %s of farm %s", worker_id, room.number, farm_id)
        return RoomOutcome(True, room=room)
    return RoomOutcome(False, room=room)


def reconcile_on_change(worker, before: WorkerState) -> List[str]:
    """Move ``worker`` between rooms after its state changed from ``before``.

    Returns warnings.  A room that refuses the worker leaves the worker
    without a room rather than failing the surrounding operation.
    """

    after = WorkerState.of(worker)
    if after == before:
        return []
    if before.is_housed:
        remove_worker_from_room(worker.id, before.farm_id, before.room_number)
    if not after.is_housed:
        return []

    try:
        outcome = add_worker_to_room(worker.id, after.farm_id, after.room_number, after.gender)
    except RoomContentionError as exc:
        logger.warning("Giving up on room for worker %s: %s", worker.id, exc)
        outcome = RoomOutcome(False, warning=f"Room {after.room_number} is busy; the worker was saved without a room")

    warnings = [outcome.warning] if outcome.warning else []
    if outcome.assigned:
        if outcome.room.sector:
            worker.sector = outcome.room.sector
    else:
        worker.room_number = None
        worker.sector = None
    return warnings


def sweep_inactive_occupants(farm_id=None) -> SweepReport:
    """Drop occupants that are not active workers of the room's farm and gender.

    Only the workers a room lists are loaded.  Running it twice in a row
    changes nothing the second time.
    """

    report = SweepReport()
    for room in store.list_rooms(farm_id):
        report.rooms_checked += 1
        listed = list(room.occupant_ids or [])
        valid = {w.id for w in store.active_workers(farm_id=room.farm_id, ids=listed) if room.accepts(w.gender)}
        stale = set(listed) - valid

        def prune(current, stale=stale):
            return _unique(i for i in current if i not in stale)

        if _write_room(room, prune):
            report.rooms_fixed += 1
            if stale:
                report.removed[room.id] = sorted(stale)
                logger.warning("Swept %d stale occupant(s) from room %s of farm %s", len(stale), room.number, room.farm_id)
    return report


def rebuild_room_occupancy(farm_id=None) -> SweepReport:
    """Recompute every room's occupants from the workers that claim it."""

    claims = defaultdict(list)
    for worker in store.active_workers(farm_id=farm_id):
        if worker.room_number:
            claims[(worker.farm_id, worker.room_number)].append(worker)

    report = SweepReport()
    for room in store.list_rooms(farm_id):
        report.rooms_checked += 1
        expected = []
        for worker in claims.get((room.farm_id, room.number), []):
            if room.accepts(worker.gender):
                expected.append(worker.id)
            else:
                logger.warning("Worker %s (%s) claims room %s of farm %s", worker.id, worker.gender, room.number, room.farm_id)

        def replace_all(current, expected=expected):
            return current if sorted(current) == expected else expected

        before = set(room.occupant_ids or [])
        if _write_room(room, replace_all):
            report.rooms_fixed += 1
            removed = before - set(expected)
            if removed:
                report.removed[room.id] = sorted(removed)
            logger.warning("Rebuilt room %s of farm %s with %d occupant(s)", room.number, room.farm_id, len(expected))
    return report


def clear_farm_rooms(farm_id) -> int:
    cleared = 0
    for room in store.list_rooms(farm_id):
        if _write_room(room, lambda current: []):
            cleared += 1
    if cleared:
        logger.warning("Cleared the occupants of %d room(s) in farm %s", cleared, farm_id)
    return cleared
