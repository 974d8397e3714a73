"""Storage collaborator: lookups and the unit of work over Flask-SQLAlchemy."""

import logging
from contextlib import contextmanager

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError

from . import db
from .errors import CommitError, WorkerNotFoundError
from .models import ACTIVE, ADMIN, SUPERADMIN, AppUser, Farm, Room, Worker, normalize_national_id

logger = logging.getLogger(__name__)


@contextmanager
def atomic():
    """Commit everything done inside the block as one transaction.

    Any exception rolls the session back.  Database failures surface as
    :class:`CommitError` so callers never see a half-written change.
    """

    try:
        yield db.session
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.error("Commit failed, rolled back: %s", exc)
        raise CommitError("Could not save changes, nothing was written") from exc
    except Exception:
        db.session.rollback()
        raise


def get_worker(worker_id) -> Worker:
    worker = db.session.get(Worker, worker_id)
    if worker is None:
        raise WorkerNotFoundError(worker_id)
    return worker


def get_farm(farm_id):
    return db.session.get(Farm, farm_id)


def workers_by_national_id(national_id, exclude_worker_id=None):
    stmt = select(Worker).where(Worker.national_id_key == normalize_national_id(national_id))
    if exclude_worker_id is not None:
        stmt = stmt.where(Worker.id != exclude_worker_id)
    return db.session.scalars(stmt.order_by(Worker.id)).all()


def active_workers(farm_id=None, ids=None):
    stmt = select(Worker).where(Worker.status == ACTIVE)
    if farm_id is not None:
        stmt = stmt.where(Worker.farm_id == farm_id)
    if ids is not None:
        stmt = stmt.where(Worker.id.in_(list(ids)))
    return db.session.scalars(stmt.order_by(Worker.id)).all()


def count_active_workers(farm_id) -> int:
    stmt = select(func.count(Worker.id)).where(Worker.farm_id == farm_id, Worker.status == ACTIVE)
    return db.session.scalar(stmt) or 0


def recompute_farm_total(farm_id) -> int:
    farm = get_farm(farm_id)
    total = count_active_workers(farm_id)
    if farm is not None and farm.total_workers != total:
        farm.total_workers = total
    return total


def find_room(farm_id, number):
    if not number:
        return None
    stmt = select(Room).where(Room.farm_id == farm_id, Room.number == str(number))
    return db.session.scalars(stmt).first()


def list_rooms(farm_id=None):
    stmt = select(Room)
    if farm_id is not None:
        stmt = stmt.where(Room.farm_id == farm_id)
    return db.session.scalars(stmt.order_by(Room.farm_id, Room.number)).all()


def farm_admins(farm_id):
    stmt = select(AppUser).where(AppUser.role == ADMIN, AppUser.farm_id == farm_id)
    return db.session.scalars(stmt.order_by(AppUser.id)).all()


def superadmins():
    stmt = select(AppUser).where(AppUser.role == SUPERADMIN)
    return db.session.scalars(stmt.order_by(AppUser.id)).all()


def swap_room_occupants(room: Room, occupant_ids) -> bool:
    """Write ``occupant_ids`` only if nobody changed the room since it was read.

    Returns False when the stored version moved on; the caller re-reads the
    room and tries again.
    """

    occupant_ids = list(occupant_ids)
    result = db.session.execute(
        update(Room)
        .where(Room.id == room.id, Room.version == room.version)
        .values(
            occupant_ids=occupant_ids,
            current_occupancy=len(occupant_ids),
            version=Room.version + 1,
            updated_at=func.now(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False
    db.session.expire(room)
    return True


def reload(instance):
    db.session.refresh(instance)
    return instance
