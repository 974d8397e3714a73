import re
from dataclasses import dataclass
from datetime import date, datetime, timezone

from sqlalchemy import func
from sqlalchemy.orm import validates

from . import db
from .periods import Period

ACTIVE = "active"
INACTIVE = "inactive"

MALE = "male"
FEMALE = "female"
GENDERS = (MALE, FEMALE)

MEN_ROOM = "menRoom"
WOMEN_ROOM = "womenRoom"

ALLOCATED = "allocated"
RETURNED = "returned"

SUPERADMIN = "superadmin"
ADMIN = "admin"


def utcnow():
    return datetime.now(timezone.utc)


def normalize_national_id(value: str | None) -> str:
    return re.sub(r"\s+", "", str(value or "")).upper()


def normalize_name(value: str | None) -> str:
    return re.sub(r"\s+", " ", str(value or "").strip()).lower()


def room_category_for(gender: str | None) -> str | None:
    if gender == MALE:
        return MEN_ROOM
    if gender == FEMALE:
        return WOMEN_ROOM
    return None


def age_on(birth_date: date, today: date) -> int:
    years = today.year - birth_date.year
    if (today.month, today.day) < (birth_date.month, birth_date.day):
        years -= 1
    return max(0, years)


@dataclass(frozen=True)
class Active:
    """Lifecycle state of a worker currently employed."""

    status = ACTIVE


@dataclass(frozen=True)
class Inactive:
    """Lifecycle state of a worker who left on ``exit_date``."""

    exit_date: date
    reason: str | None = None
    status = INACTIVE


class Farm(db.Model):
    __tablename__ = "farms"
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(150), nullable=False)
    total_workers = db.Column(db.Integer, nullable=False, default=0)  # active workers only
    created_at = db.Column(db.DateTime, default=func.now())

class AppUser(db.Model):
    __tablename__ = "users"
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(150), nullable=False)
    email = db.Column(db.String(255))
    role = db.Column(db.String(20), nullable=False, default="user")  # superadmin/admin/user
    farm_id = db.Column(db.Integer, db.ForeignKey("farms.id"), nullable=True, index=True)

class Room(db.Model):
    __tablename__ = "rooms"
    id = db.Column(db.Integer, primary_key=True)
    farm_id = db.Column(db.Integer, db.ForeignKey("farms.id"), nullable=False, index=True)
    number = db.Column(db.String(50), nullable=False)
    gender_category = db.Column(db.String(20), nullable=False)  # menRoom/womenRoom
    sector = db.Column(db.String(120))
    total_capacity = db.Column(db.Integer, nullable=False, default=0)
    occupant_ids = db.Column(db.JSON, nullable=False, default=list)
    current_occupancy = db.Column(db.Integer, nullable=False, default=0)
    # bumped on every occupant write; room writes are compare-and-swap on it
    version = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(db.DateTime, default=func.now(), onupdate=func.now())

    __table_args__ = (db.UniqueConstraint("farm_id", "number", name="uq_room_farm_number"),)

    def accepts(self, gender: str | None) -> bool:
        return self.gender_category == room_category_for(gender)

class Worker(db.Model):
    """One physical person's current employment snapshot.

    ``farm_id`` is the farm the worker is attached to, or was last attached
    to when inactive.  ``national_id`` is the only identity that survives
    across farms; it is indexed through ``national_id_key`` but deliberately
    not unique, since the same person legitimately re-enters under other
    farms over time.
    """

    __tablename__ = "workers"
    id = db.Column(db.Integer, primary_key=True)
    national_id = db.Column(db.String(64), nullable=False)
    national_id_key = db.Column(db.String(64), nullable=False, index=True)
    matricule = db.Column(db.String(64))
    name = db.Column(db.String(255), nullable=False)
    name_key = db.Column(db.String(255), nullable=False, index=True)
    gender = db.Column(db.String(10), nullable=False)
    birth_date = db.Column(db.Date)
    age = db.Column(db.Integer)
    phone = db.Column(db.String(32))
    farm_id = db.Column(db.Integer, db.ForeignKey("farms.id"), nullable=False, index=True)
    room_number = db.Column(db.String(50))
    sector = db.Column(db.String(120))
    supervisor_id = db.Column(db.Integer)
    status = db.Column(db.String(10), nullable=False, default=ACTIVE, index=True)
    entry_date = db.Column(db.Date)
    exit_date = db.Column(db.Date)
    exit_reason = db.Column(db.String(120))
    return_count = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime, default=func.now())
    updated_at = db.Column(db.DateTime, default=func.now(), onupdate=func.now())

    work_history = db.relationship(
        "WorkPeriod",
        backref="worker",
        order_by="WorkPeriod.entry_date",
        cascade="all, delete-orphan",
        lazy=True,
    )
    allocated_items = db.relationship(
        "ItemAllocation",
        backref="worker",
        order_by="ItemAllocation.id",
        cascade="all, delete-orphan",
        lazy=True,
    )

    @validates("national_id")
    def _set_national_id_key(self, key, value):
        self.national_id_key = normalize_national_id(value)
        return (value or "").strip()

    @validates("name")
    def _set_name_key(self, key, value):
        self.name_key = normalize_name(value)
        return " ".join((value or "").split())

    @property
    def is_active(self) -> bool:
        return self.status == ACTIVE

    @property
    def lifecycle(self):
        if self.status == INACTIVE and self.exit_date is not None:
            return Inactive(self.exit_date, self.exit_reason)
        return Active()

    @lifecycle.setter
    def lifecycle(self, state):
        if isinstance(state, Inactive):
            self.status = INACTIVE
            self.exit_date = state.exit_date
            self.exit_reason = state.reason
        else:
            self.status = ACTIVE
            self.exit_date = None
            self.exit_reason = None

    def snapshot_period(self) -> Period | None:
        """The period described by the worker's top-level fields."""

        if self.entry_date is None:
            return None
        return Period(
            entry_date=self.entry_date,
            exit_date=self.exit_date,
            exit_reason=self.exit_reason,
            room_number=self.room_number,
            sector=self.sector,
            farm_id=self.farm_id,
        )

    @property
    def history(self) -> list[Period]:
        return [p.to_period() for p in self.work_history]

    def replace_history(self, periods) -> None:
        self.work_history[:] = [WorkPeriod.from_period(p) for p in periods]

class WorkPeriod(db.Model):
    __tablename__ = "work_periods"
    id = db.Column(db.Integer, primary_key=True)
    worker_id = db.Column(db.Integer, db.ForeignKey("workers.id"), nullable=False, index=True)
    entry_date = db.Column(db.Date, nullable=False)
    exit_date = db.Column(db.Date)  # open period while NULL
    exit_reason = db.Column(db.String(120))
    room_number = db.Column(db.String(50))
    sector = db.Column(db.String(120))
    farm_id = db.Column(db.Integer)  # historical only, never a live reference

    def to_period(self) -> Period:
        return Period(
            entry_date=self.entry_date,
            exit_date=self.exit_date,
            exit_reason=self.exit_reason,
            room_number=self.room_number,
            sector=self.sector,
            farm_id=self.farm_id,
        )

    @classmethod
    def from_period(cls, period: Period) -> "WorkPeriod":
        return cls(
            entry_date=period.entry_date,
            exit_date=period.exit_date,
            exit_reason=period.exit_reason,
            room_number=period.room_number,
            sector=period.sector,
            farm_id=period.farm_id,
        )

class ItemAllocation(db.Model):
    __tablename__ = "item_allocations"
    id = db.Column(db.Integer, primary_key=True)
    worker_id = db.Column(db.Integer, db.ForeignKey("workers.id"), nullable=False, index=True)
    item_name = db.Column(db.String(120), nullable=False)
    allocated_at = db.Column(db.DateTime, default=utcnow)
    allocated_by = db.Column(db.Integer)
    status = db.Column(db.String(10), nullable=False, default=ALLOCATED)  # allocated -> returned
    returned_at = db.Column(db.DateTime)
    stock_item_id = db.Column(db.Integer, db.ForeignKey("stock_items.id"))
    farm_id = db.Column(db.Integer, nullable=False)

    def mark_returned(self, when=None) -> bool:
        if self.status != ALLOCATED:
            return False
        self.status = RETURNED
        self.returned_at = when or utcnow()
        return True

class StockItem(db.Model):
    __tablename__ = "stock_items"
    id = db.Column(db.Integer, primary_key=True)
    farm_id = db.Column(db.Integer, db.ForeignKey("farms.id"), nullable=False, index=True)
    item_name = db.Column(db.String(120), nullable=False)
    quantity = db.Column(db.Integer, nullable=False, default=0)
    unit = db.Column(db.String(20), default="piece")
    last_updated = db.Column(db.DateTime, default=utcnow)

class Notification(db.Model):
    __tablename__ = "notifications"
    id = db.Column(db.Integer, primary_key=True)
    type = db.Column(db.String(60), nullable=False)
    title = db.Column(db.String(255), nullable=False)
    message = db.Column(db.Text, nullable=False)
    recipient_id = db.Column(db.Integer, index=True)
    recipient_farm_id = db.Column(db.String(40))  # farm id, or "central" for superadmins
    priority = db.Column(db.String(10), default="medium")
    created_by = db.Column(db.Integer)
    action_payload = db.Column(db.JSON)
    status = db.Column(db.String(10), default="unread")
    created_at = db.Column(db.DateTime, default=func.now())
