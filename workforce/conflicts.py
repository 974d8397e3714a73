"""Duplicate and cross-farm conflict detection.

The national ID is the only identity shared by the farm-scoped record
sets, and it is not unique in storage: the same person may have been
registered by several farms over time.  Registration therefore classifies
the situation instead of rejecting every collision.
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from difflib import SequenceMatcher
from enum import Enum
from typing import List, Optional

from flask import current_app
from sqlalchemy import or_, select

from . import db, store
from .models import ACTIVE, Worker, normalize_name, normalize_national_id

logger = logging.getLogger(__name__)


class Disposition(str, Enum):
    PROCEED = "proceed"
    REJECT = "reject"
    CROSS_FARM_CONFLICT = "cross_farm_conflict"
    REACTIVATION_CANDIDATE = "reactivation_candidate"
    TRANSFER_CANDIDATE = "transfer_candidate"


@dataclass
class SimilarWorker:
    worker: Worker
    ratio: float


@dataclass
class Resolution:
    disposition: Disposition
    existing: Optional[Worker] = None
    similar: List[SimilarWorker] = field(default_factory=list)

    @property
    def blocking(self) -> bool:
        return self.disposition is not Disposition.PROCEED

    @property
    def message(self) -> Optional[str]:
        w = self.existing
        if w is None:
            return None
        who = f"{w.name} (national ID {w.national_id})"
        if self.disposition is Disposition.REJECT:
            return f"{who} is already registered and active in this farm"
        if self.disposition is Disposition.CROSS_FARM_CONFLICT:
            return (
                f"{who} is still active in farm {w.farm_id}; the registration is pending "
                "until that farm records an exit date"
            )
        if self.disposition is Disposition.REACTIVATION_CANDIDATE:
            return f"{who} left this farm on {w.exit_date}; reactivate the existing record instead"
        if self.disposition is Disposition.TRANSFER_CANDIDATE:
            return f"{who} left farm {w.farm_id} on {w.exit_date}; transfer the existing record instead"
        return None

    @property
    def warnings(self) -> List[str]:
        return [
            f"{s.worker.name} (national ID {s.worker.national_id}, farm {s.worker.farm_id}) has a similar name"
            for s in self.similar
        ]

    def to_dict(self):
        return {
            "disposition": self.disposition.value,
            "message": self.message,
            "existing_worker_id": self.existing.id if self.existing else None,
            "existing_farm_id": self.existing.farm_id if self.existing else None,
            "similar_workers": [
                {"id": s.worker.id, "name": s.worker.name, "farm_id": s.worker.farm_id, "ratio": round(s.ratio, 3)}
                for s in self.similar
            ],
        }


def _preferred(matches: List[Worker]) -> Worker:
    # an active record first, then the most recent entry
    return max(matches, key=lambda w: (w.status == ACTIVE, w.entry_date or date.min, w.id))


def classify(existing: Optional[Worker], farm_id) -> Disposition:
    if existing is None:
        return Disposition.PROCEED
    same_farm = existing.farm_id == farm_id
    if existing.status == ACTIVE:
        return Disposition.REJECT if same_farm else Disposition.CROSS_FARM_CONFLICT
    return Disposition.REACTIVATION_CANDIDATE if same_farm else Disposition.TRANSFER_CANDIDATE


def similar_workers(name, national_id, exclude_worker_id=None, threshold=None) -> List[SimilarWorker]:
    """Active workers with a different national ID whose name looks the same."""

    key = normalize_name(name)
    tokens = [t for t in key.split(" ") if len(t) >= 3]
    if not tokens:
        return []
    if threshold is None:
        threshold = current_app.config.get("NAME_SIMILARITY_THRESHOLD", 0.88)

    stmt = select(Worker).where(
        Worker.status == ACTIVE,
        Worker.national_id_key != normalize_national_id(national_id),
        or_(*[Worker.name_key.contains(t) for t in tokens]),
    )
    if exclude_worker_id is not None:
        stmt = stmt.where(Worker.id != exclude_worker_id)

    found = []
    for worker in db.session.scalars(stmt):
        ratio = SequenceMatcher(None, key, worker.name_key).ratio()
        if ratio >= threshold:
            found.append(SimilarWorker(worker, ratio))
    found.sort(key=lambda s: s.ratio, reverse=True)
    return found


def resolve_registration(national_id, farm_id, name=None, exclude_worker_id=None) -> Resolution:
    matches = store.workers_by_national_id(national_id, exclude_worker_id=exclude_worker_id)
    existing = _preferred(matches) if matches else None
    if len(matches) > 1:
        logger.warning(
            "National ID %s is held by %d records (%s)",
            normalize_national_id(national_id), len(matches), ", ".join(str(w.id) for w in matches),
        )
    resolution = Resolution(classify(existing, farm_id), existing)
    if name:
        resolution.similar = similar_workers(name, national_id, exclude_worker_id=exclude_worker_id)
    if resolution.blocking:
        logger.info(
            "Registration of %s in farm %s classified as %s",
            normalize_national_id(national_id), farm_id, resolution.disposition.value,
        )
    return resolution
