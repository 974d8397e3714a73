"""Bulk worker import from CSV or Excel uploads.

Each row goes through :func:`lifecycle.create_worker`, so imported workers
get the same duplicate checks, rooms and history as workers created one by
one.  Rows that collide with an existing person are reported, not forced.
"""

import logging
from dataclasses import dataclass, field
from typing import List

import pandas as pd

from . import lifecycle
from .errors import DuplicateWorkerError, LifecycleError, ValidationError

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ("name", "national_id", "gender", "entry_date")
OPTIONAL_COLUMNS = ("matricule", "phone", "birth_date", "room_number", "sector")


@dataclass
class ImportSummary:
    rows: int = 0
    created: List[int] = field(default_factory=list)
    pending: List[dict] = field(default_factory=list)
    confirmation_required: List[dict] = field(default_factory=list)
    duplicates: List[dict] = field(default_factory=list)
    invalid: List[dict] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self):
        return {
            "rows": self.rows,
            "created": len(self.created),
            "created_ids": self.created,
            "pending": self.pending,
            "confirmation_required": self.confirmation_required,
            "duplicates": self.duplicates,
            "invalid": self.invalid,
            "warnings": self.warnings,
        }


def read_upload(f) -> pd.DataFrame:
    name = (f.filename or "").lower()
    try:
        if name.endswith(".xlsx"):
            return pd.read_excel(f, dtype=str, engine="openpyxl")
        if name.endswith(".xls"):
            return pd.read_excel(f, dtype=str)
        return pd.read_csv(f, dtype=str)
    except Exception as e:
        raise ValueError(f"Could not read {f.filename}: {e}") from e


def _normalize_columns(df: pd.DataFrame) -> pd.DataFrame:
    df = df.rename(columns=lambda c: str(c).strip().lower().replace(" ", "_"))
    missing = set(REQUIRED_COLUMNS) - set(df.columns)
    if missing:
        raise ValidationError(f"Missing columns: {', '.join(sorted(missing))}")
    return df.astype(object).where(pd.notna(df), None)


def import_workers(df: pd.DataFrame, farm_id, actor_id=None, today=None) -> ImportSummary:
    df = _normalize_columns(df)
    summary = ImportSummary(rows=len(df))
    columns = [c for c in REQUIRED_COLUMNS + OPTIONAL_COLUMNS if c in df.columns]

    # spreadsheet line numbers: the header is line 1
    for line, record in enumerate(df[columns].to_dict(orient="records"), start=2):
        data = dict(record, farm_id=farm_id)
        try:
            result = lifecycle.create_worker(data, actor_id=actor_id, today=today)
        except DuplicateWorkerError as exc:
            summary.duplicates.append({"row": line, "error": exc.message})
            continue
        except LifecycleError as exc:
            summary.invalid.append({"row": line, "error": exc.message})
            continue

        if result.outcome is lifecycle.Outcome.PENDING_RESOLUTION:
            summary.pending.append({"row": line, "message": result.message})
        elif result.outcome is lifecycle.Outcome.CONFIRMATION_REQUIRED:
            summary.confirmation_required.append(
                {"row": line, "worker_id": result.worker.id, "message": result.message}
            )
        else:
            summary.created.append(result.worker.id)
        summary.warnings += [f"row {line}: {w}" for w in result.warnings]

    logger.info(
        "Imported %d of %d row(s) into farm %s (%d pending, %d to confirm, %d duplicate, %d invalid)",
        len(summary.created), summary.rows, farm_id, len(summary.pending),
        len(summary.confirmation_required), len(summary.duplicates), len(summary.invalid),
    )
    return summary
