from flask import Blueprint, request, jsonify, current_app
from sqlalchemy import select

from . import db, lifecycle, occupancy, store
from .errors import LifecycleError, ValidationError
from .imports import import_workers, read_upload
from .models import Worker
from .periods import has_multi_farm_history, open_period_count

api = Blueprint("api", __name__)

def actor_id():
    return request.headers.get("X-Actor-Id", type=int)

def worker_payload(worker: Worker):
    if worker is None:
        return None
    return {
        "id": worker.id,
        "name": worker.name,
        "national_id": worker.national_id,
        "matricule": worker.matricule,
        "gender": worker.gender,
        "birth_date": worker.birth_date.isoformat() if worker.birth_date else None,
        "age": worker.age,
        "phone": worker.phone,
        "farm_id": worker.farm_id,
        "room_number": worker.room_number,
        "sector": worker.sector,
        "supervisor_id": worker.supervisor_id,
        "status": worker.status,
        "entry_date": worker.entry_date.isoformat() if worker.entry_date else None,
        "exit_date": worker.exit_date.isoformat() if worker.exit_date else None,
        "exit_reason": worker.exit_reason,
        "return_count": worker.return_count,
        "work_history": [period_payload(p) for p in worker.history],
        "allocated_items": [
            {
                "id": a.id,
                "item_name": a.item_name,
                "status": a.status,
                "allocated_at": a.allocated_at.isoformat() if a.allocated_at else None,
                "returned_at": a.returned_at.isoformat() if a.returned_at else None,
                "stock_item_id": a.stock_item_id,
            }
            for a in worker.allocated_items
        ],
    }

def period_payload(period, days=None):
    payload = {
        "entry_date": period.entry_date.isoformat(),
        "exit_date": period.exit_date.isoformat() if period.exit_date else None,
        "exit_reason": period.exit_reason,
        "room_number": period.room_number,
        "sector": period.sector,
        "farm_id": period.farm_id,
    }
    if days is not None:
        payload["days"] = days
    return payload

def room_payload(room):
    return {
        "id": room.id,
        "farm_id": room.farm_id,
        "number": room.number,
        "gender_category": room.gender_category,
        "sector": room.sector,
        "total_capacity": room.total_capacity,
        "occupant_ids": list(room.occupant_ids or []),
        "current_occupancy": room.current_occupancy,
        "version": room.version,
    }

def result_payload(result):
    return {
        "success": True,
        "outcome": result.outcome.value,
        "message": result.message,
        "worker": worker_payload(result.worker),
        "warnings": result.warnings,
        "notifications": [e.to_dict() for e in result.events],
        "resolution": result.resolution.to_dict() if result.resolution else None,
        "deleted_ids": result.deleted_ids,
    }

def batch_payload(result):
    return {
        "success": not result.errors,
        "succeeded": result.succeeded,
        "errors": result.errors,
        "warnings": result.warnings,
        "notifications": [e.to_dict() for e in result.events],
    }

def json_body():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("JSON object body required")
    return data

@api.errorhandler(LifecycleError)
def lifecycle_error(err):
    current_app.logger.info("%s refused: %s", request.path, err.message)
    return jsonify(err.to_dict()), err.status_code

@api.post("/workers")
def create_worker():
    data = json_body()
    result = lifecycle.create_worker(data, actor_id=actor_id(), accept_existing=bool(data.get("accept_existing")))
    # 201 only when a new record was written
    created = result.outcome is lifecycle.Outcome.COMPLETED and not result.resolution.blocking
    status = 201 if created else 200
    return jsonify(result_payload(result)), status

@api.get("/workers")
def list_workers():
    stmt = select(Worker)
    farm_id = request.args.get("farm_id", type=int)
    status = request.args.get("status")
    if farm_id is not None:
        stmt = stmt.where(Worker.farm_id == farm_id)
    if status:
        stmt = stmt.where(Worker.status == status)
    workers = db.session.scalars(stmt.order_by(Worker.id)).all()
    return jsonify({"success": True, "workers": [worker_payload(w) for w in workers]})

@api.get("/workers/<int:worker_id>")
def get_worker(worker_id):
    return jsonify({"success": True, "worker": worker_payload(store.get_worker(worker_id))})

@api.patch("/workers/<int:worker_id>")
def edit_worker(worker_id):
    result = lifecycle.edit_worker(worker_id, json_body(), actor_id=actor_id())
    return jsonify(result_payload(result))

@api.post("/workers/<int:worker_id>/reactivate")
def reactivate_worker(worker_id):
    data = json_body()
    result = lifecycle.reactivate_worker(
        worker_id, data.get("entry_date"), data.get("room_number"), data.get("sector"), actor_id=actor_id()
    )
    return jsonify(result_payload(result))

@api.post("/workers/<int:worker_id>/transfer")
def transfer_worker(worker_id):
    data = json_body()
    result = lifecycle.transfer_worker(
        worker_id, data.get("farm_id"), data.get("entry_date"), data.get("room_number"), data.get("sector"),
        actor_id=actor_id(),
    )
    return jsonify(result_payload(result))

@api.delete("/workers/<int:worker_id>")
def delete_worker(worker_id):
    return jsonify(result_payload(lifecycle.delete_worker(worker_id, actor_id=actor_id())))

@api.post("/workers/delete")
def bulk_delete():
    data = json_body()
    result = lifecycle.bulk_delete_workers(data.get("worker_ids"), actor_id=actor_id())
    return jsonify(result_payload(result))

@api.post("/workers/exits")
def bulk_exits():
    data = json_body()
    result = lifecycle.bulk_record_exits(data.get("exits") or [], actor_id=actor_id())
    return jsonify(batch_payload(result)), 200 if result.succeeded or not result.errors else 400

@api.post("/workers/allocations")
def bulk_allocations():
    data = json_body()
    result = lifecycle.bulk_allocate_items(data.get("worker_ids") or [], data.get("items") or [], actor_id=actor_id())
    return jsonify(batch_payload(result))

@api.get("/workers/<int:worker_id>/history")
def worker_history(worker_id):
    history = lifecycle.worker_history(worker_id)
    return jsonify({
        "success": True,
        "periods": [period_payload(s.period, s.days) for s in history.summaries],
        "total_days": history.total_days,
        "duplicates_removed": history.duplicates_removed,
        "open_periods": open_period_count(history.periods),
        "multi_farm": has_multi_farm_history(history.periods),
    })

@api.get("/rooms")
def list_rooms():
    rooms = store.list_rooms(request.args.get("farm_id", type=int))
    return jsonify({"success": True, "rooms": [room_payload(r) for r in rooms]})

@api.post("/workers/import")
def import_upload():
    if "file" not in request.files:
        return jsonify({"success": False, "error": "No file"}), 400
    farm_id = request.form.get("farm_id", type=int) or request.args.get("farm_id", type=int)
    if farm_id is None:
        return jsonify({"success": False, "error": "farm_id required"}), 400
    f = request.files["file"]
    try:
        df = read_upload(f)
    except ValueError as e:
        return jsonify({"success": False, "error": str(e)}), 400
    summary = import_workers(df, farm_id, actor_id=actor_id())
    return jsonify({"success": True, **summary.to_dict()})

@api.post("/admin/rooms/sweep")
def sweep_rooms():
    farm_id = request.args.get("farm_id", type=int)
    with store.atomic():
        report = occupancy.sweep_inactive_occupants(farm_id)
    return jsonify({"success": True, "rooms_checked": report.rooms_checked, "rooms_fixed": report.rooms_fixed,
                    "removed": {str(k): v for k, v in report.removed.items()}})

@api.post("/admin/rooms/sync")
def sync_rooms():
    farm_id = request.args.get("farm_id", type=int)
    with store.atomic():
        report = occupancy.rebuild_room_occupancy(farm_id)
    return jsonify({"success": True, "rooms_checked": report.rooms_checked, "rooms_fixed": report.rooms_fixed})

@api.post("/admin/workers/heal")
def heal_statuses():
    report = lifecycle.heal_inconsistent_statuses()
    return jsonify({"success": True, "healed": report.healed, "unresolved": report.unresolved})
