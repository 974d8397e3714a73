class LifecycleError(Exception):
    """Base class for every error a lifecycle operation can raise.

    ``code`` is a stable machine-readable identifier and ``status_code`` the
    HTTP status the API blueprint answers with.
    """

    code = "lifecycle_error"
    status_code = 400

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self):
        payload = {"success": False, "error": self.message, "code": self.code}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(LifecycleError):
    code = "validation_error"
    status_code = 400


class WorkerNotFoundError(LifecycleError):
    code = "worker_not_found"
    status_code = 404

    def __init__(self, worker_id):
        super().__init__(f"Worker {worker_id} not found", worker_id=worker_id)


class DuplicateWorkerError(LifecycleError):
    code = "duplicate_worker"
    status_code = 409


class InvalidTransitionError(LifecycleError):
    code = "invalid_transition"
    status_code = 409


class CommitError(LifecycleError):
    # nothing was written when this is raised
    code = "commit_failed"
    status_code = 503


class RoomContentionError(CommitError):
    code = "room_contention"

    def __init__(self, farm_id, room_number, attempts: int):
        super().__init__(
            f"Room {room_number} of farm {farm_id} kept changing after {attempts} attempts",
            farm_id=farm_id,
            room_number=room_number,
        )
