"""Coordinator error taxonomy.

Every error carries a stable ``code`` and the HTTP status the API surfaces it
with, so route handlers never translate errors by hand.
"""


class FleetError(Exception):
    """Base class for coordinator errors."""

    code = "fleet_error"
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(FleetError):
    """Malformed input at creation time. Never persisted."""

    code = "validation_error"
    status_code = 400


class NotFoundError(FleetError):
    """Referenced job or worker does not exist."""

    code = "not_found"
    status_code = 404

    def __init__(self, kind: str, entity_id: str) -> None:
        super().__init__(f"{kind.capitalize()} not found: {entity_id}")
        self.kind = kind
        self.entity_id = entity_id


class InvalidTransitionError(FleetError):
    """Attempted job status change is not an edge of the state machine."""

    code = "invalid_transition"
    status_code = 409

    def __init__(self, job_id: str, current: str, attempted: str) -> None:
        super().__init__(f"Job {job_id} cannot move from '{current}' to '{attempted}'")
        self.job_id = job_id
        self.current = current
        self.attempted = attempted


class UnknownWorkerError(FleetError):
    """Heartbeat or job pull from an unregistered worker id; the worker should re-register."""

    code = "unknown_worker"
    status_code = 404

    def __init__(self, worker_id: str) -> None:
        super().__init__(f"Unknown worker: {worker_id}")
        self.worker_id = worker_id


class AuthenticationError(FleetError):
    """Missing or invalid worker credential."""

    code = "unauthorized"
    status_code = 401


class WorkerAtCapacityError(FleetError):
    """A slot was requested on a worker whose counter is already at its limit."""

    code = "worker_at_capacity"
    status_code = 409

    def __init__(self, worker_id: str) -> None:
        super().__init__(f"Worker {worker_id} is at capacity")
        self.worker_id = worker_id


class NoEligibleWorkerError(FleetError):
    """No worker can take the job right now. Soft: logged, never raised to API callers."""

    code = "no_eligible_worker"
    status_code = 503

    def __init__(self, job_id: str, priority: int) -> None:
        super().__init__(f"No eligible worker for job {job_id} (priority {priority})")
        self.job_id = job_id
        self.priority = priority


class UpstreamGenerationError(FleetError):
    """Scenario or fingerprint provider failed. Absorbed by the deterministic fallback."""

    code = "upstream_generation_error"
    status_code = 502
