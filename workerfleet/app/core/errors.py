"""
Error types for job submission and execution.

All errors inherit from WorkerFleetError. Errors raised inside a task
workflow are captured as the task's error message; errors raised at
submission time are mapped to HTTP status codes by the API layer.
"""


class WorkerFleetError(Exception):
    """Base exception for all worker fleet failures."""
    status_code = 500


class ValidationError(WorkerFleetError):
    """Raised when a job submission is malformed. No job is created."""
    status_code = 400


class NotFoundError(WorkerFleetError):
    """Raised when a job, account or named worker cannot be found."""
    status_code = 404


class RemoteError(WorkerFleetError):
    """Raised when the Cloudflare API reports a failure."""
    status_code = 502


class StoreError(WorkerFleetError):
    """Raised when the job store fails to persist or read a record."""
    status_code = 500


class JobBusyError(WorkerFleetError):
    """Raised when a job is already executing in this process."""
    status_code = 409

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job {job_id} is already executing")
