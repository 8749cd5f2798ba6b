from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel
from sqlmodel import Session
from typing import Any, Dict, List, Optional
from workerfleet.app.core.db import engine, get_session
from workerfleet.app.core.errors import WorkerFleetError
from workerfleet.app.models.audit import AuditLog
from workerfleet.app.models.job import JobRead, JobType, TaskRead
from workerfleet.app.services.account_store import AccountStore
from workerfleet.app.services.job_executor import JobExecutor
from workerfleet.app.services.job_store import JobStore
import logging

router = APIRouter(prefix="/jobs", tags=["jobs"])
logger = logging.getLogger(__name__)

_executor: Optional[JobExecutor] = None

def get_executor() -> JobExecutor:
    global _executor
    if _executor is None:
        _executor = JobExecutor(JobStore(engine), AccountStore(engine))
    return _executor


class JobSubmission(BaseModel):
    # Loosely typed on purpose: the executor validates per job type and
    # reports problems as a 400 rather than FastAPI's 422.
    account_ids: Optional[List[str]] = None
    workers: Optional[List[Dict[str, Any]]] = None
    worker_name: Optional[str] = None
    script: Optional[str] = None
    compatibility_date: Optional[str] = None
    bindings: Optional[List[Dict[str, Any]]] = None


class RetryRequest(BaseModel):
    task_ids: Optional[List[str]] = None


def _http_error(e: WorkerFleetError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=str(e))


def _audit(session: Session, action: str, job_id: str, details: str, request: Request):
    log = AuditLog(
        user_id="admin",
        action=action,
        resource_id=job_id,
        details=details,
        ip_address=request.client.host if request.client else None,
    )
    session.add(log)
    session.commit()


def _submit(
    job_type: JobType,
    body: JobSubmission,
    request: Request,
    background_tasks: BackgroundTasks,
    session: Session,
    executor: JobExecutor,
) -> JobRead:
    try:
        job = executor.create_job(job_type, body.model_dump(exclude_none=True))
    except WorkerFleetError as e:
        raise _http_error(e)

    _audit(session, "submit_job", job.id, f"Type: {job.type.value}, tasks: {job.total_tasks}", request)

    # Execution failures after this point are only logged
    background_tasks.add_task(executor.run_job_logged, job.id)
    return job.to_read()


@router.get("/", response_model=List[JobRead])
def read_jobs(limit: int = 50, executor: JobExecutor = Depends(get_executor)):
    return [job.to_read() for job in executor.list_jobs(limit)]

@router.get("/{job_id}", response_model=JobRead)
def read_job(job_id: str, executor: JobExecutor = Depends(get_executor)):
    try:
        return executor.get_job(job_id).to_read()
    except WorkerFleetError as e:
        raise _http_error(e)

@router.get("/{job_id}/tasks", response_model=List[TaskRead])
def read_job_tasks(job_id: str, executor: JobExecutor = Depends(get_executor)):
    try:
        executor.get_job(job_id)
    except WorkerFleetError as e:
        raise _http_error(e)
    return [task.to_read() for task in executor.get_tasks(job_id)]

@router.get("/{job_id}/events")
async def stream_job_events(job_id: str, executor: JobExecutor = Depends(get_executor)):
    """Server-sent events of task updates until the job completes."""
    try:
        job = executor.get_job(job_id)
        stream = executor.watch(job_id)
    except WorkerFleetError as e:
        raise _http_error(e)

    async def event_generator():
        if stream is None:
            # Nothing will be published; report the settled state and stop
            yield f"event: status\ndata: {job.to_read().model_dump_json()}\n\n"
            return
        async for update in stream:
            yield f"event: {update.event}\ndata: {update.model_dump_json()}\n\n"

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )

@router.post("/create", response_model=JobRead, status_code=202)
def create_workers(body: JobSubmission, request: Request, background_tasks: BackgroundTasks,
                   session: Session = Depends(get_session), executor: JobExecutor = Depends(get_executor)):
    return _submit(JobType.create, body, request, background_tasks, session, executor)

@router.post("/update", response_model=JobRead, status_code=202)
def update_workers(body: JobSubmission, request: Request, background_tasks: BackgroundTasks,
                   session: Session = Depends(get_session), executor: JobExecutor = Depends(get_executor)):
    return _submit(JobType.update, body, request, background_tasks, session, executor)

@router.post("/delete", response_model=JobRead, status_code=202)
def delete_workers(body: JobSubmission, request: Request, background_tasks: BackgroundTasks,
                   session: Session = Depends(get_session), executor: JobExecutor = Depends(get_executor)):
    return _submit(JobType.delete, body, request, background_tasks, session, executor)

@router.post("/query", response_model=JobRead, status_code=202)
def query_workers(body: JobSubmission, request: Request, background_tasks: BackgroundTasks,
                  session: Session = Depends(get_session), executor: JobExecutor = Depends(get_executor)):
    return _submit(JobType.query, body, request, background_tasks, session, executor)

@router.post("/list", response_model=JobRead, status_code=202)
def list_workers(body: JobSubmission, request: Request, background_tasks: BackgroundTasks,
                 session: Session = Depends(get_session), executor: JobExecutor = Depends(get_executor)):
    return _submit(JobType.list, body, request, background_tasks, session, executor)

@router.post("/health-check", response_model=JobRead, status_code=202)
def health_check_accounts(body: JobSubmission, request: Request, background_tasks: BackgroundTasks,
                          session: Session = Depends(get_session), executor: JobExecutor = Depends(get_executor)):
    return _submit(JobType.health_check, body, request, background_tasks, session, executor)

@router.post("/batch-update", response_model=JobRead, status_code=202)
def batch_update_workers(body: JobSubmission, request: Request, background_tasks: BackgroundTasks,
                         session: Session = Depends(get_session), executor: JobExecutor = Depends(get_executor)):
    return _submit(JobType.batch_update, body, request, background_tasks, session, executor)

@router.post("/batch-delete", response_model=JobRead, status_code=202)
def batch_delete_workers(body: JobSubmission, request: Request, background_tasks: BackgroundTasks,
                         session: Session = Depends(get_session), executor: JobExecutor = Depends(get_executor)):
    return _submit(JobType.batch_delete, body, request, background_tasks, session, executor)

@router.post("/{job_id}/retry")
def retry_job(job_id: str, request: Request, background_tasks: BackgroundTasks,
              body: Optional[RetryRequest] = None,
              session: Session = Depends(get_session), executor: JobExecutor = Depends(get_executor)):
    try:
        executor.get_job(job_id)
    except WorkerFleetError as e:
        raise _http_error(e)
    if executor.is_executing(job_id):
        raise HTTPException(status_code=409, detail=f"Job {job_id} is already executing")

    task_ids = body.task_ids if body else None
    _audit(session, "retry_job", job_id, f"Tasks: {', '.join(task_ids) if task_ids else 'all failed'}", request)

    background_tasks.add_task(executor.retry_job_logged, job_id, task_ids)
    return {"success": True, "message": "Retry started"}

@router.delete("/{job_id}")
def delete_job(job_id: str, request: Request, session: Session = Depends(get_session),
               executor: JobExecutor = Depends(get_executor)):
    try:
        executor.delete_job(job_id)
    except WorkerFleetError as e:
        raise _http_error(e)

    _audit(session, "delete_job", job_id, None, request)
    return {"ok": True}
