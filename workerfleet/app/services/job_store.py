"""
Persistence for jobs and their tasks.

Pure data access: every method opens its own session, touches rows by
primary key (or by job id for reads) and commits. No business rules live
here; the executor decides what to write.
"""

import json
import logging
from contextlib import contextmanager
from typing import Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from workerfleet.app.core.errors import StoreError
from workerfleet.app.models.job import Job, JobStatus, JobType, Task, TaskProgress, TaskStatus, utc_now
from workerfleet.app.models.job_config import Target

logger = logging.getLogger(__name__)


class JobStore:
    def __init__(self, engine):
        self.engine = engine

    @contextmanager
    def _session(self):
        session = Session(self.engine, expire_on_commit=False)
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Job store operation failed: {e}")
            raise StoreError(str(e)) from e
        finally:
            session.close()

    def create_job_with_tasks(self, job_type: JobType, config: dict, targets: List[Target]) -> Job:
        """Insert a job and one task per target in a single transaction."""
        job = Job(
            type=job_type,
            status=JobStatus.pending,
            config=json.dumps(config),
            total_tasks=len(targets),
        )
        with self._session() as session:
            session.add(job)
            for position, (account_id, worker_name) in enumerate(targets):
                session.add(Task(
                    job_id=job.id,
                    position=position,
                    account_id=account_id,
                    worker_name=worker_name,
                ))
        return job

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._session() as session:
            return session.get(Job, job_id)

    def list_jobs(self, limit: int = 50) -> List[Job]:
        with self._session() as session:
            query = select(Job).order_by(col(Job.created_at).desc()).limit(limit)
            return list(session.exec(query).all())

    def get_jobs_by_status(self, status: JobStatus) -> List[Job]:
        with self._session() as session:
            query = select(Job).where(Job.status == status).order_by(Job.created_at)
            return list(session.exec(query).all())

    def get_tasks(self, job_id: str, status: Optional[TaskStatus] = None) -> List[Task]:
        with self._session() as session:
            query = select(Task).where(Task.job_id == job_id)
            if status is not None:
                query = query.where(Task.status == status)
            return list(session.exec(query.order_by(Task.position)).all())

    def get_task(self, task_id: str) -> Optional[Task]:
        with self._session() as session:
            return session.get(Task, task_id)

    def update_job(self, job_id: str, **fields) -> Job:
        with self._session() as session:
            job = session.get(Job, job_id)
            if job is None:
                raise StoreError(f"Job {job_id} does not exist")
            for key, value in fields.items():
                setattr(job, key, value)
            session.add(job)
            return job

    def update_task(self, task_id: str, **fields) -> Task:
        with self._session() as session:
            task = session.get(Task, task_id)
            if task is None:
                raise StoreError(f"Task {task_id} does not exist")
            for key, value in fields.items():
                setattr(task, key, value)
            session.add(task)
            return task

    def update_task_progress(self, task_id: str, progress: TaskProgress) -> Task:
        return self.update_task(task_id, progress=progress.model_dump_json())

    def reset_tasks_for_retry(self, task_ids: Iterable[str]) -> int:
        """Put tasks back to pending and bump their retry count.

        The previous attempt's progress, result and error are overwritten.
        """
        reset = 0
        with self._session() as session:
            for task_id in task_ids:
                task = session.get(Task, task_id)
                if task is None:
                    continue
                task.status = TaskStatus.pending
                task.retry_count += 1
                task.progress = None
                task.result = None
                task.error = None
                task.started_at = None
                task.completed_at = None
                session.add(task)
                reset += 1
        return reset

    def delete_job(self, job_id: str) -> bool:
        with self._session() as session:
            job = session.get(Job, job_id)
            if job is None:
                return False
            session.delete(job)
        logger.info(f"Deleted job {job_id}")
        return True

    def touch_job(self, job_id: str, status: JobStatus, **fields) -> Job:
        """Set a job's status, stamping started_at/completed_at as appropriate."""
        now = utc_now()
        if status == JobStatus.running:
            fields.setdefault("started_at", now)
            fields.setdefault("completed_at", None)
        elif status in (JobStatus.completed, JobStatus.partial, JobStatus.failed):
            fields.setdefault("completed_at", now)
        return self.update_job(job_id, status=status, **fields)
