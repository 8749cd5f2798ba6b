"""Job execution engine.

Turns one submitted job into per-target tasks, runs the pending tasks of a
job under bounded concurrency and derives the job's final status from the
task table.

Handles:
- Fan-out at submission (job + tasks in one transaction)
- Continuous-admission scheduling (at most ``concurrency_limit`` tasks in flight)
- The per-type Cloudflare workflows, with a progress write after each step
- Final status derivation by re-scanning the tasks of the job
- Selective retry of failed tasks
- Startup recovery of jobs left running by a dead process

Job counts are never kept as live counters: they are recomputed from the
task rows every time a job reaches a terminal status, so concurrently
finishing tasks cannot lose updates.
"""

import asyncio
import json
import logging
from typing import Callable, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from workerfleet.app.core.config import settings
from workerfleet.app.core.errors import JobBusyError, NotFoundError, StoreError, ValidationError
from workerfleet.app.models.account import Account
from workerfleet.app.models.job import (
    TERMINAL_TASK_STATUSES,
    utc_now,
    Job,
    JobStatus,
    JobType,
    Task,
    TaskProgress,
    TaskStatus,
)
from workerfleet.app.models.job_config import job_config_adapter
from workerfleet.app.services.account_store import AccountStore
from workerfleet.app.services.cloudflare_client import CloudflareClient, WorkersClient
from workerfleet.app.services.events import TaskEvents
from workerfleet.app.services.job_store import JobStore

logger = logging.getLogger(__name__)

INTERRUPTED_ERROR = "Interrupted by process restart before completion"


def derive_job_status(failed_count: int, total_tasks: int) -> JobStatus:
    if failed_count == 0:
        return JobStatus.completed
    if failed_count == total_tasks:
        return JobStatus.failed
    return JobStatus.partial


def worker_url(worker_name: str, subdomain: str) -> str:
    return f"https://{worker_name}.{subdomain}.workers.dev"


async def find_worker(client: WorkersClient, worker_name: str) -> Optional[dict]:
    workers = await client.list_workers()
    return next((w for w in workers if w.get("id") == worker_name), None)


class JobExecutor:
    """Runs jobs against Cloudflare accounts.

    ``execute_job`` refuses to run a job that is already executing in this
    process; there is no cross-process lock.
    """

    def __init__(
        self,
        store: JobStore,
        accounts: AccountStore,
        client_factory: Callable[[Account], WorkersClient] = CloudflareClient,
        concurrency_limit: Optional[int] = None,
        events: Optional[TaskEvents] = None,
    ):
        self.store = store
        self.accounts = accounts
        self.client_factory = client_factory
        if concurrency_limit is None:
            concurrency_limit = settings.JOB_CONCURRENCY
        self.concurrency_limit = concurrency_limit
        if self.concurrency_limit < 1:
            raise ValueError("concurrency_limit must be at least 1")
        self.events = events or TaskEvents()
        self._active_jobs: set = set()

        self._workflows: Dict[JobType, Callable] = {
            JobType.create: self._create_worker,
            JobType.update: self._update_worker,
            JobType.delete: self._delete_worker,
            JobType.query: self._query_worker,
            JobType.list: self._list_workers,
            JobType.health_check: self._health_check,
            JobType.batch_update: self._batch_update_worker,
            JobType.batch_delete: self._batch_delete_worker,
        }
        missing = set(JobType) - set(self._workflows)
        if missing:
            raise RuntimeError(f"No workflow for job types: {sorted(t.value for t in missing)}")

    # --- Submission ---

    def create_job(self, job_type: JobType, config: dict) -> Job:
        """Validate the config and persist the job with one task per target.

        Returns the job in pending status; nothing is executed here.
        """
        data = dict(config)
        try:
            data["type"] = JobType(job_type).value
            job_config = job_config_adapter.validate_python(data)
        except PydanticValidationError as e:
            raise ValidationError(_format_validation_error(e)) from e
        except ValueError as e:
            raise ValidationError(f"Unknown job type: {job_type}") from e

        targets = job_config.targets()
        job = self.store.create_job_with_tasks(
            JobType(job_config.type),
            job_config.model_dump(mode="json", exclude_none=True),
            targets,
        )
        logger.info(f"Created {job.type.value} job {job.id} with {len(targets)} task(s)")
        return job

    # --- Read paths ---

    def get_job(self, job_id: str) -> Job:
        job = self.store.get_job(job_id)
        if job is None:
            raise NotFoundError("Job not found")
        return job

    def get_tasks(self, job_id: str) -> List[Task]:
        return self.store.get_tasks(job_id)

    def list_jobs(self, limit: Optional[int] = None) -> List[Job]:
        return self.store.list_jobs(limit or settings.JOB_LIST_LIMIT)

    def subscribe(self, job_id: str):
        return self.events.subscribe(job_id)

    def watch(self, job_id: str):
        """Subscribe to a job that has updates still to come.

        Returns None when the job is settled and not executing here, since
        nothing would ever be published for it. A pending job is watched so
        that a stream opened right after submission sees the run.
        """
        job = self.get_job(job_id)
        if job_id in self._active_jobs or job.status == JobStatus.pending:
            return self.events.subscribe(job_id)
        return None

    def is_executing(self, job_id: str) -> bool:
        return job_id in self._active_jobs

    # --- Execution ---

    async def execute_job(self, job_id: str) -> Job:
        """Run every pending task of the job, then settle the job's status."""
        job = self.get_job(job_id)
        if job_id in self._active_jobs:
            raise JobBusyError(job_id)

        self._active_jobs.add(job_id)
        try:
            job_config = job_config_adapter.validate_json(job.config)
            self.store.touch_job(job_id, JobStatus.running)

            pending = self.store.get_tasks(job_id, status=TaskStatus.pending)
            logger.info(
                f"Job {job_id} running: {len(pending)} pending of {job.total_tasks} task(s), "
                f"concurrency {self.concurrency_limit}"
            )
            await self._run_tasks(pending, job, job_config)

            return self._finalize(job)
        except StoreError as e:
            # The job cannot be settled; end every open stream instead
            logger.error(f"Job {job_id} aborted by a store failure: {e}")
            self.events.job_aborted(job_id, str(e))
            raise
        finally:
            self._active_jobs.discard(job_id)

    async def _run_tasks(self, tasks: List[Task], job: Job, job_config) -> None:
        """Continuous admission: start the next task as soon as any in-flight task settles."""
        in_flight: set = set()
        settled: list = []

        for task in tasks:
            if len(in_flight) >= self.concurrency_limit:
                done, in_flight = await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
                settled.extend(done)
            in_flight.add(asyncio.create_task(self._execute_task(task, job, job_config)))

        if in_flight:
            done, _ = await asyncio.wait(in_flight)
            settled.extend(done)

        # Task workflows capture their own failures; anything left is a store failure
        for t in settled:
            if t.exception() is not None:
                raise t.exception()

    async def _execute_task(self, task: Task, job: Job, job_config) -> None:
        task = self.store.update_task(
            task.id, status=TaskStatus.running, started_at=utc_now(), completed_at=None
        )
        self.events.task_changed(task)

        try:
            account = self.accounts.get_account(task.account_id)
            if account is None:
                raise NotFoundError("Account not found")

            async with self.client_factory(account) as client:
                result = await self._workflows[job.type](client, job_config, task)
        except StoreError:
            raise
        except Exception as e:
            error = str(e) or e.__class__.__name__
            logger.warning(f"Task {task.id} of job {job.id} ({task.account_id}) failed: {error}")
            task = self.store.update_task(
                task.id,
                status=TaskStatus.failed,
                completed_at=utc_now(),
                error=error,
            )
        else:
            task = self.store.update_task(
                task.id,
                status=TaskStatus.success,
                completed_at=utc_now(),
                result=json.dumps(result),
                error=None,
            )

        self.events.task_changed(task)

    def _finalize(self, job: Job) -> Job:
        tasks = self.store.get_tasks(job.id)
        completed = sum(1 for t in tasks if t.status == TaskStatus.success)
        failed = sum(1 for t in tasks if t.status == TaskStatus.failed)
        status = derive_job_status(failed, job.total_tasks)

        job = self.store.touch_job(
            job.id, status, completed_tasks=completed, failed_tasks=failed
        )
        logger.info(
            f"Job {job.id} {status.value}: {completed} succeeded, {failed} failed "
            f"of {job.total_tasks}"
        )
        self.events.job_completed(job.id, status)
        return job

    def _progress(self, task: Task, step: str, current: int, total: int, message: Optional[str] = None) -> None:
        updated = self.store.update_task_progress(
            task.id, TaskProgress(step=step, current=current, total=total, message=message)
        )
        self.events.task_changed(updated)

    # --- Retry ---

    async def retry_failed_tasks(self, job_id: str, task_ids: Optional[List[str]] = None) -> Job:
        """Reset failed tasks to pending and run the job again.

        With ``task_ids`` only those tasks are retried, and only if they are
        currently failed. With nothing to retry the job is returned untouched.
        """
        job = self.get_job(job_id)
        if job_id in self._active_jobs:
            raise JobBusyError(job_id)

        failed = self.store.get_tasks(job_id, status=TaskStatus.failed)
        if task_ids:
            wanted = set(task_ids)
            failed = [t for t in failed if t.id in wanted]

        if not failed:
            logger.info(f"Job {job_id} has no failed tasks to retry")
            return job

        reset = self.store.reset_tasks_for_retry([t.id for t in failed])
        logger.info(f"Retrying {reset} failed task(s) of job {job_id}")
        return await self.execute_job(job_id)

    # --- Background entry points ---

    async def run_job_logged(self, job_id: str) -> None:
        """Execute a job, logging instead of raising. Used for fire-and-forget runs."""
        try:
            await self.execute_job(job_id)
        except Exception:
            logger.exception(f"Job {job_id} execution error")

    async def retry_job_logged(self, job_id: str, task_ids: Optional[List[str]] = None) -> None:
        try:
            await self.retry_failed_tasks(job_id, task_ids)
        except Exception:
            logger.exception(f"Job {job_id} retry error")

    # --- Maintenance ---

    def delete_job(self, job_id: str) -> None:
        self.get_job(job_id)
        if job_id in self._active_jobs:
            raise JobBusyError(job_id)
        self.store.delete_job(job_id)

    def recover_interrupted_jobs(self) -> int:
        """Settle jobs a previous process left in running status.

        Unfinished tasks of those jobs are marked failed so they can be
        retried; nothing is re-run automatically. Returns the number of
        jobs settled.
        """
        recovered = 0
        for job in self.store.get_jobs_by_status(JobStatus.running):
            if job.id in self._active_jobs:
                continue
            for task in self.store.get_tasks(job.id):
                if task.status not in TERMINAL_TASK_STATUSES:
                    self.store.update_task(
                        task.id,
                        status=TaskStatus.failed,
                        completed_at=utc_now(),
                        error=INTERRUPTED_ERROR,
                    )
            self._finalize(job)
            recovered += 1
            logger.warning(f"Recovered interrupted job {job.id}")
        return recovered

    # --- Workflows ---

    async def _create_worker(self, client: WorkersClient, config, task: Task) -> dict:
        self._progress(task, "create_worker", 1, 3)
        worker_id = await client.create_worker(config.worker_name)

        self._progress(task, "upload_script", 2, 3)
        version_id = await client.upload_script(
            worker_id,
            config.worker_name,
            config.script,
            config.compatibility_date,
            config.bindings,
        )

        self._progress(task, "deploy", 3, 3)
        deployment_id = await client.deploy(config.worker_name, version_id)

        subdomain = await client.get_subdomain()
        return {
            "worker_id": worker_id,
            "version_id": version_id,
            "deployment_id": deployment_id,
            "url": worker_url(config.worker_name, subdomain),
        }

    async def _update_worker(self, client: WorkersClient, config, task: Task) -> dict:
        self._progress(task, "find_worker", 1, 3)
        worker = await find_worker(client, config.worker_name)
        if worker is None:
            raise NotFoundError(f"Worker {config.worker_name} not found")

        self._progress(task, "upload_script", 2, 3)
        version_id = await client.upload_script(
            worker["id"],
            config.worker_name,
            config.script,
            config.compatibility_date,
            config.bindings,
        )

        self._progress(task, "deploy", 3, 3)
        deployment_id = await client.deploy(config.worker_name, version_id)

        return {"version_id": version_id, "deployment_id": deployment_id}

    async def _delete_worker(self, client: WorkersClient, config, task: Task) -> dict:
        self._progress(task, "find_worker", 1, 2)
        worker = await find_worker(client, config.worker_name)
        if worker is None:
            raise NotFoundError(f"Worker {config.worker_name} not found")

        self._progress(task, "delete_worker", 2, 2)
        await client.delete_worker(worker["id"])

        return {"deleted": True}

    async def _query_worker(self, client: WorkersClient, config, task: Task) -> dict:
        # A missing worker is an answer here, not a failure
        self._progress(task, "find_worker", 1, 2)
        worker = await find_worker(client, config.worker_name)
        if worker is None:
            return {"found": False}

        self._progress(task, "resolve_subdomain", 2, 2)
        subdomain = await client.get_subdomain()

        return {"found": True, "worker": worker, "url": worker_url(config.worker_name, subdomain)}

    async def _list_workers(self, client: WorkersClient, config, task: Task) -> dict:
        self._progress(task, "list_workers", 1, 2)
        workers = await client.list_workers()

        self._progress(task, "resolve_subdomain", 2, 2)
        subdomain = await client.get_subdomain()

        return {
            "subdomain": subdomain,
            "count": len(workers),
            "workers": [
                {
                    "id": w.get("id"),
                    "url": worker_url(w.get("id"), subdomain),
                    "created_on": w.get("created_on"),
                    "modified_on": w.get("modified_on"),
                    "etag": w.get("etag"),
                }
                for w in workers
            ],
        }

    async def _health_check(self, client: WorkersClient, config, task: Task) -> dict:
        self._progress(task, "health_check", 1, 1)
        return await client.health_check()

    async def _batch_update_worker(self, client: WorkersClient, config, task: Task) -> dict:
        worker_name = task.worker_name

        self._progress(task, "find_worker", 1, 3)
        worker = await find_worker(client, worker_name)
        if worker is None:
            raise NotFoundError(f"Worker {worker_name} not found")

        self._progress(task, "upload_script", 2, 3)
        version_id = await client.upload_script(
            worker["id"],
            worker_name,
            config.script,
            config.compatibility_date,
            config.bindings,
        )

        self._progress(task, "deploy", 3, 3)
        deployment_id = await client.deploy(worker_name, version_id)

        return {"worker_name": worker_name, "version_id": version_id, "deployment_id": deployment_id}

    async def _batch_delete_worker(self, client: WorkersClient, config, task: Task) -> dict:
        worker_name = task.worker_name

        self._progress(task, "find_worker", 1, 2)
        worker = await find_worker(client, worker_name)
        if worker is None:
            raise NotFoundError(f"Worker {worker_name} not found")

        self._progress(task, "delete_worker", 2, 2)
        await client.delete_worker(worker["id"])

        return {"worker_name": worker_name, "deleted": True}


def _format_validation_error(e: PydanticValidationError) -> str:
    parts = []
    for err in e.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}" if loc else err.get("msg", ""))
    return "; ".join(parts) or "Invalid job configuration"
