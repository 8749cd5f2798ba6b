import unittest
from datetime import datetime, timedelta

from sqlmodel import Session, select

from workerfleet.app.core.errors import StoreError
from workerfleet.app.models.job import Job, JobStatus, JobType, Task, TaskProgress, TaskStatus, utc_now
from workerfleet.app.services.job_store import JobStore
from workerfleet.tests.fakes import make_engine


class TestJobStore(unittest.TestCase):
    def setUp(self):
        self.engine = make_engine()
        self.store = JobStore(self.engine)

    def _job(self, targets=None):
        targets = targets or [("a", None), ("b", None), ("c", None)]
        return self.store.create_job_with_tasks(JobType.list, {"type": "list"}, targets)

    def test_fan_out_creates_job_and_tasks_together(self):
        job = self._job()

        self.assertEqual(job.created_at.utcoffset(), timedelta(0))

        stored = self.store.get_job(job.id)
        self.assertEqual(stored.status, JobStatus.pending)
        self.assertEqual(stored.total_tasks, 3)
        self.assertEqual(stored.completed_tasks, 0)
        self.assertEqual(stored.failed_tasks, 0)

        tasks = self.store.get_tasks(job.id)
        self.assertEqual([t.account_id for t in tasks], ["a", "b", "c"])
        self.assertEqual([t.position for t in tasks], [0, 1, 2])
        self.assertTrue(all(t.status == TaskStatus.pending for t in tasks))
        self.assertTrue(all(t.retry_count == 0 for t in tasks))

    def test_fan_out_is_all_or_nothing(self):
        # The second task violates NOT NULL on account_id
        with self.assertRaises(StoreError):
            self.store.create_job_with_tasks(
                JobType.list, {"type": "list"}, [("a", None), (None, None)]
            )

        with Session(self.engine) as session:
            self.assertEqual(session.exec(select(Job)).all(), [])
            self.assertEqual(session.exec(select(Task)).all(), [])

    def test_batch_targets_keep_worker_names(self):
        job = self._job([("A", "svcX"), ("B", "svcX"), ("A", "svcY")])
        tasks = self.store.get_tasks(job.id)
        self.assertEqual(
            [(t.account_id, t.worker_name) for t in tasks],
            [("A", "svcX"), ("B", "svcX"), ("A", "svcY")],
        )

    def test_list_jobs_newest_first_with_limit(self):
        base = datetime(2024, 1, 1)
        ids = []
        for offset in range(3):
            job = self._job()
            self.store.update_job(job.id, created_at=base + timedelta(minutes=offset))
            ids.append(job.id)

        listed = self.store.list_jobs(limit=2)
        self.assertEqual([j.id for j in listed], [ids[2], ids[1]])

    def test_get_missing_records(self):
        self.assertIsNone(self.store.get_job("nope"))
        self.assertIsNone(self.store.get_task("nope"))
        self.assertEqual(self.store.get_tasks("nope"), [])

    def test_update_missing_task_raises_store_error(self):
        with self.assertRaises(StoreError):
            self.store.update_task("nope", status=TaskStatus.running)

    def test_filter_tasks_by_status(self):
        job = self._job()
        first = self.store.get_tasks(job.id)[0]
        self.store.update_task(first.id, status=TaskStatus.failed, error="boom")

        failed = self.store.get_tasks(job.id, status=TaskStatus.failed)
        self.assertEqual([t.id for t in failed], [first.id])
        self.assertEqual(len(self.store.get_tasks(job.id, status=TaskStatus.pending)), 2)

    def test_update_task_progress_stores_json(self):
        job = self._job()
        task = self.store.get_tasks(job.id)[0]

        self.store.update_task_progress(task.id, TaskProgress(step="deploy", current=3, total=3))

        read = self.store.get_task(task.id).to_read()
        self.assertEqual(read.progress.step, "deploy")
        self.assertEqual(read.progress.current, 3)
        self.assertIsNone(read.progress.message)

    def test_reset_for_retry_overwrites_previous_attempt(self):
        job = self._job()
        task = self.store.get_tasks(job.id)[0]
        self.store.update_task(
            task.id,
            status=TaskStatus.failed,
            error="boom",
            progress='{"step": "deploy", "current": 3, "total": 3}',
            completed_at=utc_now(),
        )

        self.assertEqual(self.store.reset_tasks_for_retry([task.id, "missing"]), 1)

        reset = self.store.get_task(task.id)
        self.assertEqual(reset.status, TaskStatus.pending)
        self.assertEqual(reset.retry_count, 1)
        self.assertIsNone(reset.error)
        self.assertIsNone(reset.progress)
        self.assertIsNone(reset.completed_at)

        # Same row, no new task created
        self.assertEqual(len(self.store.get_tasks(job.id)), 3)

    def test_touch_job_stamps_timestamps(self):
        job = self._job()
        running = self.store.touch_job(job.id, JobStatus.running)
        self.assertIsNotNone(running.started_at)
        self.assertIsNone(running.completed_at)

        done = self.store.touch_job(job.id, JobStatus.partial, completed_tasks=2, failed_tasks=1)
        self.assertIsNotNone(done.completed_at)
        self.assertEqual(done.completed_tasks, 2)

        self.assertEqual([j.id for j in self.store.get_jobs_by_status(JobStatus.partial)], [job.id])

    def test_delete_job_removes_its_tasks(self):
        job = self._job()
        other = self._job()

        self.assertTrue(self.store.delete_job(job.id))
        self.assertFalse(self.store.delete_job(job.id))

        self.assertIsNone(self.store.get_job(job.id))
        self.assertEqual(self.store.get_tasks(job.id), [])
        self.assertEqual(len(self.store.get_tasks(other.id)), 3)


if __name__ == "__main__":
    unittest.main()
