import unittest

from workerfleet.app.models.job import JobStatus
from workerfleet.app.services.events import TaskEvents, TaskUpdate


class TestTaskEvents(unittest.IsolatedAsyncioTestCase):
    async def test_updates_published_before_iteration_are_kept(self):
        events = TaskEvents()
        stream = events.subscribe("job-1")

        events.publish(TaskUpdate(event="task", job_id="job-1"))
        events.job_completed("job-1", JobStatus.completed)

        received = [update async for update in stream]
        self.assertEqual([u.event for u in received], ["task", "job_completed"])
        self.assertEqual(received[-1].job_status, JobStatus.completed)

    async def test_stream_ends_and_unregisters_on_completion(self):
        events = TaskEvents()
        stream = events.subscribe("job-1")
        self.assertEqual(events.subscriber_count("job-1"), 1)

        events.job_completed("job-1", JobStatus.failed)
        async for _ in stream:
            pass

        self.assertEqual(events.subscriber_count("job-1"), 0)

    async def test_updates_are_scoped_to_their_job(self):
        events = TaskEvents()
        first = events.subscribe("job-1")
        second = events.subscribe("job-2")

        events.publish(TaskUpdate(event="task", job_id="job-2"))
        events.job_completed("job-1", JobStatus.completed)
        events.job_completed("job-2", JobStatus.partial)

        self.assertEqual([u.event async for u in first], ["job_completed"])
        self.assertEqual([u.event async for u in second], ["task", "job_completed"])

    async def test_every_subscriber_receives_each_update(self):
        events = TaskEvents()
        streams = [events.subscribe("job-1"), events.subscribe("job-1")]

        events.publish(TaskUpdate(event="task", job_id="job-1"))
        events.job_completed("job-1", JobStatus.completed)

        for stream in streams:
            self.assertEqual(len([u async for u in stream]), 2)

    async def test_aborted_job_ends_the_stream(self):
        events = TaskEvents()
        stream = events.subscribe("job-1")

        events.job_aborted("job-1", "disk full")

        received = [update async for update in stream]
        self.assertEqual([(u.event, u.error) for u in received], [("job_aborted", "disk full")])
        self.assertEqual(events.subscriber_count("job-1"), 0)

    def test_publish_without_subscribers_is_a_no_op(self):
        events = TaskEvents()
        events.job_completed("job-1", JobStatus.completed)
        self.assertEqual(events.subscriber_count("job-1"), 0)


if __name__ == "__main__":
    unittest.main()
