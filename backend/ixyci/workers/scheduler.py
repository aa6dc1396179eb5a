import asyncio
import time
from typing import Any, Dict, Iterable, List, Optional, Union
from ixyci.core.errors import QueueFull, ShuttingDown, Unauthorized
from ixyci.core.logging import get_logger
from ixyci.models.job import Job, JobState, TriggerEvent
from ixyci.workers.state_machine import JobStateMachine

logger = get_logger("scheduler")


class Scheduler:
    """
    Admits triggers, queues them FIFO and runs them on a fixed pool of worker tasks.

    Each worker runs one job, and each job leases one VM, so `workers` bounds the
    number of VMs alive at any time. All bookkeeping happens on the event loop;
    the job table is only touched from here.
    """

    def __init__(
        self,
        machine: JobStateMachine,
        workers: int = 1,
        allowed_users: Optional[Iterable[str]] = None,
        queue_size: int = 0,
        retention: float = 3600.0,
    ):
        self.machine = machine
        self.workers = max(workers, 1)
        # Empty allow-list admits everyone
        self.allowed_users = frozenset(allowed_users) if allowed_users else None
        self.queue_size = queue_size
        self.retention = retention

        self._jobs: Dict[str, Job] = {}
        self._by_event: Dict[str, str] = {}
        self._done: Dict[str, asyncio.Event] = {}
        self._finished_at: Dict[str, float] = {}
        self._queue: "asyncio.Queue[str]" = asyncio.Queue()
        self._tasks: List[asyncio.Task] = []
        self._closed = False

    # Admission

    def submit(self, trigger: Union[TriggerEvent, Dict[str, Any]]) -> str:
        """
        Admit a trigger and return its job id. A redelivered event id returns the id of
        the job it already created. Queued or running jobs for the same repository and
        ref are cancelled in favour of the new one.
        """
        if not isinstance(trigger, TriggerEvent):
            trigger = TriggerEvent.parse(trigger)
        if self._closed:
            raise ShuttingDown()
        if self.allowed_users is not None and trigger.user not in self.allowed_users:
            logger.warning(f"Rejected trigger {trigger.event_id} from unauthorized user {trigger.user}")
            raise Unauthorized(trigger.user)

        self._evict()
        existing = self._by_event.get(trigger.event_id)
        if existing is not None:
            logger.info(f"Duplicate delivery {trigger.event_id}, returning job {existing}")
            return existing

        if self.queue_size and self._pending() >= self.queue_size:
            raise QueueFull(self.queue_size)

        for other in list(self._jobs.values()):
            if not other.state.is_terminal and other.trigger.target == trigger.target:
                self._cancel(other, f"superseded by {trigger.commit[:12]}")

        job = Job(trigger=trigger)
        self._jobs[job.id] = job
        self._by_event[trigger.event_id] = job.id
        self._done[job.id] = asyncio.Event()
        self._queue.put_nowait(job.id)
        logger.info(
            f"Queued job {job.id} for {trigger.repository}@{trigger.ref} ({trigger.commit[:12]}) "
            f"by {trigger.user}, {self._pending()} waiting"
        )
        return job.id

    def _pending(self) -> int:
        return sum(1 for j in self._jobs.values() if j.state == JobState.QUEUED)

    # Control

    def cancel(self, job_id: str, reason: str = "cancelled on request") -> bool:
        """Request cancellation. Returns False for unknown or already finished jobs."""
        job = self._jobs.get(job_id)
        if job is None or job.state.is_terminal:
            return False
        return self._cancel(job, reason)

    def _cancel(self, job: Job, reason: str) -> bool:
        requested = job.cancel_token.cancel(reason)
        if job.state == JobState.QUEUED:
            # Never started, so there is no VM to release and nothing to report
            job.add_diagnostic("cancelled", reason, JobState.QUEUED)
            job.outcome = JobState.CANCELLED
            job.advance(JobState.CANCELLED)
            self._on_finished(job)
        elif requested:
            logger.info(f"Cancelling job {job.id} in {job.state.value}: {reason}")
        return requested

    # Read views

    def status(self, job_id: str) -> Optional[Dict[str, Any]]:
        self._evict()
        job = self._jobs.get(job_id)
        return job.to_dict() if job else None

    def jobs(self) -> List[Dict[str, Any]]:
        self._evict()
        return [job.to_dict() for job in self._jobs.values()]

    async def wait(self, job_id: str, timeout: Optional[float] = None) -> Optional[Dict[str, Any]]:
        """Wait for a job to reach a terminal state and return its status."""
        done = self._done.get(job_id)
        if done is None:
            return None
        await asyncio.wait_for(done.wait(), timeout)
        return self._jobs[job_id].to_dict() if job_id in self._jobs else None

    def _evict(self):
        cutoff = time.monotonic() - self.retention
        for job_id, finished in list(self._finished_at.items()):
            if finished < cutoff:
                job = self._jobs.pop(job_id)
                self._by_event.pop(job.event_id, None)
                self._done.pop(job_id, None)
                del self._finished_at[job_id]

    # Workers

    def start(self):
        """Spawn the worker tasks. Must be called from a running event loop."""
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._worker(i), name=f"ixy-ci-worker-{i}") for i in range(self.workers)
        ]
        logger.info(f"Scheduler started with {self.workers} worker(s)")

    async def _worker(self, index: int):
        while True:
            job_id = await self._queue.get()
            try:
                job = self._jobs.get(job_id)
                if job is None or job.state.is_terminal:
                    continue
                logger.info(f"Worker {index} picked up job {job.id}")
                try:
                    await self.machine.run(job)
                except asyncio.CancelledError:
                    self._force_terminal(job, JobState.CANCELLED, "worker stopped during shutdown")
                    raise
                except Exception as e:
                    logger.exception(f"Worker {index} crashed on job {job.id}")
                    self._force_terminal(job, JobState.FAILED, f"{type(e).__name__}: {e}")
                finally:
                    self._on_finished(job)
            finally:
                self._queue.task_done()

    def _force_terminal(self, job: Job, state: JobState, message: str):
        if job.state.is_terminal:
            return
        job.add_diagnostic("internal" if state == JobState.FAILED else "cancelled", message, job.state)
        job.outcome = state
        job.advance(state)

    def _on_finished(self, job: Job):
        if job.id in self._finished_at:
            return
        self._finished_at[job.id] = time.monotonic()
        done = self._done.get(job.id)
        if done is not None:
            done.set()
        logger.info(f"Job {job.id} finished: {job.state.value}")

    async def shutdown(self, grace: float):
        """
        Stop admitting, cancel queued jobs and ask running ones to cancel. Running jobs
        get `grace` seconds to release their VMs before the workers are torn down.
        """
        self._closed = True
        in_flight = []
        for job in list(self._jobs.values()):
            if job.state == JobState.QUEUED:
                self._cancel(job, "shutting down")
            elif not job.state.is_terminal:
                job.cancel_token.cancel("shutting down")
                in_flight.append(job.id)

        if in_flight:
            logger.info(f"Waiting up to {grace:.0f}s for {len(in_flight)} running job(s)")
            try:
                await asyncio.wait_for(
                    asyncio.gather(*(self._done[job_id].wait() for job_id in in_flight)), grace
                )
            except asyncio.TimeoutError:
                logger.error(f"Jobs still running after {grace:.0f}s grace period, stopping workers")

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Scheduler stopped")
