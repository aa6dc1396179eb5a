"""
Drives one job through provision, deploy, run, validate and report.

Every component error is translated here into the job's terminal state plus a
Diagnostic. The VM is leased for the provisioning and execution stages only and
is released before the capture is validated.
"""
import asyncio
from typing import Optional
from ixyci.core.errors import IxyCIError, ReportingFailed
from ixyci.core.logging import get_logger
from ixyci.models.capture import CaptureExpectation
from ixyci.models.execution import ExecutionOutcome
from ixyci.models.job import Job, JobState
from ixyci.services.artifacts.store import ArtifactStore
from ixyci.services.capture.validator import CaptureValidator
from ixyci.services.remote.contract import RunContract, build_artifact_set, build_command_sequence
from ixyci.services.remote.coordinator import RemoteExecutionCoordinator
from ixyci.services.reporting.reporter import Reporter
from ixyci.services.vm.lifecycle import VMLifecycleManager

logger = get_logger("state_machine")


class JobStateMachine:
    def __init__(
        self,
        lifecycle: VMLifecycleManager,
        coordinator: RemoteExecutionCoordinator,
        validator: CaptureValidator,
        reporter: Reporter,
        contract: RunContract,
        expectation: CaptureExpectation,
        reachable_timeout: float,
        execution_timeout: float,
        store: Optional[ArtifactStore] = None,
    ):
        self.lifecycle = lifecycle
        self.coordinator = coordinator
        self.validator = validator
        self.reporter = reporter
        self.contract = contract
        self.expectation = expectation
        self.reachable_timeout = reachable_timeout
        self.execution_timeout = execution_timeout
        self.store = store

    def _enter(self, job: Job, state: JobState):
        previous = job.state
        job.advance(state)
        logger.info(f"Job {job.id} ({job.repository}@{job.ref}): {previous.value} -> {state.value}")

    def _checkpoint(self, job: Job):
        job.cancel_token.raise_if_cancelled()

    async def run(self, job: Job) -> Job:
        """Run `job` to a terminal state. Never raises for component errors."""
        if job.state.is_terminal:
            return job

        outcome: Optional[ExecutionOutcome] = None
        try:
            self._checkpoint(job)
            outcome = await self._execute(job)
            self._checkpoint(job)

            self._enter(job, JobState.VALIDATING)
            expectation = job.expectation or self.expectation
            job.capture = await asyncio.to_thread(self.validator.validate, outcome.capture, expectation)
            job.log.note(job.capture.verdict.summary())
            self._checkpoint(job)
        except IxyCIError as e:
            self._abort(job, e)
        except Exception as e:
            logger.exception(f"Job {job.id} crashed in {job.state.value}")
            job.add_diagnostic("internal", f"{type(e).__name__}: {e}", job.state)
            self._finish(job, JobState.FAILED)

        if not job.state.is_terminal:
            self._enter(job, JobState.REPORTING)
            job.outcome = JobState.SUCCEEDED

        await self._report(job, outcome.capture if outcome else None)

        if not job.state.is_terminal:
            self._enter(job, JobState.SUCCEEDED)
        return job

    async def _execute(self, job: Job) -> ExecutionOutcome:
        self._enter(job, JobState.PROVISIONING)
        spec = self.lifecycle.spec_for(f"ixy-ci-{job.id}")
        lease = None
        try:
            async with self.lifecycle.lease(spec) as lease:
                job.vm = lease.handle
                await asyncio.to_thread(
                    self.lifecycle.await_reachable, lease.handle, self.reachable_timeout, job.cancel_token
                )
                self._checkpoint(job)

                self._enter(job, JobState.DEPLOYING)

                def on_step(name: str):
                    if name == "run":
                        self._enter(job, JobState.RUNNING)

                return await asyncio.to_thread(
                    self.coordinator.deploy_and_run,
                    lease.handle,
                    build_artifact_set(self.contract),
                    build_command_sequence(job.trigger, self.contract),
                    self.execution_timeout,
                    job.log,
                    job.cancel_token,
                    on_step,
                )
        finally:
            if lease is not None and lease.termination_error is not None:
                error = lease.termination_error
                job.add_diagnostic(error.kind, str(error), job.state)

    def _abort(self, job: Job, error: BaseException):
        stage = job.state
        kind = getattr(error, "kind", "error")
        if job.cancel_token.cancelled:
            reason = job.cancel_token.reason or "cancelled"
            job.add_diagnostic("cancelled", reason, stage)
            job.log.note(f"cancelled during {stage.value}: {reason}")
            self._finish(job, JobState.CANCELLED)
        else:
            job.add_diagnostic(kind, str(error), stage)
            job.log.note(f"{kind} during {stage.value}: {error}")
            self._finish(job, JobState.FAILED)
        logger.warning(f"Job {job.id} {job.state.value} during {stage.value}: {error}")

    def _finish(self, job: Job, state: JobState):
        job.outcome = state
        self._enter(job, state)

    async def _report(self, job: Job, capture: Optional[bytes]):
        if self.store is not None:
            try:
                await asyncio.to_thread(self.store.save, job, capture)
            except OSError as e:
                logger.error(f"Could not archive artifacts of job {job.id}: {e}")
        try:
            await asyncio.to_thread(self.reporter.publish, job)
        except ReportingFailed as e:
            # Reported as an operator event by the reporter; the job result stands
            job.add_diagnostic(e.kind, str(e))
