import os
from typing import Optional, Tuple
from jinja2 import Environment, FileSystemLoader
from ixyci.core.errors import ReportingError, ReportingFailed, TransientReportingError
from ixyci.core.logging import get_logger
from ixyci.core.retry import RetryPolicy, call_with_retry
from ixyci.models.job import Job, JobState
from ixyci.services.reporting.github import StatusPublisher

logger = get_logger("reporter")

MAX_LISTED_ANOMALIES = 20


def commit_status(job: Job) -> Tuple[str, str]:
    """
    Map a finished job to a GitHub commit status and its description.

    A validated but failing capture is a test "failure"; anything that kept the
    pipeline from producing a verdict is an "error".
    """
    outcome = job.outcome or job.state
    verdict = job.verdict
    if outcome == JobState.SUCCEEDED and verdict is not None:
        return ("success" if verdict.passed else "failure"), verdict.summary()
    if outcome == JobState.CANCELLED:
        return "error", f"cancelled: {job.cancel_token.reason or 'unknown reason'}"
    return "error", _cause(job) or "test run errored"


def _cause(job: Job) -> Optional[str]:
    for diagnostic in reversed(job.diagnostics):
        if diagnostic.kind != "leaked_resource":
            return diagnostic.message
    return None


class Reporter:
    def __init__(self, publisher: StatusPublisher, retry: RetryPolicy, excerpt_lines: int = 60):
        template_dir = os.path.join(os.path.dirname(__file__), "templates")
        self.env = Environment(loader=FileSystemLoader(template_dir), keep_trailing_newline=True)
        self.publisher = publisher
        self.retry = retry
        self.excerpt_lines = excerpt_lines

    def render_comment(self, job: Job) -> str:
        outcome = (job.outcome or job.state).value
        verdict = job.verdict
        anomalies = list(verdict.anomalies) if verdict else []
        template = self.env.get_template("comment.md.j2")
        return template.render(
            outcome=outcome,
            verdict=verdict,
            anomalies=anomalies[:MAX_LISTED_ANOMALIES],
            more_anomalies=max(len(anomalies) - MAX_LISTED_ANOMALIES, 0),
            cancel_reason=job.cancel_token.reason,
            cause=_cause(job),
            commit=job.commit,
            ref=job.ref,
            user=job.user,
            job_id=job.id,
            diagnostics=job.diagnostics,
            log_excerpt=job.log.tail(self.excerpt_lines) or "(no output)",
            log_url=job.log_url,
            capture_url=job.capture_url,
        )

    def _send(self, what: str, fn):
        try:
            call_with_retry(fn, self.retry, (TransientReportingError,), what)
        except ReportingError as e:
            logger.bind(event="ReportingFailed").critical(f"{what} failed permanently: {e}")
            raise ReportingFailed(f"{what} failed: {e}") from e

    def publish(self, job: Job):
        """
        Post the commit status and, for comment-triggered jobs, the result comment.
        Each is attempted regardless of the other; any failure is raised afterwards
        as a single ReportingFailed.
        """
        state, description = commit_status(job)
        failures = []
        try:
            self._send(
                f"status for job {job.id}",
                lambda: self.publisher.post_status(job.repository, job.commit, state, description, job.log_url),
            )
        except ReportingFailed as e:
            failures.append(e)
        if job.trigger.issue_number is not None:
            body = self.render_comment(job)
            try:
                self._send(
                    f"comment for job {job.id}",
                    lambda: self.publisher.post_comment(job.repository, job.trigger.issue_number, body),
                )
            except ReportingFailed as e:
                failures.append(e)
        if failures:
            raise ReportingFailed("; ".join(str(e) for e in failures)) from failures[0]
        logger.info(f"Published result of job {job.id}: {state} ({description})")

    def publish_pong(self, repository: str, issue_number: int):
        self._send(
            f"pong in {repository}#{issue_number}",
            lambda: self.publisher.post_comment(repository, issue_number, "pong"),
        )
