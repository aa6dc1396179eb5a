import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
from pydantic import BaseModel, ValidationError, field_validator, model_validator
from ixyci.core.cancel import CancelToken
from ixyci.core.errors import IxyCIError, MalformedTrigger
from ixyci.models.capture import CaptureExpectation, CaptureResult, Verdict
from ixyci.models.execution import Diagnostic, JobLog
from ixyci.models.vm import VMHandle


class JobState(str, Enum):
    QUEUED = "queued"
    PROVISIONING = "provisioning"
    DEPLOYING = "deploying"
    RUNNING = "running"
    VALIDATING = "validating"
    REPORTING = "reporting"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


PIPELINE: Tuple[JobState, ...] = (
    JobState.QUEUED,
    JobState.PROVISIONING,
    JobState.DEPLOYING,
    JobState.RUNNING,
    JobState.VALIDATING,
    JobState.REPORTING,
)
TERMINAL_STATES = frozenset({JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELLED})


def _allowed_next(state: JobState) -> Tuple[JobState, ...]:
    if state.is_terminal:
        return ()
    if state == JobState.REPORTING:
        return (JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELLED)
    following = PIPELINE[PIPELINE.index(state) + 1]
    return (following, JobState.FAILED, JobState.CANCELLED)


class InvalidTransition(IxyCIError):
    kind = "invalid_transition"


class TriggerEvent(BaseModel):
    """A parsed, authenticated trigger handed over by the webhook front end."""

    repository: str  # owner/name the result is reported to
    ref: str
    commit: str
    user: str
    event_id: str
    command: str = "test"
    source_repository: Optional[str] = None  # owner/name to clone from (forks)
    issue_number: Optional[int] = None

    @field_validator("repository", "source_repository")
    @classmethod
    def _owner_and_name(cls, v):
        if v is None:
            return v
        parts = v.split("/")
        if len(parts) != 2 or not all(parts):
            raise ValueError("repository must look like 'owner/name'")
        return v

    @field_validator("ref", "commit", "user", "event_id", "command")
    @classmethod
    def _not_blank(cls, v):
        if not v or not v.strip():
            raise ValueError("must not be empty")
        return v.strip()

    @model_validator(mode="after")
    def _default_source(self):
        if self.source_repository is None:
            self.source_repository = self.repository
        return self

    @classmethod
    def parse(cls, payload: Dict[str, Any]) -> "TriggerEvent":
        try:
            return cls(**payload)
        except (ValidationError, TypeError) as e:
            raise MalformedTrigger(f"malformed trigger event: {e}") from e

    @property
    def target(self) -> Tuple[str, str]:
        """Supersession key."""
        return (self.repository, self.ref)


@dataclass
class Job:
    trigger: TriggerEvent
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    state: JobState = JobState.QUEUED
    transitions: List[Tuple[JobState, datetime]] = field(default_factory=list)
    vm: Optional[VMHandle] = None
    log: JobLog = field(default_factory=JobLog)
    expectation: Optional[CaptureExpectation] = None  # falls back to the configured default
    capture: Optional[CaptureResult] = None
    diagnostics: List[Diagnostic] = field(default_factory=list)
    cancel_token: CancelToken = field(default_factory=CancelToken)
    outcome: Optional[JobState] = None
    log_url: Optional[str] = None
    capture_url: Optional[str] = None
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def __post_init__(self):
        if not self.transitions:
            self.transitions.append((self.state, datetime.now(timezone.utc)))

    @property
    def repository(self) -> str:
        return self.trigger.repository

    @property
    def ref(self) -> str:
        return self.trigger.ref

    @property
    def commit(self) -> str:
        return self.trigger.commit

    @property
    def user(self) -> str:
        return self.trigger.user

    @property
    def event_id(self) -> str:
        return self.trigger.event_id

    @property
    def verdict(self) -> Optional[Verdict]:
        return self.capture.verdict if self.capture else None

    @property
    def history(self) -> List[JobState]:
        return [s for s, _ in self.transitions]

    def advance(self, new_state: JobState):
        with self._lock:
            if new_state not in _allowed_next(self.state):
                raise InvalidTransition(f"job {self.id}: {self.state.value} -> {new_state.value} is not allowed")
            self.state = new_state
            self.transitions.append((new_state, datetime.now(timezone.utc)))

    def add_diagnostic(self, kind: str, message: str, stage: Optional[JobState] = None):
        self.diagnostics.append(Diagnostic(kind=kind, message=message, stage=stage.value if stage else None))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "repository": self.repository,
            "ref": self.ref,
            "commit": self.commit,
            "user": self.user,
            "event_id": self.event_id,
            "state": self.state.value,
            "transitions": [{"state": s.value, "at": t.isoformat()} for s, t in self.transitions],
            "vm": self.vm.to_dict() if self.vm else None,
            "verdict": self.verdict.to_dict() if self.verdict else None,
            "diagnostics": [d.to_dict() for d in self.diagnostics],
            "cancel_reason": self.cancel_token.reason,
            "log_url": self.log_url,
        }
