"""
Exception hierarchy for the orchestrator.

Component errors are raised by the services and translated into a job's
terminal state by the job state machine. Only AdmissionError escapes to the
caller of Scheduler.submit.
"""
from typing import Optional


class IxyCIError(Exception):
    """Base class for all orchestrator errors."""

    kind = "error"


# Admission

class AdmissionError(IxyCIError):
    kind = "admission"


class Unauthorized(AdmissionError):
    kind = "unauthorized"

    def __init__(self, user: str):
        super().__init__(f"user '{user}' is not allowed to trigger tests")
        self.user = user


class MalformedTrigger(AdmissionError):
    kind = "malformed_trigger"


class ShuttingDown(AdmissionError):
    kind = "shutting_down"

    def __init__(self):
        super().__init__("scheduler is shutting down, not admitting new jobs")


class QueueFull(AdmissionError):
    kind = "queue_full"

    def __init__(self, size: int):
        super().__init__(f"job queue is full ({size} jobs waiting)")
        self.size = size


# Cloud / provisioning

class ProvisioningError(IxyCIError):
    kind = "provisioning"


class TransientCloudError(ProvisioningError):
    """Rate limiting or temporary unavailability; safe to retry."""

    kind = "cloud_transient"


class FatalCloudError(ProvisioningError):
    """Quota, image or flavor errors; retrying will not help."""

    kind = "cloud_fatal"


class ProvisioningTimeout(ProvisioningError):
    kind = "provisioning_timeout"

    def __init__(self, instance_id: str, timeout: float):
        super().__init__(f"instance {instance_id} not reachable after {timeout:.0f}s")
        self.instance_id = instance_id
        self.timeout = timeout


class TerminationError(IxyCIError):
    kind = "termination"

    def __init__(self, instance_id: str, message: str):
        super().__init__(message)
        self.instance_id = instance_id


class LeakedResourceError(TerminationError):
    """A VM could not be deleted; it needs manual operator cleanup."""

    kind = "leaked_resource"

    def __init__(self, instance_id: str, cause: Optional[BaseException] = None):
        super().__init__(instance_id, f"instance {instance_id} could not be terminated and is leaked: {cause}")
        self.cause = cause


# Remote execution

class ExecutionError(IxyCIError):
    kind = "execution"


class RemoteConnectionError(ExecutionError):
    kind = "connection"


class CommandFailed(ExecutionError):
    kind = "command_failed"

    def __init__(self, step: str, exit_code: int):
        super().__init__(f"step '{step}' exited with status {exit_code}")
        self.step = step
        self.exit_code = exit_code


class ExecutionTimeout(ExecutionError):
    kind = "execution_timeout"

    def __init__(self, step: str, timeout: float):
        super().__init__(f"execution exceeded {timeout:.0f}s (during step '{step}')")
        self.step = step
        self.timeout = timeout


class ExecutionCancelled(ExecutionError):
    kind = "cancelled"

    def __init__(self, step: str):
        super().__init__(f"execution aborted by cancellation during step '{step}'")
        self.step = step


class MissingArtifact(ExecutionError):
    kind = "missing_artifact"

    def __init__(self, path: str):
        super().__init__(f"expected artifact '{path}' was not produced")
        self.path = path


class SessionBusy(ExecutionError):
    kind = "session_busy"

    def __init__(self, instance_id: str):
        super().__init__(f"instance {instance_id} already has an active remote session")
        self.instance_id = instance_id


# Capture

class MalformedCapture(IxyCIError):
    kind = "malformed_capture"


# Reporting

class ReportingError(IxyCIError):
    kind = "reporting"


class TransientReportingError(ReportingError):
    kind = "reporting_transient"


class ReportingFailed(ReportingError):
    kind = "reporting_failed"


# Jobs

class JobCancelled(IxyCIError):
    kind = "cancelled"

    def __init__(self, reason: str):
        super().__init__(f"job cancelled: {reason}")
        self.reason = reason
