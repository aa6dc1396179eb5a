import threading
import time
from typing import Callable, Optional
from ixyci.core.cancel import CancelToken
from ixyci.core.errors import (
    CommandFailed,
    ExecutionCancelled,
    ExecutionTimeout,
    MissingArtifact,
    RemoteConnectionError,
    SessionBusy,
)
from ixyci.core.logging import get_logger
from ixyci.core.retry import RetryPolicy, call_with_retry
from ixyci.models.execution import ArtifactSet, CommandSequence, ExecutionOutcome, JobLog
from ixyci.models.vm import VMHandle
from ixyci.services.remote.contract import render_step
from ixyci.services.remote.shell import RemoteShell

logger = get_logger("remote_coordinator")


class RemoteExecutionCoordinator:
    def __init__(self, shell: RemoteShell, connect_retry: RetryPolicy, connect_timeout: float = 10.0):
        self.shell = shell
        self.connect_retry = connect_retry
        self.connect_timeout = connect_timeout
        self._active = set()
        self._lock = threading.Lock()

    def deploy_and_run(
        self,
        handle: VMHandle,
        artifacts: ArtifactSet,
        commands: CommandSequence,
        timeout: float,
        log: JobLog,
        cancel: Optional[CancelToken] = None,
        on_step: Optional[Callable[[str], None]] = None,
    ) -> ExecutionOutcome:
        """
        Upload `artifacts`, run `commands` in order and fetch the capture file.

        `timeout` bounds upload, all steps and the download together. Output is appended
        to `log` while it streams in. `on_step` is called with each step name before the
        step starts.
        """
        with self._lock:
            if handle.instance_id in self._active:
                raise SessionBusy(handle.instance_id)
            self._active.add(handle.instance_id)
        try:
            return self._deploy_and_run(handle, artifacts, commands, timeout, log, cancel, on_step)
        finally:
            with self._lock:
                self._active.discard(handle.instance_id)

    def _deploy_and_run(self, handle, artifacts, commands, timeout, log, cancel, on_step):
        deadline = time.monotonic() + timeout
        step_name = "connect"

        session = call_with_retry(
            lambda: self.shell.connect(handle.address, handle.credential, self.connect_timeout),
            self.connect_retry,
            (RemoteConnectionError,),
            f"ssh connect to {handle.address}",
        )
        # Forcibly close the session if the overall deadline passes mid-operation
        watchdog = threading.Timer(max(deadline - time.monotonic(), 0), session.close)
        watchdog.daemon = True
        watchdog.start()

        def checkpoint():
            if cancel is not None and cancel.cancelled:
                raise ExecutionCancelled(step_name)
            if time.monotonic() >= deadline:
                raise ExecutionTimeout(step_name, timeout)

        def abort() -> bool:
            return (cancel is not None and cancel.cancelled) or time.monotonic() >= deadline

        durations = {}
        try:
            step_name = "upload"
            started = time.monotonic()
            for artifact in artifacts:
                checkpoint()
                log.note(f"uploading {artifact.local_path} -> {artifact.remote_path}")
                try:
                    session.upload_file(artifact.local_path, artifact.remote_path, artifact.mode)
                except FileNotFoundError as e:
                    raise MissingArtifact(artifact.local_path) from e
            durations[step_name] = time.monotonic() - started

            for step in commands.steps:
                step_name = step.name
                checkpoint()
                if on_step is not None:
                    on_step(step.name)
                command = render_step(step)
                logger.info(f"[{handle.instance_id}] step {step.name}: {command}")
                log.begin(command)
                started = time.monotonic()
                exit_code = session.run(command, step.cwd, log.write, abort)
                durations[step.name] = time.monotonic() - started
                if exit_code is None:
                    checkpoint()
                    raise ExecutionTimeout(step.name, timeout)
                if exit_code != 0:
                    raise CommandFailed(step.name, exit_code)

            step_name = "download"
            checkpoint()
            try:
                capture = session.download_file(commands.capture_path)
            except FileNotFoundError as e:
                raise MissingArtifact(commands.capture_path) from e
            log.note(f"retrieved {commands.capture_path} ({len(capture)} bytes)")
            return ExecutionOutcome(capture=capture, log=log.text(), durations=durations)
        except RemoteConnectionError:
            # A session closed by the watchdog surfaces as a transport error
            checkpoint()
            raise
        finally:
            watchdog.cancel()
            session.close()
