import itertools
import threading
import time
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pytest

from ixyci.core.errors import RemoteConnectionError, TransientReportingError
from ixyci.core.retry import RetryPolicy
from ixyci.models.capture import CaptureExpectation
from ixyci.models.job import TriggerEvent
from ixyci.models.vm import Credential, InstanceStatus, VMSpec
from ixyci.services.artifacts.store import ArtifactStore
from ixyci.services.capture.validator import CaptureValidator
from ixyci.services.remote.contract import RunContract
from ixyci.services.remote.coordinator import RemoteExecutionCoordinator
from ixyci.services.reporting.reporter import Reporter
from ixyci.services.vm.lifecycle import VMLifecycleManager
from ixyci.workers.state_machine import JobStateMachine
from pcaps import ixy_capture

NO_WAIT = RetryPolicy(attempts=3, min_wait=0, max_wait=0)

_event_ids = itertools.count(1)


def make_trigger(**overrides) -> TriggerEvent:
    fields = {
        "repository": "emmericp/ixy",
        "ref": "master",
        "commit": "0123456789abcdef0123456789abcdef01234567",
        "user": "alice",
        "event_id": f"delivery-{next(_event_ids)}",
        "issue_number": 7,
    }
    fields.update(overrides)
    return TriggerEvent(**fields)


class FakeCloud:
    """In-memory cloud. Instances need `boot_polls` status queries before they are ACTIVE."""

    def __init__(self, boot_polls=0, status="ACTIVE", create_errors=(), delete_errors=(), create_delay=0.0):
        self.boot_polls = boot_polls
        self.create_delay = create_delay
        self.status = status
        self.create_errors = list(create_errors)
        self.delete_errors = list(delete_errors)
        self.instances: Dict[str, int] = {}
        self.created: List[str] = []
        self.names: List[str] = []
        self.deleted: List[str] = []
        self.active = 0
        self.max_active = 0
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def create_instance(self, spec: VMSpec) -> str:
        time.sleep(self.create_delay)
        with self._lock:
            if self.create_errors:
                raise self.create_errors.pop(0)
            instance_id = f"vm-{next(self._ids)}"
            self.instances[instance_id] = self.boot_polls
            self.created.append(instance_id)
            self.names.append(spec.name)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        return instance_id

    def get_instance_status(self, instance_id: str) -> InstanceStatus:
        with self._lock:
            if self.status != "ACTIVE":
                return InstanceStatus(instance_id, self.status)
            if self.instances[instance_id] > 0:
                self.instances[instance_id] -= 1
                return InstanceStatus(instance_id, "BUILD")
        return InstanceStatus(instance_id, "ACTIVE", address="192.0.2.10")

    def delete_instance(self, instance_id: str) -> None:
        with self._lock:
            if self.delete_errors:
                raise self.delete_errors.pop(0)
            if instance_id not in self.deleted:
                self.deleted.append(instance_id)
                self.active -= 1


class FakeSession:
    def __init__(self, shell: "FakeShell"):
        self.shell = shell
        self.closed = False
        self.uploads: List[Tuple[str, str, int]] = []
        self.commands: List[Tuple[str, str]] = []

    def run(self, command, cwd, on_output, abort) -> Optional[int]:
        self.commands.append((command, cwd))
        on_output(f"running in {cwd}\n")
        for marker in self.shell.hang_on:
            if marker in command and self.shell.hang_times != 0:
                if self.shell.hang_times is not None:
                    self.shell.hang_times -= 1
                deadline = time.monotonic() + 5
                while time.monotonic() < deadline:
                    if abort():
                        on_output("aborted\n")
                        return None
                    time.sleep(0.01)
                return 0
        for marker, code in self.shell.exit_codes.items():
            if marker in command:
                return code
        return 0

    def upload_file(self, local_path, remote_path, mode):
        if not Path(local_path).exists():
            raise FileNotFoundError(local_path)
        self.uploads.append((local_path, remote_path, mode))

    def download_file(self, remote_path) -> bytes:
        if self.shell.capture is None:
            raise FileNotFoundError(remote_path)
        self.shell.downloads.append(remote_path)
        return self.shell.capture

    def close(self):
        self.closed = True


class FakeShell:
    """
    Remote shell whose commands succeed unless a marker in `exit_codes` matches.
    Commands containing a marker from `hang_on` run until aborted, at most `hang_times`
    times when given.
    """

    def __init__(self, capture: Optional[bytes] = b"", connect_failures=0,
                 exit_codes: Optional[Dict[str, int]] = None, hang_on=(), hang_times=None):
        self.capture = capture
        self.connect_failures = connect_failures
        self.exit_codes = exit_codes or {}
        self.hang_on = tuple(hang_on)
        self.hang_times = hang_times
        self.sessions: List[FakeSession] = []
        self.downloads: List[str] = []
        self.connects = 0

    def connect(self, address, credential, timeout) -> FakeSession:
        self.connects += 1
        if self.connect_failures > 0:
            self.connect_failures -= 1
            raise RemoteConnectionError(f"connection to {address} refused")
        session = FakeSession(self)
        self.sessions.append(session)
        return session


class FakePublisher:
    def __init__(self, failures=0, error=None):
        self.failures = failures
        self.error = error or TransientReportingError("502 from github")
        self.statuses: List[dict] = []
        self.comments: List[dict] = []
        self.pulls: Dict[Tuple[str, int], dict] = {}
        self.calls = 0

    def _maybe_fail(self):
        self.calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise self.error

    def post_status(self, repository, commit, state, description, target_url=None):
        self._maybe_fail()
        self.statuses.append({"repository": repository, "commit": commit, "state": state,
                              "description": description, "target_url": target_url})

    def post_comment(self, repository, issue_number, body):
        self._maybe_fail()
        self.comments.append({"repository": repository, "issue_number": issue_number, "body": body})

    def get_pull_request(self, repository, number):
        return self.pulls[(repository, number)]


@pytest.fixture
def no_wait() -> RetryPolicy:
    return NO_WAIT


@pytest.fixture
def runner_binary(tmp_path: Path) -> Path:
    path = tmp_path / "runner"
    path.write_bytes(b"\x7fELF")
    return path


@pytest.fixture
def contract(runner_binary: Path) -> RunContract:
    return RunContract(
        build_command="./ci/build",
        run_command="./ci/run",
        capture_path="capture.pcap",
        runner_binary_path=str(runner_binary),
        packets=100,
        pci_addresses=(("PCI_ADDR_PKTGEN", "0000:00:08.0"), ("PCI_ADDR_PCAP", "0000:00:0b.0")),
    )


@pytest.fixture
def cloud() -> FakeCloud:
    return FakeCloud()


@pytest.fixture
def shell() -> FakeShell:
    return FakeShell(capture=ixy_capture(range(100)))


@pytest.fixture
def publisher() -> FakePublisher:
    return FakePublisher()


def make_lifecycle(cloud, probe=lambda address, port, timeout: True, poll_interval=0.01) -> VMLifecycleManager:
    return VMLifecycleManager(
        cloud=cloud,
        template=VMSpec(name="ixy-ci", flavor="m1.large", image="debian-10", network="internet", keypair="ci"),
        credential=Credential(login="debian", private_key_path="id_rsa"),
        cloud_retry=NO_WAIT,
        terminate_retry=NO_WAIT,
        poll_interval=poll_interval,
        probe=probe,
        probe_timeout=0.1,
    )


@pytest.fixture
def lifecycle(cloud) -> VMLifecycleManager:
    return make_lifecycle(cloud)


@pytest.fixture
def make_machine(tmp_path, contract):
    def _make(cloud, shell, publisher, reachable_timeout=1.0, execution_timeout=2.0, packet_count=100):
        return JobStateMachine(
            lifecycle=make_lifecycle(cloud),
            coordinator=RemoteExecutionCoordinator(shell, connect_retry=NO_WAIT, connect_timeout=0.1),
            validator=CaptureValidator(),
            reporter=Reporter(publisher, NO_WAIT, excerpt_lines=20),
            contract=contract,
            expectation=CaptureExpectation(packet_count=packet_count),
            reachable_timeout=reachable_timeout,
            execution_timeout=execution_timeout,
            store=ArtifactStore(str(tmp_path / "logs"), "http://ci.example.org"),
        )

    return _make
