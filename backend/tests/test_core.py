import os
import subprocess
from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from conftest import make_trigger
from ixyci.core.config import Settings
from ixyci.core.errors import FatalCloudError, TransientCloudError
from ixyci.core.retry import RetryPolicy, call_with_retry
from ixyci.models.job import Job
from ixyci.models.vm import VMSpec
from ixyci.services.artifacts.store import ArtifactStore
from ixyci.services.vm.openstack import OpenStackCLI, classify, parse_addresses


def test_settings_defaults() -> None:
    settings = Settings(_env_file=None)

    assert settings.MAX_CONCURRENT_VMS == 1
    assert settings.TEST_PACKETS == 100
    assert settings.GITHUB_ALLOWED_USERS == []


def test_settings_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MAX_CONCURRENT_VMS", "3")
    monkeypatch.setenv("GITHUB_WEBHOOK_SECRETS", '{"emmericp/ixy": "s3cret"}')
    monkeypatch.setenv("GITHUB_ALLOWED_USERS", '["alice", "bob"]')

    settings = Settings(_env_file=None)

    assert settings.MAX_CONCURRENT_VMS == 3
    assert settings.GITHUB_WEBHOOK_SECRETS == {"emmericp/ixy": "s3cret"}
    assert settings.GITHUB_ALLOWED_USERS == ["alice", "bob"]


def test_named_ports_require_a_single_vm() -> None:
    assert Settings(_env_file=None, OPENSTACK_EXTRA_PORTS=["pktgen", "fwd-in"]).MAX_CONCURRENT_VMS == 1
    with pytest.raises(ValidationError, match="OPENSTACK_EXTRA_PORTS"):
        Settings(_env_file=None, OPENSTACK_EXTRA_PORTS=["pktgen"], MAX_CONCURRENT_VMS=2)


def test_retry_policy_counts_initial_attempt() -> None:
    assert RetryPolicy.from_retries(2, 0, 0).attempts == 3


def test_call_with_retry_reraises_last_error() -> None:
    calls = []

    def flaky():
        calls.append(1)
        raise TransientCloudError(f"attempt {len(calls)}")

    with pytest.raises(TransientCloudError, match="attempt 4"):
        call_with_retry(flaky, RetryPolicy(attempts=4, min_wait=0, max_wait=0), (TransientCloudError,), "flaky")


def test_call_with_retry_passes_other_errors_through() -> None:
    calls = []

    def broken():
        calls.append(1)
        raise FatalCloudError("quota exceeded")

    with pytest.raises(FatalCloudError):
        call_with_retry(broken, RetryPolicy(attempts=4, min_wait=0, max_wait=0), (TransientCloudError,), "broken")
    assert len(calls) == 1


@pytest.mark.parametrize("message, error", [
    ("Quota exceeded for instances", FatalCloudError),
    ("No Image found for debian-11", FatalCloudError),
    ("HTTP 503 Service Unavailable", TransientCloudError),
    ("Connection reset by peer", TransientCloudError),
])
def test_cli_errors_are_classified(message, error) -> None:
    assert type(classify(message)) is error


def test_addresses_in_both_formats() -> None:
    assert parse_addresses({"internet": ["10.0.0.5", "2001:db8::5"]}) == ["10.0.0.5", "2001:db8::5"]
    assert parse_addresses("internet=10.0.0.5, 172.24.4.9; test=10.1.0.2") == ["10.0.0.5", "172.24.4.9", "10.1.0.2"]
    assert parse_addresses(None) == []


class FakeRun:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.commands = []

    def __call__(self, cmd, **kwargs):
        self.commands.append(cmd)
        returncode, stdout, stderr = self.responses.pop(0)
        return subprocess.CompletedProcess(cmd, returncode, stdout, stderr)


def test_openstack_create_and_show(monkeypatch: pytest.MonkeyPatch) -> None:
    run = FakeRun(
        (0, '{"id": "abc", "status": "BUILD"}', ""),
        (0, '{"id": "abc", "status": "ACTIVE", "addresses": {"internet": ["10.0.0.5"]}}', ""),
    )
    monkeypatch.setattr(subprocess, "run", run)
    cli = OpenStackCLI(cloud="ci")
    spec = VMSpec(name="ixy-ci-1", flavor="m1.large", image="debian-10", network="internet", keypair="ci")

    assert cli.create_instance(spec) == "abc"
    status = cli.get_instance_status("abc")

    assert status.is_active
    assert status.address == "10.0.0.5"
    assert run.commands[0][:3] == ["openstack", "--os-cloud", "ci"]
    assert run.commands[0][-1] == "ixy-ci-1"


def test_openstack_delete_treats_missing_server_as_gone(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(subprocess, "run", FakeRun((1, "", "No server with a name or ID of 'abc' exists.")))

    OpenStackCLI().delete_instance("abc")


def test_openstack_failures_raise_classified_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(subprocess, "run", FakeRun((1, "", "Quota exceeded for cores")))
    spec = VMSpec(name="vm", flavor="f", image="i", network="n", keypair="k")

    with pytest.raises(FatalCloudError):
        OpenStackCLI().create_instance(spec)


def test_artifact_names(tmp_path) -> None:
    store = ArtifactStore(str(tmp_path), "http://ci.example.org/")
    job = Job(trigger=make_trigger(ref="feature/pcap"))

    name = store.basename(job, now=datetime(2019, 8, 1, 12, 30, tzinfo=timezone.utc))
    store.save(job, capture=None)

    assert name == f"emmericp__ixy__feature-pcap__2019-08-01T12-30-00-{job.id}"
    assert job.log_url.startswith("http://ci.example.org/logs/emmericp__ixy__feature-pcap__")
    assert job.capture_url is None
    assert len(os.listdir(tmp_path)) == 1
