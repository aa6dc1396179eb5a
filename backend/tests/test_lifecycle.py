import asyncio

import pytest

from conftest import FakeCloud, make_lifecycle
from ixyci.core.cancel import CancelToken
from ixyci.core.errors import (
    FatalCloudError,
    JobCancelled,
    LeakedResourceError,
    ProvisioningTimeout,
    TransientCloudError,
)
from ixyci.models.vm import VMState


def test_provision_returns_requested_handle(lifecycle, cloud) -> None:
    handle = lifecycle.provision(lifecycle.spec_for("ixy-ci-1"))

    assert handle.state == VMState.REQUESTED
    assert handle.name == "ixy-ci-1"
    assert cloud.created == [handle.instance_id]


def test_transient_create_errors_are_retried() -> None:
    cloud = FakeCloud(create_errors=[TransientCloudError("rate limited"), TransientCloudError("503")])
    lifecycle = make_lifecycle(cloud)

    handle = lifecycle.provision(lifecycle.spec_for("vm"))

    assert handle.instance_id == "vm-1"


def test_fatal_create_errors_are_not_retried() -> None:
    cloud = FakeCloud(create_errors=[FatalCloudError("Quota exceeded"), TransientCloudError("unused")])
    lifecycle = make_lifecycle(cloud)

    with pytest.raises(FatalCloudError):
        lifecycle.provision(lifecycle.spec_for("vm"))
    assert cloud.create_errors  # second error never consumed


def test_await_reachable_polls_until_active() -> None:
    cloud = FakeCloud(boot_polls=3)
    lifecycle = make_lifecycle(cloud)
    handle = lifecycle.provision(lifecycle.spec_for("vm"))

    lifecycle.await_reachable(handle, timeout=2.0)

    assert handle.state == VMState.REACHABLE
    assert handle.address == "192.0.2.10"


def test_await_reachable_waits_for_ssh() -> None:
    answers = iter([False, False, True])
    lifecycle = make_lifecycle(FakeCloud(), probe=lambda address, port, timeout: next(answers))
    handle = lifecycle.provision(lifecycle.spec_for("vm"))

    lifecycle.await_reachable(handle, timeout=2.0)

    assert handle.state == VMState.REACHABLE


def test_unreachable_vm_times_out() -> None:
    lifecycle = make_lifecycle(FakeCloud(), probe=lambda address, port, timeout: False)
    handle = lifecycle.provision(lifecycle.spec_for("vm"))

    with pytest.raises(ProvisioningTimeout):
        lifecycle.await_reachable(handle, timeout=0.05)
    assert handle.state == VMState.ACTIVE


def test_error_state_is_fatal() -> None:
    lifecycle = make_lifecycle(FakeCloud(status="ERROR"))
    handle = lifecycle.provision(lifecycle.spec_for("vm"))

    with pytest.raises(FatalCloudError):
        lifecycle.await_reachable(handle, timeout=1.0)


def test_cancellation_is_honoured_between_polls() -> None:
    lifecycle = make_lifecycle(FakeCloud(boot_polls=1000))
    handle = lifecycle.provision(lifecycle.spec_for("vm"))
    token = CancelToken()
    token.cancel("superseded")

    with pytest.raises(JobCancelled):
        lifecycle.await_reachable(handle, timeout=5.0, cancel=token)


def test_terminate_is_idempotent(lifecycle, cloud) -> None:
    handle = lifecycle.provision(lifecycle.spec_for("vm"))

    lifecycle.terminate(handle)
    lifecycle.terminate(handle)

    assert handle.state == VMState.TERMINATED
    assert cloud.deleted == [handle.instance_id]


def test_terminate_retries_transient_errors() -> None:
    cloud = FakeCloud(delete_errors=[TransientCloudError("busy")])
    lifecycle = make_lifecycle(cloud)
    handle = lifecycle.provision(lifecycle.spec_for("vm"))

    lifecycle.terminate(handle)

    assert handle.state == VMState.TERMINATED


def test_exhausted_termination_is_a_leak() -> None:
    cloud = FakeCloud(delete_errors=[TransientCloudError("busy")] * 3)
    lifecycle = make_lifecycle(cloud)
    handle = lifecycle.provision(lifecycle.spec_for("vm"))

    with pytest.raises(LeakedResourceError) as excinfo:
        lifecycle.terminate(handle)

    assert excinfo.value.instance_id == handle.instance_id
    assert handle.state == VMState.FAILED
    assert handle.is_released


def test_lease_terminates_after_timeout() -> None:
    cloud = FakeCloud()
    lifecycle = make_lifecycle(cloud, probe=lambda address, port, timeout: False)

    async def scenario():
        async with lifecycle.lease(lifecycle.spec_for("vm")) as lease:
            await asyncio.to_thread(lifecycle.await_reachable, lease.handle, 0.05)

    with pytest.raises(ProvisioningTimeout):
        asyncio.run(scenario())
    assert cloud.deleted == cloud.created
    assert cloud.active == 0


def test_lease_keeps_termination_error() -> None:
    cloud = FakeCloud(delete_errors=[FatalCloudError("forbidden")])
    lifecycle = make_lifecycle(cloud)

    async def scenario():
        async with lifecycle.lease(lifecycle.spec_for("vm")) as lease:
            pass
        return lease

    lease = asyncio.run(scenario())

    assert isinstance(lease.termination_error, LeakedResourceError)
    assert lease.handle.state == VMState.FAILED


def test_cancelled_lease_releases_instance_created_meanwhile() -> None:
    cloud = FakeCloud(create_delay=0.3)
    lifecycle = make_lifecycle(cloud)
    entered = []

    async def scenario():
        async def hold():
            async with lifecycle.lease(lifecycle.spec_for("vm")):
                entered.append(True)

        task = asyncio.create_task(hold())
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(scenario())

    assert entered == []
    assert cloud.created == ["vm-1"]
    assert cloud.deleted == ["vm-1"]
    assert cloud.active == 0
