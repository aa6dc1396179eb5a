import asyncio
import dataclasses
import time
from contextlib import asynccontextmanager
from typing import Callable, Optional
from ixyci.core.cancel import CancelToken
from ixyci.core.errors import (
    FatalCloudError,
    LeakedResourceError,
    ProvisioningTimeout,
    TerminationError,
    TransientCloudError,
)
from ixyci.core.logging import get_logger
from ixyci.core.retry import RetryPolicy, call_with_retry
from ixyci.models.vm import Credential, VMHandle, VMSpec, VMState
from ixyci.services.remote.ssh import ssh_handshake_probe
from ixyci.services.vm.provider import CloudProvider

logger = get_logger("vm_lifecycle")


class Lease:
    """A provisioned VM whose termination is guaranteed by VMLifecycleManager.lease()."""

    def __init__(self, handle: VMHandle):
        self.handle = handle
        self.termination_error: Optional[TerminationError] = None


class VMLifecycleManager:
    def __init__(
        self,
        cloud: CloudProvider,
        template: VMSpec,
        credential: Credential,
        cloud_retry: RetryPolicy,
        terminate_retry: RetryPolicy,
        poll_interval: float = 5.0,
        probe: Callable[[str, int, float], bool] = ssh_handshake_probe,
        probe_timeout: float = 5.0,
    ):
        self.cloud = cloud
        self.template = template
        self.credential = credential
        self.cloud_retry = cloud_retry
        self.terminate_retry = terminate_retry
        self.poll_interval = poll_interval
        self.probe = probe
        self.probe_timeout = probe_timeout

    def spec_for(self, name: str) -> VMSpec:
        return dataclasses.replace(self.template, name=name)

    def provision(self, spec: VMSpec) -> VMHandle:
        """Request a new instance. Returns as soon as the cloud accepted the request."""
        instance_id = call_with_retry(
            lambda: self.cloud.create_instance(spec),
            self.cloud_retry,
            (TransientCloudError,),
            f"create instance {spec.name}",
        )
        logger.info(f"Provisioned instance {spec.name} ({instance_id})")
        return VMHandle(instance_id=instance_id, name=spec.name, credential=self.credential)

    def await_reachable(self, handle: VMHandle, timeout: float, cancel: Optional[CancelToken] = None) -> VMHandle:
        """
        Poll until the instance is ACTIVE and its SSH port completes a handshake.

        Raises ProvisioningTimeout when `timeout` elapses, FatalCloudError if the instance
        enters ERROR, and JobCancelled if `cancel` fires between polls. The caller still
        owns the handle and must terminate it.
        """
        deadline = time.monotonic() + timeout
        while True:
            if cancel is not None:
                cancel.raise_if_cancelled()
            status = call_with_retry(
                lambda: self.cloud.get_instance_status(handle.instance_id),
                self.cloud_retry,
                (TransientCloudError,),
                f"query instance {handle.instance_id}",
            )
            if status.is_error:
                raise FatalCloudError(f"instance {handle.instance_id} entered ERROR state")
            if status.is_active:
                if handle.state == VMState.REQUESTED:
                    handle.state = VMState.ACTIVE
                    logger.info(f"Instance {handle.instance_id} is active")
                handle.address = status.address or handle.address
                if handle.address and self.probe(handle.address, handle.credential.port, self.probe_timeout):
                    handle.state = VMState.REACHABLE
                    logger.info(f"Instance {handle.instance_id} reachable at {handle.address}")
                    return handle

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ProvisioningTimeout(handle.instance_id, timeout)
            pause = min(self.poll_interval, remaining)
            if cancel is not None:
                cancel.wait(pause)
            else:
                time.sleep(pause)

    def terminate(self, handle: VMHandle):
        """
        Delete the instance. Terminating an already terminated handle is a no-op.
        Raises LeakedResourceError when the instance could not be deleted.
        """
        if handle.state == VMState.TERMINATED:
            return
        handle.state = VMState.TERMINATING
        try:
            call_with_retry(
                lambda: self.cloud.delete_instance(handle.instance_id),
                self.terminate_retry,
                (TransientCloudError,),
                f"delete instance {handle.instance_id}",
            )
        except (TransientCloudError, FatalCloudError) as e:
            handle.state = VMState.FAILED
            logger.bind(event="LeakedResource", instance_id=handle.instance_id).critical(
                f"LEAKED instance {handle.name} ({handle.instance_id}, {handle.address}): {e}; manual cleanup required"
            )
            raise LeakedResourceError(handle.instance_id, e) from e
        handle.state = VMState.TERMINATED
        logger.info(f"Terminated instance {handle.instance_id}")

    @asynccontextmanager
    async def lease(self, spec: VMSpec):
        """
        Provision an instance for the duration of the block. Termination is attempted on
        every exit path; a failed termination is stored on the lease instead of masking
        the block's own outcome. Cancellation while the create request is in flight
        still terminates the instance it yields.
        """
        provisioning = asyncio.ensure_future(asyncio.to_thread(self.provision, spec))
        try:
            handle = await asyncio.shield(provisioning)
        except asyncio.CancelledError:
            await self._release_abandoned(provisioning)
            raise
        lease = Lease(handle)
        try:
            yield lease
        finally:
            try:
                await asyncio.to_thread(self.terminate, handle)
            except TerminationError as e:
                lease.termination_error = e

    async def _release_abandoned(self, provisioning: "asyncio.Future[VMHandle]"):
        # The create call keeps running in its thread after the waiter is cancelled
        await asyncio.wait({provisioning})
        if provisioning.cancelled() or provisioning.exception() is not None:
            return
        handle = provisioning.result()
        logger.warning(f"Releasing instance {handle.instance_id} created after its job was cancelled")
        try:
            await asyncio.to_thread(self.terminate, handle)
        except TerminationError:
            # terminate() already raised the LeakedResource alert
            pass
