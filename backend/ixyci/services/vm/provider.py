from typing import Protocol
from ixyci.models.vm import InstanceStatus, VMSpec


class CloudProvider(Protocol):
    """
    Cloud capability consumed by the VM lifecycle manager. Implementations must be safe
    to call from several worker threads and raise TransientCloudError or FatalCloudError.
    """

    def create_instance(self, spec: VMSpec) -> str:
        """Request an instance and return its id without waiting for it to boot."""
        ...

    def get_instance_status(self, instance_id: str) -> InstanceStatus:
        ...

    def delete_instance(self, instance_id: str) -> None:
        """Delete the instance and its floating ip. Deleting a missing instance is not an error."""
        ...
