from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Tuple


class VMState(str, Enum):
    REQUESTED = "requested"
    ACTIVE = "active"
    REACHABLE = "reachable"
    TERMINATING = "terminating"
    TERMINATED = "terminated"
    FAILED = "failed"


@dataclass(frozen=True)
class Credential:
    """Reference to the SSH login; the key itself stays on disk."""

    login: str
    private_key_path: str
    port: int = 22


@dataclass(frozen=True)
class VMSpec:
    name: str
    flavor: str
    image: str
    network: str
    keypair: str
    floating_ip_pool: str = ""
    extra_ports: Tuple[str, ...] = ()


@dataclass(frozen=True)
class InstanceStatus:
    """What the cloud reports about an instance."""

    instance_id: str
    status: str  # BUILD, ACTIVE, ERROR, DELETED, ...
    address: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status.upper() == "ACTIVE"

    @property
    def is_error(self) -> bool:
        return self.status.upper() == "ERROR"


@dataclass
class VMHandle:
    instance_id: str
    name: str
    credential: Credential
    state: VMState = VMState.REQUESTED
    address: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_released(self) -> bool:
        return self.state in (VMState.TERMINATED, VMState.FAILED)

    def to_dict(self):
        return {
            "instance_id": self.instance_id,
            "name": self.name,
            "address": self.address,
            "state": self.state.value,
        }
