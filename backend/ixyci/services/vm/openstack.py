"""
Cloud capability backed by the OpenStack command line client.

Credentials come from clouds.yaml (selected with OPENSTACK_CLOUD) or the usual OS_*
environment variables. Every call shells out to `openstack ... -f json`; failures are
classified into transient and fatal errors from the CLI's message.
"""
import json
import subprocess
import threading
from typing import Dict, List, Optional
from ixyci.core.errors import FatalCloudError, TransientCloudError
from ixyci.core.logging import get_logger
from ixyci.models.vm import InstanceStatus, VMSpec

logger = get_logger("openstack")

FATAL_MARKERS = (
    "quota",
    "no image",
    "no flavor",
    "no network",
    "invalid key_name",
    "keypair",
    "http 400",
    "http 401",
    "http 403",
)
NOT_FOUND_MARKERS = ("no server with a name or id", "could not find resource", "http 404")

CLI_TIMEOUT = 300


def classify(message: str):
    """Map a CLI error message to the matching cloud error type."""
    lowered = message.lower()
    if any(marker in lowered for marker in FATAL_MARKERS):
        return FatalCloudError(message)
    # Rate limits, 5xx and connection problems, plus anything unrecognised
    return TransientCloudError(message)


def parse_addresses(addresses) -> List[str]:
    """`addresses` is a dict in newer clients and 'net=ip, ip; net2=ip' in older ones."""
    if isinstance(addresses, dict):
        found = []
        for ips in addresses.values():
            found.extend(ips if isinstance(ips, list) else [ips])
        return [str(ip) for ip in found]
    found = []
    for network in str(addresses or "").split(";"):
        _, _, ips = network.partition("=")
        found.extend(ip.strip() for ip in ips.split(",") if ip.strip())
    return found


class OpenStackCLI:
    def __init__(self, cli: str = "openstack", cloud: str = "", timeout: int = CLI_TIMEOUT):
        self.cli = cli
        self.cloud = cloud
        self.timeout = timeout
        # Per instance: spec used to create it and the floating ip assigned to it
        self._specs: Dict[str, VMSpec] = {}
        self._floating_ips: Dict[str, str] = {}
        self._networked = set()
        self._lock = threading.Lock()

    def _run(self, *args: str) -> Optional[object]:
        cmd = [self.cli]
        if self.cloud:
            cmd += ["--os-cloud", self.cloud]
        cmd += list(args)
        logger.debug(f"openstack {' '.join(args)}")
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout)
        except FileNotFoundError as e:
            raise FatalCloudError(f"openstack cli not found: {e}") from e
        except subprocess.TimeoutExpired as e:
            raise TransientCloudError(f"openstack {' '.join(args)} timed out after {self.timeout}s") from e
        if result.returncode != 0:
            error_msg = result.stderr.strip() or result.stdout.strip()
            raise classify(f"openstack {' '.join(args)} failed: {error_msg}")
        if not result.stdout.strip():
            return None
        try:
            return json.loads(result.stdout)
        except json.JSONDecodeError:
            return result.stdout

    def create_instance(self, spec: VMSpec) -> str:
        server = self._run(
            "server", "create",
            "--flavor", spec.flavor,
            "--image", spec.image,
            "--network", spec.network,
            "--key-name", spec.keypair,
            "-f", "json",
            spec.name,
        )
        if not isinstance(server, dict) or "id" not in server:
            raise TransientCloudError(f"unexpected response from server create: {server!r}")
        instance_id = server["id"]
        with self._lock:
            self._specs[instance_id] = spec
        logger.info(f"Requested server {spec.name} ({instance_id})")
        return instance_id

    def get_instance_status(self, instance_id: str) -> InstanceStatus:
        server = self._run("server", "show", "-f", "json", instance_id)
        if not isinstance(server, dict):
            raise TransientCloudError(f"unexpected response from server show: {server!r}")
        status = str(server.get("status", "UNKNOWN"))
        if status.upper() == "ACTIVE":
            self._finish_networking(instance_id)
        addresses = parse_addresses(server.get("addresses"))
        with self._lock:
            floating = self._floating_ips.get(instance_id)
        if floating and floating not in addresses:
            # Association not visible yet
            address = None
        else:
            address = floating or (addresses[-1] if addresses else None)
        return InstanceStatus(instance_id=instance_id, status=status, address=address)

    def _finish_networking(self, instance_id: str):
        """Attach a floating ip and the test network ports once the server is ACTIVE."""
        with self._lock:
            if instance_id in self._networked:
                return
            spec = self._specs.get(instance_id)
        if spec is None:
            return
        if spec.floating_ip_pool and instance_id not in self._floating_ips:
            floating = self._run("floating", "ip", "create", "-f", "json", spec.floating_ip_pool)
            ip = floating["floating_ip_address"] if isinstance(floating, dict) else str(floating).strip()
            with self._lock:
                self._floating_ips[instance_id] = ip
            logger.info(f"Associating floating ip {ip} with {instance_id}")
            self._run("server", "add", "floating", "ip", instance_id, ip)
        for port in spec.extra_ports:
            self._run("server", "add", "port", instance_id, port)
        with self._lock:
            self._networked.add(instance_id)

    def delete_instance(self, instance_id: str) -> None:
        try:
            self._run("server", "delete", "--wait", instance_id)
        except (TransientCloudError, FatalCloudError) as e:
            if not any(marker in str(e).lower() for marker in NOT_FOUND_MARKERS):
                raise
            logger.info(f"Server {instance_id} already gone")
        with self._lock:
            ip = self._floating_ips.get(instance_id)
        if ip:
            self._run("floating", "ip", "delete", ip)
        with self._lock:
            self._floating_ips.pop(instance_id, None)
            self._specs.pop(instance_id, None)
            self._networked.discard(instance_id)
