from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Dict, List


class Settings(BaseSettings):
    PROJECT_NAME: str = "ixy-ci"
    BIND_HOST: str = "0.0.0.0"
    BIND_PORT: int = 8080
    PUBLIC_URL: str = "http://localhost:8080"
    LOG_DIRECTORY: str = "logs"
    LOG_LEVEL: str = "INFO"
    SERVICE_LOG_DIRECTORY: str = "service-logs"

    # GitHub
    GITHUB_API_URL: str = "https://api.github.com"
    GITHUB_API_TOKEN: str = ""
    GITHUB_BOT_NAME: str = "ixy-ci"
    GITHUB_WEBHOOK_SECRETS: Dict[str, str] = {}
    GITHUB_ALLOWED_USERS: List[str] = []
    GITHUB_STATUS_CONTEXT: str = "ixy-ci/pcap"
    GITHUB_TIMEOUT: float = 30.0

    # OpenStack
    OPENSTACK_CLI: str = "openstack"
    OPENSTACK_CLOUD: str = ""
    OPENSTACK_FLAVOR: str = "m1.large"
    OPENSTACK_IMAGE: str = "debian-10"
    OPENSTACK_NETWORK: str = "internet"
    OPENSTACK_KEYPAIR: str = "ixy-ci"
    OPENSTACK_FLOATING_IP_POOL: str = ""
    # Pre-created, named ports on the pktgen/fwd network, attached after boot. A port
    # belongs to one server at a time, so these require MAX_CONCURRENT_VMS == 1.
    OPENSTACK_EXTRA_PORTS: List[str] = []

    # SSH
    SSH_LOGIN: str = "debian"
    SSH_PRIVATE_KEY_PATH: str = "id_rsa"
    SSH_PORT: int = 22
    SSH_CONNECT_TIMEOUT: float = 10.0

    # Test exercise
    TEST_PACKETS: int = 100
    TEST_LOSS_TOLERANCE: int = 0
    PCI_ADDR_PKTGEN: str = "0000:00:08.0"
    PCI_ADDR_FWD_SRC: str = "0000:00:09.0"
    PCI_ADDR_FWD_DST: str = "0000:00:0a.0"
    PCI_ADDR_PCAP: str = "0000:00:0b.0"
    BUILD_COMMAND: str = "./ci/build"
    RUN_COMMAND: str = "./ci/run"
    CAPTURE_PATH: str = "capture.pcap"
    RUNNER_BINARY_PATH: str = "runner/target/release/runner"

    # Scheduling
    MAX_CONCURRENT_VMS: int = 1
    JOB_QUEUE_SIZE: int = 16
    JOB_RETENTION_SECONDS: float = 3600.0
    REACHABLE_TIMEOUT: float = 600.0
    REACHABLE_POLL_INTERVAL: float = 5.0
    EXECUTION_TIMEOUT: float = 1800.0
    SHUTDOWN_GRACE_SECONDS: float = 300.0

    # Retry
    CLOUD_MAX_RETRIES: int = 5
    TERMINATE_MAX_RETRIES: int = 5
    SSH_CONNECT_RETRIES: int = 3
    REPORT_MAX_RETRIES: int = 3
    RETRY_MIN_WAIT: float = 2.0
    RETRY_MAX_WAIT: float = 30.0

    # Reporting
    REPORT_LOG_EXCERPT_LINES: int = 60

    @model_validator(mode="after")
    def _ports_need_single_vm(self):
        if self.OPENSTACK_EXTRA_PORTS and self.MAX_CONCURRENT_VMS > 1:
            raise ValueError(
                f"OPENSTACK_EXTRA_PORTS can only be attached to one VM at a time, "
                f"but MAX_CONCURRENT_VMS is {self.MAX_CONCURRENT_VMS}"
            )
        return self

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding='utf-8', case_sensitive=True, extra='ignore')

settings = Settings()
