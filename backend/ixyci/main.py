import os
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Callable, Dict
from fastapi import FastAPI
from fastapi.staticfiles import StaticFiles
from ixyci.api.api import api_router
from ixyci.core.config import settings
from ixyci.core.logging import get_logger
from ixyci.core.retry import RetryPolicy
from ixyci.models.capture import CaptureExpectation
from ixyci.models.vm import Credential, VMSpec
from ixyci.services.artifacts.store import ArtifactStore
from ixyci.services.capture.validator import capture_validator
from ixyci.services.remote.contract import RunContract
from ixyci.services.remote.coordinator import RemoteExecutionCoordinator
from ixyci.services.remote.ssh import ParamikoShell
from ixyci.services.reporting.github import GitHubClient
from ixyci.services.reporting.reporter import Reporter
from ixyci.services.vm.lifecycle import VMLifecycleManager
from ixyci.services.vm.openstack import OpenStackCLI
from ixyci.workers.scheduler import Scheduler
from ixyci.workers.state_machine import JobStateMachine

logger = get_logger("main")


@dataclass
class Components:
    scheduler: Scheduler
    github: object
    reporter: Reporter
    webhook_secrets: Dict[str, str] = field(default_factory=dict)
    bot_name: str = "ixy-ci"
    shutdown_grace: float = 300.0


def build_components() -> Components:
    """Wire the production components from settings."""

    def retry(retries: int) -> RetryPolicy:
        return RetryPolicy.from_retries(retries, settings.RETRY_MIN_WAIT, settings.RETRY_MAX_WAIT)

    credential = Credential(
        login=settings.SSH_LOGIN,
        private_key_path=settings.SSH_PRIVATE_KEY_PATH,
        port=settings.SSH_PORT,
    )
    template = VMSpec(
        name="ixy-ci",
        flavor=settings.OPENSTACK_FLAVOR,
        image=settings.OPENSTACK_IMAGE,
        network=settings.OPENSTACK_NETWORK,
        keypair=settings.OPENSTACK_KEYPAIR,
        floating_ip_pool=settings.OPENSTACK_FLOATING_IP_POOL,
        extra_ports=tuple(settings.OPENSTACK_EXTRA_PORTS),
    )
    lifecycle = VMLifecycleManager(
        cloud=OpenStackCLI(settings.OPENSTACK_CLI, settings.OPENSTACK_CLOUD),
        template=template,
        credential=credential,
        cloud_retry=retry(settings.CLOUD_MAX_RETRIES),
        terminate_retry=retry(settings.TERMINATE_MAX_RETRIES),
        poll_interval=settings.REACHABLE_POLL_INTERVAL,
    )
    coordinator = RemoteExecutionCoordinator(
        ParamikoShell(),
        connect_retry=retry(settings.SSH_CONNECT_RETRIES),
        connect_timeout=settings.SSH_CONNECT_TIMEOUT,
    )
    github = GitHubClient(
        settings.GITHUB_API_TOKEN,
        api_url=settings.GITHUB_API_URL,
        timeout=settings.GITHUB_TIMEOUT,
        status_context=settings.GITHUB_STATUS_CONTEXT,
    )
    reporter = Reporter(github, retry(settings.REPORT_MAX_RETRIES), settings.REPORT_LOG_EXCERPT_LINES)
    contract = RunContract(
        build_command=settings.BUILD_COMMAND,
        run_command=settings.RUN_COMMAND,
        capture_path=settings.CAPTURE_PATH,
        runner_binary_path=settings.RUNNER_BINARY_PATH,
        packets=settings.TEST_PACKETS,
        pci_addresses=(
            ("PCI_ADDR_PKTGEN", settings.PCI_ADDR_PKTGEN),
            ("PCI_ADDR_FWD_SRC", settings.PCI_ADDR_FWD_SRC),
            ("PCI_ADDR_FWD_DST", settings.PCI_ADDR_FWD_DST),
            ("PCI_ADDR_PCAP", settings.PCI_ADDR_PCAP),
        ),
    )
    machine = JobStateMachine(
        lifecycle=lifecycle,
        coordinator=coordinator,
        validator=capture_validator,
        reporter=reporter,
        contract=contract,
        expectation=CaptureExpectation(
            packet_count=settings.TEST_PACKETS,
            loss_tolerance=settings.TEST_LOSS_TOLERANCE,
            sequence_start=0,
        ),
        reachable_timeout=settings.REACHABLE_TIMEOUT,
        execution_timeout=settings.EXECUTION_TIMEOUT,
        store=ArtifactStore(settings.LOG_DIRECTORY, settings.PUBLIC_URL),
    )
    scheduler = Scheduler(
        machine,
        workers=settings.MAX_CONCURRENT_VMS,
        allowed_users=settings.GITHUB_ALLOWED_USERS,
        queue_size=settings.JOB_QUEUE_SIZE,
        retention=settings.JOB_RETENTION_SECONDS,
    )
    return Components(
        scheduler=scheduler,
        github=github,
        reporter=reporter,
        webhook_secrets=settings.GITHUB_WEBHOOK_SECRETS,
        bot_name=settings.GITHUB_BOT_NAME,
        shutdown_grace=settings.SHUTDOWN_GRACE_SECONDS,
    )


def create_app(build: Callable[[], Components] = build_components) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        components = build()
        app.state.components = components
        components.scheduler.start()
        yield
        logger.info("Shutting down")
        await components.scheduler.shutdown(components.shutdown_grace)
        close = getattr(components.github, "close", None)
        if close is not None:
            close()

    app = FastAPI(title=settings.PROJECT_NAME, lifespan=lifespan)
    app.include_router(api_router)

    os.makedirs(settings.LOG_DIRECTORY, exist_ok=True)
    app.mount("/logs", StaticFiles(directory=settings.LOG_DIRECTORY), name="logs")

    @app.get("/")
    def root():
        return {"name": settings.PROJECT_NAME, "status": "ok"}

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.BIND_HOST, port=settings.BIND_PORT)
