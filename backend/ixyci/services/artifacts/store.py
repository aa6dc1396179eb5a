import os
import re
from datetime import datetime, timezone
from typing import Optional
from ixyci.core.logging import get_logger
from ixyci.models.job import Job

logger = get_logger("artifacts")

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def _safe(part: str) -> str:
    return _UNSAFE.sub("-", part).strip("-") or "_"


class ArtifactStore:
    """
    Keeps job logs and captures on local disk, served under PUBLIC_URL/logs/.
    Files are named <owner>__<name>__<ref>__<timestamp>.
    """

    def __init__(self, directory: str, public_url: str):
        self.directory = directory
        self.public_url = public_url.rstrip("/")
        os.makedirs(directory, exist_ok=True)

    def basename(self, job: Job, now: Optional[datetime] = None) -> str:
        now = now or datetime.now(timezone.utc)
        owner, name = job.repository.split("/")
        stamp = now.strftime("%Y-%m-%dT%H-%M-%S")
        return "__".join([_safe(owner), _safe(name), _safe(job.ref), f"{stamp}-{job.id}"])

    def url_for(self, filename: str) -> str:
        return f"{self.public_url}/logs/{filename}"

    def save(self, job: Job, capture: Optional[bytes] = None):
        """Write the job log (and raw capture if any) and record their URLs on the job."""
        base = self.basename(job)
        log_name = f"{base}.log"
        with open(os.path.join(self.directory, log_name), "w", encoding="utf-8") as f:
            f.write(job.log.text())
        job.log_url = self.url_for(log_name)

        if capture is not None:
            pcap_name = f"{base}.pcap"
            with open(os.path.join(self.directory, pcap_name), "wb") as f:
                f.write(capture)
            job.capture_url = self.url_for(pcap_name)
        logger.info(f"Saved artifacts of job {job.id} as {base}.*")
