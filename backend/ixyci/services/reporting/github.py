from typing import Any, Dict, Optional, Protocol
import httpx
from ixyci.core.errors import ReportingError, TransientReportingError
from ixyci.core.logging import get_logger

logger = get_logger("github")

# GitHub rejects longer commit status descriptions
MAX_DESCRIPTION = 140


class StatusPublisher(Protocol):
    def post_status(self, repository: str, commit: str, state: str, description: str,
                    target_url: Optional[str] = None) -> None:
        ...

    def post_comment(self, repository: str, issue_number: int, body: str) -> None:
        ...


class GitHubClient:
    def __init__(self, token: str, api_url: str = "https://api.github.com", timeout: float = 30.0,
                 status_context: str = "ixy-ci", transport: Optional[httpx.BaseTransport] = None):
        headers = {
            "Accept": "application/vnd.github+json",
            "User-Agent": "ixy-ci",
        }
        if token:
            headers["Authorization"] = f"token {token}"
        self.status_context = status_context
        self.client = httpx.Client(base_url=api_url, headers=headers, timeout=timeout, transport=transport)

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            resp = self.client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            raise TransientReportingError(f"{method} {path}: {e}") from e

        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientReportingError(f"{method} {path}: HTTP {resp.status_code}")
        if resp.status_code == 403 and resp.headers.get("X-RateLimit-Remaining") == "0":
            raise TransientReportingError(f"{method} {path}: rate limited")
        if resp.status_code >= 400:
            raise ReportingError(f"{method} {path}: HTTP {resp.status_code}: {resp.text[:200]}")
        return resp

    def post_status(self, repository: str, commit: str, state: str, description: str,
                    target_url: Optional[str] = None) -> None:
        payload: Dict[str, Any] = {
            "state": state,
            "description": description[:MAX_DESCRIPTION],
            "context": self.status_context,
        }
        if target_url:
            payload["target_url"] = target_url
        self._request("POST", f"/repos/{repository}/statuses/{commit}", json=payload)
        logger.info(f"Posted status '{state}' for {repository}@{commit[:12]}")

    def post_comment(self, repository: str, issue_number: int, body: str) -> None:
        self._request("POST", f"/repos/{repository}/issues/{issue_number}/comments", json={"body": body})
        logger.info(f"Posted comment in {repository}#{issue_number}")

    def get_pull_request(self, repository: str, number: int) -> Dict[str, Any]:
        return self._request("GET", f"/repos/{repository}/pulls/{number}").json()

    def close(self):
        self.client.close()
