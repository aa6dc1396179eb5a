import asyncio
import hashlib
import hmac
import json
from typing import Optional
from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Request
from pydantic import ValidationError
from ixyci.api.deps import get_components
from ixyci.core.errors import (
    AdmissionError,
    MalformedTrigger,
    ReportingError,
    ReportingFailed,
    Unauthorized,
)
from ixyci.core.logging import get_logger
from ixyci.models.github import IssueCommentEvent, event_type
from ixyci.models.job import TriggerEvent

logger = get_logger("webhook")

router = APIRouter()


def verify_signature(secret: str, body: bytes, signature_256: Optional[str], signature: Optional[str]) -> bool:
    """Check X-Hub-Signature-256, falling back to the legacy SHA1 X-Hub-Signature."""
    if signature_256:
        expected = "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, signature_256)
    if signature:
        expected = "sha1=" + hmac.new(secret.encode(), body, hashlib.sha1).hexdigest()
        return hmac.compare_digest(expected, signature)
    return False


def _send_pong(reporter, repository: str, issue_number: int):
    try:
        reporter.publish_pong(repository, issue_number)
    except ReportingFailed:
        # Already logged as an operator event
        pass


@router.post("/webhook")
async def github_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    x_github_event: Optional[str] = Header(None),
    x_github_delivery: Optional[str] = Header(None),
    x_hub_signature_256: Optional[str] = Header(None),
    x_hub_signature: Optional[str] = Header(None),
    components=Depends(get_components),
):
    body = await request.body()
    try:
        payload = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=400, detail="payload is not JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="payload is not a JSON object")

    repository = (payload.get("repository") or {}).get("full_name")
    secret = components.webhook_secrets.get(repository) if repository else None
    if not secret:
        logger.error(f"No webhook secret configured for {repository}")
        raise HTTPException(status_code=400, detail="unknown repository")
    if not verify_signature(secret, body, x_hub_signature_256, x_hub_signature):
        logger.warning(f"Bad signature on delivery {x_github_delivery} for {repository}")
        raise HTTPException(status_code=401, detail="bad signature")
    if x_github_event != event_type(payload):
        raise HTTPException(status_code=401, detail="event header does not match payload")

    logger.info(f"Processing delivery {x_github_delivery or 'unknown'} ({x_github_event}) for {repository}")
    if x_github_event == "ping":
        return {"status": "pong"}

    try:
        event = IssueCommentEvent.model_validate(payload)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=f"malformed issue_comment payload: {e.error_count()} errors")
    if event.action != "created":
        return {"status": "ignored"}

    bot = components.bot_name
    number = event.issue.number
    if f"@{bot} ping" in event.comment.body:
        background_tasks.add_task(_send_pong, components.reporter, repository, number)
        return {"status": "pong"}
    if f"@{bot} test" not in event.comment.body:
        return {"status": "ignored"}
    if event.issue.pull_request is None:
        return {"status": "ignored", "detail": "not a pull request"}

    try:
        pull = await asyncio.to_thread(components.github.get_pull_request, repository, number)
    except ReportingError as e:
        logger.error(f"Could not fetch {repository}#{number}: {e}")
        raise HTTPException(status_code=502, detail="could not fetch pull request")

    head = pull.get("head") or {}
    head_repo = head.get("repo") or {}
    source = head_repo.get("full_name") or f"{(head.get('user') or {}).get('login')}/{repository.split('/')[1]}"
    try:
        trigger = TriggerEvent.parse({
            "repository": repository,
            "source_repository": source,
            "ref": head.get("ref"),
            "commit": head.get("sha"),
            "user": event.comment.user.login,
            "event_id": x_github_delivery or f"comment-{event.comment.id}",
            "command": "test",
            "issue_number": number,
        })
        job_id = components.scheduler.submit(trigger)
    except Unauthorized as e:
        raise HTTPException(status_code=403, detail=str(e))
    except MalformedTrigger as e:
        raise HTTPException(status_code=400, detail=str(e))
    except AdmissionError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {"status": "queued", "job_id": job_id}
