from typing import Any, Dict, Optional
from pydantic import BaseModel


class Account(BaseModel):
    login: str


class Repository(BaseModel):
    full_name: str


class Issue(BaseModel):
    number: int
    # Only present when the issue is a pull request
    pull_request: Optional[Dict[str, Any]] = None


class Comment(BaseModel):
    id: int
    body: str
    user: Account


class IssueCommentEvent(BaseModel):
    action: str
    repository: Repository
    issue: Issue
    comment: Comment


def event_type(payload: Dict[str, Any]) -> Optional[str]:
    """The X-GitHub-Event name a payload's shape corresponds to."""
    if "zen" in payload:
        return "ping"
    if "comment" in payload and "issue" in payload:
        return "issue_comment"
    return None
