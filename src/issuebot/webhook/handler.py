"""GitHub webhook parsing and signature verification.

Three deliveries start a run:

- ``issues`` with action ``opened`` → IssueRequest
- ``pull_request_review`` with action ``submitted`` → ReviewRequest
- ``pull_request_review_comment`` with action ``created`` → ReviewRequest

Everything else is acknowledged and ignored. Payloads are validated here,
at the boundary; malformed payloads yield None and a warning, never an
exception.

Payload fragments read (issues event):
{
  "action": "opened",
  "issue": {"number": 7, "title": "...", "body": "...", "labels": [{"name": "bug"}]},
  "repository": {
    "name": "repo", "owner": {"login": "octo"},
    "default_branch": "main", "clone_url": "https://github.com/octo/repo.git"
  },
  "installation": {"id": 1234}
}

The installation id is only present when the service runs as a GitHub App.
"""

import hashlib
import hmac
import logging
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError

from src.issuebot.models import (
    ChangeRequest,
    IssueRequest,
    RepoRef,
    ReviewComment,
    ReviewRequest,
)

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="

SUPPORTED_EVENTS = {
    ("issues", "opened"),
    ("pull_request_review", "submitted"),
    ("pull_request_review_comment", "created"),
}


def verify_signature(secret: str, body: bytes, signature_header: Optional[str]) -> bool:
    """Check an ``X-Hub-Signature-256`` header against the raw request body.

    Args:
        secret: Shared webhook secret.
        body: Raw request body bytes.
        signature_header: Header value, e.g. "sha256=<hex>".

    Returns:
        True if the signature matches.
    """
    if not signature_header or not signature_header.startswith(SIGNATURE_PREFIX):
        return False

    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    provided = signature_header[len(SIGNATURE_PREFIX):]
    return hmac.compare_digest(expected, provided)


class WebhookHandler:
    """Turns webhook deliveries into typed change requests."""

    def parse_event(
        self,
        event_name: str,
        payload: Dict[str, Any],
    ) -> Optional[Tuple[RepoRef, ChangeRequest]]:
        """Parse a delivery into the repository and change request it targets.

        Args:
            event_name: Value of the ``X-GitHub-Event`` header.
            payload: Decoded JSON body.

        Returns:
            (RepoRef, ChangeRequest), or None for unsupported or malformed
            deliveries.
        """
        if not isinstance(payload, dict):
            logger.warning("Invalid payload: expected dict, got %s", type(payload))
            return None

        action = payload.get("action")
        if (event_name, action) not in SUPPORTED_EVENTS:
            logger.info("Ignoring event %s with action %s", event_name, action)
            return None

        repo = self.parse_repository(
            payload.get("repository"), installation_id=_installation_id(payload)
        )
        if repo is None:
            return None

        if event_name == "issues":
            request = self.parse_issue(payload.get("issue"))
        else:
            request = self.parse_review(payload)

        if request is None:
            return None
        return repo, request

    def parse_repository(
        self, data: Any, installation_id: Optional[int] = None
    ) -> Optional[RepoRef]:
        if not isinstance(data, dict):
            logger.warning("Missing or invalid 'repository' field in payload")
            return None

        owner = data.get("owner") if isinstance(data.get("owner"), dict) else {}
        name = data.get("name")
        owner_login = owner.get("login")
        clone_url = data.get("clone_url") or (
            f"https://github.com/{owner_login}/{name}.git"
        )

        try:
            return RepoRef(
                owner=owner_login or "",
                name=name or "",
                default_branch=data.get("default_branch") or "main",
                clone_url=clone_url,
                installation_id=installation_id,
            )
        except ValidationError as exc:
            logger.warning("Invalid repository in payload: %s", exc)
            return None

    def parse_issue(self, data: Any) -> Optional[IssueRequest]:
        if not isinstance(data, dict):
            logger.warning("Missing or invalid 'issue' field in payload")
            return None

        try:
            return IssueRequest(
                number=data.get("number"),
                title=data.get("title") or "",
                body=data.get("body") or "",
                labels=_label_names(data.get("labels")),
            )
        except ValidationError as exc:
            logger.warning("Invalid issue in payload: %s", exc)
            return None

    def parse_review(self, payload: Dict[str, Any]) -> Optional[ReviewRequest]:
        """Build a ReviewRequest from a review or review-comment delivery.

        A submitted review contributes its body as a general comment; a
        review comment contributes itself with its path and line. Bodies
        that are not strings are ignored.
        """
        pr = payload.get("pull_request")
        if not isinstance(pr, dict):
            logger.warning("Missing or invalid 'pull_request' field in payload")
            return None

        try:
            comments: List[ReviewComment] = []
            review = payload.get("review")
            if isinstance(review, dict) and _has_text(review.get("body")):
                comments.append(ReviewComment(id=review.get("id"), body=review["body"]))

            comment = payload.get("comment")
            if isinstance(comment, dict) and _has_text(comment.get("body")):
                comments.append(
                    ReviewComment(
                        id=comment.get("id"),
                        body=comment["body"],
                        path=comment.get("path"),
                        line=comment.get("line"),
                    )
                )

            return ReviewRequest(
                pr_number=pr.get("number"),
                title=pr.get("title") or "",
                body=pr.get("body") or "",
                comments=comments,
                branch=_ref_name(pr.get("head")),
                base=_ref_name(pr.get("base")),
            )
        except ValidationError as exc:
            logger.warning("Invalid pull request in payload: %s", exc)
            return None


def _has_text(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def _ref_name(value: Any) -> str:
    if isinstance(value, dict) and isinstance(value.get("ref"), str):
        return value["ref"]
    return ""


def _installation_id(payload: Dict[str, Any]) -> Optional[int]:
    installation = payload.get("installation")
    if not isinstance(installation, dict):
        return None
    installation_id = installation.get("id")
    if isinstance(installation_id, int) and not isinstance(installation_id, bool):
        return installation_id
    return None


def _label_names(labels: Any) -> List[str]:
    if not isinstance(labels, list):
        return []
    names = []
    for label in labels:
        if isinstance(label, dict) and isinstance(label.get("name"), str):
            names.append(label["name"])
        elif isinstance(label, str):
            names.append(label)
    return names
