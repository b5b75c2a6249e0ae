"""Unit tests for webhook signature checks and payload parsing."""

import hashlib
import hmac

import pytest

from src.issuebot.models import IssueRequest, ReviewRequest
from src.issuebot.webhook.handler import WebhookHandler, verify_signature


def _sign(secret: str, body: bytes) -> str:
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def _repository():
    return {
        "name": "widgets",
        "owner": {"login": "acme"},
        "default_branch": "develop",
        "clone_url": "https://github.com/acme/widgets.git",
    }


def _pull_request(title="Auto PR for issue #42: Add feature X"):
    return {
        "number": 12,
        "title": title,
        "body": "This PR addresses issue #42",
        "head": {"ref": "issue-42-1700000000000"},
        "base": {"ref": "develop"},
    }


@pytest.fixture
def handler():
    return WebhookHandler()


class TestVerifySignature:
    def test_valid_signature(self):
        body = b'{"action":"opened"}'
        assert verify_signature("s3cret", body, _sign("s3cret", body)) is True

    def test_wrong_secret(self):
        body = b'{"action":"opened"}'
        assert verify_signature("s3cret", body, _sign("other", body)) is False

    def test_tampered_body(self):
        signature = _sign("s3cret", b"original")
        assert verify_signature("s3cret", b"tampered", signature) is False

    @pytest.mark.parametrize("header", [None, "", "sha1=abc", "deadbeef"])
    def test_missing_or_malformed_header(self, header):
        assert verify_signature("s3cret", b"{}", header) is False


class TestIssueEvents:
    def test_opened_issue(self, handler):
        payload = {
            "action": "opened",
            "issue": {
                "number": 42,
                "title": "Add feature X",
                "body": "Please add X.",
                "labels": [{"name": "enhancement"}, {"name": "good first issue"}],
            },
            "repository": _repository(),
        }

        repo, request = handler.parse_event("issues", payload)

        assert repo.full_name == "acme/widgets"
        assert repo.default_branch == "develop"
        assert isinstance(request, IssueRequest)
        assert request.number == 42
        assert request.labels == ["enhancement", "good first issue"]

    def test_null_body_becomes_empty(self, handler):
        payload = {
            "action": "opened",
            "issue": {"number": 1, "title": "t", "body": None},
            "repository": _repository(),
        }
        _, request = handler.parse_event("issues", payload)
        assert request.body == ""

    def test_missing_clone_url_is_derived(self, handler):
        repository = _repository()
        del repository["clone_url"]
        payload = {
            "action": "opened",
            "issue": {"number": 1, "title": "t"},
            "repository": repository,
        }
        repo, _ = handler.parse_event("issues", payload)
        assert repo.clone_url == "https://github.com/acme/widgets.git"

    @pytest.mark.parametrize("action", ["closed", "edited", "labeled", None])
    def test_other_actions_are_ignored(self, handler, action):
        payload = {"action": action, "issue": {"number": 1, "title": "t"}, "repository": _repository()}
        assert handler.parse_event("issues", payload) is None


class TestReviewEvents:
    def test_submitted_review_body_is_general_comment(self, handler):
        payload = {
            "action": "submitted",
            "review": {"id": 900, "body": "Please add tests"},
            "pull_request": _pull_request(),
            "repository": _repository(),
        }

        _, request = handler.parse_event("pull_request_review", payload)

        assert isinstance(request, ReviewRequest)
        assert request.pr_number == 12
        assert request.branch == "issue-42-1700000000000"
        assert request.base == "develop"
        assert len(request.comments) == 1
        assert request.comments[0].is_general
        assert request.comments[0].id == 900

    def test_empty_review_body_yields_no_comments(self, handler):
        payload = {
            "action": "submitted",
            "review": {"id": 900, "body": None},
            "pull_request": _pull_request(),
            "repository": _repository(),
        }
        _, request = handler.parse_event("pull_request_review", payload)
        assert request.comments == []

    def test_review_comment_keeps_path_and_line(self, handler):
        payload = {
            "action": "created",
            "comment": {"id": 5, "body": "Rename this", "path": "src/a.py", "line": 17},
            "pull_request": _pull_request(),
            "repository": _repository(),
        }

        _, request = handler.parse_event("pull_request_review_comment", payload)

        comment = request.comments[0]
        assert (comment.id, comment.path, comment.line) == (5, "src/a.py", 17)
        assert not comment.is_general

    def test_review_on_foreign_title_is_still_parsed(self, handler):
        payload = {
            "action": "submitted",
            "review": {"id": 1, "body": "nit"},
            "pull_request": _pull_request(title="Human PR"),
            "repository": _repository(),
        }
        _, request = handler.parse_event("pull_request_review", payload)
        assert request.title == "Human PR"


class TestMalformedPayloads:
    def test_unsupported_event(self, handler):
        assert handler.parse_event("push", {"action": None}) is None

    def test_non_dict_payload(self, handler):
        assert handler.parse_event("issues", ["not", "a", "dict"]) is None

    def test_missing_repository(self, handler):
        payload = {"action": "opened", "issue": {"number": 1, "title": "t"}}
        assert handler.parse_event("issues", payload) is None

    def test_missing_owner(self, handler):
        repository = _repository()
        repository["owner"] = None
        payload = {"action": "opened", "issue": {"number": 1, "title": "t"}, "repository": repository}
        assert handler.parse_event("issues", payload) is None

    def test_missing_issue(self, handler):
        assert handler.parse_event("issues", {"action": "opened", "repository": _repository()}) is None

    @pytest.mark.parametrize("issue", [{"title": "t"}, {"number": 0, "title": "t"}, {"number": 3, "title": ""}])
    def test_invalid_issue_fields(self, handler, issue):
        payload = {"action": "opened", "issue": issue, "repository": _repository()}
        assert handler.parse_event("issues", payload) is None

    def test_review_without_pull_request(self, handler):
        payload = {"action": "submitted", "review": {"body": "x"}, "repository": _repository()}
        assert handler.parse_event("pull_request_review", payload) is None

    def test_review_without_head_branch(self, handler):
        pr = _pull_request()
        pr["head"] = {}
        payload = {"action": "submitted", "review": {"body": "x"}, "pull_request": pr, "repository": _repository()}
        assert handler.parse_event("pull_request_review", payload) is None

    def test_review_comment_with_non_integer_id(self, handler):
        payload = {
            "action": "created",
            "comment": {"id": "not-an-int", "body": "Rename this", "path": "a.py", "line": 3},
            "pull_request": _pull_request(),
            "repository": _repository(),
        }
        assert handler.parse_event("pull_request_review_comment", payload) is None

    def test_review_with_non_integer_id(self, handler):
        payload = {
            "action": "submitted",
            "review": {"id": {"nested": True}, "body": "Please add tests"},
            "pull_request": _pull_request(),
            "repository": _repository(),
        }
        assert handler.parse_event("pull_request_review", payload) is None

    @pytest.mark.parametrize("body", [["a", "list"], 42, {"text": "x"}])
    def test_non_string_comment_body_is_ignored(self, handler, body):
        payload = {
            "action": "created",
            "comment": {"id": 5, "body": body, "path": "a.py", "line": 3},
            "pull_request": _pull_request(),
            "repository": _repository(),
        }
        _, request = handler.parse_event("pull_request_review_comment", payload)
        assert request.comments == []

    def test_head_that_is_not_an_object(self, handler):
        pr = _pull_request()
        pr["head"] = "issue-42-1700000000000"
        payload = {"action": "submitted", "review": {"body": "x"}, "pull_request": pr, "repository": _repository()}
        assert handler.parse_event("pull_request_review", payload) is None


class TestInstallation:
    def _payload(self, installation):
        payload = {
            "action": "opened",
            "issue": {"number": 1, "title": "t"},
            "repository": _repository(),
        }
        if installation is not None:
            payload["installation"] = installation
        return payload

    def test_installation_id_is_carried_on_the_repository(self, handler):
        repo, _ = handler.parse_event("issues", self._payload({"id": 1234, "node_id": "MDIz"}))
        assert repo.installation_id == 1234

    def test_review_events_carry_installation_id(self, handler):
        payload = {
            "action": "submitted",
            "review": {"id": 1, "body": "nit"},
            "pull_request": _pull_request(),
            "repository": _repository(),
            "installation": {"id": 99},
        }
        repo, _ = handler.parse_event("pull_request_review", payload)
        assert repo.installation_id == 99

    @pytest.mark.parametrize("installation", [None, "1234", {"id": "1234"}, {"id": True}, {}])
    def test_missing_or_invalid_installation(self, handler, installation):
        repo, _ = handler.parse_event("issues", self._payload(installation))
        assert repo.installation_id is None
