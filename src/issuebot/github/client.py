"""Async GitHub REST client for the issue-to-PR flows.

Covers the calls the orchestrator needs:
- comments on issues and pull requests
- branch refs created from a base branch
- pull request creation
- review comments of a pull request

Transient failures (timeouts, connection errors, 5xx, 408) are retried
with capped exponential backoff and full jitter. Rate limiting (429, or
403 with an exhausted quota) raises RateLimitError immediately with the
reset information from the response headers.

Requests authenticate with a static token, or as a GitHub App
installation when App credentials are configured (see github/auth.py).
"""

import asyncio
import logging
import random
import time
from typing import Any, Dict, List, Optional

import httpx

from src.issuebot.github.auth import GitHubAppAuth
from src.issuebot.github.errors import GitHubAPIError, RateLimitError
from src.issuebot.github.models import PRCreateRequest, PRCreateResult

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.github.com"
REVIEW_COMMENTS_PAGE_SIZE = 100


class GitHubClient:
    """GitHub API client with retries and rate-limit detection.

    Attributes:
        token: Static token for bearer authentication, if any.
        app_auth: GitHub App credentials; when set, requests for an
            installation use a minted installation token.
        base_url: API root; set for GitHub Enterprise Server.
        max_retries: Retry attempts for transient failures.
        base_delay: Backoff base in seconds.
        max_delay: Backoff cap in seconds.
        timeout: Per-request timeout in seconds.

    Example:
        >>> async with GitHubClient(token="ghp_xxx") as client:
        ...     await client.create_comment("owner", "repo", 7, "On it")
    """

    RETRYABLE_STATUS_CODES = {408, 500, 502, 503, 504}

    def __init__(
        self,
        token: Optional[str] = None,
        base_url: str = DEFAULT_BASE_URL,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        app_auth: Optional[GitHubAppAuth] = None,
    ):
        if not token and app_auth is None:
            raise ValueError("GitHubClient needs a token or GitHub App credentials")
        self.token = token
        self.app_auth = app_auth
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Lazily created HTTP client, recreated after close."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={
                    "Accept": "application/vnd.github+json",
                    "X-GitHub-Api-Version": "2022-11-28",
                    "User-Agent": "issuebot/1.0",
                },
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def __aenter__(self) -> "GitHubClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def access_token(self, installation_id: Optional[int] = None) -> Optional[str]:
        """Token for API calls and clone URLs.

        With App credentials and a known installation (from the delivery
        or configured), this is an installation token. Otherwise it is the
        static token.

        Raises:
            GitHubAPIError: If an installation token cannot be minted.
        """
        if self.app_auth is not None:
            target = self.app_auth.installation_for(installation_id)
            if target is not None or not self.token:
                return await self.app_auth.installation_token(self.client, target)
        return self.token

    # ---- Issue and pull request operations

    async def create_comment(
        self,
        owner: str,
        repo: str,
        issue_number: int,
        body: str,
        installation_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Comment on an issue or pull request (both use the issues API).

        Raises:
            GitHubAPIError: If the request fails.
        """
        logger.info(
            "Creating comment",
            extra={
                "repository": f"{owner}/{repo}",
                "number": issue_number,
                "body_length": len(body),
            },
        )
        response = await self._request(
            "POST",
            f"/repos/{owner}/{repo}/issues/{issue_number}/comments",
            json_data={"body": body},
            installation_id=installation_id,
        )
        return response.json()

    async def create_branch_ref(
        self,
        owner: str,
        repo: str,
        base_branch: str,
        new_branch: str,
        installation_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Create ``new_branch`` on the remote pointing at ``base_branch``'s head.

        Raises:
            GitHubAPIError: If the base ref cannot be read or the ref exists.
        """
        base = await self._request(
            "GET",
            f"/repos/{owner}/{repo}/git/ref/heads/{base_branch}",
            installation_id=installation_id,
        )
        sha = base.json()["object"]["sha"]

        logger.info(
            "Creating branch ref",
            extra={
                "repository": f"{owner}/{repo}",
                "branch": new_branch,
                "base": base_branch,
                "sha": sha,
            },
        )
        response = await self._request(
            "POST",
            f"/repos/{owner}/{repo}/git/refs",
            json_data={"ref": f"refs/heads/{new_branch}", "sha": sha},
            installation_id=installation_id,
        )
        return response.json()

    async def create_pull_request(
        self,
        owner: str,
        repo: str,
        request: PRCreateRequest,
        installation_id: Optional[int] = None,
    ) -> PRCreateResult:
        """Open a pull request.

        Raises:
            GitHubAPIError: If the request fails.
        """
        logger.info(
            "Creating pull request",
            extra={
                "repository": f"{owner}/{repo}",
                "title": request.title,
                "head": request.head_branch,
                "base": request.base_branch,
                "draft": request.draft,
            },
        )
        response = await self._request(
            "POST",
            f"/repos/{owner}/{repo}/pulls",
            json_data=request.to_payload(),
            installation_id=installation_id,
        )
        result = PRCreateResult.from_github_response(response.json())

        logger.info(
            "Pull request created",
            extra={
                "repository": f"{owner}/{repo}",
                "pr_number": result.pr_number,
                "pr_url": result.pr_url,
            },
        )
        return result

    async def list_review_comments(
        self,
        owner: str,
        repo: str,
        pr_number: int,
        installation_id: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Return every review comment of a pull request, following pagination."""
        comments: List[Dict[str, Any]] = []
        page = 1
        while True:
            response = await self._request(
                "GET",
                f"/repos/{owner}/{repo}/pulls/{pr_number}/comments"
                f"?per_page={REVIEW_COMMENTS_PAGE_SIZE}&page={page}",
                installation_id=installation_id,
            )
            batch = response.json()
            comments.extend(batch)
            if len(batch) < REVIEW_COMMENTS_PAGE_SIZE:
                return comments
            page += 1

    # ---- Transport

    def _calculate_backoff(self, attempt: int) -> float:
        """Full-jitter delay for a 0-indexed retry attempt."""
        capped = min(self.base_delay * (2 ** attempt), self.max_delay)
        return random.uniform(0, capped)

    @staticmethod
    def _int_header(headers: httpx.Headers, name: str) -> Optional[int]:
        value = headers.get(name)
        if value is None:
            return None
        try:
            return int(value)
        except ValueError:
            return None

    def _is_rate_limited(self, response: httpx.Response) -> bool:
        if response.status_code == 429:
            return True
        return (
            response.status_code == 403
            and self._int_header(response.headers, "x-ratelimit-remaining") == 0
        )

    def _rate_limit_error(self, response: httpx.Response) -> RateLimitError:
        reset_at = self._int_header(response.headers, "x-ratelimit-reset")
        retry_after = self._int_header(response.headers, "retry-after")
        if retry_after is None and reset_at is not None:
            retry_after = max(0, reset_at - int(time.time()))

        logger.warning(
            "GitHub API rate limit exceeded",
            extra={"reset_at": reset_at, "retry_after": retry_after},
        )
        return RateLimitError(
            "GitHub API rate limit exceeded",
            reset_at=reset_at,
            retry_after=retry_after,
            status_code=response.status_code,
            request_url=str(response.url),
        )

    async def _request(
        self,
        method: str,
        path: str,
        json_data: Optional[Dict[str, Any]] = None,
        installation_id: Optional[int] = None,
    ) -> httpx.Response:
        """Send a request, retrying transient failures.

        Raises:
            RateLimitError: On 429, or 403 with no remaining quota.
            GitHubAPIError: On any other 4xx/5xx, once retries run out, or
                when an installation token cannot be minted.
        """
        token = await self.access_token(installation_id)
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        last_error: Optional[str] = None

        for attempt in range(self.max_retries + 1):
            try:
                response = await self.client.request(
                    method, path, json=json_data, headers=headers
                )
            except httpx.RequestError as exc:
                last_error = f"{type(exc).__name__}: {exc}"
            else:
                if self._is_rate_limited(response):
                    raise self._rate_limit_error(response)

                if response.status_code in self.RETRYABLE_STATUS_CODES:
                    last_error = f"status {response.status_code}"
                elif response.status_code >= 400:
                    logger.error(
                        "GitHub API error",
                        extra={
                            "status_code": response.status_code,
                            "method": method,
                            "path": path,
                            "response_body": response.text[:500],
                        },
                    )
                    raise GitHubAPIError(
                        f"GitHub API error: {response.status_code}",
                        status_code=response.status_code,
                        response_body=response.text,
                        request_url=str(response.url),
                    )
                else:
                    return response

            if attempt < self.max_retries:
                delay = self._calculate_backoff(attempt)
                logger.warning(
                    "Transient GitHub API failure, retrying",
                    extra={
                        "error": last_error,
                        "attempt": attempt + 1,
                        "max_retries": self.max_retries,
                        "delay": delay,
                        "path": path,
                    },
                )
                await asyncio.sleep(delay)

        logger.error(
            "GitHub API request failed after all retries",
            extra={"method": method, "path": path, "last_error": last_error},
        )
        raise GitHubAPIError(
            f"Request failed after {self.max_retries} retries: {last_error}",
            request_url=f"{self.base_url}{path}",
        )
