"""GitHub App authentication.

A GitHub App signs a short-lived JWT with its private key and exchanges it
for an installation access token:

    JWT (RS256, iss=<app id>, ~10 min)
      → POST /app/installations/{installation_id}/access_tokens
      → {"token": "ghs_...", "expires_at": "2024-01-01T01:00:00Z"}

Installation tokens last an hour. They are cached per installation and
minted again shortly before they expire.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Optional

import httpx
import jwt

from src.issuebot.github.errors import GitHubAPIError

logger = logging.getLogger(__name__)

# GitHub rejects JWTs issued in the future and lifetimes over 10 minutes
JWT_BACKDATE_SECONDS = 60
JWT_LIFETIME_SECONDS = 540
TOKEN_REFRESH_MARGIN_SECONDS = 60


@dataclass(frozen=True)
class InstallationToken:
    token: str
    expires_at: float


class GitHubAppAuth:
    """Mints and caches installation tokens for a GitHub App.

    Attributes:
        app_id: Numeric GitHub App id.
        private_key: PEM-encoded RSA private key of the App.
        installation_id: Installation used when a request names none.
    """

    def __init__(
        self,
        app_id: int,
        private_key: str,
        installation_id: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.app_id = app_id
        self.private_key = private_key
        self.installation_id = installation_id
        self._clock = clock
        self._tokens: Dict[int, InstallationToken] = {}
        self._lock = asyncio.Lock()

    def installation_for(self, installation_id: Optional[int]) -> Optional[int]:
        return installation_id if installation_id is not None else self.installation_id

    def create_jwt(self) -> str:
        """Sign the App JWT used to request installation tokens."""
        now = int(self._clock())
        payload = {
            "iat": now - JWT_BACKDATE_SECONDS,
            "exp": now + JWT_LIFETIME_SECONDS,
            "iss": str(self.app_id),
        }
        return jwt.encode(payload, self.private_key, algorithm="RS256")

    async def installation_token(
        self,
        client: httpx.AsyncClient,
        installation_id: Optional[int] = None,
    ) -> str:
        """Return a valid installation token, minting one when needed.

        Args:
            client: HTTP client rooted at the GitHub API base URL.
            installation_id: Installation from the webhook delivery; falls
                back to the configured installation.

        Raises:
            GitHubAPIError: If no installation is known or minting fails.
        """
        target = self.installation_for(installation_id)
        if target is None:
            raise GitHubAPIError("No GitHub App installation id for this request")

        async with self._lock:
            cached = self._tokens.get(target)
            if cached is not None and not self._expiring(cached):
                return cached.token

            minted = await self._mint(client, target)
            self._tokens[target] = minted
            return minted.token

    def _expiring(self, token: InstallationToken) -> bool:
        return token.expires_at - TOKEN_REFRESH_MARGIN_SECONDS <= self._clock()

    async def _mint(self, client: httpx.AsyncClient, installation_id: int) -> InstallationToken:
        path = f"/app/installations/{installation_id}/access_tokens"
        logger.info(
            "Minting installation token",
            extra={"app_id": self.app_id, "installation_id": installation_id},
        )
        try:
            response = await client.post(
                path, headers={"Authorization": f"Bearer {self.create_jwt()}"}
            )
        except httpx.RequestError as exc:
            raise GitHubAPIError(
                f"Failed to mint installation token: {type(exc).__name__}: {exc}",
                request_url=path,
            ) from exc

        if response.status_code >= 400:
            logger.error(
                "Installation token request rejected",
                extra={
                    "status_code": response.status_code,
                    "installation_id": installation_id,
                    "response_body": response.text[:500],
                },
            )
            raise GitHubAPIError(
                f"Failed to mint installation token: {response.status_code}",
                status_code=response.status_code,
                response_body=response.text,
                request_url=str(response.url),
            )

        try:
            data = response.json()
            return InstallationToken(
                token=data["token"],
                expires_at=_parse_timestamp(data["expires_at"]),
            )
        except (ValueError, KeyError, TypeError) as exc:
            raise GitHubAPIError(
                f"Malformed installation token response: {exc}",
                status_code=response.status_code,
                response_body=response.text,
                request_url=str(response.url),
            ) from exc


def _parse_timestamp(value: str) -> float:
    """Parse GitHub's ``2024-01-01T01:00:00Z`` timestamps to epoch seconds."""
    return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp()
