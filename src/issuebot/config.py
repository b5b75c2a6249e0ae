"""Service configuration using pydantic-settings.

IssueBotSettings reads configuration from environment variables with the
ISSUEBOT_ prefix (e.g. ISSUEBOT_GITHUB_TOKEN). GitHub credentials are
required: a token, or a GitHub App id with its private key. Everything
else has a working default.
"""

from pathlib import Path
from typing import Optional

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class IssueBotSettings(BaseSettings):
    """Issue-to-PR service configuration from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="ISSUEBOT_",
        case_sensitive=False,
    )

    # -------------------------------------------------------------------------
    # GitHub
    # -------------------------------------------------------------------------
    # Token for the REST API and for authenticated clone/push
    github_token: Optional[str] = None

    # GitHub App credentials; installation tokens are minted per delivery.
    # The key may use literal \n sequences when passed through one env var.
    github_app_id: Optional[int] = None
    github_private_key: Optional[str] = None

    # Installation used when a delivery carries none
    github_installation_id: Optional[int] = None

    # Webhook signatures are only verified when a secret is configured
    github_webhook_secret: Optional[str] = None

    # Supports GitHub Enterprise Server
    github_base_url: str = "https://api.github.com"

    # -------------------------------------------------------------------------
    # Workspace and git identity
    # -------------------------------------------------------------------------
    workspace_base_path: str = "/tmp/issue-to-pr-agent"
    git_author_name: str = "GitHub Issue Bot"
    git_author_email: str = "bot@example.com"

    # -------------------------------------------------------------------------
    # Change agent
    # -------------------------------------------------------------------------
    # HOME of the agent; the binary is <agent_home>/.local/bin/aider
    agent_home: str = "/tmp/aider"

    # Packaged agent distribution copied into agent_home on first use
    agent_source_dir: str = "/opt/bin"

    agent_model: str = "gpt-4o"

    auto_response_interval_seconds: float = 5.0

    # -------------------------------------------------------------------------
    # Pull requests and progress narration
    # -------------------------------------------------------------------------
    # Also identifies pull requests this service opened
    pr_title_prefix: str = "Auto PR for issue #"
    commit_message: str = "Auto-generated changes for issue"

    progress_interval_seconds: float = 45.0
    progress_snippet_length: int = 300

    # -------------------------------------------------------------------------
    # Server
    # -------------------------------------------------------------------------
    host: str = "0.0.0.0"
    port: int = 8080

    # -------------------------------------------------------------------------
    # Validators
    # -------------------------------------------------------------------------
    @field_validator("github_token", "github_webhook_secret")
    @classmethod
    def validate_optional_secret(cls, v: Optional[str]) -> Optional[str]:
        """Treat a blank secret as unset."""
        if v is not None and not v.strip():
            return None
        return v

    @field_validator("github_base_url")
    @classmethod
    def validate_github_base_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("github_base_url must start with http:// or https://")
        return v.rstrip("/")

    @field_validator("workspace_base_path", "agent_home")
    @classmethod
    def validate_absolute_path(cls, v: str) -> str:
        if not Path(v).is_absolute():
            raise ValueError("path must be absolute")
        return v

    @field_validator("pr_title_prefix", "commit_message", "agent_model")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("value cannot be empty")
        return v

    @field_validator("progress_interval_seconds", "auto_response_interval_seconds")
    @classmethod
    def validate_positive_interval(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("interval must be positive")
        return v

    @field_validator("progress_snippet_length")
    @classmethod
    def validate_snippet_length(cls, v: int) -> int:
        if v < 1:
            raise ValueError("progress_snippet_length must be at least 1")
        return v

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        if not 1 <= v <= 65535:
            raise ValueError("port must be between 1 and 65535")
        return v


    @field_validator("github_private_key")
    @classmethod
    def validate_private_key(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        return v.replace("\\n", "\n")

    @model_validator(mode="after")
    def validate_github_credentials(self) -> "IssueBotSettings":
        """Require a token or complete GitHub App credentials."""
        has_app_id = self.github_app_id is not None
        has_key = self.github_private_key is not None
        if has_app_id != has_key:
            raise ValueError(
                "github_app_id and github_private_key must be set together"
            )
        if self.github_token is None and not has_app_id:
            raise ValueError(
                "github_token or github_app_id with github_private_key is required"
            )
        return self

    @property
    def uses_github_app(self) -> bool:
        return self.github_app_id is not None and self.github_private_key is not None


def get_settings() -> IssueBotSettings:
    """Load settings from the environment.

    Raises:
        pydantic.ValidationError: If required fields are missing or invalid.
    """
    return IssueBotSettings()
