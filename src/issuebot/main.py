"""FastAPI application entry point for the issue-to-PR service.

Receives GitHub webhooks, verifies their signature when a secret is
configured, and schedules an orchestration run in the background so the
delivery is acknowledged immediately.
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional, Set

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST

from .changes.detector import ChangeSetDetector
from .config import IssueBotSettings, get_settings
from .events.emitter import CompositeEventEmitter, LoggingEventEmitter
from .events.metrics import MetricsEventEmitter, generate_metrics_output
from .github.auth import GitHubAppAuth
from .github.client import GitHubClient
from .models import ChangeRequest, RepoRef
from .orchestrator import ChangeOrchestrator, OrchestratorConfig
from .progress.comments import CommentPublisher
from .runner.agent import AgentEnvironment, AgentRunner
from .runner.supervisor import ProcessSupervisor
from .webhook.handler import WebhookHandler, verify_signature
from .workspace.models import WorkspaceConfig

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Initialized during lifespan startup
settings: Optional[IssueBotSettings] = None
orchestrator: Optional[ChangeOrchestrator] = None
webhook_handler: Optional[WebhookHandler] = None
github_client: Optional[GitHubClient] = None

# Strong references keep scheduled runs from being garbage collected
_background_tasks: Set[asyncio.Task] = set()


def _redact_secret(value: Optional[str], visible_chars: int = 4) -> str:
    """Show only the first few characters of a secret."""
    if not value:
        return "<unset>"
    if len(value) <= visible_chars:
        return "*" * len(value)
    return value[:visible_chars] + "*" * (len(value) - visible_chars)


def _log_configuration(cfg: IssueBotSettings) -> None:
    logger.info("Service configuration:")
    logger.info("  GitHub Base URL: %s", cfg.github_base_url)
    logger.info("  GitHub Token: %s", _redact_secret(cfg.github_token))
    logger.info("  GitHub App ID: %s", cfg.github_app_id or "<unset>")
    logger.info("  GitHub App Private Key: %s", "<set>" if cfg.github_private_key else "<unset>")
    logger.info("  GitHub Installation ID: %s", cfg.github_installation_id or "<unset>")
    logger.info("  GitHub Webhook Secret: %s", _redact_secret(cfg.github_webhook_secret))
    logger.info("  Workspace Base Path: %s", cfg.workspace_base_path)
    logger.info("  Agent Home: %s", cfg.agent_home)
    logger.info("  Agent Model: %s", cfg.agent_model)
    logger.info("  PR Title Prefix: %s", cfg.pr_title_prefix)
    logger.info("  Progress Interval Seconds: %s", cfg.progress_interval_seconds)
    logger.info("  Host: %s", cfg.host)
    logger.info("  Port: %s", cfg.port)


def build_github_client(cfg: IssueBotSettings) -> GitHubClient:
    """GitHub client authenticating as an App when App credentials are set."""
    app_auth = None
    if cfg.uses_github_app:
        app_auth = GitHubAppAuth(
            app_id=cfg.github_app_id,
            private_key=cfg.github_private_key,
            installation_id=cfg.github_installation_id,
        )
    return GitHubClient(
        token=cfg.github_token,
        base_url=cfg.github_base_url,
        app_auth=app_auth,
    )


def build_orchestrator(
    cfg: IssueBotSettings,
    gh_client: GitHubClient,
) -> ChangeOrchestrator:
    """Wire all collaborators into a ChangeOrchestrator."""
    workspace_config = WorkspaceConfig(
        base_path=Path(cfg.workspace_base_path),
        github_token=cfg.github_token,
        author_name=cfg.git_author_name,
        author_email=cfg.git_author_email,
    )

    environment = AgentEnvironment(
        home_dir=Path(cfg.agent_home),
        source_dir=Path(cfg.agent_source_dir),
    )
    supervisor = ProcessSupervisor(
        home_dir=environment.home_dir,
        auto_response_interval=cfg.auto_response_interval_seconds,
    )
    agent_runner = AgentRunner(
        environment=environment,
        model=cfg.agent_model,
        supervisor=supervisor,
    )

    event_emitter = CompositeEventEmitter(
        [LoggingEventEmitter(), MetricsEventEmitter()]
    )

    return ChangeOrchestrator(
        github_client=gh_client,
        comments=CommentPublisher(gh_client),
        agent_runner=agent_runner,
        detector=ChangeSetDetector(git_env=workspace_config.git_env()),
        workspace_config=workspace_config,
        event_emitter=event_emitter,
        config=OrchestratorConfig.from_settings(cfg),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global settings, orchestrator, webhook_handler, github_client

    logger.info("Issue-to-PR service starting up...")

    settings = get_settings()
    _log_configuration(settings)

    webhook_handler = WebhookHandler()
    github_client = build_github_client(settings)
    orchestrator = build_orchestrator(settings, github_client)

    logger.info("Issue-to-PR service started successfully")

    yield

    logger.info("Issue-to-PR service shutting down...")

    if _background_tasks:
        logger.info("Waiting for %d running jobs", len(_background_tasks))
        await asyncio.gather(*_background_tasks, return_exceptions=True)

    if github_client is not None:
        await github_client.close()

    logger.info("Issue-to-PR service shutdown complete")


async def _run_in_background(repo: RepoRef, request: ChangeRequest) -> None:
    """Run the orchestrator, logging failures nobody else will observe."""
    try:
        result = await orchestrator.process(repo, request)
        logger.info(
            "Background run finished",
            extra={
                "repository": repo.full_name,
                "number": request.number,
                "status": result.status.value,
            },
        )
    except Exception:
        logger.exception(
            "Background run failed",
            extra={"repository": repo.full_name, "number": request.number},
        )


def schedule_run(repo: RepoRef, request: ChangeRequest) -> asyncio.Task:
    task = asyncio.create_task(_run_in_background(repo, request))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


app = FastAPI(
    title="Issue-to-PR Service",
    description="Turns GitHub issues and review feedback into pull requests",
    version="1.0.0",
    lifespan=lifespan,
)


@app.get("/health")
async def health():
    """Liveness check."""
    return {"status": "healthy"}


@app.get("/ready")
async def ready():
    """Readiness check: ready once the orchestrator is wired."""
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return {"status": "ready", "running_jobs": len(_background_tasks)}


@app.get("/metrics")
async def metrics():
    """Prometheus metrics in text exposition format."""
    return Response(content=generate_metrics_output(), media_type=CONTENT_TYPE_LATEST)


@app.post("/webhooks/github")
async def github_webhook(request: Request):
    """GitHub webhook receiver.

    Returns 202-style acknowledgments in the body; the run itself happens in
    the background.
    """
    if webhook_handler is None or orchestrator is None:
        logger.error("Service not initialized")
        raise HTTPException(status_code=503, detail="Service not initialized")

    body = await request.body()

    if settings is not None and settings.github_webhook_secret:
        signature = request.headers.get("x-hub-signature-256")
        if not verify_signature(settings.github_webhook_secret, body, signature):
            logger.warning("Rejected webhook with invalid signature")
            raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        payload = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON payload")

    event_name = request.headers.get("x-github-event", "")
    parsed = webhook_handler.parse_event(event_name, payload)
    if parsed is None:
        return {"status": "ignored", "event": event_name}

    repo, change_request = parsed
    schedule_run(repo, change_request)

    return {
        "status": "accepted",
        "repository": repo.full_name,
        "number": change_request.number,
    }


if __name__ == "__main__":
    import uvicorn

    dev_settings = get_settings()
    uvicorn.run(
        "src.issuebot.main:app",
        host=dev_settings.host,
        port=dev_settings.port,
    )
