"""Change orchestrator driving issue and review runs end to end.

Issue flow:
    clone → branch → "started" → agent → detect → agent output
    → (no changes: notice, stop) → commit → push → pull request → notice

Review flow (only pull requests this service opened):
    clone → fetch review comments → checkout PR branch → "implementing"
    → agent → detect → agent output → (no changes: notice, stop)
    → commit → push → "updated" notice

Failure handling:
- AgentInvocationError / ChangeDetectionError: one comment with the error
  and captured agent output; the run ends without a pull request and a
  failure RunResult is returned.
- WorkspaceProvisionError / PublishError: best-effort error comment, then
  the error is re-raised.
- Any other exception gets the same treatment, so a crash never leaves
  the thread with only a "started" comment.
- Comment failures never mask the failure being reported.
- The workspace directory is removed on every path.

Every collaborator is injected so the flows can be exercised with mocks.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, FrozenSet, List, Optional, Tuple

from src.issuebot.changes.detector import ChangeSetDetector
from src.issuebot.config import IssueBotSettings
from src.issuebot.errors import (
    AgentInvocationError,
    ChangeDetectionError,
    IssueBotError,
    PublishError,
    WorkspaceProvisionError,
)
from src.issuebot.events.emitter import EventEmitter, NullEventEmitter
from src.issuebot.events.models import EventType, RunEvent
from src.issuebot.github.client import GitHubAPIError, GitHubClient
from src.issuebot.github.models import PRCreateRequest
from src.issuebot.instructions import build_issue_instruction, build_review_instruction
from src.issuebot.models import (
    ChangeRequest,
    Flow,
    IssueRequest,
    RepoRef,
    ReviewComment,
    ReviewRequest,
    RunResult,
    RunStatus,
)
from src.issuebot.progress.comments import CommentPublisher
from src.issuebot.progress.formatting import (
    DEFAULT_SNIPPET_LENGTH,
    format_agent_failure_comment,
    format_agent_output_comment,
    format_error_comment,
    format_no_changes_comment,
    format_pr_created_comment,
    format_pr_updated_comment,
    format_review_started_comment,
    format_started_comment,
)
from src.issuebot.progress.reporter import (
    DEFAULT_THROTTLE_INTERVAL_SECONDS,
    ProgressReporter,
)
from src.issuebot.runner.agent import AgentRunner
from src.issuebot.runner.models import ProcessOutcome
from src.issuebot.workspace.lifecycle import WorkspaceLifecycle
from src.issuebot.workspace.models import WorkspaceConfig

logger = logging.getLogger(__name__)

PostFunction = Callable[[str], Awaitable[bool]]
WorkspaceFactory = Callable[[RepoRef], WorkspaceLifecycle]


@dataclass
class OrchestratorConfig:
    """Per-run behavior of the orchestrator.

    Attributes:
        pr_title_prefix: Prefix of pull request titles; also used to
            recognize pull requests this service opened.
        commit_message: Base commit message.
        progress_interval_seconds: Throttle interval for progress updates.
        progress_snippet_length: Recent-output snippet length.
        draft_pull_requests: Open pull requests as drafts.
    """

    pr_title_prefix: str = "Auto PR for issue #"
    commit_message: str = "Auto-generated changes for issue"
    progress_interval_seconds: float = DEFAULT_THROTTLE_INTERVAL_SECONDS
    progress_snippet_length: int = DEFAULT_SNIPPET_LENGTH
    draft_pull_requests: bool = False

    @classmethod
    def from_settings(cls, settings: IssueBotSettings) -> "OrchestratorConfig":
        return cls(
            pr_title_prefix=settings.pr_title_prefix,
            commit_message=settings.commit_message,
            progress_interval_seconds=settings.progress_interval_seconds,
            progress_snippet_length=settings.progress_snippet_length,
        )


@dataclass
class _RunContext:
    """Identity and timing of one run, used for logs and events."""

    flow: Flow
    repo: RepoRef
    number: int
    post: PostFunction
    started_at: float = field(default_factory=time.monotonic)
    stage: str = "received"

    @property
    def request_id(self) -> str:
        return f"{self.repo.full_name}#{self.number}"

    @property
    def is_review(self) -> bool:
        return self.flow == Flow.REVIEW

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started_at


class ChangeOrchestrator:
    """Turns change requests into published branches and pull requests.

    Attributes:
        github_client: GitHub API client for pull requests and review comments.
        comments: Best-effort comment publisher.
        agent_runner: Runs the change agent in a workspace.
        detector: Computes the change set after the agent ran.
        workspace_config: Configuration for new workspaces.
        event_emitter: Sink for run events.
        config: Titles, messages and progress throttling.
    """

    def __init__(
        self,
        github_client: GitHubClient,
        comments: CommentPublisher,
        agent_runner: AgentRunner,
        detector: ChangeSetDetector,
        workspace_config: WorkspaceConfig,
        event_emitter: Optional[EventEmitter] = None,
        config: Optional[OrchestratorConfig] = None,
        workspace_factory: Optional[WorkspaceFactory] = None,
    ):
        self.github_client = github_client
        self.comments = comments
        self.agent_runner = agent_runner
        self.detector = detector
        self.workspace_config = workspace_config
        self.event_emitter = event_emitter or NullEventEmitter()
        self.config = config or OrchestratorConfig()
        self._workspace_factory = workspace_factory or self._new_workspace

    async def process(self, repo: RepoRef, request: ChangeRequest) -> RunResult:
        """Run the flow matching the request type."""
        if isinstance(request, IssueRequest):
            return await self.process_issue(repo, request)
        if isinstance(request, ReviewRequest):
            return await self.process_review(repo, request)
        raise TypeError(f"Unsupported change request: {type(request).__name__}")

    async def process_issue(self, repo: RepoRef, issue: IssueRequest) -> RunResult:
        """Implement an opened issue and open a pull request for it.

        Returns:
            RunResult with PR_CREATED, NO_CHANGES, AGENT_FAILED or
            DETECTION_FAILED.

        Raises:
            WorkspaceProvisionError: If clone or branch creation fails.
            PublishError: If commit, push or pull request creation fails.
        """
        ctx = _RunContext(
            flow=Flow.ISSUE,
            repo=repo,
            number=issue.number,
            post=self.comments.poster_for(repo, issue.number),
        )
        logger.info(
            "Processing issue",
            extra={"request_id": ctx.request_id, "title": issue.title},
        )

        async with self._workspace_factory(repo) as workspace:
            try:
                return await self._run_issue(ctx, workspace, issue)
            except IssueBotError:
                raise
            except Exception as exc:
                await self._report_unexpected(ctx, exc)
                raise

    async def process_review(self, repo: RepoRef, review: ReviewRequest) -> RunResult:
        """Revise a pull request this service opened according to its review.

        Pull requests whose title lacks the configured prefix are skipped.

        Returns:
            RunResult with PR_UPDATED, NO_CHANGES, AGENT_FAILED,
            DETECTION_FAILED or SKIPPED.

        Raises:
            WorkspaceProvisionError: If clone or branch checkout fails.
            PublishError: If commit or push fails.
        """
        if not review.title.startswith(self.config.pr_title_prefix):
            logger.info(
                "Ignoring review on pull request not created by this service",
                extra={"repository": repo.full_name, "pr_number": review.pr_number},
            )
            return RunResult(flow=Flow.REVIEW, status=RunStatus.SKIPPED)

        ctx = _RunContext(
            flow=Flow.REVIEW,
            repo=repo,
            number=review.pr_number,
            post=self.comments.poster_for(repo, review.pr_number),
        )
        logger.info("Processing review", extra={"request_id": ctx.request_id})

        async with self._workspace_factory(repo) as workspace:
            try:
                return await self._run_review(ctx, workspace, review)
            except IssueBotError:
                raise
            except Exception as exc:
                await self._report_unexpected(ctx, exc)
                raise

    # ------------------------------------------------------------------
    # Flows
    # ------------------------------------------------------------------

    async def _run_issue(
        self, ctx: _RunContext, workspace: WorkspaceLifecycle, issue: IssueRequest
    ) -> RunResult:
        repo = ctx.repo
        try:
            await self._enter_stage(ctx, "provisioning")
            await workspace.clone(token=await self._clone_token(repo))
            branch = await workspace.create_branch(issue.number)
        except WorkspaceProvisionError as exc:
            await self._report_fatal(ctx, exc)
            raise

        await ctx.post(format_started_comment())

        try:
            outcome, change_set = await self._implement(
                ctx, workspace, build_issue_instruction(issue)
            )
        except (AgentInvocationError, ChangeDetectionError) as exc:
            workspace.mark_failed()
            return await self._report_step_failure(ctx, exc, branch)

        if not change_set:
            workspace.mark_no_change()
            return await self._finish_without_changes(ctx, outcome, branch)

        try:
            await self._enter_stage(ctx, "publishing")
            await workspace.commit(
                change_set, f"{self.config.commit_message} #{issue.number}"
            )
            await workspace.push()
            pr = await self._create_pull_request(repo, issue, branch)
        except PublishError as exc:
            if exc.output.is_empty:
                exc.with_output(outcome.output)
            await self._report_fatal(ctx, exc)
            raise

        await ctx.post(format_pr_created_comment(pr.pr_number))
        return await self._complete(
            ctx,
            RunResult(
                flow=ctx.flow,
                status=RunStatus.PR_CREATED,
                changed_files=sorted(change_set),
                output=outcome.output,
                pr_number=pr.pr_number,
                branch=branch,
            ),
            pr_url=pr.pr_url,
        )

    async def _run_review(
        self, ctx: _RunContext, workspace: WorkspaceLifecycle, review: ReviewRequest
    ) -> RunResult:
        repo = ctx.repo
        try:
            await self._enter_stage(ctx, "provisioning")
            await workspace.clone(token=await self._clone_token(repo))
            comments = await self._collect_review_comments(repo, review)
            branch = await workspace.checkout_branch(review.branch)
        except WorkspaceProvisionError as exc:
            await self._report_fatal(ctx, exc)
            raise

        await ctx.post(format_review_started_comment())

        review = review.model_copy(update={"comments": comments})
        try:
            outcome, change_set = await self._implement(
                ctx, workspace, build_review_instruction(review)
            )
        except (AgentInvocationError, ChangeDetectionError) as exc:
            workspace.mark_failed()
            return await self._report_step_failure(ctx, exc, branch)

        if not change_set:
            workspace.mark_no_change()
            return await self._finish_without_changes(ctx, outcome, branch)

        try:
            await self._enter_stage(ctx, "publishing")
            await workspace.commit(
                change_set,
                f"{self.config.commit_message} PR #{review.pr_number}",
            )
            await workspace.push()
        except PublishError as exc:
            if exc.output.is_empty:
                exc.with_output(outcome.output)
            await self._report_fatal(ctx, exc)
            raise

        await ctx.post(format_pr_updated_comment(change_set))
        return await self._complete(
            ctx,
            RunResult(
                flow=ctx.flow,
                status=RunStatus.PR_UPDATED,
                changed_files=sorted(change_set),
                output=outcome.output,
                pr_number=review.pr_number,
                branch=branch,
            ),
        )

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _implement(
        self,
        ctx: _RunContext,
        workspace: WorkspaceLifecycle,
        instruction: str,
    ) -> Tuple[ProcessOutcome, FrozenSet[str]]:
        """Run the agent, then detect what it changed.

        Raises:
            AgentInvocationError: If the agent fails.
            ChangeDetectionError: If the post-run git state cannot be read;
                carries the agent output.
        """
        snapshot = await self.detector.snapshot(workspace.path)

        await self._enter_stage(ctx, "implementing")
        workspace.mark_dirty()
        reporter = ProgressReporter(
            ctx.post,
            ctx.number,
            interval=self.config.progress_interval_seconds,
            snippet_length=self.config.progress_snippet_length,
        )
        outcome = await self.agent_runner.run(
            workspace.path,
            instruction,
            label=f"{ctx.repo.owner}-{ctx.repo.name}-{ctx.number}",
            env=workspace.git_env,
            progress=reporter,
        )

        await self._enter_stage(ctx, "detecting")
        try:
            change_set = await self.detector.detect(
                workspace.path, snapshot.status_lines, snapshot.head
            )
        except ChangeDetectionError as exc:
            raise exc.with_output(outcome.output)

        await ctx.post(format_agent_output_comment(outcome.output))
        return outcome, change_set

    async def _collect_review_comments(
        self, repo: RepoRef, review: ReviewRequest
    ) -> List[ReviewComment]:
        """Merge fetched review comments with those in the payload.

        Comments are deduplicated by id; a failed fetch falls back to the
        payload comments.
        """
        merged: List[ReviewComment] = []
        seen_ids = set()

        try:
            fetched = await self.github_client.list_review_comments(
                repo.owner,
                repo.name,
                review.pr_number,
                installation_id=repo.installation_id,
            )
        except GitHubAPIError as exc:
            logger.warning(
                "Could not fetch review comments, using payload comments: %s",
                exc,
                extra={"repository": repo.full_name, "pr_number": review.pr_number},
            )
            fetched = []

        candidates = [
            ReviewComment(
                id=item.get("id"),
                body=item.get("body") or "",
                path=item.get("path"),
                line=item.get("line"),
            )
            for item in fetched
        ]
        candidates.extend(review.comments)

        for comment in candidates:
            if comment.id is not None:
                if comment.id in seen_ids:
                    continue
                seen_ids.add(comment.id)
            merged.append(comment)

        return merged

    async def _create_pull_request(
        self, repo: RepoRef, issue: IssueRequest, branch: str
    ):
        request = PRCreateRequest(
            title=f"{self.config.pr_title_prefix}{issue.number}: {issue.title}",
            body=f"This PR addresses issue #{issue.number}\n\n{issue.body}".rstrip(),
            head_branch=branch,
            base_branch=repo.default_branch,
            draft=self.config.draft_pull_requests,
        )
        try:
            return await self.github_client.create_pull_request(
                repo.owner, repo.name, request, installation_id=repo.installation_id
            )
        except GitHubAPIError as exc:
            raise PublishError(f"Failed to create pull request: {exc}") from exc

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    async def _finish_without_changes(
        self, ctx: _RunContext, outcome: ProcessOutcome, branch: str
    ) -> RunResult:
        logger.info("Agent made no changes", extra={"request_id": ctx.request_id})
        await ctx.post(format_no_changes_comment(is_review=ctx.is_review))
        await self._safe_emit(
            self._event(
                ctx, EventType.NO_CHANGES, {"duration_seconds": ctx.elapsed}
            )
        )
        return RunResult(
            flow=ctx.flow,
            status=RunStatus.NO_CHANGES,
            output=outcome.output,
            branch=branch,
        )

    async def _complete(
        self, ctx: _RunContext, result: RunResult, pr_url: str = ""
    ) -> RunResult:
        logger.info(
            "Run completed",
            extra={
                "request_id": ctx.request_id,
                "status": result.status.value,
                "pr_number": result.pr_number,
                "changed_files": len(result.changed_files),
            },
        )
        await self._safe_emit(
            self._event(
                ctx,
                EventType.COMPLETION,
                {
                    "status": result.status.value,
                    "pr_number": result.pr_number,
                    "pr_url": pr_url,
                    "changed_files": len(result.changed_files),
                    "duration_seconds": ctx.elapsed,
                },
            )
        )
        return result

    async def _report_step_failure(
        self,
        ctx: _RunContext,
        exc: IssueBotError,
        branch: Optional[str],
    ) -> RunResult:
        """Report an agent or detection failure as one comment and a result."""
        logger.error(
            "Run stage failed: %s",
            exc.message,
            extra={"request_id": ctx.request_id, "stage": exc.stage},
        )
        await ctx.post(format_agent_failure_comment(exc.message, exc.output))
        await self._emit_error(ctx, exc.stage, exc.message)

        status = (
            RunStatus.AGENT_FAILED
            if isinstance(exc, AgentInvocationError)
            else RunStatus.DETECTION_FAILED
        )
        return RunResult(
            flow=ctx.flow,
            status=status,
            output=exc.output,
            branch=branch,
            error=exc.message,
        )

    async def _report_fatal(self, ctx: _RunContext, exc: IssueBotError) -> None:
        """Report a provisioning or publish failure before it is re-raised."""
        logger.exception(
            "Run failed",
            extra={"request_id": ctx.request_id, "stage": exc.stage},
        )
        await ctx.post(format_error_comment(exc.message, is_review=ctx.is_review))
        await self._emit_error(ctx, exc.stage, exc.message)

    async def _report_unexpected(self, ctx: _RunContext, exc: Exception) -> None:
        """Report an error outside the taxonomy before it is re-raised.

        The comment is best effort: a failure to post it is logged and the
        original exception still propagates.
        """
        message = str(exc) or type(exc).__name__
        logger.exception(
            "Run failed unexpectedly",
            extra={"request_id": ctx.request_id, "stage": ctx.stage},
        )
        try:
            await ctx.post(format_error_comment(message, is_review=ctx.is_review))
        except Exception:
            logger.exception(
                "Failed to post error comment",
                extra={"request_id": ctx.request_id},
            )
        await self._emit_error(ctx, ctx.stage, message)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _new_workspace(self, repo: RepoRef) -> WorkspaceLifecycle:
        return WorkspaceLifecycle(repo, self.workspace_config)

    async def _clone_token(self, repo: RepoRef) -> Optional[str]:
        """Token for the clone URL; an installation token under App auth."""
        try:
            return await self.github_client.access_token(repo.installation_id)
        except GitHubAPIError as exc:
            raise WorkspaceProvisionError(
                f"Failed to obtain a GitHub access token for {repo.full_name}: {exc}"
            ) from exc

    async def _enter_stage(self, ctx: _RunContext, stage: str) -> None:
        previous, ctx.stage = ctx.stage, stage
        await self._safe_emit(
            self._event(
                ctx,
                EventType.STATE_TRANSITION,
                {"from_stage": previous, "to_stage": stage},
            )
        )

    async def _emit_error(self, ctx: _RunContext, stage: str, message: str) -> None:
        await self._safe_emit(
            self._event(
                ctx,
                EventType.ERROR,
                {
                    "stage": stage,
                    "error_message": message,
                    "duration_seconds": ctx.elapsed,
                },
            )
        )

    def _event(self, ctx: _RunContext, event_type: EventType, details: dict) -> RunEvent:
        return RunEvent(
            event_type=event_type,
            request_id=ctx.request_id,
            repository=ctx.repo.full_name,
            flow=ctx.flow.value,
            details=details,
        )

    async def _safe_emit(self, event: RunEvent) -> None:
        """Emit an event without letting sink failures disrupt the run."""
        try:
            await self.event_emitter.emit(event)
        except Exception:
            logger.exception(
                "Failed to emit run event",
                extra={
                    "event_type": event.event_type.value,
                    "request_id": event.request_id,
                },
            )
