"""Drive one run from trigger check to the final tracking comment."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any, Literal, Protocol

from pydantic import BaseModel, ConfigDict, Field

from relay_bot.events.context import EventContext
from relay_bot.events.trigger import should_trigger
from relay_bot.git.local_repo import LocalRepo
from relay_bot.orchestration.agent import AgentRunner, ExecutionResult
from relay_bot.orchestration.branch import BranchPlan, BranchSetupError, setup_branch
from relay_bot.orchestration.comment_body import CommentState
from relay_bot.orchestration.finalizer import finalize_branch
from relay_bot.orchestration.tracking_comment import TrackingComment, TrackingCommentManager
from relay_bot.providers.base import CommentHandle, PullRequestInfo, SCMError, SCMProvider
from relay_bot.shared.settings import RelaySettings

logger = logging.getLogger(__name__)


class RunRejectedError(RuntimeError):
    def __init__(self, message: str, reason_code: str) -> None:
        super().__init__(message)
        self.reason_code = reason_code


class Notifier(Protocol):
    def notify(self, report: "RunReport") -> bool: ...


class PreparedRunState(BaseModel):
    """Serialized hand-off between the ``prepare`` and ``finish`` steps."""

    model_config = ConfigDict(extra="forbid")

    schema_version: Literal["prepared_run/v1"] = "prepared_run/v1"
    repository: str = Field(min_length=3)
    entity_number: int = Field(ge=1)
    comment_id: int
    comment_kind: str = Field(min_length=1)
    comment_body: str
    base_branch: str = Field(min_length=1)
    working_branch: str = Field(min_length=1)
    working_branch_is_new: bool
    commit_signing: bool
    fetch_depth: int = Field(default=1, ge=1)


@dataclass(frozen=True)
class PreparedRun:
    context: EventContext
    plan: BranchPlan
    comment: TrackingComment
    entity: PullRequestInfo | None = None

    def environment(self) -> dict[str, str]:
        """Variables exported to the agent process."""

        return {
            "RELAY_RUN_BASE_BRANCH": self.plan.base_branch,
            "RELAY_RUN_WORKING_BRANCH": self.plan.working_branch,
            "RELAY_RUN_BRANCH_IS_NEW": "true" if self.plan.working_branch_is_new else "false",
            "RELAY_RUN_COMMIT_SIGNING": "true" if self.plan.commit_signing else "false",
            "RELAY_RUN_COMMENT_ID": str(self.comment.handle.id),
            "RELAY_RUN_ENTITY_NUMBER": str(self.context.entity_number),
            "RELAY_RUN_IS_MERGE_REQUEST": "true" if self.context.is_merge_request else "false",
            "RELAY_RUN_REPOSITORY": self.context.repository.full_name,
        }

    def to_state(self) -> PreparedRunState:
        return PreparedRunState(
            repository=self.context.repository.full_name,
            entity_number=self.context.entity_number,
            comment_id=self.comment.handle.id,
            comment_kind=self.comment.handle.kind,
            comment_body=self.comment.body,
            base_branch=self.plan.base_branch,
            working_branch=self.plan.working_branch,
            working_branch_is_new=self.plan.working_branch_is_new,
            commit_signing=self.plan.commit_signing,
            fetch_depth=self.plan.fetch_depth,
        )

    @classmethod
    def from_state(cls, context: EventContext, state: PreparedRunState) -> "PreparedRun":
        if state.repository != context.repository.full_name or state.entity_number != context.entity_number:
            raise ValueError(
                f"Prepared run is for {state.repository}#{state.entity_number}, "
                f"not {context.repository.full_name}#{context.entity_number}"
            )
        return cls(
            context=context,
            plan=BranchPlan(
                base_branch=state.base_branch,
                working_branch=state.working_branch,
                working_branch_is_new=state.working_branch_is_new,
                commit_signing=state.commit_signing,
                fetch_depth=state.fetch_depth,
            ),
            comment=TrackingComment(
                handle=CommentHandle(id=state.comment_id, kind=state.comment_kind),
                body=state.comment_body,
            ),
        )


@dataclass(frozen=True)
class RunReport:
    platform: str
    repository: str
    entity_label: str
    entity_number: int
    actor: str
    bot_name: str
    success: bool
    working_branch: str
    disposition: str
    comment_id: int
    comment_state: str
    job_url: str
    branch_url: str | None = None
    pr_url: str | None = None
    duration_ms: int | None = None
    cost_usd: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class RunOrchestrator:
    def __init__(
        self,
        provider: SCMProvider,
        local_repo: LocalRepo,
        settings: RelaySettings,
        notifier: Notifier | None = None,
    ) -> None:
        self.provider = provider
        self.local_repo = local_repo
        self.settings = settings
        self.notifier = notifier

    def _comments(self, context: EventContext) -> TrackingCommentManager:
        return TrackingCommentManager(self.provider, context, self.settings)

    def prepare(self, context: EventContext) -> PreparedRun | None:
        """Check trigger and actor, post the tracking comment, set up the branch.

        Returns ``None`` when the event does not trigger. Rejections raise
        before anything user-visible is created; a failure after the comment
        exists is written into it before re-raising.
        """

        if not should_trigger(context, self.settings.trigger):
            return None
        if not self.provider.has_write_permission(context.actor):
            raise RunRejectedError(f"Actor {context.actor} lacks write permission", "insufficient_permission")
        if not self.provider.is_human_actor(context.actor):
            raise RunRejectedError(f"Actor {context.actor} is not a human user", "non_human_actor")

        comments = self._comments(context)
        comment = comments.create()
        try:
            entity = self.provider.get_pull_request_info() if context.is_merge_request else None
            plan = setup_branch(self.provider, self.local_repo, context, entity, self.settings)
            comment = comments.update_with_branch(comment, plan)
        except (SCMError, BranchSetupError) as exc:
            logger.error("Run setup failed", exc_info=True)
            self._report_setup_failure(comments, comment, exc)
            raise
        return PreparedRun(context=context, plan=plan, comment=comment, entity=entity)

    def _report_setup_failure(
        self, comments: TrackingCommentManager, comment: TrackingComment, exc: Exception
    ) -> None:
        try:
            comments.finalize(comment, success=False, error=str(exc))
        except SCMError as write_exc:
            logger.warning("Could not record setup failure on comment %d: %s", comment.handle.id, write_exc)

    def complete(self, prepared: PreparedRun, result: ExecutionResult) -> RunReport:
        context = prepared.context
        outcome = finalize_branch(self.provider, self.local_repo, prepared.plan, context, self.settings)
        comment = self._comments(context).finalize(
            prepared.comment,
            success=result.success,
            duration_ms=result.duration_ms,
            outcome=outcome,
            error=result.error,
        )
        report = RunReport(
            platform=context.platform,
            repository=context.repository.full_name,
            entity_label=context.entity_label,
            entity_number=context.entity_number,
            actor=context.actor,
            bot_name=self.settings.bot_name,
            success=comment.state == CommentState.DONE,
            working_branch=prepared.plan.working_branch,
            disposition=outcome.disposition.value,
            comment_id=comment.handle.id,
            comment_state=comment.state.value,
            job_url=self.provider.job_url(),
            branch_url=outcome.branch_url,
            pr_url=outcome.pr_url,
            duration_ms=result.duration_ms,
            cost_usd=result.cost_usd,
        )
        logger.info(
            "Run on %s #%d finished: %s, branch %s",
            context.entity_kind,
            context.entity_number,
            report.comment_state,
            report.disposition,
        )
        if self.notifier is not None:
            self.notifier.notify(report)
        return report

    def run(self, context: EventContext, agent: AgentRunner) -> RunReport | None:
        prepared = self.prepare(context)
        if prepared is None:
            return None
        try:
            result = agent.run(prepared.environment())
        except Exception as exc:
            logger.exception("Agent runner raised")
            result = ExecutionResult(success=False, error=str(exc))
        return self.complete(prepared, result)
