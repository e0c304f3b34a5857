"""Own the single status comment posted for a run."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from relay_bot.events.context import EventContext
from relay_bot.orchestration.branch import BranchPlan
from relay_bot.orchestration.comment_body import (
    CommentState,
    FinalizeInput,
    render_final_body,
    render_working_body,
)
from relay_bot.orchestration.finalizer import BranchOutcome
from relay_bot.providers.base import CommentHandle, CommentInfo, SCMError, SCMProvider
from relay_bot.shared.settings import RelaySettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TrackingComment:
    handle: CommentHandle
    body: str
    state: CommentState = CommentState.WORKING


class TrackingCommentManager:
    """Creates the tracking comment and rewrites it as the run progresses.

    No other component writes comment text; every transition goes through
    ``create``, ``update_with_branch`` or ``finalize``.
    """

    def __init__(self, provider: SCMProvider, context: EventContext, settings: RelaySettings) -> None:
        self.provider = provider
        self.context = context
        self.settings = settings

    def create(self) -> TrackingComment:
        body = render_working_body(self.provider.job_url(), self.settings.bot_name)

        if self.settings.use_sticky_comment and self.context.is_merge_request:
            reused = self._reuse_sticky(body)
            if reused is not None:
                return reused

        try:
            handle = self.provider.create_comment(body, reply_to=self.context.reply_to)
        except SCMError as exc:
            logger.warning("Creating tracking comment failed (%s); retrying as a plain comment", exc)
            try:
                handle = self.provider.create_comment(body)
            except SCMError:
                logger.exception("Could not create tracking comment")
                raise
        logger.info("Created tracking comment %d", handle.id)
        return TrackingComment(handle=handle, body=body)

    def _reuse_sticky(self, body: str) -> TrackingComment | None:
        try:
            comments = self.provider.list_comments()
        except SCMError as exc:
            logger.warning("Could not list comments for sticky reuse: %s", exc)
            return None
        for comment in comments:
            if not self._is_own_comment(comment, body):
                continue
            try:
                self.provider.update_comment(comment.handle, body)
            except SCMError as exc:
                logger.warning("Could not reuse comment %d: %s", comment.handle.id, exc)
                return None
            logger.info("Reusing sticky comment %d", comment.handle.id)
            return TrackingComment(handle=comment.handle, body=body)
        return None

    def _is_own_comment(self, comment: CommentInfo, body: str) -> bool:
        bot_id = self.settings.bot_user_id
        if bot_id is not None and comment.author_id == bot_id:
            return True
        if comment.author_is_bot and self.settings.bot_name.lower() in comment.author.lower():
            return True
        return comment.body == body

    def update_with_branch(self, comment: TrackingComment, plan: BranchPlan) -> TrackingComment:
        """Add the branch link once a new branch exists (issue flow only)."""

        if self.context.is_merge_request or not plan.working_branch_is_new or plan.commit_signing:
            return comment
        body = render_working_body(
            self.provider.job_url(),
            self.settings.bot_name,
            branch_url=self.provider.branch_url(plan.working_branch),
        )
        self._write(comment.handle, body)
        return TrackingComment(handle=comment.handle, body=body, state=comment.state)

    def finalize(
        self,
        comment: TrackingComment,
        *,
        success: bool,
        duration_ms: int | None = None,
        outcome: BranchOutcome | None = None,
        error: str | None = None,
    ) -> TrackingComment:
        try:
            current = self.provider.get_comment(comment.handle)
        except SCMError as exc:
            logger.warning("Could not re-read comment %d, using cached body: %s", comment.handle.id, exc)
            current = comment.body

        data = FinalizeInput(
            success=success,
            job_url=self.provider.job_url(),
            duration_ms=duration_ms,
            branch_name=outcome.branch_name if outcome else None,
            branch_url=outcome.branch_url if outcome else None,
            pr_url=outcome.pr_url if outcome else None,
            trigger_username=self.context.actor or None,
            error=error,
        )
        body = render_final_body(current, data, self.settings.bot_name)
        self._write(comment.handle, body)
        state = CommentState.DONE if success else CommentState.FAILED
        logger.info("Finalized tracking comment %d as %s", comment.handle.id, state.value)
        return TrackingComment(handle=comment.handle, body=body, state=state)

    def _write(self, handle: CommentHandle, body: str) -> None:
        try:
            self.provider.update_comment(handle, body)
        except SCMError:
            logger.exception("Could not update tracking comment %d", handle.id)
            raise
