"""Decide what happens to the working branch once the agent is done."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from relay_bot.events.context import EventContext
from relay_bot.git.local_repo import GitCommandError, LocalRepo
from relay_bot.orchestration.branch import BranchPlan
from relay_bot.providers.base import NotFoundError, SCMError, SCMProvider
from relay_bot.shared.settings import RelaySettings

logger = logging.getLogger(__name__)

ENTITY_WORDS = {"issue": "issue", "pr": "pull request", "mr": "merge request"}


class BranchDisposition(str, Enum):
    KEPT = "kept"
    AUTO_COMMITTED = "auto_committed"
    DELETED = "deleted"


@dataclass(frozen=True)
class BranchOutcome:
    disposition: BranchDisposition
    branch_name: str | None = None
    branch_url: str | None = None
    pr_url: str | None = None
    reason_code: str = ""


def auto_commit_message(settings: RelaySettings, run_id: str) -> str:
    return f"Auto-commit: Save uncommitted changes from {settings.bot_name}\n\nRun ID: {run_id}"


def finalize_branch(
    provider: SCMProvider,
    local_repo: LocalRepo,
    plan: BranchPlan,
    context: EventContext,
    settings: RelaySettings,
) -> BranchOutcome:
    """Classify the working branch as kept, auto-committed or deleted.

    Deletion only follows a confirmed empty comparison; any failure to
    verify keeps the branch and links it.
    """

    if not plan.working_branch_is_new:
        return BranchOutcome(BranchDisposition.KEPT, reason_code="existing_branch")

    branch = plan.working_branch
    try:
        comparison = provider.compare_branches(plan.base_branch, branch)
    except NotFoundError as exc:
        if plan.commit_signing:
            return _resolve_missing_signed_branch(provider, plan, exc)
        return _keep_unverified(provider, branch, exc)
    except SCMError as exc:
        return _keep_unverified(provider, branch, exc)

    if comparison.total_commits > 0:
        logger.info("Branch %s is %d commit(s) ahead of %s", branch, comparison.total_commits, plan.base_branch)
        return BranchOutcome(
            BranchDisposition.KEPT,
            branch_name=branch,
            branch_url=provider.branch_url(branch),
            pr_url=_pr_url(provider, plan, context, settings) if comparison.has_changes else None,
            reason_code="commits_ahead",
        )

    if plan.commit_signing:
        return _delete_empty_branch(provider, branch)

    try:
        dirty = local_repo.has_uncommitted_changes()
    except GitCommandError as exc:
        return _keep_unverified(provider, branch, exc)
    if not dirty:
        return _delete_empty_branch(provider, branch)

    try:
        local_repo.commit_all(auto_commit_message(settings, context.run_id))
        local_repo.push(branch)
    except GitCommandError as exc:
        return _keep_unverified(provider, branch, exc)
    logger.info("Auto-committed uncommitted changes to %s", branch)

    pr_url = None
    try:
        if provider.compare_branches(plan.base_branch, branch).has_changes:
            pr_url = _pr_url(provider, plan, context, settings)
    except SCMError as exc:
        logger.warning("Could not verify auto-committed diff on %s: %s", branch, exc)
    return BranchOutcome(
        BranchDisposition.AUTO_COMMITTED,
        branch_name=branch,
        branch_url=provider.branch_url(branch),
        pr_url=pr_url,
        reason_code="auto_committed",
    )


def _resolve_missing_signed_branch(provider: SCMProvider, plan: BranchPlan, exc: Exception) -> BranchOutcome:
    try:
        exists = provider.get_branch(plan.working_branch) is not None
    except SCMError as lookup_exc:
        return _keep_unverified(provider, plan.working_branch, lookup_exc)
    if exists:
        return _keep_unverified(provider, plan.working_branch, exc)
    logger.info("Branch %s was never created; nothing to clean up", plan.working_branch)
    return BranchOutcome(BranchDisposition.DELETED, reason_code="never_created")


def _delete_empty_branch(provider: SCMProvider, branch: str) -> BranchOutcome:
    try:
        provider.delete_branch(branch)
    except NotFoundError:
        logger.info("Branch %s already gone", branch)
    except SCMError as exc:
        logger.warning("Could not delete empty branch %s: %s", branch, exc)
        return BranchOutcome(
            BranchDisposition.KEPT,
            branch_name=branch,
            branch_url=provider.branch_url(branch),
            reason_code="delete_failed",
        )
    else:
        logger.info("Deleted branch %s with no changes", branch)
    return BranchOutcome(BranchDisposition.DELETED, reason_code="no_changes")


def _keep_unverified(provider: SCMProvider, branch: str, exc: Exception) -> BranchOutcome:
    logger.warning("Could not verify branch %s, keeping it: %s", branch, exc)
    return BranchOutcome(
        BranchDisposition.KEPT,
        branch_name=branch,
        branch_url=provider.branch_url(branch),
        reason_code="unverified",
    )


def _pr_url(provider: SCMProvider, plan: BranchPlan, context: EventContext, settings: RelaySettings) -> str:
    number = context.entity_number
    entity_word = ENTITY_WORDS.get(context.entity_kind, context.entity_kind)
    title = f"{context.entity_label} #{number}: Changes from {settings.bot_name}"
    body = f"This PR addresses {entity_word} #{number}\n\nGenerated by {settings.bot_name}"
    return provider.compare_url(plan.base_branch, plan.working_branch, title, body)
