"""Resolve the base and working branch for a run."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone

from relay_bot.events.context import EventContext
from relay_bot.git.local_repo import GitCommandError, LocalRepo
from relay_bot.providers.base import PullRequestInfo, SCMError, SCMProvider
from relay_bot.shared.settings import RelaySettings

logger = logging.getLogger(__name__)

MAX_BRANCH_LENGTH = 50
MIN_PR_FETCH_DEPTH = 20
SALT_FORMAT = "%Y%m%d-%H%M%S"
VALID_BRANCH_NAME = re.compile(r"^[a-z0-9]+(?:[/-][a-z0-9]+)*$")


class BranchSetupError(RuntimeError):
    def __init__(self, message: str, reason_code: str = "branch_setup_failed") -> None:
        super().__init__(message)
        self.reason_code = reason_code


@dataclass(frozen=True)
class BranchPlan:
    base_branch: str
    working_branch: str
    working_branch_is_new: bool
    commit_signing: bool
    fetch_depth: int = 1


def is_valid_branch_name(name: str) -> bool:
    return len(name) <= MAX_BRANCH_LENGTH and VALID_BRANCH_NAME.match(name) is not None


def make_branch_name(prefix: str, entity_kind: str, entity_number: int, now: datetime) -> str:
    """Build ``<prefix><kind>-<number>-<timestamp>`` within the naming limits.

    The timestamp suffix is never shortened; an overlong prefix is cut back
    to fit, keeping its trailing separator.
    """

    suffix = f"{entity_kind}-{entity_number}-{now.strftime(SALT_FORMAT)}"
    head = _sanitize_prefix(prefix)
    budget = MAX_BRANCH_LENGTH - len(suffix)
    if len(head) > budget:
        separator = head[-1] if head.endswith(("/", "-")) else ""
        head = head[: max(0, budget - len(separator))].rstrip("/-")
        head = f"{head}{separator}" if head else ""
    return f"{head}{suffix}"


def _sanitize_prefix(prefix: str) -> str:
    value = re.sub(r"[^a-z0-9/-]+", "-", prefix.strip().lower())
    value = re.sub(r"[/-]*/[/-]*", "/", value)
    value = re.sub(r"-{2,}", "-", value)
    return value.lstrip("/-")


def setup_branch(
    provider: SCMProvider,
    local_repo: LocalRepo,
    context: EventContext,
    entity: PullRequestInfo | None,
    settings: RelaySettings,
    now: datetime | None = None,
) -> BranchPlan:
    if context.is_merge_request and entity is not None and entity.is_open:
        return _checkout_existing(local_repo, entity, settings)

    try:
        base_branch = settings.base_branch or provider.get_default_branch()
        base = provider.get_branch(base_branch) if base_branch else None
    except SCMError as exc:
        raise BranchSetupError(f"Could not resolve base branch: {exc}", reason_code="base_unresolved") from exc
    if base is None:
        raise BranchSetupError(
            f"Base branch {base_branch or '<default>'} does not exist", reason_code="base_unresolved"
        )

    working_branch = make_branch_name(
        settings.branch_prefix,
        context.entity_kind,
        context.entity_number,
        now or datetime.now(timezone.utc),
    )
    plan = BranchPlan(
        base_branch=base.name,
        working_branch=working_branch,
        working_branch_is_new=True,
        commit_signing=settings.use_commit_signing,
    )

    try:
        if settings.use_commit_signing:
            # The first API commit creates the ref
            local_repo.fetch(base.name, depth=plan.fetch_depth)
            local_repo.checkout(base.name)
            logger.info("Planned branch %s off %s; creation deferred to first commit", working_branch, base.name)
        else:
            provider.create_branch(working_branch, base.sha)
            local_repo.fetch(working_branch, depth=plan.fetch_depth)
            local_repo.checkout(working_branch)
            logger.info("Created branch %s off %s at %s", working_branch, base.name, base.sha)
    except (SCMError, GitCommandError) as exc:
        raise BranchSetupError(f"Could not set up branch {working_branch}: {exc}") from exc
    return plan


def _checkout_existing(local_repo: LocalRepo, entity: PullRequestInfo, settings: RelaySettings) -> BranchPlan:
    plan = BranchPlan(
        base_branch=entity.base_branch,
        working_branch=entity.head_branch,
        working_branch_is_new=False,
        commit_signing=settings.use_commit_signing,
        fetch_depth=max(entity.commit_count, MIN_PR_FETCH_DEPTH),
    )
    try:
        local_repo.fetch(plan.working_branch, depth=plan.fetch_depth)
        local_repo.checkout(plan.working_branch)
    except GitCommandError as exc:
        raise BranchSetupError(
            f"Could not check out {plan.working_branch}: {exc}", reason_code="fetch_failed"
        ) from exc
    logger.info(
        "Using existing branch %s (base %s, fetch depth %d)",
        plan.working_branch,
        plan.base_branch,
        plan.fetch_depth,
    )
    return plan
