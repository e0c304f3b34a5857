"""Decide whether an inbound event should start a run."""

from __future__ import annotations

import logging
import re
from typing import Any, Iterable, Mapping

from relay_bot.events.context import GITHUB, GITLAB, EventContext
from relay_bot.shared.settings import TriggerConfig

logger = logging.getLogger(__name__)

BOUNDARY = r"[\s.,!?;:]"


def trigger_pattern(phrase: str) -> re.Pattern[str]:
    """Compile the token-boundary matcher for ``phrase``."""

    return re.compile(
        rf"(?:^|{BOUNDARY}){re.escape(phrase)}(?:{BOUNDARY}|$)",
        re.IGNORECASE,
    )


def contains_trigger_phrase(text: str | None, phrase: str) -> bool:
    if not text or not phrase:
        return False
    return trigger_pattern(phrase).search(text) is not None


def should_trigger(context: EventContext, config: TriggerConfig) -> bool:
    if config.direct_prompt.strip():
        logger.info("Direct prompt provided, triggering run")
        return True

    if context.platform == GITHUB:
        matched = _github_trigger(context, config)
    elif context.platform == GITLAB:
        matched = _gitlab_trigger(context, config)
    else:
        matched = None

    if matched:
        logger.info("Triggered by %s", matched)
        return True
    logger.info(
        "No trigger matched for %s event on %s #%d",
        context.trigger_event,
        context.entity_kind,
        context.entity_number,
    )
    return False


def _github_trigger(context: EventContext, config: TriggerConfig) -> str | None:
    payload = context.payload
    event = context.trigger_event
    action = context.event_action

    if event == "issues" and action == "assigned":
        assignee = str((payload.get("assignee") or {}).get("login") or "")
        if _assignee_matches([assignee], config.assignee_trigger):
            return f"assignment to '{assignee}'"

    if event in {"issues", "pull_request"} and action == "labeled":
        label = str((payload.get("label") or {}).get("name") or "")
        if config.label_trigger and label == config.label_trigger:
            return f"label '{label}'"

    if event in {"issues", "pull_request"} and action == "opened":
        entity = payload.get("issue" if event == "issues" else "pull_request") or {}
        return _scan_title_and_body(entity, "body", config.trigger_phrase)

    if event == "pull_request_review" and action in {"submitted", "edited"}:
        review_body = (payload.get("review") or {}).get("body")
        if contains_trigger_phrase(review_body, config.trigger_phrase):
            return "review body"

    if event in {"issue_comment", "pull_request_review_comment"}:
        comment_body = (payload.get("comment") or {}).get("body")
        if contains_trigger_phrase(comment_body, config.trigger_phrase):
            return "comment body"

    return None


def _gitlab_trigger(context: EventContext, config: TriggerConfig) -> str | None:
    payload = context.payload
    if not payload:
        return None

    kind = context.trigger_event
    attributes = payload.get("object_attributes") or {}
    changes = payload.get("changes") or {}

    if kind in {"issue", "merge_request"}:
        assignees = [
            str(user.get("username") or "")
            for user in (changes.get("assignees") or {}).get("current") or []
            if isinstance(user, dict)
        ]
        if assignees and _assignee_matches(assignees, config.assignee_trigger):
            return "assignment"

        if config.label_trigger and _label_added(changes, config.label_trigger):
            return f"label '{config.label_trigger}'"

        if context.event_action in {"", "open"}:
            entity = attributes or payload.get("merge_request") or {}
            return _scan_title_and_body(entity, "description", config.trigger_phrase)
        return None

    if kind == "note":
        if attributes.get("noteable_type") != "MergeRequest":
            return None
        if contains_trigger_phrase(attributes.get("note"), config.trigger_phrase):
            return "merge request note"
    return None


def _scan_title_and_body(entity: Mapping[str, Any], body_key: str, phrase: str) -> str | None:
    if contains_trigger_phrase(entity.get(body_key), phrase):
        return body_key
    if contains_trigger_phrase(entity.get("title"), phrase):
        return "title"
    return None


def _assignee_matches(assignees: Iterable[str], assignee_trigger: str) -> bool:
    wanted = assignee_trigger.strip().removeprefix("@")
    if not wanted:
        return False
    return wanted in assignees


def _label_added(changes: Mapping[str, Any], label: str) -> bool:
    label_changes = changes.get("labels") or {}
    previous = {
        str(item.get("title") or "") for item in label_changes.get("previous") or [] if isinstance(item, dict)
    }
    current = {
        str(item.get("title") or "") for item in label_changes.get("current") or [] if isinstance(item, dict)
    }
    return label in current and label not in previous
