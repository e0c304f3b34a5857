"""Render and strip tracking comment bodies.

The comment body is the only record of a run's state. A working body carries
a spinner sentence and stale-able link lines; a final body starts with a
one-line header plus links row, an optional fenced error, a ``---`` rule and
whatever narrative the body held before. Rendering a final body always
rebuilds the header from scratch, so finalizing twice gives the same text.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

SPINNER_HTML = (
    '<img src="https://github.com/user-attachments/assets/5ac382c7-e004-429b-8e35-7feb3e8f9c6f" '
    'width="14px" height="14px" style="vertical-align: middle; margin-left: 4px;" />'
)
WORKING_NOTE = "I'll analyze this and get back to you."

JOB_LINK_LINE = re.compile(r"\n?\[View job run\]\([^)]+\)")
BRANCH_LINK_LINE = re.compile(r"\n?\[View branch\]\([^)]+\)")
DURATION_LINE = re.compile(r"\n*---\n*Duration: [0-9]+m? [0-9]+s")
CONTENT_PR_LINK = re.compile(r"^\[Create .* PR\]\((.*)\)$", re.MULTILINE)
HEADER_PR_LINK = re.compile(r"\[Create PR ➔\]\(([^)]+)\)")
USERNAME = re.compile(r"@([a-zA-Z0-9-]+)")


class CommentState(str, Enum):
    WORKING = "working"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class FinalizeInput:
    success: bool
    job_url: str
    duration_ms: int | None = None
    branch_name: str | None = None
    branch_url: str | None = None
    pr_url: str | None = None
    trigger_username: str | None = None
    error: str | None = None


def _working_sentence(bot_name: str) -> re.Pattern[str]:
    return re.compile(
        rf"{re.escape(bot_name)}(?: Code)? is working[….]{{1,3}}(?:\s*<img[^>]*>)?",
        re.IGNORECASE,
    )


def _final_header(bot_name: str) -> re.Pattern[str]:
    return re.compile(
        rf"\A\*\*{re.escape(bot_name)} (?:finished|encountered)[^\n]*"
        r"(?:\n\n```\n[\s\S]*?\n```)?\n\n---\n?"
    )


def format_duration(duration_ms: int | None) -> str | None:
    if duration_ms is None or duration_ms < 0:
        return None
    total_seconds = round(duration_ms / 1000)
    minutes, seconds = divmod(total_seconds, 60)
    return f"{minutes}m {seconds}s" if minutes > 0 else f"{seconds}s"


def render_working_body(job_url: str, bot_name: str = "Claude", branch_url: str | None = None) -> str:
    body = f"{bot_name} is working… {SPINNER_HTML}\n\n{WORKING_NOTE}\n\n[View job run]({job_url})"
    if branch_url:
        body += f"\n[View branch]({branch_url})"
    return body


def detect_state(body: str, bot_name: str = "Claude") -> CommentState:
    stripped = body.lstrip()
    if stripped.startswith(f"**{bot_name} encountered"):
        return CommentState.FAILED
    if stripped.startswith(f"**{bot_name} finished"):
        return CommentState.DONE
    return CommentState.WORKING


def render_final_body(current_body: str, data: FinalizeInput, bot_name: str = "Claude") -> str:
    content = current_body.strip()
    header_pr_url = None
    header_match = _final_header(bot_name).match(content)
    if header_match:
        found = HEADER_PR_LINK.search(header_match.group(0).split("\n", 1)[0])
        header_pr_url = found.group(1) if found else None
        content = content[header_match.end():]

    content = _working_sentence(bot_name).sub("", content).strip()

    content_pr_url = None
    pr_match = CONTENT_PR_LINK.search(content)
    if pr_match:
        content_pr_url = pr_match.group(1).replace(" ", "%20")
        content = CONTENT_PR_LINK.sub("", content)

    content = JOB_LINK_LINE.sub("", content)
    content = BRANCH_LINK_LINE.sub("", content)
    content = DURATION_LINE.sub("", content)
    content = content.strip()

    duration = format_duration(data.duration_ms)
    if data.success:
        username = data.trigger_username
        if not username:
            found_user = USERNAME.search(content)
            username = found_user.group(1) if found_user else "user"
        header = f"**{bot_name} finished @{username}'s task"
        if duration:
            header += f" in {duration}"
    else:
        header = f"**{bot_name} encountered an error"
        if duration:
            header += f" after {duration}"
    header += "**"

    links = f" —— [View job]({data.job_url})"
    if data.branch_name and data.branch_url:
        links += f" • [`{data.branch_name}`]({data.branch_url})"
    elif data.branch_name:
        links += f" • `{data.branch_name}`"

    pr_url = data.pr_url or content_pr_url or header_pr_url
    if pr_url:
        links += f" • [Create PR ➔]({pr_url})"

    body = f"{header}{links}"
    if not data.success and data.error:
        body += f"\n\n```\n{escape_fence(data.error.strip())}\n```"
    return f"{body}\n\n---\n{content}"


def escape_fence(text: str) -> str:
    return text.replace("```", "'''")
