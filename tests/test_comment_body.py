from __future__ import annotations

import pytest

from relay_bot.orchestration.comment_body import (
    CommentState,
    FinalizeInput,
    detect_state,
    format_duration,
    render_final_body,
    render_working_body,
)

JOB_URL = "https://github.com/acme/widgets/actions/runs/99"
BRANCH_URL = "https://github.com/acme/widgets/tree/claude/issue-42-20260314-150926"


@pytest.mark.parametrize(
    ("duration_ms", "expected"),
    [(None, None), (0, "0s"), (45_000, "45s"), (65_000, "1m 5s"), (74_400, "1m 14s"), (59_600, "1m 0s")],
)
def test_format_duration(duration_ms: int | None, expected: str | None) -> None:
    assert format_duration(duration_ms) == expected


def test_working_body_has_spinner_and_links() -> None:
    body = render_working_body(JOB_URL, branch_url=BRANCH_URL)
    assert body.startswith("Claude is working… <img")
    assert "I'll analyze this and get back to you." in body
    assert body.endswith(f"[View job run]({JOB_URL})\n[View branch]({BRANCH_URL})")
    assert detect_state(body) is CommentState.WORKING


def test_success_body_replaces_working_sentence_and_stale_links() -> None:
    working = render_working_body(JOB_URL, branch_url=BRANCH_URL)
    final = render_final_body(
        working,
        FinalizeInput(
            success=True,
            job_url=JOB_URL,
            duration_ms=65_000,
            branch_name="claude/issue-42-20260314-150926",
            branch_url=BRANCH_URL,
            trigger_username="alice",
        ),
    )
    assert final == (
        f"**Claude finished @alice's task in 1m 5s** —— [View job]({JOB_URL})"
        f" • [`claude/issue-42-20260314-150926`]({BRANCH_URL})"
        "\n\n---\nI'll analyze this and get back to you."
    )
    assert detect_state(final) is CommentState.DONE


def test_failure_body_fences_error() -> None:
    final = render_final_body(
        render_working_body(JOB_URL),
        FinalizeInput(success=False, job_url=JOB_URL, duration_ms=45_000, error="Boom\n```nested```"),
    )
    assert final.startswith(f"**Claude encountered an error after 45s** —— [View job]({JOB_URL})")
    assert "\n\n```\nBoom\n'''nested'''\n```\n\n---\n" in final
    assert detect_state(final) is CommentState.FAILED


def test_username_falls_back_to_body_mention_then_user() -> None:
    body = "Claude is working…\n\nAsked by @carol-x"
    final = render_final_body(body, FinalizeInput(success=True, job_url=JOB_URL))
    assert final.startswith("**Claude finished @carol-x's task**")

    final = render_final_body("Claude is working…", FinalizeInput(success=True, job_url=JOB_URL))
    assert final.startswith("**Claude finished @user's task**")


def test_pr_link_from_agent_content_moves_to_links_row() -> None:
    body = "### Todo\n- [x] Fix bug\n[Create a PR](https://github.com/acme/widgets/compare/main...fix?quick_pull=1)"
    final = render_final_body(body, FinalizeInput(success=True, job_url=JOB_URL, trigger_username="alice"))
    assert " • [Create PR ➔](https://github.com/acme/widgets/compare/main...fix?quick_pull=1)" in final
    assert "[Create a PR]" not in final
    assert final.endswith("### Todo\n- [x] Fix bug")


@pytest.mark.parametrize("success", [True, False])
def test_finalize_is_idempotent(success: bool) -> None:
    data = FinalizeInput(
        success=success,
        job_url=JOB_URL,
        duration_ms=74_400,
        branch_name="claude/issue-42-20260314-150926",
        branch_url=BRANCH_URL,
        pr_url="https://github.com/acme/widgets/compare/main...claude%2Fissue-42?quick_pull=1",
        trigger_username="alice",
        error=None if success else "agent crashed\n---\nsee logs",
    )
    working = render_working_body(JOB_URL, branch_url=BRANCH_URL) + "\n\n### Todo\n- [x] step one"

    once = render_final_body(working, data)
    twice = render_final_body(once, data)
    thrice = render_final_body(twice, data)

    assert once == twice == thrice
    assert once.count("[View job]") == 1
    assert once.count("---\n") == (1 if success else 2)


def test_finalize_keeps_pr_link_recovered_from_content_on_rerun() -> None:
    body = "Working notes\n[Create a PR](https://example.test/compare/a...b)"
    data = FinalizeInput(success=True, job_url=JOB_URL, trigger_username="alice")
    once = render_final_body(body, data)
    assert render_final_body(once, data) == once


def test_custom_bot_name_is_used_in_header() -> None:
    body = render_working_body(JOB_URL, bot_name="Helper")
    final = render_final_body(body, FinalizeInput(success=True, job_url=JOB_URL, trigger_username="a"), "Helper")
    assert final.startswith("**Helper finished @a's task**")
    assert "Helper is working" not in final
    rerun = render_final_body(final, FinalizeInput(success=True, job_url=JOB_URL, trigger_username="a"), "Helper")
    assert rerun == final
