"""Runtime settings for one orchestration run, loaded from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass

TRUTHY_VALUES = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class TriggerConfig:
    trigger_phrase: str = "@claude"
    assignee_trigger: str = ""
    label_trigger: str = ""
    direct_prompt: str = ""


@dataclass(frozen=True)
class RelaySettings:
    """Flat configuration record consumed by the orchestrator."""

    trigger_phrase: str = "@claude"
    assignee_trigger: str = ""
    label_trigger: str = ""
    direct_prompt: str = ""
    base_branch: str | None = None
    branch_prefix: str = "claude/"
    use_commit_signing: bool = False
    use_sticky_comment: bool = False
    bot_name: str = "Claude"
    bot_user_id: int | None = None
    notify_webhook_url: str | None = None

    @property
    def trigger(self) -> TriggerConfig:
        return TriggerConfig(
            trigger_phrase=self.trigger_phrase,
            assignee_trigger=self.assignee_trigger,
            label_trigger=self.label_trigger,
            direct_prompt=self.direct_prompt,
        )

    @classmethod
    def from_env(cls, env: dict[str, str] | None = None) -> "RelaySettings":
        source = os.environ if env is None else env
        return cls(
            trigger_phrase=_clean(source.get("RELAY_TRIGGER_PHRASE")) or "@claude",
            assignee_trigger=_clean(source.get("RELAY_ASSIGNEE_TRIGGER")) or "",
            label_trigger=_clean(source.get("RELAY_LABEL_TRIGGER")) or "",
            direct_prompt=(source.get("RELAY_DIRECT_PROMPT") or "").strip(),
            base_branch=_clean(source.get("RELAY_BASE_BRANCH")),
            branch_prefix=source.get("RELAY_BRANCH_PREFIX", "claude/"),
            use_commit_signing=_flag(source.get("RELAY_USE_COMMIT_SIGNING")),
            use_sticky_comment=_flag(source.get("RELAY_USE_STICKY_COMMENT")),
            bot_name=_clean(source.get("RELAY_BOT_NAME")) or "Claude",
            bot_user_id=_int_or_none(source.get("RELAY_BOT_USER_ID")),
            notify_webhook_url=_clean(source.get("RELAY_NOTIFY_WEBHOOK_URL")),
        )


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


def _flag(value: str | None) -> bool:
    return str(value or "").strip().lower() in TRUTHY_VALUES


def _int_or_none(value: str | None) -> int | None:
    cleaned = _clean(value)
    if cleaned is None:
        return None
    try:
        return int(cleaned)
    except ValueError as exc:
        raise ValueError(f"RELAY_BOT_USER_ID must be an integer, got {value!r}") from exc
