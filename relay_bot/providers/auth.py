"""Platform token loading with safe handling."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping

from relay_bot.events.context import GITHUB, GITLAB

TOKEN_VARIABLES = {
    GITHUB: ("RELAY_GITHUB_TOKEN", "GITHUB_TOKEN"),
    GITLAB: ("RELAY_GITLAB_TOKEN", "GITLAB_TOKEN"),
}


class MissingTokenError(RuntimeError):
    def __init__(self, platform: str) -> None:
        names = " or ".join(TOKEN_VARIABLES.get(platform, ()))
        super().__init__(f"No {platform} token configured; set {names}")
        self.platform = platform
        self.reason_code = "missing_token"


@dataclass(frozen=True)
class ProviderAuth:
    platform: str
    token: str | None

    def redacted(self) -> dict[str, str]:
        return {"platform": self.platform, "token": _redact_token(self.token)}

    def require_token(self) -> str:
        if not self.token:
            raise MissingTokenError(self.platform)
        return self.token


def load_auth_from_env(platform: str, env: Mapping[str, str] | None = None) -> ProviderAuth:
    env_map = os.environ if env is None else env
    token = None
    for name in TOKEN_VARIABLES.get(platform, ()):
        token = _clean(env_map.get(name))
        if token:
            break
    return ProviderAuth(platform=platform, token=token)


def _clean(token: str | None) -> str | None:
    if token is None:
        return None
    value = token.strip()
    return value or None


def _redact_token(token: str | None) -> str:
    if token is None:
        return "unset"
    if len(token) <= 8:
        return "***"
    return f"{token[:4]}...{token[-4:]}"
