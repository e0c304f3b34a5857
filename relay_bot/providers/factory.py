"""Pick and build the provider for the current CI host."""

from __future__ import annotations

import logging
import os
from typing import Mapping

import requests

from relay_bot.events.context import GITHUB, GITLAB, EventContext, UnsupportedEventError
from relay_bot.providers.auth import ProviderAuth
from relay_bot.providers.base import SCMProvider
from relay_bot.providers.github_api import GitHubProvider
from relay_bot.providers.gitlab_api import GitLabProvider

logger = logging.getLogger(__name__)


def detect_platform(env: Mapping[str, str] | None = None) -> str:
    env_map = os.environ if env is None else env
    explicit = (env_map.get("RELAY_PLATFORM") or "").strip().lower()
    if explicit:
        if explicit not in {GITHUB, GITLAB}:
            raise UnsupportedEventError(f"RELAY_PLATFORM must be github or gitlab, got {explicit!r}")
        return explicit
    if env_map.get("GITLAB_CI") or env_map.get("CI_PROJECT_ID"):
        return GITLAB
    return GITHUB


def build_provider(
    context: EventContext,
    auth: ProviderAuth,
    env: Mapping[str, str] | None = None,
    session: requests.Session | None = None,
) -> SCMProvider:
    env_map = os.environ if env is None else env
    token = auth.require_token()
    logger.info("Using %s provider with credentials %s", context.platform, auth.redacted())
    if context.platform == GITHUB:
        return GitHubProvider(
            context,
            token,
            api_url=env_map.get("GITHUB_API_URL") or "https://api.github.com",
            server_url=env_map.get("GITHUB_SERVER_URL") or "https://github.com",
            session=session,
        )
    if context.platform == GITLAB:
        return GitLabProvider(
            context,
            token,
            host=env_map.get("CI_SERVER_URL") or "https://gitlab.com",
            pipeline_url=env_map.get("CI_PIPELINE_URL") or None,
            session=session,
        )
    raise UnsupportedEventError(f"Unsupported platform: {context.platform}")
