"""Optional chat webhook summary of a finished run."""

from __future__ import annotations

import logging
from typing import Any

import requests

from relay_bot.orchestration.runner import RunReport

logger = logging.getLogger(__name__)

SUCCESS_COLOR = 0x2ECC71
FAILURE_COLOR = 0xE74C3C


class WebhookNotifier:
    """Posts a Discord-style embed; failures are logged and never raised."""

    def __init__(self, url: str, session: requests.Session | None = None, timeout_s: float = 10) -> None:
        self.url = url
        self.session = session or requests.Session()
        self.timeout_s = timeout_s

    def build_payload(self, report: RunReport) -> dict[str, Any]:
        status = "finished" if report.success else "failed"
        fields = [
            {"name": "Repository", "value": report.repository, "inline": True},
            {"name": report.entity_label, "value": f"#{report.entity_number}", "inline": True},
            {"name": "Actor", "value": report.actor or "unknown", "inline": True},
            {"name": "Branch", "value": report.working_branch or "n/a", "inline": True},
            {"name": "Disposition", "value": report.disposition, "inline": True},
        ]
        if report.pr_url:
            fields.append({"name": "Create PR", "value": report.pr_url, "inline": False})
        return {
            "embeds": [
                {
                    "title": f"{report.bot_name} run {status}",
                    "url": report.job_url,
                    "color": SUCCESS_COLOR if report.success else FAILURE_COLOR,
                    "fields": fields,
                }
            ]
        }

    def notify(self, report: RunReport) -> bool:
        try:
            response = self.session.post(self.url, json=self.build_payload(report), timeout=self.timeout_s)
        except requests.RequestException as exc:
            logger.warning("Webhook notification failed: %s", exc)
            return False
        if response.status_code >= 400:
            logger.warning("Webhook notification returned %d", response.status_code)
            return False
        logger.debug("Webhook notification sent")
        return True
