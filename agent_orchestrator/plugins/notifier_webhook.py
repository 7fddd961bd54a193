"""Notifier plugin: JSON POST to a webhook URL (Slack-compatible "text" field)."""

from __future__ import annotations

from typing import Any, Optional

import requests

from agent_orchestrator.errors import ConfigurationError
from agent_orchestrator.models import now_iso
from agent_orchestrator.plugins.base import PluginManifest, PluginSlot

MANIFEST = PluginManifest(
    slot=PluginSlot.NOTIFIER,
    name="webhook",
    description="Notifier plugin: HTTP webhook",
)


class WebhookNotifier:
    name = "webhook"

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        headers: Optional[dict[str, str]] = None,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self.headers = dict(headers or {})

    def notify(self, message: str, session_id: Optional[str] = None, priority: str = "info") -> None:
        payload = {
            "text": message,
            "session_id": session_id,
            "priority": priority,
            "timestamp": now_iso(),
        }
        response = requests.post(
            self.url,
            json=payload,
            headers=self.headers,
            timeout=self.timeout,
        )
        response.raise_for_status()


def create(config: dict[str, Any]) -> WebhookNotifier:
    url = config.get("url")
    if not url:
        raise ConfigurationError("notifier:webhook requires a url")
    return WebhookNotifier(
        url=url,
        timeout=float(config.get("timeout", 10.0)),
        headers=config.get("headers"),
    )
