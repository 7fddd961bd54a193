"""Tracker plugin: GitLab Issues."""

from typing import Any

from agent_orchestrator.plugins.base import PluginManifest, PluginSlot
from agent_orchestrator.plugins.tracker_gitlab.adapter import GitLabTracker, create_gitlab_tracker
from agent_orchestrator.plugins.tracker_gitlab.client import GitLabClient
from agent_orchestrator.plugins.tracker_gitlab.webhook import handle_webhook

MANIFEST = PluginManifest(
    slot=PluginSlot.TRACKER,
    name="gitlab",
    description="Tracker plugin: GitLab Issues",
)


def create(config: dict[str, Any]) -> GitLabTracker:
    return create_gitlab_tracker(config)


__all__ = [
    "MANIFEST",
    "create",
    "handle_webhook",
    "GitLabClient",
    "GitLabTracker",
]
