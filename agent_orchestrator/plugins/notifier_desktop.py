"""Notifier plugin: desktop notifications (notify-send on Linux, osascript on macOS)."""

from __future__ import annotations

import platform
import shutil
import subprocess
from typing import Any, Optional

from agent_orchestrator.errors import ConfigurationError, PermanentExternalError
from agent_orchestrator.plugins.base import PluginManifest, PluginSlot

MANIFEST = PluginManifest(
    slot=PluginSlot.NOTIFIER,
    name="desktop",
    description="Notifier plugin: desktop notifications",
)

_URGENCY = {"urgent": "critical", "action": "normal", "warning": "normal", "info": "low"}


class DesktopNotifier:
    name = "desktop"

    def __init__(self, command: list[str], title: str = "Agent Orchestrator") -> None:
        self._command = command
        self.title = title

    def _build(self, message: str, priority: str) -> list[str]:
        if self._command[0] == "osascript":
            script = f"display notification {_quote(message)} with title {_quote(self.title)}"
            return ["osascript", "-e", script]
        return [
            self._command[0],
            "--urgency", _URGENCY.get(priority, "normal"),
            self.title,
            message,
        ]

    def notify(self, message: str, session_id: Optional[str] = None, priority: str = "info") -> None:
        if session_id:
            message = f"[{session_id}] {message}"
        result = subprocess.run(
            self._build(message, priority),
            capture_output=True,
            text=True,
            timeout=10,
        )
        if result.returncode != 0:
            raise PermanentExternalError(f"Desktop notification failed: {result.stderr[:200]}")


def _quote(text: str) -> str:
    return '"' + text.replace("\\", "\\\\").replace('"', '\\"') + '"'


def create(config: dict[str, Any]) -> DesktopNotifier:
    if platform.system() == "Darwin":
        command = ["osascript"]
    elif shutil.which("notify-send"):
        command = ["notify-send"]
    else:
        raise ConfigurationError("No desktop notification command (notify-send or osascript)")
    return DesktopNotifier(command, title=config.get("title", "Agent Orchestrator"))
