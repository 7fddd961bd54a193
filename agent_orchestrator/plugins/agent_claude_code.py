"""Agent plugin: Claude Code CLI in interactive mode."""

from __future__ import annotations

from typing import Any

from agent_orchestrator.plugins.base import LaunchSpec, PluginManifest, PluginSlot

MANIFEST = PluginManifest(
    slot=PluginSlot.AGENT,
    name="claude-code",
    description="Agent plugin: claude CLI",
)


class ClaudeCodeAgent:
    name = "claude-code"

    def __init__(
        self,
        binary: str = "claude",
        model: str = "",
        skip_permissions: bool = False,
        extra_args: list[str] | None = None,
    ) -> None:
        self.binary = binary
        self.model = model
        self.skip_permissions = skip_permissions
        self.extra_args = list(extra_args or [])

    def get_launch(self, prompt: str, workspace_path: str, session_id: str) -> LaunchSpec:
        command = [self.binary]
        if self.model:
            command += ["--model", self.model]
        if self.skip_permissions:
            command.append("--dangerously-skip-permissions")
        command += self.extra_args
        command += ["--", prompt]
        return LaunchSpec(
            command=command,
            env={
                "AO_SESSION_ID": session_id,
                "AO_WORKSPACE": workspace_path,
            },
        )


def create(config: dict[str, Any]) -> ClaudeCodeAgent:
    return ClaudeCodeAgent(
        binary=config.get("binary", "claude"),
        model=config.get("model", ""),
        skip_permissions=bool(config.get("skip_permissions", False)),
        extra_args=config.get("extra_args"),
    )
