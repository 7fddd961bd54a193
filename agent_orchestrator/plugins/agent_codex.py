"""Agent plugin: OpenAI Codex CLI."""

from __future__ import annotations

from typing import Any

from agent_orchestrator.errors import ConfigurationError
from agent_orchestrator.plugins.base import LaunchSpec, PluginManifest, PluginSlot

MANIFEST = PluginManifest(
    slot=PluginSlot.AGENT,
    name="codex",
    description="Agent plugin: codex CLI",
)

SANDBOX_MODES = ("read-only", "workspace-write", "danger-full-access")


class CodexAgent:
    name = "codex"

    def __init__(self, binary: str = "codex", model: str = "", sandbox: str = "workspace-write") -> None:
        if sandbox not in SANDBOX_MODES:
            raise ConfigurationError(f"Unknown codex sandbox mode: {sandbox}")
        self.binary = binary
        self.model = model
        self.sandbox = sandbox

    def get_launch(self, prompt: str, workspace_path: str, session_id: str) -> LaunchSpec:
        command = [self.binary, "--sandbox", self.sandbox, "--cd", workspace_path]
        if self.model:
            command += ["--model", self.model]
        command.append(prompt)
        return LaunchSpec(command=command, env={"AO_SESSION_ID": session_id})


def create(config: dict[str, Any]) -> CodexAgent:
    return CodexAgent(
        binary=config.get("binary", "codex"),
        model=config.get("model", ""),
        sandbox=config.get("sandbox", "workspace-write"),
    )
