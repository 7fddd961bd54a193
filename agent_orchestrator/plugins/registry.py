"""
Plugin Registry for the Agent Orchestrator.

Resolves plugin instances by (slot, name). Built-in plugins are listed in
BUILTIN_PLUGINS and imported at startup; a built-in that cannot be imported
or constructed in this environment is skipped. It only becomes an error
when a project's configuration requires it, which validate_project()
reports as a ConfigurationError before any session is spawned.
"""

from __future__ import annotations

import importlib
import logging
from dataclasses import dataclass
from types import ModuleType
from typing import TYPE_CHECKING, Any, Optional, Union

from agent_orchestrator.errors import ConfigurationError
from agent_orchestrator.plugins.base import PluginManifest, PluginSlot

if TYPE_CHECKING:
    from agent_orchestrator.config import OrchestratorConfig, ProjectConfig, ReactionConfig

logger = logging.getLogger(__name__)

SlotLike = Union[PluginSlot, str]


@dataclass(frozen=True)
class BuiltinPlugin:
    slot: PluginSlot
    name: str
    module: str


BUILTIN_PLUGINS: list[BuiltinPlugin] = [
    # Runtimes
    BuiltinPlugin(PluginSlot.RUNTIME, "tmux", "agent_orchestrator.plugins.runtime_tmux"),
    BuiltinPlugin(PluginSlot.RUNTIME, "process", "agent_orchestrator.plugins.runtime_process"),
    # Agents
    BuiltinPlugin(PluginSlot.AGENT, "claude-code", "agent_orchestrator.plugins.agent_claude_code"),
    BuiltinPlugin(PluginSlot.AGENT, "codex", "agent_orchestrator.plugins.agent_codex"),
    # Workspaces
    BuiltinPlugin(PluginSlot.WORKSPACE, "worktree", "agent_orchestrator.plugins.workspace_worktree"),
    # Trackers
    BuiltinPlugin(PluginSlot.TRACKER, "github", "agent_orchestrator.plugins.tracker_github"),
    BuiltinPlugin(PluginSlot.TRACKER, "gitlab", "agent_orchestrator.plugins.tracker_gitlab"),
    # SCM
    BuiltinPlugin(PluginSlot.SCM, "github", "agent_orchestrator.plugins.scm_github"),
    # Notifiers
    BuiltinPlugin(PluginSlot.NOTIFIER, "desktop", "agent_orchestrator.plugins.notifier_desktop"),
    BuiltinPlugin(PluginSlot.NOTIFIER, "webhook", "agent_orchestrator.plugins.notifier_webhook"),
]


def _slot(slot: SlotLike) -> PluginSlot:
    return slot if isinstance(slot, PluginSlot) else PluginSlot(slot)


def _make_key(slot: SlotLike, name: str) -> str:
    return f"{_slot(slot).value}:{name}"


def _extract_plugin_config(
    manifest: PluginManifest,
    config: Optional[OrchestratorConfig],
) -> dict[str, Any]:
    """Plugin config from the orchestrator config, plus well-known fields."""
    if config is None:
        return {}
    plugin_config = config.plugin_config(manifest.slot.value, manifest.name)
    if manifest.slot == PluginSlot.WORKSPACE and manifest.name == "worktree":
        plugin_config.setdefault("worktree_dir", str(config.data_path / "worktrees"))
    if manifest.slot == PluginSlot.RUNTIME and manifest.name == "process":
        plugin_config.setdefault("log_dir", str(config.data_path / "runtime-logs"))
    return plugin_config


class PluginRegistry:
    """Map from "slot:name" to a constructed plugin instance."""

    def __init__(self) -> None:
        self._plugins: dict[str, tuple[PluginManifest, Any]] = {}
        self._unavailable: dict[str, str] = {}

    def register(self, module: ModuleType | Any, config: Optional[dict[str, Any]] = None) -> Any:
        """
        Construct a plugin and bind it to its (slot, name).

        Args:
            module: Object exposing MANIFEST and create(config).
            config: Plugin-specific configuration.

        Returns:
            The constructed instance.
        """
        manifest: PluginManifest = module.MANIFEST
        instance = module.create(config or {})
        self._plugins[manifest.key] = (manifest, instance)
        self._unavailable.pop(manifest.key, None)
        logger.debug("Registered plugin %s", manifest.key)
        return instance

    def get(self, slot: SlotLike, name: str) -> Optional[Any]:
        """Return the instance for (slot, name), or None."""
        entry = self._plugins.get(_make_key(slot, name))
        return entry[1] if entry else None

    def list(self, slot: SlotLike) -> list[PluginManifest]:
        """Return the manifests registered for a slot."""
        prefix = f"{_slot(slot).value}:"
        return [m for key, (m, _) in self._plugins.items() if key.startswith(prefix)]

    def require(self, slot: SlotLike, name: str) -> Any:
        """
        Return the instance for (slot, name).

        Raises:
            ConfigurationError: If nothing is registered under that key.
        """
        instance = self.get(slot, name)
        if instance is None:
            key = _make_key(slot, name)
            reason = self._unavailable.get(key, "not registered")
            raise ConfigurationError(f"Plugin {key} is unavailable: {reason}")
        return instance

    def load_builtins(self, config: Optional[OrchestratorConfig] = None) -> None:
        """
        Import and construct every built-in plugin available here.

        Import failures (missing optional dependencies) and construction
        failures (missing credentials) are recorded, not raised.
        """
        for builtin in BUILTIN_PLUGINS:
            key = _make_key(builtin.slot, builtin.name)
            if key in self._plugins:
                continue
            try:
                module = importlib.import_module(builtin.module)
            except ImportError as e:
                self._unavailable[key] = f"not installed ({e})"
                logger.debug("Skipping built-in plugin %s: %s", key, e)
                continue
            try:
                self.register(module, _extract_plugin_config(module.MANIFEST, config))
            except ConfigurationError as e:
                self._unavailable[key] = str(e)
                logger.debug("Built-in plugin %s not configured: %s", key, e)

    def validate_project(
        self,
        project: ProjectConfig,
        reactions: Optional[list[ReactionConfig]] = None,
    ) -> None:
        """
        Check that every slot a project requires resolves to a plugin.

        Args:
            project: The project to check.
            reactions: Effective reactions; custom actions need a reaction plugin.

        Raises:
            ConfigurationError: Naming the first unresolved slot.
        """
        required = list(project.required_slots().items())
        required += [
            (PluginSlot.REACTION.value, r.plugin)
            for r in reactions or []
            if r.action == "custom"
        ]
        for slot, name in required:
            key = _make_key(slot, name)
            if key not in self._plugins:
                reason = self._unavailable.get(key, "not registered")
                raise ConfigurationError(
                    f"Project '{project.name}' requires {slot} plugin '{name}': {reason}"
                )

    def validate(self, config: OrchestratorConfig) -> None:
        """Startup validation pass over every configured project."""
        for project in config.projects.values():
            self.validate_project(project, config.reactions_for(project.name))
