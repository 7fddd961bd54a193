"""
Configuration loading and validation for the Agent Orchestrator.

This module handles:
- Loading agent-orchestrator.yaml
- Environment variable resolution (${VAR} syntax)
- Validation of required fields
- Default values for optional fields
- Caching of the loaded configuration
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from agent_orchestrator.errors import ConfigError

DEFAULT_CONFIG_FILE = "agent-orchestrator.yaml"

PLUGIN_SLOTS = ("runtime", "agent", "workspace", "tracker", "scm", "notifier")

REACTION_ACTIONS = ("notify", "send-to-agent", "auto-merge", "custom")


@dataclass
class ExternalCallConfig:
    """Timeout and retry policy applied to every plugin call."""
    timeout_seconds: float = 30.0              # Per-call timeout
    max_retries: int = 3                       # Total attempts for transient failures
    base_delay_seconds: float = 0.5            # First backoff delay
    backoff_multiplier: float = 2.0            # Exponential growth factor
    max_delay_seconds: float = 30.0            # Backoff cap
    jitter_seconds: float = 0.25               # Random jitter added to each delay


@dataclass
class LifecycleConfig:
    """Polling and reaction engine configuration."""
    poll_interval_seconds: float = 30.0        # Per-session poll cadence
    tick_seconds: float = 1.0                  # Scheduler tick
    max_workers: int = 8                       # Concurrent poll workers
    halt_on_dead_letter: bool = False          # Stop advancing a session after a dead letter
    escalation_priority: str = "urgent"        # Priority of dead-letter notifications


@dataclass
class ReactionConfig:
    """
    A rule mapping a session event to an automated action.

    `event` is a full event type ("session.spawned") or the name of a state
    entered by a transition ("ci_failed").
    """
    event: str
    action: str
    name: str = ""                             # Idempotency kind, defaults to action
    message: str = ""                          # Template for notify/send-to-agent
    plugin: str = ""                           # Reaction plugin for custom actions
    labels: list[str] = field(default_factory=list)
    branch_pattern: str = ""                   # fnmatch pattern on the session branch
    merge_method: str = "squash"               # For auto-merge
    priority: str = "info"                     # For notify
    max_attempts: int = 3
    backoff_base_seconds: float = 5.0
    backoff_multiplier: float = 2.0
    max_backoff_seconds: float = 300.0

    def __post_init__(self) -> None:
        if self.action not in REACTION_ACTIONS:
            raise ConfigError(
                f"Unknown reaction action '{self.action}' "
                f"(expected one of {', '.join(REACTION_ACTIONS)})"
            )
        if self.action == "custom" and not self.plugin:
            raise ConfigError(f"Reaction on '{self.event}' uses action custom without a plugin")
        if self.max_attempts < 1:
            raise ConfigError(f"Reaction on '{self.event}' needs max_attempts >= 1")
        if not self.name:
            self.name = self.action if self.action != "custom" else f"custom-{self.plugin}"

    @property
    def kind(self) -> str:
        """Reaction kind used in idempotency keys."""
        return self.name


def _default_reactions() -> list[ReactionConfig]:
    return [
        ReactionConfig(event="ci_failed", action="send-to-agent", max_attempts=2),
        ReactionConfig(event="changes_requested", action="send-to-agent", max_attempts=2),
        ReactionConfig(event="mergeable", action="notify", priority="action"),
        ReactionConfig(event="failed", action="notify", priority="urgent"),
        ReactionConfig(event="session.state_conflict", action="notify", priority="warning"),
    ]


@dataclass
class ProjectConfig:
    """A repository the orchestrator spawns sessions for."""
    name: str
    repo: str                                  # "owner/repo" or "group/project"
    path: str = "."                            # Local checkout
    default_branch: str = "main"
    session_prefix: str = ""
    plugins: dict[str, str] = field(default_factory=dict)
    auto_merge: bool = False                   # Gate for auto-merge reactions
    reactions: list[ReactionConfig] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.session_prefix:
            self.session_prefix = re.sub(r"[^A-Za-z0-9]+", "-", self.name).strip("-").lower()

    def plugin_name(self, slot: str) -> str:
        """Return the plugin name configured for a slot."""
        if slot not in self.plugins:
            raise ConfigError(f"Project '{self.name}' has no plugin configured for slot '{slot}'")
        return self.plugins[slot]

    def required_slots(self) -> dict[str, str]:
        """Map of slot to plugin name this project needs."""
        return {slot: self.plugins[slot] for slot in PLUGIN_SLOTS if slot in self.plugins}


@dataclass
class OrchestratorConfig:
    """
    Main configuration for the Agent Orchestrator.

    This is the top-level config loaded from agent-orchestrator.yaml.
    """
    data_dir: str = "~/.agent-orchestrator"
    defaults: dict[str, str] = field(default_factory=lambda: {
        "runtime": "tmux",
        "agent": "claude-code",
        "workspace": "worktree",
        "tracker": "github",
        "scm": "github",
        "notifier": "desktop",
    })
    lifecycle: LifecycleConfig = field(default_factory=LifecycleConfig)
    external: ExternalCallConfig = field(default_factory=ExternalCallConfig)
    plugins: dict[str, dict[str, Any]] = field(default_factory=dict)
    projects: dict[str, ProjectConfig] = field(default_factory=dict)
    reactions: list[ReactionConfig] = field(default_factory=_default_reactions)

    def __post_init__(self) -> None:
        """Expand ~ and make the data directory absolute."""
        self.data_dir = str(Path(self.data_dir).expanduser().absolute())
        for project in self.projects.values():
            for slot, name in self.defaults.items():
                project.plugins.setdefault(slot, name)

    @property
    def data_path(self) -> Path:
        return Path(self.data_dir)

    @property
    def sessions_path(self) -> Path:
        return self.data_path / "sessions"

    @property
    def logs_path(self) -> Path:
        return self.data_path / "logs"

    def get_project(self, name: str) -> ProjectConfig:
        if name not in self.projects:
            raise ConfigError(f"Unknown project '{name}'")
        return self.projects[name]

    def plugin_config(self, slot: str, name: str) -> dict[str, Any]:
        """Return the config mapping for a plugin (keyed "slot:name")."""
        return dict(self.plugins.get(f"{slot}:{name}", {}))

    def reactions_for(self, project: str) -> list[ReactionConfig]:
        """
        Effective reactions of a project.

        Project reactions replace global ones with the same (event, name).
        """
        merged: dict[tuple[str, str], ReactionConfig] = {
            (r.event, r.name): r for r in self.reactions
        }
        for reaction in self.get_project(project).reactions:
            merged[(reaction.event, reaction.name)] = reaction
        return list(merged.values())


# Module-level cache for the loaded configuration
_config_cache: Optional[OrchestratorConfig] = None


def _resolve_env_vars(value: Any) -> Any:
    """
    Resolve environment variables in a value.

    Supports ${VAR} syntax for environment variable substitution.
    Returns the original value if it's not a string.
    """
    if isinstance(value, str):
        pattern = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_]*)\}')

        def replace(match: re.Match) -> str:
            var_name = match.group(1)
            env_value = os.environ.get(var_name)
            if env_value is None:
                raise ConfigError(f"Environment variable ${{{var_name}}} is not set")
            return env_value

        return pattern.sub(replace, value)

    if isinstance(value, dict):
        return {k: _resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [_resolve_env_vars(item) for item in value]

    return value


def _parse_external_config(data: dict[str, Any]) -> ExternalCallConfig:
    """Parse external call configuration from dict."""
    return ExternalCallConfig(
        timeout_seconds=float(data.get("timeout_seconds", 30.0)),
        max_retries=int(data.get("max_retries", 3)),
        base_delay_seconds=float(data.get("base_delay_seconds", 0.5)),
        backoff_multiplier=float(data.get("backoff_multiplier", 2.0)),
        max_delay_seconds=float(data.get("max_delay_seconds", 30.0)),
        jitter_seconds=float(data.get("jitter_seconds", 0.25)),
    )


def _parse_lifecycle_config(data: dict[str, Any]) -> LifecycleConfig:
    """Parse lifecycle configuration from dict."""
    return LifecycleConfig(
        poll_interval_seconds=float(data.get("poll_interval_seconds", 30.0)),
        tick_seconds=float(data.get("tick_seconds", 1.0)),
        max_workers=int(data.get("max_workers", 8)),
        halt_on_dead_letter=bool(data.get("halt_on_dead_letter", False)),
        escalation_priority=data.get("escalation_priority", "urgent"),
    )


def _parse_reaction(data: dict[str, Any]) -> ReactionConfig:
    """Parse one reaction rule from dict."""
    trigger = data.get("on") or data.get("event")
    if not trigger:
        raise ConfigError("reaction requires 'on' (event type or state)")
    if not data.get("action"):
        raise ConfigError(f"reaction on '{trigger}' requires 'action'")
    labels = data.get("labels", [])
    if isinstance(labels, str):
        labels = [l.strip() for l in labels.split(",") if l.strip()]
    return ReactionConfig(
        event=trigger,
        action=data["action"],
        name=data.get("name", ""),
        message=data.get("message", ""),
        plugin=data.get("plugin", ""),
        labels=list(labels),
        branch_pattern=data.get("branch_pattern", ""),
        merge_method=data.get("merge_method", "squash"),
        priority=data.get("priority", "info"),
        max_attempts=int(data.get("max_attempts", 3)),
        backoff_base_seconds=float(data.get("backoff_base_seconds", 5.0)),
        backoff_multiplier=float(data.get("backoff_multiplier", 2.0)),
        max_backoff_seconds=float(data.get("max_backoff_seconds", 300.0)),
    )


def _parse_project_config(name: str, data: dict[str, Any]) -> ProjectConfig:
    """Parse project configuration from dict."""
    if not data.get("repo"):
        raise ConfigError(f"projects.{name}.repo is required")
    plugins = {slot: data[slot] for slot in PLUGIN_SLOTS if data.get(slot)}
    plugins.update(data.get("plugins", {}))
    return ProjectConfig(
        name=name,
        repo=str(data["repo"]),
        path=data.get("path", "."),
        default_branch=data.get("default_branch", "main"),
        session_prefix=data.get("session_prefix", ""),
        plugins=plugins,
        auto_merge=bool(data.get("auto_merge", False)),
        reactions=[_parse_reaction(r) for r in data.get("reactions", [])],
    )


def parse_config(data: dict[str, Any]) -> OrchestratorConfig:
    """
    Build an OrchestratorConfig from an already-loaded mapping.

    Raises:
        ConfigError: If required sections are missing or invalid.
    """
    data = _resolve_env_vars(data)

    projects_data = data.get("projects")
    if not projects_data:
        raise ConfigError("Missing required section: projects")
    if not isinstance(projects_data, dict):
        raise ConfigError("projects must be a mapping of name to project settings")

    kwargs: dict[str, Any] = {
        "data_dir": data.get("data_dir", "~/.agent-orchestrator"),
        "lifecycle": _parse_lifecycle_config(data.get("lifecycle", {})),
        "external": _parse_external_config(data.get("external", {})),
        "plugins": dict(data.get("plugins", {})),
        "projects": {
            name: _parse_project_config(name, project or {})
            for name, project in projects_data.items()
        },
    }
    if data.get("defaults"):
        kwargs["defaults"] = {**OrchestratorConfig().defaults, **data["defaults"]}
    if "reactions" in data:
        kwargs["reactions"] = [_parse_reaction(r) for r in data["reactions"] or []]

    return OrchestratorConfig(**kwargs)


def load_config(config_path: Optional[str] = None) -> OrchestratorConfig:
    """
    Load configuration from agent-orchestrator.yaml.

    Args:
        config_path: Optional path to config file. If not provided,
                     looks for agent-orchestrator.yaml in current directory.

    Returns:
        OrchestratorConfig: Loaded and validated configuration.

    Raises:
        ConfigError: If config is invalid or cannot be loaded.
    """
    if config_path is None:
        config_path = os.environ.get("AO_CONFIG", DEFAULT_CONFIG_FILE)

    path = Path(config_path)
    if not path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        with open(path, "r") as f:
            raw_data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in config file: {e}")

    if not raw_data:
        raise ConfigError("Configuration file is empty")

    return parse_config(raw_data)


def get_config(config_path: Optional[str] = None, force_reload: bool = False) -> OrchestratorConfig:
    """
    Get the cached configuration, loading it if necessary.

    Raises:
        ConfigError: If config is invalid or cannot be loaded.
    """
    global _config_cache

    if _config_cache is None or force_reload:
        _config_cache = load_config(config_path)

    return _config_cache


def clear_config_cache() -> None:
    """Clear the configuration cache. Useful for testing."""
    global _config_cache
    _config_cache = None
