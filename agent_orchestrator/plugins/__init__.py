"""
Plugin slots, contracts and the registry.

Built-in plugins live in this package, one module (or subpackage) each,
and are listed in registry.BUILTIN_PLUGINS.
"""

from agent_orchestrator.plugins.base import (
    CreateIssueInput,
    Issue,
    IssueFilters,
    IssueUpdate,
    LaunchSpec,
    PluginManifest,
    PluginSlot,
)
from agent_orchestrator.plugins.registry import BUILTIN_PLUGINS, BuiltinPlugin, PluginRegistry

__all__ = [
    "BUILTIN_PLUGINS",
    "BuiltinPlugin",
    "CreateIssueInput",
    "Issue",
    "IssueFilters",
    "IssueUpdate",
    "LaunchSpec",
    "PluginManifest",
    "PluginRegistry",
    "PluginSlot",
]
