"""
Agent Orchestrator - supervise AI coding agents from issue to merged PR.

Spawns one isolated agent session per tracker issue, polls the session's
pull request, and reacts to CI failures, review feedback and merges through
pluggable runtime, agent, workspace, tracker, SCM and notifier plugins.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
