"""
Workspace plugin: one git worktree per session.

Worktrees live under <worktree_dir>/<project>/<session_id> and are created
on a new branch from the project's default branch.
"""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Any

from agent_orchestrator.config import ProjectConfig
from agent_orchestrator.errors import PermanentExternalError, TransientExternalError
from agent_orchestrator.plugins.base import PluginManifest, PluginSlot
from agent_orchestrator.utils.fs import ensure_dir

MANIFEST = PluginManifest(
    slot=PluginSlot.WORKSPACE,
    name="worktree",
    description="Workspace plugin: git worktrees",
)


class WorktreeWorkspace:
    name = "worktree"

    def __init__(self, worktree_dir: str, timeout: int = 120) -> None:
        self.worktree_dir = Path(worktree_dir).expanduser()
        self.timeout = timeout

    def _git(self, args: list[str], cwd: str) -> str:
        try:
            result = subprocess.run(
                ["git"] + args,
                cwd=cwd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            raise TransientExternalError(f"git {args[0]} timed out")
        if result.returncode != 0:
            raise PermanentExternalError(
                f"git {' '.join(args[:2])} failed: {(result.stderr or '').strip()[:300]}"
            )
        return result.stdout

    def create(self, project: ProjectConfig, session_id: str, branch: str) -> str:
        repo = str(Path(project.path).expanduser())
        target = ensure_dir(self.worktree_dir / project.name) / session_id
        # Best effort: a stale origin only means an older base
        try:
            self._git(["fetch", "origin", project.default_branch], cwd=repo)
            base = f"origin/{project.default_branch}"
        except PermanentExternalError:
            base = project.default_branch
        self._git(["worktree", "add", "-b", branch, str(target), base], cwd=repo)
        return str(target)

    def destroy(self, workspace_path: str, project: ProjectConfig) -> None:
        if not Path(workspace_path).exists():
            return
        repo = str(Path(project.path).expanduser())
        self._git(["worktree", "remove", "--force", workspace_path], cwd=repo)
        self._git(["worktree", "prune"], cwd=repo)


def create(config: dict[str, Any]) -> WorktreeWorkspace:
    return WorktreeWorkspace(
        worktree_dir=config["worktree_dir"],
        timeout=int(config.get("timeout", 120)),
    )
