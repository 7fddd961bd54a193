"""
Runtime plugin: one detached tmux session per agent session.

The handle is the tmux session name. Messages are typed into the pane with
send-keys (literal text, then Enter) and output is read with capture-pane.
"""

from __future__ import annotations

import shlex
import subprocess
import time
from typing import Any

from agent_orchestrator.errors import (
    ConfigurationError,
    PermanentExternalError,
    TransientExternalError,
)
from agent_orchestrator.plugins.base import LaunchSpec, PluginManifest, PluginSlot

MANIFEST = PluginManifest(
    slot=PluginSlot.RUNTIME,
    name="tmux",
    description="Runtime plugin: detached tmux sessions",
)


class TmuxRuntime:
    name = "tmux"

    def __init__(self, timeout: int = 10, enter_delay: float = 0.3) -> None:
        self.timeout = timeout
        self.enter_delay = enter_delay

    def _tmux(self, args: list[str], check: bool = True) -> subprocess.CompletedProcess:
        try:
            result = subprocess.run(
                ["tmux"] + args,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except FileNotFoundError:
            raise ConfigurationError("tmux is not installed")
        except subprocess.TimeoutExpired:
            raise TransientExternalError(f"tmux {args[0]} timed out")
        if check and result.returncode != 0:
            raise PermanentExternalError(
                f"tmux {args[0]} failed: {(result.stderr or '').strip()[:200]}"
            )
        return result

    def create(self, session_id: str, workspace_path: str, launch: LaunchSpec) -> str:
        handle = session_id
        args = ["new-session", "-d", "-s", handle, "-c", workspace_path]
        for key, value in sorted(launch.env.items()):
            args += ["-e", f"{key}={value}"]
        args.append(shlex.join(launch.command))
        self._tmux(args)
        return handle

    def destroy(self, handle: str) -> None:
        if not self.is_alive(handle):
            return
        self._tmux(["kill-session", "-t", handle])

    def send_message(self, handle: str, message: str) -> None:
        self._tmux(["send-keys", "-t", handle, "-l", message])
        # Agents drop an Enter that arrives in the same burst as a paste
        time.sleep(self.enter_delay)
        self._tmux(["send-keys", "-t", handle, "Enter"])

    def get_output(self, handle: str, lines: int = 50) -> str:
        result = self._tmux(["capture-pane", "-p", "-t", handle, "-S", f"-{lines}"])
        return result.stdout

    def is_alive(self, handle: str) -> bool:
        return self._tmux(["has-session", "-t", handle], check=False).returncode == 0


def create(config: dict[str, Any]) -> TmuxRuntime:
    return TmuxRuntime(
        timeout=int(config.get("timeout", 10)),
        enter_delay=float(config.get("enter_delay", 0.3)),
    )
