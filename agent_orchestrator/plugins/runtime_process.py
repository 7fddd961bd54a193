"""
Runtime plugin: a plain child process per session.

stdin stays open for messages; stdout and stderr go to
<log_dir>/<session_id>.log, which get_output() tails. Handles are only
valid inside the process that created them.
"""

from __future__ import annotations

import os
import subprocess
import threading
from pathlib import Path
from typing import Any

from agent_orchestrator.errors import PermanentExternalError
from agent_orchestrator.plugins.base import LaunchSpec, PluginManifest, PluginSlot
from agent_orchestrator.utils.fs import ensure_dir, read_lines

MANIFEST = PluginManifest(
    slot=PluginSlot.RUNTIME,
    name="process",
    description="Runtime plugin: child processes with stdin messaging",
)


class ProcessRuntime:
    name = "process"

    def __init__(self, log_dir: str, kill_timeout: float = 5.0) -> None:
        self.log_dir = Path(log_dir)
        self.kill_timeout = kill_timeout
        self._processes: dict[str, subprocess.Popen] = {}
        self._lock = threading.Lock()

    def _process(self, handle: str) -> subprocess.Popen:
        with self._lock:
            process = self._processes.get(handle)
        if process is None:
            raise PermanentExternalError(f"Unknown process handle: {handle}")
        return process

    def create(self, session_id: str, workspace_path: str, launch: LaunchSpec) -> str:
        ensure_dir(self.log_dir)
        log_path = self.log_dir / f"{session_id}.log"
        with open(log_path, "ab") as log_file:
            process = subprocess.Popen(
                launch.command,
                cwd=workspace_path,
                env={**os.environ, **launch.env},
                stdin=subprocess.PIPE,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                text=True,
            )
        handle = f"{session_id}:{process.pid}"
        with self._lock:
            self._processes[handle] = process
        return handle

    def destroy(self, handle: str) -> None:
        with self._lock:
            process = self._processes.pop(handle, None)
        if process is None or process.poll() is not None:
            return
        process.terminate()
        try:
            process.wait(timeout=self.kill_timeout)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait(timeout=self.kill_timeout)

    def send_message(self, handle: str, message: str) -> None:
        process = self._process(handle)
        if process.poll() is not None or process.stdin is None:
            raise PermanentExternalError(f"Process {handle} is not running")
        process.stdin.write(message + "\n")
        process.stdin.flush()

    def get_output(self, handle: str, lines: int = 50) -> str:
        session_id = handle.rsplit(":", 1)[0]
        return "\n".join(read_lines(self.log_dir / f"{session_id}.log")[-lines:])

    def is_alive(self, handle: str) -> bool:
        with self._lock:
            process = self._processes.get(handle)
        return process is not None and process.poll() is None


def create(config: dict[str, Any]) -> ProcessRuntime:
    return ProcessRuntime(
        log_dir=config["log_dir"],
        kill_timeout=float(config.get("kill_timeout", 5.0)),
    )
