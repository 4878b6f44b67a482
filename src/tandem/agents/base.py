"""Base class for work-performing agent adapters.

An agent is any process that, started inside a workspace with a task
directive, commits its changes on the current branch and exits 0 on success.
"""

from __future__ import annotations

import shutil
import subprocess
import sys
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

from tandem.io_utils import open_text


@dataclass
class AgentResult:
    """Outcome of one synchronous agent invocation."""

    output: str = ""
    error: str = ""
    exit_code: int = 0
    duration_ms: int = 0

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.error


class AgentBase(ABC):
    """Abstract agent adapter.  Subclasses implement ``build_cmd``."""

    name: str = "base"

    @abstractmethod
    def build_cmd(self, directive: str) -> list[str]:
        """Return the command list that performs *directive*."""
        ...

    def check_available(self) -> str | None:
        """Return an error message if the agent executable is missing, else None."""
        cmd_name = self.build_cmd("test")[0]
        if not shutil.which(cmd_name):
            return f"{cmd_name} not found in PATH"
        return None

    def launch(self, directive: str, *, cwd: Path, output_file: Path) -> subprocess.Popen[str]:
        """Start the agent in *cwd*, writing stdout and stderr to *output_file*.

        Raises ``OSError`` (e.g. ``FileNotFoundError``) when the process cannot be spawned.
        """
        cmd = self.build_cmd(directive)
        output_file.parent.mkdir(parents=True, exist_ok=True)
        out = open_text(output_file, "w", errors="replace")
        try:
            popen_kwargs: dict[str, object] = {
                "stdin": subprocess.DEVNULL,
                "stdout": out,
                "stderr": subprocess.STDOUT,
                "text": True,
                "encoding": "utf-8",
                "errors": "replace",
                "cwd": cwd,
            }
            creationflags = self._creationflags()
            if creationflags:
                popen_kwargs["creationflags"] = creationflags
            return subprocess.Popen(cmd, **popen_kwargs)  # type: ignore[call-overload]
        finally:
            # The child holds its own handle.
            out.close()

    def run_sync(self, directive: str, *, cwd: Path, timeout: float | None = None) -> AgentResult:
        """Execute the agent to completion and capture its combined output."""
        cmd = self.build_cmd(directive)
        start = time.monotonic()
        try:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding="utf-8",
                errors="replace",
                cwd=cwd,
            )
        except OSError as e:
            return AgentResult(error=f"{cmd[0]}: {e.strerror or e}", exit_code=-1)

        try:
            output, _ = proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            self.terminate_process(proc)
            try:
                output, _ = proc.communicate(timeout=2)
            except subprocess.TimeoutExpired:
                output = ""
            return AgentResult(
                output=output or "",
                error=f"timed out after {timeout:g}s",
                exit_code=-1,
                duration_ms=int((time.monotonic() - start) * 1000),
            )
        except KeyboardInterrupt:
            self.terminate_process(proc)
            raise

        result = AgentResult(
            output=output or "",
            exit_code=proc.returncode,
            duration_ms=int((time.monotonic() - start) * 1000),
        )
        if proc.returncode != 0:
            last = (output or "").strip().splitlines()
            result.error = last[-1] if last else f"exit code {proc.returncode}"
        return result

    @staticmethod
    def terminate_process(proc: subprocess.Popen[str]) -> None:
        """Terminate a subprocess promptly (best effort)."""
        try:
            if proc.poll() is None:
                proc.terminate()
        except OSError:
            pass

        try:
            proc.wait(timeout=2)
            return
        except subprocess.TimeoutExpired:
            pass

        try:
            if proc.poll() is None:
                proc.kill()
        except OSError:
            pass

        try:
            proc.wait(timeout=2)
        except subprocess.TimeoutExpired:
            pass

    @staticmethod
    def _creationflags() -> int:
        """Creation flags for async worker processes."""
        if sys.platform == "win32":
            return int(getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0))
        return 0
