"""Base class for code-agent engine adapters."""

from __future__ import annotations

import json
import shutil
import subprocess
import sys
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import IO

from braid.errors import looks_like_policy_block, looks_like_rate_limit


@dataclass
class EngineResult:
    """Uniform result from any engine invocation."""

    text: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    duration_ms: int = 0
    error: str = ""
    return_code: int = 0

    @property
    def ok(self) -> bool:
        return self.return_code == 0 and not self.error


class EngineBase(ABC):
    """Abstract engine adapter. Subclasses implement ``build_cmd`` and ``parse_output``."""

    name: str = "base"

    @abstractmethod
    def build_cmd(self, prompt: str, *, max_turns: int | None = None) -> list[str]:
        """Return the CLI command list for the given prompt."""
        ...

    @abstractmethod
    def parse_output(self, raw: str) -> EngineResult:
        """Parse raw stdout into an :class:`EngineResult`."""
        ...

    def check_available(self) -> str | None:
        """Return an error message if the engine CLI is not available, else None."""
        cmd_name = self.build_cmd("test")[0]
        if not shutil.which(cmd_name):
            return f"{cmd_name} not found in PATH"
        return None

    def run_sync(
        self,
        prompt: str,
        *,
        cwd: Path | None = None,
        timeout: int | None = None,
        max_turns: int | None = None,
    ) -> EngineResult:
        """Execute the engine to completion and return the parsed result."""
        cmd = self.build_cmd(prompt, max_turns=max_turns)
        start = time.monotonic()

        try:
            proc = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                cwd=cwd,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            return EngineResult(error="timeout", return_code=-1)
        except FileNotFoundError:
            return EngineResult(error=f"{cmd[0]} not found", return_code=-1)

        result = self.parse_output(proc.stdout or "")
        result.return_code = proc.returncode
        if not result.duration_ms:
            result.duration_ms = int((time.monotonic() - start) * 1000)

        error = self._check_errors(proc.stdout or "")
        if error and not result.error:
            result.error = error

        # Some CLIs report argument/permission failures only on stderr.
        if proc.returncode != 0 and not result.error:
            stderr = (proc.stderr or "").strip()
            result.error = stderr.splitlines()[0] if stderr else f"exit code {proc.returncode}"

        return result

    def run_async(
        self,
        prompt: str,
        *,
        cwd: Path | None = None,
        stdout_file: Path | None = None,
        stderr_file: Path | None = None,
    ) -> subprocess.Popen[str]:
        """Launch the engine without waiting, returning the Popen handle."""
        cmd = self.build_cmd(prompt)

        stdout_fh: IO[str] | int = open(stdout_file, "w", encoding="utf-8") if stdout_file else subprocess.DEVNULL
        stderr_fh: IO[str] | int = open(stderr_file, "a", encoding="utf-8") if stderr_file else subprocess.DEVNULL
        try:
            return subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=stdout_fh,
                stderr=stderr_fh,
                text=True,
                encoding="utf-8",
                errors="replace",
                cwd=cwd,
                creationflags=self._creationflags(),
            )
        finally:
            # The child holds its own copies of the descriptors.
            for fh in (stdout_fh, stderr_fh):
                if not isinstance(fh, int):
                    fh.close()

    @staticmethod
    def terminate(proc: subprocess.Popen[str]) -> None:
        """Terminate a subprocess promptly (best effort)."""
        try:
            if proc.poll() is None:
                proc.terminate()
        except OSError:
            pass

        try:
            proc.wait(timeout=2)
            return
        except (OSError, subprocess.TimeoutExpired):
            pass

        try:
            if proc.poll() is None:
                proc.kill()
            proc.wait(timeout=2)
        except (OSError, subprocess.TimeoutExpired):
            pass

    @staticmethod
    def _creationflags() -> int:
        if sys.platform == "win32":
            return int(getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0))
        return 0

    @staticmethod
    def _check_errors(raw: str) -> str:
        """Detect common error patterns in structured engine output."""
        if not raw:
            return ""

        for line in raw.splitlines():
            stripped = line.strip()
            if not stripped:
                continue
            try:
                obj = json.loads(stripped)
            except json.JSONDecodeError:
                continue
            if not isinstance(obj, dict):
                continue

            err = obj.get("error")
            if isinstance(err, dict):
                msg = str(err.get("message", "")).strip()
                code = str(err.get("type", "") or err.get("code", "")).strip().lower()
                if looks_like_rate_limit(code):
                    return msg or "Rate limit exceeded"
                if msg:
                    return msg

            if isinstance(err, str) and err.strip():
                if looks_like_policy_block(err):
                    return "Blocked by policy"
                if looks_like_rate_limit(err):
                    return "Rate limit exceeded"
                return err.strip()

            if str(obj.get("type", "")).lower() == "result" and obj.get("is_error"):
                return str(obj.get("result") or "Agent reported an error").strip()

        return ""
