"""Claude Code engine adapter."""

from __future__ import annotations

import json
import shutil

from braid.engines.base import EngineBase, EngineResult


class ClaudeEngine(EngineBase):
    name = "claude"

    def build_cmd(self, prompt: str, *, max_turns: int | None = None) -> list[str]:
        # Resolved path so the child does not depend on its own PATH lookup.
        claude = shutil.which("claude") or "claude"
        cmd = [
            claude,
            "--dangerously-skip-permissions",
            "--verbose",
            "-p",
            prompt,
            "--output-format",
            "stream-json",
        ]
        if max_turns:
            cmd += ["--max-turns", str(max_turns)]
        return cmd

    def parse_output(self, raw: str) -> EngineResult:
        result = EngineResult()
        for line in raw.splitlines():
            if '"type":"result"' not in line.replace(" ", ""):
                continue
            try:
                obj = json.loads(line)
            except json.JSONDecodeError:
                result.text = "Could not parse result"
                continue
            result.text = str(obj.get("result", "") or "")
            usage = obj.get("usage") or {}
            try:
                result.input_tokens = int(usage.get("input_tokens", 0))
                result.output_tokens = int(usage.get("output_tokens", 0))
            except (TypeError, ValueError):
                pass
            if obj.get("is_error"):
                result.error = result.text or "Agent reported an error"
        return result

    def check_available(self) -> str | None:
        if not shutil.which("claude"):
            return "Claude Code CLI not found. Install from https://github.com/anthropics/claude-code"
        return None
