"""Persisted execution groups: one JSON document per group."""

from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from braid import log
from braid.io_utils import read_json, write_json_atomic, write_text
from braid.tasks.model import ExecutionGroup, GroupStatus

INTERRUPTED_MESSAGE = "interrupted"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


class StateStore:
    """File-backed store of :class:`ExecutionGroup` records under *groups_dir*.

    Each write replaces the whole document atomically, so a second process
    (``braid status``) always reads a complete group.
    """

    def __init__(self, groups_dir: Path) -> None:
        self.groups_dir = groups_dir
        self._lock = threading.Lock()

    def _path(self, group_id: str) -> Path:
        return self.groups_dir / f"{group_id}.json"

    def _write(self, group: ExecutionGroup) -> None:
        write_json_atomic(self._path(group.id), group.to_dict())
        # State usually lives inside the workspace checkout; keep it out of agent commits.
        ignore = self.groups_dir / ".gitignore"
        if not ignore.exists():
            write_text(ignore, "*\n")

    def _load(self, path: Path) -> ExecutionGroup | None:
        try:
            return ExecutionGroup.from_dict(read_json(path))
        except (OSError, json.JSONDecodeError, TypeError, ValueError) as e:
            log.warn(f"Skipping unreadable group file {path.name}: {e}")
            return None

    # ── writes ───────────────────────────────────────────────────

    def create_group(
        self,
        project_id: str,
        task_ids: list[str],
        batch_number: int,
        total_batches: int,
    ) -> ExecutionGroup:
        now = _now()
        group = ExecutionGroup(
            id=uuid.uuid4().hex,
            project_id=project_id,
            task_ids=list(task_ids),
            batch_number=batch_number,
            total_batches=total_batches,
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self._write(group)
        log.debug(f"Group {group.id}: created for batch {batch_number}/{total_batches}")
        return group

    def update_status(
        self,
        group_id: str,
        status: GroupStatus,
        error_message: str | None = None,
    ) -> ExecutionGroup:
        """Move a group to *status*. Terminal groups cannot be reopened."""
        status = GroupStatus(status)
        with self._lock:
            group = self._load(self._path(group_id)) if self._path(group_id).is_file() else None
            if group is None:
                raise KeyError(f"Unknown execution group: {group_id}")
            if group.is_terminal:
                raise ValueError(f"Group {group_id} is already {group.status.value}")

            now = _now()
            previous = group.status
            group.status = status
            group.updated_at = now
            if status == GroupStatus.RUNNING and not group.started_at:
                group.started_at = now
            if group.is_terminal:
                group.completed_at = now
            if error_message is not None:
                group.error_message = error_message
            self._write(group)

        log.debug(f"Group {group_id}: {previous.value} -> {status.value}")
        return group

    def reconcile_interrupted(self, project_id: str | None = None) -> list[ExecutionGroup]:
        """Fail groups left ``pending``/``running`` by a process that is gone."""
        fixed: list[ExecutionGroup] = []
        for group in self.active_groups(project_id):
            fixed.append(self.update_status(group.id, GroupStatus.FAILED, INTERRUPTED_MESSAGE))
        if fixed:
            log.warn(f"Marked {len(fixed)} interrupted execution group(s) as failed")
        return fixed

    # ── reads ────────────────────────────────────────────────────

    def get(self, group_id: str) -> ExecutionGroup | None:
        path = self._path(group_id)
        if not path.is_file():
            return None
        return self._load(path)

    def list_groups(self, project_id: str | None = None) -> list[ExecutionGroup]:
        """Groups for *project_id* (or all), newest first."""
        if not self.groups_dir.is_dir():
            return []
        groups: list[ExecutionGroup] = []
        for path in self.groups_dir.glob("*.json"):
            group = self._load(path)
            if group is None:
                continue
            if project_id is None or group.project_id == project_id:
                groups.append(group)
        groups.sort(key=lambda g: (g.created_at, g.batch_number), reverse=True)
        return groups

    def active_groups(self, project_id: str | None = None) -> list[ExecutionGroup]:
        return [g for g in self.list_groups(project_id) if not g.is_terminal]

    def snapshot(self, project_id: str) -> dict[str, Any]:
        """Reconnect view rebuilt from persisted groups, for when no run is live."""
        groups = self.list_groups(project_id)
        latest = groups[0] if groups else None
        return {
            "live": False,
            "phase": latest.status.value if latest else "idle",
            "batch_number": latest.batch_number if latest else 0,
            "total_batches": latest.total_batches if latest else 0,
            "group_id": latest.id if latest else None,
            "merge_in_progress": False,
            "error_message": latest.error_message if latest else None,
            "tasks": [{"task_id": tid} for tid in (latest.task_ids if latest else [])],
            "groups": [g.to_dict() for g in groups],
        }
