from __future__ import annotations

import asyncio
import hashlib
import logging
import re
import shutil
import subprocess
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ensemble.config import WorkspaceConfig
from ensemble.errors import WorkspaceConflict, WorkspaceError
from ensemble.models import ReleaseOutcome, utcnow_iso

logger = logging.getLogger(__name__)

COMMIT_MESSAGE_PREFIX = "[ensemble]"
FALLBACK_IDENTITY = ("ensemble", "ensemble@localhost")


@dataclass(slots=True)
class Workspace:
    task_id: str
    path: Path
    branch: str
    base_commit: str
    created_at: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "path": str(self.path),
            "branch": self.branch,
            "base_commit": self.base_commit,
            "created_at": self.created_at,
        }


def task_slug(task_id: str) -> str:
    """Git-safe name for the task's worktree directory and branch.

    Ids that are already safe are used as-is; any id that had to be rewritten gets a short
    hash of the raw id appended, so ``api/auth`` and ``api-auth`` never share a branch.
    """
    slug = re.sub(r"[^A-Za-z0-9._-]+", "-", task_id).strip("-.")
    slug = re.sub(r"\.{2,}", ".", slug)
    if slug.endswith(".lock"):
        slug = slug[: -len(".lock")]
    if slug == task_id:
        return slug
    digest = hashlib.sha1(task_id.encode("utf-8")).hexdigest()[:8]
    return f"{slug or 'task'}-{digest}"


class WorkspaceManager:
    """Creates and tears down one git worktree per running task.

    Structural git operations (worktree add/remove, branch create/delete) are serialized by
    an ``asyncio.Lock`` and run in a worker thread, so agents in other worktrees keep running.
    """

    def __init__(
        self,
        repo_root: Path,
        config: WorkspaceConfig | None = None,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.repo_root = repo_root.resolve()
        self.config = config or WorkspaceConfig()
        self.event_hook = event_hook
        self.base_dir = (self.repo_root / self.config.base_dir).resolve()
        self._active: dict[str, Workspace] = {}
        self._lock = asyncio.Lock()

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    def _run_git(
        self,
        args: list[str],
        cwd: Path | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        proc = subprocess.run(
            ["git", "--no-pager", *args],
            cwd=cwd or self.repo_root,
            text=True,
            capture_output=True,
        )
        if check and proc.returncode != 0:
            raise WorkspaceError(
                f"git {' '.join(args)} failed: {proc.stderr.strip() or proc.stdout.strip()}"
            )
        return proc

    def integration_branch(self) -> str:
        if self.config.integration_branch:
            return self.config.integration_branch
        proc = self._run_git(["rev-parse", "--abbrev-ref", "HEAD"], check=False)
        if proc.returncode != 0:
            raise WorkspaceError(f"Not a git repository with commits: {self.repo_root}")
        branch = proc.stdout.strip()
        if branch == "HEAD":
            return self._run_git(["rev-parse", "HEAD"]).stdout.strip()
        return branch

    def workspace_path(self, task_id: str) -> Path:
        return self.base_dir / task_slug(task_id)

    def branch_name(self, task_id: str) -> str:
        return f"{self.config.branch_prefix}{task_slug(task_id)}"

    def _branch_exists(self, branch: str) -> bool:
        proc = self._run_git(
            ["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"], check=False
        )
        return proc.returncode == 0

    def _ensure_base_dir(self) -> None:
        self.base_dir.mkdir(parents=True, exist_ok=True)
        ignore_file = self.base_dir / ".gitignore"
        if not ignore_file.exists():
            ignore_file.write_text("*\n", encoding="utf-8")

    def active(self) -> dict[str, Workspace]:
        return dict(self._active)

    async def acquire(self, task_id: str) -> Workspace:
        async with self._lock:
            workspace = await asyncio.to_thread(self._acquire_sync, task_id)
        self._emit(
            {
                "type": "workspace_acquired",
                "task_id": task_id,
                "message": f"Workspace ready on {workspace.branch}",
                "metadata": workspace.to_dict(),
            }
        )
        return workspace

    def _acquire_sync(self, task_id: str) -> Workspace:
        if task_id in self._active:
            raise WorkspaceConflict(f"Task '{task_id}' already has an active workspace.")
        path = self.workspace_path(task_id)
        branch = self.branch_name(task_id)
        if path.exists():
            raise WorkspaceConflict(f"Workspace path already exists: {path}")
        if self._branch_exists(branch):
            raise WorkspaceConflict(f"Workspace branch already exists: {branch}")

        base = self.integration_branch()
        self._ensure_base_dir()
        branch_created = False
        try:
            self._run_git(["branch", branch, base])
            branch_created = True
            self._run_git(["worktree", "add", str(path), branch])
            base_commit = self._run_git(["rev-parse", "HEAD"], cwd=path).stdout.strip()
        except WorkspaceError:
            self._discard(path, branch if branch_created else None)
            raise

        workspace = Workspace(task_id=task_id, path=path, branch=branch, base_commit=base_commit)
        self._active[task_id] = workspace
        logger.info("Acquired workspace %s for task %s", path, task_id)
        return workspace

    def _discard(self, path: Path, branch: str | None) -> None:
        if path.exists():
            self._run_git(["worktree", "remove", "--force", str(path)], check=False)
        if path.exists():
            shutil.rmtree(path, ignore_errors=True)
        self._run_git(["worktree", "prune"], check=False)
        if branch:
            self._run_git(["branch", "-D", branch], check=False)

    async def commit(self, task_id: str, message: str) -> str | None:
        workspace = self._active.get(task_id)
        if workspace is None:
            raise WorkspaceError(f"Task '{task_id}' has no active workspace.")
        return await asyncio.to_thread(self._commit_sync, workspace, message)

    def _commit_sync(self, workspace: Workspace, message: str) -> str | None:
        self._run_git(["add", "-A"], cwd=workspace.path)
        status = self._run_git(["status", "--porcelain"], cwd=workspace.path).stdout
        if not status.strip():
            return None
        identity: list[str] = []
        email = self._run_git(["config", "user.email"], cwd=workspace.path, check=False)
        if not email.stdout.strip():
            identity = [
                "-c",
                f"user.name={FALLBACK_IDENTITY[0]}",
                "-c",
                f"user.email={FALLBACK_IDENTITY[1]}",
            ]
        self._run_git(
            [*identity, "commit", "-m", f"{COMMIT_MESSAGE_PREFIX} {message}"],
            cwd=workspace.path,
        )
        return self._run_git(["rev-parse", "HEAD"], cwd=workspace.path).stdout.strip()

    async def release(self, task_id: str, outcome: ReleaseOutcome) -> bool:
        """Tear down the task's workspace. Returns False when nothing was active."""
        async with self._lock:
            workspace = self._active.pop(task_id, None)
            if workspace is None:
                return False
            kept = await asyncio.to_thread(self._release_sync, workspace, outcome)
        self._emit(
            {
                "type": "workspace_released",
                "task_id": task_id,
                "message": f"Workspace released ({outcome})",
                "success": outcome == "completed",
                "metadata": {**workspace.to_dict(), "outcome": outcome, "kept": kept},
            }
        )
        return True

    def _release_sync(self, workspace: Workspace, outcome: ReleaseOutcome) -> list[str]:
        if outcome != "completed" and self.config.preserve_failed:
            logger.info("Preserving failed workspace %s", workspace.path)
            return ["worktree", "branch"]
        self._discard(workspace.path, None if outcome == "completed" else workspace.branch)
        logger.info("Released workspace %s (%s)", workspace.path, outcome)
        return ["branch"] if outcome == "completed" else []

    async def reset(self, task_id: str) -> bool:
        """Remove a leftover worktree and branch from an earlier attempt of the task."""
        async with self._lock:
            if task_id in self._active:
                raise WorkspaceConflict(f"Task '{task_id}' has an active workspace.")
            return await asyncio.to_thread(self._reset_sync, task_id)

    def _reset_sync(self, task_id: str) -> bool:
        path = self.workspace_path(task_id)
        branch = self.branch_name(task_id)
        branch_exists = self._branch_exists(branch)
        if not path.exists() and not branch_exists:
            return False
        self._discard(path, branch if branch_exists else None)
        logger.info("Reset leftover workspace for task %s", task_id)
        return True

    async def cleanup_stale(self) -> list[Path]:
        async with self._lock:
            return await asyncio.to_thread(self._cleanup_stale_sync)

    def _cleanup_stale_sync(self) -> list[Path]:
        removed: list[Path] = []
        active_paths = {workspace.path for workspace in self._active.values()}
        if self.base_dir.is_dir():
            for candidate in sorted(self.base_dir.iterdir()):
                if not candidate.is_dir() or candidate in active_paths:
                    continue
                self._discard(candidate, None)
                removed.append(candidate)
        self._run_git(["worktree", "prune"], check=False)
        if removed:
            logger.info("Removed %d stale workspace(s)", len(removed))
        return removed
