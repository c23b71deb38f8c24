"""Per-task git worktree isolation."""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable

from ..adapters.utils import sanitize_environment

logger = logging.getLogger(__name__)

INVALID_CHECKOUT = "Directory exists but is not a valid git worktree"


class WorktreeError(RuntimeError):
    """Raised for git failures and dirty/existing/invalid worktree states."""

    def __init__(self, message: str, *, task_id: str | None = None, path: Path | None = None) -> None:
        super().__init__(message)
        self.task_id = task_id
        self.path = path


@dataclass(slots=True)
class GitCommandResult:
    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


@dataclass(slots=True)
class WorktreeInfo:
    task_id: str
    path: Path
    branch: str
    main_branch: str | None = None
    is_dirty: bool = False
    is_orphan: bool = False
    disk_usage_bytes: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "path": str(self.path),
            "branch": self.branch,
            "main_branch": self.main_branch,
            "is_dirty": self.is_dirty,
            "is_orphan": self.is_orphan,
            "disk_usage_bytes": self.disk_usage_bytes,
        }


@dataclass(slots=True)
class WorktreeStatus:
    exists: bool
    path: Path
    branch: str | None = None
    has_changes: bool = False
    error: str | None = None

    @property
    def is_dirty(self) -> bool:
        return self.has_changes

    def to_dict(self) -> dict[str, Any]:
        return {
            "exists": self.exists,
            "path": str(self.path),
            "branch": self.branch,
            "has_changes": self.has_changes,
            "is_dirty": self.has_changes,
            "error": self.error,
        }


@dataclass(slots=True)
class CleanupReport:
    deleted: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed

    def to_dict(self) -> dict[str, Any]:
        return {"ok": self.ok, "deleted": list(self.deleted), "failed": dict(self.failed)}


def disk_usage(path: Path) -> int:
    total = 0
    for root, _dirs, files in os.walk(path):
        for name in files:
            try:
                total += (Path(root) / name).lstat().st_size
            except OSError:
                continue
    return total


class WorktreeManager:
    """Create, inspect and remove one worktree and branch per task.

    Paths and branch names are pure functions of the task id, so a worktree
    can always be rediscovered without a side index.
    """

    def __init__(
        self,
        project_dir: Path,
        *,
        worktree_dir_name: str = ".conductor/worktrees",
        branch_prefix: str = "conductor",
        git_executable: str = "git",
    ) -> None:
        self._project_dir = Path(project_dir)
        self._worktree_dir_name = worktree_dir_name
        self._branch_prefix = branch_prefix
        self._git = git_executable
        self._repo_root: Path | None = None
        self._main_branch: str | None = None

    async def _run_git(self, *args: str, cwd: Path | None = None) -> GitCommandResult:
        cmd = [self._git, *args]
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd or self._project_dir),
                env=sanitize_environment(),
            )
        except OSError as exc:
            raise WorktreeError(f"Unable to run git: {exc}") from exc
        stdout_bytes, stderr_bytes = await process.communicate()
        return GitCommandResult(
            args=tuple(cmd),
            returncode=process.returncode,
            stdout=stdout_bytes.decode("utf-8", errors="replace"),
            stderr=stderr_bytes.decode("utf-8", errors="replace"),
        )

    async def repo_root(self) -> Path:
        if self._repo_root is None:
            result = await self._run_git("rev-parse", "--show-toplevel")
            if not result.ok:
                raise WorktreeError(
                    f"{self._project_dir} is not inside a git repository: {result.stderr.strip()}",
                    path=self._project_dir,
                )
            self._repo_root = Path(result.stdout.strip()).resolve()
        return self._repo_root

    async def main_branch(self) -> str:
        if self._main_branch is None:
            result = await self._run_git("symbolic-ref", "refs/remotes/origin/HEAD")
            if result.ok and result.stdout.strip():
                self._main_branch = result.stdout.strip().removeprefix("refs/remotes/origin/")
            else:
                for candidate in ("main", "master"):
                    found = await self._run_git("rev-parse", "--verify", "--quiet", f"refs/heads/{candidate}")
                    if found.ok:
                        self._main_branch = candidate
                        break
                else:
                    head = await self._run_git("rev-parse", "--abbrev-ref", "HEAD")
                    self._main_branch = head.stdout.strip() if head.ok and head.stdout.strip() else "HEAD"
        return self._main_branch

    def branch_name(self, task_id: str) -> str:
        return f"{self._branch_prefix}/{task_id}"

    async def isolation_root(self) -> Path:
        return await self.repo_root() / self._worktree_dir_name

    async def worktree_path(self, task_id: str) -> Path:
        return await self.isolation_root() / task_id

    async def create_worktree(self, task_id: str) -> WorktreeInfo:
        path = await self.worktree_path(task_id)
        branch = self.branch_name(task_id)
        main_branch = await self.main_branch()

        if path.exists():
            raise WorktreeError(
                f"Failed to create worktree for task {task_id}: worktree already exists at {path}",
                task_id=task_id,
                path=path,
            )

        path.parent.mkdir(parents=True, exist_ok=True)
        result = await self._run_git("worktree", "add", str(path), "-b", branch, main_branch, cwd=await self.repo_root())
        if not result.ok:
            raise WorktreeError(
                f"Failed to create worktree for task {task_id}: {result.stderr.strip() or result.stdout.strip()}",
                task_id=task_id,
                path=path,
            )

        logger.info("Created worktree", extra={"task_id": task_id, "path": str(path), "branch": branch})
        return WorktreeInfo(task_id=task_id, path=path, branch=branch, main_branch=main_branch)

    async def get_worktree_status(self, task_id: str) -> WorktreeStatus:
        path = await self.worktree_path(task_id)
        if not path.exists():
            return WorktreeStatus(exists=False, path=path)

        porcelain = await self._run_git("status", "--porcelain", cwd=path)
        head = await self._run_git("rev-parse", "--abbrev-ref", "HEAD", cwd=path)
        if not porcelain.ok or not head.ok or not (path / ".git").exists():
            return WorktreeStatus(exists=True, path=path, error=INVALID_CHECKOUT)

        return WorktreeStatus(
            exists=True,
            path=path,
            branch=head.stdout.strip(),
            has_changes=bool(porcelain.stdout.strip()),
        )

    async def delete_worktree(self, task_id: str, *, force: bool = False) -> bool:
        """Remove the task's worktree; returns ``False`` when there was nothing to remove."""

        status = await self.get_worktree_status(task_id)
        if not status.exists:
            return False

        if status.error is not None and not force:
            raise WorktreeError(
                f"Failed to delete worktree for task {task_id}: {status.error} at {status.path}; "
                "pass force=True to remove the directory anyway",
                task_id=task_id,
                path=status.path,
            )
        if status.has_changes and not force:
            raise WorktreeError(
                f"Worktree for task {task_id} has uncommitted changes at {status.path}; "
                "commit them or pass force=True",
                task_id=task_id,
                path=status.path,
            )

        args = ["worktree", "remove", str(status.path)]
        if force:
            args.append("--force")
        result = await self._run_git(*args, cwd=await self.repo_root())
        if not result.ok and status.error is None:
            raise WorktreeError(
                f"Failed to delete worktree for task {task_id}: {result.stderr.strip()}",
                task_id=task_id,
                path=status.path,
            )

        if status.path.exists():
            shutil.rmtree(status.path, ignore_errors=True)
        await self._run_git("worktree", "prune", cwd=await self.repo_root())

        logger.info("Deleted worktree", extra={"task_id": task_id, "path": str(status.path), "force": force})
        return True

    async def list_worktrees(self, known_task_ids: Iterable[str] | None = None) -> list[WorktreeInfo]:
        root = await self.isolation_root()
        result = await self._run_git("worktree", "list", "--porcelain", cwd=await self.repo_root())
        if not result.ok:
            raise WorktreeError(f"Failed to list worktrees: {result.stderr.strip()}")

        known = set(known_task_ids) if known_task_ids is not None else None
        main_branch = await self.main_branch()
        worktrees: list[WorktreeInfo] = []
        for line in result.stdout.splitlines():
            if not line.startswith("worktree "):
                continue
            path = Path(line[len("worktree ") :].strip())
            try:
                relative = path.resolve().relative_to(root.resolve())
            except ValueError:
                continue
            if len(relative.parts) != 1:
                continue

            task_id = relative.parts[0]
            status = await self.get_worktree_status(task_id)
            worktrees.append(
                WorktreeInfo(
                    task_id=task_id,
                    path=path,
                    branch=self.branch_name(task_id),
                    main_branch=main_branch,
                    is_dirty=status.has_changes,
                    is_orphan=known is not None and task_id not in known,
                    disk_usage_bytes=await asyncio.to_thread(disk_usage, path) if path.exists() else 0,
                )
            )
        return worktrees

    async def cleanup_all_worktrees(self, *, force: bool = False) -> CleanupReport:
        """Delete every listed worktree, carrying on past individual failures."""

        report = CleanupReport()
        for info in await self.list_worktrees():
            try:
                await self.delete_worktree(info.task_id, force=force)
            except WorktreeError as exc:
                logger.warning("Worktree cleanup failed", extra={"task_id": info.task_id, "error": str(exc)})
                report.failed[info.task_id] = str(exc)
            else:
                report.deleted.append(info.task_id)
        return report

    async def verify_git_available(self) -> bool:
        try:
            version = await self._run_git("--version")
        except WorktreeError:
            return False
        if not version.ok:
            return False
        try:
            await self.repo_root()
        except WorktreeError:
            return False
        return True


__all__ = [
    "CleanupReport",
    "GitCommandResult",
    "WorktreeError",
    "WorktreeInfo",
    "WorktreeManager",
    "WorktreeStatus",
    "disk_usage",
]
