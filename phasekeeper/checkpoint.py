"""
PHASEKEEPER Checkpoints

Every completed phase becomes a git commit:

    [<task id>] Phase <n>: <name> complete

The commit history is the checkpoint log. Resume points are
reconstructed by parsing it back; nothing else is stored.
"""

from __future__ import annotations

import re
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path

from loguru import logger


class CheckpointError(Exception):
    pass


@dataclass
class Checkpoint:
    commit_hash: str
    task_id: str
    phase_number: int
    phase_name: str


@dataclass
class CheckpointResult:
    success: bool
    commit_hash: str | None
    message: str


_MESSAGE_RE = re.compile(r"^\[([^\]]+)\]\s+Phase\s+(\d+):\s+(.+?)\s+complete$")


def format_checkpoint_message(task_id: str, phase_number: int, phase_name: str) -> str:
    """
    Newlines fold to single spaces and the ends are trimmed, so the
    name read back is the normalized one. A blank name becomes
    `Phase <n>`; every message produced here parses.
    """
    name = re.sub(r"\s*\n\s*", " ", str(phase_name or "")).strip() or f"Phase {phase_number}"
    return f"[{task_id}] Phase {phase_number}: {name} complete"


def parse_checkpoint_message(message: str) -> tuple[str, int, str] | None:
    """(task_id, phase_number, phase_name), or None if not a checkpoint."""
    match = _MESSAGE_RE.match(message.strip())
    if not match:
        return None
    return match.group(1), int(match.group(2)), match.group(3)


# Commits touching one repository must not interleave.
_repo_locks: dict[Path, threading.Lock] = {}
_repo_locks_guard = threading.Lock()


def _lock_for(repo: Path) -> threading.Lock:
    with _repo_locks_guard:
        return _repo_locks.setdefault(repo, threading.Lock())


class CheckpointManager:
    """Creates and reads phase checkpoints in one git working tree."""

    def __init__(self, cwd: Path | None = None):
        self.cwd = (cwd or Path.cwd()).resolve()
        self._repo_root: Path | None = None

    @property
    def repo_root(self) -> Path:
        if self._repo_root is None:
            try:
                top = self._git("rev-parse", "--show-toplevel", capture=True).strip()
                self._repo_root = Path(top).resolve() if top else self.cwd
            except (CheckpointError, OSError):
                self._repo_root = self.cwd
        return self._repo_root

    # -- writing -----------------------------------------------------------

    def create_checkpoint(
        self,
        task_id: str,
        phase_number: int,
        phase_name: str,
        allow_empty: bool = False,
    ) -> CheckpointResult:
        """
        Commit the working tree as the checkpoint for one phase.

        A clean tree is a successful no-op (commit_hash is None) unless
        `allow_empty` is set, which the runner uses so that every phase
        finished in one iteration (or swept into another task's commit)
        still gets its marker.
        Git failures are logged and reported, never raised.
        """
        message = format_checkpoint_message(task_id, phase_number, phase_name)
        with _lock_for(self.repo_root):
            try:
                status = self._git("status", "--porcelain", capture=True)
                if not status.strip() and not allow_empty:
                    logger.info(f"[CHECKPOINT] No changes to commit for {task_id} Phase {phase_number}")
                    return CheckpointResult(success=True, commit_hash=None, message="No changes to commit")

                self._git("add", "-A")
                commit_args = ["commit", "-m", message]
                if allow_empty:
                    commit_args.append("--allow-empty")
                self._git(*commit_args)
                sha = self._git("rev-parse", "HEAD", capture=True).strip()
            except (CheckpointError, OSError, subprocess.TimeoutExpired) as e:
                logger.warning(f"[CHECKPOINT] Failed to create checkpoint: {e}")
                return CheckpointResult(success=False, commit_hash=None, message=str(e))

        logger.info(f"[CHECKPOINT] Created: {message} ({sha[:7]})")
        return CheckpointResult(success=True, commit_hash=sha, message=message)

    # -- reading -----------------------------------------------------------

    def get_all_checkpoints(self, task_id: str, limit: int | None = 10) -> list[Checkpoint]:
        """Parsed checkpoints for a task, newest first."""
        args = ["log", "--format=%H%x00%s", "--fixed-strings", f"--grep=[{task_id}]"]
        if limit:
            args.append(f"-n{limit}")
        try:
            log = self._git(*args, capture=True)
        except (CheckpointError, OSError, subprocess.TimeoutExpired):
            return []

        checkpoints = []
        for line in log.splitlines():
            sha, _, subject = line.partition("\x00")
            parsed = parse_checkpoint_message(subject)
            if parsed and parsed[0] == task_id:
                checkpoints.append(Checkpoint(sha, parsed[0], parsed[1], parsed[2]))
        return checkpoints

    def get_last_checkpoint(self, task_id: str) -> Checkpoint | None:
        checkpoints = self.get_all_checkpoints(task_id, limit=None)
        return checkpoints[0] if checkpoints else None

    def get_next_phase(self, task_id: str, total_phases: int) -> int:
        """Phase to resume from: 1 without history, else last + 1 clamped to total."""
        last = self.get_last_checkpoint(task_id)
        if last is None:
            return 1
        return min(last.phase_number + 1, total_phases)

    def has_checkpoint(self, task_id: str, phase_number: int) -> bool:
        return any(cp.phase_number == phase_number for cp in self.get_all_checkpoints(task_id, limit=None))

    def changed_files(self) -> list[str]:
        """Staged, unstaged and untracked paths, relative to the repo root."""
        seen: dict[str, None] = {}
        for args in (
            ("diff", "--name-only"),
            ("diff", "--name-only", "--cached"),
            ("ls-files", "--others", "--exclude-standard", "--full-name"),
        ):
            for line in self._git(*args, capture=True, check=False).splitlines():
                if line.strip():
                    seen.setdefault(line.strip(), None)
        return list(seen)

    # -- git -----------------------------------------------------------------

    def _git(self, *args: str, check: bool = True, capture: bool = False) -> str:
        return self._run_cmd(["git", *args], cwd=self.cwd, check=check, capture=capture)

    @staticmethod
    def _run_cmd(cmd: list[str], cwd: Path, check: bool = True, capture: bool = False) -> str:
        result = subprocess.run(cmd, cwd=cwd, capture_output=True, text=True, timeout=60)
        if check and result.returncode != 0:
            raise CheckpointError(f"Git failed: {' '.join(cmd)}\n{result.stderr}")
        return result.stdout if capture else ""
