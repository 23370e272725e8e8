"""Git versioning for state snapshots.

Each compaction of the state store commits ``snapshot.yaml`` so earlier
versions of the recorded state can be listed and read back.
"""
import logging
import subprocess
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

GITIGNORE = (
    "# Stackcraft state gitignore\n"
    "journal.jsonl\n"
    "state.lock\n"
    "*.tmp\n"
)


class GitError(Exception):
    """Exception raised for git operation failures."""
    pass


@dataclass
class CommitInfo:
    """Information about a state snapshot commit."""
    hash: str
    short_hash: str
    author: str
    date: datetime
    message: str

    def to_dict(self) -> dict:
        return {
            "hash": self.hash,
            "short_hash": self.short_hash,
            "author": self.author,
            "date": self.date.isoformat(),
            "message": self.message,
        }


class GitManager:
    """Runs git in the state directory."""

    def __init__(self, repo_path: Path):
        self.repo_path = Path(repo_path)

    def _run_git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        """Run a git command in the repo directory."""
        cmd = ["git", "-C", str(self.repo_path)] + list(args)
        logger.debug(f"Running: {' '.join(cmd)}")

        try:
            result = subprocess.run(cmd, capture_output=True, text=True, check=False)
        except FileNotFoundError as e:
            raise GitError("git executable not found") from e

        if check and result.returncode != 0:
            logger.error(f"Git command failed: {result.stderr}")
            raise GitError(f"Git command failed: {result.stderr.strip()}")

        return result

    def is_initialized(self) -> bool:
        return (self.repo_path / ".git").exists()

    def init(self) -> bool:
        """Initialize the repo if needed. Returns True if newly created."""
        if self.is_initialized():
            return False

        self.repo_path.mkdir(parents=True, exist_ok=True)
        self._run_git("init")
        self._run_git("config", "user.name", "stackcraft")
        self._run_git("config", "user.email", "stackcraft@local")

        (self.repo_path / ".gitignore").write_text(GITIGNORE)
        self._run_git("add", ".gitignore")
        self._run_git("commit", "-m", "Initial state repository")

        logger.info(f"Initialized state history repo at {self.repo_path}")
        return True

    def commit(self, message: str, files: list[str], author: Optional[str] = None) -> Optional[str]:
        """Commit the given files.

        Returns:
            Commit hash, or None if nothing changed
        """
        self.init()

        for f in files:
            self._run_git("add", f)

        result = self._run_git("diff", "--cached", "--quiet", check=False)
        if result.returncode == 0:
            logger.debug("No state changes to commit")
            return None

        full_message = message
        if author:
            full_message += f"\n\nApplied by: {author}"
        self._run_git("commit", "-m", full_message)

        commit_hash = self._run_git("rev-parse", "HEAD").stdout.strip()
        logger.info(f"Committed state: {commit_hash[:8]} - {message}")
        return commit_hash

    def get_history(self, file_path: Optional[str] = None, limit: int = 20) -> list[CommitInfo]:
        """List commits, newest first."""
        if not self.is_initialized():
            return []

        args = ["log", "--format=%H|%h|%an|%aI|%s", f"-n{limit}"]
        if file_path:
            args.extend(["--", file_path])

        result = self._run_git(*args, check=False)
        if result.returncode != 0:
            return []

        commits = []
        for line in result.stdout.strip().split("\n"):
            parts = line.split("|", 4)
            if len(parts) < 5:
                continue
            try:
                commits.append(CommitInfo(
                    hash=parts[0],
                    short_hash=parts[1],
                    author=parts[2],
                    date=datetime.fromisoformat(parts[3]),
                    message=parts[4],
                ))
            except ValueError as e:
                logger.warning(f"Failed to parse commit: {e}")

        return commits

    def get_file_at_revision(self, file_path: str, revision: str = "HEAD") -> Optional[str]:
        """Get file contents at a revision, or None if absent."""
        if not self.is_initialized():
            return None

        result = self._run_git("show", f"{revision}:{file_path}", check=False)
        if result.returncode != 0:
            return None
        return result.stdout
