"""Git wrapper for workspace version control.

Provides subprocess-based git operations on the workspace directory:
staging, commits, history, and remote pull/push/sync. Pull and sync
mutate the document tree behind the metadata store's back, so callers
must reconcile after them.
"""

import base64
import logging
import os
import subprocess
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

logger = logging.getLogger(__name__)

LOCAL_TIMEOUT = 30
NETWORK_TIMEOUT = 300

DEFAULT_IGNORE_PATTERNS = (".docspace/index.db", ".docspace/cache/", ".DS_Store", "Thumbs.db")


class GitError(Exception):
    """Base exception for git operations.

    Attributes:
        message: Human-readable error message
        command: The git command that failed (if applicable)
        returncode: Exit code from git (if applicable)
        stderr: Error output from git (if applicable)
    """

    def __init__(
        self,
        message: str,
        command: Optional[List[str]] = None,
        returncode: Optional[int] = None,
        stderr: Optional[str] = None,
    ):
        self.message = message
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(message)

    def __str__(self) -> str:
        parts = [self.message]
        if self.command:
            parts.append(f"command: {' '.join(_redact(self.command))}")
        if self.returncode is not None:
            parts.append(f"returncode: {self.returncode}")
        if self.stderr:
            parts.append(f"stderr: {self.stderr[:200]}")
        return " | ".join(parts)


def _redact(command: Sequence[str]) -> List[str]:
    """Hide auth headers passed with ``-c`` from logs and error text."""
    return [
        "http.extraheader=<redacted>" if arg.startswith("http.extraheader=") else arg
        for arg in command
    ]


@dataclass
class GitVersion:
    """Represents a git version (commit).

    Attributes:
        commit_hash: Full SHA-1 hash of the commit
        timestamp: UTC datetime of the commit
        message: Commit subject line
    """

    commit_hash: str
    timestamp: datetime
    message: str = ""

    @property
    def short_hash(self) -> str:
        """Return the first 7 characters of the commit hash."""
        return self.commit_hash[:7]

    def to_dict(self) -> Dict[str, str]:
        return {
            "hash": self.commit_hash,
            "short_hash": self.short_hash,
            "timestamp": self.timestamp.isoformat(),
            "message": self.message,
        }

    def __str__(self) -> str:
        return f"{self.short_hash} ({self.timestamp.isoformat()})"


@dataclass
class GitStatus:
    """Working tree state of the workspace repository."""

    branch: Optional[str]
    staged: List[str] = field(default_factory=list)
    modified: List[str] = field(default_factory=list)
    untracked: List[str] = field(default_factory=list)
    ahead: int = 0
    behind: int = 0

    @property
    def is_clean(self) -> bool:
        return not (self.staged or self.modified or self.untracked)

    def to_dict(self) -> Dict[str, object]:
        return {
            "branch": self.branch,
            "staged": self.staged,
            "modified": self.modified,
            "untracked": self.untracked,
            "ahead": self.ahead,
            "behind": self.behind,
            "clean": self.is_clean,
        }


class GitWrapper:
    """Wrapper for git operations via subprocess.

    The repo_path is passed to git via the -C flag for all commands.
    """

    def __init__(
        self,
        repo_path: Path,
        user_name: str = "Docspace User",
        user_email: str = "docspace@localhost",
        ignore_patterns: Iterable[str] = DEFAULT_IGNORE_PATTERNS,
    ):
        """Initialize the GitWrapper.

        Args:
            repo_path: Path to the git repository root (the workspace).
            user_name: Committer name written to the local repo config.
            user_email: Committer email written to the local repo config.
            ignore_patterns: Lines ``.gitignore`` must contain.
        """
        self.repo_path = repo_path.resolve()
        self.user_name = user_name
        self.user_email = user_email
        self.ignore_patterns = list(ignore_patterns)

    def _run_git(
        self,
        args: List[str],
        check: bool = True,
        retries: int = 3,
        retry_delay: float = 0.1,
        timeout: int = LOCAL_TIMEOUT,
    ) -> subprocess.CompletedProcess:
        """Run a git command via subprocess with retry for lock contention.

        Args:
            args: Git command arguments (without 'git' prefix)
            check: If True, raise GitError on non-zero exit
            retries: Number of retries for index.lock contention (default: 3)
            retry_delay: Seconds to wait between retries (default: 0.1)
            timeout: Seconds before the command is abandoned

        Returns:
            CompletedProcess with command results

        Raises:
            GitError: If check=True and command fails after all retries
        """
        cmd = ["git", "-C", str(self.repo_path)] + args
        env = {**os.environ, "GIT_TERMINAL_PROMPT": "0"}
        last_error = None

        for attempt in range(retries + 1):
            try:
                result = subprocess.run(
                    cmd,
                    check=False,
                    capture_output=True,
                    text=True,
                    timeout=timeout,
                    env=env,
                )

                # Check for index.lock contention (can retry)
                if result.returncode != 0 and result.stderr:
                    if "index.lock" in result.stderr and attempt < retries:
                        logger.debug(
                            f"Git index.lock contention, retry {attempt + 1}/{retries}: "
                            f"{_redact(args)}"
                        )
                        time.sleep(retry_delay * (attempt + 1))
                        continue

                if check and result.returncode != 0:
                    raise GitError(
                        message=f"Git command failed: {' '.join(_redact(args))}",
                        command=cmd,
                        returncode=result.returncode,
                        stderr=result.stderr.strip() if result.stderr else None,
                    )

                return result

            except subprocess.TimeoutExpired as e:
                last_error = GitError(
                    message=f"Git command timed out ({timeout}s): {' '.join(_redact(args[:2]))}",
                    command=cmd,
                )
                # Network operations are not retried after a timeout
                if attempt < retries and timeout <= LOCAL_TIMEOUT:
                    time.sleep(retry_delay * (attempt + 1))
                    continue
                raise last_error from e
            except FileNotFoundError as e:
                raise GitError(
                    message="Git is not installed or not in PATH", command=cmd
                ) from e

        if last_error:
            raise last_error
        raise GitError(f"Git command failed after {retries} retries: {_redact(args)}")

    def _auth_args(self, credential: Optional[str]) -> List[str]:
        """Per-invocation config carrying an HTTP token.

        Passed with ``-c`` so the token never lands in ``.git/config``.
        """
        if not credential:
            return []
        token = base64.b64encode(f"x-access-token:{credential}".encode("utf-8")).decode("ascii")
        return ["-c", f"http.extraheader=Authorization: Basic {token}"]

    # ------------------------------------------------------------------
    # Repository setup
    # ------------------------------------------------------------------

    def is_repo(self) -> bool:
        return (self.repo_path / ".git").exists()

    def ensure_repo(self) -> bool:
        """Initialize the repository if ``.git`` doesn't exist.

        Writes the committer identity and a ``.gitignore`` that keeps the
        machine-local index out of history. A new repository also gets an
        initial commit. In an existing repository missing ignore patterns
        are appended and staged, and files matching them are untracked.

        Returns:
            True if a new repository was created.
        """
        if self.is_repo():
            logger.debug(f"Git repository already exists at {self.repo_path}")
            self._ensure_identity()
            if self._ensure_ignore_patterns():
                self._run_git(["add", ".gitignore"])
            self._run_git(
                ["rm", "-r", "--cached", "--ignore-unmatch", "-q", "--"] + self.ignore_patterns
            )
            return False

        logger.info(f"Initializing git repository at {self.repo_path}")
        self.repo_path.mkdir(parents=True, exist_ok=True)
        self._run_git(["init"])
        self._ensure_identity()
        self._ensure_ignore_patterns()

        self._run_git(["add", ".gitignore"])
        self._run_git(["commit", "-m", "Initialize Docspace workspace"])
        logger.info("Git repository initialized")
        return True

    def _ensure_ignore_patterns(self) -> bool:
        """Append the ignore patterns ``.gitignore`` lacks.

        Returns:
            True if the file was created or changed.
        """
        gitignore = self.repo_path / ".gitignore"
        existing = gitignore.read_text(encoding="utf-8") if gitignore.exists() else ""
        present = {line.strip() for line in existing.splitlines()}
        missing = [p for p in self.ignore_patterns if p not in present]
        if not missing:
            return False

        if existing and not existing.endswith("\n"):
            existing += "\n"
        gitignore.write_text(existing + "\n".join(missing) + "\n", encoding="utf-8")
        logger.info(f"Added {len(missing)} patterns to {gitignore.name}")
        return True

    def _ensure_identity(self) -> None:
        """Set user.name and user.email locally when the repo has none."""
        for key, value in (("user.name", self.user_name), ("user.email", self.user_email)):
            current = self._run_git(["config", "--get", key], check=False)
            if current.returncode != 0 or not current.stdout.strip():
                self._run_git(["config", key, value])

    # ------------------------------------------------------------------
    # Local operations
    # ------------------------------------------------------------------

    def _relative(self, path: Path) -> str:
        path = Path(path)
        if not path.is_absolute():
            return path.as_posix()
        try:
            return path.resolve().relative_to(self.repo_path).as_posix()
        except ValueError:
            raise GitError(f"File {path} is not under repo {self.repo_path}")

    def stage(self, paths: Iterable[Path]) -> None:
        """Stage additions, modifications and deletions of ``paths``."""
        present: List[str] = []
        removed: List[str] = []
        for p in paths:
            rel = self._relative(p)
            (present if (self.repo_path / rel).exists() else removed).append(rel)
        if present:
            # -A also records deletions inside staged directories
            self._run_git(["add", "-A", "--"] + present)
        if removed:
            self._run_git(["rm", "--cached", "--ignore-unmatch", "-q", "--"] + removed)

    def commit(self, message: str) -> Optional[GitVersion]:
        """Commit whatever is staged.

        Returns:
            The new HEAD version, or None when nothing was staged.
        """
        staged = self._run_git(["diff", "--cached", "--name-only"])
        if not staged.stdout.strip():
            logger.debug("Nothing staged, skipping commit")
            return None

        self._run_git(["commit", "-m", message])
        version = self.head_version()
        if version:
            logger.debug(f"Committed {version.short_hash}: {message}")
        return version

    def head_version(self) -> Optional[GitVersion]:
        """Get the HEAD commit version, or None if no commits exist."""
        result = self._run_git(["log", "-1", "--format=%H %ct %s"], check=False)
        if result.returncode != 0 or not result.stdout.strip():
            return None
        return self._parse_log_line(result.stdout.strip())

    def history(self, path: Optional[Path] = None, limit: int = 20) -> List[GitVersion]:
        """Get commit history, most recent first.

        Args:
            path: Restrict to commits touching this file, if given.
            limit: Maximum number of commits to return.
        """
        args = ["log", f"-{limit}", "--format=%H %ct %s"]
        if path is not None:
            args += ["--", self._relative(path)]
        result = self._run_git(args, check=False)
        if result.returncode != 0 or not result.stdout.strip():
            return []
        return [
            self._parse_log_line(line)
            for line in result.stdout.strip().split("\n")
            if line.strip()
        ]

    def file_at_commit(self, commit_hash: str, path: Path) -> str:
        """Content of ``path`` as of ``commit_hash``."""
        result = self._run_git(["show", f"{commit_hash}:{self._relative(path)}"])
        return result.stdout

    def _parse_log_line(self, line: str) -> GitVersion:
        """Parse a git log line in format '%H %ct %s'."""
        parts = line.strip().split(" ", 2)
        timestamp = datetime.fromtimestamp(int(parts[1]), tz=timezone.utc)
        message = parts[2] if len(parts) > 2 else ""
        return GitVersion(commit_hash=parts[0], timestamp=timestamp, message=message)

    def current_branch(self) -> Optional[str]:
        """Name of the checked-out branch, None when HEAD is detached."""
        result = self._run_git(["symbolic-ref", "--short", "-q", "HEAD"], check=False)
        branch = result.stdout.strip()
        return branch or None

    def status(self) -> GitStatus:
        """Summarize the working tree from ``git status --porcelain``."""
        result = self._run_git(["status", "--porcelain", "--untracked-files=all"])
        status = GitStatus(branch=self.current_branch())
        for line in result.stdout.splitlines():
            if len(line) < 4:
                continue
            index_state, tree_state, path = line[0], line[1], line[3:]
            if " -> " in path:
                path = path.split(" -> ", 1)[1]
            if index_state == "?":
                status.untracked.append(path)
                continue
            if index_state != " ":
                status.staged.append(path)
            if tree_state != " ":
                status.modified.append(path)

        if status.branch:
            counts = self._run_git(
                ["rev-list", "--left-right", "--count", f"{status.branch}...@{{upstream}}"],
                check=False,
            )
            if counts.returncode == 0 and counts.stdout.strip():
                ahead, behind = counts.stdout.split()
                status.ahead, status.behind = int(ahead), int(behind)
        return status

    # ------------------------------------------------------------------
    # Remotes
    # ------------------------------------------------------------------

    def get_remotes(self) -> Dict[str, str]:
        """Map of remote name to fetch URL."""
        result = self._run_git(["remote", "-v"], check=False)
        remotes: Dict[str, str] = {}
        for line in result.stdout.splitlines():
            parts = line.split()
            if len(parts) >= 3 and parts[2] == "(fetch)":
                remotes[parts[0]] = parts[1]
        return remotes

    def add_remote(self, name: str, url: str) -> None:
        """Add ``name`` pointing at ``url``, or repoint it if it exists."""
        if name in self.get_remotes():
            self._run_git(["remote", "set-url", name, url])
        else:
            self._run_git(["remote", "add", name, url])
        logger.info(f"Remote '{name}' set")

    def pull(self, remote: str = "origin", branch: str = "main",
             credential: Optional[str] = None) -> None:
        """Fetch and merge ``remote/branch`` into the current branch."""
        logger.info(f"Pulling {remote}/{branch}")
        self._run_git(
            self._auth_args(credential) + ["pull", "--no-rebase", "--no-edit", remote, branch],
            retries=0,
            timeout=NETWORK_TIMEOUT,
        )

    def push(self, remote: str = "origin", branch: str = "main",
             credential: Optional[str] = None) -> None:
        """Push the local branch to ``remote/branch``."""
        logger.info(f"Pushing to {remote}/{branch}")
        self._run_git(
            self._auth_args(credential) + ["push", "-u", remote, f"HEAD:{branch}"],
            retries=0,
            timeout=NETWORK_TIMEOUT,
        )

    def sync_with_remote(
        self,
        url: str,
        credential: Optional[str] = None,
        remote: str = "origin",
        branch: str = "main",
    ) -> None:
        """Connect the workspace to ``url`` and exchange history with it.

        Sets the remote, fetches, merges the remote branch when it exists
        (allowing unrelated histories for a first sync) and pushes.
        """
        self.add_remote(remote, url)
        auth = self._auth_args(credential)
        self._run_git(auth + ["fetch", remote], retries=0, timeout=NETWORK_TIMEOUT)

        remote_ref = f"refs/remotes/{remote}/{branch}"
        has_remote_branch = self._run_git(
            ["rev-parse", "--verify", "--quiet", remote_ref], check=False
        ).returncode == 0
        if has_remote_branch:
            self._run_git(
                ["merge", "--no-edit", "--allow-unrelated-histories", f"{remote}/{branch}"],
                retries=0,
            )
        else:
            logger.info(f"Remote has no branch '{branch}' yet; pushing local history")

        self._run_git(
            auth + ["push", "-u", remote, f"HEAD:{branch}"],
            retries=0,
            timeout=NETWORK_TIMEOUT,
        )
        logger.info(f"Synced with {remote}/{branch}")
