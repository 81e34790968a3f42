"""
git-reporter: Report and resolve drift across local Git repositories.

Fetches every working copy under a directory, reports how far its target branch
has fallen behind the remote, and optionally brings it up to date by stashing
local edits, pulling, and reapplying the stash it created.
"""

from __future__ import annotations

import json
import logging
import os
import queue
import secrets
import subprocess
import threading
import time
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import typer
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import Progress, SpinnerColumn, TextColumn

from ._version import __version__
from .formatters import OutputFormatter
from .schema import get_tool_schema

logger = logging.getLogger(__name__)

DEFAULT_BRANCH = "main"
DEFAULT_REMOTE = "origin"
CONFIG_FILE_NAME = ".rprc"
CONFIG_KEYS = frozenset({"branch", "update", "include", "exclude", "force", "remote_name"})

MAX_FETCH_ATTEMPTS = 30
DEFAULT_COMMAND_TIMEOUT = 300.0
STASH_MESSAGE = "Stashed by reporter"

# Porcelain status prefixes of unresolved merges.
UNMERGED = "U "
UNMERGED_ADDED = "UA"
UNMERGED_DELETED = "UD"
BOTH_MODIFIED = "UU"
CONFLICT_PREFIXES = (UNMERGED, UNMERGED_ADDED, UNMERGED_DELETED, BOTH_MODIFIED)


# =============================================================================
# Errors
# =============================================================================


class ReporterError(Exception):
    """Base class for git-reporter errors."""


class ConfigError(ReporterError):
    """Invalid or unreadable .rprc configuration."""


class RemoteURLError(ReporterError, ValueError):
    """A remote locator that cannot be resolved to owner/repository."""

    def __init__(self, message: str, kind: str):
        super().__init__(message)
        self.kind = kind  # "url" or "path"


class CircuitOpenError(ReporterError):
    """Raised when the circuit breaker rejects a call without running it."""


class CommandError(ReporterError):
    """A retried command that failed on every attempt."""


# =============================================================================
# Domain Models
# =============================================================================


class OutcomeKind(StrEnum):
    """Result of checking a single repository."""

    UP_TO_DATE = "up_to_date"
    DIVERGED = "diverged"
    UPDATED = "updated"
    FAILED = "failed"
    SKIPPED = "skipped"


class OutcomeStyle(StrEnum):
    """Display style the report buckets and colors outcomes by."""

    SUCCESS = "success"
    FAILURE = "failure"
    NEUTRAL = "neutral"


class CircuitState(StrEnum):
    """Circuit breaker state."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class SequencerState(StrEnum):
    """States of the safe-update sequence."""

    START = "start"
    PROBED = "probed"
    NOT_DIVERGED = "not_diverged"
    DIVERGED = "diverged"
    STATUS_CHECKED = "status_checked"
    CONFLICT_BLOCKED = "conflict_blocked"
    CONFLICT_ABORTED = "conflict_aborted"
    NO_CONFLICT = "no_conflict"
    STASHED = "stashed"
    BRANCH_SWITCHED = "branch_switched"
    INTEGRATED = "integrated"
    STASH_REAPPLIED = "stash_reapplied"
    NO_STASH_TO_REAPPLY = "no_stash_to_reapply"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass(frozen=True)
class SyncConfig:
    """Settings shared by every repository check."""

    branch: str = DEFAULT_BRANCH
    remote_name: str = DEFAULT_REMOTE
    auto_update: bool = False
    force: bool = False
    include: frozenset[str] = frozenset()
    exclude: frozenset[str] = frozenset()
    max_fetch_attempts: int = MAX_FETCH_ATTEMPTS
    command_timeout: float | None = DEFAULT_COMMAND_TIMEOUT

    @property
    def remote_branch(self) -> str:
        return f"{self.remote_name}/{self.branch}"

    def is_included(self, name: str) -> bool:
        return is_included(name, self.include, self.exclude)

    def to_dict(self) -> dict:
        return {
            "branch": self.branch,
            "remote_name": self.remote_name,
            "update": self.auto_update,
            "force": self.force,
            "include": sorted(self.include),
            "exclude": sorted(self.exclude),
        }


@dataclass(frozen=True)
class RepositoryTarget:
    """A resolved working copy."""

    path: Path
    name: str

    @classmethod
    def from_path(cls, path: Path) -> RepositoryTarget:
        return cls(path=path, name=path.name)


@dataclass(frozen=True)
class LastCommit:
    """Metadata of the newest commit on the remote branch."""

    author: str
    date: str
    short_hash: str
    subject: str

    def __str__(self) -> str:
        return f"{self.author} {self.date}\n{self.short_hash} {self.subject}"

    def to_dict(self) -> dict:
        return {
            "author": self.author,
            "date": self.date,
            "hash": self.short_hash,
            "subject": self.subject,
        }


@dataclass(frozen=True)
class DriftReport:
    """How far a local branch lags behind its remote counterpart.

    ``behind_count`` is kept as the decimal string git printed; it is only ever
    compared against "0"/"1" or interpolated into messages.
    """

    target: RepositoryTarget
    behind_count: str
    last_commit: LastCommit

    @property
    def is_diverged(self) -> bool:
        return self.behind_count != "0"

    @property
    def header(self) -> str:
        return (
            f"{self.target.name} is {self.behind_count} {commit_text(self.behind_count)} behind\n"
            f"Last commit by {self.last_commit}"
        )

    def to_dict(self) -> dict:
        return {
            "behind_count": self.behind_count,
            "last_commit": self.last_commit.to_dict(),
        }


@dataclass(frozen=True)
class StatusEntry:
    """One ``git status --porcelain`` line."""

    code: str
    path: str

    @classmethod
    def parse(cls, line: str) -> StatusEntry:
        return cls(code=line[:2], path=line[3:])

    @property
    def line(self) -> str:
        return f"{self.code} {self.path}"


@dataclass(frozen=True)
class WorkingTreeStatus:
    """Ordered porcelain status of a working tree."""

    entries: tuple[StatusEntry, ...] = ()

    @classmethod
    def from_porcelain(cls, output: str) -> WorkingTreeStatus:
        return cls(entries=tuple(StatusEntry.parse(line) for line in output.splitlines() if line))

    @property
    def lines(self) -> list[str]:
        return [entry.line for entry in self.entries]

    @property
    def is_dirty(self) -> bool:
        return bool(self.entries)

    def conflicts(self) -> tuple[bool, bool]:
        return has_conflicts(self.lines)


@dataclass
class UpdateOutcome:
    """What happened to one repository; the unit published to the result queue."""

    target: RepositoryTarget
    kind: OutcomeKind
    drift: DriftReport | None = None
    steps: list[str] = field(default_factory=list)
    reason: str = ""
    state: SequencerState = SequencerState.START
    stash_reapplied: bool = False
    reapply_state: SequencerState | None = None
    stash_left: str = ""

    @property
    def name(self) -> str:
        return self.target.name

    @property
    def path(self) -> Path:
        return self.target.path

    @property
    def style(self) -> OutcomeStyle:
        if self.kind == OutcomeKind.UP_TO_DATE:
            return OutcomeStyle.SUCCESS
        if self.kind == OutcomeKind.SKIPPED:
            return OutcomeStyle.NEUTRAL
        return OutcomeStyle.FAILURE

    @property
    def is_outdated(self) -> bool:
        return self.style == OutcomeStyle.FAILURE

    @property
    def narrative(self) -> list[str]:
        """Drift header followed by the steps taken so far."""
        lines: list[str] = []
        if self.drift is not None:
            lines.extend(self.drift.header.splitlines())
        if self.steps:
            lines.append(":.")
            lines.extend(f" {step}" for step in self.steps)
        return lines

    @property
    def message(self) -> str:
        match self.kind:
            case OutcomeKind.UP_TO_DATE:
                return f"{self.name} is up-to-date"
            case OutcomeKind.DIVERGED:
                return "\n".join(self.narrative)
            case OutcomeKind.UPDATED:
                return "\n".join([*self.narrative, f" {self.name} is up-to-date"])
            case _:
                return "\n".join([*self.narrative, self.reason])

    def to_dict(self) -> dict:
        return {
            "path": str(self.path),
            "name": self.name,
            "kind": self.kind.value,
            "style": self.style.value,
            "drift": self.drift.to_dict() if self.drift else None,
            "steps": list(self.steps),
            "reason": self.reason,
            "state": self.state.value,
            "stash_reapplied": self.stash_reapplied,
            "reapply_state": self.reapply_state.value if self.reapply_state else None,
            "stash_left": self.stash_left,
            "message": self.message,
        }


@dataclass
class FleetReport:
    """Outcomes partitioned for reporting, each list in queue-drain order."""

    outdated: list[UpdateOutcome] = field(default_factory=list)
    up_to_date: list[UpdateOutcome] = field(default_factory=list)
    diagnostics: list[UpdateOutcome] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.outdated) + len(self.up_to_date) + len(self.diagnostics)

    @classmethod
    def from_outcomes(cls, outcomes: Iterable[UpdateOutcome]) -> FleetReport:
        """Bucket outcomes by display style."""
        report = cls()
        for outcome in outcomes:
            if outcome.style == OutcomeStyle.FAILURE:
                report.outdated.append(outcome)
            elif outcome.style == OutcomeStyle.SUCCESS:
                report.up_to_date.append(outcome)
            else:
                report.diagnostics.append(outcome)
        return report

    def to_dict(self) -> dict:
        return {
            "outdated": [o.to_dict() for o in self.outdated],
            "up_to_date": [o.to_dict() for o in self.up_to_date],
            "diagnostics": [o.to_dict() for o in self.diagnostics],
            "summary": {
                "total": self.total,
                "outdated": len(self.outdated),
                "up_to_date": len(self.up_to_date),
                "diagnostics": len(self.diagnostics),
            },
        }


# =============================================================================
# Pure Helpers
# =============================================================================


def commit_text(behind_count: str) -> str:
    """Singular or plural "commit" for a behind count."""
    if behind_count == "1":
        return "commit"
    return "commits"


def is_included(name: str, include: Iterable[str], exclude: Iterable[str]) -> bool:
    """Check a repository name against the include and exclude lists.

    A non-empty include list is an allow-list, and a name on both lists is included.
    """
    include = set(include)
    if name in include:
        return True
    if name in set(exclude):
        return False
    return not include


def has_conflicts(status_lines: Iterable[str]) -> tuple[bool, bool]:
    """Scan porcelain status lines for unresolved merges.

    Returns (is_conflict, is_rebase). A both-modified entry is taken as a sign
    of an interrupted rebase; this is a heuristic, not a guarantee.
    """
    is_conflict = False
    is_rebase = False
    for line in status_lines:
        if line.startswith(CONFLICT_PREFIXES):
            is_conflict = True
            if line.startswith(BOTH_MODIFIED):
                is_rebase = True
    return is_conflict, is_rebase


def parse_remote_url(remote_url: str) -> tuple[str, str]:
    """Extract (owner, repository) from a remote URL or SSH-style locator.

    ``user@host:owner/repo.git`` is normalized to ``https://host/owner/repo.git``
    before parsing.
    """
    url = remote_url.strip()
    if "://" not in url and "@" in url and ":" in url:
        user_host, _, path = url.partition(":")
        host = user_host.rpartition("@")[2]
        url = f"https://{host}/{path}"

    try:
        parsed = urlparse(url)
    except ValueError as e:
        raise RemoteURLError(f"invalid URL: {remote_url}", kind="url") from e

    parts = [part for part in parsed.path.strip("/").split("/") if part]
    if len(parts) < 2:
        raise RemoteURLError(f"invalid URL path: {parsed.path}", kind="path")

    owner = parts[-2]
    repo = parts[-1].removesuffix(".git")
    return owner, repo


# =============================================================================
# Circuit Breaker & Retries
# =============================================================================


class CircuitBreaker:
    """Failure gate shared by every concurrent repository check.

    Consecutive failures are counted across all callers, so one unreachable
    network trips protection for the whole fan-out. While open, calls fail
    immediately with CircuitOpenError. After ``timeout`` seconds the breaker
    goes half-open and admits up to ``max_requests`` probe calls; that many
    consecutive successes close it again and any failure re-opens it. In the
    closed state counts are cleared every ``interval`` seconds.
    """

    def __init__(
        self,
        name: str = "git-command",
        *,
        max_requests: int = 5,
        interval: float = 60.0,
        timeout: float = 60.0,
        failure_threshold: int = 3,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.max_requests = max_requests
        self.interval = interval
        self.timeout = timeout
        self.failure_threshold = failure_threshold
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._generation = 0
        self._requests = 0
        self._consecutive_failures = 0
        self._consecutive_successes = 0
        self._opened_at: float | None = None
        self._expiry = self._clock() + interval if interval > 0 else 0.0

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._current_state(self._clock())

    @property
    def consecutive_failures(self) -> int:
        with self._lock:
            self._current_state(self._clock())
            return self._consecutive_failures

    @property
    def opened_at(self) -> float | None:
        with self._lock:
            return self._opened_at

    def call(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run ``func`` through the breaker; any exception counts as a failure."""
        generation = self._before_call()
        try:
            result = func(*args, **kwargs)
        except Exception:
            self._after_call(generation, success=False)
            raise
        self._after_call(generation, success=True)
        return result

    def _before_call(self) -> int:
        with self._lock:
            state = self._current_state(self._clock())
            if state == CircuitState.OPEN:
                raise CircuitOpenError(f"circuit breaker '{self.name}' is open")
            if state == CircuitState.HALF_OPEN and self._requests >= self.max_requests:
                raise CircuitOpenError(f"circuit breaker '{self.name}': too many requests")
            self._requests += 1
            return self._generation

    def _after_call(self, generation: int, success: bool) -> None:
        with self._lock:
            now = self._clock()
            state = self._current_state(now)
            if generation != self._generation:
                return
            if success:
                self._consecutive_failures = 0
                self._consecutive_successes += 1
                if (
                    state == CircuitState.HALF_OPEN
                    and self._consecutive_successes >= self.max_requests
                ):
                    self._set_state(CircuitState.CLOSED, now)
            else:
                self._consecutive_successes = 0
                self._consecutive_failures += 1
                if state == CircuitState.HALF_OPEN:
                    self._set_state(CircuitState.OPEN, now)
                elif self._consecutive_failures > self.failure_threshold:
                    self._set_state(CircuitState.OPEN, now)

    def _current_state(self, now: float) -> CircuitState:
        # Caller holds the lock.
        if self._state == CircuitState.CLOSED:
            if self.interval > 0 and self._expiry <= now:
                self._new_generation(now)
        elif self._state == CircuitState.OPEN:
            if self._expiry <= now:
                self._set_state(CircuitState.HALF_OPEN, now)
        return self._state

    def _set_state(self, state: CircuitState, now: float) -> None:
        if state == self._state:
            return
        logger.debug("circuit breaker %s: %s -> %s", self.name, self._state, state)
        self._state = state
        if state == CircuitState.OPEN:
            self._opened_at = now
        elif state == CircuitState.CLOSED:
            self._opened_at = None
        self._new_generation(now)

    def _new_generation(self, now: float) -> None:
        self._generation += 1
        self._requests = 0
        self._consecutive_failures = 0
        self._consecutive_successes = 0
        if self._state == CircuitState.CLOSED:
            self._expiry = now + self.interval if self.interval > 0 else 0.0
        elif self._state == CircuitState.OPEN:
            self._expiry = now + self.timeout
        else:
            self._expiry = 0.0


class CommandRunner:
    """Retries failing invocations with exponential backoff and jitter.

    The whole retry loop for one invocation counts as a single call of the
    shared circuit breaker.
    """

    def __init__(
        self,
        breaker: CircuitBreaker,
        *,
        base_delay_ms: int = 50,
        max_jitter_ms: int = 100,
        max_delay_ms: int = 30_000,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.breaker = breaker
        self.base_delay_ms = base_delay_ms
        self.max_jitter_ms = max_jitter_ms
        self.max_delay_ms = max_delay_ms
        self._sleep = sleep

    def backoff_delay(self, attempt: int) -> float:
        """Seconds to wait after ``attempt`` failed: base * 2^attempt + jitter."""
        jitter = secrets.randbelow(self.max_jitter_ms) if self.max_jitter_ms > 0 else 0
        delay_ms = min(self.base_delay_ms * (1 << attempt), self.max_delay_ms) + jitter
        return delay_ms / 1000

    def run(
        self,
        invocation: Callable[[], tuple[bool, str]],
        max_attempts: int,
        describe_failure: Callable[[str], str] | None = None,
    ) -> tuple[bool, str]:
        """Run ``invocation`` until it succeeds or attempts run out.

        ``describe_failure`` turns the last error text into the message
        returned once every attempt has failed.
        """
        try:
            self.breaker.call(self._attempt, invocation, max_attempts, describe_failure)
        except (CircuitOpenError, CommandError) as e:
            return False, str(e)
        return True, ""

    def _attempt(
        self,
        invocation: Callable[[], tuple[bool, str]],
        max_attempts: int,
        describe_failure: Callable[[str], str] | None,
    ) -> None:
        error = ""
        for attempt in range(1, max_attempts + 1):
            success, error = invocation()
            if success:
                return
            if attempt == max_attempts:
                break
            delay = self.backoff_delay(attempt)
            logger.debug(
                "attempt %d/%d failed (%s), retrying in %.3fs", attempt, max_attempts, error, delay
            )
            self._sleep(delay)

        if describe_failure is not None:
            raise CommandError(describe_failure(error))
        raise CommandError(f"Command failed after {max_attempts} attempts. {error}".strip())


# =============================================================================
# Git Operations (Repository State Probe)
# =============================================================================


def _run_git(
    args: Iterable[str],
    cwd: Path,
    timeout: float | None = DEFAULT_COMMAND_TIMEOUT,
    env: dict[str, str] | None = None,
) -> subprocess.CompletedProcess:
    """Run git, turning launch failures and timeouts into a non-zero result.

    Output is decoded as UTF-8 with replacement, since commit metadata may
    carry any legacy encoding.
    """
    cmd = ["git", *args]
    logger.debug("%s: %s", cwd, " ".join(cmd))
    try:
        return subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            encoding="utf-8",
            errors="replace",
            check=False,
            timeout=timeout,
            env=env,
        )
    except subprocess.TimeoutExpired:
        return subprocess.CompletedProcess(cmd, -1, "", f"timed out after {timeout}s")
    except OSError as e:
        return subprocess.CompletedProcess(cmd, -1, "", str(e))


def is_git_repository(path: Path) -> bool:
    """Check if a directory is inside a Git working tree."""
    result = _run_git(["rev-parse", "--is-inside-work-tree"], cwd=path)
    return result.returncode == 0 and result.stdout.strip() == "true"


def resolve_git_root(path: Path) -> tuple[Path | None, str]:
    """Return the top-level directory of the working copy containing ``path``."""
    result = _run_git(["rev-parse", "--show-toplevel"], cwd=path)
    if result.returncode != 0:
        return None, result.stderr.strip() or f"exit status {result.returncode}"
    return Path(result.stdout.strip()), ""


class GitOperations:
    """Read-only queries and narrow mutations against a single repository."""

    def __init__(
        self,
        repo_path: Path,
        runner: CommandRunner | None = None,
        timeout: float | None = DEFAULT_COMMAND_TIMEOUT,
    ):
        self.repo_path = repo_path
        self.runner = runner
        self.timeout = timeout

    def _run(self, *args: str, env: dict[str, str] | None = None) -> subprocess.CompletedProcess:
        """Run a git command in the repository."""
        return _run_git(args, cwd=self.repo_path, timeout=self.timeout, env=env)

    def _succeeds(self, *args: str) -> bool:
        return self._run(*args).returncode == 0

    def remote_exists(self, remote: str) -> bool:
        """Check if the named remote is configured."""
        return self._succeeds("remote", "get-url", remote)

    def get_remote_url(self, remote: str) -> tuple[str, str]:
        """Get the fetch URL of a remote."""
        result = self._run("remote", "get-url", remote)
        if result.returncode != 0:
            return "", result.stderr.strip()
        return result.stdout.strip(), ""

    def describe_fetch_failure(self, remote: str, error: str) -> str:
        """Explain an exhausted fetch, naming the remote repository when possible."""
        url, url_error = self.get_remote_url(remote)
        if not url:
            return f"Could not fetch from {remote}: {url_error or error}"
        try:
            owner, repo = parse_remote_url(url)
        except RemoteURLError as e:
            logger.debug("cannot resolve remote %s (%s): %s", remote, url, e)
            return f"Could not fetch from {remote}: {error}"
        return f"The remote repository {owner}/{repo} may not exist or was deleted."

    def fetch(self, remote: str, max_attempts: int = MAX_FETCH_ATTEMPTS) -> tuple[bool, str]:
        """Fetch a remote, retrying through the shared runner."""

        def invocation() -> tuple[bool, str]:
            result = self._run("fetch", remote)
            if result.returncode != 0:
                return False, result.stderr.strip() or f"exit status {result.returncode}"
            return True, ""

        if self.runner is None:
            return invocation()
        return self.runner.run(
            invocation,
            max_attempts,
            describe_failure=lambda error: self.describe_fetch_failure(remote, error),
        )

    def branch_exists_locally(self, branch: str) -> bool:
        return self._succeeds("rev-parse", "--verify", "--quiet", f"refs/heads/{branch}")

    def branch_exists_remotely(self, remote: str, branch: str) -> bool:
        return self._succeeds("rev-parse", "--verify", "--quiet", f"refs/remotes/{remote}/{branch}")

    def commits_behind(self, branch: str, remote: str) -> tuple[str | None, str]:
        """Count commits on remote/branch that are missing from branch."""
        result = self._run("rev-list", "--count", f"{branch}..{remote}/{branch}")
        if result.returncode != 0:
            return None, f"{result.stderr.strip()} (exit status {result.returncode})"
        return result.stdout.strip(), ""

    def last_commit(self, remote: str, branch: str) -> tuple[LastCommit | None, str]:
        """Author, date, short hash and subject of the newest remote commit."""
        env = {**os.environ, "LC_ALL": "C", "LC_TIME": "C"}
        result = self._run(
            "log", "-1", "--date=default", "--format=%an%x1f%ad%x1f%h%x1f%s",
            f"{remote}/{branch}", "--",
            env=env,
        )
        if result.returncode != 0:
            return None, result.stderr.strip() or f"exit status {result.returncode}"
        fields = result.stdout.strip("\n").split("\x1f")
        if len(fields) != 4:
            return None, f"unexpected log output: {result.stdout.strip()!r}"
        author, date, short_hash, subject = fields
        return LastCommit(author=author, date=date, short_hash=short_hash, subject=subject), ""

    def status(self) -> tuple[WorkingTreeStatus | None, str]:
        """Porcelain working tree status."""
        result = self._run("status", "--porcelain")
        if result.returncode != 0:
            return None, result.stderr.strip() or f"exit status {result.returncode}"
        return WorkingTreeStatus.from_porcelain(result.stdout), ""

    def abort_rebase(self) -> bool:
        return self._succeeds("rebase", "--abort")

    def abort_merge(self) -> bool:
        return self._succeeds("merge", "--abort")

    def stash_push(self, message: str) -> bool:
        return self._succeeds("stash", "push", "-m", message)

    def top_stash(self) -> str | None:
        """Reflog subject of stash@{0}, e.g. "On main: message"."""
        result = self._run("stash", "list", "-n", "1", "--format=%gs")
        if result.returncode != 0 or not result.stdout.strip():
            return None
        return result.stdout.strip()

    def stash_pop(self) -> bool:
        return self._succeeds("stash", "pop")

    def checkout(self, branch: str) -> bool:
        return self._succeeds("checkout", branch)

    def pull(self, remote: str, branch: str) -> tuple[bool, str]:
        """Integrate remote/branch into the checked out branch."""
        result = self._run("pull", "--no-rebase", "--no-edit", remote, branch)
        if result.returncode != 0:
            return False, result.stderr.strip() or result.stdout.strip()
        return True, result.stdout.strip()

    def log_behind(self, branch: str, remote: str) -> tuple[bool, str]:
        """Full log of the commits branch is missing."""
        result = self._run("log", f"{branch}..{remote}/{branch}")
        if result.returncode != 0:
            return False, result.stderr.strip()
        return True, result.stdout


# =============================================================================
# Safe-Update Sequencer
# =============================================================================


class SafeUpdateSequencer:
    """Bring a diverged repository up to date without losing local edits.

    Steps: abort conflicts (only when forcing), stash, switch branch, pull,
    then pop the stash only if it is the one this run created. Every failure
    is terminal and keeps the narrative of the steps already taken.
    """

    def __init__(self, ops: GitOperations, config: SyncConfig, drift: DriftReport):
        self.ops = ops
        self.config = config
        self.drift = drift
        self.steps: list[str] = []
        self.state = SequencerState.DIVERGED
        self.stash_message = f"{STASH_MESSAGE} ({secrets.token_hex(4)})"

    @property
    def name(self) -> str:
        return self.drift.target.name

    def _transition(self, state: SequencerState) -> None:
        logger.debug("%s: %s -> %s", self.name, self.state, state)
        self.state = state

    def _fail(self, reason: str) -> UpdateOutcome:
        failed_in = self.state
        self._transition(SequencerState.FAILED)
        logger.warning("%s: update stopped after %s: %s", self.name, failed_in, reason)
        return UpdateOutcome(
            target=self.drift.target,
            kind=OutcomeKind.FAILED,
            drift=self.drift,
            steps=list(self.steps),
            reason=reason,
            state=failed_in,
        )

    def _own_stash_label(self) -> str:
        return f"On {self.config.branch}: {self.stash_message}"

    def run(self) -> UpdateOutcome:
        status, error = self.ops.status()
        if status is None:
            return self._fail(f"Error checking status for {self.name}\n{error}")
        self._transition(SequencerState.STATUS_CHECKED)

        is_conflict, is_rebase = status.conflicts()
        if is_conflict:
            if not self.config.force:
                self._transition(SequencerState.CONFLICT_BLOCKED)
                return self._fail(
                    f"{self.name} has merge conflicts in file(s) or there's a rebase in progress.\n"
                    "To update anyway use --update --force. This aborts rebase and merge conflicts."
                )
            self.steps.append("Forcing update...")
            if is_rebase:
                if not self.ops.abort_rebase():
                    return self._fail(f"Error aborting rebase {self.name}")
            elif not self.ops.abort_merge():
                return self._fail(f"Error aborting merge {self.name}")
            self._transition(SequencerState.CONFLICT_ABORTED)

            # Aborting rewrites the working tree.
            status, error = self.ops.status()
            if status is None:
                return self._fail(f"Error checking status for {self.name}\n{error}")
        else:
            self._transition(SequencerState.NO_CONFLICT)

        stashed = False
        if status.is_dirty:
            self.steps.append("Stashing local changes")
            if not self.ops.stash_push(self.stash_message):
                return self._fail(f"Error stashing changes in {self.name}")
            # Untracked-only trees produce no stash entry.
            top = self.ops.top_stash()
            stashed = top is not None and top.endswith(f": {self.stash_message}")
            if stashed:
                self._transition(SequencerState.STASHED)
            else:
                self.steps[-1] = "Nothing to stash (untracked files left in place)"

        if not self.ops.checkout(self.config.branch):
            return self._fail(
                f"Error checking out branch {self.config.branch} in repository {self.name}"
            )
        self._transition(SequencerState.BRANCH_SWITCHED)

        self.steps.append("Pulling latest changes")
        success, error = self.ops.pull(self.config.remote_name, self.config.branch)
        if not success:
            return self._fail(
                f"Error pulling {self.config.remote_branch} in repository {self.name}\n{error}"
            )
        self._transition(SequencerState.INTEGRATED)

        reapplied = False
        stash_left = ""
        if stashed and self.ops.top_stash() == self._own_stash_label():
            self.steps.append("Applying stashed changes")
            if not self.ops.stash_pop():
                return self._fail(f"Error applying stash in {self.name}")
            reapplied = True
            self._transition(SequencerState.STASH_REAPPLIED)
        else:
            if stashed:
                # Own stash exists but is not the top entry for the target branch.
                stash_left = self.stash_message
                self.steps.append(f"Local changes left in stash '{stash_left}'")
                logger.warning(
                    "%s: stash '%s' is not the top entry for %s, leaving it in place",
                    self.name,
                    self.stash_message,
                    self.config.branch,
                )
            self._transition(SequencerState.NO_STASH_TO_REAPPLY)

        reapply_state = self.state
        self._transition(SequencerState.SUCCESS)
        return UpdateOutcome(
            target=self.drift.target,
            kind=OutcomeKind.UPDATED,
            drift=self.drift,
            steps=list(self.steps),
            state=self.state,
            stash_reapplied=reapplied,
            reapply_state=reapply_state,
            stash_left=stash_left,
        )


# =============================================================================
# Repository Check
# =============================================================================


class GitRepository:
    """Probe one directory for drift and hand diverged ones to the sequencer."""

    def __init__(self, path: Path, config: SyncConfig, runner: CommandRunner | None = None):
        self.path = path
        self.name = path.name
        self.config = config
        self.runner = runner

    def _outcome(
        self, target: RepositoryTarget, kind: OutcomeKind, reason: str = "", **kwargs: Any
    ) -> UpdateOutcome:
        if kind == OutcomeKind.FAILED:
            logger.warning("%s: %s", target.name, reason)
        return UpdateOutcome(target=target, kind=kind, reason=reason, **kwargs)

    def probe(self) -> DriftReport | UpdateOutcome:
        """Fetch and measure drift; returns an outcome when probing stops early."""
        root, error = resolve_git_root(self.path)
        if root is None:
            return self._outcome(
                RepositoryTarget.from_path(self.path),
                OutcomeKind.FAILED,
                f"Error getting Git root for {self.path}: {error}",
            )

        target = RepositoryTarget.from_path(root)
        ops = GitOperations(root, self.runner, timeout=self.config.command_timeout)
        branch = self.config.branch
        remote = self.config.remote_name

        if not ops.remote_exists(remote):
            return self._outcome(
                target, OutcomeKind.SKIPPED, f"No remote named '{remote}' found for {target.name}"
            )

        success, error = ops.fetch(remote, self.config.max_fetch_attempts)
        if not success:
            return self._outcome(
                target, OutcomeKind.FAILED, f"Error fetching {target.name}. {error}"
            )

        if not ops.branch_exists_locally(branch):
            return self._outcome(
                target,
                OutcomeKind.SKIPPED,
                f"Branch {branch} does not exist in repository {target.name}",
            )
        if not ops.branch_exists_remotely(remote, branch):
            return self._outcome(
                target,
                OutcomeKind.SKIPPED,
                f"Remote branch {branch} does not exist in repository {target.name}",
            )

        behind_count, error = ops.commits_behind(branch, remote)
        if behind_count is None:
            return self._outcome(
                target, OutcomeKind.FAILED, f"Error checking rev-list {target.name}: {error}"
            )

        last_commit, error = ops.last_commit(remote, branch)
        if last_commit is None:
            return self._outcome(
                target,
                OutcomeKind.FAILED,
                f"Error checking last commit author {target.name}: {error}",
            )

        return DriftReport(target=target, behind_count=behind_count, last_commit=last_commit)

    def check(self) -> UpdateOutcome:
        """Run the full probe and, when enabled, the safe update."""
        probed = self.probe()
        if isinstance(probed, UpdateOutcome):
            return probed

        drift = probed
        if not drift.is_diverged:
            return self._outcome(
                drift.target,
                OutcomeKind.UP_TO_DATE,
                drift=drift,
                state=SequencerState.NOT_DIVERGED,
            )
        if not self.config.auto_update:
            return self._outcome(
                drift.target, OutcomeKind.DIVERGED, drift=drift, state=SequencerState.DIVERGED
            )

        ops = GitOperations(drift.target.path, self.runner, timeout=self.config.command_timeout)
        return SafeUpdateSequencer(ops, self.config, drift).run()


# =============================================================================
# Concurrent Orchestrator
# =============================================================================


def discover_repositories(root_path: Path) -> tuple[list[Path], bool]:
    """Find the directories to check.

    Returns ([root_path], True) when root_path is itself a working copy,
    otherwise its immediate subdirectories that are working copies and False.
    Raises OSError when root_path cannot be listed.
    """
    if is_git_repository(root_path):
        return [root_path], True
    candidates = sorted(p for p in root_path.iterdir() if p.is_dir())
    return [p for p in candidates if is_git_repository(p)], False


class ReporterFleet:
    """Check many repositories at once, one worker per repository."""

    def __init__(
        self,
        directories: list[Path],
        config: SyncConfig,
        *,
        breaker: CircuitBreaker | None = None,
        runner: CommandRunner | None = None,
        max_workers: int | None = None,
    ):
        self.directories = directories
        self.config = config
        self.breaker = breaker or CircuitBreaker()
        self.runner = runner or CommandRunner(self.breaker)
        self.max_workers = max_workers

    def selected(self) -> list[Path]:
        """Directories that survive the include/exclude lists."""
        return [d for d in self.directories if self.config.is_included(d.name)]

    def _check_one(self, directory: Path, results: queue.Queue[UpdateOutcome]) -> None:
        try:
            outcome = GitRepository(directory, self.config, self.runner).check()
        except Exception as e:
            logger.exception("unexpected error checking %s", directory)
            outcome = UpdateOutcome(
                target=RepositoryTarget.from_path(directory),
                kind=OutcomeKind.FAILED,
                reason=f"Error checking {directory.name}: {e}",
                state=SequencerState.FAILED,
            )
        results.put(outcome)

    def run(self, sequential: bool = False) -> list[UpdateOutcome]:
        """Check every selected directory and return outcomes in completion order."""
        directories = self.selected()
        results: queue.Queue[UpdateOutcome] = queue.Queue(maxsize=len(directories) or 1)

        if sequential or len(directories) <= 1:
            for directory in directories:
                self._check_one(directory, results)
        else:
            workers = self.max_workers or len(directories)
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="rp") as executor:
                for directory in directories:
                    executor.submit(self._check_one, directory, results)

        outcomes = []
        while True:
            try:
                outcomes.append(results.get_nowait())
            except queue.Empty:
                break
        return outcomes

    def report(self, sequential: bool = False) -> FleetReport:
        return FleetReport.from_outcomes(self.run(sequential=sequential))


# =============================================================================
# Configuration
# =============================================================================


def find_config_file(start: Path) -> Path | None:
    """Look for .rprc in ``start`` and then each parent directory."""
    current = start.resolve()
    for directory in (current, *current.parents):
        candidate = directory / CONFIG_FILE_NAME
        if candidate.is_file():
            return candidate
    return None


def load_config_file(config_path: Path) -> dict[str, Any]:
    """Read and validate a .rprc file."""
    try:
        text = config_path.read_text()
    except OSError as e:
        raise ConfigError(f"Error reading {config_path}: {e}") from e

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigError(f"Error parsing {config_path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Error in {config_path}: expected a mapping of settings")

    for key in data:
        if key not in CONFIG_KEYS:
            raise ConfigError(f"Error unsupported key in config file: {key}")

    for key in ("update", "force"):
        if key in data and not isinstance(data[key], bool):
            raise ConfigError(f"Error in {config_path}: '{key}' must be true or false")
    for key in ("branch", "remote_name"):
        if key in data and data[key] is not None and not isinstance(data[key], str):
            raise ConfigError(f"Error in {config_path}: '{key}' must be a string")
    for key in ("include", "exclude"):
        value = data.get(key)
        if value is not None and (
            not isinstance(value, list) or not all(isinstance(v, str) for v in value)
        ):
            raise ConfigError(f"Error in {config_path}: '{key}' must be a list of names")

    return data


def build_config(
    file_values: dict[str, Any] | None = None,
    *,
    branch: str | None = None,
    remote: str | None = None,
    update: bool = False,
    force: bool = False,
    max_fetch_attempts: int = MAX_FETCH_ATTEMPTS,
    command_timeout: float | None = DEFAULT_COMMAND_TIMEOUT,
) -> SyncConfig:
    """Merge defaults, .rprc values and command line flags, in that order."""
    values = file_values or {}
    return SyncConfig(
        branch=branch or values.get("branch") or DEFAULT_BRANCH,
        remote_name=remote or values.get("remote_name") or DEFAULT_REMOTE,
        auto_update=update or bool(values.get("update", False)),
        force=force or bool(values.get("force", False)),
        include=frozenset(values.get("include") or ()),
        exclude=frozenset(values.get("exclude") or ()),
        max_fetch_attempts=max_fetch_attempts,
        command_timeout=command_timeout,
    )


def configure_logging(verbose: bool) -> None:
    """Send package logs to stderr through rich."""
    package_logger = logging.getLogger(__name__.rpartition(".")[0])
    for handler in list(package_logger.handlers):
        if isinstance(handler, RichHandler):
            package_logger.removeHandler(handler)
    handler = RichHandler(console=Console(stderr=True), show_path=False)
    handler.setFormatter(logging.Formatter("%(message)s"))
    package_logger.addHandler(handler)
    package_logger.setLevel(logging.DEBUG if verbose else logging.WARNING)


# =============================================================================
# CLI Application
# =============================================================================


app = typer.Typer(
    name="rp",
    help="Report and resolve drift across multiple Git repositories.",
    context_settings={"help_option_names": ["-h", "--help"]},
    add_completion=False,
)


def version_callback(value: bool):
    """Print version and exit."""
    if value:
        print(f"git-reporter {__version__}")
        raise typer.Exit()


def get_console_and_formatter(json_output: bool) -> tuple[Console, OutputFormatter]:
    """Create console and formatter."""
    console = Console(force_terminal=not json_output)
    formatter = OutputFormatter(console, use_json=json_output)
    return console, formatter


@app.command()
def main(
    path: Path = typer.Argument(
        None,
        help="Repository, or directory of repositories, to check (default: current directory)",
    ),
    update: bool = typer.Option(
        False,
        "--update",
        "-u",
        help="Automatically update repositories that are behind",
    ),
    branch: str = typer.Option(
        None,
        "--branch",
        "-b",
        help="Branch to check (default: main)",
    ),
    remote: str = typer.Option(
        None,
        "--remote",
        "-r",
        help="Remote name (default: origin)",
    ),
    force: bool = typer.Option(
        False,
        "--force",
        "-f",
        help="Abort rebase and merge conflicts so the update can proceed",
    ),
    show_log: bool = typer.Option(
        False,
        "--log",
        "-l",
        help="Show the complete list of incoming changes using git log",
    ),
    json_output: bool = typer.Option(
        False,
        "--json",
        "-j",
        help="Output as JSON",
    ),
    sequential: bool = typer.Option(
        False,
        "--sequential",
        "-s",
        help="Run sequentially instead of parallel",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Log every git invocation to stderr",
    ),
    schema: bool = typer.Option(
        False,
        "--schema",
        help="Output MCP-compatible tool schema for AI agents",
    ),
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
):
    """Report repositories that are behind their remote branch and optionally update them."""
    if schema:
        print(json.dumps(get_tool_schema(), indent=2))
        raise typer.Exit()

    configure_logging(verbose)
    console, formatter = get_console_and_formatter(json_output)
    target_path = (path if path else Path(".")).resolve()

    file_values: dict[str, Any] = {}
    config_path = find_config_file(target_path)
    if config_path is not None:
        try:
            file_values = load_config_file(config_path)
        except ConfigError as e:
            console.print(f"[red]Error loading config: {e}[/]")
            raise typer.Exit(1)

    config = build_config(file_values, branch=branch, remote=remote, update=update, force=force)

    if show_log:
        if not is_git_repository(target_path):
            console.print(f"[red]Error: {target_path} is not a Git repository[/]")
            raise typer.Exit(1)
        success, output = GitOperations(target_path).log_behind(config.branch, config.remote_name)
        if not success:
            console.print(f"[red]Error running git log: {output}[/]")
            raise typer.Exit(1)
        formatter.print_log(output)
        return

    try:
        directories, single = discover_repositories(target_path)
    except OSError as e:
        console.print(f"[red]Error reading {target_path}: {e}[/]")
        raise typer.Exit(1)

    fleet = ReporterFleet(directories, config)
    if not json_output:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
            transient=True,
        ) as progress:
            progress.add_task("Fetching and analyzing...", total=None)
            report = fleet.report(sequential=sequential)
    else:
        report = fleet.report(sequential=sequential)

    formatter.print_report(report, config, single=single)
