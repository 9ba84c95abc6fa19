"""
gitsync: keep a directory full of Git clones in sync with their remotes.

Discovers every repository under a root directory, fetches each one and
fast-forwards, pushes, or flags it depending on how far it is ahead of or
behind its remote tracking branch. All repositories are processed
concurrently on a single asyncio event loop.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from enum import StrEnum
from pathlib import Path
from typing import Protocol

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from ._version import __version__
from .formatters import OutputFormatter, ReportWriter

logger = logging.getLogger("gitsync")

GIT_DIR_NAME = ".git"
SKIPPED_DIR_NAMES = frozenset({"node_modules"})
DEFAULT_TIMEOUT = 60.0
KILL_GRACE_PERIOD = 5.0

# =============================================================================
# Errors
# =============================================================================


class GitSyncError(Exception):
    """Base class for errors that abort the whole run."""


class ConfigError(GitSyncError):
    """Configuration is missing or malformed."""


class DiscoveryError(GitSyncError):
    """The root directory cannot be scanned."""


# =============================================================================
# Domain Models
# =============================================================================


class SyncAction(StrEnum):
    """What to do with a repository once its ahead/behind counts are known."""

    NO_ACTION_NEEDED = "NoActionNeeded"
    FAST_FORWARD_MERGE = "FastForwardMerge"
    PUSH = "Push"
    REPORT_PUSH_NEEDED = "ReportPushNeeded"
    FLAG_MANUAL_RESOLUTION = "FlagManualResolution"


class SyncOutcome(StrEnum):
    """Final result of one repository's pipeline."""

    PENDING = "Pending"
    OK = "Ok"
    AHEAD_NEEDS_PUSH = "AheadNeedsPush"
    AHEAD_PUSHED = "AheadPushed"
    BEHIND_MERGED = "BehindMerged"
    DIVERGED = "Diverged"
    ERROR = "Error"


class ErrorKind(StrEnum):
    """Per-repository failure, identified by the step that failed."""

    FETCH_FAILED = "FetchFailed"
    BRANCH_UNRESOLVED = "BranchUnresolved"
    NO_TRACKING_BRANCH = "NoTrackingBranch"
    BEHIND_CHECK_FAILED = "BehindCheckFailed"
    MERGE_BLOCKED = "MergeBlocked"
    PUSH_FAILED = "PushFailed"
    TIMEOUT = "Timeout"
    UNEXPECTED = "Unexpected"


class PipelineStage(StrEnum):
    """States of the per-repository sync state machine."""

    START = "start"
    FETCHING = "fetching"
    BRANCH_RESOLVING = "branch_resolving"
    COUNTING_AHEAD = "counting_ahead"
    COUNTING_BEHIND = "counting_behind"
    ACTING = "acting"
    DONE = "done"
    ERROR = "error"


TERMINAL_STAGES = frozenset({PipelineStage.DONE, PipelineStage.ERROR})


@dataclass(frozen=True)
class RepositoryLocation:
    """Location of a discovered repository."""

    git_dir: Path

    @property
    def work_tree(self) -> Path:
        return self.git_dir.parent

    @property
    def name(self) -> str:
        return self.work_tree.name


@dataclass(frozen=True)
class SyncOptions:
    """Run-wide settings, built once at startup."""

    root: Path
    push_enabled: bool = False
    verbose: bool = False
    timeout: float = DEFAULT_TIMEOUT
    json_output: bool = False


@dataclass(frozen=True)
class CommandOutcome:
    """Result of a single git invocation."""

    exited_cleanly: bool
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False


@dataclass
class RepositoryState:
    """Evolving state of one repository's sync pipeline."""

    location: RepositoryLocation
    stage: PipelineStage = PipelineStage.START
    branch: str | None = None
    ahead_count: int | None = None
    behind_count: int | None = None
    outcome: SyncOutcome = SyncOutcome.PENDING
    error_kind: ErrorKind | None = None
    error_detail: str = ""
    failed_stage: PipelineStage | None = None

    @property
    def is_error(self) -> bool:
        return self.outcome == SyncOutcome.ERROR

    def settle(self, outcome: SyncOutcome) -> PipelineStage:
        """Record the terminal outcome. Outcomes are set exactly once."""
        if self.outcome != SyncOutcome.PENDING:
            raise RuntimeError(
                f"{self.location.work_tree}: outcome already {self.outcome}, cannot set {outcome}"
            )
        self.outcome = outcome
        return PipelineStage.DONE

    def fail(self, kind: ErrorKind, detail: str = "") -> PipelineStage:
        """Record a failure at the current stage."""
        if self.outcome != SyncOutcome.PENDING:
            raise RuntimeError(
                f"{self.location.work_tree}: outcome already {self.outcome}, cannot fail with {kind}"
            )
        self.outcome = SyncOutcome.ERROR
        self.error_kind = kind
        self.error_detail = detail
        self.failed_stage = self.stage
        return PipelineStage.ERROR

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON output."""
        return {
            "path": str(self.location.work_tree),
            "name": self.location.name,
            "branch": self.branch,
            "ahead_count": self.ahead_count,
            "behind_count": self.behind_count,
            "outcome": self.outcome.value,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "failed_stage": self.failed_stage.value if self.failed_stage else None,
            "error_detail": self.error_detail,
        }


@dataclass
class FleetSummary:
    """Summary of a sync run."""

    total: int = 0
    ok: int = 0
    merged: int = 0
    pushed: int = 0
    needs_push: int = 0
    diverged: int = 0
    errors: int = 0

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_states(cls, states: list[RepositoryState]) -> FleetSummary:
        """Build a summary from finished pipeline states."""
        counters = {
            SyncOutcome.OK: "ok",
            SyncOutcome.BEHIND_MERGED: "merged",
            SyncOutcome.AHEAD_PUSHED: "pushed",
            SyncOutcome.AHEAD_NEEDS_PUSH: "needs_push",
            SyncOutcome.DIVERGED: "diverged",
            SyncOutcome.ERROR: "errors",
        }
        summary = cls(total=len(states))
        for state in states:
            attr = counters.get(state.outcome)
            if attr:
                setattr(summary, attr, getattr(summary, attr) + 1)
        return summary


# =============================================================================
# Sync Classifier
# =============================================================================


def classify(ahead: int, behind: int, push_enabled: bool) -> SyncAction:
    """Decide what to do with a repository from its ahead/behind counts.

    Diverged histories are never resolved automatically.
    """
    if ahead < 0 or behind < 0:
        raise ValueError(f"commit counts must be non-negative, got ahead={ahead} behind={behind}")

    if ahead == 0 and behind == 0:
        return SyncAction.NO_ACTION_NEEDED
    if ahead == 0:
        return SyncAction.FAST_FORWARD_MERGE
    if behind == 0:
        return SyncAction.PUSH if push_enabled else SyncAction.REPORT_PUSH_NEEDED
    return SyncAction.FLAG_MANUAL_RESOLUTION


# =============================================================================
# Repository Discovery
# =============================================================================


def discover_repositories(root: Path) -> list[RepositoryLocation]:
    """Find all Git repositories under root, depth-first in name order.

    A ``.git`` directory ends descent for that entry; ``node_modules`` is
    never entered. Symlinked directories are not followed.
    """
    root = root.expanduser()
    if not root.exists():
        raise DiscoveryError(f"Root directory does not exist: {root}")
    if not root.is_dir():
        raise DiscoveryError(f"Root path is not a directory: {root}")
    try:
        entries = _sorted_subdirectories(root)
    except OSError as e:
        raise DiscoveryError(f"Cannot read root directory {root}: {e}") from e

    found: list[RepositoryLocation] = []
    _walk(entries, found)
    return found


def _sorted_subdirectories(path: Path) -> list[os.DirEntry]:
    with os.scandir(path) as it:
        entries = [entry for entry in it if entry.is_dir(follow_symlinks=False)]
    entries.sort(key=lambda entry: entry.name)
    return entries


def _walk(entries: list[os.DirEntry], found: list[RepositoryLocation]) -> None:
    # explicit stack of directory iterators keeps depth-first order without recursion
    stack = [iter(entries)]
    while stack:
        entry = next(stack[-1], None)
        if entry is None:
            stack.pop()
        elif entry.name == GIT_DIR_NAME:
            found.append(RepositoryLocation(Path(entry.path).resolve()))
        elif entry.name not in SKIPPED_DIR_NAMES:
            try:
                children = _sorted_subdirectories(Path(entry.path))
            except OSError as e:
                logger.warning("Skipping unreadable directory %s: %s", entry.path, e)
                continue
            stack.append(iter(children))


# =============================================================================
# Command Executor
# =============================================================================


class CommandExecutor(Protocol):
    """Runs one git command against one repository."""

    async def run(self, location: RepositoryLocation, *args: str) -> CommandOutcome: ...


class GitCommandRunner:
    """Run git as an asyncio subprocess with a per-command timeout.

    Never raises: spawn errors and timeouts are reported as unclean
    outcomes.
    """

    def __init__(self, timeout: float = DEFAULT_TIMEOUT, git: str = "git"):
        self.timeout = timeout
        self.git = git
        self._env = {**os.environ, "GIT_TERMINAL_PROMPT": "0"}

    def argv(self, location: RepositoryLocation, *args: str) -> list[str]:
        return [
            self.git,
            "--git-dir",
            str(location.git_dir),
            "--work-tree",
            str(location.work_tree),
            *args,
        ]

    async def run(self, location: RepositoryLocation, *args: str) -> CommandOutcome:
        argv = self.argv(location, *args)
        logger.debug("running %s", " ".join(argv))
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._env,
                # own process group, so a timeout can kill git's helpers too
                start_new_session=os.name == "posix",
            )
        except OSError as e:
            logger.debug("failed to start %s: %s", self.git, e)
            return CommandOutcome(exited_cleanly=False, stderr=str(e))

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), self.timeout)
        except asyncio.TimeoutError:
            await self._kill(proc)
            logger.debug("timed out after %gs: %s", self.timeout, " ".join(argv))
            return CommandOutcome(
                exited_cleanly=False,
                stderr=f"git {' '.join(args)} timed out after {self.timeout:g}s",
                timed_out=True,
            )

        logger.debug("exit %s: %s", proc.returncode, " ".join(argv))
        return CommandOutcome(
            exited_cleanly=proc.returncode == 0,
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
        )

    async def _kill(self, proc: asyncio.subprocess.Process) -> None:
        """Kill the process group and wait a bounded time for it to go away."""
        try:
            if os.name == "posix":
                os.killpg(proc.pid, signal.SIGKILL)
            else:
                proc.kill()
        except ProcessLookupError:
            pass
        try:
            await asyncio.wait_for(proc.wait(), KILL_GRACE_PERIOD)
        except asyncio.TimeoutError:
            logger.warning("pid %s still running %gs after kill", proc.pid, KILL_GRACE_PERIOD)


# =============================================================================
# Repository Sync Pipeline
# =============================================================================


def strip_line_terminator(text: str) -> str:
    """Remove one trailing CRLF or LF."""
    if text.endswith("\r\n"):
        return text[:-2]
    if text.endswith("\n"):
        return text[:-1]
    return text


def parse_count(text: str) -> int:
    """Parse ``git rev-list --count`` output."""
    count = int(text.strip())
    if count < 0:
        raise ValueError(f"negative commit count: {count}")
    return count


class RepositorySyncPipeline:
    """Sequences the git commands for one repository.

    Each stage handler runs at most one command and returns the next stage.
    A failed command moves the state to ERROR with a stage-specific kind.
    """

    def __init__(
        self,
        location: RepositoryLocation,
        executor: CommandExecutor,
        options: SyncOptions,
    ):
        self.state = RepositoryState(location=location)
        self.executor = executor
        self.options = options
        self._handlers: dict[PipelineStage, Callable[[], Awaitable[PipelineStage]]] = {
            PipelineStage.START: self._start,
            PipelineStage.FETCHING: self._fetch,
            PipelineStage.BRANCH_RESOLVING: self._resolve_branch,
            PipelineStage.COUNTING_AHEAD: self._count_ahead,
            PipelineStage.COUNTING_BEHIND: self._count_behind,
            PipelineStage.ACTING: self._act,
        }

    async def run(self) -> RepositoryState:
        state = self.state
        while state.stage not in TERMINAL_STAGES:
            state.stage = await self._handlers[state.stage]()
        return state

    async def _git(self, *args: str) -> CommandOutcome:
        return await self.executor.run(self.state.location, *args)

    def _fail(self, kind: ErrorKind, outcome: CommandOutcome) -> PipelineStage:
        if outcome.timed_out:
            kind = ErrorKind.TIMEOUT
        return self.state.fail(kind, outcome.stderr.strip() or outcome.stdout.strip())

    async def _start(self) -> PipelineStage:
        return PipelineStage.FETCHING

    async def _fetch(self) -> PipelineStage:
        outcome = await self._git("fetch")
        if not outcome.exited_cleanly:
            return self._fail(ErrorKind.FETCH_FAILED, outcome)
        return PipelineStage.BRANCH_RESOLVING

    async def _resolve_branch(self) -> PipelineStage:
        outcome = await self._git("symbolic-ref", "--short", "HEAD")
        if not outcome.exited_cleanly:
            return self._fail(ErrorKind.BRANCH_UNRESOLVED, outcome)
        branch = strip_line_terminator(outcome.stdout)
        if not branch:
            return self.state.fail(ErrorKind.BRANCH_UNRESOLVED, "empty branch name")
        self.state.branch = branch
        return PipelineStage.COUNTING_AHEAD

    async def _count(self, revision_range: str, kind: ErrorKind) -> int | PipelineStage:
        outcome = await self._git("rev-list", "--count", revision_range)
        if not outcome.exited_cleanly:
            return self._fail(kind, outcome)
        try:
            return parse_count(outcome.stdout)
        except ValueError:
            return self.state.fail(kind, f"unexpected rev-list output: {outcome.stdout.strip()!r}")

    async def _count_ahead(self) -> PipelineStage:
        branch = self.state.branch
        result = await self._count(f"origin/{branch}..{branch}", ErrorKind.NO_TRACKING_BRANCH)
        if isinstance(result, PipelineStage):
            return result
        self.state.ahead_count = result
        return PipelineStage.COUNTING_BEHIND

    async def _count_behind(self) -> PipelineStage:
        branch = self.state.branch
        result = await self._count(f"{branch}..origin/{branch}", ErrorKind.BEHIND_CHECK_FAILED)
        if isinstance(result, PipelineStage):
            return result
        self.state.behind_count = result
        return PipelineStage.ACTING

    async def _act(self) -> PipelineStage:
        state = self.state
        action = classify(state.ahead_count, state.behind_count, self.options.push_enabled)
        logger.debug("%s: %s", state.location.work_tree, action)

        match action:
            case SyncAction.NO_ACTION_NEEDED:
                return state.settle(SyncOutcome.OK)
            case SyncAction.FAST_FORWARD_MERGE:
                outcome = await self._git("merge", "--ff-only", "@{u}")
                if not outcome.exited_cleanly:
                    return self._fail(ErrorKind.MERGE_BLOCKED, outcome)
                return state.settle(SyncOutcome.BEHIND_MERGED)
            case SyncAction.PUSH:
                outcome = await self._git("push")
                if not outcome.exited_cleanly:
                    return self._fail(ErrorKind.PUSH_FAILED, outcome)
                return state.settle(SyncOutcome.AHEAD_PUSHED)
            case SyncAction.REPORT_PUSH_NEEDED:
                return state.settle(SyncOutcome.AHEAD_NEEDS_PUSH)
            case SyncAction.FLAG_MANUAL_RESOLUTION:
                return state.settle(SyncOutcome.DIVERGED)


# =============================================================================
# Fleet Orchestrator
# =============================================================================


class FleetOrchestrator:
    """Run one sync pipeline per repository, all at once."""

    def __init__(self, options: SyncOptions, executor: CommandExecutor, writer: ReportWriter):
        self.options = options
        self.executor = executor
        self.writer = writer

    async def run(self, locations: list[RepositoryLocation]) -> list[RepositoryState]:
        if not locations:
            self.writer.nothing_to_sync(self.options.root)
            return []

        self.writer.expect(len(locations))
        states = await asyncio.gather(
            *(self._sync_one(index, location) for index, location in enumerate(locations))
        )
        if not self.writer.done:
            raise RuntimeError(
                f"Only {self.writer.flushed} of {len(locations)} repository reports were printed"
            )
        return list(states)

    async def _sync_one(self, index: int, location: RepositoryLocation) -> RepositoryState:
        pipeline = RepositorySyncPipeline(location, self.executor, self.options)
        try:
            state = await pipeline.run()
        except Exception as e:
            logger.exception("Unexpected failure syncing %s", location.work_tree)
            state = pipeline.state
            if state.outcome == SyncOutcome.PENDING:
                state.fail(ErrorKind.UNEXPECTED, str(e))
            state.stage = PipelineStage.ERROR
        self.writer.submit(index, state)
        return state


def sync_fleet(
    options: SyncOptions,
    executor: CommandExecutor | None = None,
    formatter: OutputFormatter | None = None,
) -> FleetSummary:
    """Discover repositories under options.root and sync them all.

    Raises DiscoveryError before any git command if the root is unusable.
    """
    locations = discover_repositories(options.root)
    if executor is None:
        executor = GitCommandRunner(timeout=options.timeout)
    if formatter is None:
        formatter = OutputFormatter(
            _make_console(), use_json=options.json_output, verbose=options.verbose
        )

    writer = ReportWriter(formatter)
    orchestrator = FleetOrchestrator(options, executor, writer)
    states = asyncio.run(orchestrator.run(locations))

    summary = FleetSummary.from_states(states)
    formatter.print_summary(states, summary)
    return summary


# =============================================================================
# Configuration
# =============================================================================


def resolve_config_file(explicit: Path | None = None) -> Path | None:
    """Find the config file.

    Priority order:
    1. explicit path (--config)
    2. $GITSYNC_CONFIG environment variable
    3. ./config.json
    4. ~/.config/gitsync/config.json
    """
    if explicit is not None:
        return explicit.expanduser()

    env_config = os.environ.get("GITSYNC_CONFIG")
    if env_config:
        return Path(env_config).expanduser()

    local_path = Path("config.json")
    if local_path.is_file():
        return local_path

    xdg_path = Path.home() / ".config" / "gitsync" / "config.json"
    if xdg_path.is_file():
        return xdg_path

    return None


def load_config_file(config_file: Path) -> dict:
    """Read and validate a JSON config file.

    Recognised keys: directory (str), push (bool), verbose (bool),
    timeout (positive number).
    """
    try:
        with open(config_file) as f:
            data = json.load(f)
    except OSError as e:
        raise ConfigError(f"Could not read config file {config_file}: {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"Config file {config_file} is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Config file {config_file} must contain a JSON object")

    if "directory" in data and not isinstance(data["directory"], str):
        raise ConfigError("'directory' must be a string")
    for key in ("push", "verbose"):
        if key in data and not isinstance(data[key], bool):
            raise ConfigError(f"'{key}' must be true or false")
    if "timeout" in data:
        timeout = data["timeout"]
        if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
            raise ConfigError("'timeout' must be a positive number of seconds")
    return data


def build_options(
    root: Path | None = None,
    *,
    config_file: Path | None = None,
    push: bool | None = None,
    verbose: bool | None = None,
    timeout: float | None = None,
    json_output: bool = False,
) -> SyncOptions:
    """Combine CLI arguments and the config file into SyncOptions.

    Command-line values win over the file; a flag left at None falls back
    to the file. The file is only required when no root is given on the
    command line.
    """
    data: dict = {}
    resolved = resolve_config_file(config_file)
    if resolved is not None:
        data = load_config_file(resolved)
    elif root is None:
        raise ConfigError(
            "No root directory given and no config file found "
            "(pass ROOT, --config, or set $GITSYNC_CONFIG)"
        )

    if root is None:
        if "directory" not in data:
            raise ConfigError(f"Config file {resolved} has no 'directory' entry")
        root = Path(os.path.expandvars(data["directory"]))

    return SyncOptions(
        root=root.expanduser(),
        push_enabled=push if push is not None else data.get("push", False),
        verbose=verbose if verbose is not None else data.get("verbose", False),
        timeout=timeout if timeout is not None else float(data.get("timeout", DEFAULT_TIMEOUT)),
        json_output=json_output,
    )


def configure_logging(verbose: bool) -> None:
    """Route the package logger to stderr through rich."""
    handler = RichHandler(
        console=Console(stderr=True), show_time=False, show_path=False, markup=False
    )
    logger.handlers[:] = [handler]
    logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
    logger.propagate = False


# =============================================================================
# CLI Application
# =============================================================================


app = typer.Typer(
    name="gitsync",
    help="Fetch every Git repository under a directory and fast-forward or push it.",
    add_completion=False,
)


def _make_console() -> Console:
    return Console(highlight=False, soft_wrap=True)


def version_callback(value: bool):
    """Print version and exit."""
    if value:
        print(f"gitsync {__version__}")
        raise typer.Exit()


@app.command()
def main(
    root: Path = typer.Argument(
        None,
        help="Root path to scan for repositories (default: 'directory' from the config file)",
    ),
    push: bool = typer.Option(
        None,
        "--push/--no-push",
        "-p",
        help="Push repositories that are only ahead of their remote",
    ),
    verbose: bool = typer.Option(
        None,
        "--verbose/--no-verbose",
        "-v",
        help="Show git's error output for failed repositories",
    ),
    timeout: float = typer.Option(
        None,
        "--timeout",
        "-t",
        min=0.1,
        help=f"Seconds before a git command is abandoned (default: {DEFAULT_TIMEOUT:g})",
    ),
    config: Path = typer.Option(
        None,
        "--config",
        "-c",
        help="JSON config file (default: $GITSYNC_CONFIG, ./config.json, ~/.config/gitsync/config.json)",
    ),
    json_output: bool = typer.Option(
        False,
        "--json",
        "-j",
        help="Output as JSON",
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
    """Sync all repositories under ROOT with their remotes."""
    err_console = Console(stderr=True, highlight=False, soft_wrap=True)

    try:
        options = build_options(
            root,
            config_file=config,
            push=push,
            verbose=verbose,
            timeout=timeout,
            json_output=json_output,
        )
    except ConfigError as e:
        err_console.print(f"[red]Error: {escape(str(e))}[/]")
        raise typer.Exit(1)

    configure_logging(options.verbose)

    try:
        sync_fleet(options)
    except DiscoveryError as e:
        err_console.print(f"[red]Error: {escape(str(e))}[/]")
        raise typer.Exit(1)
