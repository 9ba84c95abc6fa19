from __future__ import annotations

import asyncio
import io
from pathlib import Path

import pytest
from rich.console import Console

from gitsync.core import CommandOutcome, RepositoryLocation
from gitsync.formatters import OutputFormatter

DEFAULT_OUTCOMES = {
    "fetch": CommandOutcome(True),
    "branch": CommandOutcome(True, stdout="main\n"),
    "ahead": CommandOutcome(True, stdout="0\n"),
    "behind": CommandOutcome(True, stdout="0\n"),
    "merge": CommandOutcome(True),
    "push": CommandOutcome(True),
}


def ok(stdout: str = "") -> CommandOutcome:
    return CommandOutcome(True, stdout=stdout)


def failed(stderr: str = "fatal: boom") -> CommandOutcome:
    return CommandOutcome(False, stderr=stderr)


def step_name(args: tuple[str, ...]) -> str:
    """Map git arguments to the pipeline step that issued them."""
    verb = args[0]
    if verb == "symbolic-ref":
        return "branch"
    if verb == "rev-list":
        return "ahead" if args[-1].startswith("origin/") else "behind"
    return verb


class FakeExecutor:
    """Records every git call and answers from a per-repository script.

    Scripts are keyed by work tree directory name, then by step name
    (fetch, branch, ahead, behind, merge, push). Unscripted steps succeed
    with an up-to-date ``main`` branch.
    """

    def __init__(
        self,
        scripts: dict[str, dict[str, CommandOutcome | Exception]] | None = None,
        delays: dict[str, float] | None = None,
    ):
        self.scripts = scripts or {}
        self.delays = delays or {}
        self.calls: list[tuple[str, str, tuple[str, ...]]] = []

    async def run(self, location: RepositoryLocation, *args: str) -> CommandOutcome:
        name = location.name
        step = step_name(args)
        self.calls.append((name, step, args))
        await asyncio.sleep(self.delays.get(name, 0))
        outcome = self.scripts.get(name, {}).get(step, DEFAULT_OUTCOMES[step])
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def steps(self, name: str) -> list[str]:
        return [step for repo, step, _ in self.calls if repo == name]


def make_repo(root: Path, *parts: str) -> Path:
    """Create a fake repository (a directory holding a .git directory)."""
    work_tree = root.joinpath(*parts)
    (work_tree / ".git").mkdir(parents=True)
    return work_tree


def location_for(root: Path, *parts: str) -> RepositoryLocation:
    return RepositoryLocation(root.joinpath(*parts, ".git"))


@pytest.fixture
def fleet_root(tmp_path: Path) -> Path:
    root = tmp_path / "fleet"
    root.mkdir()
    return root


@pytest.fixture
def output() -> io.StringIO:
    return io.StringIO()


@pytest.fixture
def formatter(output: io.StringIO) -> OutputFormatter:
    console = Console(file=output, width=200, soft_wrap=True, highlight=False)
    return OutputFormatter(console)


@pytest.fixture(autouse=True)
def isolated_config(tmp_path: Path, monkeypatch):
    """Keep config lookup away from the developer's real files."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.delenv("GITSYNC_CONFIG", raising=False)
    monkeypatch.chdir(tmp_path)
