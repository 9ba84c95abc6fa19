"""Tests for the asyncio git runner, including a run against real repositories."""

from __future__ import annotations

import asyncio
import os
import shutil
import subprocess
import time
from pathlib import Path

import pytest

from conftest import location_for
from gitsync.core import (
    ErrorKind,
    GitCommandRunner,
    SyncOptions,
    discover_repositories,
    sync_fleet,
)

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")

GIT_ENV = {
    **os.environ,
    "GIT_AUTHOR_NAME": "Test",
    "GIT_AUTHOR_EMAIL": "test@example.com",
    "GIT_COMMITTER_NAME": "Test",
    "GIT_COMMITTER_EMAIL": "test@example.com",
}


def git(cwd: Path, *args: str) -> str:
    result = subprocess.run(
        ["git", *args], cwd=cwd, env=GIT_ENV, capture_output=True, text=True, check=True
    )
    return result.stdout


def status_lines_by_repo(text: str) -> dict[str, str]:
    lines = {}
    for line in text.splitlines():
        if line.startswith("Checking "):
            path = line.split(" ")[1]
            lines[Path(path).name] = line
    return lines


def test_argv_targets_git_dir_and_work_tree(fleet_root):
    runner = GitCommandRunner(timeout=5)
    location = location_for(fleet_root, "proj")

    argv = runner.argv(location, "rev-list", "--count", "a..b")

    assert argv == [
        "git",
        "--git-dir",
        str(fleet_root / "proj" / ".git"),
        "--work-tree",
        str(fleet_root / "proj"),
        "rev-list",
        "--count",
        "a..b",
    ]


def test_missing_binary_is_an_unclean_outcome(fleet_root):
    runner = GitCommandRunner(timeout=5, git="gitsync-no-such-binary")

    outcome = asyncio.run(runner.run(location_for(fleet_root, "proj"), "fetch"))

    assert not outcome.exited_cleanly
    assert not outcome.timed_out
    assert outcome.stderr


requires_posix = pytest.mark.skipif(os.name != "posix", reason="needs a POSIX shell")


def fake_git_script(tmp_path: Path, body: str) -> str:
    script = tmp_path / "fake-git"
    script.write_text("#!/bin/sh\n" + body + "\n")
    script.chmod(0o755)
    return str(script)


@requires_posix
def test_arguments_are_passed_to_the_binary(tmp_path, fleet_root):
    runner = GitCommandRunner(timeout=10, git=fake_git_script(tmp_path, 'echo "$@"'))
    location = location_for(fleet_root, "proj")

    outcome = asyncio.run(runner.run(location, "rev-parse", "HEAD"))

    assert outcome.exited_cleanly
    assert outcome.stdout.split()[-2:] == ["rev-parse", "HEAD"]


@requires_posix
def test_timeout_kills_helpers_holding_the_pipes(tmp_path, fleet_root):
    # sleep is a grandchild holding stderr open, like a credential helper
    script = fake_git_script(tmp_path, "sleep 20 >/dev/null\necho done")
    runner = GitCommandRunner(timeout=0.5, git=script)

    started = time.monotonic()
    outcome = asyncio.run(
        asyncio.wait_for(runner.run(location_for(fleet_root, "proj"), "fetch"), 8)
    )

    assert outcome.timed_out
    assert not outcome.exited_cleanly
    assert "timed out" in outcome.stderr
    assert time.monotonic() - started < 8


@requires_git
def test_fetch_outside_a_repository_fails_cleanly(fleet_root):
    (fleet_root / "proj" / ".git").mkdir(parents=True)
    runner = GitCommandRunner(timeout=30)

    outcome = asyncio.run(runner.run(location_for(fleet_root, "proj"), "fetch"))

    assert not outcome.exited_cleanly
    assert outcome.stderr


@requires_git
def test_real_repositories(tmp_path, formatter, output):
    seed = tmp_path / "seed"
    seed.mkdir()
    git(seed, "init", "-q")
    git(seed, "commit", "-q", "--allow-empty", "-m", "initial")
    git(seed, "branch", "-M", "main")
    remote = tmp_path / "remote.git"
    git(tmp_path, "clone", "-q", "--bare", str(seed), str(remote))

    root = tmp_path / "fleet"
    root.mkdir()
    writer = tmp_path / "writer"
    git(tmp_path, "clone", "-q", str(remote), str(writer))
    git(tmp_path, "clone", "-q", str(remote), str(root / "behind"))

    git(writer, "commit", "-q", "--allow-empty", "-m", "upstream change")
    git(writer, "push", "-q", "origin", "main")

    git(tmp_path, "clone", "-q", str(remote), str(root / "ahead"))
    git(root / "ahead", "commit", "-q", "--allow-empty", "-m", "local change")
    git(tmp_path, "clone", "-q", str(remote), str(root / "current"))
    git(tmp_path, "clone", "-q", str(remote), str(root / "detached"))
    git(root / "detached", "checkout", "-q", "--detach")

    summary = sync_fleet(SyncOptions(root=root, timeout=60), formatter=formatter)

    lines = status_lines_by_repo(output.getvalue())
    assert "[ahead: 1][AheadNeedsPush]" in lines["ahead"]
    assert "[behind: 1][BehindMerged]" in lines["behind"]
    assert "[Ok]" in lines["current"]
    assert f"[{ErrorKind.BRANCH_UNRESOLVED}]" in lines["detached"]
    assert summary.total == 4

    # the fast-forward really happened; the local commit was not pushed
    assert git(root / "behind", "rev-list", "--count", "main..origin/main").strip() == "0"
    assert git(root / "ahead", "rev-list", "--count", "origin/main..main").strip() == "1"
    assert [loc.name for loc in discover_repositories(root)] == [
        "ahead",
        "behind",
        "current",
        "detached",
    ]
