import subprocess
import threading
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from git_relay.context import JobCancelled, RunContext
from git_relay.git_wrapper import GitError, GitRepo, git_version, run_git


@pytest.fixture
def repo(tmp_path: Path) -> GitRepo:
    # Create a fake .git directory so GitRepo accepts the path
    (tmp_path / ".git").mkdir()
    return GitRepo(tmp_path, env={"GIT_ASKPASS": "/tmp/askpass"})


def test_requires_git_directory(tmp_path: Path) -> None:
    """Verifies that a directory without .git is rejected."""
    with pytest.raises(ValueError, match="Not a git repository"):
        GitRepo(tmp_path)


def test_fetch_command_construction(repo: GitRepo, mocker: MagicMock) -> None:
    """Verifies prune and explicit refspec handling of fetch."""
    mock_run = mocker.patch.object(repo, "_run")

    repo.fetch("origin", prune=True)
    mock_run.assert_called_with(["fetch", "origin", "--prune"])

    repo.fetch("target-x", refspec="+refs/heads/main:refs/remotes/target-x/main")
    mock_run.assert_called_with(
        ["fetch", "target-x", "+refs/heads/main:refs/remotes/target-x/main"]
    )


def test_push_is_not_interruptible(repo: GitRepo, mocker: MagicMock) -> None:
    """Verifies that pushes run to completion and honour force mode."""
    mock_run = mocker.patch.object(repo, "_run")

    repo.push("target-x", "refs/heads/main:refs/heads/main")
    mock_run.assert_called_with(
        ["push", "target-x", "refs/heads/main:refs/heads/main"], interruptible=False
    )

    repo.push("target-x", "refs/heads/main:refs/heads/main", force=True)
    mock_run.assert_called_with(
        ["push", "target-x", "refs/heads/main:refs/heads/main", "--force"],
        interruptible=False,
    )


def test_remote_branches_excludes_head(repo: GitRepo, mocker: MagicMock) -> None:
    """Verifies that branch discovery strips the prefix and drops HEAD."""
    mocker.patch.object(
        repo,
        "_run",
        return_value="refs/remotes/origin/HEAD\n"
        "refs/remotes/origin/dev\n"
        "refs/remotes/origin/feature/login\n"
        "refs/remotes/origin/main",
    )

    assert repo.remote_branches() == ["dev", "feature/login", "main"]


def test_checkout_variants(repo: GitRepo, mocker: MagicMock) -> None:
    """Verifies the commands used to align a local branch with its source."""
    mock_run = mocker.patch.object(repo, "_run")

    repo.checkout("main", force=True)
    mock_run.assert_called_with(["checkout", "-f", "main"])

    repo.checkout_tracking("dev")
    mock_run.assert_called_with(["checkout", "-f", "-b", "dev", "origin/dev"])

    repo.reset_hard("origin/main")
    mock_run.assert_called_with(["reset", "--hard", "origin/main"])


def test_rev_parse_returns_none_on_failure(repo: GitRepo, mocker: MagicMock) -> None:
    """Verifies that unresolved revisions yield None instead of raising."""
    mocker.patch.object(repo, "_run", side_effect=GitError(["rev-parse"], 1, ""))
    assert repo.rev_parse("refs/heads/missing") is None
    assert repo.remote_get_url("target-x") is None


def test_filter_branch_env_passes_filter_and_env(
    repo: GitRepo, mocker: MagicMock
) -> None:
    """Verifies the filter-branch invocation and its environment."""
    mock_run_git = mocker.patch("git_relay.git_wrapper.run_git")

    repo.filter_branch_env("export GIT_AUTHOR_NAME=x")

    args, kwargs = mock_run_git.call_args
    assert args[0] == [
        "filter-branch",
        "-f",
        "--env-filter",
        "export GIT_AUTHOR_NAME=x",
        "--",
        "--all",
    ]
    assert kwargs["env"]["FILTER_BRANCH_SQUELCH_WARNING"] == "1"
    assert kwargs["env"]["GIT_ASKPASS"] == "/tmp/askpass"
    assert "FILTER_BRANCH_SQUELCH_WARNING" not in repo.env


def test_run_git_layers_environment(mocker: MagicMock) -> None:
    """Verifies that overrides reach git without touching os.environ."""
    popen = mocker.patch("git_relay.git_wrapper.subprocess.Popen")
    proc = popen.return_value
    proc.communicate.return_value = ("git version 2.44.0\n", None)
    proc.returncode = 0

    assert run_git(["--version"], env={"GIT_RELAY_TOKEN": "s3cret"}) == (
        "git version 2.44.0"
    )

    kwargs = popen.call_args.kwargs
    assert kwargs["env"]["GIT_RELAY_TOKEN"] == "s3cret"
    assert kwargs["env"]["GIT_TERMINAL_PROMPT"] == "0"
    assert kwargs["start_new_session"] is True


def test_run_git_raises_on_failure(mocker: MagicMock) -> None:
    """Verifies that a non-zero exit becomes a GitError carrying the output."""
    popen = mocker.patch("git_relay.git_wrapper.subprocess.Popen")
    proc = popen.return_value
    proc.communicate.return_value = ("fatal: repository not found\n", None)
    proc.returncode = 128

    with pytest.raises(GitError) as excinfo:
        run_git(["fetch", "origin"])

    assert excinfo.value.returncode == 128
    assert excinfo.value.output == "fatal: repository not found"
    assert "exit 128" in str(excinfo.value)


def test_run_git_checks_context_before_spawning(mocker: MagicMock) -> None:
    """Verifies that a cancelled run never starts a new git process."""
    popen = mocker.patch("git_relay.git_wrapper.subprocess.Popen")
    stop = threading.Event()
    stop.set()

    with pytest.raises(JobCancelled, match="scheduler stopping"):
        run_git(["fetch", "origin"], ctx=RunContext(stop_event=stop))

    popen.assert_not_called()


def test_run_git_kills_command_on_cancellation(mocker: MagicMock) -> None:
    """Verifies that an interruptible command is killed once the run is cancelled."""
    popen = mocker.patch("git_relay.git_wrapper.subprocess.Popen")
    kill = mocker.patch("git_relay.git_wrapper._kill_group")
    proc = popen.return_value
    proc.args = ["git", "fetch", "origin"]
    stop = threading.Event()

    def communicate(timeout: float | None = None) -> tuple[str, None]:
        if timeout is None:
            return ("", None)
        stop.set()
        raise subprocess.TimeoutExpired(proc.args, timeout)

    proc.communicate.side_effect = communicate

    with pytest.raises(JobCancelled, match="git fetch origin killed"):
        run_git(["fetch", "origin"], ctx=RunContext(stop_event=stop))

    kill.assert_called_once_with(proc)


def test_git_version_reports_missing_git(mocker: MagicMock) -> None:
    """Verifies that a missing git executable is a clear RuntimeError."""
    mocker.patch(
        "git_relay.git_wrapper.subprocess.Popen", side_effect=FileNotFoundError("git")
    )
    with pytest.raises(RuntimeError, match="git is not available"):
        git_version()
