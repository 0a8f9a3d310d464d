import logging
import os
import signal
import subprocess
from pathlib import Path

from .constants import APP_NAME, GIT_POLL_INTERVAL, SOURCE_REMOTE
from .context import JobCancelled, RunContext

logger = logging.getLogger(APP_NAME)


class GitError(RuntimeError):
    """A git command exited with a non-zero status.

    Attributes:
        args_list (list[str]): The arguments passed to git.
        returncode (int): The exit status.
        output (str): Combined stdout and stderr of the command.
    """

    def __init__(self, args: list[str], returncode: int, output: str):
        self.args_list = list(args)
        self.returncode = returncode
        self.output = output.strip()
        command = " ".join(args[:2])
        super().__init__(f"Git error ({command}, exit {returncode}): {self.output}")


def _kill_group(proc: subprocess.Popen) -> None:
    """Terminates the whole process group spawned for a git command."""
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        proc.kill()


def run_git(
    args: list[str],
    cwd: Path | None = None,
    env: dict[str, str] | None = None,
    ctx: RunContext | None = None,
    interruptible: bool = True,
) -> str:
    """Executes a git command and returns its combined output.

    The command runs in its own session so that a cancelled run can kill
    every helper process (ssh, remote helpers) along with git itself.

    Args:
        args (list[str]): Arguments to pass to git.
        cwd (Path | None): Working directory. Defaults to the current one.
        env (dict[str, str] | None): Overrides layered over `os.environ` for
                                     this invocation only.
        ctx (RunContext | None): The run's cancellation context.
        interruptible (bool): Whether the command may be killed on
                              cancellation. Pushes are never interrupted.

    Returns:
        str: The stripped combined stdout/stderr.

    Raises:
        GitError: If git exits with a non-zero status.
        JobCancelled: If the run was cancelled before or during the command.
    """
    if ctx is not None:
        ctx.check()

    full_env = os.environ.copy()
    full_env["GIT_TERMINAL_PROMPT"] = "0"
    if env:
        full_env.update(env)

    logger.debug(f"git {' '.join(args)} (cwd={cwd})")
    proc = subprocess.Popen(
        ["git", *args],
        cwd=cwd,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        env=full_env,
        start_new_session=True,
    )

    if ctx is None or not interruptible:
        output, _ = proc.communicate()
    else:
        output = _wait_cancellable(proc, ctx)

    if proc.returncode != 0:
        raise GitError(args, proc.returncode, output or "")
    return (output or "").strip()


def _wait_cancellable(proc: subprocess.Popen, ctx: RunContext) -> str:
    """Waits for a process while polling the run context."""
    while True:
        timeout = GIT_POLL_INTERVAL
        remaining = ctx.remaining()
        if remaining is not None:
            timeout = min(timeout, remaining)
        try:
            output, _ = proc.communicate(timeout=timeout)
            return output
        except subprocess.TimeoutExpired:
            if not ctx.cancelled():
                continue
            _kill_group(proc)
            proc.communicate()
            raise JobCancelled(
                f"git {' '.join(proc.args[1:3])} killed: {ctx.reason()}"
            ) from None


def git_version() -> str:
    """Returns the installed git version string.

    Raises:
        RuntimeError: If git is missing or not executable.
    """
    try:
        return run_git(["--version"])
    except (OSError, GitError) as e:
        raise RuntimeError(f"git is not available: {e}") from e


class GitRepo:
    """A wrapper around the git command line for one mirror workspace.

    Every command inherits the per-repository environment overrides (e.g.
    credential helpers) and the run's cancellation context, so concurrent
    jobs never share process-wide state.

    Attributes:
        path (Path): The workspace root.
        env (dict[str, str]): Environment overrides for every command.
        ctx (RunContext | None): The cancellation context of the current run.
    """

    def __init__(
        self,
        path: Path,
        env: dict[str, str] | None = None,
        ctx: RunContext | None = None,
    ):
        """Initializes the GitRepo instance.

        Args:
            path (Path): The path to the repository root directory.
            env (dict[str, str] | None): Environment overrides.
            ctx (RunContext | None): The run's cancellation context.

        Raises:
            ValueError: If the specified path does not contain a .git directory.
        """
        self.path = path
        self.env = dict(env or {})
        self.ctx = ctx
        if not (self.path / ".git").exists():
            raise ValueError(f"Not a git repository: {self.path}")

    @classmethod
    def clone(
        cls,
        url: str,
        path: Path,
        env: dict[str, str] | None = None,
        ctx: RunContext | None = None,
    ) -> "GitRepo":
        """Performs a full clone of `url` into `path`.

        Returns:
            GitRepo: A wrapper around the new clone.
        """
        path.parent.mkdir(parents=True, exist_ok=True)
        run_git(["clone", "--origin", SOURCE_REMOTE, url, str(path)], env=env, ctx=ctx)
        return cls(path, env=env, ctx=ctx)

    def _run(self, args: list[str], interruptible: bool = True) -> str:
        """Executes a git command within the repository context."""
        return run_git(
            args, cwd=self.path, env=self.env, ctx=self.ctx, interruptible=interruptible
        )

    def fetch(
        self, remote: str, refspec: str | None = None, prune: bool = False
    ) -> None:
        """Fetches from a remote.

        Args:
            remote (str): The remote name.
            refspec (str | None): An explicit refspec. Defaults to the remote's own.
            prune (bool): Whether to remove stale remote-tracking branches.
        """
        cmd = ["fetch", remote]
        if prune:
            cmd.append("--prune")
        if refspec:
            cmd.append(refspec)
        self._run(cmd)

    def list_refs(self, prefix: str) -> list[str]:
        """Lists references below a prefix (e.g., 'refs/remotes/origin/')."""
        output = self._run(["for-each-ref", "--format=%(refname)", prefix])
        return output.splitlines() if output else []

    def remote_branches(self, remote: str = SOURCE_REMOTE) -> list[str]:
        """Returns the branch names tracked for a remote, excluding HEAD.

        Returns:
            list[str]: Branch names in ref order (e.g. ['dev', 'main']).
        """
        prefix = f"refs/remotes/{remote}/"
        branches = []
        for ref in self.list_refs(prefix):
            name = ref[len(prefix) :]
            if name and name != "HEAD":
                branches.append(name)
        return branches

    def checkout(self, branch: str, force: bool = False) -> None:
        """Checks out an existing local branch."""
        cmd = ["checkout"]
        if force:
            cmd.append("-f")
        cmd.append(branch)
        self._run(cmd)

    def checkout_tracking(self, branch: str, remote: str = SOURCE_REMOTE) -> None:
        """Creates and checks out a local branch tracking `remote/branch`."""
        self._run(["checkout", "-f", "-b", branch, f"{remote}/{branch}"])

    def reset_hard(self, ref: str) -> None:
        """Discards local state and moves the current branch to `ref`."""
        self._run(["reset", "--hard", ref])

    def rev_parse(self, rev: str) -> str | None:
        """Resolves a revision to a full SHA-1 hash.

        Args:
            rev (str): The revision to parse (e.g., 'HEAD', 'refs/heads/main').

        Returns:
            str | None: The full SHA-1 hash,
                        or None if the revision could not be resolved.
        """
        try:
            return self._run(["rev-parse", "--verify", "--quiet", rev]) or None
        except GitError as e:
            logger.debug(f"rev-parse failed for '{rev}': {e}")
            return None

    def remote_get_url(self, name: str) -> str | None:
        """Returns the URL of a remote, or None if it is not configured."""
        try:
            return self._run(["remote", "get-url", name])
        except GitError:
            return None

    def remote_add(self, name: str, url: str) -> None:
        self._run(["remote", "add", name, url])

    def remote_set_url(self, name: str, url: str) -> None:
        self._run(["remote", "set-url", name, url])

    def push(self, remote: str, refspec: str, force: bool = False) -> str:
        """Pushes a refspec to a remote.

        Pushes are not interruptible: once spawned they run to completion so a
        deadline never leaves a half-written ref on the target.

        Args:
            remote (str): The remote name.
            refspec (str): The refspec (e.g. 'refs/heads/main:refs/heads/main').
            force (bool): Whether to overwrite the target ref unconditionally.

        Returns:
            str: The push output.
        """
        cmd = ["push", remote, refspec]
        if force:
            cmd.append("--force")
        return self._run(cmd, interruptible=False)

    def filter_branch_env(self, env_filter: str) -> None:
        """Rewrites every commit on all refs through an env-filter script.

        Args:
            env_filter (str): Shell snippet exporting GIT_AUTHOR_* and
                              GIT_COMMITTER_* variables.
        """
        run_git(
            ["filter-branch", "-f", "--env-filter", env_filter, "--", "--all"],
            cwd=self.path,
            env={**self.env, "FILTER_BRANCH_SQUELCH_WARNING": "1"},
            ctx=self.ctx,
        )
