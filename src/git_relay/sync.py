import hashlib
import logging
import re
import shlex
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path

from .config import AuthorRewriteRule, JobDefinition, RepositorySpec
from .constants import (
    APP_NAME,
    ASKPASS_SCRIPT,
    SOURCE_REMOTE,
    TARGET_REMOTE_PREFIX,
)
from .context import JobCancelled, RunContext
from .git_wrapper import GitError, GitRepo
from .ledger import (
    STATUS_FAILED,
    STATUS_RUNNING,
    STATUS_SKIPPED,
    STATUS_SUCCESS,
    Ledger,
    LedgerError,
    TransactionRecord,
    utcnow,
)
from .patterns import filter_branches

ASKPASS_BODY = """#!/bin/sh
case "$1" in
    Username*|username*) printf '%s\\n' "$GIT_RELAY_USERNAME" ;;
    *) printf '%s\\n' "$GIT_RELAY_TOKEN" ;;
esac
"""


def workspace_token(url: str) -> str:
    """Derives a stable, filesystem-safe and collision-free token from a URL.

    The readable part drops the scheme, any user info and a trailing '.git';
    a short hash of the full URL keeps distinct URLs apart.

    Example:
        'https://github.com/org/app.git' -> 'github-com-org-app-<8 hex chars>'
    """
    name = re.sub(r"^[a-z][a-z0-9+.-]*://", "", url.strip(), flags=re.IGNORECASE)
    name = re.sub(r"^[^@/]+@", "", name)
    name = name.rstrip("/").removesuffix(".git")
    name = re.sub(r"[^A-Za-z0-9_-]+", "-", name).strip("-")[:80]
    digest = hashlib.sha1(url.encode("utf-8")).hexdigest()[:8]
    return f"{name}-{digest}" if name else digest


def _identity_chain(variable: str, rules: list[AuthorRewriteRule], key: str) -> str:
    """Builds an if/elif chain selecting the first rule matching `variable`."""
    lines = []
    for i, rule in enumerate(rules):
        keyword = "if" if i == 0 else "elif"
        lines.append(
            f'{keyword} [ "${variable}" = {shlex.quote(getattr(rule, key))} ]; then'
        )
        lines.append(
            f"    relay_name={shlex.quote(rule.to_name)}; "
            f"relay_email={shlex.quote(rule.to_email)}; relay_matched=1"
        )
    lines.append("fi")
    return "\n".join(lines)


def author_env_filter(rules: tuple[AuthorRewriteRule, ...]) -> str:
    """Builds a filter-branch env-filter applying every rewrite rule in one pass.

    Email rules are tried first; name rules only apply to commits no email
    rule matched. A matching commit gets both its author and committer
    identity replaced.

    Returns:
        str: The shell snippet, or an empty string when no rule is usable.
    """
    email_rules = [r for r in rules if r.from_email]
    name_rules = [r for r in rules if not r.from_email and r.from_name]
    if not email_rules and not name_rules:
        return ""

    parts = ["relay_matched=0"]
    if email_rules:
        parts.append(_identity_chain("GIT_AUTHOR_EMAIL", email_rules, "from_email"))
    if name_rules:
        chain = _identity_chain("GIT_AUTHOR_NAME", name_rules, "from_name")
        indented = "\n".join(f"    {line}" for line in chain.splitlines())
        parts.append(f'if [ "$relay_matched" = 0 ]; then\n{indented}\nfi')
    parts.append(
        'if [ "$relay_matched" = 1 ]; then\n'
        '    export GIT_AUTHOR_NAME="$relay_name" GIT_AUTHOR_EMAIL="$relay_email"\n'
        '    export GIT_COMMITTER_NAME="$relay_name"'
        ' GIT_COMMITTER_EMAIL="$relay_email"\n'
        "fi"
    )
    return "\n".join(parts)


@dataclass
class RepoOutcome:
    """The result of syncing one repository of a job.

    Attributes:
        repo (str): The repository resource name.
        source (str): The source URL.
        branches (list[str]): The effective branch set.
        records (list[TransactionRecord]): One record per push attempt.
        errors (list[str]): Repository- or branch-level failures.
        cancelled (bool): Whether the run was cancelled during this repository.
    """

    repo: str
    source: str
    branches: list[str] = field(default_factory=list)
    records: list[TransactionRecord] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    cancelled: bool = False

    @property
    def failed_records(self) -> list[TransactionRecord]:
        return [r for r in self.records if r.status == STATUS_FAILED]

    @property
    def ok(self) -> bool:
        return not self.errors and not self.cancelled and not self.failed_records


class SyncError(RuntimeError):
    """A job run finished with at least one failure.

    Attributes:
        job_name (str): The job.
        outcomes (list[RepoOutcome]): Every repository outcome of the run.
    """

    def __init__(self, job_name: str, outcomes: list[RepoOutcome]):
        self.job_name = job_name
        self.outcomes = outcomes
        problems = []
        for outcome in outcomes:
            problems.extend(f"{outcome.repo}: {e}" for e in outcome.errors)
            problems.extend(
                f"{outcome.repo} {r.branch} -> {r.target}: {r.error}"
                for r in outcome.failed_records
            )
        super().__init__(f"Job '{job_name}' failed: " + "; ".join(problems))


def raise_for_outcomes(job_name: str, outcomes: list[RepoOutcome]) -> None:
    """Raises SyncError if any repository outcome reports a failure."""
    if not all(outcome.ok for outcome in outcomes):
        raise SyncError(job_name, outcomes)


class SyncEngine:
    """Mirrors the repositories of a job to their targets.

    The engine owns no schedule: it performs one run when asked and records
    every push attempt in the ledger.

    Attributes:
        ledger (Ledger | None): Where push attempts are recorded.
        workspace_root (Path): Parent of the per-job workspace directories.
        logger (logging.Logger): Logger for sync events.
    """

    def __init__(
        self,
        ledger: Ledger | None,
        workspace_root: Path,
        logger: logging.Logger | None = None,
    ):
        self.ledger = ledger
        self.workspace_root = Path(workspace_root)
        self.logger = logger or logging.getLogger(APP_NAME)

    # --- Workspace & credentials ---

    def job_root(self, job_name: str) -> Path:
        return self.workspace_root / re.sub(r"[^A-Za-z0-9_.-]+", "-", job_name)

    def workspace_for(self, job_name: str, source: str) -> Path:
        """Returns the reusable local clone path of a job's repository."""
        return self.job_root(job_name) / workspace_token(source)

    def credential_env(self, job_name: str, repo: RepositorySpec) -> dict[str, str]:
        """Builds the environment overrides carrying a repository's credentials.

        The token itself is only ever passed through the environment of each
        git invocation; the staged askpass helper just echoes it.
        """
        env: dict[str, str] = {}
        if repo.token and repo.username:
            env["GIT_ASKPASS"] = str(self._stage_askpass(self.job_root(job_name)))
            env["GIT_RELAY_USERNAME"] = repo.username
            env["GIT_RELAY_TOKEN"] = repo.token
        if repo.ssh_key_path:
            env["GIT_SSH_COMMAND"] = (
                f"ssh -i {shlex.quote(repo.ssh_key_path)} "
                "-o StrictHostKeyChecking=no -o BatchMode=yes"
            )
        return env

    @staticmethod
    def _stage_askpass(root: Path) -> Path:
        script = root / ASKPASS_SCRIPT
        if not script.exists() or script.read_text() != ASKPASS_BODY:
            root.mkdir(parents=True, exist_ok=True)
            script.write_text(ASKPASS_BODY)
        script.chmod(0o700)
        return script

    # --- Orchestration ---

    def sync_job(
        self, job: JobDefinition, ctx: RunContext | None = None
    ) -> list[RepoOutcome]:
        """Runs one sync pass over every repository of a job.

        A failing repository never prevents the next one from running; only a
        cancellation ends the pass early.

        Args:
            job (JobDefinition): The job to run.
            ctx (RunContext | None): Deadline and stop signal for the run.

        Returns:
            list[RepoOutcome]: One outcome per repository attempted.
        """
        ctx = ctx or RunContext()
        started = time.monotonic()
        self.logger.info(
            f"JOB {job.name}: syncing {len(job.repos)} repositories",
            extra={"job": job.name},
        )

        outcomes: list[RepoOutcome] = []
        for repo in job.repos:
            try:
                ctx.check()
            except JobCancelled as e:
                self.logger.warning(
                    f"CANCELLED {job.name}/{repo.name}: {e}", extra={"job": job.name}
                )
                outcomes.append(
                    RepoOutcome(repo.name, repo.source, errors=[str(e)], cancelled=True)
                )
                break
            outcome = self.sync_repository(job, repo, ctx)
            outcomes.append(outcome)
            if outcome.cancelled:
                break

        pushed = sum(
            1 for o in outcomes for r in o.records if r.status == STATUS_SUCCESS
        )
        skipped = sum(
            1 for o in outcomes for r in o.records if r.status == STATUS_SKIPPED
        )
        failed = sum(len(o.failed_records) + len(o.errors) for o in outcomes)
        self.logger.info(
            f"JOB {job.name}: {pushed} pushed, {skipped} up to date, "
            f"{failed} failed ({time.monotonic() - started:.1f}s)",
            extra={"job": job.name},
        )
        return outcomes

    def sync_repository(
        self, job: JobDefinition, repo: RepositorySpec, ctx: RunContext
    ) -> RepoOutcome:
        """Acquires, filters, optionally rewrites and pushes one repository."""
        outcome = RepoOutcome(repo=repo.name, source=repo.source)
        fields = {"job": job.name, "repo": repo.name}
        stage = "acquire"
        try:
            git = self._acquire(job, repo, ctx)

            stage = "discover"
            outcome.branches = filter_branches(
                git.remote_branches(), repo.effective_patterns
            )
            if not outcome.branches:
                self.logger.warning(
                    f"NO BRANCHES {job.name}/{repo.name}: nothing matches "
                    f"{list(repo.effective_patterns)}",
                    extra=fields,
                )
                return outcome
            self.logger.info(
                f"BRANCHES {job.name}/{repo.name}: {', '.join(outcome.branches)}",
                extra=fields,
            )

            if repo.rewrite_enabled:
                stage = "rewrite"
                self._rewrite(git, job, repo)

            stage = "sync"
            for branch in outcome.branches:
                ctx.check()
                self._sync_branch(git, job, repo, branch, outcome, ctx)

        except JobCancelled as e:
            outcome.cancelled = True
            outcome.errors.append(str(e))
            self.logger.warning(f"CANCELLED {job.name}/{repo.name}: {e}", extra=fields)
        except (GitError, OSError, ValueError) as e:
            outcome.errors.append(f"{stage} failed: {e}")
            self.logger.error(
                f"{stage.upper()} ERROR {job.name}/{repo.name}: {e}", extra=fields
            )
        return outcome

    def _acquire(
        self, job: JobDefinition, repo: RepositorySpec, ctx: RunContext
    ) -> GitRepo:
        """Clones the source on first use, otherwise fetches with pruning."""
        path = self.workspace_for(job.name, repo.source)
        env = self.credential_env(job.name, repo)

        if (path / ".git").exists():
            git = GitRepo(path, env=env, ctx=ctx)
            if git.remote_get_url(SOURCE_REMOTE) != repo.source:
                git.remote_set_url(SOURCE_REMOTE, repo.source)
            self.logger.debug(f"FETCH {job.name}/{repo.name}: {path}")
            git.fetch(SOURCE_REMOTE, prune=True)
            return git

        if path.exists():
            # Leftover from an interrupted clone.
            shutil.rmtree(path)
        self.logger.info(f"CLONE {job.name}/{repo.name}: {repo.source} -> {path}")
        try:
            return GitRepo.clone(repo.source, path, env=env, ctx=ctx)
        except (GitError, JobCancelled):
            shutil.rmtree(path, ignore_errors=True)
            raise

    def _rewrite(self, git: GitRepo, job: JobDefinition, repo: RepositorySpec) -> None:
        """Rewrites commit identities across all refs before any push."""
        if not repo.force:
            raise ValueError("history rewrite requires force push mode")
        env_filter = author_env_filter(repo.author_rewrite)
        if not env_filter:
            return
        self.logger.info(
            f"REWRITE {job.name}/{repo.name}: applying "
            f"{len(repo.author_rewrite)} author rules"
        )
        git.filter_branch_env(env_filter)

    def _sync_branch(
        self,
        git: GitRepo,
        job: JobDefinition,
        repo: RepositorySpec,
        branch: str,
        outcome: RepoOutcome,
        ctx: RunContext,
    ) -> None:
        """Resets the local branch to the source and pushes it to every target."""
        try:
            commit = self._checkout(git, branch)
        except GitError as e:
            outcome.errors.append(f"checkout {branch} failed: {e}")
            self.logger.error(
                f"CHECKOUT ERROR {job.name}/{repo.name} {branch}: {e}",
                extra={"job": job.name, "repo": repo.name, "branch": branch},
            )
            return

        for target in repo.targets:
            ctx.check()
            self._push_target(git, job, repo, branch, target, commit, outcome)

    def _checkout(self, git: GitRepo, branch: str) -> str:
        """Makes the local branch match the source branch and returns its tip."""
        if git.rev_parse(f"refs/heads/{branch}") is None:
            git.checkout_tracking(branch)
        else:
            git.checkout(branch, force=True)
            git.reset_hard(f"{SOURCE_REMOTE}/{branch}")
        commit = git.rev_parse("HEAD")
        if not commit:
            raise GitError(["rev-parse", "HEAD"], 1, f"cannot resolve {branch}")
        return commit

    def _ensure_remote(self, git: GitRepo, target: str) -> str:
        """Creates or repoints the remote used for a target; returns its name."""
        name = TARGET_REMOTE_PREFIX + workspace_token(target)
        current = git.remote_get_url(name)
        if current is None:
            git.remote_add(name, target)
        elif current != target:
            git.remote_set_url(name, target)
        return name

    def _target_commit(self, git: GitRepo, remote: str, branch: str) -> str | None:
        """Fetches a branch from a target and returns its tip, or None."""
        tracking = f"refs/remotes/{remote}/{branch}"
        try:
            git.fetch(remote, refspec=f"+refs/heads/{branch}:{tracking}")
        except GitError as e:
            self.logger.debug(f"Target {remote} has no '{branch}' yet: {e}")
            return None
        return git.rev_parse(tracking)

    def _push_target(
        self,
        git: GitRepo,
        job: JobDefinition,
        repo: RepositorySpec,
        branch: str,
        target: str,
        commit: str,
        outcome: RepoOutcome,
    ) -> None:
        """Pushes one branch to one target, recording exactly one transaction."""
        fields = {
            "job": job.name,
            "repo": repo.name,
            "branch": branch,
            "target": target,
            "commit": commit,
        }
        record = TransactionRecord(
            job_name=job.name,
            repo_name=repo.name,
            source=repo.source,
            target=target,
            branch=branch,
            status=STATUS_RUNNING,
            commit_hash=commit,
            start_time=utcnow(),
        )
        outcome.records.append(record)
        self._record(record, new=True)

        try:
            remote = self._ensure_remote(git, target)
            if self._target_commit(git, remote, branch) == commit:
                record.finish(STATUS_SKIPPED)
                self.logger.info(
                    f"UP TO DATE {job.name}/{repo.name} {branch} -> {target} "
                    f"({commit[:12]})",
                    extra=fields,
                )
            else:
                git.push(
                    remote, f"refs/heads/{branch}:refs/heads/{branch}", force=repo.force
                )
                record.finish(STATUS_SUCCESS)
                self.logger.info(
                    f"PUSHED {job.name}/{repo.name} {branch} -> {target} "
                    f"({commit[:12]}, {repo.mode}, {record.duration:.1f}s)",
                    extra=fields,
                )
        except JobCancelled as e:
            record.finish(STATUS_FAILED, str(e))
            self._record(record)
            self.logger.warning(
                f"CANCELLED {job.name}/{repo.name} {branch} -> {target}: {e}",
                extra=fields,
            )
            raise
        except (GitError, OSError, ValueError) as e:
            record.finish(STATUS_FAILED, str(e))
            self.logger.error(
                f"PUSH ERROR {job.name}/{repo.name} {branch} -> {target}: {e}",
                extra=fields,
            )

        self._record(record)

    def _record(self, record: TransactionRecord, new: bool = False) -> None:
        """Persists a record; a lost audit entry never fails the sync."""
        if self.ledger is None:
            return
        try:
            if new:
                self.ledger.append(record)
            else:
                self.ledger.update(record)
        except LedgerError as e:
            self.logger.error(f"LEDGER ERROR {record.job_name}: {e}")
