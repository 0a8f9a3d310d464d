import logging
import os
import re
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from .constants import (
    APP_NAME,
    CONFIG_FILE,
    DEFAULT_BRANCH_PATTERNS,
    DEFAULT_COLLECTION,
    DEFAULT_STORE_PATH,
    LOCAL_CONFIG_FILE,
    PUSH_MODE_FORCE,
    PUSH_MODE_SAFE,
    PUSH_MODES,
    WORKSPACE_ROOT,
)
from .patterns import is_literal_fallback
from .trigger import Trigger
from .units import parse_size, parse_time

logger = logging.getLogger(APP_NAME)

LOG_LEVELS = ("debug", "info", "warning", "error", "critical")
LOG_FORMATS = ("text", "json")

_ENV_REF = re.compile(r"\$\{(\w+)\}|\$(\w+)")
_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class ConfigError(ValueError):
    """The configuration file is missing, malformed or fails validation."""


def expand_env(text: str) -> str:
    """Replaces ${VAR} and $VAR references with environment values.

    Unset variables expand to an empty string.
    """
    return _ENV_REF.sub(lambda m: os.environ.get(m.group(1) or m.group(2), ""), text)


def resolve_config_path(explicit: str | Path | None = None) -> Path:
    """Picks the configuration file: explicit path, local file, then global file."""
    if explicit:
        return Path(explicit)
    if LOCAL_CONFIG_FILE.exists():
        return LOCAL_CONFIG_FILE
    return CONFIG_FILE


@dataclass(frozen=True)
class AuthorRewriteRule:
    """Replaces one commit identity during a history rewrite.

    Attributes:
        to_name (str): Replacement author/committer name.
        to_email (str): Replacement author/committer email.
        from_email (str): Source email to match (preferred match key).
        from_name (str): Source name to match when no email is given.
    """

    to_name: str
    to_email: str
    from_email: str = ""
    from_name: str = ""


@dataclass(frozen=True)
class RepositorySpec:
    """One source-to-targets mirroring configuration.

    Attributes:
        source (str): The source repository URL.
        targets (tuple[str, ...]): Target URLs, pushed in this order.
        name (str): Resource name recorded in the ledger.
        branches (tuple[str, ...]): Branch patterns; empty means 'main'.
        mode (str): 'safe' (fast-forward only) or 'force'.
        username (str): Username for token authentication.
        token (str): Access token, passed through to git untouched.
        ssh_key_path (str): Private key used for SSH remotes.
        author_rewrite (tuple[AuthorRewriteRule, ...]): Identity rewrite rules.
        rewrite_history (bool): Whether the rules are applied before pushing.
    """

    source: str
    targets: tuple[str, ...]
    name: str = ""
    branches: tuple[str, ...] = ()
    mode: str = PUSH_MODE_SAFE
    username: str = ""
    token: str = field(default="", repr=False)
    ssh_key_path: str = ""
    author_rewrite: tuple[AuthorRewriteRule, ...] = ()
    rewrite_history: bool = False

    @property
    def effective_patterns(self) -> tuple[str, ...]:
        return self.branches or DEFAULT_BRANCH_PATTERNS

    @property
    def force(self) -> bool:
        return self.mode == PUSH_MODE_FORCE

    @property
    def rewrite_enabled(self) -> bool:
        return self.rewrite_history and bool(self.author_rewrite)


@dataclass(frozen=True)
class JobDefinition:
    """A named, independently scheduled unit of work.

    Attributes:
        name (str): Unique job name.
        schedule (str): Recurrence expression (see `git_relay.trigger`).
        repos (tuple[RepositorySpec, ...]): Repositories mirrored by the job.
        enabled (bool): Whether the scheduler registers the job.
        timeout (int): Seconds before a run is cancelled; 0 disables it.
        description (str): Free text shown in status output.
    """

    name: str
    schedule: str
    repos: tuple[RepositorySpec, ...]
    enabled: bool = True
    timeout: int = 300
    description: str = ""


@dataclass(frozen=True)
class ServiceConfig:
    """Service identity settings.

    Attributes:
        name (str): Service name shown in the banner.
        environment (str): Deployment environment label.
        workspace (str): Root directory for job workspaces.
    """

    name: str = APP_NAME
    environment: str = "development"
    workspace: str = str(WORKSPACE_ROOT)


@dataclass(frozen=True)
class StoreConfig:
    """Transaction ledger settings.

    Attributes:
        path (str): SQLite file backing the ledger.
        collection (str): Table holding the transaction records.
        retention_days (int): Age after which records are swept; 0 keeps all.
    """

    path: str = DEFAULT_STORE_PATH
    collection: str = DEFAULT_COLLECTION
    retention_days: int = 30


@dataclass(frozen=True)
class LoggingConfig:
    """Logging settings.

    Attributes:
        level (str): Minimum level name.
        format (str): 'text' or 'json'.
        output (str): 'stdout', 'stderr' or a file path (rotated).
        max_size (int): Max bytes for a log file before rotation.
        max_backups (int): Rotated files kept.
    """

    level: str = "info"
    format: str = "text"
    output: str = "stdout"
    max_size: int = 100 * 1024 * 1024
    max_backups: int = 3


@dataclass(frozen=True)
class Config:
    """Global configuration aggregator.

    Attributes:
        service (ServiceConfig): Service identity.
        store (StoreConfig): Ledger settings.
        logging (LoggingConfig): Logging settings.
        jobs (tuple[JobDefinition, ...]): Every configured job.
    """

    service: ServiceConfig = field(default_factory=ServiceConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    jobs: tuple[JobDefinition, ...] = ()

    @classmethod
    def load(cls, path: str | Path) -> "Config":
        """Reads, expands, parses and validates a TOML configuration file.

        Args:
            path (str | Path): The configuration file.

        Returns:
            Config: The validated configuration.

        Raises:
            ConfigError: If the file is missing, unparsable or invalid.
        """
        path = Path(path)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError as e:
            raise ConfigError(f"Configuration file not found: {path}") from e
        except OSError as e:
            raise ConfigError(f"Failed to read config file {path}: {e}") from e

        try:
            data = tomllib.loads(expand_env(text))
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Config syntax error in {path}: {e}") from e

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Config":
        """Builds a validated configuration from already-parsed data.

        Environment overrides (SERVICE_NAME, ENVIRONMENT, LOG_LEVEL,
        LOG_FORMAT, STORE_PATH) take precedence over the data.

        Raises:
            ConfigError: On unknown keys, wrong types or invalid values.
        """
        _check_keys("config", data, {"service", "store", "logging", "jobs"})

        service = _section(data, "service")
        store = _section(data, "store")
        logging_ = _section(data, "logging")
        _apply_env_overrides(service, store, logging_)

        jobs_data = data.get("jobs", [])
        if not isinstance(jobs_data, list):
            raise ConfigError("[[jobs]] must be an array of tables")

        config = cls(
            service=_build(ServiceConfig, "service", service),
            store=_build(StoreConfig, "store", store),
            logging=_build(LoggingConfig, "logging", logging_),
            jobs=tuple(_build_job(i, job) for i, job in enumerate(jobs_data)),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Checks cross-field invariants.

        Raises:
            ConfigError: Describing the first violation found.
        """
        if not self.service.name:
            raise ConfigError("service name cannot be empty")
        if not self.store.path:
            raise ConfigError("store path cannot be empty")
        if not _IDENTIFIER.match(self.store.collection):
            raise ConfigError(
                f"store collection '{self.store.collection}' must be a plain identifier"
            )
        if self.store.retention_days < 0:
            raise ConfigError("store retention_days cannot be negative")
        if self.logging.level.lower() not in LOG_LEVELS:
            raise ConfigError(f"unknown log level '{self.logging.level}'")
        if self.logging.format.lower() not in LOG_FORMATS:
            raise ConfigError(f"unsupported log format '{self.logging.format}'")
        if not self.jobs:
            raise ConfigError("at least one job must be configured")

        seen: set[str] = set()
        for i, job in enumerate(self.jobs):
            where = f"jobs[{i}]"
            if not job.name:
                raise ConfigError(f"{where}: name cannot be empty")
            if job.name in seen:
                raise ConfigError(f"{where}: duplicate job name '{job.name}'")
            seen.add(job.name)
            if job.timeout < 0:
                raise ConfigError(f"{where}: timeout cannot be negative")
            if job.enabled:
                if not job.schedule:
                    raise ConfigError(
                        f"{where}: schedule cannot be empty for enabled job"
                    )
                try:
                    Trigger.parse(job.schedule)
                except ValueError as e:
                    raise ConfigError(f"{where}: {e}") from e
            if not job.repos:
                raise ConfigError(
                    f"{where}: at least one repository must be configured"
                )
            for j, repo in enumerate(job.repos):
                _validate_repo(f"{where}.repos[{j}]", repo)

    def enabled_jobs(self) -> list[JobDefinition]:
        return [job for job in self.jobs if job.enabled]

    def job(self, name: str) -> JobDefinition | None:
        """Returns the job with the given name, or None."""
        for job in self.jobs:
            if job.name == name:
                return job
        return None


def _validate_repo(where: str, repo: RepositorySpec) -> None:
    if not repo.source:
        raise ConfigError(f"{where}: source cannot be empty")
    if not repo.targets:
        raise ConfigError(f"{where}: at least one target must be configured")
    if any(not t for t in repo.targets):
        raise ConfigError(f"{where}: targets cannot contain empty URLs")
    if repo.mode not in PUSH_MODES:
        raise ConfigError(
            f"{where}: mode must be one of {', '.join(PUSH_MODES)}, got '{repo.mode}'"
        )
    for k, rule in enumerate(repo.author_rewrite):
        if not (rule.from_email or rule.from_name):
            raise ConfigError(
                f"{where}.author_rewrite[{k}]: from_email or from_name is required"
            )
        if not (rule.to_name and rule.to_email):
            raise ConfigError(
                f"{where}.author_rewrite[{k}]: to_name and to_email are required"
            )
    if repo.rewrite_history and repo.mode != PUSH_MODE_FORCE:
        raise ConfigError(
            f"{where}: rewrite_history requires mode = \"force\" "
            "(rewritten history cannot be fast-forwarded)"
        )
    for pattern in repo.branches:
        if is_literal_fallback(pattern):
            logger.warning(
                f"{where}: branch pattern '{pattern}' has several wildcards "
                "and will only match literally."
            )


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    value = data.get(name, {})
    if not isinstance(value, dict):
        raise ConfigError(f"[{name}] must be a table")
    return dict(value)


def _apply_env_overrides(
    service: dict[str, Any], store: dict[str, Any], logging_: dict[str, Any]
) -> None:
    overrides = (
        ("SERVICE_NAME", service, "name"),
        ("ENVIRONMENT", service, "environment"),
        ("LOG_LEVEL", logging_, "level"),
        ("LOG_FORMAT", logging_, "format"),
        ("STORE_PATH", store, "path"),
    )
    for env_var, section, key in overrides:
        if value := os.environ.get(env_var):
            section[key] = value


def _check_keys(section_name: str, data: dict[str, Any], valid: set[str]) -> None:
    """Rejects typos and unknown keys."""
    invalid_keys = set(data) - valid
    if invalid_keys:
        raise ConfigError(
            f"Unknown config keys in [{section_name}]: "
            f"{', '.join(sorted(invalid_keys))}"
        )


def _build(cls: type, section_name: str, data: dict[str, Any]) -> Any:
    """Builds a flat settings dataclass, parsing human-readable values."""
    valid = {f.name: f for f in fields(cls)}
    _check_keys(section_name, data, set(valid))

    values: dict[str, Any] = {}
    for k, v in data.items():
        try:
            if k == "max_size":
                values[k] = parse_size(v)
            else:
                values[k] = _typed(k, v, type(getattr(cls(), k)))
        except ValueError as e:
            raise ConfigError(f"Config error in [{section_name}].{k}: {e}") from e
    return cls(**values)


def _typed(key: str, value: Any, expected: type) -> Any:
    # bool is a subclass of int, so it is checked explicitly.
    if expected is int and (isinstance(value, bool) or not isinstance(value, int)):
        raise ValueError(f"expected an integer, got {value!r}")
    if not isinstance(value, expected):
        raise ValueError(f"expected {expected.__name__}, got {value!r}")
    return value


def _string_list(where: str, value: Any) -> tuple[str, ...]:
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ConfigError(f"{where} must be a list of strings")
    return tuple(value)


def _build_job(index: int, data: Any) -> JobDefinition:
    where = f"jobs[{index}]"
    if not isinstance(data, dict):
        raise ConfigError(f"{where} must be a table")
    _check_keys(
        where, data, {"name", "description", "schedule", "enabled", "timeout", "repos"}
    )

    try:
        timeout = parse_time(data.get("timeout", 300))
    except ValueError as e:
        raise ConfigError(f"Config error in [{where}].timeout: {e}") from e

    repos_data = data.get("repos", [])
    if not isinstance(repos_data, list):
        raise ConfigError(f"{where}.repos must be an array of tables")

    try:
        return JobDefinition(
            name=_typed("name", data.get("name", ""), str),
            description=_typed("description", data.get("description", ""), str),
            schedule=_typed("schedule", data.get("schedule", ""), str),
            enabled=_typed("enabled", data.get("enabled", True), bool),
            timeout=timeout,
            repos=tuple(
                _build_repo(f"{where}.repos[{j}]", repo)
                for j, repo in enumerate(repos_data)
            ),
        )
    except ValueError as e:
        if isinstance(e, ConfigError):
            raise
        raise ConfigError(f"Config error in [{where}]: {e}") from e


def _build_repo(where: str, data: Any) -> RepositorySpec:
    if not isinstance(data, dict):
        raise ConfigError(f"{where} must be a table")
    _check_keys(
        where,
        data,
        {
            "name",
            "source",
            "targets",
            "branches",
            "mode",
            "username",
            "token",
            "token_env",
            "ssh_key_path",
            "ssh_key_env",
            "author_rewrite",
            "rewrite_history",
        },
    )

    # Credentials may be indirected through environment variables.
    token = _typed("token", data.get("token", ""), str)
    if token_env := _typed("token_env", data.get("token_env", ""), str):
        token = os.environ.get(token_env, "")
    ssh_key_path = _typed("ssh_key_path", data.get("ssh_key_path", ""), str)
    if ssh_key_env := _typed("ssh_key_env", data.get("ssh_key_env", ""), str):
        ssh_key_path = os.environ.get(ssh_key_env, "")

    rules_data = data.get("author_rewrite", [])
    if not isinstance(rules_data, list):
        raise ConfigError(f"{where}.author_rewrite must be an array of tables")
    rules = []
    for k, rule in enumerate(rules_data):
        rule_where = f"{where}.author_rewrite[{k}]"
        if not isinstance(rule, dict):
            raise ConfigError(f"{rule_where} must be a table")
        _check_keys(rule_where, rule, {f.name for f in fields(AuthorRewriteRule)})
        rules.append(
            AuthorRewriteRule(
                to_name=_typed("to_name", rule.get("to_name", ""), str),
                to_email=_typed("to_email", rule.get("to_email", ""), str),
                from_email=_typed("from_email", rule.get("from_email", ""), str),
                from_name=_typed("from_name", rule.get("from_name", ""), str),
            )
        )

    source = _typed("source", data.get("source", ""), str)
    return RepositorySpec(
        source=source,
        targets=_string_list(f"{where}.targets", data.get("targets", [])),
        name=_typed("name", data.get("name", ""), str) or repo_name_from_url(source),
        branches=_string_list(f"{where}.branches", data.get("branches", [])),
        mode=_typed("mode", data.get("mode", PUSH_MODE_SAFE), str).lower(),
        username=_typed("username", data.get("username", ""), str),
        token=token,
        ssh_key_path=ssh_key_path,
        author_rewrite=tuple(rules),
        rewrite_history=_typed(
            "rewrite_history", data.get("rewrite_history", False), bool
        ),
    )


def repo_name_from_url(url: str) -> str:
    """Derives a resource name from a repository URL.

    Examples: 'https://host/org/project.git' and 'git@host:org/project'
    both yield 'project'.
    """
    tail = re.split(r"[/:]", url.rstrip("/"))[-1]
    return tail.removesuffix(".git") or url


def example_config() -> str:
    """Returns a commented example configuration file."""
    return EXAMPLE_CONFIG


EXAMPLE_CONFIG = """\
# git-relay configuration
#
# ${VAR} references are expanded from the environment before parsing.
#
# Schedules are cron expressions, optionally with a leading seconds field:
#   "0 */5 * * * *"  - every 5 minutes, on the minute
#   "*/10 * * * *"   - every 10 minutes
#   "@hourly"        - every hour (also @daily, @weekly, @monthly, @yearly)
#   "@every 90s"     - every 90 seconds

[service]
name = "git-relay"
environment = "development"

[store]
path = "./data/git-relay.db"
collection = "sync_transactions"
retention_days = 30

[logging]
level = "info"
format = "text"      # text | json
output = "stdout"    # stdout | stderr | path/to/file.log
max_size = "100mb"
max_backups = 3

[[jobs]]
name = "main-sync"
description = "Mirror the main project to GitLab and Bitbucket"
schedule = "0 */5 * * * *"
enabled = true
timeout = "5m"

  [[jobs.repos]]
  source = "https://github.com/myorg/my-project.git"
  targets = [
    "https://gitlab.com/myorg/my-project.git",
    "https://bitbucket.org/myorg/my-project.git",
  ]
  branches = ["main", "release-*"]
  mode = "safe"        # safe | force
  username = "git-sync-bot"
  token_env = "GITHUB_TOKEN"
"""
