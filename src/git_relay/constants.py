import tempfile
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path

"""Global constants and default path definitions for git-relay.

This module defines application identifiers, default filesystem locations and
the fixed values shared by the scheduler, the sync engine and the ledger.
"""

# --- Identity ---
APP_NAME = "git-relay"
"""str: The human-readable application name (also the root logger name)."""

try:
    APP_VERSION = version(APP_NAME)
except PackageNotFoundError:
    APP_VERSION = "0.0.0+local"
"""str: The installed distribution version."""

# --- Configuration Paths ---
CONFIG_DIR: Path = Path.home() / ".config/git-relay"
"""Path: The directory for user configuration files."""

CONFIG_FILE: Path = CONFIG_DIR / "config.toml"
"""Path: The global configuration file, used when no local file exists."""

LOCAL_CONFIG_FILE = Path("git-relay.toml")
"""Path: The configuration file looked up in the working directory first."""

# --- Runtime Paths ---
WORKSPACE_ROOT = Path(tempfile.gettempdir()) / "git-relay"
"""Path: Default root for per-job repository workspaces."""

DEFAULT_STORE_PATH = "./data/git-relay.db"
"""str: Default location of the transaction ledger file."""

DEFAULT_COLLECTION = "sync_transactions"
"""str: Default ledger collection (table) name."""

# --- Sync Constants ---
SOURCE_REMOTE = "origin"
"""str: The remote name a workspace clone uses for its source."""

TARGET_REMOTE_PREFIX = "target-"
"""str: Prefix of the remote names created for mirror targets."""

DEFAULT_BRANCH_PATTERNS = ("main",)
"""tuple[str]: Patterns applied when a repository configures none."""

PUSH_MODE_SAFE = "safe"
PUSH_MODE_FORCE = "force"
PUSH_MODES = (PUSH_MODE_SAFE, PUSH_MODE_FORCE)
"""tuple[str]: Accepted push-safety modes."""

ASKPASS_SCRIPT = "git-askpass.sh"
"""str: File name of the credential helper staged under the workspace root."""

# --- Scheduler Constants ---
RETENTION_SWEEP_INTERVAL = 24 * 3600
"""int: Seconds between two ledger retention sweeps."""

STATUS_HISTORY_LIMIT = 5
"""int: Number of ledger records joined into a job status report."""

GIT_POLL_INTERVAL = 0.5
"""float: Seconds between cancellation checks while a git command runs."""
