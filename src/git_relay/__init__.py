"""git-relay: Scheduled mirroring of git repositories.

This package provides the command-line interface, the scheduling daemon, and
the sync engine that mirrors source repositories to one or more targets,
recording every push attempt in a durable transaction ledger.
"""

from . import (
    cli,
    config,
    constants,
    context,
    daemon,
    git_wrapper,
    ledger,
    patterns,
    scheduler,
    sync,
    trigger,
    units,
)

__all__ = [
    "cli",
    "config",
    "constants",
    "context",
    "daemon",
    "git_wrapper",
    "ledger",
    "patterns",
    "scheduler",
    "sync",
    "trigger",
    "units",
]
