"""Branch-name filtering with a small subset of glob syntax.

Only a single ``*`` is interpreted: alone (everything), leading (suffix
match), trailing (prefix match) or interior (prefix and suffix match).
Any other use of ``*`` is compared literally.
"""

from collections.abc import Iterable, Sequence

from .constants import DEFAULT_BRANCH_PATTERNS

WILDCARD = "*"


def is_literal_fallback(pattern: str) -> bool:
    """Returns True if the pattern contains wildcards that are matched literally."""
    return pattern != WILDCARD and pattern.count(WILDCARD) > 1


def matches(branch: str, pattern: str) -> bool:
    """Decides whether a branch name is selected by a single pattern.

    Args:
        branch (str): The branch name (e.g. 'feature/login').
        pattern (str): The configured pattern (e.g. 'feature/*').

    Returns:
        bool: True if the branch is in scope for the pattern.
    """
    if pattern == WILDCARD:
        return True

    if pattern.count(WILDCARD) != 1:
        return branch == pattern

    if pattern.startswith(WILDCARD):
        return branch.endswith(pattern[1:])
    if pattern.endswith(WILDCARD):
        return branch.startswith(pattern[:-1])

    # Prefix and suffix are checked independently, so they may overlap.
    prefix, suffix = pattern.split(WILDCARD)
    return branch.startswith(prefix) and branch.endswith(suffix)


def filter_branches(branches: Iterable[str], patterns: Sequence[str]) -> list[str]:
    """Selects the branches matched by at least one pattern.

    Discovery order of ``branches`` is preserved. An empty pattern list
    falls back to the implicit ``main`` pattern.

    Args:
        branches (Iterable[str]): Remote branch names in discovery order.
        patterns (Sequence[str]): Configured patterns in configuration order.

    Returns:
        list[str]: The effective branch set.
    """
    effective = tuple(patterns) or DEFAULT_BRANCH_PATTERNS
    return [b for b in branches if any(matches(b, p) for p in effective)]
