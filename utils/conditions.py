"""
Branch resolver — picks the outgoing branch of a condition node.

Precedence (first hit wins):
  1. per-branch keywords, case-insensitive substring of the inbound message
  2. legacy global keywords → the branch whose value is "yes" (else the first)
  3. intent mode    → classifier verdict: True → first branch, False → second
  4. time mode      → current hour inside [start, end) → first, else second
  5. variable mode  → branch whose value is a case-insensitive substring of
                      the variable's current value
  6. DEFAULT_BRANCH_POLICY: the last declared branch

Everything here is pure. The intent verdict is computed by the caller
(it needs the external classifier) and passed in.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from models.schemas import Branch, ConditionConfig, ConditionType


# When nothing matches, the last declared branch is selected.
DEFAULT_BRANCH_POLICY = "last_declared"


def match_branch_keywords(branches: list[Branch], message: str) -> Optional[Branch]:
    """First branch with any keyword contained in the message."""
    lowered = (message or "").lower()
    for branch in branches:
        for keyword in branch.keywords:
            if keyword and keyword.lower() in lowered:
                return branch
    return None


def match_global_keywords(config: ConditionConfig, message: str) -> Optional[Branch]:
    """Legacy single keyword list that maps onto the "yes" branch."""
    if not config.branches:
        return None
    lowered = (message or "").lower()
    if any(k and k.lower() in lowered for k in config.keywords):
        yes = next((b for b in config.branches if b.value == "yes"), None)
        return yes or config.branches[0]
    return None


def _nth(branches: list[Branch], index: int) -> Optional[Branch]:
    return branches[index] if len(branches) > index else None


def match_time_window(config: ConditionConfig, now: datetime) -> Optional[Branch]:
    inside = config.time_range.start_hour <= now.hour < config.time_range.end_hour
    return _nth(config.branches, 0 if inside else 1)


def match_variable(config: ConditionConfig, variables: dict[str, Any]) -> Optional[Branch]:
    value = variables.get(config.variable_name)
    current = "" if value is None else str(value).lower()
    for branch in config.branches:
        if branch.value and branch.value.lower() in current:
            return branch
    return None


def default_branch(branches: list[Branch]) -> Optional[Branch]:
    return branches[-1] if branches else None


def needs_intent(config: ConditionConfig, message: str) -> bool:
    """Whether the classifier must be consulted (keywords did not decide)."""
    if config.condition_type != ConditionType.INTENT:
        return False
    return (
        match_branch_keywords(config.branches, message) is None
        and match_global_keywords(config, message) is None
    )


def resolve_branch(
    config: ConditionConfig,
    message: str,
    variables: dict[str, Any],
    now: datetime,
    intent_matched: Optional[bool] = None,
) -> Optional[str]:
    """
    Return the id of the selected branch, or None when the node declares
    no branches at all.
    """
    branch = match_branch_keywords(config.branches, message)
    if branch is None:
        branch = match_global_keywords(config, message)

    if branch is None:
        if config.condition_type == ConditionType.INTENT and intent_matched is not None:
            branch = _nth(config.branches, 0 if intent_matched else 1)
        elif config.condition_type == ConditionType.TIME:
            branch = match_time_window(config, now)
        elif config.condition_type == ConditionType.VARIABLE:
            branch = match_variable(config, variables)

    if branch is None:
        branch = default_branch(config.branches)
    return branch.id if branch else None
