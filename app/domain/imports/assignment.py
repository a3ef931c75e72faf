"""
Lead owner selection for newly created leads.
"""

import logging
from typing import Callable, Dict, Optional

from app.api.schemas.shared import (
    AssignmentRule,
    NoAssignment,
    RoundRobinAssignment,
    RuleAssignment,
    SpecificAssignment,
)

logger = logging.getLogger(__name__)


def rule_matches(rule: AssignmentRule, normalized: Dict[str, Optional[str]]) -> bool:
    value = normalized.get(rule.field)
    if value is None:
        return False
    candidate = str(value).strip().lower()
    expected = rule.value.strip().lower()
    if rule.operator == "equals":
        return candidate == expected
    if rule.operator == "contains":
        return expected in candidate
    if rule.operator == "starts_with":
        return candidate.startswith(expected)
    return False


class AssignmentResolver:
    """
    Picks the user a new lead is assigned to.

    ``next_slot`` returns the job's persisted round-robin position and is
    only called in round-robin mode, once per created lead, so the cycle
    continues where the previous invocation stopped.
    """

    def __init__(self, config, next_slot: Callable[[], int]):
        self.config = config
        self.next_slot = next_slot

    def resolve(self, normalized: Dict[str, Optional[str]]) -> Optional[str]:
        config = self.config
        if isinstance(config, NoAssignment):
            return None
        if isinstance(config, SpecificAssignment):
            return config.user_id
        if isinstance(config, RoundRobinAssignment):
            slot = self.next_slot()
            return config.user_ids[slot % len(config.user_ids)]
        if isinstance(config, RuleAssignment):
            for rule in config.rules:
                if rule_matches(rule, normalized):
                    return rule.user_id
            return None
        raise TypeError(f"Unsupported assignment config: {type(config).__name__}")
