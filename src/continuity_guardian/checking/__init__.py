"""
Consistency checking: contradiction strategies, timeline checks and the checker.
"""

from .checker import (
    CLOSED_THREAD_WORDS,
    ISSUE_TYPE_BY_CATEGORY,
    SEVERITY_BY_IMPORTANCE,
    ConsistencyChecker,
    MergeOutcome,
    is_closed_thread,
    text_hash,
)
from .contradiction import (
    ContradictionStrategy,
    Judgement,
    LLMJudgeStrategy,
    RuleBasedStrategy,
    create_strategy,
)
from .timeline import (
    TIME_OF_DAY,
    check_timeline,
    collect_deaths,
    find_location_conflicts,
    find_post_death_appearances,
    find_time_of_day_mismatches,
    parse_hour,
)

__all__ = [
    "CLOSED_THREAD_WORDS",
    "ISSUE_TYPE_BY_CATEGORY",
    "SEVERITY_BY_IMPORTANCE",
    "ConsistencyChecker",
    "MergeOutcome",
    "is_closed_thread",
    "text_hash",
    "ContradictionStrategy",
    "Judgement",
    "LLMJudgeStrategy",
    "RuleBasedStrategy",
    "create_strategy",
    "TIME_OF_DAY",
    "check_timeline",
    "collect_deaths",
    "find_location_conflicts",
    "find_post_death_appearances",
    "find_time_of_day_mismatches",
    "parse_hour",
]
