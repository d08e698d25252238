"""
defense_eval/core/progress_codes.py
Cohort tiers and the progress-status code table

A student's cohort tier follows from how many years ago their batch
enrolled. Each tier owns a disjoint numeric range of progress-status
codes; the table below lists every code a defense outcome can assign.
"""
import logging
from datetime import datetime
from enum import IntEnum
from typing import Dict, Optional, Tuple

from defense_eval.core.stages import EvaluationType, JudgementOutcome

logger = logging.getLogger(__name__)


class CohortTier(IntEnum):
    PROJECT_FIRST = 0  # batch enrolled 2 years ago
    MINOR = 1          # batch enrolled 3 years ago
    MAJOR = 2          # batch enrolled 4 years ago

    @property
    def status_range(self) -> Tuple[int, int]:
        """Half-open [low, high) range of progress-status codes for this tier."""
        return TIER_STATUS_RANGES[self]

    def contains(self, progress_status: int) -> bool:
        low, high = self.status_range
        return low <= int(progress_status) < high


TIER_STATUS_RANGES: Dict[CohortTier, Tuple[int, int]] = {
    CohortTier.PROJECT_FIRST: (0, 1000),
    CohortTier.MINOR: (1000, 2000),
    CohortTier.MAJOR: (2000, 3000),
}

YEARS_SINCE_ENROLLMENT: Dict[int, CohortTier] = {
    2: CohortTier.PROJECT_FIRST,
    3: CohortTier.MINOR,
    4: CohortTier.MAJOR,
}


def resolve_tier(batch_year: int, current_year: Optional[int] = None) -> CohortTier:
    """
    Resolve the cohort tier of a batch.

    Batches younger than the first tier are clamped into it, batches older
    than the last tier into the last one.
    """
    if current_year is None:
        current_year = datetime.utcnow().year
    years = current_year - int(batch_year)

    tier = YEARS_SINCE_ENROLLMENT.get(years)
    if tier is not None:
        return tier

    clamped = CohortTier.PROJECT_FIRST if years < 2 else CohortTier.MAJOR
    logger.warning(
        f"Batch {batch_year} is {years} years old in {current_year}; "
        f"clamping to tier {clamped.name}"
    )
    return clamped


def tier_for_status(progress_status: int) -> Optional[CohortTier]:
    for tier in CohortTier:
        if tier.contains(progress_status):
            return tier
    return None


PROGRESS_STATUS_CODES: Dict[Tuple[CohortTier, EvaluationType, JudgementOutcome], int] = {
    # Project first (tier 0)
    (CohortTier.PROJECT_FIRST, EvaluationType.PROPOSAL, JudgementOutcome.PASSED): 102,
    (CohortTier.PROJECT_FIRST, EvaluationType.PROPOSAL, JudgementOutcome.DEFENSE_FAILED): 103,
    (CohortTier.PROJECT_FIRST, EvaluationType.PROPOSAL, JudgementOutcome.REJECTED): 104,
    (CohortTier.PROJECT_FIRST, EvaluationType.MID, JudgementOutcome.PASSED): 202,
    (CohortTier.PROJECT_FIRST, EvaluationType.MID, JudgementOutcome.DEFENSE_FAILED): 203,
    (CohortTier.PROJECT_FIRST, EvaluationType.FINAL, JudgementOutcome.PASSED): 302,
    (CohortTier.PROJECT_FIRST, EvaluationType.FINAL, JudgementOutcome.DEFENSE_FAILED): 303,
    # Minor (tier 1)
    (CohortTier.MINOR, EvaluationType.PROPOSAL, JudgementOutcome.PASSED): 1102,
    (CohortTier.MINOR, EvaluationType.PROPOSAL, JudgementOutcome.DEFENSE_FAILED): 1103,
    (CohortTier.MINOR, EvaluationType.PROPOSAL, JudgementOutcome.REJECTED): 1104,
    (CohortTier.MINOR, EvaluationType.MID, JudgementOutcome.PASSED): 1202,
    (CohortTier.MINOR, EvaluationType.MID, JudgementOutcome.DEFENSE_FAILED): 1203,
    (CohortTier.MINOR, EvaluationType.FINAL, JudgementOutcome.PASSED): 1302,
    (CohortTier.MINOR, EvaluationType.FINAL, JudgementOutcome.DEFENSE_FAILED): 1303,
    # Major (tier 2)
    (CohortTier.MAJOR, EvaluationType.PROPOSAL, JudgementOutcome.PASSED): 2102,
    (CohortTier.MAJOR, EvaluationType.PROPOSAL, JudgementOutcome.DEFENSE_FAILED): 2103,
    (CohortTier.MAJOR, EvaluationType.PROPOSAL, JudgementOutcome.REJECTED): 2104,
    (CohortTier.MAJOR, EvaluationType.MID, JudgementOutcome.PASSED): 2202,
    (CohortTier.MAJOR, EvaluationType.MID, JudgementOutcome.DEFENSE_FAILED): 2203,
    (CohortTier.MAJOR, EvaluationType.FINAL, JudgementOutcome.PASSED): 2302,
    (CohortTier.MAJOR, EvaluationType.FINAL, JudgementOutcome.DEFENSE_FAILED): 2303,
}


def progress_status_for(
    tier: CohortTier,
    evaluation_type: EvaluationType,
    outcome: JudgementOutcome,
) -> int:
    """Raises KeyError for an outcome the stage cannot produce."""
    return PROGRESS_STATUS_CODES[(CohortTier(tier), EvaluationType(evaluation_type), outcome)]
