from .stages import (
    EvaluationType,
    JudgementOutcome,
    ProposalJudgement,
    MidJudgement,
    FinalJudgement,
    StageSpec,
    STAGES,
    get_stage,
)
from .progress_codes import (
    CohortTier,
    PROGRESS_STATUS_CODES,
    progress_status_for,
    resolve_tier,
    tier_for_status,
)
