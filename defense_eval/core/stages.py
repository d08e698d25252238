"""
defense_eval/core/stages.py
Evaluation stages and judgement taxonomy

Three fixed evaluation stages (proposal, mid, final). Each stage is a
StageSpec carrying its judgement set, the static classification of every
judgement, and the score fields of its canonical evaluation record.
Callers dispatch on EvaluationType through get_stage(); no field path is
ever built from the stage name.
"""
from dataclasses import dataclass
from enum import Enum as PyEnum
from typing import Dict, FrozenSet, Tuple, Type


class EvaluationType(str, PyEnum):
    PROPOSAL = "proposal"
    MID = "mid"
    FINAL = "final"


class JudgementOutcome(str, PyEnum):
    """How a judgement moves the team forward."""
    PASSED = "passed"
    DEFENSE_FAILED = "defense_failed"  # re-defense or absent
    REJECTED = "rejected"


class ProposalJudgement(str, PyEnum):
    ACCEPTED = "ACCEPTED"
    ACCEPTED_CONDITIONALLY = "ACCEPTED-CONDITIONALLY"
    RE_DEFENSE = "RE-DEFENSE"
    ABSENT = "ABSENT"
    REJECTED = "REJECTED"


class MidJudgement(str, PyEnum):
    PROGRESS_SATISFACTORY = "PROGRESS-SATISFACTORY"
    PROGRESS_SEEN = "PROGRESS-SEEN"
    PROGRESS_NOT_SATISFACTORY = "PROGRESS-NOT-SATISFACTORY"
    ABSENT = "ABSENT"


class FinalJudgement(str, PyEnum):
    ACCEPTED = "ACCEPTED"
    ACCEPTED_CONDITIONALLY = "ACCEPTED-CONDITIONALLY"
    RE_DEFENSE = "RE-DEFENSE"
    ABSENT = "ABSENT"


@dataclass(frozen=True)
class StageSpec:
    """
    One evaluation stage.

    member_fields are scored per team member (taken from the member row);
    project_fields are scored once per project and copied onto every
    member row of the canonical record.
    """
    evaluation_type: EvaluationType
    judgements: Type[PyEnum]
    outcomes: Dict[str, JudgementOutcome]
    member_fields: Tuple[str, ...]
    project_fields: Tuple[str, ...]
    is_terminal: bool = False

    @property
    def allowed_judgements(self) -> FrozenSet[str]:
        return frozenset(j.value for j in self.judgements)

    @property
    def scored_member_fields(self) -> Tuple[str, ...]:
        """Every scored field of a canonical member row, in record order."""
        return ("performanceAtPresentation",) + self.member_fields + self.project_fields

    def classify(self, judgement: str) -> JudgementOutcome:
        """Raises KeyError for a judgement outside this stage's set."""
        return self.outcomes[judgement]

    def is_passing(self, judgement: str) -> bool:
        return self.classify(judgement) is JudgementOutcome.PASSED

    def invalidates_report(self, judgement: str) -> bool:
        return self.classify(judgement) is not JudgementOutcome.PASSED


PROPOSAL_STAGE = StageSpec(
    evaluation_type=EvaluationType.PROPOSAL,
    judgements=ProposalJudgement,
    outcomes={
        ProposalJudgement.ACCEPTED.value: JudgementOutcome.PASSED,
        ProposalJudgement.ACCEPTED_CONDITIONALLY.value: JudgementOutcome.PASSED,
        ProposalJudgement.RE_DEFENSE.value: JudgementOutcome.DEFENSE_FAILED,
        ProposalJudgement.ABSENT.value: JudgementOutcome.DEFENSE_FAILED,
        ProposalJudgement.REJECTED.value: JudgementOutcome.REJECTED,
    },
    member_fields=(),
    project_fields=(
        "projectTitleAndAbstract",
        "project",
        "objective",
        "teamWork",
        "documentation",
        "plagiarism",
    ),
)

MID_STAGE = StageSpec(
    evaluation_type=EvaluationType.MID,
    judgements=MidJudgement,
    outcomes={
        MidJudgement.PROGRESS_SATISFACTORY.value: JudgementOutcome.PASSED,
        MidJudgement.PROGRESS_SEEN.value: JudgementOutcome.PASSED,
        MidJudgement.PROGRESS_NOT_SATISFACTORY.value: JudgementOutcome.PASSED,
        MidJudgement.ABSENT.value: JudgementOutcome.DEFENSE_FAILED,
    },
    member_fields=(),
    project_fields=(
        "feedbackIncorporated",
        "workProgress",
        "documentation",
    ),
)

FINAL_STAGE = StageSpec(
    evaluation_type=EvaluationType.FINAL,
    judgements=FinalJudgement,
    outcomes={
        FinalJudgement.ACCEPTED.value: JudgementOutcome.PASSED,
        FinalJudgement.ACCEPTED_CONDITIONALLY.value: JudgementOutcome.PASSED,
        FinalJudgement.RE_DEFENSE.value: JudgementOutcome.DEFENSE_FAILED,
        FinalJudgement.ABSENT.value: JudgementOutcome.DEFENSE_FAILED,
    },
    member_fields=("contributionInWork",),
    project_fields=(
        "projectTitle",
        "volume",
        "objective",
        "creativity",
        "analysisAndDesign",
        "toolAndTechniques",
        "documentation",
        "accomplished",
        "demo",
    ),
    is_terminal=True,
)

STAGES: Dict[EvaluationType, StageSpec] = {
    EvaluationType.PROPOSAL: PROPOSAL_STAGE,
    EvaluationType.MID: MID_STAGE,
    EvaluationType.FINAL: FINAL_STAGE,
}


def get_stage(evaluation_type: EvaluationType) -> StageSpec:
    return STAGES[EvaluationType(evaluation_type)]
