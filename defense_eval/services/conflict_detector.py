"""
defense_eval/services/conflict_detector.py
Conflict detection against already recorded evaluations

Evaluators of one defense agree on a single assessment. A new submission
for a (project, defense, stage) that already has recorded evaluations must
match each of them: same judgement, same aggregate scores, same member
rows in canonical form. A mismatch aborts the whole transaction, the
gate's flag flip included.
"""
import logging
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from defense_eval.core.stages import StageSpec, get_stage
from defense_eval.errors import ConflictDetectedError
from defense_eval.orm.evaluation import Evaluation
from defense_eval.schemas.evaluation import EvaluationSubmission
from defense_eval.services.record_writer import canonical_project_evaluation, format_individual_evaluations

logger = logging.getLogger(__name__)


def _rows_by_member(rows: Iterable[Dict[str, Any]]) -> Dict[Any, Dict[str, Any]]:
    return {row["student"]: row for row in rows}


def find_conflict(
    stage: StageSpec,
    individual_rows: List[Dict[str, Any]],
    project_evaluation: Dict[str, Any],
    prior: Evaluation,
) -> Optional[str]:
    """
    Compare a canonical submission with one recorded evaluation.

    Returns:
        None when they agree, otherwise a short description of the first mismatch
    """
    prior_project = canonical_project_evaluation(stage, prior.project_evaluation or {})

    if prior_project["judgement"] != project_evaluation["judgement"]:
        return "judgement"
    for name in stage.project_fields:
        if prior_project.get(name) != project_evaluation.get(name):
            return f"projectEvaluation.{name}"

    new_rows = _rows_by_member(individual_rows)
    prior_rows = _rows_by_member(prior.individual_evaluation or [])
    if set(new_rows) != set(prior_rows):
        return "individualEvaluation members"

    for member, row in new_rows.items():
        prior_row = prior_rows[member]
        if bool(prior_row.get("absent")) != bool(row["absent"]):
            return f"individualEvaluation[{member}].absent"
        for name in stage.scored_member_fields:
            if float(prior_row.get(name, 0) or 0) != row[name]:
                return f"individualEvaluation[{member}].{name}"

    return None


async def load_prior_evaluations(db: AsyncSession, submission: EvaluationSubmission) -> List[Evaluation]:
    result = await db.execute(
        select(Evaluation)
        .where(
            and_(
                Evaluation.project_id == submission.project_id,
                Evaluation.defense_id == submission.defense_id,
                Evaluation.evaluation_type == submission.evaluation_type,
            )
        )
        .order_by(Evaluation.id)
    )
    return list(result.scalars().all())


async def ensure_no_conflict(db: AsyncSession, submission: EvaluationSubmission) -> int:
    """
    Raise ConflictDetectedError when the submission diverges from any recorded evaluation.

    Returns:
        number of recorded evaluations compared against
    """
    prior_evaluations = await load_prior_evaluations(db, submission)
    if not prior_evaluations:
        return 0

    stage = get_stage(submission.evaluation_type)
    individual_rows = format_individual_evaluations(stage, submission)
    project_evaluation = canonical_project_evaluation(stage, submission.project_evaluation.model_dump())

    for prior in prior_evaluations:
        mismatch = find_conflict(stage, individual_rows, project_evaluation, prior)
        if mismatch:
            logger.warning(
                f"Conflict on project {submission.project_id} defense {submission.defense_id}: "
                f"evaluator {submission.evaluator_id} differs from evaluation {prior.id} in {mismatch}"
            )
            raise ConflictDetectedError(details={"evaluation_id": prior.id, "field": mismatch})

    return len(prior_evaluations)
