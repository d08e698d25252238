"""
defense_eval/services/record_writer.py
Canonical evaluation record and its backlinks

Each stage has its own member-row schema:

- proposal: performanceAtPresentation + projectTitleAndAbstract, project,
  objective, teamWork, documentation, plagiarism
- mid: performanceAtPresentation + feedbackIncorporated, workProgress,
  documentation
- final: performanceAtPresentation, contributionInWork + projectTitle,
  volume, objective, creativity, analysisAndDesign, toolAndTechniques,
  documentation, accomplished, demo

Aggregate scores are copied onto every member row. An absent member gets
zero in every scored field whatever was submitted for them.
"""
import logging
from typing import Any, Dict, List

from sqlalchemy.ext.asyncio import AsyncSession

from defense_eval.core.stages import StageSpec, get_stage
from defense_eval.orm.evaluation import DefenseEvaluationLink, Evaluation, ProjectEvaluationLink
from defense_eval.schemas.evaluation import EvaluationSubmission, coerce_score

logger = logging.getLogger(__name__)

ABSENT_SCORE = 0.0


def canonical_project_evaluation(stage: StageSpec, raw: Dict[str, Any]) -> Dict[str, Any]:
    """Aggregate evaluation with every stage score present and numeric."""
    canonical = dict(raw)
    canonical["judgement"] = raw.get("judgement")
    for name in stage.project_fields:
        canonical[name] = coerce_score(raw.get(name))
    return canonical


def format_individual_evaluations(stage: StageSpec, submission: EvaluationSubmission) -> List[Dict[str, Any]]:
    project_evaluation = submission.project_evaluation
    rows = []
    for member_row in submission.individual_evaluation:
        absent = bool(member_row.absent)
        row = {
            "student": member_row.member,
            "absent": absent,
            "performanceAtPresentation": (
                ABSENT_SCORE if absent else coerce_score(member_row.performance_at_presentation)
            ),
        }
        for name in stage.member_fields:
            row[name] = ABSENT_SCORE if absent else coerce_score(member_row.field(name))
        for name in stage.project_fields:
            row[name] = ABSENT_SCORE if absent else coerce_score(project_evaluation.field(name))
        rows.append(row)
    return rows


async def write_evaluation_record(
    db: AsyncSession,
    submission: EvaluationSubmission,
    project_stage_id: int,
) -> Evaluation:
    """
    Persist one Evaluation and append it to the defense's and the project stage's lists.

    Returns:
        the flushed Evaluation (id assigned)
    """
    stage = get_stage(submission.evaluation_type)

    evaluation = Evaluation(
        project_id=submission.project_id,
        evaluator_id=submission.evaluator_id,
        defense_id=submission.defense_id,
        event_id=submission.event_id,
        evaluation_type=stage.evaluation_type,
        individual_evaluation=format_individual_evaluations(stage, submission),
        project_evaluation=canonical_project_evaluation(stage, submission.project_evaluation.model_dump()),
    )
    db.add(evaluation)
    await db.flush()

    db.add_all([
        DefenseEvaluationLink(defense_id=submission.defense_id, evaluation_id=evaluation.id),
        ProjectEvaluationLink(project_stage_id=project_stage_id, evaluation_id=evaluation.id),
    ])
    await db.flush()

    logger.info(
        f"Evaluation {evaluation.id} recorded for project {submission.project_id} "
        f"by evaluator {submission.evaluator_id}"
    )
    return evaluation
