"""
defense_eval/services/submission_gate.py
Submission gate: single-writer-wins claim of an evaluator slot

The gate is one conditional UPDATE:

    UPDATE defense_object_evaluators
       SET has_evaluated = true
     WHERE project_id = :p AND evaluation_type = :t
       AND defense_id = :d AND evaluator_id = :e
       AND has_evaluated = false

The WHERE clause binds the write to the previously observed value, so of
any number of concurrent callers exactly one sees rowcount == 1. Every
other caller gets rowcount == 0 and a DuplicateSubmissionError. The gate
never retries and touches nothing but the one flag.
"""
import logging
from datetime import datetime

from sqlalchemy import and_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from defense_eval.core.stages import EvaluationType
from defense_eval.errors import DuplicateSubmissionError, NotFoundError
from defense_eval.orm.project import DefenseObject, DefenseObjectEvaluator

logger = logging.getLogger(__name__)


def _slot_filter(project_id: int, evaluation_type: EvaluationType, defense_id: int, evaluator_id: int):
    return and_(
        DefenseObjectEvaluator.project_id == project_id,
        DefenseObjectEvaluator.evaluation_type == EvaluationType(evaluation_type),
        DefenseObjectEvaluator.defense_id == defense_id,
        DefenseObjectEvaluator.evaluator_id == evaluator_id,
    )


async def claim_evaluator_slot(
    db: AsyncSession,
    project_id: int,
    evaluation_type: EvaluationType,
    defense_id: int,
    evaluator_id: int,
) -> int:
    """
    Flip the evaluator's has_evaluated flag false -> true.

    Returns:
        id of the defense-object owning the claimed slot

    Raises:
        DuplicateSubmissionError: flag already set, or no such slot
        NotFoundError: the slot vanished between the UPDATE and the read-back
    """
    result = await db.execute(
        update(DefenseObjectEvaluator)
        .where(
            and_(
                _slot_filter(project_id, evaluation_type, defense_id, evaluator_id),
                DefenseObjectEvaluator.has_evaluated.is_(False),
            )
        )
        .values(has_evaluated=True, evaluated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )

    if result.rowcount != 1:
        logger.warning(
            f"Gate rejected evaluator {evaluator_id} on project {project_id} "
            f"({EvaluationType(evaluation_type).value}, defense {defense_id})"
        )
        raise DuplicateSubmissionError()

    defense_object_id = (
        await db.execute(
            select(DefenseObjectEvaluator.defense_object_id)
            .where(_slot_filter(project_id, evaluation_type, defense_id, evaluator_id))
        )
    ).scalar_one_or_none()

    if defense_object_id is None:
        raise NotFoundError("Defense", defense_id)

    logger.info(f"Gate accepted evaluator {evaluator_id} on defense-object {defense_object_id}")
    return defense_object_id


async def lock_defense_object(db: AsyncSession, defense_object_id: int) -> DefenseObject:
    """
    Load the defense-object under a row lock with its evaluator slots freshly read.

    Raises:
        NotFoundError: defense-object deleted concurrently
    """
    result = await db.execute(
        select(DefenseObject)
        .where(DefenseObject.id == defense_object_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    defense_object = result.scalar_one_or_none()
    if defense_object is None:
        raise NotFoundError("Defense", defense_object_id)
    return defense_object
