"""
defense_eval/services/access_revocation.py
Best-effort revocation of an evaluator's defense access code
"""
import logging
from datetime import datetime

from sqlalchemy import and_, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from defense_eval.core.stages import EvaluationType
from defense_eval.orm.defense import room_projects
from defense_eval.orm.evaluator import EvaluatorDefenseAccess
from defense_eval.orm.project import DefenseObjectEvaluator

logger = logging.getLogger(__name__)


async def count_pending_room_slots(
    db: AsyncSession,
    evaluator_id: int,
    defense_id: int,
    room_id: int,
    evaluation_type: EvaluationType,
) -> int:
    """Evaluator slots still open on projects of the room for this defense and stage."""
    room_project_ids = select(room_projects.c.project_id).where(room_projects.c.room_id == room_id)
    result = await db.execute(
        select(func.count(DefenseObjectEvaluator.id)).where(
            and_(
                DefenseObjectEvaluator.evaluator_id == evaluator_id,
                DefenseObjectEvaluator.defense_id == defense_id,
                DefenseObjectEvaluator.evaluation_type == EvaluationType(evaluation_type),
                DefenseObjectEvaluator.project_id.in_(room_project_ids),
                DefenseObjectEvaluator.has_evaluated.is_(False),
            )
        )
    )
    return result.scalar_one()


async def _revoke(
    db: AsyncSession,
    evaluator_id: int,
    defense_id: int,
    room_id: int,
    evaluation_type: EvaluationType,
) -> bool:
    # access row is locked before counting so concurrent last submissions
    # by the same evaluator re-count after the other commits
    access = (
        await db.execute(
            select(EvaluatorDefenseAccess)
            .where(
                and_(
                    EvaluatorDefenseAccess.evaluator_id == evaluator_id,
                    EvaluatorDefenseAccess.defense_id == defense_id,
                )
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()
    if access is None or access.access_code is None:
        return False

    if await count_pending_room_slots(db, evaluator_id, defense_id, room_id, evaluation_type):
        return False

    await db.execute(
        update(EvaluatorDefenseAccess)
        .where(EvaluatorDefenseAccess.id == access.id)
        .values(access_code=None, revoked_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    return True


async def revoke_access_if_done(
    db: AsyncSession,
    evaluator_id: int,
    defense_id: int,
    room_id: int,
    evaluation_type: EvaluationType,
) -> bool:
    """
    Clear the evaluator's access code for the defense once their room workload is done.

    Runs in a savepoint; any failure here is logged and rolled back
    to the savepoint without touching the rest of the transaction.

    Returns:
        True when the code was cleared by this call
    """
    try:
        async with db.begin_nested():
            revoked = await _revoke(db, evaluator_id, defense_id, room_id, evaluation_type)
    except Exception as e:
        logger.error(
            f"Access revocation failed for evaluator {evaluator_id} on defense {defense_id}: {e}",
            exc_info=True,
        )
        return False

    if revoked:
        logger.info(f"Access code cleared for evaluator {evaluator_id} on defense {defense_id}")
    return revoked
