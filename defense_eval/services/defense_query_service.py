"""
defense_eval/services/defense_query_service.py
Read views over defenses and projects, and completion reconciliation
"""
import logging
from typing import Any, Dict

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from defense_eval.errors import NotFoundError
from defense_eval.orm.defense import Defense
from defense_eval.orm.evaluation import Evaluation
from defense_eval.orm.project import Project
from defense_eval.services.completion_aggregator import cascade_defense_completion

logger = logging.getLogger(__name__)


async def get_defense(db: AsyncSession, defense_id: int) -> Defense:
    result = await db.execute(
        select(Defense)
        .where(Defense.id == defense_id)
        .execution_options(populate_existing=True)
    )
    defense = result.scalar_one_or_none()
    if defense is None:
        raise NotFoundError("Defense", defense_id)
    return defense


async def get_defense_view(db: AsyncSession, defense_id: int) -> Dict[str, Any]:
    """Defense with its rooms, their projects (with team members) and evaluators."""
    defense = await get_defense(db, defense_id)
    return defense.to_dict(include_rooms=True)


async def get_project_view(db: AsyncSession, project_id: int) -> Dict[str, Any]:
    result = await db.execute(
        select(Project)
        .where(Project.id == project_id)
        .execution_options(populate_existing=True)
    )
    project = result.scalar_one_or_none()
    if project is None:
        raise NotFoundError("Project", project_id)

    evaluations = (
        await db.execute(
            select(Evaluation)
            .where(Evaluation.project_id == project_id)
            .order_by(Evaluation.id)
        )
    ).scalars().all()

    view = project.to_dict(include_stages=True)
    view["evaluations"] = [evaluation.to_dict(include_evaluator=True) for evaluation in evaluations]
    return view


async def reconcile_defense(db: AsyncSession, defense_id: int) -> Dict[str, Any]:
    """
    Re-derive room and defense completion from the graded defense-objects.

    Only ever moves flags forward; never reads completion from the caller.
    """
    async with db.begin():
        defense = await get_defense(db, defense_id)
        cascade = await cascade_defense_completion(db, defense_id, defense.defense_type)

    # flags were written with UPDATE statements, drop the stale identity map
    db.expire_all()

    if cascade.rooms_completed or cascade.defense_completed:
        logger.info(
            f"Reconciled defense {defense_id}: rooms completed {cascade.rooms_completed}, "
            f"defense completed {cascade.defense_completed}"
        )

    view = await get_defense_view(db, defense_id)
    view["reconciled"] = {
        "rooms_completed": cascade.rooms_completed,
        "defense_completed": cascade.defense_completed,
    }
    return view
