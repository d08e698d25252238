"""
defense_eval/services/completion_aggregator.py
Completion cascade: defense-object -> room -> defense

Every level is recomputed from counts read inside the caller's
transaction and persisted with a conditional UPDATE, so a flag only ever
moves false -> true and only one transaction observes the transition.
Rooms are locked in id order before the defense row.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List

from sqlalchemy import and_, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from defense_eval.core.stages import EvaluationType
from defense_eval.errors import NotFoundError
from defense_eval.orm.defense import Defense, DefenseStatus, Room, room_projects
from defense_eval.orm.project import DefenseObject, DefenseObjectEvaluator, ProjectStage

logger = logging.getLogger(__name__)


@dataclass
class DefenseObjectCompletion:
    all_evaluated: bool
    newly_graded: bool


@dataclass
class CascadeResult:
    rooms_completed: List[int]
    defense_completed: bool


async def count_pending_slots(db: AsyncSession, defense_object_id: int) -> int:
    result = await db.execute(
        select(func.count(DefenseObjectEvaluator.id)).where(
            and_(
                DefenseObjectEvaluator.defense_object_id == defense_object_id,
                DefenseObjectEvaluator.has_evaluated.is_(False),
            )
        )
    )
    return result.scalar_one()


async def grade_defense_object(db: AsyncSession, defense_object: DefenseObject) -> DefenseObjectCompletion:
    """
    Mark the defense-object graded once every evaluator slot is flipped.

    Also raises the stage-level hasGraduated flag. Caller must hold the
    defense-object row lock.
    """
    pending = await count_pending_slots(db, defense_object.id)
    if pending:
        return DefenseObjectCompletion(all_evaluated=False, newly_graded=False)

    result = await db.execute(
        update(DefenseObject)
        .where(and_(DefenseObject.id == defense_object.id, DefenseObject.is_graded.is_(False)))
        .values(is_graded=True, graded_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return DefenseObjectCompletion(all_evaluated=True, newly_graded=False)

    await db.execute(
        update(ProjectStage)
        .where(ProjectStage.id == defense_object.project_stage_id)
        .values(has_graduated=True)
        .execution_options(synchronize_session=False)
    )
    logger.info(
        f"Defense-object {defense_object.id} graded "
        f"(project {defense_object.project_id}, {defense_object.evaluation_type.value})"
    )
    return DefenseObjectCompletion(all_evaluated=True, newly_graded=True)


async def lock_defense_rooms(db: AsyncSession, defense_id: int) -> List[Room]:
    result = await db.execute(
        select(Room)
        .where(Room.defense_id == defense_id)
        .order_by(Room.id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def lock_defense(db: AsyncSession, defense_id: int) -> Defense:
    result = await db.execute(
        select(Defense)
        .where(Defense.id == defense_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    defense = result.scalar_one_or_none()
    if defense is None:
        raise NotFoundError("Defense", defense_id)
    return defense


async def count_unsatisfied_projects(
    db: AsyncSession,
    room_id: int,
    defense_id: int,
    evaluation_type: EvaluationType,
) -> int:
    """Projects of the room without a graded defense-object in this defense."""
    graded = (
        select(DefenseObject.id)
        .where(
            and_(
                DefenseObject.project_id == room_projects.c.project_id,
                DefenseObject.defense_id == defense_id,
                DefenseObject.evaluation_type == EvaluationType(evaluation_type),
                DefenseObject.is_graded.is_(True),
            )
        )
        .exists()
    )
    result = await db.execute(
        select(func.count())
        .select_from(room_projects)
        .where(and_(room_projects.c.room_id == room_id, ~graded))
    )
    return result.scalar_one()


async def complete_room_if_satisfied(db: AsyncSession, room: Room, evaluation_type: EvaluationType) -> bool:
    """
    Returns:
        True when this call moved the room to completed
    """
    if room.is_completed:
        return False
    if await count_unsatisfied_projects(db, room.id, room.defense_id, evaluation_type):
        return False

    result = await db.execute(
        update(Room)
        .where(and_(Room.id == room.id, Room.is_completed.is_(False)))
        .values(is_completed=True, completed_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        logger.info(f"Room {room.id} of defense {room.defense_id} completed")
        return True
    return False


async def count_open_rooms(db: AsyncSession, defense_id: int) -> int:
    result = await db.execute(
        select(func.count(Room.id)).where(
            and_(Room.defense_id == defense_id, Room.is_completed.is_(False))
        )
    )
    return result.scalar_one()


async def complete_defense_if_rooms_done(db: AsyncSession, defense: Defense) -> bool:
    if defense.status == DefenseStatus.COMPLETE:
        return False
    if await count_open_rooms(db, defense.id):
        return False

    result = await db.execute(
        update(Defense)
        .where(and_(Defense.id == defense.id, Defense.status == DefenseStatus.ACTIVE))
        .values(status=DefenseStatus.COMPLETE, completed_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        logger.info(f"Defense {defense.id} complete")
        return True
    return False


async def cascade_defense_completion(
    db: AsyncSession,
    defense_id: int,
    evaluation_type: EvaluationType,
) -> CascadeResult:
    """
    Recompute room completion for every room of the defense, then the defense status.

    Used after a defense-object is newly graded and by reconciliation.
    """
    rooms = await lock_defense_rooms(db, defense_id)
    defense = await lock_defense(db, defense_id)

    completed = []
    for room in rooms:
        if await complete_room_if_satisfied(db, room, evaluation_type):
            completed.append(room.id)

    defense_completed = await complete_defense_if_rooms_done(db, defense)
    return CascadeResult(rooms_completed=completed, defense_completed=defense_completed)
