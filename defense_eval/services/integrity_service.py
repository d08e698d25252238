"""
defense_eval/services/integrity_service.py
Consistency checks over the persisted completion state

Reports, never repairs. Each check yields violations of the form
{"check": ..., "entity": ..., "id": ..., "detail": ...}.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from defense_eval.core.progress_codes import resolve_tier
from defense_eval.orm.defense import Defense, DefenseStatus, Room
from defense_eval.orm.evaluation import Evaluation
from defense_eval.orm.project import DefenseObject, DefenseObjectEvaluator
from defense_eval.orm.student import Student
from defense_eval.services.completion_aggregator import count_unsatisfied_projects

logger = logging.getLogger(__name__)


@dataclass
class IntegrityReport:
    violations: List[Dict[str, Any]] = field(default_factory=list)
    checked: Dict[str, int] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.violations

    def add(self, check: str, entity: str, entity_id: int, detail: str):
        self.violations.append({"check": check, "entity": entity, "id": entity_id, "detail": detail})

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": self.ok, "checked": self.checked, "violations": self.violations}


async def _check_defense_objects(db: AsyncSession, report: IntegrityReport):
    pending = (
        select(
            DefenseObjectEvaluator.defense_object_id.label("defense_object_id"),
            func.count(DefenseObjectEvaluator.id).label("slots"),
            func.sum(case((DefenseObjectEvaluator.has_evaluated.is_(False), 1), else_=0)).label("pending"),
        )
        .group_by(DefenseObjectEvaluator.defense_object_id)
        .subquery()
    )
    rows = (
        await db.execute(
            select(DefenseObject.id, DefenseObject.is_graded, pending.c.slots, pending.c.pending)
            .outerjoin(pending, pending.c.defense_object_id == DefenseObject.id)
            .order_by(DefenseObject.id)
        )
    ).all()

    for defense_object_id, is_graded, slots, open_slots in rows:
        slots = slots or 0
        open_slots = open_slots or 0
        if is_graded and open_slots:
            report.add("graded_iff_all_evaluated", "defense_object", defense_object_id,
                       f"graded with {open_slots} of {slots} evaluators pending")
        elif not is_graded and slots and not open_slots:
            report.add("graded_iff_all_evaluated", "defense_object", defense_object_id,
                       "all evaluators submitted but not graded")
    report.checked["defense_objects"] = len(rows)


async def _check_rooms_and_defenses(db: AsyncSession, report: IntegrityReport):
    defenses = (await db.execute(select(Defense).order_by(Defense.id))).scalars().all()
    room_count = 0

    for defense in defenses:
        rooms = (
            await db.execute(select(Room).where(Room.defense_id == defense.id).order_by(Room.id))
        ).scalars().all()
        room_count += len(rooms)

        for room in rooms:
            unsatisfied = await count_unsatisfied_projects(db, room.id, defense.id, defense.defense_type)
            if room.is_completed and unsatisfied:
                report.add("room_completion", "room", room.id,
                           f"completed with {unsatisfied} ungraded projects")
            elif not room.is_completed and not unsatisfied:
                report.add("room_completion", "room", room.id,
                           "every project graded but room not completed")

        all_rooms_done = all(room.is_completed for room in rooms)
        if defense.status == DefenseStatus.COMPLETE and not all_rooms_done:
            report.add("defense_completion", "defense", defense.id, "complete with open rooms")
        elif defense.status != DefenseStatus.COMPLETE and all_rooms_done:
            report.add("defense_completion", "defense", defense.id, "every room completed but defense active")

    report.checked["defenses"] = len(defenses)
    report.checked["rooms"] = room_count


async def _check_evaluation_records(db: AsyncSession, report: IntegrityReport):
    record_exists = (
        select(Evaluation.id)
        .where(
            and_(
                Evaluation.project_id == DefenseObjectEvaluator.project_id,
                Evaluation.defense_id == DefenseObjectEvaluator.defense_id,
                Evaluation.evaluator_id == DefenseObjectEvaluator.evaluator_id,
            )
        )
        .exists()
    )
    evaluated_without_record = (
        await db.execute(
            select(DefenseObjectEvaluator.id)
            .where(and_(DefenseObjectEvaluator.has_evaluated.is_(True), ~record_exists))
            .order_by(DefenseObjectEvaluator.id)
        )
    ).scalars().all()
    for slot_id in evaluated_without_record:
        report.add("one_record_per_slot", "evaluator_slot", slot_id, "evaluated but no evaluation record")

    slot_evaluated = (
        select(DefenseObjectEvaluator.id)
        .where(
            and_(
                DefenseObjectEvaluator.project_id == Evaluation.project_id,
                DefenseObjectEvaluator.defense_id == Evaluation.defense_id,
                DefenseObjectEvaluator.evaluator_id == Evaluation.evaluator_id,
                DefenseObjectEvaluator.evaluation_type == Evaluation.evaluation_type,
                DefenseObjectEvaluator.has_evaluated.is_(True),
            )
        )
        .exists()
    )
    orphaned = (
        await db.execute(select(Evaluation.id).where(~slot_evaluated).order_by(Evaluation.id))
    ).scalars().all()
    for evaluation_id in orphaned:
        report.add("one_record_per_slot", "evaluation", evaluation_id, "record without an evaluated slot")

    report.checked["evaluations"] = (await db.execute(select(func.count(Evaluation.id)))).scalar_one()


async def _check_student_tiers(db: AsyncSession, report: IntegrityReport, current_year: Optional[int]):
    students = (
        await db.execute(
            select(Student)
            .where(and_(Student.is_associated.is_(True), Student.progress_status != 0))
            .order_by(Student.id)
        )
    ).scalars().all()

    for student in students:
        tier = resolve_tier(student.batch_year, current_year)
        if not tier.contains(student.progress_status):
            low, high = tier.status_range
            report.add("progress_status_tier", "student", student.id,
                       f"status {student.progress_status} outside tier {tier.name} [{low}, {high})")
    report.checked["students"] = len(students)


async def verify_integrity(db: AsyncSession, current_year: Optional[int] = None) -> IntegrityReport:
    """
    Check the completion invariants across the whole database.

    Students without a recorded outcome (status 0) are not tier-checked.
    """
    report = IntegrityReport()
    await _check_defense_objects(db, report)
    await _check_rooms_and_defenses(db, report)
    await _check_evaluation_records(db, report)
    await _check_student_tiers(db, report, current_year)

    if report.ok:
        logger.info(f"Integrity check passed: {report.checked}")
    else:
        logger.warning(f"Integrity check found {len(report.violations)} violations")
    return report
