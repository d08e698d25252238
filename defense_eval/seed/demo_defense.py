"""
defense_eval/seed/demo_defense.py
Build a scheduled defense: rooms, projects with teams, evaluator slots and access codes

Used by `python -m defense_eval.cli db seed-demo` and by the test suite.
Rows are added to the caller's session and flushed; the caller commits.
"""
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from defense_eval.core.stages import EvaluationType
from defense_eval.orm.defense import Defense, DefenseStatus, Room
from defense_eval.orm.evaluator import Evaluator, EvaluatorDefenseAccess
from defense_eval.orm.project import (
    DefenseObject, DefenseObjectEvaluator, Project, ProjectStage, ProjectStatus
)
from defense_eval.orm.student import Student

logger = logging.getLogger(__name__)


@dataclass
class SeededRoom:
    room_id: int
    project_ids: List[int]
    evaluator_ids: List[int]


@dataclass
class SeededDefense:
    defense_id: int
    event_id: int
    evaluation_type: EvaluationType
    rooms: List[SeededRoom] = field(default_factory=list)
    student_ids: Dict[int, List[int]] = field(default_factory=dict)
    defense_object_ids: Dict[int, List[int]] = field(default_factory=dict)

    @property
    def project_ids(self) -> List[int]:
        return [project_id for room in self.rooms for project_id in room.project_ids]

    def room_of(self, project_id: int) -> SeededRoom:
        for room in self.rooms:
            if project_id in room.project_ids:
                return room
        raise KeyError(project_id)


async def seed_defense(
    db: AsyncSession,
    evaluation_type: EvaluationType = EvaluationType.PROPOSAL,
    rooms: int = 1,
    projects_per_room: int = 1,
    evaluators_per_room: int = 2,
    members_per_project: int = 2,
    defense_objects_per_project: int = 1,
    batch_year: Optional[int] = None,
    event_id: int = 1,
    report_path: Optional[str] = "reports/proposal.pdf",
) -> SeededDefense:
    """
    Seed one defense.

    Every evaluator of a room evaluates every project of that room. With
    several defense-objects per project, the room's evaluators are spread
    over them round-robin.
    """
    evaluation_type = EvaluationType(evaluation_type)
    if batch_year is None:
        batch_year = datetime.utcnow().year - 2

    defense = Defense(event_id=event_id, defense_type=evaluation_type, status=DefenseStatus.ACTIVE)
    db.add(defense)
    await db.flush()

    seeded = SeededDefense(defense_id=defense.id, event_id=event_id, evaluation_type=evaluation_type)

    for room_index in range(rooms):
        room = Room(defense_id=defense.id, name=f"Room {room_index + 1}")
        db.add(room)

        evaluators = [
            Evaluator(name=f"Evaluator {room_index + 1}.{n + 1}")
            for n in range(evaluators_per_room)
        ]
        db.add_all(evaluators)

        projects = []
        for project_index in range(projects_per_room):
            members = [
                Student(
                    name=f"Student {room_index + 1}.{project_index + 1}.{n + 1}",
                    batch_year=batch_year,
                    progress_status=0,
                    is_associated=True,
                )
                for n in range(members_per_project)
            ]
            project = Project(
                title=f"Project {room_index + 1}.{project_index + 1}",
                event_id=event_id,
                status=ProjectStatus.ACTIVE,
                team_members=members,
            )
            project.stages.append(
                ProjectStage(evaluation_type=evaluation_type, has_graduated=False, report_path=report_path)
            )
            db.add(project)
            projects.append(project)

        room.projects.extend(projects)
        room.evaluators.extend(evaluators)
        await db.flush()

        for evaluator in evaluators:
            db.add(EvaluatorDefenseAccess(
                evaluator_id=evaluator.id,
                defense_id=defense.id,
                access_code=secrets.token_hex(4),
            ))

        for project in projects:
            for student in project.team_members:
                student.project_id = project.id

            project_stage = project.stages[0]
            defense_objects = [
                DefenseObject(
                    project_stage_id=project_stage.id,
                    project_id=project.id,
                    evaluation_type=evaluation_type,
                    defense_id=defense.id,
                    is_graded=False,
                )
                for _ in range(defense_objects_per_project)
            ]
            db.add_all(defense_objects)
            await db.flush()

            for n, evaluator in enumerate(evaluators):
                defense_object = defense_objects[n % len(defense_objects)]
                db.add(DefenseObjectEvaluator(
                    defense_object_id=defense_object.id,
                    project_id=project.id,
                    evaluation_type=evaluation_type,
                    defense_id=defense.id,
                    evaluator_id=evaluator.id,
                    has_evaluated=False,
                ))

            seeded.student_ids[project.id] = [student.id for student in project.team_members]
            seeded.defense_object_ids[project.id] = [obj.id for obj in defense_objects]

        seeded.rooms.append(SeededRoom(
            room_id=room.id,
            project_ids=[project.id for project in projects],
            evaluator_ids=[evaluator.id for evaluator in evaluators],
        ))

    await db.flush()
    logger.info(
        f"Seeded {evaluation_type.value} defense {defense.id}: {rooms} rooms, "
        f"{rooms * projects_per_room} projects"
    )
    return seeded
