"""
defense_eval/services/progress_projector.py
Project a defense judgement onto the team's progress status

Runs once per defense-object, in the transaction that grades it:

- passing: tier's "defense passed" code; on the final stage the member is
  dissociated and the project completes
- re-defense / absent: tier's "defense failed" code, member stays
- rejected (proposal only): tier's "rejected" code, member dissociated,
  project archived

Anything but a pass discards the stage's stored report.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from defense_eval.core.progress_codes import progress_status_for, resolve_tier
from defense_eval.core.stages import JudgementOutcome, StageSpec
from defense_eval.orm.project import Project, ProjectStage, ProjectStatus, project_members
from defense_eval.orm.student import Student

logger = logging.getLogger(__name__)


@dataclass
class ProjectionResult:
    outcome: JudgementOutcome
    status_by_student: Dict[int, int] = field(default_factory=dict)
    dissociated: List[int] = field(default_factory=list)
    project_status: Optional[ProjectStatus] = None
    report_cleared: bool = False


async def lock_team_members(db: AsyncSession, project_id: int) -> List[Student]:
    result = await db.execute(
        select(Student)
        .join(project_members, project_members.c.student_id == Student.id)
        .where(project_members.c.project_id == project_id)
        .order_by(Student.id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


def _project_status_after(stage: StageSpec, outcome: JudgementOutcome) -> Optional[ProjectStatus]:
    if outcome == JudgementOutcome.REJECTED:
        return ProjectStatus.ARCHIVED
    if outcome == JudgementOutcome.PASSED and stage.is_terminal:
        return ProjectStatus.COMPLETE
    return None


async def project_progress(
    db: AsyncSession,
    stage: StageSpec,
    project_stage: ProjectStage,
    judgement: str,
    current_year: Optional[int] = None,
) -> ProjectionResult:
    """
    Apply the judgement to every team member of the stage's project.

    Args:
        stage: evaluation type variant
        project_stage: locked stage row
        judgement: submitted judgement, already validated for the stage
        current_year: override for tier resolution (tests)
    """
    outcome = stage.classify(judgement)
    project_status = _project_status_after(stage, outcome)
    dissociate = project_status is not None
    result = ProjectionResult(outcome=outcome, project_status=project_status)

    for student in await lock_team_members(db, project_stage.project_id):
        tier = resolve_tier(student.batch_year, current_year)
        code = progress_status_for(tier, stage.evaluation_type, outcome)

        values = {"progress_status": code}
        if dissociate:
            values.update(is_associated=False, project_id=None)
            result.dissociated.append(student.id)

        await db.execute(
            update(Student)
            .where(Student.id == student.id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result.status_by_student[student.id] = code

    if project_status is not None:
        await db.execute(
            update(Project)
            .where(Project.id == project_stage.project_id)
            .values(status=project_status)
            .execution_options(synchronize_session=False)
        )

    if stage.invalidates_report(judgement):
        await db.execute(
            update(ProjectStage)
            .where(ProjectStage.id == project_stage.id)
            .values(report_path=None)
            .execution_options(synchronize_session=False)
        )
        result.report_cleared = True

    logger.info(
        f"Project {project_stage.project_id} {stage.evaluation_type.value} judged "
        f"{judgement} ({outcome.value}); statuses {result.status_by_student}"
    )
    return result
