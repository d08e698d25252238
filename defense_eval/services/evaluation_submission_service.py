"""
defense_eval/services/evaluation_submission_service.py
Evaluation submission: one all-or-nothing unit of work

Sequence, inside a single database transaction:

1. Gate: claim the evaluator slot (409 on no-match)
2. Lock the project stage row
3. Conflict check against recorded evaluations of the same defense
4. Lock the defense-object, grade it once every slot is flipped
5. Newly graded only: project progress onto the team, then the
   room / defense completion cascade
6. Access revocation (savepoint, best-effort)
7. Record the evaluation and its backlinks

Row locks are always taken in the order project stage, defense-object,
team students, rooms, defense, evaluator access. The whole sequence is bounded
by TRANSACTION_TIMEOUT_SECONDS; any error or cancellation rolls back
every write made so far.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy import and_, select
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from defense_eval.config.settings import settings
from defense_eval.core.stages import EvaluationType, get_stage
from defense_eval.errors import (
    DuplicateSubmissionError,
    InternalError,
    NotFoundError,
    StorageBusyError,
    TransactionTimeoutError,
    new_log_id,
    utc_timestamp,
)
from defense_eval.orm.evaluation import Evaluation
from defense_eval.orm.project import ProjectStage
from defense_eval.schemas.evaluation import EvaluationSubmission, EvaluationSubmissionResponse
from defense_eval.services.access_revocation import revoke_access_if_done
from defense_eval.services.completion_aggregator import (
    CascadeResult,
    cascade_defense_completion,
    grade_defense_object,
)
from defense_eval.services.conflict_detector import ensure_no_conflict
from defense_eval.services.progress_projector import ProjectionResult, project_progress
from defense_eval.services.record_writer import write_evaluation_record
from defense_eval.services.submission_gate import claim_evaluator_slot, lock_defense_object

logger = logging.getLogger(__name__)

SUCCESS_MESSAGE = "Evaluation submitted successfully"


@dataclass
class SubmissionOutcome:
    evaluation: Optional[Evaluation]
    defense_object_id: int
    defense_completed: bool
    newly_graded: bool
    projection: Optional[ProjectionResult] = None
    cascade: Optional[CascadeResult] = None
    access_revoked: bool = False

    def to_response(self) -> Dict[str, Any]:
        response = EvaluationSubmissionResponse(
            message=SUCCESS_MESSAGE,
            data=self.evaluation.to_dict(),
            evaluator_id=self.evaluation.evaluator_id,
            defense_completed=self.defense_completed,
            timestamp=utc_timestamp(),
        )
        return response.model_dump(by_alias=True)


async def lock_project_stage(
    db: AsyncSession,
    project_id: int,
    evaluation_type: EvaluationType,
) -> ProjectStage:
    result = await db.execute(
        select(ProjectStage)
        .where(
            and_(
                ProjectStage.project_id == project_id,
                ProjectStage.evaluation_type == EvaluationType(evaluation_type),
            )
        )
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    project_stage = result.scalar_one_or_none()
    if project_stage is None:
        raise NotFoundError("Project", project_id)
    return project_stage


async def run_submission_pipeline(db: AsyncSession, submission: EvaluationSubmission) -> SubmissionOutcome:
    """Steps 1-7; caller owns the transaction."""
    stage = get_stage(submission.evaluation_type)

    defense_object_id = await claim_evaluator_slot(
        db,
        submission.project_id,
        stage.evaluation_type,
        submission.defense_id,
        submission.evaluator_id,
    )

    project_stage = await lock_project_stage(db, submission.project_id, stage.evaluation_type)

    await ensure_no_conflict(db, submission)

    defense_object = await lock_defense_object(db, defense_object_id)
    completion = await grade_defense_object(db, defense_object)

    outcome = SubmissionOutcome(
        evaluation=None,
        defense_object_id=defense_object_id,
        defense_completed=completion.all_evaluated,
        newly_graded=completion.newly_graded,
    )

    if completion.newly_graded:
        outcome.projection = await project_progress(db, stage, project_stage, submission.judgement)
        outcome.cascade = await cascade_defense_completion(db, submission.defense_id, stage.evaluation_type)

    outcome.access_revoked = await revoke_access_if_done(
        db,
        submission.evaluator_id,
        submission.defense_id,
        submission.room_id,
        stage.evaluation_type,
    )

    outcome.evaluation = await write_evaluation_record(db, submission, project_stage.id)
    return outcome


async def _submit_in_transaction(db: AsyncSession, submission: EvaluationSubmission) -> SubmissionOutcome:
    async with db.begin():
        return await run_submission_pipeline(db, submission)


async def submit_evaluation(
    db: AsyncSession,
    submission: EvaluationSubmission,
    timeout_seconds: Optional[float] = None,
) -> SubmissionOutcome:
    """
    Record one evaluator's submission and run the completion cascade.

    Args:
        db: session with no transaction in progress
        submission: validated submission
        timeout_seconds: override for TRANSACTION_TIMEOUT_SECONDS

    Raises:
        DuplicateSubmissionError, ConflictDetectedError, NotFoundError,
        TransactionTimeoutError, StorageBusyError, InternalError
    """
    timeout_seconds = timeout_seconds or settings.TRANSACTION_TIMEOUT_SECONDS

    try:
        outcome = await asyncio.wait_for(_submit_in_transaction(db, submission), timeout=timeout_seconds)
    except asyncio.TimeoutError:
        await db.rollback()
        logger.error(
            f"Submission by evaluator {submission.evaluator_id} on project {submission.project_id} "
            f"timed out after {timeout_seconds}s"
        )
        raise TransactionTimeoutError(timeout_seconds)
    except IntegrityError as e:
        # Unique constraint on the evaluation triple backs up the gate
        logger.warning(f"Integrity error on submission by evaluator {submission.evaluator_id}: {e.orig}")
        raise DuplicateSubmissionError()
    except OperationalError as e:
        logger.warning(f"Storage busy on submission by evaluator {submission.evaluator_id}: {e.orig}")
        raise StorageBusyError()
    except SQLAlchemyError as e:
        log_id = new_log_id()
        logger.error(f"Submission failed [{log_id}]: {e}")
        raise InternalError(log_id=log_id)

    logger.info(
        f"Evaluator {submission.evaluator_id} submitted {submission.evaluation_type.value} "
        f"evaluation {outcome.evaluation.id} for project {submission.project_id}"
        + (" (defense-object graded)" if outcome.newly_graded else "")
    )
    return outcome
