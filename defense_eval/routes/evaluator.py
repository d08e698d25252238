"""
defense_eval/routes/evaluator.py
Evaluator endpoints - submit evaluations and read defense state

Endpoints:
- POST /api/evaluator/evaluations - Submit one evaluator's evaluation
- GET /api/evaluator/defenses/{defense_id} - Defense with rooms and members
- GET /api/evaluator/projects/{project_id} - Project with stages and evaluations
- POST /api/evaluator/defenses/{defense_id}/reconcile - Re-derive room / defense completion
"""
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from defense_eval.database import get_db
from defense_eval.schemas.evaluation import parse_submission
from defense_eval.services.defense_query_service import get_defense_view, get_project_view, reconcile_defense
from defense_eval.services.evaluation_submission_service import submit_evaluation

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/evaluator", tags=["Evaluator"])


@router.post("/evaluations", status_code=status.HTTP_201_CREATED)
async def create_evaluation(
    payload: Optional[Dict[str, Any]] = Body(None),
    db: AsyncSession = Depends(get_db),
):
    """
    Submit an evaluation.

    Responds 409 DUPLICATE_SUBMISSION when the evaluator already submitted
    for this project and defense, 409 CONFLICT_DETECTED when the content
    diverges from another evaluator's recorded evaluation, 503 when the
    transaction timed out or storage was busy (retryable).
    """
    submission = parse_submission(payload)
    outcome = await submit_evaluation(db, submission)
    return outcome.to_response()


@router.get("/defenses/{defense_id}")
async def read_defense(defense_id: int, db: AsyncSession = Depends(get_db)):
    return {"success": True, "data": await get_defense_view(db, defense_id)}


@router.get("/projects/{project_id}")
async def read_project(project_id: int, db: AsyncSession = Depends(get_db)):
    return {"success": True, "data": await get_project_view(db, project_id)}


@router.post("/defenses/{defense_id}/reconcile")
async def reconcile_defense_completion(defense_id: int, db: AsyncSession = Depends(get_db)):
    data = await reconcile_defense(db, defense_id)
    return {"success": True, "data": data}
