"""
Shared fixtures: a file-backed SQLite database per test, so concurrent
sessions really share state, plus payload and submission helpers.
"""
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.pool import NullPool

from defense_eval.core.stages import EvaluationType
from defense_eval.database import build_engine, build_session_factory, get_db, init_db
from defense_eval.main import app
from defense_eval.schemas.evaluation import parse_submission
from defense_eval.seed.demo_defense import seed_defense
from defense_eval.services.evaluation_submission_service import submit_evaluation


PROJECT_SCORES = {
    EvaluationType.PROPOSAL: {
        "projectTitleAndAbstract": 4,
        "project": 8,
        "objective": 4,
        "teamWork": 4,
        "documentation": 8,
        "plagiarism": 0,
    },
    EvaluationType.MID: {
        "feedbackIncorporated": 5,
        "workProgress": 7,
        "documentation": 6,
    },
    EvaluationType.FINAL: {
        "projectTitle": 4,
        "volume": 6,
        "objective": 4,
        "creativity": 5,
        "analysisAndDesign": 7,
        "toolAndTechniques": 6,
        "documentation": 8,
        "accomplished": 9,
        "demo": 8,
    },
}

MEMBER_SCORES = {
    EvaluationType.FINAL: {"contributionInWork": 7},
}

DEFAULT_JUDGEMENT = {
    EvaluationType.PROPOSAL: "ACCEPTED",
    EvaluationType.MID: "PROGRESS-SATISFACTORY",
    EvaluationType.FINAL: "ACCEPTED",
}


def build_payload(seeded, project_id, evaluator_id, judgement=None, project_overrides=None, absent=()):
    """Submission body for one evaluator of a seeded defense."""
    evaluation_type = seeded.evaluation_type
    individual = [
        {
            "member": student_id,
            "performanceAtPresentation": 8,
            "absent": student_id in absent,
            **MEMBER_SCORES.get(evaluation_type, {}),
        }
        for student_id in seeded.student_ids[project_id]
    ]
    project_evaluation = {
        "judgement": judgement or DEFAULT_JUDGEMENT[evaluation_type],
        **PROJECT_SCORES[evaluation_type],
        **(project_overrides or {}),
    }
    return {
        "individualEvaluation": individual,
        "projectEvaluation": project_evaluation,
        "projectId": project_id,
        "evaluatorId": evaluator_id,
        "defenseId": seeded.defense_id,
        "eventId": seeded.event_id,
        "evaluationType": evaluation_type.value,
        "roomId": seeded.room_of(project_id).room_id,
    }


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'defense_eval_test.db'}", poolclass=NullPool)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def seed(session_factory):
    """Seed a defense in its own committed transaction."""
    async def _seed(**kwargs):
        async with session_factory() as db:
            async with db.begin():
                return await seed_defense(db, **kwargs)
    return _seed


@pytest.fixture
def submit(session_factory):
    """Submit a payload through the full pipeline on a fresh session."""
    async def _submit(payload, timeout_seconds=None):
        async with session_factory() as db:
            return await submit_evaluation(db, parse_submission(payload), timeout_seconds=timeout_seconds)
    return _submit


@pytest.fixture
def payload_for():
    return build_payload


@pytest_asyncio.fixture
async def client(session_factory):
    """HTTP client; every request gets its own session like in production."""
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
