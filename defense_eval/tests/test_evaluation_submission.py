"""
Evaluation submission pipeline against a real (file-backed SQLite) database.

Covers the gate under concurrency, conflict detection, the completion
cascade, progress projection and best-effort access revocation.
"""
import asyncio
from datetime import datetime

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.exc import OperationalError

from defense_eval.core.stages import EvaluationType
from defense_eval.errors import (
    ConflictDetectedError,
    DuplicateSubmissionError,
    NotFoundError,
    TransactionTimeoutError,
)
from defense_eval.orm.defense import Defense, DefenseStatus, Room
from defense_eval.orm.evaluation import DefenseEvaluationLink, Evaluation, ProjectEvaluationLink
from defense_eval.orm.evaluator import EvaluatorDefenseAccess
from defense_eval.orm.project import (
    DefenseObject, DefenseObjectEvaluator, Project, ProjectStage, ProjectStatus
)
from defense_eval.orm.student import Student
from defense_eval.services import access_revocation, evaluation_submission_service


async def count_evaluations(session_factory, project_id):
    async with session_factory() as db:
        result = await db.execute(select(func.count(Evaluation.id)).where(Evaluation.project_id == project_id))
        return result.scalar_one()


async def load_all(session_factory, model, *criteria):
    async with session_factory() as db:
        query = select(model).order_by(model.id)
        if criteria:
            query = query.where(*criteria)
        result = await db.execute(query)
        return list(result.scalars().all())


async def load_one(session_factory, model, *criteria):
    rows = await load_all(session_factory, model, *criteria)
    assert len(rows) == 1
    return rows[0]


class TestSubmissionGate:

    @pytest.mark.asyncio
    async def test_single_submission_recorded(self, seed, submit, payload_for, session_factory):
        seeded = await seed(evaluators_per_room=2)
        project_id = seeded.project_ids[0]
        evaluator_id = seeded.rooms[0].evaluator_ids[0]

        outcome = await submit(payload_for(seeded, project_id, evaluator_id))

        assert outcome.evaluation.id is not None
        assert outcome.defense_completed is False
        assert outcome.newly_graded is False

        slot = await load_one(
            session_factory, DefenseObjectEvaluator,
            DefenseObjectEvaluator.evaluator_id == evaluator_id,
        )
        assert slot.has_evaluated is True
        assert slot.evaluated_at is not None

        defense_links = await load_all(
            session_factory, DefenseEvaluationLink, DefenseEvaluationLink.defense_id == seeded.defense_id
        )
        stage_links = await load_all(session_factory, ProjectEvaluationLink)
        assert [link.evaluation_id for link in defense_links] == [outcome.evaluation.id]
        assert [link.evaluation_id for link in stage_links] == [outcome.evaluation.id]

    @pytest.mark.asyncio
    async def test_concurrent_duplicates_single_winner(self, seed, submit, payload_for, session_factory):
        """Same evaluator five times at once: one success, four duplicates, one record."""
        seeded = await seed(evaluators_per_room=2)
        project_id = seeded.project_ids[0]
        payload = payload_for(seeded, project_id, seeded.rooms[0].evaluator_ids[0])

        results = await asyncio.gather(*[submit(payload) for _ in range(5)], return_exceptions=True)

        successes = [r for r in results if not isinstance(r, Exception)]
        duplicates = [r for r in results if isinstance(r, DuplicateSubmissionError)]
        assert len(successes) == 1
        assert len(duplicates) == 4
        assert await count_evaluations(session_factory, project_id) == 1

    @pytest.mark.asyncio
    async def test_n_evaluators_all_succeed_and_grade_once(self, seed, submit, payload_for, session_factory):
        seeded = await seed(evaluators_per_room=4)
        project_id = seeded.project_ids[0]

        results = await asyncio.gather(*[
            submit(payload_for(seeded, project_id, evaluator_id))
            for evaluator_id in seeded.rooms[0].evaluator_ids
        ])

        assert len(results) == 4
        assert sum(1 for outcome in results if outcome.newly_graded) == 1
        assert sum(1 for outcome in results if outcome.defense_completed) >= 1

        defense_object = await load_one(session_factory, DefenseObject, DefenseObject.project_id == project_id)
        assert defense_object.is_graded is True
        assert await count_evaluations(session_factory, project_id) == 4

    @pytest.mark.asyncio
    async def test_retrying_duplicate_changes_nothing(self, seed, submit, payload_for, session_factory):
        seeded = await seed(evaluators_per_room=1)
        project_id = seeded.project_ids[0]
        payload = payload_for(seeded, project_id, seeded.rooms[0].evaluator_ids[0])
        await submit(payload)

        before_students = [s.to_dict() for s in await load_all(session_factory, Student)]
        before_object = (await load_one(session_factory, DefenseObject)).to_dict()
        before_defense = (await load_one(session_factory, Defense)).to_dict()

        for _ in range(3):
            with pytest.raises(DuplicateSubmissionError):
                await submit(payload)

        assert [s.to_dict() for s in await load_all(session_factory, Student)] == before_students
        assert (await load_one(session_factory, DefenseObject)).to_dict() == before_object
        assert (await load_one(session_factory, Defense)).to_dict() == before_defense
        assert await count_evaluations(session_factory, project_id) == 1

    @pytest.mark.asyncio
    async def test_unknown_evaluator_is_rejected_as_duplicate(self, seed, submit, payload_for):
        seeded = await seed()
        with pytest.raises(DuplicateSubmissionError):
            await submit(payload_for(seeded, seeded.project_ids[0], 9999))

    @pytest.mark.asyncio
    async def test_graded_flag_never_resets(self, seed, submit, payload_for, session_factory):
        seeded = await seed(evaluators_per_room=1)
        project_id = seeded.project_ids[0]
        await submit(payload_for(seeded, project_id, seeded.rooms[0].evaluator_ids[0]))

        with pytest.raises(DuplicateSubmissionError):
            await submit(payload_for(seeded, project_id, seeded.rooms[0].evaluator_ids[0], judgement="RE-DEFENSE"))

        defense_object = await load_one(session_factory, DefenseObject)
        assert defense_object.is_graded is True


class TestScenarios:

    @pytest.mark.asyncio
    async def test_two_simultaneous_evaluators(self, seed, submit, payload_for, session_factory):
        seeded = await seed(evaluators_per_room=2, members_per_project=3)
        project_id = seeded.project_ids[0]
        first, second = seeded.rooms[0].evaluator_ids

        results = await asyncio.gather(
            submit(payload_for(seeded, project_id, first)),
            submit(payload_for(seeded, project_id, second)),
        )

        assert all(outcome.evaluation.id for outcome in results)
        defense_object = await load_one(session_factory, DefenseObject)
        assert defense_object.is_graded is True

        students = await load_all(session_factory, Student, Student.project_id == project_id)
        assert [s.progress_status for s in students] == [102, 102, 102]
        assert all(s.is_associated for s in students)

        stage = await load_one(session_factory, ProjectStage)
        assert stage.has_graduated is True
        assert stage.report_path is not None

    @pytest.mark.asyncio
    async def test_identical_resubmission(self, seed, submit, payload_for, session_factory):
        seeded = await seed(evaluators_per_room=2)
        project_id = seeded.project_ids[0]
        payload = payload_for(seeded, project_id, seeded.rooms[0].evaluator_ids[0])

        await submit(payload)
        with pytest.raises(DuplicateSubmissionError) as exc:
            await submit(payload)

        assert exc.value.status_code == 409
        assert await count_evaluations(session_factory, project_id) == 1

    @pytest.mark.asyncio
    async def test_proposal_rejected(self, seed, submit, payload_for, session_factory):
        seeded = await seed(evaluators_per_room=2)
        project_id = seeded.project_ids[0]
        student_ids = seeded.student_ids[project_id]

        outcomes = [
            await submit(payload_for(seeded, project_id, evaluator_id, judgement="REJECTED"))
            for evaluator_id in seeded.rooms[0].evaluator_ids
        ]
        assert sorted(outcomes[-1].projection.dissociated) == sorted(student_ids)

        students = await load_all(session_factory, Student, Student.id.in_(student_ids))
        assert all(s.progress_status == 104 for s in students)
        assert all(s.is_associated is False and s.project_id is None for s in students)

        project = await load_one(session_factory, Project, Project.id == project_id)
        assert project.status == ProjectStatus.ARCHIVED

        stage = await load_one(session_factory, ProjectStage)
        assert stage.report_path is None

    @pytest.mark.asyncio
    async def test_five_defense_objects_of_one_project(self, seed, submit, payload_for, session_factory):
        seeded = await seed(evaluators_per_room=5, defense_objects_per_project=5)
        project_id = seeded.project_ids[0]

        results = await asyncio.gather(*[
            submit(payload_for(seeded, project_id, evaluator_id))
            for evaluator_id in seeded.rooms[0].evaluator_ids
        ])

        assert len(results) == 5
        assert all(outcome.newly_graded for outcome in results)

        defense_objects = await load_all(session_factory, DefenseObject, DefenseObject.project_id == project_id)
        assert len(defense_objects) == 5
        assert all(obj.is_graded for obj in defense_objects)

        stage = await load_one(session_factory, ProjectStage)
        assert stage.has_graduated is True

    @pytest.mark.asyncio
    async def test_divergent_aggregate_fields(self, seed, submit, payload_for, session_factory):
        seeded = await seed(evaluators_per_room=2)
        project_id = seeded.project_ids[0]
        first, second = seeded.rooms[0].evaluator_ids

        await submit(payload_for(seeded, project_id, first))
        with pytest.raises(ConflictDetectedError) as exc:
            await submit(payload_for(seeded, project_id, second, project_overrides={"project": 2}))

        assert exc.value.details["field"] == "projectEvaluation.project"
        assert await count_evaluations(session_factory, project_id) == 1

        # the gate's flag flip was rolled back with everything else
        slot = await load_one(
            session_factory, DefenseObjectEvaluator, DefenseObjectEvaluator.evaluator_id == second
        )
        assert slot.has_evaluated is False

        students = await load_all(session_factory, Student, Student.project_id == project_id)
        assert all(s.progress_status == 0 for s in students)
        assert (await load_one(session_factory, DefenseObject)).is_graded is False

        # the evaluator can still submit the agreed content
        outcome = await submit(payload_for(seeded, project_id, second))
        assert outcome.newly_graded is True


class TestProgressProjection:

    @pytest.mark.asyncio
    async def test_final_pass_completes_project(self, seed, submit, payload_for, session_factory):
        seeded = await seed(evaluation_type=EvaluationType.FINAL, evaluators_per_room=1)
        project_id = seeded.project_ids[0]
        student_ids = seeded.student_ids[project_id]

        await submit(payload_for(seeded, project_id, seeded.rooms[0].evaluator_ids[0]))

        students = await load_all(session_factory, Student, Student.id.in_(student_ids))
        assert all(s.progress_status == 302 for s in students)
        assert all(not s.is_associated and s.project_id is None for s in students)
        project = await load_one(session_factory, Project, Project.id == project_id)
        assert project.status == ProjectStatus.COMPLETE

    @pytest.mark.asyncio
    async def test_mid_absent_keeps_team_and_clears_report(self, seed, submit, payload_for, session_factory):
        seeded = await seed(evaluation_type=EvaluationType.MID, evaluators_per_room=1)
        project_id = seeded.project_ids[0]

        await submit(payload_for(seeded, project_id, seeded.rooms[0].evaluator_ids[0], judgement="ABSENT"))

        students = await load_all(session_factory, Student, Student.project_id == project_id)
        assert [s.progress_status for s in students] == [203, 203]
        assert all(s.is_associated for s in students)
        assert (await load_one(session_factory, ProjectStage)).report_path is None
        assert (await load_one(session_factory, Project)).status == ProjectStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_tier_follows_batch_year(self, seed, submit, payload_for, session_factory):
        seeded = await seed(evaluators_per_room=1, batch_year=datetime.utcnow().year - 4)
        project_id = seeded.project_ids[0]

        await submit(payload_for(seeded, project_id, seeded.rooms[0].evaluator_ids[0], judgement="RE-DEFENSE"))

        students = await load_all(session_factory, Student, Student.project_id == project_id)
        assert all(s.progress_status == 2103 for s in students)


class TestCompletionCascade:

    @pytest.mark.asyncio
    async def test_room_then_defense_completion(self, seed, submit, payload_for, session_factory):
        seeded = await seed(rooms=2, projects_per_room=2, evaluators_per_room=1)
        first_room, second_room = seeded.rooms

        for project_id in first_room.project_ids:
            await submit(payload_for(seeded, project_id, first_room.evaluator_ids[0]))

        rooms = await load_all(session_factory, Room)
        assert [room.is_completed for room in rooms] == [True, False]
        assert (await load_one(session_factory, Defense)).status == DefenseStatus.ACTIVE

        await submit(payload_for(seeded, second_room.project_ids[0], second_room.evaluator_ids[0]))
        assert (await load_one(session_factory, Room, Room.id == second_room.room_id)).is_completed is False

        outcome = await submit(payload_for(seeded, second_room.project_ids[1], second_room.evaluator_ids[0]))
        assert outcome.cascade.rooms_completed == [second_room.room_id]
        assert outcome.cascade.defense_completed is True

        defense = await load_one(session_factory, Defense)
        assert defense.status == DefenseStatus.COMPLETE
        assert defense.completed_at is not None

    @pytest.mark.asyncio
    async def test_room_needs_only_one_graded_defense_object(self, seed, submit, payload_for, session_factory):
        seeded = await seed(evaluators_per_room=2, defense_objects_per_project=2)
        project_id = seeded.project_ids[0]

        outcome = await submit(payload_for(seeded, project_id, seeded.rooms[0].evaluator_ids[0]))

        assert outcome.newly_graded is True
        assert outcome.cascade.defense_completed is True
        assert (await load_one(session_factory, Room)).is_completed is True

    @pytest.mark.asyncio
    async def test_concurrent_last_submissions_complete_defense_once(self, seed, submit, payload_for):
        seeded = await seed(rooms=3, projects_per_room=1, evaluators_per_room=2)

        results = await asyncio.gather(*[
            submit(payload_for(seeded, room.project_ids[0], evaluator_id))
            for room in seeded.rooms
            for evaluator_id in room.evaluator_ids
        ])

        cascades = [outcome.cascade for outcome in results if outcome.cascade is not None]
        assert len(cascades) == 3
        assert sum(1 for cascade in cascades if cascade.defense_completed) == 1
        assert sorted(room_id for cascade in cascades for room_id in cascade.rooms_completed) == \
            sorted(room.room_id for room in seeded.rooms)


class TestAccessRevocation:

    @pytest.mark.asyncio
    async def test_access_cleared_after_last_project_of_room(self, seed, submit, payload_for, session_factory):
        seeded = await seed(projects_per_room=2, evaluators_per_room=2)
        room = seeded.rooms[0]
        evaluator_id = room.evaluator_ids[0]

        outcome = await submit(payload_for(seeded, room.project_ids[0], evaluator_id))
        assert outcome.access_revoked is False
        access = await load_one(
            session_factory, EvaluatorDefenseAccess, EvaluatorDefenseAccess.evaluator_id == evaluator_id
        )
        assert access.access_code is not None

        outcome = await submit(payload_for(seeded, room.project_ids[1], evaluator_id))
        assert outcome.access_revoked is True
        access = await load_one(
            session_factory, EvaluatorDefenseAccess, EvaluatorDefenseAccess.evaluator_id == evaluator_id
        )
        assert access.is_revoked
        assert access.revoked_at is not None

        other = await load_one(
            session_factory, EvaluatorDefenseAccess, EvaluatorDefenseAccess.evaluator_id == room.evaluator_ids[1]
        )
        assert other.access_code is not None

    @pytest.mark.asyncio
    async def test_revocation_failure_is_not_fatal(self, seed, submit, payload_for, session_factory, monkeypatch):
        async def failing_revoke(db, evaluator_id, defense_id, room_id, evaluation_type):
            await db.execute(
                update(EvaluatorDefenseAccess)
                .where(EvaluatorDefenseAccess.evaluator_id == evaluator_id)
                .values(access_code="tampered")
            )
            raise OperationalError("UPDATE evaluator_defense_access", {}, Exception("disk I/O error"))

        monkeypatch.setattr(access_revocation, "_revoke", failing_revoke)

        seeded = await seed(evaluators_per_room=1)
        project_id = seeded.project_ids[0]
        evaluator_id = seeded.rooms[0].evaluator_ids[0]

        outcome = await submit(payload_for(seeded, project_id, evaluator_id))

        assert outcome.access_revoked is False
        assert outcome.newly_graded is True
        assert await count_evaluations(session_factory, project_id) == 1

        access = await load_one(session_factory, EvaluatorDefenseAccess)
        assert access.access_code not in (None, "tampered")

    @pytest.mark.asyncio
    async def test_unexpected_revocation_error_is_not_fatal(self, seed, submit, payload_for, session_factory, monkeypatch):
        async def broken_count(*args, **kwargs):
            raise KeyError("room")

        monkeypatch.setattr(access_revocation, "count_pending_room_slots", broken_count)

        seeded = await seed(evaluators_per_room=1)
        project_id = seeded.project_ids[0]
        evaluator_id = seeded.rooms[0].evaluator_ids[0]

        outcome = await submit(payload_for(seeded, project_id, evaluator_id))

        assert outcome.access_revoked is False
        assert await count_evaluations(session_factory, project_id) == 1
        access = await load_one(session_factory, EvaluatorDefenseAccess)
        assert access.access_code is not None

    @pytest.mark.asyncio
    async def test_concurrent_last_projects_clear_access(self, seed, submit, payload_for, session_factory):
        seeded = await seed(projects_per_room=2, evaluators_per_room=1)
        room = seeded.rooms[0]
        evaluator_id = room.evaluator_ids[0]

        outcomes = await asyncio.gather(
            *(submit(payload_for(seeded, project_id, evaluator_id)) for project_id in room.project_ids)
        )

        assert [outcome.access_revoked for outcome in outcomes].count(True) == 1
        access = await load_one(
            session_factory, EvaluatorDefenseAccess, EvaluatorDefenseAccess.evaluator_id == evaluator_id
        )
        assert access.access_code is None
        assert access.revoked_at is not None


class TestTransactionBoundary:

    @pytest.mark.asyncio
    async def test_timeout_rolls_back_everything(self, seed, submit, payload_for, session_factory, monkeypatch):
        real_pipeline = evaluation_submission_service.run_submission_pipeline

        async def slow_pipeline(db, submission):
            outcome = await real_pipeline(db, submission)
            await asyncio.sleep(5)
            return outcome

        monkeypatch.setattr(evaluation_submission_service, "run_submission_pipeline", slow_pipeline)

        seeded = await seed(evaluators_per_room=1)
        project_id = seeded.project_ids[0]
        payload = payload_for(seeded, project_id, seeded.rooms[0].evaluator_ids[0])

        with pytest.raises(TransactionTimeoutError) as exc:
            await submit(payload, timeout_seconds=0.2)
        assert exc.value.retryable is True
        assert exc.value.status_code == 503

        assert await count_evaluations(session_factory, project_id) == 0
        assert (await load_one(session_factory, DefenseObjectEvaluator)).has_evaluated is False
        assert (await load_one(session_factory, DefenseObject)).is_graded is False
        students = await load_all(session_factory, Student)
        assert all(s.progress_status == 0 for s in students)

        monkeypatch.setattr(evaluation_submission_service, "run_submission_pipeline", real_pipeline)
        outcome = await submit(payload)
        assert outcome.newly_graded is True

    @pytest.mark.asyncio
    async def test_missing_project_stage_aborts(self, seed, submit, payload_for, session_factory):
        seeded = await seed(evaluators_per_room=1)
        project_id = seeded.project_ids[0]

        async with session_factory() as db:
            async with db.begin():
                await db.execute(
                    update(ProjectStage)
                    .where(ProjectStage.project_id == project_id)
                    .values(evaluation_type=EvaluationType.MID)
                )

        with pytest.raises(NotFoundError):
            await submit(payload_for(seeded, project_id, seeded.rooms[0].evaluator_ids[0]))

        assert (await load_one(session_factory, DefenseObjectEvaluator)).has_evaluated is False
