"""
defense_eval/tests/test_api_contracts.py
HTTP contract of the evaluator endpoints

Verifies response envelopes, status codes and that read endpoints do
not mutate state.
"""
import asyncio

import pytest
from sqlalchemy import update

from defense_eval.errors import ErrorCode
from defense_eval.orm.project import DefenseObject, DefenseObjectEvaluator


class TestSubmissionEndpoint:

    @pytest.mark.asyncio
    async def test_created_response_shape(self, client, seed, payload_for):
        seeded = await seed(evaluators_per_room=1)
        project_id = seeded.project_ids[0]
        evaluator_id = seeded.rooms[0].evaluator_ids[0]

        response = await client.post("/api/evaluator/evaluations", json=payload_for(seeded, project_id, evaluator_id))

        assert response.status_code == 201
        body = response.json()
        assert body["success"] is True
        assert body["message"] == "Evaluation submitted successfully"
        assert body["evaluatorId"] == evaluator_id
        assert body["defenseCompleted"] is True
        assert body["timestamp"]
        assert body["data"]["project"] == project_id
        assert body["data"]["evaluation_type"] == "proposal"
        assert body["data"]["individual_evaluation"][0]["project"] == 8.0

    @pytest.mark.asyncio
    async def test_duplicate_envelope(self, client, seed, payload_for):
        seeded = await seed(evaluators_per_room=2)
        payload = payload_for(seeded, seeded.project_ids[0], seeded.rooms[0].evaluator_ids[0])

        first, second = await asyncio.gather(
            client.post("/api/evaluator/evaluations", json=payload),
            client.post("/api/evaluator/evaluations", json=payload),
        )

        assert sorted([first.status_code, second.status_code]) == [201, 409]
        rejected = second if second.status_code == 409 else first
        body = rejected.json()
        assert body["success"] is False
        assert body["code"] == ErrorCode.DUPLICATE_SUBMISSION
        assert body["retryable"] is False
        assert "timestamp" in body

    @pytest.mark.asyncio
    async def test_conflict_envelope(self, client, seed, payload_for):
        seeded = await seed(evaluators_per_room=2)
        project_id = seeded.project_ids[0]
        first, second = seeded.rooms[0].evaluator_ids

        await client.post("/api/evaluator/evaluations", json=payload_for(seeded, project_id, first))
        response = await client.post(
            "/api/evaluator/evaluations",
            json=payload_for(seeded, project_id, second, judgement="RE-DEFENSE"),
        )

        assert response.status_code == 409
        body = response.json()
        assert body["code"] == ErrorCode.CONFLICT_DETECTED
        assert body["message"] == "Conflict data detected - evaluation reverted"
        assert body["details"]["field"] == "judgement"

    @pytest.mark.asyncio
    async def test_missing_fields(self, client, seed, payload_for):
        seeded = await seed()
        payload = payload_for(seeded, seeded.project_ids[0], seeded.rooms[0].evaluator_ids[0])
        del payload["roomId"]

        response = await client.post("/api/evaluator/evaluations", json=payload)

        assert response.status_code == 400
        body = response.json()
        assert body["code"] == ErrorCode.VALIDATION_ERROR
        assert body["message"] == "Required Credentials Missing"
        assert body["retryable"] is False

    @pytest.mark.asyncio
    async def test_empty_body(self, client):
        response = await client.post("/api/evaluator/evaluations")
        assert response.status_code == 400
        assert response.json()["code"] == ErrorCode.VALIDATION_ERROR

    @pytest.mark.asyncio
    async def test_unknown_evaluation_type(self, client, seed, payload_for):
        seeded = await seed()
        payload = payload_for(seeded, seeded.project_ids[0], seeded.rooms[0].evaluator_ids[0])
        payload["evaluationType"] = "viva"

        response = await client.post("/api/evaluator/evaluations", json=payload)

        assert response.status_code == 400
        assert response.json()["message"] == "Invalid evaluation submission"

    @pytest.mark.asyncio
    async def test_non_finite_score_rejected_before_gate(self, client, seed, payload_for):
        seeded = await seed(evaluators_per_room=1)
        project_id = seeded.project_ids[0]
        evaluator_id = seeded.rooms[0].evaluator_ids[0]

        response = await client.post(
            "/api/evaluator/evaluations",
            json=payload_for(seeded, project_id, evaluator_id, project_overrides={"project": "NaN"}),
        )

        assert response.status_code == 400
        assert response.json()["code"] == ErrorCode.VALIDATION_ERROR

        retry = await client.post("/api/evaluator/evaluations", json=payload_for(seeded, project_id, evaluator_id))
        assert retry.status_code == 201


class TestReadEndpoints:

    @pytest.mark.asyncio
    async def test_defense_view(self, client, seed):
        seeded = await seed(rooms=2, projects_per_room=1, evaluators_per_room=2)

        response = await client.get(f"/api/evaluator/defenses/{seeded.defense_id}")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["status"] == "active"
        assert [room["id"] for room in data["rooms"]] == [room.room_id for room in seeded.rooms]
        first_room = data["rooms"][0]
        assert [p["id"] for p in first_room["projects"]] == seeded.rooms[0].project_ids
        assert len(first_room["projects"][0]["team_members"]) == 2
        assert [e["id"] for e in first_room["evaluators"]] == seeded.rooms[0].evaluator_ids

    @pytest.mark.asyncio
    async def test_missing_defense(self, client):
        response = await client.get("/api/evaluator/defenses/424242")
        assert response.status_code == 404
        body = response.json()
        assert body["success"] is False
        assert body["code"] == ErrorCode.NOT_FOUND

    @pytest.mark.asyncio
    async def test_project_view_lists_evaluations(self, client, seed, payload_for):
        seeded = await seed(evaluators_per_room=2)
        project_id = seeded.project_ids[0]
        evaluator_id = seeded.rooms[0].evaluator_ids[0]
        await client.post("/api/evaluator/evaluations", json=payload_for(seeded, project_id, evaluator_id))

        response = await client.get(f"/api/evaluator/projects/{project_id}")

        assert response.status_code == 200
        data = response.json()["data"]
        stage = data["stages"]["proposal"]
        assert stage["has_graduated"] is False
        assert len(stage["evaluations"]) == 1
        slots = stage["defenses"][0]["evaluators"]
        assert [slot["has_evaluated"] for slot in slots] == [True, False]
        assert data["evaluations"][0]["evaluator"]["id"] == evaluator_id

    @pytest.mark.asyncio
    async def test_project_view_does_not_mutate(self, client, seed):
        seeded = await seed()
        url = f"/api/evaluator/projects/{seeded.project_ids[0]}"

        first = await client.get(url)
        second = await client.get(url)

        assert first.json() == second.json()

    @pytest.mark.asyncio
    async def test_missing_project(self, client):
        response = await client.get("/api/evaluator/projects/424242")
        assert response.status_code == 404


class TestReconcileEndpoint:

    @pytest.mark.asyncio
    async def test_reconcile_derives_completion(self, client, seed, session_factory):
        seeded = await seed(rooms=1, projects_per_room=1, evaluators_per_room=1)

        # graded outside the submission pipeline, cascade never ran
        async with session_factory() as db:
            async with db.begin():
                await db.execute(update(DefenseObjectEvaluator).values(has_evaluated=True))
                await db.execute(update(DefenseObject).values(is_graded=True))

        response = await client.post(f"/api/evaluator/defenses/{seeded.defense_id}/reconcile")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["reconciled"] == {
            "rooms_completed": [seeded.rooms[0].room_id],
            "defense_completed": True,
        }
        assert data["status"] == "complete"
        assert data["rooms"][0]["is_completed"] is True

        again = await client.post(f"/api/evaluator/defenses/{seeded.defense_id}/reconcile")
        assert again.json()["data"]["reconciled"] == {"rooms_completed": [], "defense_completed": False}

    @pytest.mark.asyncio
    async def test_reconcile_leaves_open_rooms_open(self, client, seed):
        seeded = await seed()

        response = await client.post(f"/api/evaluator/defenses/{seeded.defense_id}/reconcile")

        data = response.json()["data"]
        assert data["status"] == "active"
        assert data["rooms"][0]["is_completed"] is False

    @pytest.mark.asyncio
    async def test_reconcile_missing_defense(self, client):
        response = await client.post("/api/evaluator/defenses/424242/reconcile")
        assert response.status_code == 404


class TestHealth:

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
