"""Tests for the HTTP surface: auth, authorization and error mapping."""

from datetime import date
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from pulse_workers.api import Caller, create_app, get_caller, get_db, hash_token
from pulse_workers.batch import BatchResult, UserScoreResult
from pulse_workers.config import Config
from pulse_workers.context import RequestContext
from pulse_workers.errors import InterventionNotFound, NothingToRevert, NotRevertible
from pulse_workers.intervention_apply import ApplyOutcome

DAY = date(2026, 3, 10)
CTX = RequestContext(user_id="u-1", workspace_id="ws-1", date=DAY)


@pytest.fixture
def conn(fake_conn):
    return fake_conn()


@pytest.fixture
def app(conn):
    app = create_app(Config(database_url="postgresql://pulse@localhost/pulse"))

    async def _db():
        yield conn

    app.dependency_overrides[get_db] = _db
    return app


def _as(app, caller):
    app.dependency_overrides[get_caller] = lambda: caller
    return TestClient(app)


USER = Caller(user_id="u-1", role="user")
SERVICE = Caller(user_id=None, role="service")


def _batch(*user_ids):
    return BatchResult(date=DAY, results=[UserScoreResult(user_id=u, success=True) for u in user_ids])


class TestAuthentication:
    def test_missing_header_is_401(self, app):
        response = TestClient(app).post("/v1/scores/compute", json={})
        assert response.status_code == 401
        assert response.json()["detail"] == "Missing or invalid authorization header"

    def test_non_bearer_header_is_401(self, app):
        response = TestClient(app).post("/v1/scores/compute", json={}, headers={"Authorization": "Basic abc"})
        assert response.status_code == 401

    def test_unknown_token_is_401(self, app, conn):
        conn._fake_cursor.fetchone.side_effect = [None]
        response = TestClient(app).post("/v1/scores/compute", json={}, headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401
        params = conn._fake_cursor.execute.call_args.args[1]
        assert params == (hash_token("nope"),)

    def test_valid_token_resolves_caller(self, app, conn):
        conn._fake_cursor.fetchone.side_effect = [{"user_id": "u-1", "role": "user"}]
        with patch("pulse_workers.api.run_scoring_batch", new_callable=AsyncMock, return_value=_batch("u-1")) as run:
            response = TestClient(app).post(
                "/v1/scores/compute", json={"date": "2026-03-10"}, headers={"Authorization": "Bearer good"}
            )
        assert response.status_code == 200
        assert run.await_args.args[2] == ["u-1"]


class TestScoreTrigger:
    def test_user_scores_self_with_results(self, app):
        with patch("pulse_workers.api.run_scoring_batch", new_callable=AsyncMock, return_value=_batch("u-1")):
            response = _as(app, USER).post("/v1/scores/compute", json={})
        body = response.json()
        assert body["processed"] == 1
        assert body["results"] == [{"user_id": "u-1", "success": True}]

    def test_user_cannot_score_someone_else(self, app):
        response = _as(app, USER).post("/v1/scores/compute", json={"user_id": "u-2"})
        assert response.status_code == 403

    def test_service_without_user_scores_everyone(self, app):
        with patch("pulse_workers.api.run_scoring_batch", new_callable=AsyncMock, return_value=_batch("a", "b")) as run:
            response = _as(app, SERVICE).post("/v1/scores/compute", json={"date": "2026-03-10"})
        assert response.status_code == 200
        assert run.await_args.args[1] == DAY
        assert run.await_args.args[2] is None
        assert "results" not in response.json()

    def test_invalid_date(self, app):
        response = _as(app, USER).post("/v1/scores/compute", json={"date": "10/03/2026"})
        assert response.status_code == 400


class TestInterventions:
    def test_apply_requires_id(self, app):
        response = _as(app, USER).post("/v1/interventions/apply", json={})
        assert response.status_code == 400

    def test_apply_not_found(self, app):
        with patch("pulse_workers.api.build_context", new_callable=AsyncMock, return_value=CTX), \
             patch("pulse_workers.api.apply_intervention", new_callable=AsyncMock,
                   side_effect=InterventionNotFound("x")):
            response = _as(app, USER).post("/v1/interventions/apply", json={"interventionId": "iv-1"})
        assert response.status_code == 404

    def test_apply_returns_actions(self, app):
        outcome = ApplyOutcome(intervention_id="iv-1", actions=[{"action": "intervention_acknowledged"}])
        with patch("pulse_workers.api.build_context", new_callable=AsyncMock, return_value=CTX), \
             patch("pulse_workers.api.apply_intervention", new_callable=AsyncMock, return_value=outcome):
            response = _as(app, USER).post("/v1/interventions/apply", json={"interventionId": "iv-1"})
        assert response.json() == {
            "success": True,
            "actions": [{"action": "intervention_acknowledged"}],
            "already_applied": False,
        }

    def test_service_caller_cannot_apply(self, app):
        response = _as(app, SERVICE).post("/v1/interventions/apply", json={"interventionId": "iv-1"})
        assert response.status_code == 403


class TestUndo:
    def test_expired_is_409(self, app):
        with patch("pulse_workers.api.build_context", new_callable=AsyncMock, return_value=CTX), \
             patch("pulse_workers.api.revert", new_callable=AsyncMock,
                   side_effect=NotRevertible("expired", "undo-1")):
            response = _as(app, USER).post("/v1/undo/undo-1/revert")
        assert response.status_code == 409
        assert response.json()["reason"] == "expired"

    def test_nothing_to_revert_is_404(self, app):
        with patch("pulse_workers.api.build_context", new_callable=AsyncMock, return_value=CTX), \
             patch("pulse_workers.api.revert", new_callable=AsyncMock, side_effect=NothingToRevert("x")):
            response = _as(app, USER).post("/v1/undo/undo-1/revert")
        assert response.status_code == 404
        assert response.json() == {"error": "nothing_to_revert"}


def test_invalid_product_event_is_400(app):
    with patch("pulse_workers.api.build_context", new_callable=AsyncMock, return_value=CTX):
        response = _as(app, USER).post("/v1/events", json={"event_type": "not_a_thing"})
    assert response.status_code == 400
    assert "signup" in response.json()["valid_types"]
