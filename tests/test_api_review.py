"""
API tests for the review, question catalog and health blueprints.

All tests run against the in-memory SQLite database with the orchestrator
wired to scripted fakes (see conftest).
"""

import pytest

from app.models import db
from app.models.review import ReviewSession
from app.services.review_service import EXTENSION_KEY


def _start(client):
    res = client.post("/api/v1/reviews/start")
    assert res.status_code == 202
    return res.get_json()["session_id"]


def _answer(client, sid, key, text):
    return client.post(f"/api/v1/reviews/{sid}/answer", json={"question_key": key, "answer": text})


# ═════════════════════════════════════════════════════════════════════════════
# Review lifecycle
# ═════════════════════════════════════════════════════════════════════════════


class TestReviewLifecycleAPI:
    def test_start_returns_202_with_session(self, client, orchestrator, three_questions):
        res = client.post("/api/v1/reviews/start")

        assert res.status_code == 202
        body = res.get_json()
        assert body["status"] == "processing"
        assert body["session_id"]

    def test_status(self, client, orchestrator, three_questions):
        sid = _start(client)

        res = client.get(f"/api/v1/reviews/{sid}/status")

        assert res.status_code == 200
        body = res.get_json()
        assert body["status"] == "in_progress"
        assert body["total_questions"] == 3
        assert body["next_question"]["question_key"] == "Q1"
        assert body["progress_details"]["percentage"] == 100

    def test_status_unknown_session_404(self, client, orchestrator):
        res = client.get("/api/v1/reviews/nope/status")
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"

    def test_failed_session_exposes_error(self, client, orchestrator, fake_provider, three_questions):
        fake_provider.error = RuntimeError("credentials expired")
        sid = _start(client)

        body = client.get(f"/api/v1/reviews/{sid}/status").get_json()

        assert body["status"] == "failed"
        assert "credentials expired" in body["error"]

    def test_unanswered(self, client, orchestrator, three_questions):
        sid = _start(client)

        body = client.get(f"/api/v1/reviews/{sid}/unanswered").get_json()

        assert body["total"] == 3
        assert [q["question_key"] for q in body["items"]] == ["Q1", "Q2", "Q3"]

    def test_full_flow_to_report(self, client, orchestrator, three_questions):
        sid = _start(client)

        assert client.get(f"/api/v1/reviews/{sid}/report").status_code == 409

        for key in ("Q1", "Q2"):
            res = _answer(client, sid, key, f"answer {key}")
            assert res.status_code == 200
            assert res.get_json()["is_complete"] is False
        res = _answer(client, sid, "Q3", "answer Q3")
        assert res.get_json()["is_complete"] is True

        report = client.get(f"/api/v1/reviews/{sid}/report")
        assert report.status_code == 200
        body = report.get_json()
        assert body["status"] == "completed"
        assert len(body["answers"]) == 3
        assert body["report"]["overall_score"] == 3.5

    def test_report_not_ready_409(self, client, orchestrator, three_questions):
        sid = _start(client)

        res = client.get(f"/api/v1/reviews/{sid}/report")

        assert res.status_code == 409
        body = res.get_json()
        assert body["code"] == "ERR_NOT_READY"
        assert body["details"]["status"] == "in_progress"


class TestAnswerAPI:
    def test_camel_case_key_accepted(self, client, orchestrator, three_questions):
        sid = _start(client)

        res = client.post(f"/api/v1/reviews/{sid}/answer",
                          json={"questionKey": "Q1", "answer": "SSO with MFA"})

        assert res.status_code == 200
        assert res.get_json()["answered_questions"] == 1

    def test_missing_question_key_400(self, client, orchestrator, three_questions):
        sid = _start(client)
        res = client.post(f"/api/v1/reviews/{sid}/answer", json={"answer": "text"})
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_REQUIRED"

    @pytest.mark.parametrize("payload", [{"question_key": "Q1"}, {"question_key": "Q1", "answer": "  "}])
    def test_empty_answer_400(self, client, orchestrator, three_questions, payload):
        sid = _start(client)
        res = client.post(f"/api/v1/reviews/{sid}/answer", json=payload)
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_INVALID"

    def test_non_string_answer_400(self, client, orchestrator, three_questions):
        sid = _start(client)
        res = client.post(f"/api/v1/reviews/{sid}/answer", json={"question_key": "Q1", "answer": 42})
        assert res.status_code == 400

    def test_unknown_question_404(self, client, orchestrator, three_questions):
        sid = _start(client)
        res = _answer(client, sid, "NOPE01", "text")
        assert res.status_code == 404

    def test_unknown_session_404(self, client, orchestrator, three_questions):
        res = _answer(client, "missing", "Q1", "text")
        assert res.status_code == 404

    def test_completed_session_409(self, client, orchestrator, three_questions):
        sid = _start(client)
        for key in ("Q1", "Q2", "Q3"):
            _answer(client, sid, key, "done")

        res = _answer(client, sid, "Q1", "again")

        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_CONFLICT_STATE"
        assert res.get_json()["details"]["status"] == "completed"

    def test_non_json_body_415(self, client, orchestrator, three_questions):
        sid = _start(client)
        res = client.post(f"/api/v1/reviews/{sid}/answer", data="question_key=Q1",
                          content_type="text/plain")
        assert res.status_code == 415


class TestAWSAnalysisAPI:
    def test_returns_snapshot(self, client, orchestrator, fake_provider):
        res = client.get("/api/v1/reviews/aws-analysis")
        assert res.status_code == 200
        assert res.get_json()["summary"]["overall_health"] == "Good"

    def test_provider_failure_502(self, client, orchestrator, fake_provider):
        fake_provider.error = ConnectionError("endpoint unreachable")

        res = client.get("/api/v1/reviews/aws-analysis")

        assert res.status_code == 502
        assert res.get_json()["code"] == "ERR_UPSTREAM"

    def test_unexpected_error_500(self, client, orchestrator, monkeypatch):
        def boom(session_id):
            raise ZeroDivisionError("bad math")

        monkeypatch.setattr(orchestrator, "get_review_status", boom)

        res = client.get("/api/v1/reviews/any/status")

        assert res.status_code == 500
        assert res.get_json()["code"] == "ERR_INTERNAL"

    def test_unknown_route_404(self, client, orchestrator):
        res = client.get("/api/v1/reviews/x/y/z")
        assert res.status_code == 404

    def test_wrong_method_405(self, client, orchestrator):
        res = client.get("/api/v1/reviews/start")
        assert res.status_code == 405


class TestCollectorAnalysisAPI:
    def test_cost(self, client, orchestrator, fake_provider):
        res = client.get("/api/v1/reviews/aws-analysis/cost")

        assert res.status_code == 200
        body = res.get_json()
        assert body["collector"] == "cost"
        assert body["data"]["total_cost"] == 42.0

    @pytest.mark.parametrize("collector", ["iam", "compute", "cloudwatch", "config", "trusted_advisor"])
    def test_each_collector_routed(self, client, orchestrator, fake_provider, collector):
        res = client.get(f"/api/v1/reviews/aws-analysis/{collector}")

        assert res.status_code == 200
        assert fake_provider.analyze_calls == [(collector, {})]

    def test_unknown_collector_404(self, client, orchestrator):
        res = client.get("/api/v1/reviews/aws-analysis/lambda")
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"

    def test_collector_failure_502(self, client, orchestrator, fake_provider):
        fake_provider.error = ConnectionError("endpoint unreachable")

        res = client.get("/api/v1/reviews/aws-analysis/iam")

        assert res.status_code == 502
        assert res.get_json()["code"] == "ERR_UPSTREAM"

    def test_cost_trends_days(self, client, orchestrator, fake_provider):
        res = client.get("/api/v1/reviews/aws-analysis/cost/trends?days=14")

        assert res.status_code == 200
        assert res.get_json()["period_days"] == 14
        assert fake_provider.analyze_calls == [("cost", {"days": 14})]

    def test_cost_trends_default_window(self, client, orchestrator, fake_provider):
        client.get("/api/v1/reviews/aws-analysis/cost/trends")
        assert fake_provider.analyze_calls == [("cost", {"days": 30})]

    @pytest.mark.parametrize("days", ["abc", "0", "400"])
    def test_cost_trends_bad_days_400(self, client, orchestrator, fake_provider, days):
        res = client.get(f"/api/v1/reviews/aws-analysis/cost/trends?days={days}")

        assert res.status_code == 400
        assert fake_provider.analyze_calls == []

    def test_iam_recommendations(self, client, orchestrator):
        res = client.get("/api/v1/reviews/aws-analysis/iam/recommendations")

        assert res.status_code == 200
        body = res.get_json()
        assert body["total"] == 1
        assert body["items"][0]["priority"] == "High"


class TestRefreshAnalysisAPI:
    def test_refresh_named_collectors(self, client, orchestrator, three_questions, fake_provider):
        sid = _start(client)

        res = client.post(f"/api/v1/reviews/{sid}/refresh-analysis", json={"collectors": ["cost"]})

        assert res.status_code == 200
        assert res.get_json()["refreshed"] == ["cost"]
        snapshot = db.session.get(ReviewSession, sid).environment_snapshot
        assert snapshot["categories"]["cost"]["data"] == {"refreshed": True}

    def test_analysis_types_alias_and_empty_body(self, client, orchestrator, three_questions, fake_provider):
        sid = _start(client)

        client.post(f"/api/v1/reviews/{sid}/refresh-analysis", json={"analysisTypes": ["iam"]})
        client.post(f"/api/v1/reviews/{sid}/refresh-analysis")

        assert fake_provider.refresh_calls == [["iam"], list(fake_provider.COLLECTORS)]

    def test_unknown_collector_400(self, client, orchestrator, three_questions):
        sid = _start(client)
        res = client.post(f"/api/v1/reviews/{sid}/refresh-analysis", json={"collectors": ["lambda"]})
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_INVALID"

    def test_non_list_collectors_400(self, client, orchestrator, three_questions, fake_provider):
        sid = _start(client)
        res = client.post(f"/api/v1/reviews/{sid}/refresh-analysis", json={"collectors": "cost"})
        assert res.status_code == 400
        assert fake_provider.refresh_calls == []

    def test_unknown_session_404(self, client, orchestrator):
        res = client.post("/api/v1/reviews/missing/refresh-analysis", json={})
        assert res.status_code == 404

    def test_completed_session_409(self, client, orchestrator, three_questions):
        sid = _start(client)
        for key in ("Q1", "Q2", "Q3"):
            _answer(client, sid, key, "done")

        res = client.post(f"/api/v1/reviews/{sid}/refresh-analysis", json={})

        assert res.status_code == 409
        assert res.get_json()["details"]["status"] == "completed"

    def test_failed_session_409(self, client, orchestrator, three_questions, fake_provider):
        fake_provider.error = ConnectionError("endpoint unreachable")
        sid = _start(client)

        res = client.post(f"/api/v1/reviews/{sid}/refresh-analysis", json={})

        assert res.status_code == 409
        assert res.get_json()["details"]["status"] == "failed"

    def test_provider_failure_502_keeps_snapshot(self, client, orchestrator, three_questions, fake_provider):
        sid = _start(client)
        fake_provider.error = ConnectionError("endpoint unreachable")

        res = client.post(f"/api/v1/reviews/{sid}/refresh-analysis", json={"collectors": ["cost"]})

        assert res.status_code == 502
        assert db.session.get(ReviewSession, sid).environment_snapshot == fake_provider.snapshot


# ═════════════════════════════════════════════════════════════════════════════
# Question catalog
# ═════════════════════════════════════════════════════════════════════════════


class TestQuestionsAPI:
    def test_list_all(self, client, catalog):
        body = client.get("/api/v1/questions").get_json()
        assert body["total"] == 30

    def test_filter_by_pillar(self, client, catalog):
        body = client.get("/api/v1/questions?pillar=Reliability").get_json()
        assert body["total"] == 5
        assert {q["pillar_name"] for q in body["items"]} == {"Reliability"}

    def test_pillars(self, client, catalog):
        body = client.get("/api/v1/questions/pillars").get_json()
        assert body["total"] == 6
        assert body["items"][0]["name"] == "Cost Optimization"
        assert body["items"][0]["question_count"] == 5

    def test_single_question(self, client, catalog):
        res = client.get("/api/v1/questions/SEC02")
        assert res.status_code == 200
        assert res.get_json()["category"] == "Identity and Access Management"

    def test_single_question_404(self, client, catalog):
        assert client.get("/api/v1/questions/SEC99").status_code == 404

    def test_session_answers(self, client, orchestrator, three_questions):
        sid = _start(client)
        _answer(client, sid, "Q3", "WAF")

        body = client.get(f"/api/v1/questions/session/{sid}/answers").get_json()

        assert body["total"] == 1
        assert body["items"][0]["question_key"] == "Q3"
        assert body["items"][0]["source"] == "user"

    def test_session_answers_unknown_session(self, client, orchestrator):
        assert client.get("/api/v1/questions/session/missing/answers").status_code == 404


class TestSessionQuestionsAPI:
    def test_next_question(self, client, orchestrator, three_questions):
        sid = _start(client)

        body = client.get(f"/api/v1/questions/session/{sid}/next").get_json()

        assert body["completed"] is False
        assert body["question"]["question_key"] == "Q1"
        assert body["progress"]["total"] == 3

    def test_next_question_after_completion(self, client, orchestrator, three_questions):
        sid = _start(client)
        for key in ("Q1", "Q2", "Q3"):
            _answer(client, sid, key, "done")

        body = client.get(f"/api/v1/questions/session/{sid}/next").get_json()

        assert body["completed"] is True
        assert body["question"] is None

    def test_next_question_unknown_session(self, client, orchestrator):
        assert client.get("/api/v1/questions/session/missing/next").status_code == 404

    def test_progress(self, client, orchestrator, three_questions):
        sid = _start(client)
        _answer(client, sid, "Q3", "WAF")

        body = client.get(f"/api/v1/questions/session/{sid}/progress").get_json()

        assert body["answered_questions"] == 1
        by_pillar = {p["pillar_name"]: p for p in body["by_pillar"]}
        assert by_pillar["Security"]["answered_questions"] == 1
        assert by_pillar["Cost Optimization"]["completion_percentage"] == 0
        assert body["by_source"]["user"] == 1

    def test_progress_unknown_session(self, client, orchestrator):
        assert client.get("/api/v1/questions/session/missing/progress").status_code == 404


class TestBulkAnswerAPI:
    def test_mixed_items(self, client, orchestrator, three_questions):
        sid = _start(client)

        res = client.post("/api/v1/questions/bulk-answer", json={
            "session_id": sid,
            "answers": [{"question_key": "Q1", "answer": "SSO"}, {"question_key": "NOPE", "answer": "x"}],
        })

        assert res.status_code == 200
        body = res.get_json()
        assert (body["successful"], body["failed"]) == (1, 1)
        assert body["results"][1] == {"question_key": "NOPE", "success": False, "error": "Question not found"}
        assert body["next_question"]["question_key"] == "Q2"

    def test_completes_session(self, client, orchestrator, three_questions, fake_engine):
        sid = _start(client)

        res = client.post("/api/v1/questions/bulk-answer", json={
            "sessionId": sid,
            "answers": [{"question_key": key, "answer": "done"} for key in ("Q1", "Q2", "Q3")],
        })

        assert res.get_json()["is_complete"] is True
        assert len(fake_engine.calls_for("final_report")) == 1
        assert client.get(f"/api/v1/reviews/{sid}/report").status_code == 200

    @pytest.mark.parametrize("payload", [
        {"answers": [{"question_key": "Q1", "answer": "x"}]},
        {"session_id": "abc"},
        {"session_id": "abc", "answers": {"question_key": "Q1"}},
        ["not", "an", "object"],
    ])
    def test_missing_fields_400(self, client, orchestrator, payload):
        res = client.post("/api/v1/questions/bulk-answer", json=payload)
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_REQUIRED"

    def test_too_many_items_400(self, client, orchestrator, three_questions):
        sid = _start(client)
        answers = [{"question_key": "Q1", "answer": "x"}] * 101

        res = client.post("/api/v1/questions/bulk-answer", json={"session_id": sid, "answers": answers})

        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_INVALID"

    def test_unknown_session_404(self, client, orchestrator):
        res = client.post("/api/v1/questions/bulk-answer", json={"session_id": "missing", "answers": []})
        assert res.status_code == 404

    def test_completed_session_409(self, client, orchestrator, three_questions):
        sid = _start(client)
        for key in ("Q1", "Q2", "Q3"):
            _answer(client, sid, key, "done")

        res = client.post("/api/v1/questions/bulk-answer", json={
            "session_id": sid, "answers": [{"question_key": "Q1", "answer": "again"}],
        })

        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_CONFLICT_STATE"


# ═════════════════════════════════════════════════════════════════════════════
# Health
# ═════════════════════════════════════════════════════════════════════════════


class TestHealthAPI:
    def test_live(self, client):
        res = client.get("/api/v1/health/live")
        assert res.status_code == 200
        assert res.get_json()["status"] == "ok"

    def test_ready_healthy(self, client, orchestrator):
        res = client.get("/api/v1/health/ready")

        assert res.status_code == 200
        body = res.get_json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["status"] == "ok"
        assert body["checks"]["aws"]["account"] == "123456789012"
        assert body["checks"]["llm"]["status"] == "skipped"

    def test_ready_degraded_when_aws_unreachable(self, client, orchestrator, fake_provider):
        fake_provider.connection = {"ok": False, "error": "ExpiredToken", "region": "us-east-1"}

        res = client.get("/api/v1/health/ready")

        assert res.status_code == 503
        body = res.get_json()
        assert body["status"] == "degraded"
        assert body["checks"]["aws"]["detail"] == "ExpiredToken"

    def test_ready_reports_llm_gateway(self, app, client, fake_provider, monkeypatch):
        from app.ai.gateway import LLMGateway
        from app.ai.narrative_engine import NarrativeEngine
        from app.services.review_service import ReviewOrchestrator

        orch = ReviewOrchestrator(fake_provider, NarrativeEngine(LLMGateway(app=app)))
        monkeypatch.setitem(app.extensions, EXTENSION_KEY, orch)

        body = client.get("/api/v1/health/ready").get_json()

        assert body["checks"]["llm"]["status"] == "ok"
        assert body["checks"]["llm"]["default_model"] == "local-stub"
