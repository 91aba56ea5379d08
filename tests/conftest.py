"""
Shared pytest fixtures for the Well-Architected Review Service test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - catalog: Default 6 pillars / 30 questions seeded
    - three_questions: Minimal catalog Q1 (priority 5), Q2 and Q3 (priority 3)
    - fake_engine / fake_provider: scripted narrative engine and environment provider
    - orchestrator: ReviewOrchestrator wired to the fakes, installed on the app
    - aws_provider_factory: AWSEnvironmentProvider over mocked boto3 clients
"""

import json
from unittest.mock import MagicMock

import pytest

from app import create_app
from app.integrations.aws_environment import AWSEnvironmentProvider
from app.models import db as _db
from app.models.review import Pillar, Question
from app.services.question_catalog import seed_default_questions
from app.services.review_service import EXTENSION_KEY, ReviewOrchestrator


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Catalog fixtures ─────────────────────────────────────────────────────


@pytest.fixture()
def catalog():
    """Seed the default pillars and questions."""
    return seed_default_questions()


@pytest.fixture()
def three_questions():
    """Q1 priority 5; Q2 and Q3 priority 3, split across two pillars.

    Expected ask order: Q1, then Q2 ("Cost Optimization") before Q3 ("Security").
    """
    cost = Pillar(name="Cost Optimization", description="Cost")
    security = Pillar(name="Security", description="Security")
    _db.session.add_all([cost, security])
    _db.session.flush()
    questions = [
        Question(pillar_id=security.id, question_key="Q1", question_text="How do you manage identities?",
                 category="Identity and Access Management", priority=5),
        Question(pillar_id=cost.id, question_key="Q2", question_text="How do you govern usage?",
                 category="Expenditure and Usage Awareness", priority=3),
        Question(pillar_id=security.id, question_key="Q3", question_text="How do you protect your network?",
                 category="Infrastructure Protection", priority=3),
    ]
    _db.session.add_all(questions)
    _db.session.commit()
    return {q.question_key: q for q in questions}


# ── Fakes ────────────────────────────────────────────────────────────────


SAMPLE_SNAPSHOT = {
    "categories": {
        "cost": {"status": "ok", "data": {"total_cost": 42.0}},
        "iam": {"status": "ok", "data": {"security_findings": []}},
    },
    "service_status": {"errors": [], "warnings": [], "successful_services": 2, "total_services": 2},
    "summary": {"overall_health": "Good"},
    "timestamp": "2026-01-01T00:00:00+00:00",
}

SAMPLE_REPORT = {
    "overall_score": 3.5,
    "pillars": {
        "Security": {
            "score": 4,
            "status": "Good",
            "strengths": ["MFA enforced"],
            "weaknesses": [],
            "recommendations": ["Rotate access keys"],
        },
    },
    "critical_issues": [],
    "quick_wins": ["Enable AWS Config"],
    "action_plan": {"immediate": ["Review IAM"], "short_term": [], "long_term": []},
    "estimated_cost_impact": "Low",
}


class FakeNarrativeEngine:
    """Narrative engine returning scripted responses per prompt name.

    A response may be a string, a dict (JSON-encoded), an exception (raised),
    a callable taking the context, or a list consumed one item per call.
    """

    def __init__(self):
        self.responses = {
            "auto_answer": {"auto_answers": [], "unanswered_questions": [], "summary": "none"},
            "derive_answers": {"primary_answer_assessment": None, "additional_answers": []},
            "final_report": SAMPLE_REPORT,
        }
        self.calls = []

    def invoke(self, prompt_name, context, mode=None, *, session_id=None):
        self.calls.append({"prompt_name": prompt_name, "context": context, "session_id": session_id})
        response = self.responses[prompt_name]
        if isinstance(response, list):
            response = response.pop(0) if len(response) > 1 else response[0]
        if isinstance(response, Exception):
            raise response
        if callable(response):
            response = response(context)
        if isinstance(response, dict):
            return json.dumps(response)
        return response

    def calls_for(self, prompt_name):
        return [c for c in self.calls if c["prompt_name"] == prompt_name]


class FakeEnvironmentProvider:
    """Scripted environment provider.

    ``error`` makes every call raise; ``analyses`` maps collector name to the
    payload (or exception) returned by ``analyze``.
    """

    COLLECTORS = AWSEnvironmentProvider.COLLECTORS

    def __init__(self, snapshot=None, error=None):
        self.snapshot = snapshot if snapshot is not None else SAMPLE_SNAPSHOT
        self.error = error
        self.collect_calls = 0
        self.connection = {"ok": True, "account": "123456789012", "region": "us-east-1"}
        self.analyses = {
            "cost": {"total_cost": 42.0, "cost_trend": "stable", "top_services": [],
                     "daily_costs": [{"date": "2026-01-01", "amount": 1.4}]},
            "iam": {"security_findings": [{"type": "mfa_disabled", "resource": "alice"}],
                    "finding_recommendations": [{"priority": "High", "title": "Enable MFA",
                                                 "resource": "alice", "pillar": "Security"}]},
        }
        self.analyze_calls = []
        self.refresh_calls = []

    def collect(self):
        self.collect_calls += 1
        if self.error is not None:
            raise self.error
        return self.snapshot

    def analyze(self, collector, **options):
        self.analyze_calls.append((collector, options))
        if self.error is not None:
            raise self.error
        result = self.analyses.get(collector, {})
        if isinstance(result, Exception):
            raise result
        return result

    def refresh(self, snapshot, collectors):
        self.refresh_calls.append(list(collectors))
        if self.error is not None:
            raise self.error
        categories = dict((snapshot or {}).get("categories") or {})
        for name in collectors:
            categories[name] = {"status": "ok", "data": {"refreshed": True}}
        return {
            "categories": categories,
            "service_status": {"errors": [], "warnings": [], "successful_services": len(categories),
                               "total_services": len(categories)},
            "summary": {"overall_health": "Good"},
            "timestamp": "2026-01-02T00:00:00+00:00",
        }

    def test_connection(self):
        return self.connection


@pytest.fixture()
def fake_engine():
    return FakeNarrativeEngine()


@pytest.fixture()
def fake_provider():
    return FakeEnvironmentProvider()


@pytest.fixture()
def orchestrator(app, fake_provider, fake_engine, monkeypatch):
    """Orchestrator over the fakes, running reviews inline; also serves the API."""
    orch = ReviewOrchestrator(
        fake_provider,
        fake_engine,
        task_runner=None,
        user_confidence=0.9,
        default_agent_confidence=0.8,
        collection_timeout=5,
    )
    monkeypatch.setitem(app.extensions, EXTENSION_KEY, orch)
    return orch


# ── boto3 fakes ──────────────────────────────────────────────────────────


_CREDENTIAL_REPORT = (
    "user,arn,password_enabled,mfa_active,access_key_1_active,access_key_1_last_used_date,"
    "access_key_2_active,access_key_2_last_used_date\n"
    "alice,arn:aws:iam::123:user/alice,true,false,true,2026-01-01,false,N/A\n"
    "bob,arn:aws:iam::123:user/bob,false,false,true,N/A,false,N/A\n"
).encode()


def _paginator(pages):
    p = MagicMock()
    p.paginate.return_value = pages
    return p


def build_aws_clients() -> dict:
    """MagicMock boto3 clients with realistic responses for every collector."""
    support = MagicMock()
    support.describe_trusted_advisor_checks.return_value = {
        "checks": [{"id": "c1", "name": "Security Groups", "category": "security",
                    "description": "Unrestricted ports"}],
    }
    support.describe_trusted_advisor_check_result.return_value = {
        "result": {"status": "warning", "resourcesSummary": {"resourcesProcessed": 3}},
    }

    ce = MagicMock()
    ce.get_cost_and_usage.return_value = {
        "ResultsByTime": [
            {"Groups": [{"Keys": ["Amazon EC2"], "Metrics": {"UnblendedCost": {"Amount": "10.0"}}},
                        {"Keys": ["Amazon S3"], "Metrics": {"UnblendedCost": {"Amount": "2.5"}}}]},
        ],
    }
    ce.get_rightsizing_recommendation.return_value = {"RightsizingRecommendations": []}

    iam = MagicMock()
    iam.generate_credential_report.return_value = {"State": "COMPLETE"}
    iam.get_credential_report.return_value = {"Content": _CREDENTIAL_REPORT}
    iam.list_policies.return_value = {"Policies": [{"PolicyName": "custom", "Arn": "arn:p", "AttachmentCount": 1}]}

    ec2 = MagicMock()
    ec2.get_paginator.side_effect = lambda name: {
        "describe_instances": _paginator([{"Reservations": [{"Instances": [
            {"InstanceId": "i-1", "InstanceType": "t3.micro", "State": {"Name": "running"}},
            {"InstanceId": "i-2", "InstanceType": "t3.micro", "State": {"Name": "stopped"}},
        ]}]}]),
        "describe_volumes": _paginator([{"Volumes": [
            {"VolumeId": "v-1", "Size": 8, "VolumeType": "gp3", "State": "in-use",
             "Encrypted": True, "Attachments": [{"InstanceId": "i-1"}]},
            {"VolumeId": "v-2", "Size": 20, "VolumeType": "gp2", "State": "available",
             "Encrypted": False, "Attachments": []},
        ]}]),
    }[name]

    cloudwatch = MagicMock()
    cloudwatch.get_metric_statistics.return_value = {
        "Datapoints": [{"Timestamp": "2026-01-01T00:00:00Z", "Average": 12.0, "Maximum": 40.0}],
    }

    config = MagicMock()
    config.describe_config_rules.return_value = {
        "ConfigRules": [{"ConfigRuleName": "s3-bucket-encryption", "Description": "S3 encryption"}],
    }
    config.get_compliance_details_by_config_rule.return_value = {
        "EvaluationResults": [
            {"ComplianceType": "NON_COMPLIANT",
             "EvaluationResultIdentifier": {"EvaluationResultQualifier": {"ResourceId": "bucket-1"}}},
        ],
    }

    sts = MagicMock()
    sts.get_caller_identity.return_value = {"Account": "123456789012"}

    return {"support": support, "ce": ce, "iam": iam, "ec2": ec2,
            "cloudwatch": cloudwatch, "config": config, "sts": sts}


@pytest.fixture()
def aws_clients():
    return build_aws_clients()


@pytest.fixture()
def aws_provider_factory(aws_clients):
    """Build an AWSEnvironmentProvider whose clients come from ``aws_clients``."""

    def _factory(**kwargs):
        kwargs.setdefault("collector_timeout", 5)
        kwargs.setdefault("credential_report_wait", 0)

        def client_factory(service, region_name=None, config=None):
            return aws_clients[service]

        return AWSEnvironmentProvider("eu-west-1", client_factory=client_factory, **kwargs)

    return _factory
