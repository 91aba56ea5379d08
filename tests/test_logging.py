"""
Tests for review-aware logging.

Covers:
    - session and request ids stamped by ReviewContextFilter
    - review fields in JSON and readable output
    - configure_logging settings (LOG_FORMAT, AWS_LOG_LEVEL)
    - the bound session follows work handed to collector threads
"""

import json
import logging
import sys

import pytest
from botocore.exceptions import ClientError
from flask import Flask, g

from app.middleware.logging_config import (
    JSONFormatter,
    ReadableFormatter,
    ReviewContextFilter,
    build_handler,
    configure_logging,
    current_review,
    review_context,
)


def _record(msg="collector finished", exc_info=None, **extra):
    record = logging.LogRecord("app.integrations", logging.WARNING, __file__, 42, msg, (), exc_info,
                               func="collect_iam")
    for key, val in extra.items():
        setattr(record, key, val)
    return record


class _Capture(logging.Handler):
    def __init__(self):
        super().__init__(level=logging.DEBUG)
        self.records = []
        self.addFilter(ReviewContextFilter())

    def emit(self, record):
        self.records.append(record)


@pytest.fixture()
def capture():
    """Attach a capturing handler to the service loggers for one test."""
    handler = _Capture()
    loggers = [logging.getLogger(n) for n in ("app.integrations.aws_environment", "app.services.review_service")]
    for lg in loggers:
        lg.addHandler(handler)
    yield handler
    for lg in loggers:
        lg.removeHandler(handler)


@pytest.fixture()
def restore_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    aws_levels = {n: logging.getLogger(n).level for n in ("boto3", "botocore", "urllib3")}
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
    for name, lvl in aws_levels.items():
        logging.getLogger(name).setLevel(lvl)


class TestReviewContextFilter:
    def test_bound_session_stamped(self):
        record = _record()
        with review_context("sess-1"):
            ReviewContextFilter().filter(record)
        assert record.session_id == "sess-1"

    def test_unbound_leaves_none(self):
        record = _record()
        ReviewContextFilter().filter(record)
        assert record.session_id is None
        assert current_review() is None

    def test_explicit_session_wins(self):
        record = _record(session_id="explicit")
        with review_context("bound"):
            ReviewContextFilter().filter(record)
        assert record.session_id == "explicit"

    def test_nested_contexts_restore(self):
        with review_context("outer"):
            with review_context("inner"):
                assert current_review() == "inner"
            assert current_review() == "outer"
        assert current_review() is None

    def test_request_id_from_request_context(self, app):
        record = _record()
        with app.test_request_context("/api/v1/health/live"):
            g.request_id = "req-abc"
            ReviewContextFilter().filter(record)
        assert record.request_id == "req-abc"


class TestFormatters:
    def test_json_carries_review_fields(self):
        record = _record(session_id="sess-1", step=2, collector="iam", error_category="access_denied")

        entry = json.loads(JSONFormatter().format(record))

        assert entry["session_id"] == "sess-1"
        assert entry["step"] == 2
        assert entry["collector"] == "iam"
        assert entry["error_category"] == "access_denied"
        assert entry["origin"].endswith("collect_iam:42")
        assert "request_id" not in entry

    def test_json_exception_type(self):
        try:
            raise TimeoutError("collector hung")
        except TimeoutError:
            record = _record(exc_info=sys.exc_info())

        entry = json.loads(JSONFormatter().format(record))

        assert entry["exception_type"] == "TimeoutError"
        assert "collector hung" in entry["exception"]

    def test_readable_tags(self):
        record = _record(session_id="1a2b3c4d-5e6f", step=2, collector="iam", error_category="access_denied",
                         duration_ms=812.4)

        line = ReadableFormatter(color=False).format(record)

        assert "app.integrations [review=1a2b3c4d step=2 collector=iam !access_denied]: collector finished" in line
        assert line.endswith("(812ms)")
        assert "\033[" not in line

    def test_readable_without_context(self):
        line = ReadableFormatter(color=False).format(_record())
        assert "app.integrations: collector finished" in line


class TestConfigureLogging:
    def test_settings_from_app_config(self, restore_logging):
        app = Flask(__name__)
        app.config.update(TESTING=True, LOG_FORMAT="JSON", LOG_LEVEL="warning", AWS_LOG_LEVEL="ERROR")

        configure_logging(app)

        root = logging.getLogger()
        assert len(root.handlers) == 1
        handler = root.handlers[0]
        assert isinstance(handler.formatter, JSONFormatter)
        assert any(isinstance(f, ReviewContextFilter) for f in handler.filters)
        assert root.level == logging.WARNING
        assert logging.getLogger("botocore").level == logging.ERROR

    def test_readable_by_default_outside_production(self, restore_logging):
        app = Flask(__name__)
        app.config.update(TESTING=True)

        configure_logging(app)

        assert isinstance(logging.getLogger().handlers[0].formatter, ReadableFormatter)

    def test_unknown_format_rejected(self):
        with pytest.raises(ValueError, match="LOG_FORMAT"):
            build_handler("xml", logging.INFO)


class TestSessionFollowsWork:
    def test_collection_thread_logs_carry_session(self, orchestrator, three_questions, fake_provider, capture):
        def collect():
            logging.getLogger("app.integrations.aws_environment").warning("collecting")
            return fake_provider.snapshot

        fake_provider.collect = collect

        sid = orchestrator.start_review()["session_id"]

        record = next(r for r in capture.records if r.getMessage() == "collecting")
        assert record.session_id == sid
        assert record.threadName.startswith("env-collect")

    def test_collector_worker_logs_carry_session(self, aws_provider_factory, aws_clients, capture):
        aws_clients["ce"].get_rightsizing_recommendation.side_effect = ClientError(
            {"Error": {"Code": "AccessDeniedException", "Message": "denied"}}, "GetRightsizingRecommendation",
        )

        with review_context("sess-42"):
            aws_provider_factory().collect()

        record = next(r for r in capture.records if getattr(r, "collector", None) == "cost")
        assert record.session_id == "sess-42"
        assert record.threadName.startswith("collector")
