"""
Shared pytest fixtures for the threatfeed test suite.

Autouse fixtures below isolate tests from process-wide state:
  - Settings        -> in-memory store, audit trail under tmp_path
  - Audit logger    -> fresh instance per test (temp directory)
  - Feed service    -> singleton cleared, so API tests install their own
"""

import pytest

from threatfeed.core import FeedSettings, reset_settings


@pytest.fixture(autouse=True)
def _isolate_settings(tmp_path):
    """Every test starts from default settings with a throwaway audit dir."""
    reset_settings(FeedSettings(audit_dir=str(tmp_path / "audit_logs")))
    yield
    reset_settings(None)


@pytest.fixture(autouse=True)
def _isolate_audit_logs(tmp_path):
    """Reset the global AuditLogger so events land in the temp directory.

    Without this the first test to log creates ``./audit_logs`` in the
    working directory and every later test appends to it.
    """
    import threatfeed.core.audit_log as audit_mod

    old_logger = audit_mod._audit_logger
    audit_mod._audit_logger = None

    yield

    if audit_mod._audit_logger is not None:
        audit_mod._audit_logger.close()
    audit_mod._audit_logger = old_logger


@pytest.fixture(autouse=True)
def _isolate_feed_service():
    """Clear the process-wide service before and after each test."""
    from threatfeed.feed.service import set_feed_service

    set_feed_service(None)
    yield
    set_feed_service(None)


@pytest.fixture
def settings():
    """Settings with correlation run inline so tests see edges immediately."""
    return FeedSettings(correlation_inline=True, delivery_timeout_seconds=5.0)


@pytest.fixture
def service(settings):
    from threatfeed.feed.service import ThreatFeedService

    svc = ThreatFeedService(settings)
    yield svc
    svc.shutdown()


def observation(**overrides):
    """A valid observation payload; keyword arguments replace top-level keys."""
    data = {
        "source": {"id": "community", "name": "Community", "kind": "community", "reliability": 60},
        "type": "phishing",
        "category": "identity_theft",
        "severity": "medium",
        "target": {"type": "domain", "value": "evil.example"},
        "context": {"title": "Fake exchange", "description": "Clone login page", "tags": []},
    }
    data.update(overrides)
    return data


@pytest.fixture
def make_observation():
    return observation
