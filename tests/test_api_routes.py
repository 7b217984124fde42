"""
Tests for the threat feed REST API.

Uses FastAPI TestClient against a real in-memory service.
Auth bypassed via dependency_overrides; startup is not run.
"""

import pytest
from fastapi.testclient import TestClient

from threatfeed.api.main import app
from threatfeed.api.security import verify_session_token
from threatfeed.core import FeedSettings
from threatfeed.feed.service import ThreatFeedService, get_feed_service

from conftest import observation


@pytest.fixture
def feed():
    service = ThreatFeedService(FeedSettings(correlation_inline=True))
    yield service
    service.shutdown()


@pytest.fixture
def client(feed):
    """TestClient with auth bypass and the test service installed."""
    app.dependency_overrides[verify_session_token] = lambda: "test-token"
    app.dependency_overrides[get_feed_service] = lambda: feed
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def unauth_client(feed):
    """TestClient without auth."""
    app.dependency_overrides.pop(verify_session_token, None)
    app.dependency_overrides[get_feed_service] = lambda: feed
    yield TestClient(app)
    app.dependency_overrides.clear()


def _create(client, **overrides):
    resp = client.post("/api/threats", json=observation(**overrides))
    assert resp.status_code in (200, 201), resp.text
    return resp.json()["data"]


class TestAuth:
    def test_ingest_requires_token(self, unauth_client):
        resp = unauth_client.post("/api/threats", json=observation())
        assert resp.status_code in (401, 503)
        assert resp.json()["success"] is False

    def test_reads_are_open(self, unauth_client):
        resp = unauth_client.get("/api/threats")
        assert resp.status_code == 200


class TestThreatRoutes:
    def test_create_then_merge(self, client):
        first = client.post("/api/threats", json=observation())
        assert first.status_code == 201
        body = first.json()
        assert body["success"] is True
        assert body["data"]["is_new"] is True

        second = client.post(
            "/api/threats",
            json=observation(source={"id": "otx", "name": "OTX", "kind": "external_api", "reliability": 80}),
        )
        assert second.status_code == 200
        assert second.json()["data"]["record"]["id"] == body["data"]["record"]["id"]

    def test_invalid_observation(self, client):
        resp = client.post("/api/threats", json=observation(severity="apocalyptic"))
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"

    @pytest.mark.parametrize("indicators", [["0xabc"], "0xabc"])
    def test_non_object_indicators_are_a_client_error(self, client, indicators):
        resp = client.post("/api/threats", json=observation(indicators=indicators))
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"

    def test_list_and_filter(self, client):
        _create(client, target={"type": "domain", "value": "one.example"}, severity="high")
        _create(client, target={"type": "domain", "value": "two.example"})

        resp = client.get("/api/threats", params={"severity": "high"})
        data = resp.json()["data"]
        assert data["total"] == 1
        assert data["threats"][0]["target"]["value"] == "one.example"

    def test_limit_too_large(self, client):
        resp = client.get("/api/threats", params={"limit": 500})
        assert resp.status_code == 400

    def test_unknown_record(self, client):
        resp = client.get("/api/threats/does-not-exist")
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"

    def test_update_needs_expected_version(self, client):
        record = _create(client)["record"]
        resp = client.put(f"/api/threats/{record['id']}", json={"title": "x"})
        assert resp.status_code == 400

    def test_update_with_stale_version(self, client):
        record = _create(client)["record"]
        current = client.get(f"/api/threats/{record['id']}").json()["data"]
        ok = client.put(
            f"/api/threats/{record['id']}",
            json={"title": "Moderated", "expected_version": current["version"]},
        )
        assert ok.status_code == 200
        assert ok.json()["data"]["context"]["title"] == "Moderated"

        stale = client.put(
            f"/api/threats/{record['id']}",
            json={"title": "Again", "expected_version": current["version"]},
        )
        assert stale.status_code == 409
        assert stale.json()["error"]["code"] == "conflict"

    @pytest.mark.parametrize("version", [True, False, "1", 1.0])
    def test_expected_version_must_be_a_plain_integer(self, client, version):
        record = _create(client)["record"]
        resp = client.put(
            f"/api/threats/{record['id']}", json={"title": "x", "expected_version": version}
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"

    def test_update_computed_field(self, client):
        record = _create(client)["record"]
        resp = client.put(
            f"/api/threats/{record['id']}", json={"confidence": 100, "expected_version": 1}
        )
        assert resp.status_code == 400

    def test_delete_resolves(self, client):
        record = _create(client)["record"]
        resp = client.delete(f"/api/threats/{record['id']}")
        assert resp.status_code == 200
        assert resp.json()["data"]["status"] == "resolved"

        # Still readable, and cannot be resolved twice
        assert client.get(f"/api/threats/{record['id']}").status_code == 200
        assert client.delete(f"/api/threats/{record['id']}").status_code == 400

    def test_vote(self, client):
        record = _create(client)["record"]
        resp = client.post(f"/api/threats/{record['id']}/vote", json={"vote": "down"})
        assert resp.status_code == 200
        assert resp.json()["data"]["votes"]["downvotes"] == 1

        bad = client.post(f"/api/threats/{record['id']}/vote", json={"vote": "maybe"})
        assert bad.status_code == 400

    def test_reverify(self, client):
        record = _create(client)["record"]
        resp = client.post(f"/api/threats/{record['id']}/reverify")
        assert resp.status_code == 200
        assert resp.json()["data"]["timeline"]["verified_at"] is not None

    def test_correlations_and_dispute(self, client):
        wallet = {"type": "wallet", "value": "0x" + "f" * 40}
        attribution = {"actor": "Lazarus"}
        a = _create(client, target={"type": "domain", "value": "a.example"},
                    indicators=[wallet], attribution=attribution)["record"]
        _create(client, target={"type": "domain", "value": "b.example"},
                indicators=[wallet], attribution=attribution)

        resp = client.get(f"/api/threats/{a['id']}/correlations")
        edges = resp.json()["data"]["correlations"]
        assert len(edges) == 1

        edge_id = edges[0]["id"]
        disputed = client.post(f"/api/threats/correlations/{edge_id}/dispute")
        assert disputed.status_code == 200
        assert disputed.json()["data"]["status"] == "disputed"

        confirmed = client.post(f"/api/threats/correlations/{edge_id}/confirm")
        assert confirmed.json()["data"]["status"] == "confirmed"


class TestSubscriptionRoutes:
    def test_create_and_list(self, client):
        resp = client.post(
            "/api/threats/subscriptions",
            json={"filters": {"types": ["phishing"]}},
            headers={"X-User-Id": "alice"},
        )
        assert resp.status_code == 201
        sub_id = resp.json()["data"]["id"]

        listing = client.get("/api/threats/subscriptions", headers={"X-User-Id": "alice"})
        assert [s["id"] for s in listing.json()["data"]["subscriptions"]] == [sub_id]

        other = client.get(f"/api/threats/subscriptions/{sub_id}", headers={"X-User-Id": "bob"})
        assert other.status_code == 404

    def test_anonymous_needs_session_id(self, client):
        resp = client.post("/api/threats/subscriptions", json={"filters": {}})
        assert resp.status_code == 400

        resp = client.post("/api/threats/subscriptions", json={"session_id": "s-1"})
        assert resp.status_code == 201
        assert resp.json()["data"]["session_id"] == "s-1"

    def test_delete_deactivates(self, client):
        sub = client.post(
            "/api/threats/subscriptions", json={}, headers={"X-User-Id": "alice"}
        ).json()["data"]
        resp = client.delete(
            f"/api/threats/subscriptions/{sub['id']}", headers={"X-User-Id": "alice"}
        )
        assert resp.status_code == 200
        assert resp.json()["data"]["is_active"] is False

    def test_watchlists_require_user(self, client):
        resp = client.post("/api/threats/watchlists", json={"name": "w", "targets": ["evil.com"]})
        assert resp.status_code == 401

    def test_watchlist_alert_lands_in_inbox(self, client):
        headers = {"X-User-Id": "alice"}
        resp = client.post(
            "/api/threats/watchlists",
            json={
                "name": "Exchanges",
                "targets": ["evil.com"],
                "alert_settings": {"minimum_severity": "medium"},
            },
            headers=headers,
        )
        assert resp.status_code == 201

        _create(client, target={"type": "domain", "value": "evil.com"}, severity="high")
        inbox = client.get("/api/threats/inbox", headers=headers).json()["data"]["items"]
        assert len(inbox) == 1

        marked = client.post(
            "/api/threats/inbox/read", json={"ids": [inbox[0]["id"]]}, headers=headers
        )
        assert marked.json()["data"]["updated"] == 1
        unread = client.get(
            "/api/threats/inbox", params={"unread_only": True}, headers=headers
        ).json()["data"]["items"]
        assert unread == []

    def test_empty_watchlist_targets(self, client):
        resp = client.post(
            "/api/threats/watchlists",
            json={"name": "w", "targets": []},
            headers={"X-User-Id": "alice"},
        )
        assert resp.status_code == 400


class TestStatsRoutes:
    def test_generate_then_read(self, client):
        _create(client)
        assert client.get("/api/threats/stats").json()["data"] is None

        resp = client.post("/api/threats/stats", json={"period": "daily"})
        assert resp.status_code == 200
        assert resp.json()["data"]["metrics"]["total_threats"] == 1

        latest = client.get("/api/threats/stats", params={"period": "daily"}).json()["data"]
        assert latest["metrics"]["total_threats"] == 1

    def test_bad_period(self, client):
        resp = client.get("/api/threats/stats", params={"period": "fortnightly"})
        assert resp.status_code == 400

    def test_analytics(self, client):
        _create(client)
        resp = client.get("/api/threats/stats/analytics", params={"days": 7})
        data = resp.json()["data"]
        assert data["days"] == 7
        assert len(data["daily"]) == 7


class TestAdminRoutes:
    def test_unknown_action(self, client):
        resp = client.post("/api/threats/admin", json={"action": "bogus"})
        assert resp.status_code == 400
        assert "Available actions" in resp.json()["error"]["message"]

    def test_initialize_and_sources(self, client):
        resp = client.post("/api/threats/admin", json={"action": "initialize"})
        assert resp.status_code == 200
        assert len(resp.json()["data"]["sources_added"]) == 4

        sources = client.get("/api/threats/admin/sources").json()["data"]["sources"]
        assert len(sources) == 4
        patterns = client.get("/api/threats/admin/patterns").json()["data"]["patterns"]
        assert patterns

    def test_update_source_validation(self, client):
        client.post("/api/threats/admin", json={"action": "initialize"})
        resp = client.post(
            "/api/threats/admin",
            json={"action": "update_source", "source_id": "phishing_tracker",
                  "updates": {"reliability": 101}},
        )
        assert resp.status_code == 400

        resp = client.post(
            "/api/threats/admin",
            json={"action": "update_source", "source_id": "phishing_tracker",
                  "updates": {"reliability": 90}},
        )
        assert resp.json()["data"]["reliability"] == 90

    def test_fetch_external_requires_source(self, client):
        resp = client.post("/api/threats/admin", json={"action": "fetch_external"})
        assert resp.status_code == 400

    def test_run_aging(self, client):
        resp = client.post("/api/threats/admin", json={"action": "run_aging"})
        assert resp.status_code == 200
        assert "sweep" in resp.json()["data"]

    def test_emergency_alert(self, client):
        client.post("/api/threats/subscriptions", json={}, headers={"X-User-Id": "alice"})
        resp = client.post(
            "/api/threats/admin",
            json={"action": "emergency_alert", "title": "Bridge exploit",
                  "message": "Revoke approvals", "severity": "critical"},
        )
        assert resp.status_code == 200
        assert resp.json()["data"]["deliveries"] == 1

        missing = client.post("/api/threats/admin", json={"action": "emergency_alert"})
        assert missing.status_code == 400

    def test_status(self, client):
        resp = client.get("/api/threats/admin/status")
        assert resp.status_code == 200
        assert "subscriptions" in resp.json()["data"]

    def test_health(self, client):
        resp = client.get("/api/health")
        assert resp.json()["data"]["status"] == "ok"
