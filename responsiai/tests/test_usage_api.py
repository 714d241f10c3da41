"""
Test the metered analysis path and usage/signup endpoints.
"""
import pytest
from fastapi.testclient import TestClient

from responsiai.core.container import build_container
from responsiai.core.errors import UpstreamError
from responsiai.features.analysis.fetcher import score_html
from responsiai.main import create_app

AS_BOB = {"X-User-Id": "user_bob"}
RESPONSIVE_HTML = (
    '<html><head><title>Bob Site</title><meta name="viewport" content="width=device-width">'
    "<style>@media (max-width: 600px) { body { font-size: 14px } }</style></head>"
    '<body><img src="a.png" srcset="a@2x.png 2x"></body></html>'
)


class FakeAnalyzer:
    """Stands in for the network fetch; fails when told to."""

    def __init__(self):
        self.fail = False
        self.urls = []

    async def __call__(self, url):
        self.urls.append(url)
        if self.fail:
            raise UpstreamError("HTTP 503: Service Unavailable")
        return score_html(url, 200, RESPONSIVE_HTML)


@pytest.fixture
def analyzer():
    return FakeAnalyzer()


@pytest.fixture
def client(core_config, log_sink, analyzer):
    c = build_container(core_config, sink=log_sink, analyzer=analyzer)
    with TestClient(create_app(c)) as test_client:
        yield test_client


@pytest.fixture
def bob(client):
    resp = client.post("/api/users", json={"user_id": "user_bob", "email": "Bob@Example.com", "display_name": "Bob"})
    assert resp.status_code == 201
    return resp.json()


def _analyze(client, n=1):
    return [client.post("/api/analyses", json={"url": "bob.example"}, headers=AS_BOB) for _ in range(n)]


def test_signup_creates_free_user(bob):
    assert bob == {"user_id": "user_bob", "email": "bob@example.com", "display_name": "Bob", "plan_tier": "free"}


def test_duplicate_signup_is_conflict(client, bob):
    resp = client.post("/api/users", json={"user_id": "user_bob", "email": "other@example.com"})
    assert resp.status_code == 409


def test_signup_rejects_invalid_email(client):
    resp = client.post("/api/users", json={"user_id": "user_x", "email": "nope"})
    assert resp.status_code == 400


def test_usage_starts_at_zero(client, bob):
    usage = client.get("/api/usage", headers=AS_BOB).json()
    assert usage["count"] == 0
    assert usage["limit"] == 10
    assert usage["remaining"] == 10


def test_analysis_returns_report_and_counts_usage(client, bob, analyzer):
    resp = _analyze(client)[0]

    assert resp.status_code == 200
    body = resp.json()
    assert body["report"]["title"] == "Bob Site"
    assert body["report"]["has_viewport_meta"] is True
    assert body["usage"]["count"] == 1
    assert body["usage"]["remaining"] == 9
    assert analyzer.urls == ["bob.example"]


def test_failed_analysis_is_not_counted(client, bob, analyzer):
    analyzer.fail = True
    resp = _analyze(client)[0]

    assert resp.status_code == 502
    assert client.get("/api/usage", headers=AS_BOB).json()["count"] == 0


def test_free_tier_eleventh_analysis_is_refused(client, bob, analyzer):
    responses = _analyze(client, 11)

    assert [r.status_code for r in responses[:10]] == [200] * 10
    refused = responses[10]
    assert refused.status_code == 429
    assert refused.json()["error"]["code"] == "limit_exceeded"
    assert len(analyzer.urls) == 10
    assert client.get("/api/usage", headers=AS_BOB).json()["count"] == 10


def test_threshold_emails_sent_in_background(client, bob, log_sink):
    _analyze(client, 10)
    subjects = [m.subject for m in log_sink.sent]
    assert subjects == ["Usage Limit Warning", "Usage Limit Reached"]
    assert all(m.to == "bob@example.com" for m in log_sink.sent)


def test_analysis_requires_identity(client):
    resp = client.post("/api/analyses", json={"url": "bob.example"})
    assert resp.status_code == 401


def test_analysis_for_unknown_user_is_404(client):
    resp = client.post("/api/analyses", json={"url": "bob.example"}, headers={"X-User-Id": "ghost"})
    assert resp.status_code == 404
