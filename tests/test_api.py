"""API tests: authentication, access checks and the analytics, integrations and admin routes."""

from __future__ import annotations

from datetime import timedelta

import httpx
from conftest import seed_company, seed_user

from analytics_hub.main import create_app
from analytics_hub.models import Company, Platform, UserSession
from analytics_hub.routes_analytics import parse_platforms
from analytics_hub.routes_auth import hash_token
from analytics_hub.services.date_ranges import utcnow
from analytics_hub.services.oauth_tokens import TokenGrant


def _client(container) -> httpx.AsyncClient:
    app = create_app(container.settings, container)
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


def _auth(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def test_parse_platforms() -> None:
    assert parse_platforms("ga, yt,li,bogus,ga") == [Platform.ga, Platform.youtube, Platform.linkedin]
    assert parse_platforms("bogus") is None
    assert parse_platforms(None) is None


async def test_ping(container) -> None:
    async with _client(container) as client:
        response = await client.get("/ping")
    assert response.json() == {"status": "ok"}


async def test_missing_or_unknown_token_is_rejected(container) -> None:
    await seed_company(container.session_factory)
    async with _client(container) as client:
        assert (await client.get("/api/analytics/acme")).status_code == 401
        assert (await client.get("/api/analytics/acme", headers=_auth("nope"))).status_code == 401


async def test_expired_session_is_rejected(container) -> None:
    await seed_company(container.session_factory)
    await seed_user(container.session_factory, "viewer", companies=("acme",))
    async with container.session_factory() as session:
        session.add(
            UserSession(token_sha256=hash_token("old"), user_id="viewer", expires_at=utcnow() - timedelta(minutes=1))
        )
        await session.commit()

    async with _client(container) as client:
        response = await client.get("/api/auth/me", headers=_auth("old"))
    assert response.status_code == 401


async def test_me(container) -> None:
    token = await seed_user(container.session_factory, "viewer")
    async with _client(container) as client:
        response = await client.get("/api/auth/me", headers=_auth(token))
    assert response.json() == {"authenticated": True, "id": "viewer", "email": "viewer@example.com", "role": "member"}


async def test_unknown_company_is_404(container) -> None:
    token = await seed_user(container.session_factory, "viewer")
    async with _client(container) as client:
        response = await client.get("/api/analytics/nope", headers=_auth(token))
    assert response.status_code == 404


async def test_company_without_membership_is_403(container) -> None:
    await seed_company(container.session_factory, "acme")
    await seed_company(container.session_factory, "beta")
    token = await seed_user(container.session_factory, "viewer", companies=("beta",))
    async with _client(container) as client:
        response = await client.get("/api/analytics/acme", headers=_auth(token))
    assert response.status_code == 403


async def test_company_without_mappings_is_404(container) -> None:
    async with container.session_factory() as session:
        session.add(Company(id="empty", name="Empty"))
        await session.commit()
    token = await seed_user(container.session_factory, "viewer", companies=("empty",))
    async with _client(container) as client:
        response = await client.get("/api/analytics/empty", headers=_auth(token))
    assert response.status_code == 404
    assert "mapped" in response.json()["detail"]


async def test_member_gets_analytics(container, fake_clients) -> None:
    await seed_company(container.session_factory)
    token = await seed_user(container.session_factory, "viewer", companies=("acme",))
    async with _client(container) as client:
        response = await client.get(
            "/api/analytics/acme",
            params={"startDate": "2026-01-01", "endDate": "2026-01-31"},
            headers=_auth(token),
        )
    assert response.status_code == 200
    body = response.json()
    assert body["gaMetrics"]["views"] == 900
    assert body["dataFreshness"]["source"] == "api"


async def test_admin_needs_no_membership_and_can_scope_platforms(container, fake_clients) -> None:
    await seed_company(container.session_factory)
    token = await seed_user(container.session_factory, "root", role="admin")
    async with _client(container) as client:
        response = await client.get("/api/analytics/acme", params={"platforms": "ga,li"}, headers=_auth(token))
    assert response.status_code == 200
    body = response.json()
    assert "gaMetrics" in body and "liMetrics" in body
    assert "gscMetrics" not in body and "ytMetrics" not in body
    assert fake_clients[Platform.gsc].calls == 0


async def test_oauth_callback_list_and_disconnect(container, token_endpoint) -> None:
    token = await seed_user(container.session_factory, "viewer")
    async with _client(container) as client:
        response = await client.post(
            "/api/integrations/google/callback",
            json={"code": "auth-code", "identity": "brand", "identity_name": "Brand", "linked_account_id": "chan-1"},
            headers=_auth(token),
        )
        assert response.status_code == 200
        connection_id = response.json()["connection_id"]
        assert response.json()["scope"] == "analytics"

        listed = await client.get("/api/integrations/connections", params={"provider": "google"}, headers=_auth(token))
        assert [c["identity"] for c in listed.json()] == ["brand"]
        assert listed.json()[0]["linked_account_id"] == "chan-1"

        deleted = await client.delete(f"/api/integrations/connections/{connection_id}", headers=_auth(token))
        assert deleted.status_code == 200
        again = await client.delete(f"/api/integrations/connections/{connection_id}", headers=_auth(token))
        assert again.status_code == 404

    assert token_endpoint.form(0)["code"] == "auth-code"


async def test_rejected_code_exchange_is_400(container, token_endpoint) -> None:
    token_endpoint.status_code = 400
    token_endpoint.body = {"error": "invalid_grant"}
    token = await seed_user(container.session_factory, "viewer")
    async with _client(container) as client:
        response = await client.post(
            "/api/integrations/linkedin/callback", json={"code": "stale"}, headers=_auth(token)
        )
    assert response.status_code == 400


async def test_admin_routes_require_admin(container) -> None:
    token = await seed_user(container.session_factory, "viewer")
    async with _client(container) as client:
        response = await client.post("/api/admin/cache/clear", headers=_auth(token))
    assert response.status_code == 403


async def test_admin_warm_and_clear_cache(container) -> None:
    await seed_company(container.session_factory)
    token = await seed_user(container.session_factory, "root", role="admin")
    async with _client(container) as client:
        warmed = await client.post("/api/admin/cache/warm", headers=_auth(token))
        assert warmed.json()["built"] == 1
        cleared = await client.post("/api/admin/cache/clear", json={"company_id": "acme"}, headers=_auth(token))
    assert cleared.json() == {"deleted": 1, "company_id": "acme"}


async def test_admin_ingests_daily_metrics(container, date_range) -> None:
    await seed_company(container.session_factory)
    token = await seed_user(container.session_factory, "root", role="admin")
    payload = {
        "rows": [{"date": date_range.end.isoformat(), "sessions": 3, "page_views": 8}],
        "top_content": [{"title": "Home", "views": 8}],
    }
    async with _client(container) as client:
        response = await client.post("/api/admin/metrics/acme/ga", json=payload, headers=_auth(token))
        missing = await client.post("/api/admin/metrics/nope/ga", json=payload, headers=_auth(token))

    assert response.json() == {"platform": "ga", "stored": 1, "state": "success"}
    assert missing.status_code == 404
    [record] = await container.sync_status.get_sync_status("acme")
    assert record.has_synced


async def test_portfolio_lists_member_companies(container) -> None:
    await seed_company(container.session_factory, "acme")
    await seed_company(container.session_factory, "beta")
    token = await seed_user(container.session_factory, "viewer", companies=("acme",))
    async with _client(container) as client:
        first = await client.get("/api/analytics/portfolio", headers=_auth(token))
        second = await client.get("/api/analytics/portfolio", headers=_auth(token))
        refreshed = await client.get("/api/analytics/portfolio", params={"refresh": "true"}, headers=_auth(token))

    assert first.status_code == 200
    assert [c["id"] for c in first.json()["companies"]] == ["acme"]
    assert first.json()["aggregateMetrics"]["totalTraffic"] == 120
    assert first.json()["cached"] is False
    assert second.json()["cached"] is True
    assert refreshed.json()["cached"] is False


async def test_comparison_validates_and_checks_access(container) -> None:
    await seed_company(container.session_factory, "acme")
    await seed_company(container.session_factory, "beta")
    token = await seed_user(container.session_factory, "viewer", companies=("acme",))
    admin = await seed_user(container.session_factory, "root", role="admin")
    body = {"companyIds": ["acme"], "startDate": "2026-01-01", "endDate": "2026-01-31", "metrics": ["traffic", "clicks"]}
    async with _client(container) as client:
        empty = await client.post("/api/analytics/comparison", json={"companyIds": []}, headers=_auth(token))
        denied = await client.post(
            "/api/analytics/comparison", json={**body, "companyIds": ["acme", "beta"]}, headers=_auth(token)
        )
        allowed = await client.post("/api/analytics/comparison", json=body, headers=_auth(token))
        as_admin = await client.post(
            "/api/analytics/comparison", json={**body, "companyIds": ["acme", "beta"]}, headers=_auth(admin)
        )

    assert empty.status_code == 400
    assert denied.status_code == 403
    assert allowed.status_code == 200
    [acme] = allowed.json()["companies"]
    assert acme["current"] == {"traffic": 120, "clicks": 250}
    assert allowed.json()["dateRange"]["current"] == {"startDate": "2026-01-01", "endDate": "2026-01-31"}
    assert [c["companyId"] for c in as_admin.json()["companies"]] == ["acme", "beta"]


async def test_admin_sync_status_reports_syncs_and_token_health(container) -> None:
    await seed_company(container.session_factory, "acme")
    await container.sync_status.record_failure("acme", Platform.ga, "GA API Error: 500 - boom")
    await container.token_manager.save("owner-1", "google", TokenGrant("access", "refresh", 3600, "analytics"))
    viewer = await seed_user(container.session_factory, "viewer", companies=("acme",))
    admin = await seed_user(container.session_factory, "root", role="admin")
    async with _client(container) as client:
        denied = await client.get("/api/admin/sync-status", headers=_auth(viewer))
        response = await client.get("/api/admin/sync-status", headers=_auth(admin))

    assert denied.status_code == 403
    body = response.json()
    [status] = body["syncStatuses"]
    assert status["companyName"] == "Acme"
    assert status["syncState"] == "error"
    assert status["consecutiveFailures"] == 1
    [token] = body["tokenHealth"]
    assert token["userId"] == "owner-1"
    assert token["expiresSoon"] is True
    assert token["companyIds"] == ["acme"]
    assert "lastUpdated" in body
