#!/usr/bin/env python3
"""
Smoke E2E test: walks the analytics API of a running instance.

Needs a seeded company with at least one platform mapping and a bearer
session for a user who can see it. Provider tokens are optional: platforms
without them must come back as typed errors, never as a failed request.

Env vars:
  BASE_URL       (default http://localhost:8000)
  AUTH_TOKEN     bearer session token of a company member (required)
  ADMIN_TOKEN    bearer session token of an admin (optional, enables admin steps)
  COMPANY_ID     company to query (required)
  PLATFORMS      optional platform filter, e.g. "ga,gsc"
"""
from __future__ import annotations

import json
import os
import sys
from datetime import date, timedelta
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

BASE_URL = os.environ.get("BASE_URL", "http://localhost:8000").rstrip("/")
AUTH_TOKEN = os.environ.get("AUTH_TOKEN", "")
ADMIN_TOKEN = os.environ.get("ADMIN_TOKEN", "")
COMPANY_ID = os.environ.get("COMPANY_ID", "")
PLATFORMS = os.environ.get("PLATFORMS", "")

PREFIXES = ("ga", "gsc", "yt", "li")
ERROR_TYPES = {"auth_required", "scope_missing", "api_error"}

# ── Helpers ──────────────────────────────────────────────────

class SmokeError(Exception):
    pass


def _headers(token: str) -> dict[str, str]:
    h = {"Content-Type": "application/json"}
    if token:
        h["Authorization"] = f"Bearer {token}"
    return h


def _req(method: str, path: str, body: dict | None = None, *, token: str = AUTH_TOKEN, expect: int = 200) -> dict:
    url = f"{BASE_URL}{path}"
    data = json.dumps(body).encode() if body is not None else None
    req = Request(url, data=data, headers=_headers(token), method=method)
    try:
        with urlopen(req, timeout=120) as resp:
            raw = resp.read().decode()
            if resp.status != expect:
                raise SmokeError(f"{method} {path} → {resp.status}, expected {expect}")
            return json.loads(raw) if raw else {}
    except HTTPError as e:
        raw = e.read().decode()[:500]
        if e.code == expect:
            return json.loads(raw) if raw else {}
        raise SmokeError(f"{method} {path} → {e.code}: {raw}")
    except URLError as e:
        raise SmokeError(f"{method} {path} → URLError: {e}")


def GET(path: str, **kwargs) -> dict:
    return _req("GET", path, **kwargs)


def POST(path: str, body: dict | None = None, **kwargs) -> dict:
    return _req("POST", path, body, **kwargs)


def step(name: str):
    print(f"\n{'='*60}")
    print(f"  STEP: {name}")
    print(f"{'='*60}")


def ok(msg: str):
    print(f"  ✅ {msg}")


def fail(msg: str):
    print(f"  ❌ {msg}")
    raise SmokeError(msg)


def _analytics_path(**params: str) -> str:
    query = {k: v for k, v in params.items() if v}
    if PLATFORMS:
        query["platforms"] = PLATFORMS
    suffix = f"?{urlencode(query)}" if query else ""
    return f"/api/analytics/{COMPANY_ID}{suffix}"


def _check_platforms(data: dict) -> list[str]:
    """Every platform present must be either data or a typed error."""
    present = []
    for prefix in PREFIXES:
        has_data = f"{prefix}Metrics" in data
        has_error = f"{prefix}Error" in data
        if not has_data and not has_error:
            continue
        present.append(prefix)
        if has_data and has_error:
            fail(f"{prefix}: both data and error in payload")
        error_type = data.get(f"{prefix}ErrorType")
        if error_type is not None and error_type not in ERROR_TYPES:
            fail(f"{prefix}: unexpected error type {error_type!r}")
        if has_data:
            ok(f"{prefix}: data (source={data.get(f'{prefix}DataSource', 'normalized')})")
        else:
            ok(f"{prefix}: {error_type} — {data[f'{prefix}Error'][:80]}")
    return present


# ── Steps ────────────────────────────────────────────────────

def step1_health():
    step("1. Health check")
    data = GET("/ping", token="")
    if data.get("status") != "ok":
        fail(f"Unexpected ping response: {data}")
    ok("API is up")


def step2_auth():
    step("2. Session check")
    GET(f"/api/analytics/{COMPANY_ID}", token="", expect=401)
    ok("Anonymous request rejected with 401")
    me = GET("/api/auth/me")
    ok(f"Authenticated as {me.get('email')} ({me.get('role')})")


def step3_first_fetch() -> dict:
    step("3. Analytics, default range")
    data = GET(_analytics_path())
    freshness = data.get("dataFreshness", {})
    ok(f"Served from {freshness.get('source')} at {freshness.get('timestamp')}")
    if not _check_platforms(data):
        fail("No platform in payload")
    return data


def step4_repeat_fetch(first: dict):
    step("4. Same request again")
    data = GET(_analytics_path())
    source = data.get("dataFreshness", {}).get("source")
    if first.get("dataFreshness", {}).get("source") == "api" and not PLATFORMS and source == "api":
        print("  ⚠️  Second request went live again (cache write skipped?)")
    else:
        ok(f"Second request served from {source}")


def step5_custom_range():
    step("5. Explicit and inverted ranges")
    end = date.today()
    start = end - timedelta(days=6)
    data = GET(_analytics_path(startDate=start.isoformat(), endDate=end.isoformat()))
    _check_platforms(data)
    ok("7-day range OK")
    data = GET(_analytics_path(startDate=end.isoformat(), endDate=start.isoformat()))
    _check_platforms(data)
    ok("Inverted range repaired, no error")


def step6_refresh():
    step("6. Forced refresh")
    data = GET(_analytics_path(refresh="true"))
    source = data.get("dataFreshness", {}).get("source")
    if source != "api":
        fail(f"refresh=true served from {source}")
    ok("refresh=true bypassed the cache")


def step7_admin():
    step("7. Admin: warm and clear cache")
    if not ADMIN_TOKEN:
        print("  ⏭  ADMIN_TOKEN not set, skipping")
        return
    warm = POST("/api/admin/cache/warm", token=ADMIN_TOKEN)
    ok(f"Snapshots built: {warm.get('built')}/{warm.get('total')}")
    cleared = POST("/api/admin/cache/clear", {"company_id": COMPANY_ID}, token=ADMIN_TOKEN)
    ok(f"Cache rows deleted for {COMPANY_ID}: {cleared.get('deleted')}")


def main():
    print(f"\n🔬 Analytics smoke test — {BASE_URL}")
    print(f"   COMPANY_ID={COMPANY_ID or '-'}  ADMIN={'set' if ADMIN_TOKEN else 'none'}  PLATFORMS={PLATFORMS or 'all'}\n")
    if not AUTH_TOKEN or not COMPANY_ID:
        print("  AUTH_TOKEN and COMPANY_ID are required")
        sys.exit(2)

    try:
        step1_health()
        step2_auth()
        first = step3_first_fetch()
        step4_repeat_fetch(first)
        step5_custom_range()
        step6_refresh()
        step7_admin()
    except SmokeError as e:
        print(f"\n{'='*60}")
        print(f"  ❌ FAIL: {e}")
        print(f"{'='*60}\n")
        sys.exit(1)
    except KeyboardInterrupt:
        print("\n\n  ⏹ Interrupted")
        sys.exit(130)

    print(f"\n{'='*60}")
    print("  ✅ SMOKE PASSED")
    print(f"{'='*60}\n")


if __name__ == "__main__":
    main()
