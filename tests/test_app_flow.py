# tests/test_app_flow.py
import re
from urllib.parse import parse_qs, urlsplit

import pytest
from fastapi.testclient import TestClient

import app
from sessions import SESSION_COOKIE
from tests.helpers.auth import ADMIN, MEMBER, TEST_CSRF_TOKEN, UNVERIFIED, login_as

TOKEN_RE = re.compile(r'name="csrf_token" value="([0-9a-f]{64})"')

VISITOR = {"X-Forwarded-For": "203.0.113.5"}
LOCALHOST = {"X-Forwarded-For": "127.0.0.1"}


def _csrf_from(response) -> str:
    m = TOKEN_RE.search(response.text)
    assert m, "csrf token not rendered"
    return m.group(1)


def test_health_is_outside_every_chain(client, manager):
    manager.enable("down", [])
    r = client.get("/health", headers=VISITOR)
    assert r.status_code == 200
    assert r.json() == {"ok": True}
    assert "x-frame-options" not in r.headers


def test_public_page_has_security_headers_and_session(client):
    r = client.get("/")
    assert r.status_code == 200
    assert "Welcome" in r.text
    assert r.headers["x-frame-options"] == "DENY"
    assert r.headers["x-content-type-options"] == "nosniff"
    assert "strict-transport-security" not in r.headers

    set_cookie = r.headers["set-cookie"]
    assert set_cookie.startswith(f"{SESSION_COOKIE}=")
    assert "httponly" in set_cookie.lower()
    assert "samesite=lax" in set_cookie.lower()


def test_hsts_over_https(client):
    r = client.get("https://testserver/")
    assert r.headers["strict-transport-security"] == "max-age=31536000; includeSubDomains"


# --- maintenance ---


def test_maintenance_blocks_visitor_and_allows_localhost(client, manager):
    manager.enable("Upgrading", ["127.0.0.1"], 5400)

    blocked = client.get("/", headers=VISITOR)
    assert blocked.status_code == 200
    assert "Upgrading" in blocked.text
    assert re.search(r"\d+\s+hour", blocked.text)
    assert "Welcome" not in blocked.text
    # post hooks still ran on the terminal response
    assert blocked.headers["x-frame-options"] == "DENY"

    allowed = client.get("/", headers=LOCALHOST)
    assert allowed.status_code == 200
    assert "Welcome" in allowed.text


def test_maintenance_runs_before_authentication(client, manager):
    manager.enable("Upgrading", ["127.0.0.1"])

    r = client.get("/admin", headers=VISITOR, follow_redirects=False)
    assert r.status_code == 200
    assert "Upgrading" in r.text

    # allowed IP falls through to the auth filter
    r = client.get("/admin", headers=LOCALHOST, follow_redirects=False)
    assert r.status_code == 302


def test_undecodable_state_file_leaves_site_up(client, manager):
    manager.path.write_bytes(b'{"enabled": true, "message": "\xff\xfe"}')

    for headers in (LOCALHOST, VISITOR):
        r = client.get("/", headers=headers)
        assert r.status_code == 200
        assert "Welcome" in r.text


def test_maintenance_toggle_takes_effect_without_restart(client, manager):
    manager.enable("Upgrading", [])
    assert "Upgrading" in client.get("/", headers=VISITOR).text

    manager.disable()
    assert "Welcome" in client.get("/", headers=VISITOR).text


def test_maintenance_503_mode(monkeypatch, manager):
    monkeypatch.setenv("MAINTENANCE_STATUS", "503")
    manager.enable("Upgrading", [], 1800)

    with TestClient(app.app) as c:
        r = c.get("/", headers=VISITOR)

    assert r.status_code == 503
    assert r.headers["retry-after"] == "1800"


def test_maintenance_custom_view(monkeypatch, manager, tmp_path):
    view = tmp_path / "down.html"
    view.write_text("<h1>Custom downtime page</h1>", encoding="utf-8")
    monkeypatch.setenv("MAINTENANCE_VIEW", str(view))
    manager.enable("ignored", [])

    with TestClient(app.app) as c:
        r = c.get("/", headers=VISITOR)

    assert r.text == "<h1>Custom downtime page</h1>"


def test_proxy_trust_mode_ignores_spoofed_forwarded_for(monkeypatch, manager):
    monkeypatch.setenv("TRUST_FORWARDED_FOR", "proxy")
    monkeypatch.setenv("TRUSTED_PROXY_CIDRS", "10.0.0.0/8")
    manager.enable("Upgrading", ["127.0.0.1"])

    with TestClient(app.app) as c:
        r = c.get("/", headers=LOCALHOST)

    assert "Upgrading" in r.text


# --- authentication ---


def test_admin_requires_login(client):
    r = client.get("/admin/posts?page=2", follow_redirects=False)
    assert r.status_code == 302

    location = urlsplit(r.headers["location"])
    assert location.path == "/login"
    assert parse_qs(location.query) == {"redirect": ["/admin/posts?page=2"]}
    assert r.headers["x-frame-options"] == "DENY"


def test_member_area(client):
    login_as(client, MEMBER)
    r = client.get("/member")
    assert r.status_code == 200
    assert "Hello, member" in r.text


def test_member_area_requires_verified_email(client):
    login_as(client, UNVERIFIED)
    r = client.get("/member", follow_redirects=False)
    assert r.status_code == 302
    assert r.headers["location"] == "/verify-email-required"


def test_member_area_verification_can_be_switched_off(monkeypatch):
    monkeypatch.setenv("REQUIRE_EMAIL_VERIFICATION", "0")
    with TestClient(app.app) as c:
        login_as(c, UNVERIFIED)
        r = c.get("/member")
    assert r.status_code == 200


def test_login_flow(client):
    form_page = client.get("/login?redirect=/admin/posts")
    assert form_page.status_code == 200
    token = _csrf_from(form_page)
    assert 'name="redirect" value="/admin/posts"' in form_page.text

    r = client.post(
        "/login",
        data={"username": "admin", "password": "admin", "csrf_token": token, "redirect": "/admin/posts"},
        follow_redirects=False,
    )
    assert r.status_code == 303
    assert r.headers["location"] == "/admin/posts"

    dashboard = client.get("/admin")
    assert dashboard.status_code == 200
    assert "Signed in as admin" in dashboard.text
    assert "Maintenance mode: off" in dashboard.text


def test_login_rejects_offsite_redirect(client):
    token = _csrf_from(client.get("/login"))
    r = client.post(
        "/login",
        data={"username": "admin", "password": "admin", "csrf_token": token, "redirect": "//evil.example"},
        follow_redirects=False,
    )
    assert r.status_code == 303
    assert r.headers["location"] == "/admin"


def test_login_bad_password(client):
    token = _csrf_from(client.get("/login"))
    r = client.post("/login", data={"username": "admin", "password": "nope", "csrf_token": token})
    assert r.status_code == 401
    assert "Invalid username or password" in r.text


def test_login_without_csrf_token_is_forbidden(client):
    client.get("/login")
    r = client.post("/login", data={"username": "admin", "password": "admin"})
    assert r.status_code == 403
    assert "CSRF token missing" in r.text
    assert r.headers["x-frame-options"] == "DENY"


def test_login_rotates_csrf_token(client):
    before = _csrf_from(client.get("/login"))
    client.post(
        "/login",
        data={"username": "admin", "password": "admin", "csrf_token": before},
        follow_redirects=False,
    )
    after = _csrf_from(client.get("/admin/posts"))
    assert after != before


# --- CSRF-protected admin form ---


def test_create_post_end_to_end(client):
    token = _csrf_from(client.get("/login"))
    client.post("/login", data={"username": "admin", "password": "admin", "csrf_token": token}, follow_redirects=False)

    token = _csrf_from(client.get("/admin/posts"))
    r = client.post("/admin/posts", data={"title": "Hello world", "csrf_token": token}, follow_redirects=False)
    assert r.status_code == 303

    listing = client.get("/admin/posts")
    assert "Hello world" in listing.text


def test_create_post_without_token_is_forbidden(client, runtime):
    login_as(client, ADMIN)
    r = client.post("/admin/posts", data={"title": "x"})
    assert r.status_code == 403
    assert runtime.posts == []


def test_create_post_with_header_token(client, runtime):
    login_as(client, ADMIN)
    r = client.post(
        "/admin/posts",
        data={"title": "via header"},
        headers={"X-CSRF-Token": TEST_CSRF_TOKEN},
        follow_redirects=False,
    )
    assert r.status_code == 303
    assert runtime.posts == ["via header"]


def test_create_post_requires_title(client):
    login_as(client, ADMIN)
    r = client.post("/admin/posts", data={"title": "  ", "csrf_token": TEST_CSRF_TOKEN})
    assert r.status_code == 422


def test_anonymous_post_redirects_to_login_even_without_token(client):
    r = client.post("/admin/posts", data={"title": "x"}, follow_redirects=False)
    assert r.status_code == 302
    assert r.headers["location"].startswith("/login?redirect=")


def test_logout(client):
    login_as(client, ADMIN)
    r = client.post("/logout", data={"csrf_token": TEST_CSRF_TOKEN}, follow_redirects=False)
    assert r.status_code == 303
    assert r.headers["location"] == "/"
    assert r.headers["set-cookie"].startswith(f"{SESSION_COOKIE}=")


def test_tampered_session_cookie_is_anonymous(client):
    client.cookies.set(SESSION_COOKIE, "bogus.signature")
    r = client.get("/admin", follow_redirects=False)
    assert r.status_code == 302


def test_dashboard_shows_maintenance_status(client, manager):
    manager.enable("down", ["0.0.0.0/0"], enabled_by="ops")
    login_as(client, ADMIN)
    r = client.get("/admin")
    assert "Maintenance mode: on" in r.text
    assert "by ops" in r.text


# --- startup wiring ---


@pytest.mark.parametrize(
    "key, value",
    [
        ("MAINTENANCE_STATUS", "500"),
        ("TRUST_FORWARDED_FOR", "sometimes"),
        ("SECURITY_HEADERS", "not json"),
        ("MAINTENANCE_VIEW", "../../etc/passwd"),
    ],
)
def test_invalid_configuration_fails_startup(monkeypatch, key, value):
    monkeypatch.setenv(key, value)
    with pytest.raises(RuntimeError):
        with TestClient(app.app):
            pass


def test_security_headers_from_env(monkeypatch):
    monkeypatch.setenv("SECURITY_HEADERS", '{"X-Frame-Options": "SAMEORIGIN"}')
    with TestClient(app.app) as c:
        r = c.get("/")
    assert r.headers["x-frame-options"] == "SAMEORIGIN"
