# tests/conftest.py

import pytest
from fastapi.testclient import TestClient

import app
import settings
from maintenance import MaintenanceManager, MaintenanceStore

ENV_KEYS = (
    "MODE",
    "SESSION_SECRET",
    "ADMIN_PASSWORD",
    "CMS_BASE_PATH",
    "MAINTENANCE_FILE",
    "MAINTENANCE_VIEW",
    "MAINTENANCE_STATUS",
    "LOGIN_URL",
    "VERIFY_EMAIL_URL",
    "REQUIRE_EMAIL_VERIFICATION",
    "TRUST_FORWARDED_FOR",
    "TRUSTED_PROXY_CIDRS",
    "SECURITY_HEADERS",
)


@pytest.fixture(autouse=True)
def _test_env(monkeypatch, tmp_path):
    """
    Every test starts from a clean, local-mode environment whose state
    files live in tmp_path (never touch a real .maintenance.json).
    """
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)

    monkeypatch.setenv("MODE", "local")
    monkeypatch.setenv("SESSION_SECRET", "test-secret")
    monkeypatch.setenv("ADMIN_PASSWORD", "admin")
    monkeypatch.setenv("CMS_BASE_PATH", str(tmp_path))

    old_settings = settings._SETTINGS
    old_runtime = getattr(app.app.state, "runtime", None)

    yield

    settings._SETTINGS = old_settings
    if old_runtime is None:
        if hasattr(app.app.state, "runtime"):
            del app.app.state.runtime
    else:
        app.app.state.runtime = old_runtime


@pytest.fixture
def manager(tmp_path):
    return MaintenanceManager(tmp_path)


@pytest.fixture
def client():
    # lifespan runs init_settings() + install_runtime() against the env above
    with TestClient(app.app, base_url="http://testserver") as c:
        yield c


@pytest.fixture
def runtime(client):
    return app.app.state.runtime
