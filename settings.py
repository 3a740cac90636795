# settings.py
from __future__ import annotations

import json
import logging
import os
import secrets
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal, Optional

from dotenv import load_dotenv

from maintenance import MAINTENANCE_FILENAME

load_dotenv()

logger = logging.getLogger(__name__)

APP_DIR = Path(__file__).resolve().parent


# Auth / Mode / Maintenance (Settings: single source of truth)
@dataclass
class Settings:
    mode: Literal["local", "prod"]
    session_secret: str
    admin_password: str
    base_path: Path
    maintenance_file: Path
    maintenance_view: Optional[str]
    maintenance_status: int
    login_url: str
    verify_email_url: str
    require_email_verification: bool
    trust_forwarded_for: Literal["always", "proxy", "never"]
    trusted_proxy_cidrs: list[str] = field(default_factory=list)
    security_headers: dict[str, str] = field(default_factory=dict)


_SETTINGS: Optional[Settings] = None


def _env_flag(name: str, default: str) -> bool:
    return (os.getenv(name) or default).strip().lower() not in {"0", "false", "no", "off"}


def _parse_security_headers(raw: str) -> dict[str, str]:
    if not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise RuntimeError(f"SECURITY_HEADERS must be a JSON object: {e}") from e
    if not isinstance(data, dict) or not all(isinstance(v, str) for v in data.values()):
        raise RuntimeError("SECURITY_HEADERS must map header names to string values")
    return {str(k): v for k, v in data.items()}


def resolve_base_path() -> Path:
    return Path(os.getenv("CMS_BASE_PATH") or str(APP_DIR))


def resolve_maintenance_file(base_path: Optional[Path] = None) -> Path:
    """MAINTENANCE_FILE wins; otherwise <base_path>/.maintenance.json. Shared with the CLI."""
    raw = (os.getenv("MAINTENANCE_FILE") or "").strip()
    if raw:
        return Path(raw)
    return (base_path or resolve_base_path()) / MAINTENANCE_FILENAME


def load_settings() -> Settings:
    """Load and validate settings from environment exactly once."""
    mode = (os.getenv("MODE") or "local").strip().lower()
    if mode not in {"local", "prod"}:
        raise RuntimeError(f"MODE must be 'local' or 'prod' (got {mode!r})")

    admin_password = (os.getenv("ADMIN_PASSWORD") or "").strip()
    session_secret = (os.getenv("SESSION_SECRET") or "").strip()

    if mode == "prod":
        if not admin_password:
            raise RuntimeError("ADMIN_PASSWORD must be set in MODE=prod")
        if not session_secret:
            raise RuntimeError("SESSION_SECRET must be set in MODE=prod")
    else:
        # local: ephemeral secret (sessions reset on restart) unless provided
        if not session_secret:
            session_secret = secrets.token_urlsafe(32)

    base_path = resolve_base_path()
    maintenance_file = resolve_maintenance_file(base_path)

    maintenance_view = (os.getenv("MAINTENANCE_VIEW") or "").strip() or None

    # 200 keeps the historical behaviour; 503 adds Retry-After as well.
    status_raw = (os.getenv("MAINTENANCE_STATUS") or "200").strip()
    if status_raw not in {"200", "503"}:
        raise RuntimeError(f"MAINTENANCE_STATUS must be 200 or 503 (got {status_raw!r})")

    login_url = (os.getenv("LOGIN_URL") or "/login").strip()
    verify_email_url = (os.getenv("VERIFY_EMAIL_URL") or "/verify-email-required").strip()
    for name, url in (("LOGIN_URL", login_url), ("VERIFY_EMAIL_URL", verify_email_url)):
        if not url.startswith("/"):
            raise RuntimeError(f"{name} must be a relative path starting with '/'. Got: {url}")

    require_email_verification = _env_flag("REQUIRE_EMAIL_VERIFICATION", "1")

    trust = (os.getenv("TRUST_FORWARDED_FOR") or "always").strip().lower()
    if trust not in {"always", "proxy", "never"}:
        raise RuntimeError(f"TRUST_FORWARDED_FOR must be always/proxy/never (got {trust!r})")

    cidrs_raw = os.getenv("TRUSTED_PROXY_CIDRS", "127.0.0.1/32,::1/128")
    trusted_proxy_cidrs = [c.strip() for c in cidrs_raw.split(",") if c.strip()]

    security_headers = _parse_security_headers(os.getenv("SECURITY_HEADERS") or "")

    if mode == "prod" and trust == "always":
        logger.warning(
            "TRUST_FORWARDED_FOR=always in MODE=prod: X-Forwarded-For / X-Real-IP "
            "are trusted from any client. Set TRUST_FORWARDED_FOR=proxy behind a known proxy."
        )

    return Settings(
        mode=mode,  # type: ignore[arg-type]
        session_secret=session_secret,
        admin_password=admin_password,
        base_path=base_path,
        maintenance_file=maintenance_file,
        maintenance_view=maintenance_view,
        maintenance_status=int(status_raw),
        login_url=login_url,
        verify_email_url=verify_email_url,
        require_email_verification=require_email_verification,
        trust_forwarded_for=trust,  # type: ignore[arg-type]
        trusted_proxy_cidrs=trusted_proxy_cidrs,
        security_headers=security_headers,
    )


def get_settings() -> Settings:
    if _SETTINGS is None:
        raise RuntimeError("Settings not loaded yet")
    return _SETTINGS


def init_settings() -> Settings:
    global _SETTINGS
    _SETTINGS = load_settings()
    return _SETTINGS
