# filters.py
"""
Concrete route filters.

Register each instance under a name in a FilterRegistry and list those
names on routes. "maintenance" must come first on any route it guards:
it is meant to stop everything else, including authentication.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, Mapping, Optional
from urllib.parse import urlencode

from starlette.responses import Response

from auth import AuthenticationService, User
from csrf import CSRF_FORM_FIELD, CSRF_HEADER, EXEMPT_METHODS, CsrfTokenService
from maintenance import MaintenanceManager
from pipeline import (
    CONTINUE,
    ConfigurationError,
    EmailVerificationRequiredError,
    Filter,
    ForbiddenError,
    MaintenanceActive,
    RequestContext,
    UnauthenticatedError,
)
from proxies import ProxyPolicy
from render import render_maintenance_page

logger = logging.getLogger(__name__)

Authenticator = Callable[[RequestContext], AuthenticationService]
CsrfServiceFactory = Callable[[RequestContext], CsrfTokenService]


def _session_csrf(ctx: RequestContext) -> CsrfTokenService:
    return CsrfTokenService(ctx.session)


def has_traversal(path: str) -> bool:
    """True if any path component is '..' (either separator style)."""
    return ".." in path.replace("\\", "/").split("/")


# ============================================================
# Maintenance
# ============================================================

class MaintenanceFilter(Filter):
    name = "maintenance"

    def __init__(
        self,
        manager: Optional[MaintenanceManager],
        proxies: Optional[ProxyPolicy] = None,
        custom_view: Optional[str] = None,
        status_code: int = 200,
    ):
        super().__init__()
        if manager is None:
            raise ConfigurationError("MaintenanceFilter requires a MaintenanceManager")
        if custom_view and has_traversal(custom_view):
            raise ConfigurationError(f"Invalid maintenance view path (directory traversal): {custom_view}")
        if status_code not in (200, 503):
            raise ConfigurationError(f"Maintenance status must be 200 or 503 (got {status_code})")
        self.manager = manager
        self.proxies = proxies or ProxyPolicy()
        self.custom_view = Path(custom_view) if custom_view else None
        self.status_code = status_code

    def before(self, ctx: RequestContext):
        if not self.manager.is_enabled():
            return CONTINUE

        ip = self.proxies.client_ip(ctx)
        ctx.client_ip = ip
        if self.manager.is_ip_allowed(ip):
            return CONTINUE

        logger.info(f"Maintenance: blocked {ip} on {ctx.method} {ctx.path}")
        raise MaintenanceActive(
            self.render(),
            status_code=self.status_code,
            retry_after=self.manager.get_retry_after(),
        )

    def render(self) -> str:
        if self.custom_view is not None and self.custom_view.is_file():
            try:
                return self.custom_view.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as e:
                logger.error(f"Maintenance view unreadable ({self.custom_view}), using built-in page: {e}")
        return render_maintenance_page(self.manager.get_message(), self.manager.get_retry_after())


# ============================================================
# Authentication
# ============================================================

class AuthenticationFilter(Filter):
    name = "auth"

    def __init__(self, authenticator: Optional[Authenticator], login_url: str = "/login", redirect_param: str = "redirect"):
        super().__init__()
        if authenticator is None:
            raise ConfigurationError(f"{type(self).__name__} requires an authentication service")
        self._authenticator = authenticator
        self.login_url = login_url
        self.redirect_param = redirect_param

    def set_login_url(self, login_url: str) -> "AuthenticationFilter":
        self.login_url = login_url
        return self

    def login_redirect_url(self, intended_url: str) -> str:
        separator = "&" if "?" in self.login_url else "?"
        return self.login_url + separator + urlencode({self.redirect_param: intended_url})

    def authenticate(self, ctx: RequestContext) -> User:
        user = self._authenticator(ctx).current_user()
        if user is None:
            logger.warning(f"Unauthenticated access attempt to protected route: {ctx.path}")
            intended = ctx.full_path
            raise UnauthenticatedError(self.login_redirect_url(intended), intended)

        ctx.user = user
        ctx.user_id = getattr(user, "id", None)
        ctx.user_role = getattr(user, "role", None)
        return user

    def before(self, ctx: RequestContext):
        self.authenticate(ctx)
        return CONTINUE


class MemberAuthenticationFilter(AuthenticationFilter):
    name = "member"

    def __init__(
        self,
        authenticator: Optional[Authenticator],
        login_url: str = "/login",
        require_email_verification: bool = True,
        verify_email_url: str = "/verify-email-required",
    ):
        super().__init__(authenticator, login_url)
        self.require_email_verification = require_email_verification
        self.verify_email_url = verify_email_url

    def set_verify_email_url(self, url: str) -> "MemberAuthenticationFilter":
        self.verify_email_url = url
        return self

    def set_require_email_verification(self, require: bool) -> "MemberAuthenticationFilter":
        self.require_email_verification = require
        return self

    def before(self, ctx: RequestContext):
        user = self.authenticate(ctx)
        if self.require_email_verification and not getattr(user, "email_verified", False):
            logger.info(f"Email verification required for user {ctx.user_id!r} on {ctx.path}")
            raise EmailVerificationRequiredError(self.verify_email_url, ctx.user_id)
        return CONTINUE


# ============================================================
# CSRF
# ============================================================

class CsrfFilter(Filter):
    """Synchronizer-token check for every method except GET/HEAD/OPTIONS."""

    name = "csrf"

    def __init__(self, csrf_tokens: Optional[CsrfServiceFactory] = None):
        super().__init__()
        self._csrf_tokens = csrf_tokens or _session_csrf

    @staticmethod
    def token_from_request(ctx: RequestContext) -> Optional[str]:
        # form field wins over the header
        return ctx.form_value(CSRF_FORM_FIELD) or ctx.header(CSRF_HEADER) or None

    def check(self, ctx: RequestContext) -> None:
        service = self._csrf_tokens(ctx)

        if ctx.method not in EXEMPT_METHODS:
            token = self.token_from_request(ctx)
            if not token:
                logger.warning(f"CSRF token missing from request to: {ctx.path}")
                raise ForbiddenError("CSRF token missing")
            if not service.validate(token):
                logger.warning(f"Invalid CSRF token on: {ctx.path}")
                raise ForbiddenError("Invalid CSRF token")

        # expose the session token to handlers (forms, meta tags)
        ctx.csrf_token = service.get_token()

    def before(self, ctx: RequestContext):
        self.check(ctx)
        return CONTINUE


class AuthCsrfFilter(Filter):
    """Authentication first, then CSRF. An anonymous request never reaches the token check."""

    name = "auth-csrf"

    def __init__(self, authenticator: Optional[Authenticator], csrf_tokens: Optional[CsrfServiceFactory] = None, login_url: str = "/login"):
        super().__init__()
        self._auth = AuthenticationFilter(authenticator, login_url)
        self._csrf = CsrfFilter(csrf_tokens)

    @property
    def login_url(self) -> str:
        return self._auth.login_url

    def before(self, ctx: RequestContext):
        self._auth.authenticate(ctx)
        self._csrf.check(ctx)
        return CONTINUE


# ============================================================
# Security headers
# ============================================================

DEFAULT_SECURITY_HEADERS: dict[str, str] = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Content-Security-Policy": "; ".join(
        [
            "default-src 'self'",
            "script-src 'self' 'unsafe-inline'",
            "style-src 'self' 'unsafe-inline'",
            "img-src 'self' data: https:",
            "font-src 'self' data:",
            "connect-src 'self'",
            "frame-ancestors 'none'",
            "base-uri 'self'",
            "form-action 'self'",
        ]
    ),
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
    "Permissions-Policy": ", ".join(
        [
            "geolocation=()",
            "microphone=()",
            "camera=()",
            "payment=()",
        ]
    ),
}

HSTS_HEADER = "strict-transport-security"


class SecurityHeadersFilter(Filter):
    """Post-hook only. Adds configured headers the response does not already carry."""

    name = "security-headers"

    def __init__(self, config: Optional[Mapping[str, str]] = None, proxies: Optional[ProxyPolicy] = None):
        super().__init__()
        self._config: dict[str, str] = dict(DEFAULT_SECURITY_HEADERS)
        for header, value in (config or {}).items():
            self.set_header(header, value)
        self.proxies = proxies or ProxyPolicy()

    @property
    def config(self) -> dict[str, str]:
        return dict(self._config)

    def _discard(self, header: str) -> None:
        # header names are case-insensitive
        for key in [k for k in self._config if k.lower() == header.lower()]:
            del self._config[key]

    def set_header(self, header: str, value: str) -> "SecurityHeadersFilter":
        self._discard(header)
        self._config[header] = value
        return self

    def remove_header(self, header: str) -> "SecurityHeadersFilter":
        self._discard(header)
        return self

    def after(self, ctx: RequestContext, response: Response) -> None:
        secure = self.proxies.is_https(ctx)
        for header, value in self._config.items():
            if header.lower() == HSTS_HEADER and not secure:
                continue
            if header in response.headers:
                continue
            response.headers[header] = value
