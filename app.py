# app.py
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Optional
from urllib.parse import parse_qs

from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse, Response
from starlette.concurrency import run_in_threadpool

from auth import SessionAuthentication, User, UserDirectory
from filters import (
    AuthCsrfFilter,
    AuthenticationFilter,
    CsrfFilter,
    MaintenanceFilter,
    MemberAuthenticationFilter,
    SecurityHeadersFilter,
)
from maintenance import MaintenanceManager, MaintenanceStore
from pipeline import ConfigurationError, FilterChain, FilterRegistry, RequestContext
from proxies import ProxyPolicy
from render import esc, render_login, render_page, render_post_form
from sessions import SESSION_COOKIE, SESSION_MAX_AGE, Session, SessionCodec
from settings import Settings, init_settings


# ============================================================
# Logging
# ============================================================

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s"
)
logger = logging.getLogger(__name__)


# ============================================================
# Runtime (built once per process in lifespan)
# ============================================================

# Common filter stacks. "maintenance" is always first.
PUBLIC = ("maintenance", "csrf", "security-headers")
ADMIN = ("maintenance", "auth", "security-headers")
ADMIN_FORM = ("maintenance", "auth-csrf", "security-headers")
MEMBER = ("maintenance", "member", "security-headers")


@dataclass
class CmsRuntime:
    settings: Settings
    codec: SessionCodec
    users: UserDirectory
    maintenance: MaintenanceManager
    proxies: ProxyPolicy
    registry: FilterRegistry
    chains: dict[str, FilterChain] = field(default_factory=dict)
    posts: list[str] = field(default_factory=list)


def build_registry(settings: Settings, users: UserDirectory, maintenance: MaintenanceManager, proxies: ProxyPolicy) -> FilterRegistry:
    def authenticator(ctx: RequestContext) -> SessionAuthentication:
        return SessionAuthentication(ctx.session, users)

    registry = FilterRegistry()
    registry.register(
        MaintenanceFilter(
            maintenance,
            proxies,
            custom_view=settings.maintenance_view,
            status_code=settings.maintenance_status,
        )
    )
    registry.register(AuthenticationFilter(authenticator, settings.login_url))
    registry.register(
        MemberAuthenticationFilter(
            authenticator,
            settings.login_url,
            require_email_verification=settings.require_email_verification,
            verify_email_url=settings.verify_email_url,
        )
    )
    registry.register(CsrfFilter())
    registry.register(AuthCsrfFilter(authenticator, login_url=settings.login_url))
    registry.register(SecurityHeadersFilter(settings.security_headers, proxies))
    return registry


def build_runtime(settings: Settings) -> CmsRuntime:
    users = UserDirectory()
    if settings.admin_password:
        users.add(
            User(id=1, username="admin", role="admin", email_verified=True),
            password=settings.admin_password,
        )

    maintenance = MaintenanceManager(store=MaintenanceStore(settings.maintenance_file))
    proxies = ProxyPolicy(settings.trust_forwarded_for, settings.trusted_proxy_cidrs)
    registry = build_registry(settings, users, maintenance, proxies)

    runtime = CmsRuntime(
        settings=settings,
        codec=SessionCodec(settings.session_secret),
        users=users,
        maintenance=maintenance,
        proxies=proxies,
        registry=registry,
    )

    # Resolve every route's filter names now: a typo fails startup, not a request.
    for route in ROUTES:
        runtime.chains[route.key] = FilterChain(route.filters, registry)

    return runtime


def install_runtime(target: FastAPI, settings: Settings) -> CmsRuntime:
    runtime = build_runtime(settings)
    target.state.runtime = runtime
    return runtime


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup:
    1. Load settings (fail fast on invalid env)
    2. Build filters + resolve every route's filter chain (fail fast on wiring errors)
    """
    settings = init_settings()
    install_runtime(app, settings)
    logger.info(f"CMS started (mode={settings.mode}, maintenance_file={settings.maintenance_file})")
    yield


app = FastAPI(lifespan=lifespan)


# ============================================================
# Gated routes
# ============================================================

@dataclass(frozen=True)
class GatedRoute:
    path: str
    methods: tuple[str, ...]
    filters: tuple[str, ...]
    handler: Callable[[RequestContext], Any]

    @property
    def key(self) -> str:
        return f"{','.join(self.methods)} {self.path}"


ROUTES: list[GatedRoute] = []

FORM_CONTENT_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")


def _runtime(request: Request) -> CmsRuntime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise ConfigurationError("CMS runtime not installed (lifespan did not run)")
    return runtime


def _rt(ctx: RequestContext) -> CmsRuntime:
    return ctx.state["runtime"]


async def _read_form(request: Request) -> dict[str, str]:
    if request.method in ("GET", "HEAD", "OPTIONS"):
        return {}
    content_type = (request.headers.get("content-type") or "").lower()
    if not any(ct in content_type for ct in FORM_CONTENT_TYPES):
        return {}
    form = await request.form()
    return {k: v for k, v in form.items() if isinstance(v, str)}


def context_from_request(request: Request, session: Session, form: Optional[dict[str, str]] = None) -> RequestContext:
    return RequestContext(
        method=request.method,
        path=request.url.path,
        query_string=request.url.query,
        headers=request.headers,
        form=form or {},
        peer=(request.client.host if request.client else "") or "",
        scheme=request.url.scheme,
        session=session,
    )


def _save_session(response: Response, ctx: RequestContext, runtime: CmsRuntime) -> None:
    session = ctx.session
    if session.destroyed:
        response.delete_cookie(key=SESSION_COOKIE, httponly=True, samesite="lax")
        return
    if not session.modified:
        return
    secure = runtime.settings.mode == "prod" and runtime.proxies.is_https(ctx)
    response.set_cookie(
        key=SESSION_COOKIE,
        value=runtime.codec.dumps(dict(session)),
        httponly=True,
        secure=secure,
        samesite="lax",
        max_age=SESSION_MAX_AGE,
    )


def gated(path: str, methods: tuple[str, ...], filters: tuple[str, ...]):
    """Register a handler whose requests run through the named filters."""

    def decorator(handler: Callable[[RequestContext], Any]):
        route = GatedRoute(path, tuple(m.upper() for m in methods), tuple(filters), handler)
        ROUTES.append(route)

        async def endpoint(request: Request):
            runtime = _runtime(request)
            session = runtime.codec.open(request.cookies.get(SESSION_COOKIE))
            ctx = context_from_request(request, session, await _read_form(request))
            ctx.state["runtime"] = runtime

            chain = runtime.chains[route.key]
            response = await run_in_threadpool(chain.dispatch, ctx, handler)
            _save_session(response, ctx, runtime)
            return response

        endpoint.__name__ = handler.__name__
        app.add_api_route(path, endpoint, methods=list(route.methods), include_in_schema=False)
        return handler

    return decorator


def _safe_redirect_target(target: str, default: str) -> str:
    # Only same-site relative paths; "//evil.com" and backslash tricks are rejected.
    if not target or not target.startswith("/") or target.startswith("//") or "\\" in target:
        return default
    return target


# ============================================================
# Exception handlers
# ============================================================

@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError):
    logger.error(f"Configuration error: {exc}")
    return JSONResponse(status_code=500, content={"detail": "Server misconfigured"})


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Unhandled handler exception (500). Security headers are still applied."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    response = JSONResponse(status_code=500, content={"detail": "Internal server error"})

    runtime = getattr(request.app.state, "runtime", None)
    if runtime is not None and "security-headers" in runtime.registry:
        ctx = context_from_request(request, Session())
        runtime.registry.get("security-headers").run_after(ctx, response)
    return response


# ============================================================
# Routes
# ============================================================

@app.get("/health")
def health():
    # Deliberately outside every filter chain (load balancer probes).
    return {"ok": True}


@gated("/", ("GET",), PUBLIC)
def home(ctx: RequestContext):
    return render_page("Home", "<p>Welcome.</p>")


@gated("/login", ("GET",), PUBLIC)
def login_form(ctx: RequestContext):
    redirect = parse_qs(ctx.query_string).get("redirect", [""])[0]
    return render_login(ctx.csrf_token or "", redirect=redirect)


@gated("/login", ("POST",), PUBLIC)
def login(ctx: RequestContext):
    runtime = _rt(ctx)
    username = ctx.form_value("username") or ""
    password = ctx.form_value("password") or ""
    redirect = ctx.form_value("redirect") or ""

    user = runtime.users.check_password(username, password)
    if user is None:
        logger.warning(f"Failed login for {username!r}")
        return HTMLResponse(
            render_login(ctx.csrf_token or "", redirect=redirect, error="Invalid username or password"),
            status_code=401,
        )

    SessionAuthentication(ctx.session, runtime.users).login(user)
    logger.info(f"User {user.username!r} logged in")
    return RedirectResponse(_safe_redirect_target(redirect, "/admin"), status_code=303)


@gated("/logout", ("POST",), ADMIN_FORM)
def logout(ctx: RequestContext):
    SessionAuthentication(ctx.session, _rt(ctx).users).logout()
    return RedirectResponse("/", status_code=303)


@gated("/admin", ("GET",), ADMIN)
def admin_dashboard(ctx: RequestContext):
    status = _rt(ctx).maintenance.get_status()
    if status is None:
        maintenance_html = "<p>Maintenance mode: off</p>"
    else:
        maintenance_html = (
            f"<p>Maintenance mode: on since {esc(status.enabled_at)} "
            f"(by {esc(status.enabled_by or 'unknown')})</p>"
        )
    return render_page("Dashboard", f"<p>Signed in as {esc(ctx.user.username)}</p>{maintenance_html}")


@gated("/admin/posts", ("GET",), ADMIN_FORM)
def admin_posts(ctx: RequestContext):
    return render_post_form(ctx.csrf_token or "", _rt(ctx).posts)


@gated("/admin/posts", ("POST",), ADMIN_FORM)
def admin_create_post(ctx: RequestContext):
    title = (ctx.form_value("title") or "").strip()
    if not title:
        return HTMLResponse(render_page("Posts", "<p>Title is required</p>"), status_code=422)
    _rt(ctx).posts.append(title)
    logger.info(f"Post created by user {ctx.user_id!r}: {title!r}")
    return RedirectResponse("/admin/posts", status_code=303)


@gated("/member", ("GET",), MEMBER)
def member_area(ctx: RequestContext):
    return render_page("Member Area", f"<p>Hello, {esc(ctx.user.username)}</p>")


@gated("/verify-email-required", ("GET",), ("maintenance", "security-headers"))
def verify_email_required(ctx: RequestContext):
    return render_page("Verify your email", "<p>Please verify your email address to continue.</p>")
