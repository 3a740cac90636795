# pipeline.py
"""
Route filter pipeline.

A route carries an ordered list of filter names. At dispatch time the names
are looked up in a FilterRegistry and run as:

    f1.before, f2.before, ...   (stop at the first Terminal result)
    handler                      (only if nobody short-circuited)
    f1.after, f2.after, ...      (always, same order, headers only)

Filters never write to the socket or exit; they return CONTINUE or
Terminal(response) and the chain decides what happens next.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping, Optional, Union

from starlette.datastructures import Headers
from starlette.responses import HTMLResponse, JSONResponse, RedirectResponse, Response

from render import render_forbidden
from sessions import Session

logger = logging.getLogger(__name__)


# ============================================================
# Errors
# ============================================================

class ConfigurationError(RuntimeError):
    """Pipeline wired incorrectly (missing collaborator, unknown filter). Startup only."""


class GateError(Exception):
    """A filter refused the request. Converted to a terminal response, never escapes."""

    def to_response(self) -> Response:
        raise NotImplementedError


class UnauthenticatedError(GateError):
    def __init__(self, redirect_url: str, intended_url: str = ""):
        super().__init__(f"Authentication required, redirecting to {redirect_url}")
        self.redirect_url = redirect_url
        self.intended_url = intended_url

    def to_response(self) -> Response:
        return RedirectResponse(self.redirect_url, status_code=302)


class EmailVerificationRequiredError(GateError):
    def __init__(self, redirect_url: str, user_id: Any = None):
        super().__init__(f"Email verification required for user {user_id!r}")
        self.redirect_url = redirect_url
        self.user_id = user_id

    def to_response(self) -> Response:
        return RedirectResponse(self.redirect_url, status_code=302)


class ForbiddenError(GateError):
    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason

    def to_response(self) -> Response:
        return HTMLResponse(render_forbidden(self.reason), status_code=403)


class MaintenanceActive(GateError):
    def __init__(self, body: str, status_code: int = 200, retry_after: Optional[int] = None):
        super().__init__("Maintenance mode active")
        self.body = body
        self.status_code = status_code
        self.retry_after = retry_after

    def to_response(self) -> Response:
        response = HTMLResponse(self.body, status_code=self.status_code)
        if self.status_code == 503 and self.retry_after:
            response.headers["Retry-After"] = str(self.retry_after)
        return response


# ============================================================
# Request context / results
# ============================================================

@dataclass
class RequestContext:
    """
    Everything one request's filters and handler share.

    Created per request and passed explicitly; filters publish the
    authenticated user and CSRF token here instead of in a global.
    """

    method: str
    path: str
    session: Session
    query_string: str = ""
    headers: Mapping[str, str] = field(default_factory=dict)
    form: Mapping[str, Any] = field(default_factory=dict)
    peer: str = ""
    scheme: str = "http"

    client_ip: Optional[str] = None
    user: Any = None
    user_id: Any = None
    user_role: Optional[str] = None
    csrf_token: Optional[str] = None
    state: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.method = self.method.upper()
        if not isinstance(self.headers, Headers):
            self.headers = Headers(headers=dict(self.headers))

    @property
    def full_path(self) -> str:
        """Path plus query string, as the client requested it."""
        if self.query_string:
            return f"{self.path}?{self.query_string}"
        return self.path

    def header(self, name: str) -> Optional[str]:
        return self.headers.get(name)

    def form_value(self, name: str) -> Optional[str]:
        value = self.form.get(name)
        return value if isinstance(value, str) else None


class Continue:
    _instance: Optional["Continue"] = None

    def __new__(cls) -> "Continue":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "CONTINUE"


CONTINUE = Continue()


@dataclass(frozen=True)
class Terminal:
    response: Response


FilterResult = Union[Continue, Terminal]
PreHook = Callable[[RequestContext], Optional[Union[FilterResult, Response]]]
PostHook = Callable[[RequestContext, Response], None]
Handler = Callable[[RequestContext], Any]


# ============================================================
# Filter
# ============================================================

class Filter:
    """
    A named pre/post hook pair.

    Either pass `pre`/`post` callables or subclass and override
    `before()` / `after()`.
    """

    name: str = ""

    def __init__(self, name: Optional[str] = None, pre: Optional[PreHook] = None, post: Optional[PostHook] = None):
        self.name = name or self.name or type(self).__name__
        self._pre = pre
        self._post = post

    def before(self, ctx: RequestContext) -> Optional[Union[FilterResult, Response]]:
        if self._pre is None:
            return CONTINUE
        return self._pre(ctx)

    def after(self, ctx: RequestContext, response: Response) -> None:
        if self._post is not None:
            self._post(ctx, response)

    def run_before(self, ctx: RequestContext) -> FilterResult:
        try:
            result = self.before(ctx)
        except GateError as e:
            return Terminal(e.to_response())
        except Exception:
            # fail closed: a broken guard must not wave the request through
            logger.exception(f"Filter {self.name!r} failed in pre-hook on {ctx.path}")
            return Terminal(ForbiddenError("Request blocked").to_response())

        if result is None:
            return CONTINUE
        if isinstance(result, Response):
            return Terminal(result)
        return result

    def run_after(self, ctx: RequestContext, response: Response) -> None:
        try:
            self.after(ctx, response)
        except Exception:
            logger.exception(f"Filter {self.name!r} failed in post-hook on {ctx.path}")

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name!r}>"


class FilterRegistry:
    def __init__(self) -> None:
        self._filters: dict[str, Filter] = {}

    def register(self, flt: Filter, name: Optional[str] = None) -> Filter:
        key = name or flt.name
        if key in self._filters:
            raise ConfigurationError(f"Filter already registered: {key!r}")
        self._filters[key] = flt
        return flt

    def get(self, name: str) -> Filter:
        try:
            return self._filters[name]
        except KeyError:
            raise ConfigurationError(f"Unknown filter: {name!r}") from None

    def resolve(self, names: Iterable[str]) -> list[Filter]:
        return [self.get(n) for n in names]

    def names(self) -> list[str]:
        return list(self._filters)

    def __contains__(self, name: object) -> bool:
        return name in self._filters


def _as_response(result: Any) -> Response:
    if isinstance(result, Response):
        return result
    if isinstance(result, str):
        return HTMLResponse(result)
    return JSONResponse(result)


class FilterChain:
    """Ordered filter names for one route, resolved against the registry per dispatch."""

    def __init__(self, names: Iterable[str], registry: FilterRegistry):
        self.names = tuple(names)
        self.registry = registry
        # unknown names fail at route registration, not on the first request
        registry.resolve(self.names)

    def dispatch(self, ctx: RequestContext, handler: Handler) -> Response:
        filters = self.registry.resolve(self.names)

        response: Optional[Response] = None
        for flt in filters:
            result = flt.run_before(ctx)
            if isinstance(result, Terminal):
                ctx.state["terminated_by"] = flt.name
                response = result.response
                break

        if response is None:
            response = _as_response(handler(ctx))

        for flt in filters:
            flt.run_after(ctx, response)

        return response
