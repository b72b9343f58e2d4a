"""
Bot gate middleware — runs the decision engine before any route.

  block     → 302 to the configured block URL
  challenge → JS proof page (+ server-side Set-Cookie fallback)
  allow     → 302 to the forward URL with ?s3=<domain>, or on to the app
"""

from urllib.parse import parse_qs, urlencode, urlparse, urlunparse

from fastapi import Request, Response
from fastapi.responses import HTMLResponse, RedirectResponse
from starlette.middleware.base import BaseHTTPMiddleware

from botgate.config import Settings, get_settings
from botgate.core.challenge import ChallengeIssuer
from botgate.core.decision import Action, DecisionEngine
from botgate.core.headers import RequestContext
from botgate.core.notify import build_notifier
from botgate.core.patterns import PatternSource, PatternStore
from botgate.core.verdict_cache import VerdictCache

import structlog

logger = structlog.get_logger()


def build_engine(settings: Settings) -> DecisionEngine:
    """Wire the process-wide engine from settings."""
    source = PatternSource(settings.pattern_source_url, timeout=settings.pattern_fetch_timeout)
    store = PatternStore(
        source,
        ttl=settings.pattern_ttl_seconds,
        retry_after=settings.pattern_retry_seconds,
    )
    issuer = ChallengeIssuer(
        cookie_name=settings.challenge_cookie_name,
        cookie_value=settings.challenge_cookie_value,
        max_age=settings.challenge_cookie_max_age,
        script_delay_ms=settings.challenge_script_delay_ms,
        refresh_seconds=settings.challenge_refresh_seconds,
    )
    return DecisionEngine(
        store,
        VerdictCache(),
        issuer,
        build_notifier(settings),
        human_threshold=settings.human_score_threshold,
        bot_ttl=settings.bot_verdict_ttl_seconds,
        pending_ttl=settings.pending_verdict_ttl_seconds,
        human_ttl=settings.human_verdict_ttl_seconds,
        block_ipv6=settings.block_ipv6,
        block_markers=settings.block_markers,
        notify_timeout=settings.notify_timeout,
    )


def build_forward_url(base: str, domain: str) -> str:
    """Append s3=<domain> to the forward URL, keeping its existing params."""
    parsed = urlparse(base)
    params = parse_qs(parsed.query, keep_blank_values=True)
    params["s3"] = [domain]
    return urlunparse(parsed._replace(query=urlencode(params, doseq=True)))


def context_from_request(request: Request, site_url: str = "") -> RequestContext:
    # Undecoded path so the challenge bounces back to the exact URL asked for
    raw_path = request.scope.get("raw_path")
    path = raw_path.split(b"?", 1)[0].decode("latin-1") if raw_path else request.url.path
    query = request.scope.get("query_string", b"").decode("latin-1")
    if query:
        path = f"{path}?{query}"
    return RequestContext.from_headers(
        request.headers,
        method=request.method,
        path=path,
        connecting_ip=request.client.host if request.client else None,
        site_url=site_url,
    )


class BotGateMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, engine: DecisionEngine | None = None, settings: Settings | None = None):
        super().__init__(app)
        self.settings = settings or get_settings()
        self.engine = engine or build_engine(self.settings)

    async def dispatch(self, request: Request, call_next):
        if request.url.path in self.settings.gate_exempt_paths:
            return await call_next(request)

        ctx = context_from_request(request, self.settings.site_url)
        decision = await self.engine.decide(ctx)

        if decision.action is Action.BLOCK:
            return RedirectResponse(url=self.settings.block_redirect_url, status_code=302)

        if decision.action is Action.CHALLENGE:
            page = decision.challenge
            response = HTMLResponse(content=page.body, headers=page.headers)
            response.set_cookie(
                key=page.cookie_name,
                value=page.cookie_value,
                max_age=page.cookie_max_age,
                path="/",
                samesite="lax",
            )
            return response

        if self.settings.forward_url:
            target = build_forward_url(self.settings.forward_url, ctx.domain)
            return RedirectResponse(url=target, status_code=302)

        response: Response = await call_next(request)
        return response
