"""
Heuristic classifier — pure function of (RequestContext, pattern set).

Produces:
  known_bot         UA matches a bot signature
  human_score       points for headers browsers send and scripts rarely do
  likely_human      score >= threshold OR a real browser engine token in the UA
  is_preview_fetch  prefetch / prerender / link-preview fetch
  suspicious_head   HEAD without a referer (uptime checks, crawlers)

Scoring, not a single boolean: a browser that drops one header still passes,
a client that sends none of them does not.
"""

import re
from dataclasses import dataclass
from typing import Iterable

from botgate.core.headers import RequestContext
from botgate.core.patterns import PatternEntry

HUMAN_SCORE_THRESHOLD = 3

# --- Header weights ---
SCORE_USER_AGENT = 1
SCORE_ACCEPT = 1
SCORE_ACCEPT_LANGUAGE = 1
SCORE_CLIENT_HINTS = 2  # sec-ch-ua: only Chromium-family browsers send it
SCORE_FETCH_SITE = 1
SCORE_COOKIE = 1

# Mozilla/5.0 prefix plus a rendering engine token. A bare "Mozilla/5.0
# (compatible; ...)" is what crawlers and headless scripts send.
_BROWSER_ENGINE = re.compile(
    r"^Mozilla/5\.0 \([^)]*\).*\b(AppleWebKit|Gecko|Trident|Presto)/",
    re.IGNORECASE,
)

_PREVIEW_PURPOSES = ("prefetch", "preview", "prerender")


@dataclass(frozen=True)
class Signals:
    known_bot: bool
    human_score: int
    likely_human: bool
    is_preview_fetch: bool
    suspicious_head: bool
    matched_pattern: str | None = None


def match_known_bot(user_agent: str, patterns: Iterable[PatternEntry]) -> PatternEntry | None:
    if not user_agent:
        return None
    for entry in patterns:
        if entry.matches(user_agent):
            return entry
    return None


def human_score(ctx: RequestContext) -> int:
    score = 0
    if ctx.user_agent:
        score += SCORE_USER_AGENT
    if ctx.accept:
        score += SCORE_ACCEPT
    if ctx.accept_language:
        score += SCORE_ACCEPT_LANGUAGE
    if ctx.sec_ch_ua:
        score += SCORE_CLIENT_HINTS
    if ctx.sec_fetch_site:
        score += SCORE_FETCH_SITE
    if ctx.cookie:
        score += SCORE_COOKIE
    return score


def is_browser_engine(user_agent: str) -> bool:
    return bool(user_agent) and _BROWSER_ENGINE.search(user_agent) is not None


def is_preview_fetch(ctx: RequestContext) -> bool:
    for hint in (ctx.purpose, ctx.sec_purpose):
        if hint and any(p in hint.lower() for p in _PREVIEW_PURPOSES):
            return True
    return (ctx.sec_fetch_dest or "").strip().lower() == "empty"


def is_suspicious_head(ctx: RequestContext) -> bool:
    return ctx.method == "HEAD" and not ctx.referer


def classify(
    ctx: RequestContext,
    patterns: Iterable[PatternEntry],
    threshold: int = HUMAN_SCORE_THRESHOLD,
) -> Signals:
    """Compute all signals for one request. Same input → same output."""
    matched = match_known_bot(ctx.user_agent, patterns)
    score = human_score(ctx)
    return Signals(
        known_bot=matched is not None,
        human_score=score,
        likely_human=score >= threshold or is_browser_engine(ctx.user_agent),
        is_preview_fetch=is_preview_fetch(ctx),
        suspicious_head=is_suspicious_head(ctx),
        matched_pattern=matched.pattern if matched else None,
    )
