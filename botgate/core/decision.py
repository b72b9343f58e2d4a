"""
Decision engine — one request in, one action out.

Rules, first match wins:
  1. empty user-agent                                  → block
  2. cached bot verdict for this client                → block (no classify)
  3. known bot signature and human score too low       → block
  4. preview/prefetch fetch, HEAD without referer,
     optional IPv6 / admin-marker rules                → block
  5. not human-presenting, no challenge cookie         → challenge
     (already pending for this client                  → block)
  6. everything else                                   → allow

Rules 2-4 all block, so the cache check runs before the classifier without
changing any outcome.

Every block/challenge fires a notification task that is never awaited here.
"""

import asyncio
import ipaddress
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable

import structlog

from botgate.core.challenge import ChallengeIssuer, ChallengePage
from botgate.core.classifier import HUMAN_SCORE_THRESHOLD, Signals, classify
from botgate.core.headers import RequestContext
from botgate.core.notify import Notifier, summarize_request
from botgate.core.patterns import PatternStore
from botgate.core.verdict_cache import VerdictCache

logger = structlog.get_logger()


class Action(str, Enum):
    BLOCK = "block"
    CHALLENGE = "challenge"
    ALLOW = "allow"


@dataclass
class Decision:
    action: Action
    reason: str
    signals: Signals | None = None
    challenge: ChallengePage | None = None


def is_ipv6(ip: str) -> bool:
    try:
        return ipaddress.ip_address(ip).version == 6
    except ValueError:
        return False


class DecisionEngine:
    def __init__(
        self,
        store: PatternStore,
        cache: VerdictCache,
        issuer: ChallengeIssuer,
        notifier: Notifier | None = None,
        *,
        human_threshold: int = HUMAN_SCORE_THRESHOLD,
        bot_ttl: float = 600,
        pending_ttl: float = 10,
        human_ttl: float = 3600,
        block_ipv6: bool = False,
        block_markers: Iterable[str] = (),
        notify_timeout: float = 2.7,
        classifier: Callable[..., Signals] = classify,
    ):
        self.store = store
        self.cache = cache
        self.issuer = issuer
        self.notifier = notifier or Notifier()
        self.human_threshold = human_threshold
        self.bot_ttl = bot_ttl
        self.pending_ttl = pending_ttl
        self.human_ttl = human_ttl
        self.block_ipv6 = block_ipv6
        self.block_markers = tuple(m.lower() for m in block_markers if m)
        self.notify_timeout = notify_timeout
        self._classify = classifier
        self._pending_notifications: set[asyncio.Task] = set()

    async def decide(self, ctx: RequestContext) -> Decision:
        decision = await self._evaluate(ctx)

        if decision.action is Action.BLOCK:
            logger.warning("request_blocked", reason=decision.reason, ip=ctx.client_ip,
                           path=ctx.path, ua=ctx.user_agent[:200])
            self.emit(ctx, f"🚨 Blocked ({decision.reason})")
        elif decision.action is Action.CHALLENGE:
            logger.info("challenge_issued", ip=ctx.client_ip, path=ctx.path,
                        score=decision.signals.human_score if decision.signals else None)
            self.emit(ctx, "⚠️ Challenge issued")
        else:
            logger.debug("request_allowed", reason=decision.reason, ip=ctx.client_ip)

        return decision

    async def _evaluate(self, ctx: RequestContext) -> Decision:
        key = ctx.client_ip

        # 1. No UA at all
        if not ctx.user_agent:
            self.cache.store(key, True, self.bot_ttl)
            return Decision(Action.BLOCK, "empty_user_agent")

        # 2. Known bot client, remembered
        cached = self.cache.lookup(key)
        if cached is not None and cached.is_bot:
            return Decision(Action.BLOCK, "cached_bot_verdict")

        patterns = await self.store.get_patterns()
        signals = self._classify(ctx, patterns, self.human_threshold)

        # 3. Signature match without enough browser evidence
        if signals.known_bot and signals.human_score < self.human_threshold:
            self.cache.store(key, True, self.bot_ttl)
            return Decision(Action.BLOCK, f"known_bot:{signals.matched_pattern}", signals)

        # 4. Automated fetch shapes
        reason = self._automation_reason(ctx, signals)
        if reason:
            self.cache.store(key, True, self.bot_ttl)
            return Decision(Action.BLOCK, reason, signals)

        # 5. Grey zone → JS proof
        challenged = self.issuer.is_challenged(ctx)
        if not signals.likely_human and not challenged:
            if cached is not None and cached.pending:
                # Came back inside the pending window without the proof.
                # This request only; the pending verdict is left to expire.
                return Decision(Action.BLOCK, "challenge_not_solved", signals)
            if cached is None:
                self.cache.store(key, False, self.pending_ttl, pending=True)
                return Decision(Action.CHALLENGE, "inconclusive", signals,
                                challenge=self.issuer.issue(ctx.path))

        # 6. Human-presenting (or a confirmed human client)
        self.cache.store(key, False, self.human_ttl)
        return Decision(Action.ALLOW, "challenge_passed" if challenged else "human", signals)

    def _automation_reason(self, ctx: RequestContext, signals: Signals) -> str | None:
        if signals.is_preview_fetch:
            return "preview_fetch"
        if signals.suspicious_head:
            return "head_without_referer"
        if self.block_ipv6 and is_ipv6(ctx.client_ip):
            return "ipv6_client"
        if self.block_markers:
            haystacks = [ctx.path.lower(), (ctx.referer or "").lower()]
            for marker in self.block_markers:
                if any(marker in h for h in haystacks):
                    return f"marker:{marker}"
        return None

    def emit(self, ctx: RequestContext, title: str) -> asyncio.Task:
        """Schedule a notification. The caller never waits for it."""
        text = summarize_request(ctx, title)
        task = asyncio.create_task(self._notify(text, ctx.domain))
        self._pending_notifications.add(task)
        task.add_done_callback(self._pending_notifications.discard)
        return task

    async def _notify(self, text: str, domain: str) -> None:
        try:
            await asyncio.wait_for(self.notifier.send(text, domain), timeout=self.notify_timeout)
        except asyncio.TimeoutError:
            logger.warning("notify_timeout", timeout=self.notify_timeout)
        except Exception as e:
            logger.warning("notify_failed", error=str(e) or type(e).__name__)

    async def drain(self) -> None:
        """Wait for in-flight notifications (shutdown and tests)."""
        if self._pending_notifications:
            await asyncio.gather(*self._pending_notifications, return_exceptions=True)
