"""Tests for the decision engine — priority order, caching, notifications."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from botgate.core.challenge import ChallengeIssuer
from botgate.core.classifier import classify
from botgate.core.decision import Action, DecisionEngine, is_ipv6
from botgate.core.headers import RequestContext
from botgate.core.notify import Notifier
from botgate.core.patterns import builtin_entries
from botgate.core.verdict_cache import VerdictCache

CHROME_UA = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) ... Chrome/120"
HEADLESS_UA = "Mozilla/5.0 (compatible)"
IP = "203.0.113.10"


class StaticStore:
    """Pattern store stand-in with a fixed, warm pattern set."""

    def __init__(self):
        self.patterns = frozenset(builtin_entries())
        self.calls = 0

    async def get_patterns(self):
        self.calls += 1
        return self.patterns


def make_engine(clock, notifier=None, classifier=classify, **kw):
    return DecisionEngine(
        StaticStore(),
        VerdictCache(clock=clock),
        ChallengeIssuer(cookie_name="bg_js", cookie_value="1"),
        notifier or AsyncMock(spec=Notifier),
        classifier=classifier,
        **kw,
    )


def ctx(headers, method="GET", path="/promo", ip=IP) -> RequestContext:
    return RequestContext.from_headers(headers, method=method, path=path, connecting_ip=ip)


def browser(**extra):
    headers = {
        "user-agent": CHROME_UA,
        "accept-language": "en-US,en;q=0.9",
        "sec-ch-ua": '"Chromium";v="120"',
    }
    headers.update(extra)
    return headers


class TestScenarios:
    @pytest.mark.asyncio
    async def test_known_bot_blocked(self, clock):
        engine = make_engine(clock)
        d = await engine.decide(ctx({"user-agent": "TelegramBot (like TwitterBot)"}))
        assert d.action is Action.BLOCK
        assert d.signals.known_bot is True
        assert d.reason.startswith("known_bot:")

    @pytest.mark.asyncio
    async def test_plain_browser_allowed(self, clock):
        engine = make_engine(clock)
        d = await engine.decide(ctx(browser()))
        assert d.action is Action.ALLOW
        assert d.signals.human_score >= engine.human_threshold
        v = engine.cache.lookup(IP)
        assert v.is_bot is False
        assert v.expires_at == clock.now + engine.human_ttl

    @pytest.mark.asyncio
    async def test_headless_challenged_then_allowed_with_cookie(self, clock):
        engine = make_engine(clock)

        first = await engine.decide(ctx({"user-agent": HEADLESS_UA}))
        assert first.action is Action.CHALLENGE
        assert first.challenge is not None
        assert 'var dest = "/promo"' in first.challenge.body
        pending = engine.cache.lookup(IP)
        assert pending.pending is True
        assert pending.is_bot is False

        cookie = f"{first.challenge.cookie_name}={first.challenge.cookie_value}"
        second = await engine.decide(ctx({"user-agent": HEADLESS_UA, "cookie": cookie}))
        assert second.action is Action.ALLOW
        assert second.reason == "challenge_passed"
        assert engine.cache.lookup(IP).pending is False

    @pytest.mark.asyncio
    async def test_empty_user_agent_blocked_regardless(self, clock):
        engine = make_engine(clock)
        headers = browser(**{"user-agent": "", "cookie": "bg_js=1"})
        d = await engine.decide(ctx(headers))
        assert d.action is Action.BLOCK
        assert d.reason == "empty_user_agent"
        assert engine.store.calls == 0

    @pytest.mark.asyncio
    async def test_cached_bot_ip_blocked_without_classify(self, clock):
        spy = MagicMock(side_effect=classify)
        engine = make_engine(clock, classifier=spy)
        engine.cache.store(IP, True, ttl=600)

        d = await engine.decide(ctx(browser()))

        assert d.action is Action.BLOCK
        assert d.reason == "cached_bot_verdict"
        spy.assert_not_called()

    @pytest.mark.asyncio
    async def test_bot_verdict_expires(self, clock):
        engine = make_engine(clock, bot_ttl=600)
        await engine.decide(ctx({"user-agent": "curl/8.4.0"}))
        clock.advance(601)
        d = await engine.decide(ctx(browser()))
        assert d.action is Action.ALLOW


class TestPriority:
    @pytest.mark.asyncio
    async def test_known_bot_with_full_browser_headers_passes_rule(self, clock):
        engine = make_engine(clock)
        headers = browser(**{"user-agent": CHROME_UA + " Slackbot", "accept": "text/html"})
        d = await engine.decide(ctx(headers))
        assert d.signals.known_bot is True
        assert d.action is Action.ALLOW

    @pytest.mark.asyncio
    async def test_preview_fetch_blocked(self, clock):
        engine = make_engine(clock)
        d = await engine.decide(ctx(browser(**{"sec-purpose": "prefetch"})))
        assert d.action is Action.BLOCK
        assert d.reason == "preview_fetch"

    @pytest.mark.asyncio
    async def test_fetch_dest_empty_blocked(self, clock):
        engine = make_engine(clock)
        d = await engine.decide(ctx(browser(**{"sec-fetch-dest": "empty"})))
        assert d.reason == "preview_fetch"

    @pytest.mark.asyncio
    async def test_head_without_referer_blocked(self, clock):
        engine = make_engine(clock)
        d = await engine.decide(ctx(browser(), method="HEAD"))
        assert d.action is Action.BLOCK
        assert d.reason == "head_without_referer"

    @pytest.mark.asyncio
    async def test_ipv6_rule_off_by_default(self, clock):
        engine = make_engine(clock)
        d = await engine.decide(ctx(browser(), ip="2001:db8::1"))
        assert d.action is Action.ALLOW

    @pytest.mark.asyncio
    async def test_ipv6_rule_enabled(self, clock):
        engine = make_engine(clock, block_ipv6=True)
        d = await engine.decide(ctx(browser(), ip="2001:db8::1"))
        assert d.action is Action.BLOCK
        assert d.reason == "ipv6_client"

    @pytest.mark.asyncio
    async def test_admin_marker_in_referer(self, clock):
        engine = make_engine(clock, block_markers=["AdsPower"])
        d = await engine.decide(ctx(browser(referer="https://adspower.local/profile")))
        assert d.action is Action.BLOCK
        assert d.reason == "marker:adspower"

    @pytest.mark.asyncio
    async def test_admin_marker_in_path(self, clock):
        engine = make_engine(clock, block_markers=["/wp-admin"])
        d = await engine.decide(ctx(browser(), path="/wp-admin/setup.php"))
        assert d.action is Action.BLOCK

    @pytest.mark.asyncio
    async def test_unsolved_challenge_inside_pending_window_blocked(self, clock):
        engine = make_engine(clock)
        await engine.decide(ctx({"user-agent": HEADLESS_UA}))
        d = await engine.decide(ctx({"user-agent": HEADLESS_UA}))
        assert d.action is Action.BLOCK
        assert d.reason == "challenge_not_solved"
        pending = engine.cache.lookup(IP)
        assert pending.pending is True
        assert pending.is_bot is False

    @pytest.mark.asyncio
    async def test_solved_challenge_allowed_inside_pending_window(self, clock):
        engine = make_engine(clock)
        await engine.decide(ctx({"user-agent": HEADLESS_UA}))
        await engine.decide(ctx({"user-agent": HEADLESS_UA}))
        d = await engine.decide(ctx({"user-agent": HEADLESS_UA, "cookie": "bg_js=1"}))
        assert d.action is Action.ALLOW
        assert d.reason == "challenge_passed"

    @pytest.mark.asyncio
    async def test_challenge_reissued_after_pending_window(self, clock):
        engine = make_engine(clock, pending_ttl=10)
        await engine.decide(ctx({"user-agent": HEADLESS_UA}))
        clock.advance(11)
        d = await engine.decide(ctx({"user-agent": HEADLESS_UA}))
        assert d.action is Action.CHALLENGE

    @pytest.mark.asyncio
    async def test_confirmed_human_not_rechallenged(self, clock):
        engine = make_engine(clock)
        await engine.decide(ctx(browser()))
        d = await engine.decide(ctx({"user-agent": HEADLESS_UA}))
        assert d.action is Action.ALLOW

    @pytest.mark.asyncio
    async def test_unknown_client_never_cached(self, clock):
        engine = make_engine(clock)
        unknown = ctx({"user-agent": HEADLESS_UA}, ip=None)
        assert unknown.client_ip == "unknown"
        for _ in range(2):
            d = await engine.decide(unknown)
            assert d.action is Action.CHALLENGE
        assert len(engine.cache) == 0


class TestNotifications:
    @pytest.mark.asyncio
    async def test_block_notifies(self, clock):
        notifier = AsyncMock(spec=Notifier)
        engine = make_engine(clock, notifier=notifier)
        await engine.decide(ctx({"user-agent": "curl/8.4.0", "referer": "https://t.me/x"},
                                method="POST"))
        await engine.drain()

        notifier.send.assert_awaited_once()
        text = notifier.send.await_args.args[0]
        assert "curl/8.4.0" in text
        assert IP in text
        assert "/promo" in text
        assert "https://t.me/x" in text
        assert "POST" in text

    @pytest.mark.asyncio
    async def test_challenge_notifies(self, clock):
        notifier = AsyncMock(spec=Notifier)
        engine = make_engine(clock, notifier=notifier)
        await engine.decide(ctx({"user-agent": HEADLESS_UA}))
        await engine.drain()
        assert "Challenge" in notifier.send.await_args.args[0]

    @pytest.mark.asyncio
    async def test_allow_does_not_notify(self, clock):
        notifier = AsyncMock(spec=Notifier)
        engine = make_engine(clock, notifier=notifier)
        await engine.decide(ctx(browser()))
        await engine.drain()
        notifier.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_slow_notifier_does_not_delay_decision(self, clock):
        started = asyncio.Event()

        class SlowNotifier(Notifier):
            async def send(self, text, domain=None):
                started.set()
                await asyncio.sleep(5)
                return True

        engine = make_engine(clock, notifier=SlowNotifier(), notify_timeout=0.05)
        d = await asyncio.wait_for(engine.decide(ctx({"user-agent": "curl/8.4.0"})), timeout=1)
        assert d.action is Action.BLOCK

        await engine.drain()
        assert started.is_set()

    @pytest.mark.asyncio
    async def test_failing_notifier_is_swallowed(self, clock):
        notifier = AsyncMock(spec=Notifier)
        notifier.send.side_effect = RuntimeError("sink down")
        engine = make_engine(clock, notifier=notifier)
        d = await engine.decide(ctx({"user-agent": "curl/8.4.0"}))
        await engine.drain()
        assert d.action is Action.BLOCK


@pytest.mark.parametrize("ip,expected", [
    ("2001:db8::1", True),
    ("203.0.113.1", False),
    ("unknown", False),
])
def test_is_ipv6(ip, expected):
    assert is_ipv6(ip) is expected
