"""
Bot signature patterns — fetched remotely, cached per process.

The remote document is a JSON array. Each element is one of:
  - "Googlebot"                        → plain string
  - "/facebookexternalhit\\/1\\.1/i"   → delimited pattern with flags
  - {"pattern": "..."} / {"ua": "..."} → structured record
Anything else is skipped.

Each raw signature is compiled by trying, in order:
  1. delimited /body/flags
  2. the whole string as a regex
  3. the string as an escaped literal
Matching is always case-insensitive.

The store keeps the last good set. A failed refresh never empties it, and
concurrent cache misses share a single in-flight fetch.
"""

import asyncio
import concurrent.futures
import re
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable

import httpx
import structlog

logger = structlog.get_logger()

# Well-known crawlers, link-preview fetchers and HTTP libraries.
# Merged into every refresh so classification still works when the source is down.
BUILTIN_SIGNATURES: tuple[str, ...] = (
    r"Googlebot",
    r"bingbot",
    r"YandexBot",
    r"Baiduspider",
    r"DuckDuckBot",
    r"Slurp",
    r"Applebot",
    r"facebookexternalhit",
    r"Facebot",
    r"Twitterbot",
    r"LinkedInBot",
    r"Slackbot",
    r"TelegramBot",
    r"Discordbot",
    r"WhatsApp",
    r"SkypeUriPreview",
    r"Pinterest(bot)?",
    r"redditbot",
    r"vkShare",
    r"Embedly",
    r"curl/",
    r"wget/",
    r"python-requests",
    r"python-urllib",
    r"Go-http-client",
    r"HeadlessChrome",
    r"PhantomJS",
)

_JS_FLAG_MAP = {
    "i": re.IGNORECASE,
    "m": re.MULTILINE,
    "s": re.DOTALL,
    # global / sticky / unicode / indices have no bearing on a single search
    "g": 0,
    "y": 0,
    "u": 0,
    "d": 0,
}


class PatternSourceError(Exception):
    """The pattern source answered, but not with something we can use."""


@dataclass(frozen=True)
class PatternEntry:
    """A compiled UA matcher. Identity is (pattern, flags)."""

    pattern: str
    flags: int
    regex: re.Pattern = field(compare=False, hash=False, repr=False)

    @classmethod
    def build(cls, pattern: str, flags: int = 0) -> "PatternEntry":
        flags |= re.IGNORECASE
        return cls(pattern=pattern, flags=flags, regex=re.compile(pattern, flags))

    @property
    def key(self) -> tuple[str, int]:
        return (self.pattern, self.flags)

    def matches(self, text: str) -> bool:
        try:
            return self.regex.search(text) is not None
        except Exception:
            # A pathological pattern must never take classification down.
            return False


def _parse_delimited(raw: str) -> PatternEntry | None:
    if not raw.startswith("/"):
        return None
    last = raw.rfind("/")
    if last <= 0:
        return None
    body, flag_text = raw[1:last], raw[last + 1:]
    if not body:
        return None
    flags = 0
    for ch in flag_text:
        if ch not in _JS_FLAG_MAP:
            return None
        flags |= _JS_FLAG_MAP[ch]
    try:
        return PatternEntry.build(body, flags)
    except re.error:
        return None


def compile_signature(raw) -> PatternEntry | None:
    """Compile one raw signature string, or None if nothing usable comes out."""
    if not isinstance(raw, str) or not raw.strip():
        return None

    entry = _parse_delimited(raw)
    if entry is not None:
        return entry

    try:
        return PatternEntry.build(raw)
    except re.error:
        pass

    try:
        return PatternEntry.build(re.escape(raw))
    except re.error:
        return None


def _raw_signature(element) -> str | None:
    if isinstance(element, str):
        return element
    if isinstance(element, dict):
        for key in ("pattern", "ua"):
            value = element.get(key)
            if isinstance(value, str):
                return value
    return None


def parse_signatures(document) -> list[PatternEntry]:
    """Compile every usable element of a source document, in order, de-duplicated."""
    if not isinstance(document, list):
        raise PatternSourceError(f"expected a JSON array, got {type(document).__name__}")

    entries: dict[tuple[str, int], PatternEntry] = {}
    skipped = 0
    for element in document:
        entry = compile_signature(_raw_signature(element))
        if entry is None:
            skipped += 1
            continue
        entries.setdefault(entry.key, entry)

    if skipped:
        logger.info("pattern_entries_skipped", skipped=skipped, kept=len(entries))
    return list(entries.values())


def merge_entries(*groups: Iterable[PatternEntry]) -> frozenset[PatternEntry]:
    """Union by identity key. Earlier groups win on collisions."""
    merged: dict[tuple[str, int], PatternEntry] = {}
    for group in groups:
        for entry in group:
            merged.setdefault(entry.key, entry)
    return frozenset(merged.values())


def builtin_entries(signatures: Iterable[str] = BUILTIN_SIGNATURES) -> list[PatternEntry]:
    return [e for e in (compile_signature(s) for s in signatures) if e is not None]


class PatternSource:
    """HTTP GET of the remote signature document."""

    def __init__(
        self,
        url: str,
        timeout: float = 2.7,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url = url
        self.timeout = timeout
        self._transport = transport

    async def fetch(self) -> list:
        return await asyncio.wait_for(self._fetch(), timeout=self.timeout)

    async def _fetch(self) -> list:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            resp = await client.get(self.url)
        if resp.status_code != 200:
            raise PatternSourceError(f"pattern source returned {resp.status_code}")
        return resp.json()


class PatternStore:
    """
    Process-wide pattern cache.

    - Fresh (fetched within ``ttl``) → returned with zero I/O.
    - Stale → one caller refreshes, everyone else waits on the same future.
    - Refresh failure → previous entries and timestamp kept; no new attempt
      until ``retry_after`` has passed.
    """

    def __init__(
        self,
        source: PatternSource,
        ttl: float = 3600,
        retry_after: float = 60,
        builtins: Iterable[str] = BUILTIN_SIGNATURES,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._source = source
        self._ttl = ttl
        self._retry_after = retry_after
        self._clock = clock
        self._builtins = builtin_entries(builtins)

        self._lock = threading.Lock()
        self._entries: frozenset[PatternEntry] = frozenset(self._builtins)
        self._fetched_at: float | None = None
        self._failed_at: float | None = None
        self._in_flight: concurrent.futures.Future | None = None

    @property
    def entries(self) -> frozenset[PatternEntry]:
        return self._entries

    @property
    def fetched_at(self) -> float | None:
        return self._fetched_at

    def _is_fresh(self, now: float) -> bool:
        if self._fetched_at is not None and self._entries and now - self._fetched_at < self._ttl:
            return True
        # Recently failed: serve what we have until the retry window passes
        return self._failed_at is not None and now - self._failed_at < self._retry_after

    async def get_patterns(self) -> frozenset[PatternEntry]:
        now = self._clock()
        with self._lock:
            if self._is_fresh(now):
                return self._entries
            future = self._in_flight
            owner = future is None
            if owner:
                future = concurrent.futures.Future()
                self._in_flight = future

        if owner:
            try:
                await self.refresh()
            finally:
                with self._lock:
                    self._in_flight = None
                if not future.done():
                    future.set_result(None)
        else:
            # A cancelled waiter must not cancel the shared future
            await asyncio.shield(asyncio.wrap_future(future))

        return self._entries

    async def refresh(self) -> bool:
        """Fetch and replace the pattern set. Returns False on any failure."""
        started = self._clock()
        try:
            document = await self._source.fetch()
            remote = parse_signatures(document)
        except Exception as e:
            with self._lock:
                self._failed_at = self._clock()
            logger.warning("pattern_refresh_failed",
                           url=self._source.url,
                           error=str(e) or type(e).__name__,
                           kept=len(self._entries))
            return False

        merged = merge_entries(self._builtins, remote)
        with self._lock:
            self._entries = merged
            self._fetched_at = self._clock()
            self._failed_at = None

        logger.info("pattern_refresh_ok",
                    remote=len(remote),
                    total=len(merged),
                    elapsed_s=round(self._clock() - started, 3))
        return True
