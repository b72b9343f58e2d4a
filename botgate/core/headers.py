"""
Request view — one lookup contract over whatever the transport hands us.

Headers may arrive as a Starlette ``Headers`` object, a plain dict (with any
key casing), or raw ASGI ``(bytes, bytes)`` pairs. ``HeaderAccessor`` hides the
difference; a lookup that blows up or returns something odd is treated as a
missing header.

``RequestContext`` is the read-only snapshot every classifier function gets.
"""

from dataclasses import dataclass, field
from urllib.parse import urlparse

import structlog

logger = structlog.get_logger()

UNKNOWN_CLIENT = "unknown"
UNKNOWN_DOMAIN = "unknown-domain"


def _as_text(value) -> str | None:
    if isinstance(value, bytes):
        return value.decode("latin-1")
    if isinstance(value, str):
        return value
    return None


class HeaderAccessor:
    """Case-insensitive, never-raising header lookup."""

    def __init__(self, source):
        self._source = source

    def get(self, name: str) -> str | None:
        try:
            return self._lookup(name.lower())
        except Exception as e:
            logger.debug("header_access_failed", header=name, error=str(e))
            return None

    def _lookup(self, name: str) -> str | None:
        source = self._source
        if source is None:
            return None

        getter = getattr(source, "get", None)
        if callable(getter):
            value = _as_text(getter(name))
            if value is not None:
                return value
            if not hasattr(source, "items"):
                return None
            pairs = source.items()
        else:
            pairs = source

        # Plain mappings with mixed-case keys, or raw ASGI header pairs
        for key, value in pairs:
            key = _as_text(key)
            if key is not None and key.lower() == name:
                return _as_text(value)
        return None

    def cookies(self) -> dict[str, str]:
        return parse_cookie_header(self.get("cookie"))


def parse_cookie_header(raw: str | None) -> dict[str, str]:
    """Parse ``name=value; name2=value2``. First occurrence of a name wins."""
    cookies: dict[str, str] = {}
    if not raw:
        return cookies
    for chunk in raw.split(";"):
        name, sep, value = chunk.strip().partition("=")
        if not sep or not name:
            continue
        cookies.setdefault(name.strip(), value.strip())
    return cookies


def client_ip(headers: HeaderAccessor, connecting_ip: str | None = None) -> str:
    """First hop of x-forwarded-for, else the platform's connecting IP."""
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    platform_ip = headers.get("cf-connecting-ip") or headers.get("x-real-ip") or connecting_ip
    return platform_ip.strip() if platform_ip and platform_ip.strip() else UNKNOWN_CLIENT


def _hostname(url: str) -> str | None:
    try:
        return urlparse(url if "//" in url else f"http://{url}").hostname
    except ValueError:
        return None


def request_domain(headers: HeaderAccessor, site_url: str = "") -> str:
    """
    Best guess of the domain the request was addressed to.

    Order: x-forwarded-host, host, referer hostname, configured site URL.
    """
    host = headers.get("x-forwarded-host") or headers.get("host")
    if host:
        name = _hostname(host.split(",")[0].strip())
        if name:
            return name

    referer = headers.get("referer") or headers.get("referrer")
    if referer:
        name = _hostname(referer)
        if name:
            return name
        logger.warning("bad_referer_url", referer=referer[:200])

    if site_url:
        return _hostname(site_url) or site_url
    return UNKNOWN_DOMAIN


@dataclass(frozen=True)
class RequestContext:
    """Everything the classifier may look at, captured once per request."""

    user_agent: str = ""
    method: str = "GET"
    path: str = "/"  # path + query string
    client_ip: str = UNKNOWN_CLIENT
    referer: str | None = None
    domain: str = UNKNOWN_DOMAIN

    accept: str | None = None
    accept_language: str | None = None
    sec_ch_ua: str | None = None
    sec_fetch_site: str | None = None
    sec_fetch_dest: str | None = None
    purpose: str | None = None
    sec_purpose: str | None = None
    cookie: str | None = None

    cookies: dict[str, str] = field(default_factory=dict, compare=False, hash=False)

    @classmethod
    def from_headers(
        cls,
        headers,
        method: str = "GET",
        path: str = "/",
        connecting_ip: str | None = None,
        site_url: str = "",
    ) -> "RequestContext":
        if not isinstance(headers, HeaderAccessor):
            headers = HeaderAccessor(headers)
        cookie = headers.get("cookie")
        return cls(
            user_agent=(headers.get("user-agent") or "").strip(),
            method=(method or "GET").upper(),
            path=path or "/",
            client_ip=client_ip(headers, connecting_ip),
            referer=headers.get("referer") or headers.get("referrer"),
            domain=request_domain(headers, site_url),
            accept=headers.get("accept"),
            accept_language=headers.get("accept-language"),
            sec_ch_ua=headers.get("sec-ch-ua"),
            sec_fetch_site=headers.get("sec-fetch-site"),
            sec_fetch_dest=headers.get("sec-fetch-dest"),
            purpose=headers.get("purpose") or headers.get("x-purpose") or headers.get("x-moz"),
            sec_purpose=headers.get("sec-purpose"),
            cookie=cookie,
            cookies=parse_cookie_header(cookie),
        )
