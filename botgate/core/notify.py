"""
Operator notifications — best effort, never on the response path.

Two sinks:
  - TelegramNotifier: POST straight to the Bot API sendMessage
  - RelayNotifier:    POST {text, mainDomain} to a relay function that holds
                      the credentials (see botgate/api/notify.py)
Both swallow every delivery error after logging it.
"""

import httpx
import structlog
from user_agents import parse as parse_ua

from botgate.core.headers import RequestContext

logger = structlog.get_logger()

TELEGRAM_API = "https://api.telegram.org"


class Notifier:
    """No-op sink. Subclasses deliver somewhere."""

    async def send(self, text: str, domain: str | None = None) -> bool:
        return False


class TelegramNotifier(Notifier):
    def __init__(
        self,
        token: str,
        chat_id: str,
        timeout: float = 2.7,
        site_url: str = "",
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.token = token
        self.chat_id = chat_id
        self.timeout = timeout
        self.site_url = site_url
        self._transport = transport

    async def send(self, text: str, domain: str | None = None) -> bool:
        if not self.token or not self.chat_id:
            logger.warning("notify_skipped", reason="telegram token/chat not set")
            return False

        header = f"🌐 main: {domain or 'unknown-domain'}"
        if self.site_url:
            header += f" / {self.site_url}"

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(
                    f"{TELEGRAM_API}/bot{self.token}/sendMessage",
                    json={"chat_id": self.chat_id, "text": f"{header}\n{text}"},
                )
        except httpx.HTTPError as e:
            logger.warning("notify_failed", sink="telegram", error=str(e) or type(e).__name__)
            return False

        if resp.status_code != 200:
            logger.warning("notify_failed", sink="telegram", status=resp.status_code)
            return False
        return True


class RelayNotifier(Notifier):
    def __init__(
        self,
        url: str,
        timeout: float = 2.7,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url = url
        self.timeout = timeout
        self._transport = transport

    async def send(self, text: str, domain: str | None = None) -> bool:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(
                    self.url,
                    json={"text": text, "mainDomain": domain or "unknown-domain"},
                )
        except httpx.HTTPError as e:
            logger.warning("notify_failed", sink="relay", error=str(e) or type(e).__name__)
            return False

        if resp.status_code != 200:
            logger.warning("notify_failed", sink="relay", status=resp.status_code)
            return False
        return True


def build_notifier(settings) -> Notifier:
    if settings.notify_relay_url:
        return RelayNotifier(settings.notify_relay_url, timeout=settings.notify_timeout)
    if settings.telegram_bot_token and settings.telegram_chat_id:
        return TelegramNotifier(
            settings.telegram_bot_token,
            settings.telegram_chat_id,
            timeout=settings.notify_timeout,
            site_url=settings.site_url,
        )
    return Notifier()


def describe_client(user_agent: str) -> str:
    if not user_agent:
        return "none"
    parsed = parse_ua(user_agent)
    browser = f"{parsed.browser.family} {parsed.browser.version_string}".strip()
    return f"{browser} / {parsed.os.family}"


def summarize_request(ctx: RequestContext, title: str) -> str:
    """Plain-text summary for the operator chat."""
    return "\n".join([
        title,
        f"UA: {ctx.user_agent or '(empty)'}",
        f"Client: {describe_client(ctx.user_agent)}",
        f"IP: {ctx.client_ip}",
        f"Method: {ctx.method}",
        f"URL: {ctx.path}",
        f"Referer: {ctx.referer or '-'}",
    ])
