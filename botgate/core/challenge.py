"""
JS challenge — prove the client executes script, no server-side state.

Unchallenged request in the grey zone → tiny HTML page that:
  1. sets the challenge cookie from JS
  2. waits a beat so the cookie commits
  3. location.replace() back to the original URL
A <noscript> meta refresh covers clients without JS, and the same cookie is
also set server-side so a cookie-keeping client carries it next time anyway.

A request that arrives with the cookie is "challenged" and treated as human.
"""

import secrets
from dataclasses import dataclass, field

from botgate.core.headers import RequestContext


@dataclass
class ChallengePage:
    body: str
    cookie_name: str
    cookie_value: str
    cookie_max_age: int
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def set_cookie(self) -> str:
        return (f"{self.cookie_name}={self.cookie_value}; Path=/; "
                f"Max-Age={self.cookie_max_age}; SameSite=Lax")


class ChallengeIssuer:
    def __init__(
        self,
        cookie_name: str = "bg_js",
        cookie_value: str = "1",
        max_age: int = 86400 * 3,
        script_delay_ms: int = 150,
        refresh_seconds: int = 2,
    ):
        self.cookie_name = cookie_name
        self.cookie_value = cookie_value
        self.max_age = max_age
        self.script_delay_ms = script_delay_ms
        self.refresh_seconds = refresh_seconds

    def is_challenged(self, ctx: RequestContext) -> bool:
        return ctx.cookies.get(self.cookie_name) == self.cookie_value

    def issue(self, destination: str) -> ChallengePage:
        """Build the proof page that bounces back to ``destination``."""
        # Same-origin paths only
        if not destination.startswith("/") or destination[1:2] in ("/", "\\"):
            destination = "/"
        nonce = secrets.token_urlsafe(16)
        cookie_js = (f"{self.cookie_name}={self.cookie_value}; path=/; "
                     f"max-age={self.max_age}; samesite=lax")

        html = f"""<!DOCTYPE html>
<html>
<head>
<meta charset="utf-8">
<meta name="robots" content="noindex,nofollow">
<title>Redirecting…</title>
<noscript><meta http-equiv="refresh" content="{self.refresh_seconds};url={_html_escape(destination)}"></noscript>
</head>
<body>
<noscript>
<p>Redirecting… <a href="{_html_escape(destination)}">Click here</a> if not redirected.</p>
</noscript>
<script nonce="{nonce}">
(function() {{
  var dest = {_js_string(destination)};
  try {{ document.cookie = {_js_string(cookie_js)}; }} catch(e) {{}}
  setTimeout(function() {{ window.location.replace(dest); }}, {int(self.script_delay_ms)});
}})();
</script>
</body>
</html>"""

        return ChallengePage(
            body=html,
            cookie_name=self.cookie_name,
            cookie_value=self.cookie_value,
            cookie_max_age=self.max_age,
            headers={
                "Content-Security-Policy": f"default-src 'none'; script-src 'nonce-{nonce}'",
                "Cache-Control": "no-store, no-cache, must-revalidate, max-age=0",
                "X-Robots-Tag": "noindex, nofollow",
            },
        )


def _js_string(s: str) -> str:
    """Safely encode a string for inline JS."""
    return (
        '"'
        + s.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("\n", "\\n")
        .replace("\r", "\\r")
        .replace("<", "\\x3c")
        .replace(">", "\\x3e")
        + '"'
    )


def _html_escape(s: str) -> str:
    return s.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;").replace('"', "&quot;")
