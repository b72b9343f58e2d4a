"""
Botgate configuration.
All secrets/tunables come from environment variables.
"""

from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # --- App ---
    app_name: str = "Botgate"
    debug: bool = False
    site_url: str = ""  # deployment URL, reported in notifications

    # --- Pattern source ---
    pattern_source_url: str = (
        "https://raw.githubusercontent.com/arcjet/well-known-bots/main/well-known-bots.json"
    )
    pattern_ttl_seconds: int = 3600
    pattern_retry_seconds: int = 60  # back-off after a failed refresh
    pattern_fetch_timeout: float = 2.7

    # --- Classification ---
    human_score_threshold: int = 3
    block_ipv6: bool = False
    block_markers: list[str] = []  # e.g. ["/wp-admin", "phpmyadmin"]

    # --- Verdict cache ---
    bot_verdict_ttl_seconds: int = 600
    pending_verdict_ttl_seconds: int = 10
    human_verdict_ttl_seconds: int = 3600

    # --- Challenge ---
    challenge_cookie_name: str = "bg_js"
    challenge_cookie_value: str = "1"
    challenge_cookie_max_age: int = 86400 * 3  # 3 days
    challenge_script_delay_ms: int = 150
    challenge_refresh_seconds: int = 2

    # --- Notifications ---
    telegram_bot_token: str = ""
    telegram_chat_id: str = ""
    notify_relay_url: str = ""  # post to a relay function instead of Telegram
    notify_timeout: float = 2.7

    # --- Routing ---
    forward_url: str = ""  # empty = pass allowed requests through to the app
    block_redirect_url: str = "https://google.com"
    gate_exempt_paths: list[str] = ["/health", "/api/notify-telegram"]

    model_config = {"env_prefix": "BG_", "env_file": ".env"}


@lru_cache
def get_settings() -> Settings:
    return Settings()
