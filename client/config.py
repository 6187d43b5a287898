"""
client/config.py -- Client-side settings via pydantic-settings.

Kept apart from core.config.Settings on purpose: the clients never need (and
must never hold) SECRET_KEY, and core Settings refuses to load without one in
production mode.

Environment variable mapping uses the SESSIONGATE_ prefix, e.g.
SESSIONGATE_API_URL, SESSIONGATE_LOCALE.

Mobile base URL selection mirrors how the app is run during development:
  android  -> the emulator's alias for the host loopback (10.0.2.2)
  ios      -> localhost (simulator shares the host network)
  physical -> a reachable LAN or production URL
"""

from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class ClientSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="SESSIONGATE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    api_url: str = "http://localhost:8000"
    api_url_android: str = "http://10.0.2.2:8000"
    api_url_ios: str = "http://localhost:8000"
    api_url_physical: str = "https://api.example.com"
    api_prefix: str = "/api/v1/auth"
    # Transport timeout; a timeout surfaces as network_unreachable, never a hang.
    request_timeout: float = 10.0
    locale: str = "es"
    dev: bool = True

    def mobile_api_url(self, platform: str) -> str:
        """Return the API base URL for a mobile platform ("android", "ios", ...)."""
        if not self.dev:
            return self.api_url_physical
        if platform == "android":
            return self.api_url_android
        return self.api_url_ios


@lru_cache
def get_client_settings() -> ClientSettings:
    return ClientSettings()
