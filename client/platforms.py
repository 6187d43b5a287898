"""
client/platforms.py -- The two shipped Session Client flavors.

  WebSessionClient     dashboard in the browser. Success is silent (the page
                       itself changes), errors are toasts.
  MobileSessionClient  the mobile app. Success and error are both toasts,
                       shown at the top of the screen.

Both share every rule in client.session.SessionClient. They differ only in
storage keys and UI feedback, and each instance owns its own storage backend,
so the two never see each other's session.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import httpx

from client.config import ClientSettings, get_client_settings
from client.gateway import RequestGateway
from client.messages import Messages
from client.session import SessionClient
from client.storage import FileSessionStorage, SessionStorage
from client.ui import Navigator, Notifier

_DEFAULT_STATE_DIR = Path.home() / ".sessiongate"


class WebSessionClient(SessionClient):
    platform = "web"
    user_key = "auth-storage"
    credential_key = "access_token"
    landing_path = "/dashboard"
    verify_pending_path = "/identity/email_verification"
    notify_success = False


class MobileSessionClient(SessionClient):
    platform = "mobile"
    user_key = "authUser"
    credential_key = "authToken"
    landing_path = "/home"
    verify_pending_path = "/auth/verify-email"
    notify_success = True
    toast_position = "top"


def create_web_client(
    settings: Optional[ClientSettings] = None,
    storage: Optional[SessionStorage] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    notifier: Optional[Notifier] = None,
    navigator: Optional[Navigator] = None,
) -> WebSessionClient:
    settings = settings or get_client_settings()
    gateway = RequestGateway(
        settings.api_url,
        api_prefix=settings.api_prefix,
        timeout=settings.request_timeout,
        transport=transport,
    )
    return WebSessionClient(
        gateway,
        storage=storage or FileSessionStorage(_DEFAULT_STATE_DIR / "web-session.json"),
        notifier=notifier,
        navigator=navigator,
        messages=Messages(settings.locale),
    )


def create_mobile_client(
    platform: str = "android",
    settings: Optional[ClientSettings] = None,
    storage: Optional[SessionStorage] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    notifier: Optional[Notifier] = None,
    navigator: Optional[Navigator] = None,
) -> MobileSessionClient:
    settings = settings or get_client_settings()
    gateway = RequestGateway(
        settings.mobile_api_url(platform),
        api_prefix=settings.api_prefix,
        timeout=settings.request_timeout,
        transport=transport,
    )
    return MobileSessionClient(
        gateway,
        storage=storage or FileSessionStorage(_DEFAULT_STATE_DIR / "mobile-session.json"),
        notifier=notifier or Notifier(position=MobileSessionClient.toast_position),
        navigator=navigator,
        messages=Messages(settings.locale),
    )
