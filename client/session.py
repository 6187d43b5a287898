"""
client/session.py -- Session Client: the per-platform session state machine.

One SessionClient instance per running client. It owns a Session record
(current user, bearer credential, loading flags, last error), persists the user
and the credential to SessionStorage, and drives every auth operation through
the Request Gateway.

States:
  ANONYMOUS       no trusted session
  AUTHENTICATING  register / login in flight
  AUTHENTICATED   credential confirmed by a successful fetch_profile()
  VERIFYING       resend / verify in flight
  RESETTING       reset request / confirm in flight

ANONYMOUS and AUTHENTICATED are the durable states; the other three only last
for one request. A failure never becomes a state of its own: it is recorded as
session.last_error and the session returns to its durable state.

Rules enforced here:
  - One operation in flight per instance. A second call raises
    OperationInProgress immediately (rejected, not queued).
  - A credential restored from storage is untrusted until fetch_profile()
    succeeds; until then is_authenticated stays False.
  - Credential absent => current user absent.
  - logout() and teardown() clear storage and the gateway credential whether
    or not the server could be reached.
  - Verify and reset operations capture a flow number when they start. If the
    UI abandons the flow (abandon_flow()) or the session is torn down before
    the response arrives, the late response is dropped.
  - Screens only ever see client.messages text, never backend message text.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from client.gateway import ApiError, RequestGateway
from client.messages import Messages
from client.storage import MemorySessionStorage, SessionStorage
from client.ui import Navigator, Notifier
from core.errors import ErrorKind

logger = logging.getLogger("sessiongate.client.session")


class SessionState(str, Enum):
    ANONYMOUS = "anonymous"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    VERIFYING = "verifying"
    RESETTING = "resetting"


@dataclass(frozen=True)
class SessionUser:
    """The slice of an account a client keeps. Never holds a secret."""

    id: int
    email: str
    username: str
    full_name: str
    roles: tuple[str, ...]
    verified: bool

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "SessionUser":
        return cls(
            id=int(data["id"]),
            email=str(data["email"]),
            username=str(data["username"]),
            full_name=str(data.get("full_name", "")),
            roles=tuple(data.get("roles") or ()),
            verified=bool(data.get("verified", False)),
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "username": self.username,
            "full_name": self.full_name,
            "roles": list(self.roles),
            "verified": self.verified,
        }


@dataclass
class OperationError:
    """A failed operation, already translated for the screen."""

    operation: str
    kind: ErrorKind
    message: str
    fields: dict[str, str] = field(default_factory=dict)

    @property
    def retryable(self) -> bool:
        return self.kind.retryable


@dataclass
class Session:
    state: SessionState = SessionState.ANONYMOUS
    current_user: Optional[SessionUser] = None
    credential: Optional[str] = None
    authenticating: bool = False
    loading_profile: bool = False
    last_error: Optional[OperationError] = None
    # True only once fetch_profile() has confirmed the credential.
    profile_confirmed: bool = False

    @property
    def is_authenticated(self) -> bool:
        return (
            self.state is SessionState.AUTHENTICATED
            and self.credential is not None
            and self.current_user is not None
            and self.profile_confirmed
        )

    @property
    def roles(self) -> tuple[str, ...]:
        return self.current_user.roles if self.current_user else ()


class OperationInProgress(RuntimeError):
    """Raised when an operation starts while another one is still in flight."""

    def __init__(self, running: str, requested: str, message: str = "") -> None:
        self.running = running
        self.requested = requested
        # Localized text a screen may show; the client does not toast it.
        self.message = message
        super().__init__(f"{requested} rejected: {running} is still in flight")


class SessionError(Exception):
    """An operation failed; `error` holds the localized OperationError."""

    def __init__(self, error: OperationError) -> None:
        self.error = error
        super().__init__(f"{error.operation}: {error.kind.value}")

    @property
    def kind(self) -> ErrorKind:
        return self.error.kind


class SessionClient:
    """Session state machine bound to one gateway, one storage and one UI."""

    platform = "generic"
    user_key = "session-user"
    credential_key = "session-credential"
    sign_in_path = "/auth/signin"
    landing_path = "/dashboard"
    verify_pending_path = "/auth/verify-email"
    # Whether successful operations show a toast (errors always do).
    notify_success = False
    toast_position: Optional[str] = None

    def __init__(
        self,
        gateway: RequestGateway,
        storage: Optional[SessionStorage] = None,
        notifier: Optional[Notifier] = None,
        navigator: Optional[Navigator] = None,
        messages: Optional[Messages] = None,
    ) -> None:
        self.gateway = gateway
        self.storage = storage if storage is not None else MemorySessionStorage()
        self.notifier = notifier if notifier is not None else Notifier(position=self.toast_position)
        self.navigator = navigator if navigator is not None else Navigator()
        self.messages = messages if messages is not None else Messages()
        self.session = Session()
        self._in_flight: Optional[str] = None
        self._flow = 0
        self._torn_down = False
        gateway.on_rejected_credential(self._on_credential_rejected)

    @property
    def is_loading(self) -> bool:
        return self._in_flight is not None

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    async def start(self) -> Session:
        """Restore a persisted session and validate it against the server."""
        credential = self.storage.get(self.credential_key)
        raw_user = self.storage.get(self.user_key)
        if not credential:
            if raw_user is not None:
                self.storage.remove(self.user_key)
            self.session = Session()
            return self.session

        self.session = Session(
            credential=credential,
            current_user=self._decode_user(raw_user),
            profile_confirmed=False,
        )
        self.gateway.set_credential(credential)
        self._torn_down = False
        logger.info("[%s] restored credential; validating", self.platform)
        await self.fetch_profile()
        return self.session

    async def teardown(self, reason: str = "expired") -> bool:
        """Forcefully end the session. Returns False if it was already torn down.

        Emits one notification and one redirect to the sign-in view.
        """
        if self._torn_down:
            return False
        self._torn_down = True
        self._flow += 1
        self._clear_session()
        logger.info("[%s] session torn down (%s)", self.platform, reason)
        self.notifier.error(self.messages.get("session.expired"))
        self.navigator.navigate(self.sign_in_path, replace=True)
        return True

    def abandon_flow(self) -> None:
        """Called by the UI when leaving a verify or reset view."""
        self._flow += 1

    async def _on_credential_rejected(self) -> None:
        if self._in_flight == "login":
            # login() clears the half-attached credential and reports the failure itself.
            return
        await self.teardown("credential rejected")

    # -----------------------------------------------------------------------
    # Registration and login
    # -----------------------------------------------------------------------

    async def register(
        self,
        email: str,
        username: str,
        full_name: str,
        secret: str,
        secret_confirm: str,
    ) -> str:
        """Create an unverified account. Never signs in."""
        self._begin("register", SessionState.AUTHENTICATING)
        self.session.authenticating = True
        try:
            await self.gateway.post(
                "/register",
                {
                    "email": email,
                    "username": username,
                    "full_name": full_name,
                    "secret": secret,
                    "secret_confirm": secret_confirm,
                },
            )
        except ApiError as e:
            raise self._fail_now("register", e) from e
        finally:
            self.session.authenticating = False
            self._end()

        message = self.messages.get("register.success")
        if self.notify_success:
            self.notifier.success(message)
        self.navigator.navigate(self.verify_pending_path)
        return message

    async def login(self, email: str, secret: str) -> SessionUser:
        """Exchange email + secret for a credential, then confirm it via fetch_profile."""
        self._begin("login", SessionState.AUTHENTICATING)
        self.session.authenticating = True
        try:
            data = await self.gateway.post("/login", {"email": email, "secret": secret})
            credential = data.get("credential")
            if not credential:
                raise ApiError(ErrorKind.SERVER_ERROR, status=200, message="login response carried no credential")
            self._attach_credential(credential)
            user = await self._load_profile()
        except ApiError as e:
            self._clear_session()
            raise self._fail_now("login", e) from e
        finally:
            self.session.authenticating = False
            self._end()

        logger.info("[%s] signed in as account %d", self.platform, user.id)
        if self.notify_success:
            self.notifier.success(self.messages.get("login.success"))
        return user

    async def fetch_profile(self) -> Optional[SessionUser]:
        """Hydrate the current user from /me. Any failure clears the session."""
        if self.session.credential is None:
            self._clear_session()
            return None
        self._begin("fetch_profile", self.session.state)
        try:
            return await self._load_profile()
        except ApiError as e:
            logger.info("[%s] profile fetch failed (%s); clearing session", self.platform, e.kind.value)
            self._clear_session()
            self.session.last_error = self._operation_error("fetch_profile", e)
            if e.kind.retryable:
                self.notifier.error(self.session.last_error.message)
            return None
        finally:
            self._end()

    async def logout(self) -> None:
        """Sign out. The local session is cleared even if the server is unreachable."""
        self._begin("logout", self.session.state)
        reached_server = True
        try:
            await self.gateway.post("/logout")
        except ApiError as e:
            reached_server = False
            logger.warning("[%s] logout call failed (%s); clearing local session anyway", self.platform, e.kind.value)
        finally:
            self._flow += 1
            self._clear_session()
            self._end()

        if not reached_server and self.notify_success:
            self.notifier.error(self.messages.get("logout.failed"))
        elif self.notify_success:
            self.notifier.success(self.messages.get("logout.success"))
        self.navigator.navigate(self.sign_in_path, replace=True)

    # -----------------------------------------------------------------------
    # Verification
    # -----------------------------------------------------------------------

    async def resend_verification(self, email: str) -> Optional[str]:
        """Ask for a new verification link. Returns the generic confirmation text."""
        flow = self._begin("resend_verification", SessionState.VERIFYING)
        try:
            await self.gateway.post("/verify/resend", {"email": email})
        except ApiError as e:
            opaque = not (e.kind is ErrorKind.RATE_LIMITED or e.kind is ErrorKind.VALIDATION or e.kind.retryable)
            error = self._fail("resend_verification", e, flow, "resend.not_eligible" if opaque else None)
            if error is None:
                return None
            raise error from e
        finally:
            self._end()

        if flow != self._flow:
            return None
        message = self.messages.get("resend.sent")
        if self.notify_success:
            self.notifier.success(message)
        return message

    async def verify_email(self, token: str) -> Optional[str]:
        """Consume a verification token from an emailed link.

        Returns None when the flow was abandoned before the response arrived.
        """
        flow = self._begin("verify_email", SessionState.VERIFYING)
        try:
            await self.gateway.post("/verify/confirm", {"token": token})
        except ApiError as e:
            error = self._fail("verify_email", e, flow)
            if error is None:
                return None
            raise error from e
        finally:
            self._end()

        if flow != self._flow:
            logger.info("[%s] ignoring late verify response", self.platform)
            return None
        message = self.messages.get("verify.success")
        if self.notify_success:
            self.notifier.success(message)
        self.navigator.navigate(self.sign_in_path)
        return message

    # -----------------------------------------------------------------------
    # Password reset
    # -----------------------------------------------------------------------

    async def request_reset(self, email: str) -> Optional[str]:
        """Ask for a reset link. The outcome text never depends on the email.

        Only failures that never reached a server decision (network, 5xx) are
        reported, since the user has to retry those.
        """
        flow = self._begin("request_reset", SessionState.RESETTING)
        try:
            await self.gateway.post("/reset/request", {"email": email})
        except ApiError as e:
            if e.kind.retryable:
                error = self._fail("request_reset", e, flow)
                if error is None:
                    return None
                raise error from e
            logger.info("[%s] reset request answered with %s; reporting generic outcome", self.platform, e.kind.value)
        finally:
            self._end()

        if flow != self._flow:
            return None
        message = self.messages.get("reset.requested")
        if self.notify_success:
            self.notifier.success(message)
        return message

    async def confirm_reset(self, token: str, secret: str, confirmation: str) -> Optional[str]:
        """Set a new secret with a reset token."""
        flow = self._begin("confirm_reset", SessionState.RESETTING)
        try:
            await self.gateway.post(
                "/reset/confirm",
                {"token": token, "secret": secret, "secret_confirm": confirmation},
            )
        except ApiError as e:
            key = "reset.invalid_secret" if e.kind is ErrorKind.VALIDATION else None
            error = self._fail("confirm_reset", e, flow, key)
            if error is None:
                return None
            raise error from e
        finally:
            self._end()

        if flow != self._flow:
            logger.info("[%s] ignoring late reset response", self.platform)
            return None
        message = self.messages.get("reset.success")
        if self.notify_success:
            self.notifier.success(message)
        self.navigator.navigate(self.sign_in_path)
        return message

    # -----------------------------------------------------------------------
    # Internals
    # -----------------------------------------------------------------------

    def _begin(self, operation: str, state: SessionState) -> int:
        if self._in_flight is not None:
            raise OperationInProgress(self._in_flight, operation, self.messages.get("operation.in_progress"))
        self._in_flight = operation
        self.session.last_error = None
        self.session.state = state
        return self._flow

    def _end(self) -> None:
        self._in_flight = None
        self.session.state = self._durable_state()

    def _durable_state(self) -> SessionState:
        if self.session.credential and self.session.current_user and self.session.profile_confirmed:
            return SessionState.AUTHENTICATED
        return SessionState.ANONYMOUS

    async def _load_profile(self) -> SessionUser:
        self.session.loading_profile = True
        try:
            data = await self.gateway.get("/me")
        finally:
            self.session.loading_profile = False
        try:
            user = SessionUser.from_payload(data["user"])
        except (KeyError, TypeError, ValueError) as e:
            raise ApiError(ErrorKind.SERVER_ERROR, status=200, message="malformed profile payload") from e
        self.session.current_user = user
        self.session.profile_confirmed = True
        self.storage.set(self.user_key, json.dumps({"user": user.to_payload()}))
        return user

    def _attach_credential(self, credential: str) -> None:
        self.session.credential = credential
        self.session.profile_confirmed = False
        self.gateway.set_credential(credential)
        self.storage.set(self.credential_key, credential)
        self._torn_down = False

    def _clear_session(self) -> None:
        self.session.credential = None
        self.session.current_user = None
        self.session.profile_confirmed = False
        self.session.state = SessionState.ANONYMOUS
        self.gateway.clear_credential()
        self.storage.remove(self.credential_key)
        self.storage.remove(self.user_key)

    def _decode_user(self, raw: Optional[str]) -> Optional[SessionUser]:
        if not raw:
            return None
        try:
            return SessionUser.from_payload(json.loads(raw)["user"])
        except (KeyError, TypeError, ValueError):
            logger.warning("[%s] discarding unreadable persisted user", self.platform)
            return None

    def _operation_error(self, operation: str, error: ApiError, message_key: Optional[str] = None) -> OperationError:
        fields: dict[str, str] = {}
        if error.kind is ErrorKind.VALIDATION:
            for name in error.fields:
                fields[name] = self.messages.for_field(name, error.reason)
        if message_key:
            message = self.messages.get(message_key)
        elif fields:
            message = next(iter(fields.values()))
        else:
            message = self.messages.for_kind(error.kind)
        return OperationError(operation=operation, kind=error.kind, message=message, fields=fields)

    def _fail(
        self,
        operation: str,
        error: ApiError,
        flow: int,
        message_key: Optional[str] = None,
    ) -> Optional[SessionError]:
        """Record a failure. Returns None when the flow was superseded meanwhile."""
        if flow != self._flow:
            logger.info("[%s] dropping late %s failure (%s)", self.platform, operation, error.kind.value)
            return None
        op_error = self._operation_error(operation, error, message_key)
        self.session.last_error = op_error
        self.notifier.error(op_error.message)
        return SessionError(op_error)

    def _fail_now(self, operation: str, error: ApiError) -> SessionError:
        op_error = self._operation_error(operation, error)
        self.session.last_error = op_error
        self.notifier.error(op_error.message)
        return SessionError(op_error)
