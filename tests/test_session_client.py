"""
tests/test_session_client.py -- Session Client state machine tests.

Two kinds of wiring:
  - _asgi_client(): gateway -> httpx.ASGITransport -> the real FastAPI app,
    backed by a fresh test store. Used for end-to-end flows.
  - _mock_client(): gateway -> httpx.MockTransport. Used where a test needs to
    hold a response back (in-flight guard, stale responses) or fail the
    network on purpose.

Each test drives one event loop with asyncio.run(), matching how a client
runs on a single cooperative thread.

Coverage:
  - login / register / logout transitions and persistence
  - field-level register errors rendered from the message table
  - start(): restored credential is untrusted until fetch_profile succeeds
  - logout clears everything even when the network is down
  - one operation in flight per instance
  - late verify / reset responses are dropped after abandon_flow()
  - rejected credential tears the session down once under concurrency
  - verification and reset scenarios end to end, including the 61-minute expiry
  - web and mobile sessions are independent
"""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from api.main import app
from auth.models import VerificationStatus
from client.gateway import RequestGateway
from client.messages import Messages
from client.platforms import MobileSessionClient, WebSessionClient
from client.session import OperationInProgress, SessionClient, SessionError, SessionState
from client.storage import MemorySessionStorage
from core.errors import ErrorKind
from tests.conftest import DEFAULT_SECRET, make_account, wire_app

MSG = Messages("es")

ME_USER = {
    "id": 7,
    "email": "a@x.com",
    "username": "alice",
    "full_name": "Alice Example",
    "roles": ["user"],
    "verified": True,
    "created_at": "2026-01-01T00:00:00+00:00",
    "updated_at": "2026-01-01T00:00:00+00:00",
}


def _asgi_client(cls, store, mailer, storage=None, clock=None) -> SessionClient:
    wire_app(store, mailer, clock)
    gateway = RequestGateway("http://testserver", transport=httpx.ASGITransport(app=app))
    return cls(gateway, storage=storage if storage is not None else MemorySessionStorage())


def _mock_client(cls, handler, storage=None) -> SessionClient:
    gateway = RequestGateway("http://api.test", transport=httpx.MockTransport(handler))
    return cls(gateway, storage=storage if storage is not None else MemorySessionStorage())


def _ok_login_handler(request: httpx.Request) -> httpx.Response:
    if request.url.path.endswith("/login"):
        return httpx.Response(200, json={"credential": "tok-1", "token_type": "bearer", "expires_in": 3600})
    if request.url.path.endswith("/me"):
        return httpx.Response(200, json={"user": ME_USER})
    return httpx.Response(200, json={"message": "ok"})


def _messages(client: SessionClient, level: str) -> list[str]:
    return [n.message for n in client.notifier.history if n.level == level]


# ---------------------------------------------------------------------------
# Login / register / logout
# ---------------------------------------------------------------------------


class TestLogin:
    def test_login_authenticates_and_persists(self, store, mailer) -> None:
        make_account(store)
        client = _asgi_client(WebSessionClient, store, mailer)

        user = asyncio.run(client.login("a@x.com", DEFAULT_SECRET))

        assert user.username == "alice"
        assert client.session.state is SessionState.AUTHENTICATED
        assert client.session.is_authenticated
        assert client.session.roles == ("user",)
        assert client.storage.keys() == ["access_token", "auth-storage"]
        stored = json.loads(client.storage.get("auth-storage"))
        assert stored["user"]["username"] == "alice"
        assert DEFAULT_SECRET not in client.storage.get("auth-storage")
        assert client.gateway.credential == client.storage.get("access_token")
        # Web success is silent.
        assert client.notifier.history == []

    def test_wrong_secret_maps_to_localized_error(self, store, mailer) -> None:
        make_account(store)
        client = _asgi_client(WebSessionClient, store, mailer)

        with pytest.raises(SessionError) as exc_info:
            asyncio.run(client.login("a@x.com", "wrong-secret-1"))

        assert exc_info.value.kind is ErrorKind.INVALID_CREDENTIALS
        assert client.session.state is SessionState.ANONYMOUS
        assert client.session.last_error.message == MSG.for_kind(ErrorKind.INVALID_CREDENTIALS)
        assert client.storage.keys() == []
        assert _messages(client, "error") == [MSG.for_kind(ErrorKind.INVALID_CREDENTIALS)]

    def test_unknown_email_looks_like_wrong_secret(self, store, mailer) -> None:
        make_account(store)
        client = _asgi_client(WebSessionClient, store, mailer)
        with pytest.raises(SessionError) as unknown:
            asyncio.run(client.login("ghost@x.com", DEFAULT_SECRET))
        assert unknown.value.kind is ErrorKind.INVALID_CREDENTIALS

    def test_unverified_account(self, store, mailer) -> None:
        make_account(store, verified=False)
        client = _asgi_client(WebSessionClient, store, mailer)
        with pytest.raises(SessionError) as exc_info:
            asyncio.run(client.login("a@x.com", DEFAULT_SECRET))
        assert exc_info.value.kind is ErrorKind.ACCOUNT_UNVERIFIED
        assert client.session.last_error.message == MSG.for_kind(ErrorKind.ACCOUNT_UNVERIFIED)

    def test_profile_rejection_during_login_reports_once(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/me"):
                return httpx.Response(401, json={"error": {"code": "invalid_credentials", "message": "no"}})
            return _ok_login_handler(request)

        client = _mock_client(WebSessionClient, handler)
        with pytest.raises(SessionError) as exc_info:
            asyncio.run(client.login("a@x.com", DEFAULT_SECRET))

        assert exc_info.value.kind is ErrorKind.INVALID_CREDENTIALS
        assert _messages(client, "error") == [MSG.for_kind(ErrorKind.INVALID_CREDENTIALS)]
        assert client.navigator.history == ["/"]
        assert client.storage.keys() == []
        assert client.gateway.credential is None

    def test_network_failure_is_retryable(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("offline", request=request)

        client = _mock_client(WebSessionClient, handler)
        with pytest.raises(SessionError) as exc_info:
            asyncio.run(client.login("a@x.com", DEFAULT_SECRET))
        assert exc_info.value.kind is ErrorKind.NETWORK_UNREACHABLE
        assert exc_info.value.error.retryable
        assert client.session.state is SessionState.ANONYMOUS


class TestRegister:
    def test_register_never_authenticates(self, store, mailer) -> None:
        client = _asgi_client(WebSessionClient, store, mailer)

        message = asyncio.run(client.register("new@x.com", "newbie", "New User", DEFAULT_SECRET, DEFAULT_SECRET))

        assert message == MSG.get("register.success")
        assert client.session.state is SessionState.ANONYMOUS
        assert not client.session.is_authenticated
        assert client.storage.keys() == []
        assert client.navigator.location == WebSessionClient.verify_pending_path
        assert store.get_by_email("new@x.com") is not None

    def test_duplicate_username_reported_on_its_field(self, store, mailer) -> None:
        make_account(store)
        client = _asgi_client(WebSessionClient, store, mailer)

        with pytest.raises(SessionError) as exc_info:
            asyncio.run(client.register("other@x.com", "alice", "Other", DEFAULT_SECRET, DEFAULT_SECRET))

        error = exc_info.value.error
        assert error.kind is ErrorKind.VALIDATION
        assert error.fields == {"username": MSG.get("reason.duplicate_username")}
        assert error.message == MSG.get("reason.duplicate_username")

    def test_mismatched_confirmation_reported_on_its_field(self, store, mailer) -> None:
        client = _asgi_client(WebSessionClient, store, mailer)
        with pytest.raises(SessionError) as exc_info:
            asyncio.run(client.register("new@x.com", "newbie", "New", DEFAULT_SECRET, DEFAULT_SECRET + "x"))
        assert exc_info.value.error.fields == {"secret_confirm": MSG.get("reason.secret_mismatch")}


class TestLogout:
    def test_logout_clears_everything(self, store, mailer) -> None:
        make_account(store)
        client = _asgi_client(WebSessionClient, store, mailer)

        async def scenario() -> None:
            await client.login("a@x.com", DEFAULT_SECRET)
            await client.logout()

        asyncio.run(scenario())
        assert client.session.state is SessionState.ANONYMOUS
        assert client.session.current_user is None
        assert client.session.credential is None
        assert client.gateway.credential is None
        assert client.storage.keys() == []
        assert client.navigator.location == client.sign_in_path

    def test_logout_clears_even_when_network_is_down(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/logout"):
                raise httpx.ConnectError("offline", request=request)
            return _ok_login_handler(request)

        client = _mock_client(MobileSessionClient, handler)

        async def scenario() -> None:
            await client.login("a@x.com", DEFAULT_SECRET)
            assert client.session.is_authenticated
            await client.logout()

        asyncio.run(scenario())
        assert client.session.state is SessionState.ANONYMOUS
        assert client.storage.keys() == []
        assert client.gateway.credential is None
        last = client.notifier.history[-1]
        assert last.level == "error"
        assert last.message == MSG.get("logout.failed")
        assert last.position == "top"


# ---------------------------------------------------------------------------
# Start-up restore
# ---------------------------------------------------------------------------


class TestStart:
    def test_restores_session_from_storage(self, store, mailer) -> None:
        make_account(store)
        storage = MemorySessionStorage()

        async def scenario():
            first = _asgi_client(WebSessionClient, store, mailer, storage)
            await first.login("a@x.com", DEFAULT_SECRET)

            second = _asgi_client(WebSessionClient, store, mailer, storage)
            assert not second.session.is_authenticated
            await second.start()
            return second

        second = asyncio.run(scenario())
        assert second.session.is_authenticated
        assert second.session.current_user.username == "alice"

    def test_restored_credential_untrusted_until_profile_confirms(self) -> None:
        observed: list[tuple[bool, bool]] = []
        storage = MemorySessionStorage(
            {"access_token": "tok-restored", "auth-storage": json.dumps({"user": ME_USER})}
        )

        def handler(request: httpx.Request) -> httpx.Response:
            session = client.session
            observed.append((session.is_authenticated, session.current_user is not None))
            return httpx.Response(200, json={"user": ME_USER})

        client = _mock_client(WebSessionClient, handler, storage)
        asyncio.run(client.start())

        # During the /me round trip the restored user is visible but not trusted.
        assert observed == [(False, True)]
        assert client.session.is_authenticated

    def test_tampered_credential_clears_session(self, store, mailer) -> None:
        storage = MemorySessionStorage({"access_token": "tampered", "auth-storage": json.dumps({"user": ME_USER})})
        client = _asgi_client(WebSessionClient, store, mailer, storage)

        asyncio.run(client.start())

        assert not client.session.is_authenticated
        assert client.session.current_user is None
        assert storage.keys() == []
        assert client.navigator.location == client.sign_in_path

    def test_user_without_credential_is_dropped(self) -> None:
        storage = MemorySessionStorage({"auth-storage": json.dumps({"user": ME_USER})})
        client = _mock_client(WebSessionClient, _ok_login_handler, storage)
        session = asyncio.run(client.start())
        assert session.current_user is None
        assert storage.keys() == []

    def test_network_failure_at_start_clears_session(self) -> None:
        storage = MemorySessionStorage({"access_token": "tok-1", "auth-storage": json.dumps({"user": ME_USER})})

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        client = _mock_client(WebSessionClient, handler, storage)
        asyncio.run(client.start())
        assert not client.session.is_authenticated
        assert client.session.last_error.kind is ErrorKind.NETWORK_UNREACHABLE
        assert storage.keys() == []


# ---------------------------------------------------------------------------
# Concurrency and stale responses
# ---------------------------------------------------------------------------


class TestInFlightGuard:
    def test_second_operation_is_rejected_not_queued(self) -> None:
        async def scenario():
            release = asyncio.Event()

            async def handler(request: httpx.Request) -> httpx.Response:
                if request.url.path.endswith("/login"):
                    await release.wait()
                return _ok_login_handler(request)

            client = _mock_client(WebSessionClient, handler)
            task = asyncio.create_task(client.login("a@x.com", DEFAULT_SECRET))
            await asyncio.sleep(0)

            assert client.is_loading
            assert client.session.state is SessionState.AUTHENTICATING
            with pytest.raises(OperationInProgress) as rejected:
                await client.register("b@x.com", "bob", "Bob", DEFAULT_SECRET, DEFAULT_SECRET)
            assert rejected.value.running == "login"
            assert rejected.value.message == MSG.get("operation.in_progress")
            assert client.notifier.history == []
            with pytest.raises(OperationInProgress):
                await client.logout()

            release.set()
            await task
            return client

        client = asyncio.run(scenario())
        assert not client.is_loading
        assert client.session.is_authenticated


class TestStaleResponses:
    def test_late_verify_success_is_ignored_after_navigation(self) -> None:
        async def scenario():
            release = asyncio.Event()

            async def handler(request: httpx.Request) -> httpx.Response:
                await release.wait()
                return httpx.Response(200, json={"message": "ok"})

            client = _mock_client(WebSessionClient, handler)
            task = asyncio.create_task(client.verify_email("T1"))
            await asyncio.sleep(0)
            assert client.session.state is SessionState.VERIFYING

            client.abandon_flow()
            client.navigator.navigate("/dashboard")
            release.set()
            return client, await task

        client, result = asyncio.run(scenario())
        assert result is None
        assert client.navigator.location == "/dashboard"
        assert client.notifier.history == []
        assert client.session.state is SessionState.ANONYMOUS

    def test_late_reset_failure_is_ignored_after_navigation(self) -> None:
        async def scenario():
            release = asyncio.Event()

            async def handler(request: httpx.Request) -> httpx.Response:
                await release.wait()
                return httpx.Response(401, json={"error": {"code": "token_expired", "message": "expired"}})

            client = _mock_client(MobileSessionClient, handler)
            task = asyncio.create_task(client.confirm_reset("R1", DEFAULT_SECRET, DEFAULT_SECRET))
            await asyncio.sleep(0)
            client.abandon_flow()
            release.set()
            return client, await task

        client, result = asyncio.run(scenario())
        assert result is None
        assert client.session.last_error is None
        assert client.notifier.history == []


class TestRejectedCredential:
    def test_concurrent_rejections_tear_down_once(self, store, mailer) -> None:
        account = make_account(store)
        client = _asgi_client(WebSessionClient, store, mailer)

        async def scenario():
            await client.login("a@x.com", DEFAULT_SECRET)
            store.set_status(account.id, VerificationStatus.CLOSED)
            return await asyncio.gather(
                client.gateway.get("/me"),
                client.gateway.get("/accounts"),
                client.gateway.get("/me"),
                return_exceptions=True,
            )

        results = asyncio.run(scenario())
        assert all(isinstance(r, Exception) for r in results)
        assert client.session.state is SessionState.ANONYMOUS
        assert client.storage.keys() == []
        assert _messages(client, "error").count(MSG.get("session.expired")) == 1
        assert client.navigator.history.count(client.sign_in_path) == 1

    def test_teardown_is_idempotent(self) -> None:
        client = _mock_client(WebSessionClient, _ok_login_handler)

        async def scenario():
            await client.login("a@x.com", DEFAULT_SECRET)
            return await client.teardown(), await client.teardown()

        first, second = asyncio.run(scenario())
        assert (first, second) == (True, False)
        assert len(_messages(client, "error")) == 1


# ---------------------------------------------------------------------------
# Verification and reset flows
# ---------------------------------------------------------------------------


class TestVerificationFlow:
    def test_scenario_register_resend_verify_replay(self, store, mailer) -> None:
        client = _asgi_client(MobileSessionClient, store, mailer)

        async def scenario():
            await client.register("a@x.com", "alice", "Alice", DEFAULT_SECRET, DEFAULT_SECRET)
            await client.resend_verification("a@x.com")
            t1 = mailer.last.token
            first = await client.verify_email(t1)
            with pytest.raises(SessionError) as replay:
                await client.verify_email(t1)
            return first, replay.value

        first, replay = asyncio.run(scenario())
        assert first == MSG.get("verify.success")
        assert store.get_by_email("a@x.com").is_verified
        assert replay.kind is ErrorKind.TOKEN_ALREADY_CONSUMED
        assert replay.error.message == MSG.for_kind(ErrorKind.TOKEN_ALREADY_CONSUMED)
        assert MSG.get("verify.success") in _messages(client, "success")

    def test_resend_inside_cooldown(self, store, mailer) -> None:
        make_account(store, verified=False)
        client = _asgi_client(WebSessionClient, store, mailer)

        async def scenario():
            sent = await client.resend_verification("a@x.com")
            with pytest.raises(SessionError) as limited:
                await client.resend_verification("a@x.com")
            return sent, limited.value

        sent, limited = asyncio.run(scenario())
        assert sent == MSG.get("resend.sent")
        assert limited.kind is ErrorKind.RATE_LIMITED
        assert limited.error.message == MSG.for_kind(ErrorKind.RATE_LIMITED)

    def test_resend_for_unknown_email_is_generic(self, store, mailer) -> None:
        client = _asgi_client(WebSessionClient, store, mailer)
        assert asyncio.run(client.resend_verification("nobody@x.com")) == MSG.get("resend.sent")
        assert mailer.sent == []

    def test_resend_rejection_is_opaque(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, json={"error": {"code": "invalid_credentials", "message": "already verified"}})

        client = _mock_client(WebSessionClient, handler)
        with pytest.raises(SessionError) as exc_info:
            asyncio.run(client.resend_verification("a@x.com"))
        assert exc_info.value.error.message == MSG.get("resend.not_eligible")


class TestResetFlow:
    def test_request_is_generic_whether_or_not_email_exists(self, store, mailer) -> None:
        make_account(store)
        client = _asgi_client(WebSessionClient, store, mailer)

        async def scenario():
            return await client.request_reset("a@x.com"), await client.request_reset("nobody@x.com")

        known, unknown = asyncio.run(scenario())
        assert known == unknown == MSG.get("reset.requested")
        assert len(mailer.sent) == 1

    def test_request_reports_only_retryable_failures(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404, json={"error": {"code": "not_found", "message": "no such user"}})

        client = _mock_client(WebSessionClient, handler)
        assert asyncio.run(client.request_reset("a@x.com")) == MSG.get("reset.requested")

        def failing(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503)

        client = _mock_client(WebSessionClient, failing)
        with pytest.raises(SessionError) as exc_info:
            asyncio.run(client.request_reset("a@x.com"))
        assert exc_info.value.kind is ErrorKind.SERVER_ERROR

    def test_confirm_weak_secret_then_success(self, store, mailer, clock) -> None:
        make_account(store)
        client = _asgi_client(WebSessionClient, store, mailer, clock=clock)
        new_secret = "brand-new-secret-42"

        async def scenario():
            await client.request_reset("a@x.com")
            raw = mailer.last.token
            with pytest.raises(SessionError) as weak:
                await client.confirm_reset(raw, "short", "short")
            done = await client.confirm_reset(raw, new_secret, new_secret)
            await client.login("a@x.com", new_secret)
            return weak.value, done

        weak, done = asyncio.run(scenario())
        assert weak.kind is ErrorKind.VALIDATION
        assert weak.error.message == MSG.get("reset.invalid_secret")
        assert done == MSG.get("reset.success")
        assert client.session.is_authenticated

    def test_scenario_reset_link_expired_after_61_minutes(self, store, mailer, clock) -> None:
        make_account(store)
        client = _asgi_client(WebSessionClient, store, mailer, clock=clock)

        async def scenario():
            await client.request_reset("a@x.com")
            raw = mailer.last.token
            clock.advance(minutes=61)
            with pytest.raises(SessionError) as expired:
                await client.confirm_reset(raw, "brand-new-secret-42", "brand-new-secret-42")
            return expired.value

        expired = asyncio.run(scenario())
        assert expired.kind is ErrorKind.TOKEN_EXPIRED
        assert expired.kind.terminal_for_token
        assert expired.error.message == MSG.for_kind(ErrorKind.TOKEN_EXPIRED)


# ---------------------------------------------------------------------------
# Platforms
# ---------------------------------------------------------------------------


class TestPlatforms:
    def test_web_and_mobile_sessions_are_independent(self, store, mailer) -> None:
        make_account(store)
        web = _asgi_client(WebSessionClient, store, mailer)
        mobile = _asgi_client(MobileSessionClient, store, mailer)

        async def scenario() -> None:
            await web.login("a@x.com", DEFAULT_SECRET)
            await mobile.start()

        asyncio.run(scenario())
        assert web.session.is_authenticated
        assert not mobile.session.is_authenticated
        assert web.storage.keys() == ["access_token", "auth-storage"]
        assert mobile.storage.keys() == []

    def test_mobile_uses_its_own_keys_and_toasts(self) -> None:
        client = _mock_client(MobileSessionClient, _ok_login_handler)
        asyncio.run(client.login("a@x.com", DEFAULT_SECRET))
        assert client.storage.keys() == ["authToken", "authUser"]
        assert client.notifier.history[-1].message == MSG.get("login.success")
        assert client.notifier.history[-1].position == "top"
