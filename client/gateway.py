"""
client/gateway.py -- Request Gateway: the only path from a client to the API.

Responsibilities:
  - Attach the current bearer credential (if any) to every outbound request.
  - Normalize every failure into ApiError with a closed ErrorKind:
      transport failure or timeout   -> network_unreachable
      5xx                            -> server_error
      error envelope with a code     -> that code
      anything else                  -> a kind derived from the status
  - On a 401 from any endpoint outside the pass-through set, hand control to
    the registered rejection handler (the Session Client's teardown) exactly
    once, no matter how many requests fail concurrently.

The pass-through set holds the endpoints where a 401 is an expected business
outcome (bad password, spent token) and must be returned to the caller as-is.

Concurrency: everything here runs on one event loop. The "teardown started"
flag is set before the first await in _reject(), so a second rejection that
arrives while the handler is still running sees the flag and returns. The flag
is cleared when a new credential is attached.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any, Optional

import httpx

from core.errors import ErrorKind

logger = logging.getLogger("sessiongate.client.gateway")

RejectionHandler = Callable[[], Awaitable[None]]

# Endpoints (relative to the API prefix) whose 401 responses are ordinary results.
PASS_THROUGH_401 = frozenset(
    {
        "/register",
        "/login",
        "/logout",
        "/verify/resend",
        "/verify/confirm",
        "/reset/request",
        "/reset/confirm",
    }
)

_STATUS_KIND: dict[int, ErrorKind] = {
    400: ErrorKind.VALIDATION,
    401: ErrorKind.INVALID_CREDENTIALS,
    403: ErrorKind.FORBIDDEN,
    404: ErrorKind.NOT_FOUND,
    422: ErrorKind.VALIDATION,
    429: ErrorKind.RATE_LIMITED,
}


class ApiError(Exception):
    """A normalized request failure.

    `message` is the backend's developer-facing text (or a transport
    description). It is for logs; screens render client.messages text instead.
    """

    def __init__(
        self,
        kind: ErrorKind,
        status: Optional[int] = None,
        message: str = "",
        fields: Optional[dict[str, list[str]]] = None,
        reason: Optional[str] = None,
        retry_after: Optional[int] = None,
    ) -> None:
        self.kind = kind
        self.status = status
        self.message = message or kind.value
        self.fields = fields or {}
        self.reason = reason
        self.retry_after = retry_after
        super().__init__(f"{kind.value} ({status}): {self.message}")


def _kind_for_status(status: int) -> ErrorKind:
    if status >= 500:
        return ErrorKind.SERVER_ERROR
    return _STATUS_KIND.get(status, ErrorKind.SERVER_ERROR)


def normalize_response(response: httpx.Response) -> ApiError:
    """Build an ApiError from a non-2xx response."""
    status = response.status_code
    body: Any = None
    try:
        body = response.json()
    except ValueError:
        body = None

    error = body.get("error") if isinstance(body, dict) else None
    if not isinstance(error, dict):
        error = {}

    if status >= 500:
        # The code of a 5xx is never trusted: retry semantics depend on it.
        kind = ErrorKind.SERVER_ERROR
    else:
        kind = ErrorKind.from_code(error.get("code")) or _kind_for_status(status)

    retry_after: Optional[int] = None
    header = response.headers.get("Retry-After")
    if header is not None and header.isdigit():
        retry_after = int(header)

    fields = error.get("fields")
    return ApiError(
        kind,
        status=status,
        message=str(error.get("message") or response.reason_phrase or ""),
        fields=fields if isinstance(fields, dict) else None,
        reason=error.get("detail") if kind is ErrorKind.VALIDATION else None,
        retry_after=retry_after,
    )


class RequestGateway:
    """Async HTTP gateway bound to one API base URL and one credential slot."""

    def __init__(
        self,
        base_url: str,
        api_prefix: str = "/api/v1/auth",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_prefix = api_prefix.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            transport=transport,
            headers={"Accept": "application/json"},
        )
        self._credential: Optional[str] = None
        self._on_rejected: Optional[RejectionHandler] = None
        self._teardown_started = False

    # -----------------------------------------------------------------------
    # Credential slot
    # -----------------------------------------------------------------------

    @property
    def credential(self) -> Optional[str]:
        return self._credential

    def set_credential(self, credential: Optional[str]) -> None:
        self._credential = credential
        if credential:
            self._teardown_started = False

    def clear_credential(self) -> None:
        self._credential = None

    def on_rejected_credential(self, handler: Optional[RejectionHandler]) -> None:
        self._on_rejected = handler

    # -----------------------------------------------------------------------
    # Requests
    # -----------------------------------------------------------------------

    async def request(self, method: str, path: str, json: Optional[dict] = None) -> dict:
        """Send one request and return the decoded JSON body.

        Raises ApiError for every failure, after running the rejection handler
        when the failure is a 401 on a credential-protected endpoint.
        """
        credential = self._credential
        headers = {"Authorization": f"Bearer {credential}"} if credential else {}
        try:
            response = await self._client.request(method, self.api_prefix + path, json=json, headers=headers)
        except httpx.TimeoutException as e:
            logger.warning("%s %s timed out", method, path)
            raise ApiError(ErrorKind.NETWORK_UNREACHABLE, message=f"timeout: {e}") from e
        except httpx.TransportError as e:
            logger.warning("%s %s failed: %s", method, path, type(e).__name__)
            raise ApiError(ErrorKind.NETWORK_UNREACHABLE, message=str(e)) from e

        if response.is_success:
            if not response.content:
                return {}
            try:
                data = response.json()
            except ValueError as e:
                raise ApiError(ErrorKind.SERVER_ERROR, status=response.status_code, message="invalid JSON") from e
            return data if isinstance(data, dict) else {"items": data}

        error = normalize_response(response)
        logger.info("%s %s -> %d %s", method, path, response.status_code, error.kind.value)
        if response.status_code == 401 and path not in PASS_THROUGH_401:
            await self._reject(credential)
        raise error

    async def get(self, path: str) -> dict:
        return await self.request("GET", path)

    async def post(self, path: str, json: Optional[dict] = None) -> dict:
        return await self.request("POST", path, json=json)

    async def _reject(self, used_credential: Optional[str]) -> None:
        # A 401 for a request sent without a credential, or with a credential
        # that has since been replaced, says nothing about the current session.
        if used_credential is None or used_credential != self._credential:
            return
        if self._teardown_started:
            return
        self._teardown_started = True
        logger.info("Credential rejected by the server; tearing the session down")
        if self._on_rejected is not None:
            await self._on_rejected()

    async def aclose(self) -> None:
        await self._client.aclose()
