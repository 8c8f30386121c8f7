from __future__ import annotations

import base64
import logging
import time
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Callable, Dict, Optional, Tuple

import httpx
from google.protobuf.message import DecodeError, Message

from .errors import AuthorizationError, ConfigurationError, NetworkError, ProtocolError
from .protobufs import MESSAGE_CLASSES, method_spec
from .rate_limiter import SlidingWindowRateLimiter


DEFAULT_API_BASE = "https://api.steampowered.com"

TRANSIENT_STATUSES = (429, 500, 502, 503, 504)
AUTH_STATUSES = (401, 403)

logger = logging.getLogger("steamguard.transport")


class EResult(IntEnum):
    """Subset of the platform's result codes this package reacts to."""

    OK = 1
    FAIL = 2
    INVALID_PASSWORD = 5
    ACCESS_DENIED = 15
    NOT_LOGGED_ON = 21
    EXPIRED = 27
    INVALID_LOGIN_AUTH_CODE = 65
    RATE_LIMIT_EXCEEDED = 84
    ACCOUNT_LOGIN_DENIED_THROTTLE = 87
    TWO_FACTOR_CODE_MISMATCH = 88


# With a token attached, these mean the token itself was refused.
_TOKEN_REJECTED = {EResult.ACCESS_DENIED, EResult.NOT_LOGGED_ON, EResult.EXPIRED}


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    initial_backoff: float = 0.5
    max_backoff: float = 8.0


@dataclass
class RpcCall:
    """One network exchange, kept for diagnostics. Payloads are raw protobuf bytes."""

    service: str
    method: str
    request_payload: bytes
    response_payload: bytes = b""
    status: Optional[int] = None
    http_status: Optional[int] = None


def send_with_retry(
    client: httpx.Client,
    method: str,
    url: str,
    *,
    policy: RetryPolicy,
    limiter: Optional[SlidingWindowRateLimiter] = None,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "",
    **kwargs: Any,
) -> httpx.Response:
    """
    Send one logical request, retrying transient failures with exponential backoff.

    - Connection errors, timeouts, 429 and 5xx are retried up to
      `policy.max_attempts` total attempts, then NetworkError is raised.
    - 401/403 raise AuthorizationError immediately; refresh policy lives
      with the caller.
    - Any other response is returned as-is for the caller to interpret.
    """
    attempt = 0
    backoff = policy.initial_backoff
    last_exc: Optional[Exception] = None
    while attempt < policy.max_attempts:
        if limiter is not None:
            limiter.acquire()
        try:
            resp = client.request(method, url, **kwargs)
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            last_exc = exc
            logger.warning("%s: transport error on attempt %d: %s", label or url, attempt + 1, type(exc).__name__)
        else:
            if resp.status_code in AUTH_STATUSES:
                raise AuthorizationError(f"HTTP {resp.status_code} from {label or url}")
            if resp.status_code not in TRANSIENT_STATUSES:
                return resp
            last_exc = NetworkError(f"HTTP {resp.status_code} from {label or url}")
            logger.warning("%s: HTTP %d on attempt %d", label or url, resp.status_code, attempt + 1)

        attempt += 1
        if attempt < policy.max_attempts:
            sleep(backoff)
            backoff = min(backoff * 2, policy.max_backoff)

    raise NetworkError(f"{label or url}: failed after {policy.max_attempts} attempts") from last_exc


def _parse_eresult(raw: Optional[str]) -> Optional[int]:
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


class RpcTransport:
    """
    Executes typed request/response calls against `I{Service}Service/{Method}/v1`.

    Notes
    - The request travels base64-encoded in `input_protobuf_encoded` (query
      string for GET, form body for POST); `access_token` rides in the query.
    - The status comes back in the `x-eresult` header; a missing header is
      read as OK. Response bodies are protobuf; absent fields decode to
      zero/empty and unknown fields are retained.
    - The transport never holds or changes session state: the caller passes
      the token per call.
    """

    def __init__(
        self,
        *,
        api_base: str = DEFAULT_API_BASE,
        timeout: float = 15.0,
        policy: Optional[RetryPolicy] = None,
        limiter: Optional[SlidingWindowRateLimiter] = None,
        client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._api_base = api_base.rstrip("/")
        self._timeout = timeout
        self._policy = policy or RetryPolicy()
        self._limiter = limiter
        self._sleep = sleep
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=self._timeout)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "RpcTransport":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # --------------- Public API ---------------
    def call(
        self,
        service: str,
        method: str,
        request: Message,
        *,
        access_token: Optional[str] = None,
    ) -> Message:
        response, _ = self.execute(service, method, request, access_token=access_token)
        return response

    def execute(
        self,
        service: str,
        method: str,
        request: Message,
        *,
        access_token: Optional[str] = None,
    ) -> Tuple[Message, RpcCall]:
        spec = method_spec(service, method)
        expected = MESSAGE_CLASSES[spec.request]
        if not isinstance(request, expected):
            raise ConfigurationError(
                f"{service}/{method} expects {spec.request}, got {type(request).__name__}"
            )

        payload = request.SerializeToString()
        record = RpcCall(service=service, method=method, request_payload=payload)
        fields: Dict[str, str] = {"input_protobuf_encoded": base64.b64encode(payload).decode("ascii")}
        query: Dict[str, str] = {}
        if access_token:
            query["access_token"] = access_token

        kwargs: Dict[str, Any] = {}
        if spec.http_method == "GET":
            kwargs["params"] = {**query, **fields}
        else:
            kwargs["params"] = query
            kwargs["data"] = fields

        label = f"{service}/{method}"
        resp = send_with_retry(
            self._client,
            spec.http_method,
            f"{self._api_base}/{spec.path}",
            policy=self._policy,
            limiter=self._limiter,
            sleep=self._sleep,
            label=label,
            **kwargs,
        )
        record.http_status = resp.status_code
        record.status = _parse_eresult(resp.headers.get("x-eresult"))
        record.response_payload = resp.content
        logger.debug("rpc %s -> http=%d eresult=%s", label, resp.status_code, record.status)

        if resp.status_code != 200:
            raise ProtocolError(f"HTTP {resp.status_code} from {label}", eresult=record.status)
        if record.status is not None and record.status != EResult.OK:
            detail = resp.headers.get("x-error_message") or ""
            msg = f"{label} failed with eresult={record.status} {detail}".rstrip()
            if access_token and record.status in _TOKEN_REJECTED:
                raise AuthorizationError(msg, eresult=record.status)
            raise ProtocolError(msg, eresult=record.status)

        response = MESSAGE_CLASSES[spec.response]()
        try:
            response.ParseFromString(resp.content)
        except DecodeError as exc:
            raise ProtocolError(f"undecodable response from {label}", eresult=record.status) from exc
        return response, record


__all__ = [
    "DEFAULT_API_BASE",
    "EResult",
    "RetryPolicy",
    "RpcCall",
    "RpcTransport",
    "send_with_retry",
]
