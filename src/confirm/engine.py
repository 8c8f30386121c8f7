from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

import httpx
from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.session import SessionManager
from common.codes import CodeGenerator
from common.config import DEFAULT_COMMUNITY_BASE
from common.errors import (
    AuthorizationError,
    GuardError,
    InvalidSecret,
    ProtocolError,
    TimeSyncUnavailable,
)
from common.rate_limiter import SlidingWindowRateLimiter
from common.timesync import TimeSource
from common.transport import RetryPolicy, send_with_retry
from state.models import Session


logger = logging.getLogger("steamguard.confirm")

T = TypeVar("T")

MOBILE_CLIENT = "android"
MOBILE_CLIENT_VERSION = "777777 3.6.4"
USER_AGENT = "Mozilla/5.0 (Linux; Android 9; Valve Steam App Version/3) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/110.0 Mobile Safari/537.36"

_TYPE_NAMES = {2: "trade", 3: "market"}


def _int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


class Confirmation(BaseModel):
    """One pending confirmation as listed by the community site."""

    model_config = ConfigDict(frozen=True)

    id: str
    nonce: str
    creator_id: str = ""
    type: str = "unknown"
    type_code: int = 0
    type_name: str = ""
    headline: str = ""
    summary: List[str] = Field(default_factory=list)
    time_created: int = 0

    @field_validator("id", "nonce", "creator_id", mode="before")
    @classmethod
    def coerce_str(cls, v: Any) -> str:
        return "" if v is None else str(v)

    @classmethod
    def from_api(cls, raw: Dict[str, Any]) -> "Confirmation":
        code = _int(raw.get("type"))
        summary = raw.get("summary") or []
        return cls(
            id=raw.get("id"),
            nonce=raw.get("nonce"),
            creator_id=raw.get("creator_id"),
            type=_TYPE_NAMES.get(code, "unknown"),
            type_code=code,
            type_name=str(raw.get("type_name") or ""),
            headline=str(raw.get("headline") or ""),
            summary=[str(s) for s in summary] if isinstance(summary, list) else [str(summary)],
            time_created=_int(raw.get("creation_time")),
        )


class ActionOutcome(BaseModel):
    confirmation_id: str
    ok: bool
    already_resolved: bool = False
    error: Optional[str] = None
    error_kind: Optional[str] = None


class BatchReport(BaseModel):
    accept: bool
    outcomes: List[ActionOutcome] = Field(default_factory=list)

    @property
    def succeeded(self) -> List[ActionOutcome]:
        return [o for o in self.outcomes if o.ok]

    @property
    def failed(self) -> List[ActionOutcome]:
        return [o for o in self.outcomes if not o.ok]

    @property
    def ok(self) -> bool:
        return all(o.ok for o in self.outcomes)


class ConfirmationEngine:
    """
    Lists and answers an account's pending mobile confirmations.

    Notes
    - Each call is signed with a confirmation key for the exact adjusted time
      sent alongside it (`t`), tagged "conf", "allow" or "cancel".
    - `needauth` or an HTTP 401/403 raises AuthorizationError; the engine
      then refreshes the session once and resyncs the clock (a skewed clock
      produces keys the site rejects) before retrying the call once.
    - `act` treats "already gone" as success: HTTP 404, or a refusal for an
      id a fresh listing no longer shows.
    - `act_many` runs items on a bounded pool and returns only after every
      item has an outcome; one failure never aborts the rest.
    """

    def __init__(
        self,
        sessions: SessionManager,
        time_source: TimeSource,
        *,
        community_base: str = DEFAULT_COMMUNITY_BASE,
        codes: Optional[CodeGenerator] = None,
        parallelism: int = 4,
        timeout: float = 15.0,
        policy: Optional[RetryPolicy] = None,
        limiter: Optional[SlidingWindowRateLimiter] = None,
        client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._sessions = sessions
        self._time = time_source
        self._codes = codes or CodeGenerator(time_source)
        self._base = community_base.rstrip("/")
        self._parallelism = max(1, parallelism)
        self._policy = policy or RetryPolicy()
        self._limiter = limiter
        self._sleep = sleep
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=timeout, headers={"User-Agent": USER_AGENT})

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "ConfirmationEngine":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # --------------- Internal helpers ---------------
    def _signed_params(self, tag: str) -> Dict[str, str]:
        account = self._sessions.account
        identity = account.secret("identity_secret")
        if not identity:
            raise InvalidSecret(f"account {account.account_name} has no identity secret")
        key, t = self._codes.confirmation_key(identity, tag)
        return {
            "p": account.device_id,
            "a": str(account.steam_id or self._sessions.session.account_id),
            "k": key,
            "t": str(t),
            "m": "react",
            "tag": tag,
        }

    def _cookie_header(self, session: Session) -> str:
        cookies = {
            "steamLoginSecure": f"{session.account_id}%7C%7C{session.access_token.get_secret_value()}",
            "mobileClient": MOBILE_CLIENT,
            "mobileClientVersion": MOBILE_CLIENT_VERSION,
            "Steam_Language": "english",
        }
        return "; ".join(f"{k}={v}" for k, v in cookies.items())

    def _get(self, path: str, params: Dict[str, str]) -> Tuple[int, Dict[str, Any]]:
        session = self._sessions.ensure_fresh()
        resp = send_with_retry(
            self._client,
            "GET",
            f"{self._base}/{path}",
            policy=self._policy,
            limiter=self._limiter,
            sleep=self._sleep,
            label=path,
            params=params,
            headers={"Cookie": self._cookie_header(session)},
        )
        if resp.status_code == 404:
            return 404, {}
        if 300 <= resp.status_code < 400:
            # The site redirects to its login page when the cookie is not accepted
            raise AuthorizationError(f"{path}: redirected to login")
        if resp.status_code != 200:
            raise ProtocolError(f"{path}: HTTP {resp.status_code}")
        try:
            data = resp.json()
        except ValueError as exc:
            raise ProtocolError(f"{path}: response is not JSON") from exc
        if not isinstance(data, dict):
            raise ProtocolError(f"{path}: unexpected response shape")
        if data.get("needauth"):
            raise AuthorizationError(f"{path}: session not accepted")
        return resp.status_code, data

    def _with_reauth(self, fn: Callable[[], T]) -> T:
        token = self._sessions.ensure_fresh().access_token.get_secret_value()
        try:
            return fn()
        except AuthorizationError:
            logger.info("account=%s confirmation call unauthorized; refreshing", self._sessions.account.account_name)
            self._sessions.refresh(stale_token=token)
            try:
                self._time.resync()
            except TimeSyncUnavailable:
                logger.warning("clock resync failed; keeping drift=%ds", self._time.drift)
            return fn()

    # --------------- Public API ---------------
    def _list_once(self) -> List[Confirmation]:
        status, data = self._get("mobileconf/getlist", self._signed_params("conf"))
        if status == 404:
            raise ProtocolError("mobileconf/getlist: HTTP 404")
        if not data.get("success"):
            raise ProtocolError(f"mobileconf/getlist refused: {data.get('message') or 'no detail'}")
        return [Confirmation.from_api(c) for c in data.get("conf") or [] if isinstance(c, dict)]

    def list(self) -> List[Confirmation]:
        confirmations = self._with_reauth(self._list_once)
        logger.info("account=%s pending confirmations=%d", self._sessions.account.account_name, len(confirmations))
        return confirmations

    def _act_once(self, confirmation: Confirmation, accept: bool) -> ActionOutcome:
        op = "allow" if accept else "cancel"
        params = self._signed_params(op)
        params.update(op=op, cid=confirmation.id, ck=confirmation.nonce)
        status, data = self._get("mobileconf/ajaxop", params)
        if status == 404:
            return ActionOutcome(confirmation_id=confirmation.id, ok=True, already_resolved=True)
        if data.get("success"):
            return ActionOutcome(confirmation_id=confirmation.id, ok=True)
        # Refused: fine if a previous run already answered it
        if confirmation.id not in {c.id for c in self._list_once()}:
            return ActionOutcome(confirmation_id=confirmation.id, ok=True, already_resolved=True)
        return ActionOutcome(
            confirmation_id=confirmation.id,
            ok=False,
            error=str(data.get("message") or f"{op} refused"),
            error_kind="Refused",
        )

    def act(self, confirmation: Confirmation, accept: bool) -> ActionOutcome:
        outcome = self._with_reauth(lambda: self._act_once(confirmation, accept))
        logger.info(
            "account=%s confirmation=%s %s ok=%s already_resolved=%s",
            self._sessions.account.account_name,
            confirmation.id,
            "accept" if accept else "deny",
            outcome.ok,
            outcome.already_resolved,
        )
        return outcome

    def _act_collect(self, confirmation: Confirmation, accept: bool) -> ActionOutcome:
        try:
            return self.act(confirmation, accept)
        except GuardError as exc:
            logger.warning(
                "account=%s confirmation=%s failed: %s",
                self._sessions.account.account_name,
                confirmation.id,
                type(exc).__name__,
            )
            return ActionOutcome(
                confirmation_id=confirmation.id,
                ok=False,
                error=str(exc),
                error_kind=type(exc).__name__,
            )

    def act_many(self, confirmations: Sequence[Confirmation], accept: bool) -> BatchReport:
        report = BatchReport(accept=accept)
        if not confirmations:
            return report
        workers = min(self._parallelism, len(confirmations))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="confirm") as pool:
            outcomes = list(pool.map(lambda c: self._act_collect(c, accept), confirmations))
        report.outcomes.extend(outcomes)
        return report


__all__ = ["Confirmation", "ActionOutcome", "BatchReport", "ConfirmationEngine"]
