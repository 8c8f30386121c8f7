from __future__ import annotations

import base64
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

from cryptography.hazmat.primitives.asymmetric import padding as rsa_padding
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPublicNumbers

from common.codes import CodeGenerator
from common.errors import (
    AuthExpired,
    AuthFailed,
    AuthorizationError,
    ChallengeRequired,
    ClockUnavailable,
    ProtocolError,
    TimeSyncUnavailable,
)
from common.protobufs import new_message
from common.transport import EResult, RpcTransport
from state.models import AccountSecret, Session


logger = logging.getLogger("steamguard.session")

# The platform reports no remaining-attempt count, so the limit is kept locally
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_POLL_LIMIT = 20
DEFAULT_REFRESH_MARGIN = 120

# Login request constants for a mobile-app client
PLATFORM_MOBILE_APP = 3
PERSISTENCE_PERSISTENT = 1
WEBSITE_ID = "Mobile"
DEVICE_FRIENDLY_NAME = "steamguard-bot"
OS_TYPE_ANDROID_UNKNOWN = -500
GAMING_DEVICE_TYPE_PHONE = 528

# Platform confirmation types from BeginAuthSession
_CONFIRMATION_NONE = 1
_CONFIRMATION_EMAIL_CODE = 2
_CONFIRMATION_DEVICE_CODE = 3

_CODE_MISMATCH = {EResult.TWO_FACTOR_CODE_MISMATCH, EResult.INVALID_LOGIN_AUTH_CODE}
_THROTTLED = {EResult.RATE_LIMIT_EXCEEDED, EResult.ACCOUNT_LOGIN_DENIED_THROTTLE}
# Refresh failures that mean the refresh token itself is dead
_REFRESH_REJECTED = {
    EResult.INVALID_PASSWORD,
    EResult.ACCESS_DENIED,
    EResult.NOT_LOGGED_ON,
    EResult.EXPIRED,
}


class LoginState(str, Enum):
    LOGGED_OUT = "logged_out"
    AWAITING_CREDENTIALS = "awaiting_credentials"
    AWAITING_CHALLENGE = "awaiting_challenge"
    AUTHENTICATED = "authenticated"
    EXPIRED = "expired"


class ChallengeKind(str, Enum):
    EMAIL_CODE = "email_code"
    DEVICE_CODE = "device_code"
    # The token login API never asks for one; kept so callers can match on it.
    CAPTCHA = "captcha"


_CHALLENGE_BY_TYPE = {
    _CONFIRMATION_EMAIL_CODE: ChallengeKind.EMAIL_CODE,
    _CONFIRMATION_DEVICE_CODE: ChallengeKind.DEVICE_CODE,
}
_CODE_TYPE_BY_CHALLENGE = {v: k for k, v in _CHALLENGE_BY_TYPE.items()}


@dataclass
class _PendingLogin:
    client_id: int
    request_id: bytes
    steam_id: int
    interval: float
    challenges: List[ChallengeKind] = field(default_factory=list)
    hint: str = ""


def encrypt_password(password: str, modulus_hex: str, exponent_hex: str) -> str:
    """RSA PKCS#1 v1.5 with the platform's per-login key; returns base64."""
    try:
        key = RSAPublicNumbers(e=int(exponent_hex, 16), n=int(modulus_hex, 16)).public_key()
    except ValueError as exc:
        raise ProtocolError("platform returned an unusable RSA key") from exc
    encrypted = key.encrypt(password.encode("utf-8"), rsa_padding.PKCS1v15())
    return base64.b64encode(encrypted).decode("ascii")


class SessionManager:
    """
    Login/refresh state machine for one account.

    LOGGED_OUT -> AWAITING_CREDENTIALS -> AWAITING_CHALLENGE -> AUTHENTICATED -> EXPIRED | LOGGED_OUT

    Every transition happens under the account's lock (shared with
    AccountStore), and every session change is handed to `persist` before the
    lock is released. On one manager, a credential submit that finds
    AUTHENTICATED adopts that session instead of logging in again. Separate
    managers for the same account (separate `login()` calls) only serialize
    on the store lock; each runs its own full login.

    `submit_credentials`/`submit_code` raise ChallengeRequired while an answer
    is needed; that is the expected branch, and the state stays
    AWAITING_CHALLENGE.
    """

    def __init__(
        self,
        account: AccountSecret,
        transport: RpcTransport,
        *,
        lock: Optional[threading.RLock] = None,
        codes: Optional[CodeGenerator] = None,
        persist: Optional[Callable[[AccountSecret], None]] = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        poll_limit: int = DEFAULT_POLL_LIMIT,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._account = account
        self._transport = transport
        self._lock = lock or threading.RLock()
        self._codes = codes or CodeGenerator()
        self._persist = persist
        self._max_attempts = max_attempts
        self._poll_limit = poll_limit
        self._sleep = sleep
        self._clock = clock
        self._session: Optional[Session] = account.session
        self._state = LoginState.AUTHENTICATED if account.session else LoginState.LOGGED_OUT
        self._pending: Optional[_PendingLogin] = None
        self._attempts = 0

    # -------- Introspection --------
    @property
    def lock(self) -> threading.RLock:
        return self._lock

    @property
    def state(self) -> LoginState:
        return self._state

    @property
    def account(self) -> AccountSecret:
        return self._account

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def attempts(self) -> int:
        return self._attempts

    @property
    def challenge(self) -> Optional[ChallengeKind]:
        if self._pending and self._pending.challenges:
            return self._pending.challenges[0]
        return None

    # -------- Transitions --------
    def _transition(self, new: LoginState) -> None:
        if new != self._state:
            logger.info("account=%s %s -> %s", self._account.account_name, self._state.value, new.value)
        self._state = new

    def _commit(self, session: Optional[Session]) -> None:
        self._session = session
        self._account = self._account.with_session(session)
        if self._persist is not None:
            self._persist(self._account)

    def _fail(self, message: str) -> AuthFailed:
        self._pending = None
        self._attempts = 0
        self._transition(LoginState.LOGGED_OUT)
        return AuthFailed(message)

    def submit_credentials(self, username: str, password: str) -> LoginState:
        with self._lock:
            if self._state == LoginState.AUTHENTICATED:
                logger.info("account=%s already authenticated; adopting session", self._account.account_name)
                return self._state
            if self._state == LoginState.AWAITING_CHALLENGE and self.challenge is not None:
                raise ChallengeRequired(self.challenge.value)

            self._transition(LoginState.AWAITING_CREDENTIALS)
            self._attempts = 0
            try:
                # Fresh key every attempt; it rotates server-side.
                key = self._transport.call(
                    "Authentication",
                    "GetPasswordRSAPublicKey",
                    new_message("CAuthentication_GetPasswordRSAPublicKey_Request", account_name=username),
                )
                encrypted = encrypt_password(password, key.publickey_mod, key.publickey_exp)
                resp = self._transport.call(
                    "Authentication",
                    "BeginAuthSessionViaCredentials",
                    new_message(
                        "CAuthentication_BeginAuthSessionViaCredentials_Request",
                        device_friendly_name=DEVICE_FRIENDLY_NAME,
                        account_name=username,
                        encrypted_password=encrypted,
                        encryption_timestamp=key.timestamp,
                        remember_login=True,
                        platform_type=PLATFORM_MOBILE_APP,
                        persistence=PERSISTENCE_PERSISTENT,
                        website_id=WEBSITE_ID,
                        device_details=new_message(
                            "CAuthentication_DeviceDetails",
                            device_friendly_name=DEVICE_FRIENDLY_NAME,
                            platform_type=PLATFORM_MOBILE_APP,
                            os_type=OS_TYPE_ANDROID_UNKNOWN,
                            gaming_device_type=GAMING_DEVICE_TYPE_PHONE,
                        ),
                    ),
                )
            except ProtocolError as exc:
                logger.warning("account=%s login rejected eresult=%s", self._account.account_name, exc.eresult)
                raise self._fail(f"login rejected (eresult={exc.eresult})") from exc
            except BaseException:
                self._transition(LoginState.LOGGED_OUT)
                raise

            types = [c.confirmation_type for c in resp.allowed_confirmations]
            challenges = [_CHALLENGE_BY_TYPE[t] for t in types if t in _CHALLENGE_BY_TYPE]
            hints = [c.associated_message for c in resp.allowed_confirmations if c.associated_message]
            self._pending = _PendingLogin(
                client_id=resp.client_id,
                request_id=resp.request_id,
                steam_id=resp.steamid,
                interval=resp.interval or 5.0,
                challenges=challenges,
                hint=hints[0] if hints else "",
            )
            logger.info(
                "account=%s login started; confirmation types=%s",
                self._account.account_name,
                ",".join(str(t) for t in types) or "none",
            )

            if _CONFIRMATION_NONE in types and not challenges:
                return self._finish()
            if not challenges:
                raise self._fail(f"no supported login confirmation (offered: {types})")

            if ChallengeKind.DEVICE_CODE in challenges and self._account.shared_secret is not None:
                self._pending.challenges = [ChallengeKind.DEVICE_CODE]
                self._transition(LoginState.AWAITING_CHALLENGE)
                code = self._codes.login_code(self._account.secret("shared_secret"))
                return self._answer(code, regenerate=True)

            self._transition(LoginState.AWAITING_CHALLENGE)
            raise ChallengeRequired(challenges[0].value, self._pending.hint)

    def submit_code(self, code: str) -> LoginState:
        with self._lock:
            if self._state == LoginState.AUTHENTICATED:
                return self._state
            if self._state != LoginState.AWAITING_CHALLENGE or self._pending is None:
                raise AuthFailed("no login is awaiting a code")
            return self._answer(code)

    def _resync_clock(self) -> bool:
        try:
            drift = self._codes.resync()
        except (TimeSyncUnavailable, ClockUnavailable) as exc:
            logger.warning("account=%s clock resync failed: %s", self._account.account_name, exc)
            return False
        logger.info("account=%s clock resynced; drift=%ds", self._account.account_name, drift)
        return True

    def _answer(self, code: str, regenerate: bool = False) -> LoginState:
        """
        Submit a challenge answer.

        With `regenerate`, the code came from the shared secret: a mismatch
        first resyncs the clock and resubmits one fresh code before it counts
        as an attempt.
        """
        pending = self._pending
        kind = pending.challenges[0]
        try:
            self._transport.call(
                "Authentication",
                "UpdateAuthSessionWithSteamGuardCode",
                new_message(
                    "CAuthentication_UpdateAuthSessionWithSteamGuardCode_Request",
                    client_id=pending.client_id,
                    steamid=pending.steam_id,
                    code=code,
                    code_type=_CODE_TYPE_BY_CHALLENGE[kind],
                ),
            )
        except ProtocolError as exc:
            if exc.eresult in _CODE_MISMATCH:
                if regenerate and self._resync_clock():
                    return self._answer(self._codes.login_code(self._account.secret("shared_secret")))
                self._attempts += 1
                logger.warning(
                    "account=%s %s rejected (attempt %d/%d)",
                    self._account.account_name,
                    kind.value,
                    self._attempts,
                    self._max_attempts,
                )
                if self._attempts >= self._max_attempts:
                    raise self._fail("too many wrong codes") from exc
                raise ChallengeRequired(kind.value, "code rejected") from None
            if exc.eresult in _THROTTLED:
                raise self._fail("login throttled by the platform") from exc
            raise self._fail(f"code submission failed (eresult={exc.eresult})") from exc
        return self._finish()

    def _finish(self) -> LoginState:
        pending = self._pending
        for _ in range(self._poll_limit):
            try:
                resp = self._transport.call(
                    "Authentication",
                    "PollAuthSessionStatus",
                    new_message(
                        "CAuthentication_PollAuthSessionStatus_Request",
                        client_id=pending.client_id,
                        request_id=pending.request_id,
                    ),
                )
                if resp.new_client_id:
                    pending.client_id = resp.new_client_id
                access = resp.access_token
                if resp.refresh_token and not access:
                    access = self._generate_access(resp.refresh_token, pending.steam_id)[0]
            except ProtocolError as exc:
                raise self._fail(f"login poll failed (eresult={exc.eresult})") from exc
            if resp.refresh_token:
                session = Session.from_tokens(
                    account_id=pending.steam_id,
                    access_token=access,
                    refresh_token=resp.refresh_token,
                    now=int(self._clock()),
                )
                self._pending = None
                self._attempts = 0
                self._transition(LoginState.AUTHENTICATED)
                self._commit(session)
                return self._state
            self._sleep(pending.interval)
        raise self._fail("login was not confirmed in time")

    def _generate_access(self, refresh_token: str, steam_id: int) -> tuple[str, str]:
        resp = self._transport.call(
            "Authentication",
            "GenerateAccessTokenForApp",
            new_message(
                "CAuthentication_AccessToken_GenerateForApp_Request",
                refresh_token=refresh_token,
                steamid=steam_id,
            ),
        )
        if not resp.access_token:
            raise ProtocolError("refresh returned no access token")
        return resp.access_token, resp.refresh_token or refresh_token

    def refresh(self, stale_token: Optional[str] = None) -> Session:
        """
        Trade the refresh token for a new access token.

        With `stale_token`, a refresh is skipped if the session already moved
        past that token (another caller refreshed first).
        """
        with self._lock:
            session = self._session
            if session is None or self._state != LoginState.AUTHENTICATED:
                raise AuthExpired(f"account {self._account.account_name} has no usable session")
            if stale_token is not None and session.access_token.get_secret_value() != stale_token:
                return session
            try:
                access, refresh = self._generate_access(session.refresh_token.get_secret_value(), session.account_id)
            except ProtocolError as exc:
                if not isinstance(exc, AuthorizationError) and exc.eresult not in _REFRESH_REJECTED:
                    logger.warning(
                        "account=%s refresh failed eresult=%s; session kept",
                        self._account.account_name,
                        exc.eresult,
                    )
                    raise
                logger.warning(
                    "account=%s refresh rejected eresult=%s; session discarded",
                    self._account.account_name,
                    exc.eresult,
                )
                self._transition(LoginState.EXPIRED)
                self._commit(None)
                raise AuthExpired(f"account {self._account.account_name} needs to log in again") from exc
            renewed = Session.from_tokens(
                account_id=session.account_id,
                access_token=access,
                refresh_token=refresh,
                now=int(self._clock()),
            )
            self._commit(renewed)
            logger.info("account=%s session refreshed", self._account.account_name)
            return renewed

    def ensure_fresh(self, margin: int = DEFAULT_REFRESH_MARGIN) -> Session:
        with self._lock:
            if self._state != LoginState.AUTHENTICATED or self._session is None:
                raise AuthExpired(f"account {self._account.account_name} is not logged in")
            if self._session.expires_within(margin, now=int(self._clock())):
                return self.refresh()
            return self._session

    def access_token(self) -> str:
        return self.ensure_fresh().access_token.get_secret_value()

    def cancel(self) -> None:
        """Abandon a login in progress; a committed session is left alone."""
        with self._lock:
            if self._state in (LoginState.AWAITING_CREDENTIALS, LoginState.AWAITING_CHALLENGE):
                self._pending = None
                self._attempts = 0
                self._transition(LoginState.LOGGED_OUT)

    def logout(self) -> None:
        with self._lock:
            self._pending = None
            self._attempts = 0
            had_session = self._session is not None
            self._transition(LoginState.LOGGED_OUT)
            if had_session:
                self._commit(None)


__all__ = ["SessionManager", "LoginState", "ChallengeKind", "encrypt_password"]
