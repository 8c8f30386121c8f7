from __future__ import annotations

import logging
from typing import Callable, Optional

from common.codes import CodeGenerator
from common.config import GuardConfig
from common.errors import AuthFailed, ChallengeRequired
from common.rate_limiter import SlidingWindowRateLimiter
from common.timesync import TimeSource, transport_time_query
from common.transport import RetryPolicy, RpcTransport
from state.codec import Passphrase
from state.models import AccountSecret
from state.store import AccountStore

from .session import LoginState, SessionManager


logger = logging.getLogger("steamguard.session")

# (message) -> entered text, or None to cancel
Prompt = Callable[[str], Optional[str]]


def build_transport(config: GuardConfig) -> RpcTransport:
    limiter = SlidingWindowRateLimiter(max_calls=config.requests_per_minute, per_seconds=60)
    return RpcTransport(
        api_base=config.api_base,
        timeout=config.http_timeout,
        policy=RetryPolicy(max_attempts=config.max_attempts),
        limiter=limiter,
    )


def session_manager_for(
    store: AccountStore,
    account: AccountSecret,
    passphrase: Passphrase,
    transport: RpcTransport,
    time_source: TimeSource,
) -> SessionManager:
    """SessionManager sharing the store's lock and persisting through it."""
    return SessionManager(
        account,
        transport,
        lock=store.lock_for(account.account_name),
        codes=CodeGenerator(time_source),
        persist=lambda acct: store.save(acct, passphrase),
    )


def login(
    store: AccountStore,
    name: str,
    passphrase: Passphrase,
    password: str,
    prompt: Prompt,
    *,
    transport: Optional[RpcTransport] = None,
    time_source: Optional[TimeSource] = None,
) -> AccountSecret:
    """
    Log `name` in and persist the new session.

    Device codes are generated locally when the account has a shared secret;
    other challenges go to `prompt`. A `None` answer cancels the login.
    """
    owns_transport = transport is None
    transport = transport or build_transport(GuardConfig.from_env())
    try:
        time_source = time_source or TimeSource(transport_time_query(transport))
        account = store.load(name, passphrase)
        manager = session_manager_for(store, account, passphrase, transport, time_source)
        if manager.state == LoginState.AUTHENTICATED:
            # A stored session is replaced by a fresh login
            manager.logout()
        try:
            manager.submit_credentials(account.account_name, password)
        except ChallengeRequired as challenge:
            kind = challenge.kind
            while manager.state == LoginState.AWAITING_CHALLENGE:
                answer = prompt(f"Enter the {kind.replace('_', ' ')} for {account.account_name}: ")
                if answer is None:
                    manager.cancel()
                    raise AuthFailed("login cancelled") from None
                try:
                    manager.submit_code(answer.strip())
                except ChallengeRequired as again:
                    kind = again.kind
        logger.info("account=%s logged in", account.account_name)
        return manager.account
    finally:
        if owns_transport:
            transport.close()


def current_code(
    store: AccountStore,
    name: str,
    passphrase: Passphrase,
    *,
    time_source: Optional[TimeSource] = None,
) -> str:
    """Login code for right now; syncs the clock against the platform unless given a time source."""
    account = store.load(name, passphrase)
    if time_source is not None:
        return CodeGenerator(time_source).login_code(account.secret("shared_secret"))
    with build_transport(GuardConfig.from_env()) as transport:
        codes = CodeGenerator(TimeSource(transport_time_query(transport)))
        return codes.login_code(account.secret("shared_secret"))


__all__ = ["Prompt", "build_transport", "session_manager_for", "login", "current_code"]
