from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Dict, Iterable, List, Optional

from auth.handler import build_transport, session_manager_for
from common.config import GuardConfig
from common.errors import AuthExpired, ConfigurationError, CryptoError, GuardError
from common.passkeys import PasskeySource, passkey_source_from_env
from common.timesync import TimeSource, transport_time_query
from common.transport import RetryPolicy, RpcTransport
from state.store import AccountStore, store_from_config

from .engine import ConfirmationEngine


logger = logging.getLogger("steamguard.confirm")


def _process_account(
    name: str,
    *,
    config: GuardConfig,
    store: AccountStore,
    passkeys: PasskeySource,
    transport: RpcTransport,
) -> Dict[str, Any]:
    passphrase = passkeys.get(name)
    if passphrase is None:
        raise ConfigurationError(f"no passkey available for account {name}")

    account = store.load(name, passphrase)
    # One TimeSource per account: workers share nothing mutable
    time_source = TimeSource(transport_time_query(transport))
    manager = session_manager_for(store, account, passphrase, transport, time_source)

    result: Dict[str, Any] = {
        "account": account.account_name,
        "status": "ok",
        "pending": 0,
        "accepted": 0,
        "denied": 0,
        "already_resolved": 0,
        "failed": 0,
    }
    with ConfirmationEngine(
        manager,
        time_source,
        community_base=config.community_base,
        parallelism=config.confirm_parallelism,
        timeout=config.http_timeout,
        policy=RetryPolicy(max_attempts=config.max_attempts),
    ) as engine:
        manager.ensure_fresh()
        pending = engine.list()
        result["pending"] = len(pending)

        to_accept = [c for c in pending if c.type in config.auto_accept]
        to_deny = [c for c in pending if c.type in config.auto_deny]
        for accept, batch in ((True, to_accept), (False, to_deny)):
            report = engine.act_many(batch, accept)
            result["accepted" if accept else "denied"] += len(report.succeeded)
            result["already_resolved"] += sum(1 for o in report.outcomes if o.already_resolved)
            result["failed"] += len(report.failed)
            if any(o.error_kind == AuthExpired.__name__ for o in report.failed):
                result["status"] = "needs_reauth"

    if result["failed"] and result["status"] == "ok":
        result["status"] = "partial"
    return result


def run_once(
    names: Optional[Iterable[str]] = None,
    *,
    config: Optional[GuardConfig] = None,
    store: Optional[AccountStore] = None,
    passkeys: Optional[PasskeySource] = None,
    transport: Optional[RpcTransport] = None,
) -> Dict[str, Any]:
    """
    Poll every account (or `names`) once: refresh, list, auto-answer, persist.

    One worker per account. AuthExpired is reported as `needs_reauth`;
    crypto/config/network failures mark only that account as `error`.
    """
    config = config or GuardConfig.from_env()
    store = store or store_from_config(config)
    passkeys = passkeys or passkey_source_from_env(config.passkey_param)

    accounts: List[str] = list(names) if names is not None else store.names()
    if not accounts:
        return {"ok": True, "accounts": [], "note": "No accounts configured"}

    owns_transport = transport is None
    transport = transport or build_transport(config)
    results: Dict[str, Dict[str, Any]] = {}
    try:
        with ThreadPoolExecutor(max_workers=min(config.account_workers, len(accounts))) as pool:
            futures = {
                pool.submit(
                    _process_account,
                    name,
                    config=config,
                    store=store,
                    passkeys=passkeys,
                    transport=transport,
                ): name
                for name in accounts
            }
            for fut in as_completed(futures):
                name = futures[fut]
                try:
                    results[name] = fut.result()
                except AuthExpired:
                    logger.warning("account=%s needs re-authentication", name)
                    results[name] = {"account": name, "status": "needs_reauth"}
                except (CryptoError, ConfigurationError) as exc:
                    logger.error("account=%s skipped: %s", name, type(exc).__name__)
                    results[name] = {"account": name, "status": "error", "error": type(exc).__name__}
                except GuardError as exc:
                    logger.error("account=%s failed: %s", name, exc)
                    results[name] = {"account": name, "status": "error", "error": str(exc)}
                except Exception as exc:  # noqa: BLE001
                    logger.exception("account=%s crashed", name)
                    results[name] = {"account": name, "status": "error", "error": type(exc).__name__}
    finally:
        if owns_transport:
            transport.close()

    ordered = [results[n] for n in accounts]
    return {
        "ok": all(r["status"] == "ok" for r in ordered),
        "accounts": ordered,
    }


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    names = event.get("accounts") if isinstance(event, dict) else None
    return run_once(names)
