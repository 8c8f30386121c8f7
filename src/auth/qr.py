from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from common.codes import generate_login_approval_signature
from common.errors import ConfigurationError, InvalidSecret
from common.protobufs import new_message
from common.transport import RpcTransport
from state.models import AccountSecret, Session


logger = logging.getLogger("steamguard.session")

# https://s.team/q/<version>/<client_id>
_LOGIN_URI = re.compile(r"^https?://s\.team/q/(\d+)/(\d+)(?:[?#].*)?$")

PERSISTENCE_PERSISTENT = 1


@dataclass(frozen=True)
class LoginRequest:
    version: int
    client_id: int


def parse_login_uri(uri: str) -> LoginRequest:
    """Decode the string a QR decoder yields from the login screen."""
    m = _LOGIN_URI.match(uri.strip())
    if not m:
        raise ConfigurationError("not a login QR code URI")
    return LoginRequest(version=int(m.group(1)), client_id=int(m.group(2)))


def approve_login(
    uri: str,
    account: AccountSecret,
    session: Session,
    transport: RpcTransport,
    approve: bool = True,
) -> LoginRequest:
    """Approve (or deny) the pending remote login shown as a QR code."""
    request = parse_login_uri(uri)
    shared_secret = account.secret("shared_secret")
    if not shared_secret:
        raise InvalidSecret("account has no shared secret")
    signature = generate_login_approval_signature(
        shared_secret,
        version=request.version,
        client_id=request.client_id,
        steam_id=session.account_id,
    )
    transport.call(
        "Authentication",
        "UpdateAuthSessionWithMobileConfirmation",
        new_message(
            "CAuthentication_UpdateAuthSessionWithMobileConfirmation_Request",
            version=request.version,
            client_id=request.client_id,
            steamid=session.account_id,
            signature=signature,
            confirm=approve,
            persistence=PERSISTENCE_PERSISTENT,
        ),
        access_token=session.access_token.get_secret_value(),
    )
    logger.info("account=%s remote login %s", account.account_name, "approved" if approve else "denied")
    return request


__all__ = ["LoginRequest", "parse_login_uri", "approve_login"]
