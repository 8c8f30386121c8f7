from __future__ import annotations

import base64
import logging
from typing import Optional, Tuple

from google.protobuf.message import Message

from common.codes import generate_device_id, generate_login_code
from common.errors import AuthFailed, ConfigurationError, ProtocolError
from common.protobufs import new_message
from common.timesync import TimeSource
from common.transport import RpcTransport
from state.models import AccountSecret

from .session import SessionManager


logger = logging.getLogger("steamguard.session")

MAX_FINALIZE_TRIES = 30
AUTHENTICATOR_TYPE_MOBILE = 1
AUTHENTICATOR_VERSION = 2
SMS_PHONE_ID = "1"
REVOCATION_REASON_USER = 1
STEAMGUARD_SCHEME_EMAIL = 1

# AddAuthenticator / FinalizeAddAuthenticator status values
STATUS_OK = 1
STATUS_NO_PHONE = 2
STATUS_AUTHENTICATOR_PRESENT = 29
STATUS_TWO_FACTOR_CODE_MISMATCH = 88
STATUS_BAD_ACTIVATION_CODE = 89


def _b64(raw: bytes) -> Optional[str]:
    return base64.b64encode(raw).decode("ascii") if raw else None


class AuthenticatorLinker:
    """
    Enrolls this bot as the account's mobile authenticator.

    Usage
    - `add_authenticator()` asks the platform for new secrets and returns an
      AccountSecret that is NOT yet fully enrolled; persist it right away, the
      revocation code is the only way back.
    - `finalize(activation_code)` proves possession by sending generated codes
      (stepping the time forward while the platform wants more) and returns
      the account with `fully_enrolled=True`.
    - `remove_authenticator(revocation_code)` unlinks it again.
    """

    def __init__(self, sessions: SessionManager, transport: RpcTransport, time_source: TimeSource) -> None:
        self._sessions = sessions
        self._transport = transport
        self._time = time_source
        self._pending: Optional[AccountSecret] = None

    def _steam_id(self) -> int:
        session = self._sessions.ensure_fresh()
        return session.account_id

    def add_authenticator(self) -> AccountSecret:
        steam_id = self._steam_id()
        device_id = generate_device_id(steam_id)
        resp = self._transport.call(
            "TwoFactor",
            "AddAuthenticator",
            new_message(
                "CTwoFactor_AddAuthenticator_Request",
                steamid=steam_id,
                authenticator_time=self._time.now(),
                authenticator_type=AUTHENTICATOR_TYPE_MOBILE,
                device_identifier=device_id,
                sms_phone_id=SMS_PHONE_ID,
                version=AUTHENTICATOR_VERSION,
            ),
            access_token=self._sessions.access_token(),
        )
        if resp.status == STATUS_AUTHENTICATOR_PRESENT:
            raise ProtocolError("account already has an authenticator", eresult=resp.status)
        if resp.status == STATUS_NO_PHONE:
            raise ProtocolError("account needs a phone number before enrolling", eresult=resp.status)
        if resp.status != STATUS_OK:
            raise ProtocolError(f"AddAuthenticator failed with status={resp.status}", eresult=resp.status)

        enrolled = {
            "steam_id": steam_id,
            "shared_secret": _b64(resp.shared_secret),
            "identity_secret": _b64(resp.identity_secret),
            "secret_1": _b64(resp.secret_1),
            "revocation_code": resp.revocation_code or None,
            "uri": resp.uri or None,
            "serial_number": str(resp.serial_number),
            "token_gid": resp.token_gid,
            "server_time": resp.server_time,
            "device_id": device_id,
            "fully_enrolled": False,
        }
        # Validate (not model_copy) so the new secrets become SecretStr
        account = AccountSecret.model_validate({**self._sessions.account.model_dump(), **enrolled})
        self._pending = account
        logger.info("account=%s authenticator added; awaiting finalize", account.account_name)
        return account

    def finalize(self, activation_code: str, *, validate_sms_code: bool = True) -> AccountSecret:
        account = self._pending
        if account is None:
            raise ConfigurationError("call add_authenticator() before finalize()")
        shared_secret = account.secret("shared_secret")
        steam_id = account.steam_id
        token = self._sessions.access_token()

        t = self._time.now()
        tries = 0
        while tries <= MAX_FINALIZE_TRIES:
            resp = self._transport.call(
                "TwoFactor",
                "FinalizeAddAuthenticator",
                new_message(
                    "CTwoFactor_FinalizeAddAuthenticator_Request",
                    steamid=steam_id,
                    authenticator_code=generate_login_code(shared_secret, t),
                    authenticator_time=t,
                    activation_code=activation_code,
                    validate_sms_code=validate_sms_code,
                ),
                access_token=token,
            )
            if resp.status == STATUS_BAD_ACTIVATION_CODE:
                raise AuthFailed("activation code rejected")
            if resp.status == STATUS_TWO_FACTOR_CODE_MISMATCH and tries >= MAX_FINALIZE_TRIES:
                raise AuthFailed("platform kept rejecting generated codes")
            if not resp.success:
                raise ProtocolError(f"FinalizeAddAuthenticator failed with status={resp.status}", eresult=resp.status)
            if resp.want_more:
                tries += 1
                t += 30
                continue
            break
        else:
            raise AuthFailed("finalize did not complete")

        done = account.model_copy(update={"fully_enrolled": True})
        self._pending = None
        logger.info("account=%s authenticator finalized after %d extra code(s)", account.account_name, tries)
        return done

    def remove_authenticator(self, revocation_code: str) -> None:
        if not revocation_code:
            raise ConfigurationError("revocation code is required")
        resp = self._transport.call(
            "TwoFactor",
            "RemoveAuthenticator",
            new_message(
                "CTwoFactor_RemoveAuthenticator_Request",
                revocation_code=revocation_code,
                revocation_reason=REVOCATION_REASON_USER,
                steamguard_scheme=STEAMGUARD_SCHEME_EMAIL,
            ),
            access_token=self._sessions.access_token(),
        )
        if not resp.success:
            raise ProtocolError(
                f"RemoveAuthenticator refused; {resp.revocation_attempts_remaining} attempt(s) remaining"
            )
        logger.info("account=%s authenticator removed", self._sessions.account.account_name)

    def status(self) -> Message:
        steam_id = self._steam_id()
        return self._transport.call(
            "TwoFactor",
            "QueryStatus",
            new_message("CTwoFactor_Status_Request", steamid=steam_id),
            access_token=self._sessions.access_token(),
        )


class PhoneClient:
    """Phone-number verification calls made with the account's access token."""

    def __init__(self, sessions: SessionManager, transport: RpcTransport) -> None:
        self._sessions = sessions
        self._transport = transport

    def _call(self, method: str, request: Message) -> Message:
        return self._transport.call("Phone", method, request, access_token=self._sessions.access_token())

    def set_phone_number(self, phone_number: str, country_code: str) -> Tuple[str, str]:
        """Returns (confirmation email address, formatted number)."""
        resp = self._call(
            "SetAccountPhoneNumber",
            new_message(
                "CPhone_SetAccountPhoneNumber_Request",
                phone_number=phone_number,
                phone_country_code=country_code,
            ),
        )
        return resp.confirmation_email_address, resp.phone_number_formatted

    def is_waiting_for_email(self) -> Tuple[bool, int]:
        resp = self._call(
            "IsAccountWaitingForEmailConfirmation",
            new_message("CPhone_IsAccountWaitingForEmailConfirmation_Request"),
        )
        return resp.awaiting_email_confirmation, resp.seconds_to_wait

    def send_verification_code(self, language: int = 0) -> None:
        self._call(
            "SendPhoneVerificationCode",
            new_message("CPhone_SendPhoneVerificationCode_Request", language=language),
        )

    def verify_with_code(self, code: str) -> None:
        self._call(
            "VerifyAccountPhoneWithCode",
            new_message("CPhone_VerifyAccountPhoneWithCode_Request", code=code),
        )

    def confirm_add_phone(self, stoken: str = "") -> bool:
        resp = self._call(
            "ConfirmAddPhoneToAccount",
            new_message(
                "CPhone_ConfirmAddPhoneToAccount_Request",
                steamid=self._sessions.ensure_fresh().account_id,
                stoken=stoken,
            ),
        )
        return resp.success

    def account_phone_status(self) -> Message:
        """Full response; fields beyond `has_phone` are kept as unknown fields."""
        return self._call("AccountPhoneStatus", new_message("CPhone_AccountPhoneStatus_Request"))

    def has_phone(self) -> bool:
        return self.account_phone_status().has_phone


__all__ = ["AuthenticatorLinker", "PhoneClient"]
