from __future__ import annotations

import hashlib
import hmac
import struct

import httpx
import pytest

from auth.enroll import AuthenticatorLinker, PhoneClient
from auth.qr import approve_login, parse_login_uri
from auth.session import SessionManager
from common.codes import CodeGenerator, generate_device_id, generate_login_code
from common.errors import AuthFailed, ConfigurationError, ProtocolError
from common.protobufs import new_message
from common.timesync import TimeSource
from state.models import AccountSecret, Session


STEAM_ID = 76561197960287930
SHARED = b"\x01" * 20


def _session() -> Session:
    return Session(account_id=STEAM_ID, access_token="acc", refresh_token="ref", issued_at=1, expires_at=1_800_000_000)


def _sessions(fake_rpc, fake_clock, account=None) -> SessionManager:
    account = account or AccountSecret(account_name="alice", steam_id=STEAM_ID, session=_session())
    return SessionManager(
        account,
        fake_rpc.transport(),
        codes=CodeGenerator(TimeSource(clock=fake_clock)),
        clock=fake_clock,
    )


def _add_response(status: int = 1):
    return new_message(
        "CTwoFactor_AddAuthenticator_Response",
        shared_secret=SHARED,
        identity_secret=b"\x02" * 20,
        secret_1=b"\x03" * 20,
        serial_number=42,
        revocation_code="R98765",
        uri="otpauth://totp/Steam:alice?secret=X",
        server_time=1_700_000_000,
        token_gid="gid",
        status=status,
    )


def test_add_authenticator_returns_unfinalized_account(fake_rpc, fake_clock):
    fake_rpc.on("TwoFactor", "AddAuthenticator", lambda req: _add_response())
    sessions = _sessions(fake_rpc, fake_clock)
    linker = AuthenticatorLinker(sessions, fake_rpc.transport(), TimeSource(clock=fake_clock))

    account = linker.add_authenticator()
    assert account.fully_enrolled is False
    assert account.secret("revocation_code") == "R98765"
    assert account.secret("shared_secret") == "AQEBAQEBAQEBAQEBAQEBAQEBAQE="
    assert account.serial_number == "42"
    assert account.device_id == generate_device_id(STEAM_ID)
    assert account.session == _session()

    _, _, req, http_req = fake_rpc.calls[0]
    assert req.steamid == STEAM_ID
    assert req.device_identifier == account.device_id
    assert http_req.url.params["access_token"] == "acc"


@pytest.mark.parametrize("status", [2, 29])
def test_add_authenticator_refusals(fake_rpc, fake_clock, status):
    fake_rpc.on("TwoFactor", "AddAuthenticator", lambda req: _add_response(status))
    linker = AuthenticatorLinker(_sessions(fake_rpc, fake_clock), fake_rpc.transport(), TimeSource(clock=fake_clock))
    with pytest.raises(ProtocolError):
        linker.add_authenticator()


def test_finalize_steps_time_while_platform_wants_more(fake_rpc, fake_clock):
    fake_rpc.on("TwoFactor", "AddAuthenticator", lambda req: _add_response())
    answers = iter([True, True, False])
    fake_rpc.on(
        "TwoFactor",
        "FinalizeAddAuthenticator",
        lambda req: new_message("CTwoFactor_FinalizeAddAuthenticator_Response", success=True, want_more=next(answers), status=1),
    )
    linker = AuthenticatorLinker(_sessions(fake_rpc, fake_clock), fake_rpc.transport(), TimeSource(clock=fake_clock))
    linker.add_authenticator()

    done = linker.finalize("SMS123")
    assert done.fully_enrolled is True

    reqs = [c[2] for c in fake_rpc.calls if c[1] == "FinalizeAddAuthenticator"]
    assert [r.authenticator_time for r in reqs] == [1_700_000_000, 1_700_000_030, 1_700_000_060]
    assert [r.authenticator_code for r in reqs] == [generate_login_code(SHARED, r.authenticator_time) for r in reqs]
    assert all(r.activation_code == "SMS123" for r in reqs)


def test_finalize_bad_activation_code(fake_rpc, fake_clock):
    fake_rpc.on("TwoFactor", "AddAuthenticator", lambda req: _add_response())
    fake_rpc.on(
        "TwoFactor",
        "FinalizeAddAuthenticator",
        lambda req: new_message("CTwoFactor_FinalizeAddAuthenticator_Response", success=False, status=89),
    )
    linker = AuthenticatorLinker(_sessions(fake_rpc, fake_clock), fake_rpc.transport(), TimeSource(clock=fake_clock))
    linker.add_authenticator()
    with pytest.raises(AuthFailed):
        linker.finalize("BAD")


def test_finalize_requires_add_first(fake_rpc, fake_clock):
    linker = AuthenticatorLinker(_sessions(fake_rpc, fake_clock), fake_rpc.transport(), TimeSource(clock=fake_clock))
    with pytest.raises(ConfigurationError):
        linker.finalize("X")


def test_remove_authenticator(fake_rpc, fake_clock):
    fake_rpc.on(
        "TwoFactor",
        "RemoveAuthenticator",
        lambda req: new_message("CTwoFactor_RemoveAuthenticator_Response", success=req.revocation_code == "R1"),
    )
    linker = AuthenticatorLinker(_sessions(fake_rpc, fake_clock), fake_rpc.transport(), TimeSource(clock=fake_clock))
    linker.remove_authenticator("R1")
    with pytest.raises(ProtocolError):
        linker.remove_authenticator("R2")
    with pytest.raises(ConfigurationError):
        linker.remove_authenticator("")


def test_phone_status_keeps_unknown_fields(fake_rpc, fake_clock):
    # has_phone=true plus an undeclared varint field 5
    raw = b"\x08\x01\x28\x07"
    fake_rpc.on("Phone", "AccountPhoneStatus", lambda req: httpx.Response(200, content=raw, headers={"x-eresult": "1"}))
    phone = PhoneClient(_sessions(fake_rpc, fake_clock), fake_rpc.transport())

    status = phone.account_phone_status()
    assert status.has_phone is True
    assert status.SerializeToString() == raw
    assert phone.has_phone() is True


def test_set_phone_number(fake_rpc, fake_clock):
    fake_rpc.on(
        "Phone",
        "SetAccountPhoneNumber",
        lambda req: new_message(
            "CPhone_SetAccountPhoneNumber_Response",
            confirmation_email_address="a***@example.com",
            phone_number_formatted="+1 555 0100",
        ),
    )
    phone = PhoneClient(_sessions(fake_rpc, fake_clock), fake_rpc.transport())
    assert phone.set_phone_number("5550100", "US") == ("a***@example.com", "+1 555 0100")
    req = fake_rpc.calls[0][2]
    assert req.phone_number == "5550100"
    assert req.phone_country_code == "US"


def test_parse_login_uri():
    req = parse_login_uri("https://s.team/q/1/123456789012345")
    assert (req.version, req.client_id) == (1, 123456789012345)
    with pytest.raises(ConfigurationError):
        parse_login_uri("https://example.com/q/1/2")


def test_approve_login_signs_request(fake_rpc, fake_clock):
    fake_rpc.on("Authentication", "UpdateAuthSessionWithMobileConfirmation", lambda req: None)
    account = AccountSecret(account_name="alice", steam_id=STEAM_ID, shared_secret="AQEBAQEBAQEBAQEBAQEBAQEBAQE=")

    approve_login("https://s.team/q/1/777", account, _session(), fake_rpc.transport())

    req = fake_rpc.calls[0][2]
    expected = hmac.new(SHARED, struct.pack("<HQQ", 1, 777, STEAM_ID), hashlib.sha256).digest()
    assert req.signature == expected
    assert req.confirm is True
    assert req.client_id == 777
    assert req.persistence == 1
