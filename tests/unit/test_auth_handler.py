from __future__ import annotations

import pytest
from cryptography.hazmat.primitives.asymmetric import rsa

from auth.handler import current_code, login
from common.errors import AuthFailed
from common.protobufs import new_message
from common.timesync import TimeSource
from state.codec import SecretCodec
from state.models import AccountSecret, Session
from state.store import AccountStore, FileBackend


STEAM_ID = 76561197960287930


@pytest.fixture(scope="module")
def rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture
def store(tmp_path, fast_kdf):
    store = AccountStore(FileBackend(tmp_path), SecretCodec(fast_kdf))
    old = Session(account_id=STEAM_ID, access_token="stale", refresh_token="stale-r", issued_at=1, expires_at=2)
    store.add(AccountSecret(account_name="alice", steam_id=STEAM_ID, session=old), "pw")
    store.add(AccountSecret(account_name="bob", steam_id=2, shared_secret="AAAAAAAAAAAAAAAAAAAAAA=="), "pw")
    return store


def _email_login(fake_rpc, rsa_key):
    pub = rsa_key.public_key().public_numbers()

    def begin(req):
        resp = new_message(
            "CAuthentication_BeginAuthSessionViaCredentials_Response",
            client_id=5,
            request_id=b"r",
            interval=0.1,
            steamid=STEAM_ID,
        )
        resp.allowed_confirmations.add(confirmation_type=2, associated_message="a***@mail")
        return resp

    fake_rpc.on(
        "Authentication",
        "GetPasswordRSAPublicKey",
        lambda req: new_message(
            "CAuthentication_GetPasswordRSAPublicKey_Response",
            publickey_mod=format(pub.n, "x"),
            publickey_exp=format(pub.e, "x"),
            timestamp=1,
        ),
    )
    fake_rpc.on("Authentication", "BeginAuthSessionViaCredentials", begin)
    fake_rpc.on(
        "Authentication",
        "UpdateAuthSessionWithSteamGuardCode",
        lambda req: None if req.code == "EMAIL" else (None, 65),
    )
    fake_rpc.on(
        "Authentication",
        "PollAuthSessionStatus",
        lambda req: new_message(
            "CAuthentication_PollAuthSessionStatus_Response", access_token="fresh", refresh_token="fresh-r"
        ),
    )


def test_login_prompts_until_code_accepted(store, fake_rpc, fake_clock, rsa_key):
    _email_login(fake_rpc, rsa_key)
    answers = iter(["typo", " EMAIL "])
    prompts = []

    def prompt(message):
        prompts.append(message)
        return next(answers)

    account = login(
        store, "alice", "pw", "hunter2", prompt, transport=fake_rpc.transport(), time_source=TimeSource(clock=fake_clock)
    )
    assert account.session.access_token.get_secret_value() == "fresh"
    assert len(prompts) == 2
    assert "email code" in prompts[0]
    assert store.load("alice", "pw").session.refresh_token.get_secret_value() == "fresh-r"


def test_login_cancelled_by_prompt(store, fake_rpc, fake_clock, rsa_key):
    _email_login(fake_rpc, rsa_key)
    with pytest.raises(AuthFailed):
        login(
            store, "alice", "pw", "hunter2", lambda m: None,
            transport=fake_rpc.transport(), time_source=TimeSource(clock=fake_clock),
        )
    # The stale session was dropped before the new login began
    assert store.load("alice", "pw").session is None


def test_current_code(store, fake_clock):
    assert current_code(store, "bob", "pw", time_source=TimeSource(clock=fake_clock)) == "THTN4"
