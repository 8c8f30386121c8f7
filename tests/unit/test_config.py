from __future__ import annotations

import pytest
from botocore.exceptions import ClientError

from common.config import GuardConfig
from common.errors import ConfigurationError, NetworkError
from common.passkeys import EnvPasskeySource, SsmPasskeySource, passkey_source_from_env


def test_from_env_defaults(monkeypatch):
    for var in ("GUARD_AUTO_ACCEPT", "GUARD_AUTO_DENY", "GUARD_STATE_BUCKET", "GUARD_MAX_ATTEMPTS"):
        monkeypatch.delenv(var, raising=False)
    cfg = GuardConfig.from_env()
    assert cfg.max_attempts == 5
    assert cfg.auto_accept == []
    assert cfg.state_bucket is None


def test_from_env_parses_lists(monkeypatch):
    monkeypatch.setenv("GUARD_AUTO_ACCEPT", "Trade, market")
    monkeypatch.setenv("GUARD_AUTO_DENY", "unknown")
    monkeypatch.setenv("GUARD_MAX_ATTEMPTS", "3")
    cfg = GuardConfig.from_env()
    assert cfg.auto_accept == ["trade", "market"]
    assert cfg.auto_deny == ["unknown"]
    assert cfg.max_attempts == 3


@pytest.mark.parametrize(
    "env",
    [
        {"GUARD_AUTO_ACCEPT": "gift"},
        {"GUARD_AUTO_ACCEPT": "trade", "GUARD_AUTO_DENY": "trade"},
        {"GUARD_HTTP_TIMEOUT": "0"},
    ],
)
def test_from_env_rejects_bad_values(monkeypatch, env):
    for k, v in env.items():
        monkeypatch.setenv(k, v)
    with pytest.raises(ConfigurationError):
        GuardConfig.from_env()


class _FakeSsm:
    def __init__(self):
        self.params = {}

    def get_parameter(self, *, Name, WithDecryption):
        assert WithDecryption is True
        if Name not in self.params:
            raise ClientError({"Error": {"Code": "ParameterNotFound"}}, "GetParameter")
        return {"Parameter": {"Value": self.params[Name]}}

    def put_parameter(self, *, Name, Value, Type, Overwrite):
        assert Type == "SecureString"
        self.params[Name] = Value


def test_ssm_passkeys_per_account():
    ssm = _FakeSsm()
    source = SsmPasskeySource("/guard/{account}", ssm=ssm)
    assert source.get("alice") is None
    source.store("alice", "s3cret")
    assert ssm.params == {"/guard/alice": "s3cret"}
    assert source.get("alice") == "s3cret"


def test_env_passkeys(monkeypatch):
    monkeypatch.delenv("GUARD_PASSKEY_PARAM", raising=False)
    monkeypatch.setenv("GUARD_PASSKEY", "pw")
    source = passkey_source_from_env()
    assert isinstance(source, EnvPasskeySource)
    assert source.get("anyone") == "pw"
    with pytest.raises(ConfigurationError):
        source.store("anyone", "x")


def test_ssm_failures_are_wrapped():
    class _Broken(_FakeSsm):
        def get_parameter(self, *, Name, WithDecryption):
            raise ClientError({"Error": {"Code": "ThrottlingException"}}, "GetParameter")

    source = SsmPasskeySource("/guard/{account}", ssm=_Broken())
    with pytest.raises(NetworkError):
        source.get("alice")
