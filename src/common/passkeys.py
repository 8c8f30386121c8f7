"""
Passkey sources: where the passphrase for an account's record comes from.

These stand in for an OS keyring. Each source yields (and optionally stores)
a passphrase-equivalent string by account name; `None` means "not found",
and callers fall back to asking the operator.
"""
from __future__ import annotations

import logging
import os
from typing import Optional, Protocol

from .config import _getenv, _require
from .errors import ConfigurationError, NetworkError


logger = logging.getLogger("steamguard.passkeys")


class PasskeySource(Protocol):
    def get(self, account_name: str) -> Optional[str]: ...

    def store(self, account_name: str, passkey: str) -> None: ...


class EnvPasskeySource:
    """One passphrase for every account, read from an environment variable."""

    def __init__(self, var: str = "GUARD_PASSKEY") -> None:
        self._var = var

    def get(self, account_name: str) -> Optional[str]:  # noqa: ARG002
        # Empty string is a valid passphrase when set explicitly
        return os.environ.get(self._var)

    def store(self, account_name: str, passkey: str) -> None:  # noqa: ARG002
        raise ConfigurationError("environment passkeys are read-only")


class SsmPasskeySource:
    """
    Passphrases kept as SSM SecureString parameters.

    `name_template` may contain `{account}`; without it every account shares
    one parameter.
    """

    def __init__(self, name_template: str, *, ssm: Optional[object] = None, region_name: Optional[str] = None) -> None:
        _require(name_template, "SSM parameter name")
        if ssm is None:
            import boto3

            ssm = boto3.client("ssm", region_name=region_name)
        self._ssm = ssm
        self._template = name_template

    def _name(self, account_name: str) -> str:
        return self._template.format(account=account_name)

    def get(self, account_name: str) -> Optional[str]:
        from botocore.exceptions import BotoCoreError, ClientError

        name = self._name(account_name)
        try:
            resp = self._ssm.get_parameter(Name=name, WithDecryption=True)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code in ("ParameterNotFound", "AccessDeniedException"):
                logger.info("passkey parameter unavailable for account=%s (%s)", account_name, code)
                return None
            raise NetworkError(f"SSM get_parameter failed for account {account_name}: {code}") from e
        except BotoCoreError as e:
            raise NetworkError(f"SSM get_parameter failed for account {account_name}: {type(e).__name__}") from e
        val = resp.get("Parameter", {}).get("Value")
        return val if isinstance(val, str) else None

    def store(self, account_name: str, passkey: str) -> None:
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            self._ssm.put_parameter(
                Name=self._name(account_name),
                Value=passkey,
                Type="SecureString",
                Overwrite=True,
            )
        except (ClientError, BotoCoreError) as e:
            raise NetworkError(f"SSM put_parameter failed for account {account_name}: {type(e).__name__}") from e
        logger.info("passkey stored for account=%s", account_name)


def passkey_source_from_env(param: Optional[str] = None) -> PasskeySource:
    """SSM when GUARD_PASSKEY_PARAM (or `param`) is set, else GUARD_PASSKEY."""
    name = param or _getenv("GUARD_PASSKEY_PARAM")
    if name:
        return SsmPasskeySource(name)
    return EnvPasskeySource()


__all__ = ["PasskeySource", "EnvPasskeySource", "SsmPasskeySource", "passkey_source_from_env"]
