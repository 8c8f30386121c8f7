"""
Platform RPC message schemas and the service/method registry.

Messages are proto2 with every field optional. Classes are generated at
import from the table below into a private descriptor pool, so unknown
fields the platform adds are kept on parse and re-emitted on serialize,
and absent fields read back as zero/empty.

Enum-typed fields on the platform side are declared as int32 here; the wire
encoding is identical and unrecognised values stay readable.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Tuple

from google.protobuf import descriptor_pb2, descriptor_pool, message_factory
from google.protobuf.message import Message

from .errors import ConfigurationError


_F = descriptor_pb2.FieldDescriptorProto

_SCALARS = {
    "bool": _F.TYPE_BOOL,
    "int32": _F.TYPE_INT32,
    "uint32": _F.TYPE_UINT32,
    "int64": _F.TYPE_INT64,
    "uint64": _F.TYPE_UINT64,
    "fixed64": _F.TYPE_FIXED64,
    "float": _F.TYPE_FLOAT,
    "string": _F.TYPE_STRING,
    "bytes": _F.TYPE_BYTES,
}

# (field name, field number, type[, "repeated"]); a non-scalar type names another message.
_SCHEMA: Dict[str, List[Tuple[Any, ...]]] = {
    # -- Phone --
    "CPhone_ConfirmAddPhoneToAccount_Request": [("steamid", 1, "fixed64"), ("stoken", 2, "string")],
    "CPhone_AddPhoneToAccount_Response": [("success", 1, "bool"), ("phone_number_type", 2, "int32")],
    "CPhone_IsAccountWaitingForEmailConfirmation_Request": [],
    "CPhone_IsAccountWaitingForEmailConfirmation_Response": [
        ("awaiting_email_confirmation", 1, "bool"),
        ("seconds_to_wait", 2, "uint32"),
    ],
    "CPhone_SendPhoneVerificationCode_Request": [("language", 1, "uint32")],
    "CPhone_SendPhoneVerificationCode_Response": [],
    "CPhone_SetAccountPhoneNumber_Request": [
        ("phone_number", 1, "string"),
        ("phone_country_code", 2, "string"),
    ],
    "CPhone_SetAccountPhoneNumber_Response": [
        ("confirmation_email_address", 1, "string"),
        ("phone_number_formatted", 2, "string"),
    ],
    "CPhone_VerifyAccountPhoneWithCode_Request": [("code", 1, "string")],
    "CPhone_VerifyAccountPhoneWithCode_Response": [],
    "CPhone_AccountPhoneStatus_Request": [],
    # Field 2 exists on the wire but is undocumented; it round-trips as an unknown field.
    "CPhone_AccountPhoneStatus_Response": [("has_phone", 1, "bool")],
    # -- Authentication --
    "CAuthentication_GetPasswordRSAPublicKey_Request": [("account_name", 1, "string")],
    "CAuthentication_GetPasswordRSAPublicKey_Response": [
        ("publickey_mod", 1, "string"),
        ("publickey_exp", 2, "string"),
        ("timestamp", 3, "uint64"),
    ],
    "CAuthentication_DeviceDetails": [
        ("device_friendly_name", 1, "string"),
        ("platform_type", 2, "int32"),
        ("os_type", 3, "int32"),
        ("gaming_device_type", 4, "uint32"),
    ],
    "CAuthentication_BeginAuthSessionViaCredentials_Request": [
        ("device_friendly_name", 1, "string"),
        ("account_name", 2, "string"),
        ("encrypted_password", 3, "string"),
        ("encryption_timestamp", 4, "uint64"),
        ("remember_login", 5, "bool"),
        ("platform_type", 6, "int32"),
        ("persistence", 7, "int32"),
        ("website_id", 8, "string"),
        ("device_details", 9, "CAuthentication_DeviceDetails"),
        ("guard_data", 10, "string"),
        ("language", 11, "uint32"),
        ("qos_level", 12, "int32"),
    ],
    "CAuthentication_AllowedConfirmation": [
        ("confirmation_type", 1, "int32"),
        ("associated_message", 2, "string"),
    ],
    "CAuthentication_BeginAuthSessionViaCredentials_Response": [
        ("client_id", 1, "uint64"),
        ("request_id", 2, "bytes"),
        ("interval", 3, "float"),
        ("allowed_confirmations", 4, "CAuthentication_AllowedConfirmation", "repeated"),
        ("steamid", 5, "uint64"),
        ("weak_token", 6, "string"),
        ("agreement_session_url", 7, "string"),
        ("extended_error_message", 8, "string"),
    ],
    "CAuthentication_UpdateAuthSessionWithSteamGuardCode_Request": [
        ("client_id", 1, "uint64"),
        ("steamid", 2, "fixed64"),
        ("code", 3, "string"),
        ("code_type", 4, "int32"),
    ],
    "CAuthentication_UpdateAuthSessionWithSteamGuardCode_Response": [
        ("agreement_session_url", 7, "string"),
    ],
    "CAuthentication_PollAuthSessionStatus_Request": [
        ("client_id", 1, "uint64"),
        ("request_id", 2, "bytes"),
        ("token_to_revoke", 3, "fixed64"),
    ],
    "CAuthentication_PollAuthSessionStatus_Response": [
        ("new_client_id", 1, "uint64"),
        ("new_challenge_url", 2, "string"),
        ("refresh_token", 3, "string"),
        ("access_token", 4, "string"),
        ("had_remote_interaction", 5, "bool"),
        ("account_name", 6, "string"),
        ("new_guard_data", 7, "string"),
        ("agreement_session_url", 8, "string"),
    ],
    "CAuthentication_AccessToken_GenerateForApp_Request": [
        ("refresh_token", 1, "string"),
        ("steamid", 2, "fixed64"),
        ("renewal_type", 3, "int32"),
    ],
    "CAuthentication_AccessToken_GenerateForApp_Response": [
        ("access_token", 1, "string"),
        ("refresh_token", 2, "string"),
    ],
    "CAuthentication_UpdateAuthSessionWithMobileConfirmation_Request": [
        ("version", 1, "int32"),
        ("client_id", 2, "uint64"),
        ("steamid", 3, "fixed64"),
        ("signature", 4, "bytes"),
        ("confirm", 5, "bool"),
        ("persistence", 6, "int32"),
    ],
    "CAuthentication_UpdateAuthSessionWithMobileConfirmation_Response": [],
    # -- TwoFactor --
    "CTwoFactor_Time_Request": [("sender_time", 1, "uint64")],
    "CTwoFactor_Time_Response": [
        ("server_time", 1, "uint64"),
        ("skew_tolerance_seconds", 2, "uint64"),
        ("large_time_jink", 3, "uint64"),
        ("probe_frequency_seconds", 4, "uint32"),
        ("adjusted_time_probe_frequency_seconds", 5, "uint32"),
        ("hint_probe_frequency_seconds", 6, "uint32"),
        ("sync_timeout", 7, "uint32"),
        ("try_again_seconds", 8, "uint32"),
        ("max_attempts", 9, "uint32"),
    ],
    "CTwoFactor_AddAuthenticator_Request": [
        ("steamid", 1, "fixed64"),
        ("authenticator_time", 2, "uint64"),
        ("serial_number", 3, "fixed64"),
        ("authenticator_type", 4, "uint32"),
        ("device_identifier", 5, "string"),
        ("sms_phone_id", 6, "string"),
        ("http_headers", 7, "string", "repeated"),
        ("version", 8, "uint32"),
    ],
    "CTwoFactor_AddAuthenticator_Response": [
        ("shared_secret", 1, "bytes"),
        ("serial_number", 2, "fixed64"),
        ("revocation_code", 3, "string"),
        ("uri", 4, "string"),
        ("server_time", 5, "uint64"),
        ("account_name", 6, "string"),
        ("token_gid", 7, "string"),
        ("identity_secret", 8, "bytes"),
        ("secret_1", 9, "bytes"),
        ("status", 10, "int32"),
        ("phone_number_hint", 11, "string"),
        ("confirm_type", 12, "int32"),
    ],
    "CTwoFactor_FinalizeAddAuthenticator_Request": [
        ("steamid", 1, "fixed64"),
        ("authenticator_code", 2, "string"),
        ("authenticator_time", 3, "uint64"),
        ("activation_code", 4, "string"),
        ("http_headers", 5, "string", "repeated"),
        ("validate_sms_code", 6, "bool"),
    ],
    "CTwoFactor_FinalizeAddAuthenticator_Response": [
        ("success", 1, "bool"),
        ("want_more", 2, "bool"),
        ("server_time", 3, "uint64"),
        ("status", 4, "int32"),
    ],
    "CTwoFactor_RemoveAuthenticator_Request": [
        ("revocation_code", 2, "string"),
        ("revocation_reason", 5, "uint32"),
        ("steamguard_scheme", 6, "uint32"),
        ("remove_all_steamguard_cookies", 7, "bool"),
    ],
    "CTwoFactor_RemoveAuthenticator_Response": [
        ("success", 1, "bool"),
        ("server_time", 3, "uint64"),
        ("revocation_attempts_remaining", 5, "uint32"),
    ],
    "CTwoFactor_Status_Request": [("steamid", 1, "fixed64")],
    "CTwoFactor_Status_Response": [
        ("state", 1, "uint32"),
        ("inactivation_reason", 2, "uint32"),
        ("authenticator_type", 3, "uint32"),
        ("authenticator_allowed", 4, "bool"),
        ("steamguard_scheme", 5, "uint32"),
        ("token_gid", 6, "string"),
        ("email_validated", 7, "bool"),
        ("device_identifier", 8, "string"),
        ("time_created", 9, "uint32"),
        ("revocation_attempts_remaining", 10, "uint32"),
        ("classified_agent", 11, "string"),
        ("allow_external_authenticator", 12, "bool"),
        ("time_transferred", 13, "uint32"),
    ],
}


@dataclass(frozen=True)
class MethodSpec:
    service: str
    method: str
    request: str
    response: str
    http_method: str = "POST"

    @property
    def path(self) -> str:
        return f"I{self.service}Service/{self.method}/v1"


def _m(service: str, method: str, request: str, response: str, http_method: str = "POST") -> MethodSpec:
    return MethodSpec(service, method, request, response, http_method)


METHODS: Dict[Tuple[str, str], MethodSpec] = {
    (s.service, s.method): s
    for s in [
        _m("Phone", "ConfirmAddPhoneToAccount",
           "CPhone_ConfirmAddPhoneToAccount_Request", "CPhone_AddPhoneToAccount_Response"),
        _m("Phone", "IsAccountWaitingForEmailConfirmation",
           "CPhone_IsAccountWaitingForEmailConfirmation_Request",
           "CPhone_IsAccountWaitingForEmailConfirmation_Response"),
        _m("Phone", "SendPhoneVerificationCode",
           "CPhone_SendPhoneVerificationCode_Request", "CPhone_SendPhoneVerificationCode_Response"),
        _m("Phone", "SetAccountPhoneNumber",
           "CPhone_SetAccountPhoneNumber_Request", "CPhone_SetAccountPhoneNumber_Response"),
        _m("Phone", "VerifyAccountPhoneWithCode",
           "CPhone_VerifyAccountPhoneWithCode_Request", "CPhone_VerifyAccountPhoneWithCode_Response"),
        _m("Phone", "AccountPhoneStatus",
           "CPhone_AccountPhoneStatus_Request", "CPhone_AccountPhoneStatus_Response"),
        _m("Authentication", "GetPasswordRSAPublicKey",
           "CAuthentication_GetPasswordRSAPublicKey_Request",
           "CAuthentication_GetPasswordRSAPublicKey_Response", "GET"),
        _m("Authentication", "BeginAuthSessionViaCredentials",
           "CAuthentication_BeginAuthSessionViaCredentials_Request",
           "CAuthentication_BeginAuthSessionViaCredentials_Response"),
        _m("Authentication", "UpdateAuthSessionWithSteamGuardCode",
           "CAuthentication_UpdateAuthSessionWithSteamGuardCode_Request",
           "CAuthentication_UpdateAuthSessionWithSteamGuardCode_Response"),
        _m("Authentication", "PollAuthSessionStatus",
           "CAuthentication_PollAuthSessionStatus_Request",
           "CAuthentication_PollAuthSessionStatus_Response"),
        _m("Authentication", "GenerateAccessTokenForApp",
           "CAuthentication_AccessToken_GenerateForApp_Request",
           "CAuthentication_AccessToken_GenerateForApp_Response"),
        _m("Authentication", "UpdateAuthSessionWithMobileConfirmation",
           "CAuthentication_UpdateAuthSessionWithMobileConfirmation_Request",
           "CAuthentication_UpdateAuthSessionWithMobileConfirmation_Response"),
        _m("TwoFactor", "QueryTime", "CTwoFactor_Time_Request", "CTwoFactor_Time_Response"),
        _m("TwoFactor", "AddAuthenticator",
           "CTwoFactor_AddAuthenticator_Request", "CTwoFactor_AddAuthenticator_Response"),
        _m("TwoFactor", "FinalizeAddAuthenticator",
           "CTwoFactor_FinalizeAddAuthenticator_Request", "CTwoFactor_FinalizeAddAuthenticator_Response"),
        _m("TwoFactor", "RemoveAuthenticator",
           "CTwoFactor_RemoveAuthenticator_Request", "CTwoFactor_RemoveAuthenticator_Response"),
        _m("TwoFactor", "QueryStatus", "CTwoFactor_Status_Request", "CTwoFactor_Status_Response"),
    ]
}


def _build_file() -> descriptor_pb2.FileDescriptorProto:
    fdp = descriptor_pb2.FileDescriptorProto(name="steamguard_bot/services.proto", syntax="proto2")
    for msg_name, fields in _SCHEMA.items():
        msg = fdp.message_type.add(name=msg_name)
        for spec in fields:
            name, number, ftype = spec[0], spec[1], spec[2]
            repeated = len(spec) > 3 and spec[3] == "repeated"
            field = msg.field.add(
                name=name,
                number=number,
                label=_F.LABEL_REPEATED if repeated else _F.LABEL_OPTIONAL,
            )
            if ftype in _SCALARS:
                field.type = _SCALARS[ftype]
            else:
                field.type = _F.TYPE_MESSAGE
                field.type_name = f".{ftype}"
    return fdp


_POOL = descriptor_pool.DescriptorPool()
_POOL.AddSerializedFile(_build_file().SerializeToString())

MESSAGE_CLASSES: Dict[str, type] = {
    name: message_factory.GetMessageClass(_POOL.FindMessageTypeByName(name)) for name in _SCHEMA
}


def new_message(name: str, **fields: Any) -> Message:
    """Instantiate a registered message type, e.g. `new_message("CPhone_VerifyAccountPhoneWithCode_Request", code="123")`."""
    try:
        cls = MESSAGE_CLASSES[name]
    except KeyError:
        raise ConfigurationError(f"unknown message type: {name}") from None
    return cls(**fields)


def method_spec(service: str, method: str) -> MethodSpec:
    try:
        return METHODS[(service, method)]
    except KeyError:
        raise ConfigurationError(f"unknown RPC method: {service}/{method}") from None


__all__ = ["MethodSpec", "METHODS", "MESSAGE_CLASSES", "new_message", "method_spec"]
