from __future__ import annotations

import base64

import httpx
import pytest

from common.errors import AuthorizationError, ConfigurationError, NetworkError, ProtocolError
from common.protobufs import MESSAGE_CLASSES, new_message
from common.transport import RetryPolicy, RpcTransport


def _time_response(server_time: int = 1_700_000_000) -> bytes:
    return new_message("CTwoFactor_Time_Response", server_time=server_time).SerializeToString()


def _transport(handler, sleeps=None, **kwargs) -> RpcTransport:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    sleep = sleeps.append if sleeps is not None else (lambda s: None)
    return RpcTransport(client=client, sleep=sleep, **kwargs)


def test_retries_connection_resets_then_succeeds():
    calls = {"count": 0}
    sleeps = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        if calls["count"] <= 3:
            raise httpx.ConnectError("connection reset", request=request)
        return httpx.Response(200, content=_time_response(), headers={"x-eresult": "1"})

    t = _transport(handler, sleeps)
    resp = t.call("TwoFactor", "QueryTime", new_message("CTwoFactor_Time_Request"))

    assert resp.server_time == 1_700_000_000
    assert calls["count"] == 4
    assert sleeps == [0.5, 1.0, 2.0]


def test_gives_up_after_max_attempts():
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(503)

    t = _transport(handler, policy=RetryPolicy(max_attempts=3))
    with pytest.raises(NetworkError):
        t.call("TwoFactor", "QueryTime", new_message("CTwoFactor_Time_Request"))
    assert calls["count"] == 3


def test_backoff_is_capped():
    sleeps = []

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    t = _transport(handler, sleeps, policy=RetryPolicy(max_attempts=7, initial_backoff=0.5, max_backoff=8.0))
    with pytest.raises(NetworkError):
        t.call("TwoFactor", "QueryTime", new_message("CTwoFactor_Time_Request"))
    assert sleeps == [0.5, 1.0, 2.0, 4.0, 8.0, 8.0]


def test_unauthorized_is_not_retried():
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(401)

    t = _transport(handler)
    with pytest.raises(AuthorizationError):
        t.call("Phone", "AccountPhoneStatus", new_message("CPhone_AccountPhoneStatus_Request"), access_token="tok")
    assert calls["count"] == 1


def test_envelope_for_post_and_get():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.method == "GET":
            body = new_message(
                "CAuthentication_GetPasswordRSAPublicKey_Response", publickey_mod="ab", publickey_exp="010001"
            ).SerializeToString()
        else:
            body = b""
        return httpx.Response(200, content=body)

    t = _transport(handler)
    t.call(
        "Phone",
        "VerifyAccountPhoneWithCode",
        new_message("CPhone_VerifyAccountPhoneWithCode_Request", code="12345"),
        access_token="tok",
    )
    key = t.call(
        "Authentication",
        "GetPasswordRSAPublicKey",
        new_message("CAuthentication_GetPasswordRSAPublicKey_Request", account_name="alice"),
    )

    post, get = seen
    assert post.method == "POST"
    assert post.url.path == "/IPhoneService/VerifyAccountPhoneWithCode/v1"
    assert post.url.params["access_token"] == "tok"
    assert b"input_protobuf_encoded=" in post.content

    assert get.method == "GET"
    raw = base64.b64decode(get.url.params["input_protobuf_encoded"])
    req = MESSAGE_CLASSES["CAuthentication_GetPasswordRSAPublicKey_Request"].FromString(raw)
    assert req.account_name == "alice"
    assert "access_token" not in get.url.params
    # No x-eresult header is read as OK
    assert key.publickey_exp == "010001"


def test_non_ok_eresult_raises_protocol_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"", headers={"x-eresult": "88", "x-error_message": "mismatch"})

    t = _transport(handler)
    with pytest.raises(ProtocolError) as ei:
        t.call("TwoFactor", "QueryTime", new_message("CTwoFactor_Time_Request"))
    assert ei.value.eresult == 88
    assert not isinstance(ei.value, AuthorizationError)


def test_token_rejection_eresult_is_authorization_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"", headers={"x-eresult": "21"})

    t = _transport(handler)
    with pytest.raises(AuthorizationError):
        t.call("Phone", "AccountPhoneStatus", new_message("CPhone_AccountPhoneStatus_Request"), access_token="tok")


def test_undecodable_body_is_protocol_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"\xff\xff\xff", headers={"x-eresult": "1"})

    t = _transport(handler)
    with pytest.raises(ProtocolError):
        t.call("TwoFactor", "QueryTime", new_message("CTwoFactor_Time_Request"))


def test_execute_returns_call_record():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=_time_response(5), headers={"x-eresult": "1"})

    t = _transport(handler)
    req = new_message("CTwoFactor_Time_Request", sender_time=3)
    resp, record = t.execute("TwoFactor", "QueryTime", req)
    assert resp.server_time == 5
    assert record.status == 1
    assert record.http_status == 200
    assert record.request_payload == req.SerializeToString()
    assert record.response_payload == _time_response(5)


def test_wrong_request_type_rejected():
    t = _transport(lambda r: httpx.Response(200))
    with pytest.raises(ConfigurationError):
        t.call("TwoFactor", "QueryTime", new_message("CTwoFactor_Status_Request"))
