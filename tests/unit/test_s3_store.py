from __future__ import annotations

import hashlib

import pytest
from botocore.exceptions import ClientError

from common.errors import ConfigurationError, NetworkError
from state.codec import SecretCodec
from state.models import AccountSecret
from state.s3_store import S3Backend
from state.store import AccountStore, OptimisticLockError


class _FakeBody:
    def __init__(self, data: bytes) -> None:
        self._data = data

    def read(self) -> bytes:
        return self._data


class _FakePaginator:
    def __init__(self, s3: "_FakeS3") -> None:
        self._s3 = s3

    def paginate(self, *, Bucket: str, Prefix: str):
        keys = sorted(k for (b, k) in self._s3._store if b == Bucket and k.startswith(Prefix))
        yield {"Contents": [{"Key": k} for k in keys]} if keys else {}


class _FakeS3:
    def __init__(self) -> None:
        self._store = {}  # (bucket, key) -> {Body: bytes, ETag: str}

    @staticmethod
    def _etag(body: bytes) -> str:
        return f'"{hashlib.md5(body).hexdigest()}"'

    def put_object(self, *, Bucket: str, Key: str, Body: bytes, ContentType: str):
        etag = self._etag(Body)
        self._store[(Bucket, Key)] = {"Body": Body, "ETag": etag}
        return {"ETag": etag}

    def get_object(self, *, Bucket: str, Key: str):
        item = self._store.get((Bucket, Key))
        if not item:
            raise ClientError({"Error": {"Code": "NoSuchKey"}}, "GetObject")
        return {"Body": _FakeBody(item["Body"]), "ETag": item["ETag"]}

    def copy_object(self, *, Bucket: str, Key: str, CopySource, IfMatch=None, MetadataDirective=None):
        # Enforce destination precondition
        dest_item = self._store.get((Bucket, Key))
        if IfMatch is not None and (not dest_item or dest_item.get("ETag") != IfMatch):
            raise ClientError({"Error": {"Code": "PreconditionFailed"}}, "CopyObject")

        src_item = self._store.get((CopySource["Bucket"], CopySource["Key"]))
        if not src_item:
            raise ClientError({"Error": {"Code": "NoSuchKey"}}, "CopyObject")
        body = src_item["Body"]
        etag = self._etag(body)
        self._store[(Bucket, Key)] = {"Body": body, "ETag": etag}
        return {"CopyObjectResult": {"ETag": etag}}

    def delete_object(self, *, Bucket: str, Key: str):
        self._store.pop((Bucket, Key), None)
        return {}

    def get_paginator(self, name: str):
        assert name == "list_objects_v2"
        return _FakePaginator(self)


def test_read_missing_returns_none():
    backend = S3Backend(s3=_FakeS3(), bucket="b")
    assert backend.read("alice") is None


def test_write_and_read_roundtrip():
    s3 = _FakeS3()
    backend = S3Backend(s3=s3, bucket="b", prefix="accounts")

    etag = backend.write("alice", b"record")
    data, read_etag = backend.read("alice")
    assert data == b"record"
    assert read_etag == etag
    assert ("b", "accounts/alice.json") in s3._store


def test_conditional_write_succeeds_when_etag_matches():
    s3 = _FakeS3()
    backend = S3Backend(s3=s3, bucket="b")

    etag1 = backend.write("alice", b"one")
    etag2 = backend.write("alice", b"two", if_match=etag1)
    assert etag2 != etag1
    assert backend.read("alice") == (b"two", etag2)
    # Temp object cleaned up
    assert [k for (_, k) in s3._store] == ["accounts/alice.json"]


def test_conditional_write_raises_on_conflict():
    s3 = _FakeS3()
    writer1 = S3Backend(s3=s3, bucket="b")
    writer2 = S3Backend(s3=s3, bucket="b")

    etag1 = writer1.write("alice", b"one")
    writer1.write("alice", b"two", if_match=etag1)
    with pytest.raises(OptimisticLockError):
        writer2.write("alice", b"three", if_match=etag1)
    assert writer1.read("alice")[0] == b"two"


def test_list_and_delete():
    s3 = _FakeS3()
    backend = S3Backend(s3=s3, bucket="b")
    backend.write("bob", b"x")
    backend.write("alice", b"y")
    s3.put_object(Bucket="b", Key="accounts/nested/skip.json", Body=b"z", ContentType="")

    assert backend.list_keys() == ["alice", "bob"]
    assert backend.delete("bob") is True
    assert backend.delete("bob") is False
    assert backend.list_keys() == ["alice"]


def test_account_store_on_s3(fast_kdf):
    store = AccountStore(S3Backend(s3=_FakeS3(), bucket="b"), SecretCodec(fast_kdf))
    account = AccountSecret(account_name="Alice", steam_id=1, shared_secret="AAAAAAAAAAAAAAAAAAAAAA==")
    store.add(account, "pw")
    store.update("alice", "pw", lambda a: a.model_copy(update={"server_time": 9}))

    loaded = store.load("alice", "pw")
    assert loaded.server_time == 9
    assert store.names() == ["alice"]


class _DeniedS3(_FakeS3):
    def get_object(self, *, Bucket: str, Key: str):
        raise ClientError({"Error": {"Code": "AccessDenied"}}, "GetObject")

    def put_object(self, *, Bucket: str, Key: str, Body: bytes, ContentType: str):
        raise ClientError({"Error": {"Code": "SlowDown"}}, "PutObject")


def test_s3_errors_are_wrapped():
    backend = S3Backend(s3=_DeniedS3(), bucket="b")
    with pytest.raises(ConfigurationError) as ei:
        backend.read("alice")
    assert isinstance(ei.value.__cause__, ClientError)
    with pytest.raises(NetworkError):
        backend.write("alice", b"x")
