from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple
from uuid import uuid4

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from common.errors import ConfigurationError, GuardError, NetworkError

from .store import RECORD_SUFFIX, OptimisticLockError


logger = logging.getLogger("steamguard.store")

# Codes that retrying will not fix: bucket or credentials are wrong
_CONFIG_CODES = {"AccessDenied", "AllAccessDisabled", "NoSuchBucket", "InvalidAccessKeyId", "SignatureDoesNotMatch"}


@dataclass
class S3ObjectRef:
    bucket: str
    key: str


def _error_code(e: ClientError) -> Optional[str]:
    return e.response.get("Error", {}).get("Code")


def _storage_error(e: Exception, what: str) -> GuardError:
    code = _error_code(e) if isinstance(e, ClientError) else None
    if code in _CONFIG_CODES:
        return ConfigurationError(f"{what}: {code}")
    return NetworkError(f"{what}: {code or type(e).__name__}")


class S3Backend:
    """
    S3-backed record storage: one object per account under `prefix`.

    Usage
    - `read(key)` returns `(bytes, etag)` or None when the object is absent.
    - `write(key, data, if_match=None)` returns the new ETag. With `if_match`
      the write goes to a temp key and is COPYed over the destination with an
      If-Match precondition, so it lands only if nobody wrote in between.
    - Records arrive already encrypted by SecretCodec; this layer only moves
      bytes.
    - S3 failures surface as ConfigurationError (access, bucket) or
      NetworkError (anything else); a lost If-Match race as OptimisticLockError.
    """

    def __init__(
        self,
        *,
        bucket: str,
        prefix: str = "accounts/",
        s3: Optional[object] = None,
        region_name: Optional[str] = None,
    ) -> None:
        self._s3 = s3 or boto3.client("s3", region_name=region_name)
        self._bucket = bucket
        self._prefix = prefix if not prefix or prefix.endswith("/") else prefix + "/"

    def _ref(self, key: str) -> S3ObjectRef:
        return S3ObjectRef(bucket=self._bucket, key=f"{self._prefix}{key}{RECORD_SUFFIX}")

    def read(self, key: str) -> Optional[Tuple[bytes, Optional[str]]]:
        obj = self._ref(key)
        try:
            resp = self._s3.get_object(Bucket=obj.bucket, Key=obj.key)
            return resp["Body"].read(), resp.get("ETag")
        except ClientError as e:
            if _error_code(e) in ("NoSuchKey", "404"):
                return None
            raise _storage_error(e, f"read s3://{obj.bucket}/{obj.key}") from e
        except BotoCoreError as e:
            raise _storage_error(e, f"read s3://{obj.bucket}/{obj.key}") from e

    def _put(self, obj_key: str, data: bytes) -> dict:
        try:
            return self._s3.put_object(
                Bucket=self._bucket,
                Key=obj_key,
                Body=data,
                ContentType="application/json",
            )
        except (ClientError, BotoCoreError) as e:
            raise _storage_error(e, f"write s3://{self._bucket}/{obj_key}") from e

    def write(self, key: str, data: bytes, *, if_match: Optional[str] = None) -> Optional[str]:
        obj = self._ref(key)
        if if_match is None:
            return str(self._put(obj.key, data).get("ETag"))

        # PutObject has no If-Match: stage to a temp key, then conditional COPY.
        temp_key = f"{obj.key}.tmp-{uuid4().hex}"
        self._put(temp_key, data)
        try:
            resp = self._s3.copy_object(
                Bucket=obj.bucket,
                Key=obj.key,
                CopySource={"Bucket": obj.bucket, "Key": temp_key},
                IfMatch=if_match,
                MetadataDirective="COPY",
            )
        except ClientError as e:
            if _error_code(e) in ("PreconditionFailed", "412"):
                raise OptimisticLockError(f"ETag mismatch for s3://{obj.bucket}/{obj.key}") from e
            raise _storage_error(e, f"write s3://{obj.bucket}/{obj.key}") from e
        except BotoCoreError as e:
            raise _storage_error(e, f"write s3://{obj.bucket}/{obj.key}") from e
        finally:
            try:
                self._s3.delete_object(Bucket=obj.bucket, Key=temp_key)
            except (ClientError, BotoCoreError) as e:
                logger.warning("temp object cleanup failed for %s: %s", temp_key, type(e).__name__)

        return str(resp.get("CopyObjectResult", {}).get("ETag") or resp.get("ETag"))

    def delete(self, key: str) -> bool:
        obj = self._ref(key)
        if self.read(key) is None:
            return False
        try:
            self._s3.delete_object(Bucket=obj.bucket, Key=obj.key)
        except (ClientError, BotoCoreError) as e:
            raise _storage_error(e, f"delete s3://{obj.bucket}/{obj.key}") from e
        return True

    def list_keys(self) -> List[str]:
        keys: List[str] = []
        try:
            paginator = self._s3.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self._bucket, Prefix=self._prefix):
                for item in page.get("Contents", []):
                    name = item["Key"][len(self._prefix):]
                    if "/" in name or not name.endswith(RECORD_SUFFIX):
                        continue
                    keys.append(name[: -len(RECORD_SUFFIX)])
        except (ClientError, BotoCoreError) as e:
            raise _storage_error(e, f"list s3://{self._bucket}/{self._prefix}") from e
        return sorted(keys)


__all__ = ["S3Backend", "S3ObjectRef"]
