from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

import boto3
from botocore.exceptions import ClientError
from cryptography.fernet import Fernet, InvalidToken

from .substrate import SubstrateError


# Environment variable names for convenience configuration
ENV_BUCKET = "CRADLELOG_S3_BUCKET"
ENV_PREFIX = "CRADLELOG_S3_PREFIX"
ENV_FERNET_KEY = "CRADLELOG_FERNET_KEY"

DEFAULT_PREFIX = "cradlelog/"


def _to_fernet(key: str | bytes) -> Fernet:
    """Construct a Fernet instance from a user-provided key.

    The key must be a URL-safe base64-encoded 32-byte key (str or bytes),
    as returned by `cryptography.fernet.Fernet.generate_key()`.
    """
    if isinstance(key, str):
        key_bytes = key.encode("utf-8")
    else:
        key_bytes = key
    return Fernet(key_bytes)


def _is_missing(err: ClientError) -> bool:
    code = err.response.get("Error", {}).get("Code")
    return code in ("NoSuchKey", "404", "NotFound")


@dataclass
class S3Location:
    bucket: str
    prefix: str

    def object_key(self, key: str) -> str:
        # Substrate keys contain ':' which S3 accepts as-is
        return f"{self.prefix}{key}"


class S3Substrate:
    """
    S3-backed key-value substrate: one object per key under a prefix.

    Usage
    - Provide bucket/prefix and, optionally, a Fernet key; when a key is given,
      every value is encrypted at rest before it is uploaded.
    - `get_string()` returns None when the object does not exist.
    - `remove_string()` is idempotent (S3 deletes of missing keys succeed).

    Environment variables (optional)
    - `CRADLELOG_S3_BUCKET`:  bucket holding the objects
    - `CRADLELOG_S3_PREFIX`:  object key prefix (default "cradlelog/")
    - `CRADLELOG_FERNET_KEY`: urlsafe base64-encoded key for Fernet
    """

    def __init__(
        self,
        *,
        s3: Optional[object] = None,
        bucket: str,
        prefix: str = DEFAULT_PREFIX,
        fernet_key: str | bytes | None = None,
        region_name: Optional[str] = None,
    ) -> None:
        self._s3 = s3 or boto3.client("s3", region_name=region_name)
        self._loc = S3Location(bucket=bucket, prefix=prefix)
        self._fernet = _to_fernet(fernet_key) if fernet_key else None

    @classmethod
    def from_env(cls) -> "S3Substrate":
        bucket = os.environ.get(ENV_BUCKET)
        if not bucket:
            raise RuntimeError(
                f"Missing required environment variables for S3 substrate: {ENV_BUCKET}"
            )
        prefix = os.environ.get(ENV_PREFIX) or DEFAULT_PREFIX
        fkey = os.environ.get(ENV_FERNET_KEY) or None
        return cls(bucket=bucket, prefix=prefix, fernet_key=fkey)

    def get_string(self, key: str) -> Optional[str]:
        """Fetch and (if configured) decrypt a value.

        Raises:
        - SubstrateError if decryption fails or the bytes are not UTF-8.
        - botocore.exceptions.ClientError for S3 issues other than a missing key.
        """
        try:
            resp = self._s3.get_object(Bucket=self._loc.bucket, Key=self._loc.object_key(key))
        except ClientError as e:
            if _is_missing(e):
                return None
            raise

        body = resp["Body"].read()
        if self._fernet is not None:
            try:
                body = self._fernet.decrypt(body)
            except InvalidToken as ex:
                raise SubstrateError(f"Failed to decrypt value for {key!r}: invalid Fernet token") from ex
        try:
            return body.decode("utf-8")
        except UnicodeDecodeError as ex:
            raise SubstrateError(f"Stored value for {key!r} is not UTF-8") from ex

    def set_string(self, key: str, value: str) -> None:
        payload = value.encode("utf-8")
        if self._fernet is not None:
            payload = self._fernet.encrypt(payload)
        self._s3.put_object(
            Bucket=self._loc.bucket,
            Key=self._loc.object_key(key),
            Body=payload,
            ContentType="application/octet-stream",
        )

    def remove_string(self, key: str) -> None:
        try:
            self._s3.delete_object(Bucket=self._loc.bucket, Key=self._loc.object_key(key))
        except ClientError as e:
            if _is_missing(e):
                return
            raise
