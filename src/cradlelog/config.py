from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from cradlelog.common.crypto import DEFAULT_SECRET_NAME, FieldCodec
from cradlelog.common.remote import RemoteBackend
from cradlelog.common.secret_store import FileSecretStore, SecretStore, SsmSecretStore
from cradlelog.state.local_store import DEFAULT_NAMESPACE, LocalTableStore
from cradlelog.state.s3_substrate import S3Substrate
from cradlelog.state.substrate import JsonFileSubstrate, KeyValueSubstrate


ENV_NAMESPACE = "CRADLELOG_NAMESPACE"
ENV_DATA_FILE = "CRADLELOG_DATA_FILE"  # JSON file substrate; ignored when CRADLELOG_S3_BUCKET is set
ENV_S3_BUCKET = "CRADLELOG_S3_BUCKET"
ENV_S3_PREFIX = "CRADLELOG_S3_PREFIX"
ENV_FERNET_KEY = "CRADLELOG_FERNET_KEY"
ENV_SECRET_DIR = "CRADLELOG_SECRET_DIR"
ENV_PARAM_PREFIX = "CRADLELOG_PARAM_PREFIX"  # when set, secrets come from SSM instead of files
ENV_SECRET_NAME = "CRADLELOG_SECRET_NAME"
ENV_REMOTE_URL = "CRADLELOG_REMOTE_URL"
ENV_REMOTE_ANON_KEY = "CRADLELOG_REMOTE_ANON_KEY"

DEFAULT_DATA_FILE = os.path.join(".cradlelog", "store.json")
DEFAULT_SECRET_DIR = os.path.join(".cradlelog", "secrets")


def _getenv(name: str, default: Optional[str] = None) -> Optional[str]:
    v = os.environ.get(name)
    return v if v not in (None, "") else default


def _require(v: Optional[str], what: str) -> str:
    if not v:
        raise RuntimeError(f"Missing required configuration: {what}")
    return v


@dataclass(frozen=True)
class Settings:
    namespace: str = DEFAULT_NAMESPACE
    data_file: str = DEFAULT_DATA_FILE
    s3_bucket: Optional[str] = None
    s3_prefix: Optional[str] = None
    fernet_key: Optional[str] = None
    secret_dir: str = DEFAULT_SECRET_DIR
    param_prefix: Optional[str] = None
    secret_name: str = DEFAULT_SECRET_NAME
    remote_url: Optional[str] = None
    remote_anon_key: Optional[str] = None

    @classmethod
    def from_env(cls) -> "Settings":
        remote_url = _getenv(ENV_REMOTE_URL)
        remote_key = _getenv(ENV_REMOTE_ANON_KEY)
        if remote_url:
            remote_key = _require(remote_key, ENV_REMOTE_ANON_KEY)
        return cls(
            namespace=_getenv(ENV_NAMESPACE, DEFAULT_NAMESPACE) or DEFAULT_NAMESPACE,
            data_file=_getenv(ENV_DATA_FILE, DEFAULT_DATA_FILE) or DEFAULT_DATA_FILE,
            s3_bucket=_getenv(ENV_S3_BUCKET),
            s3_prefix=_getenv(ENV_S3_PREFIX),
            fernet_key=_getenv(ENV_FERNET_KEY),
            secret_dir=_getenv(ENV_SECRET_DIR, DEFAULT_SECRET_DIR) or DEFAULT_SECRET_DIR,
            param_prefix=_getenv(ENV_PARAM_PREFIX),
            secret_name=_getenv(ENV_SECRET_NAME, DEFAULT_SECRET_NAME) or DEFAULT_SECRET_NAME,
            remote_url=remote_url,
            remote_anon_key=remote_key,
        )


def build_substrate(settings: Settings) -> KeyValueSubstrate:
    if settings.s3_bucket:
        kwargs = {"bucket": settings.s3_bucket, "fernet_key": settings.fernet_key}
        if settings.s3_prefix:
            kwargs["prefix"] = settings.s3_prefix
        return S3Substrate(**kwargs)
    return JsonFileSubstrate(settings.data_file)


def build_store(settings: Settings, substrate: Optional[KeyValueSubstrate] = None) -> LocalTableStore:
    return LocalTableStore(substrate or build_substrate(settings), namespace=settings.namespace)


def build_secret_store(settings: Settings) -> SecretStore:
    if settings.param_prefix:
        return SsmSecretStore(settings.param_prefix)
    return FileSecretStore(settings.secret_dir)


def build_codec(settings: Settings, secret_store: Optional[SecretStore] = None) -> FieldCodec:
    return FieldCodec(secret_store or build_secret_store(settings), secret_name=settings.secret_name)


def build_remote(settings: Settings) -> Optional[RemoteBackend]:
    if not settings.remote_url:
        return None
    return RemoteBackend(settings.remote_url, _require(settings.remote_anon_key, ENV_REMOTE_ANON_KEY))
