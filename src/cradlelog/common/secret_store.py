from __future__ import annotations

import os
import re
import secrets
from pathlib import Path
from typing import Callable, Dict, Optional, Protocol, runtime_checkable

import boto3
from botocore.exceptions import BotoCoreError, ClientError


ENV_PARAM_PREFIX = "CRADLELOG_PARAM_PREFIX"

_NAME_RE = re.compile(r"^[A-Za-z0-9_.\-]{1,128}$")


class SecretStoreError(RuntimeError):
    """The secret store could not be reached or refused the operation."""


@runtime_checkable
class SecretStore(Protocol):
    def get_or_create_secret(self, name: str) -> str: ...


def _generate_secret() -> str:
    # 256 bits, hex encoded
    return secrets.token_hex(32)


def _check_name(name: str) -> str:
    if not name or not _NAME_RE.match(name):
        raise ValueError(f"Invalid secret name: {name!r}")
    return name


class MemorySecretStore:
    """Process-local secrets; handy for tests and throwaway sessions."""

    def __init__(self, initial: Optional[Dict[str, str]] = None, *, generator: Callable[[], str] = _generate_secret) -> None:
        self._secrets: Dict[str, str] = dict(initial or {})
        self._generate = generator

    def get_or_create_secret(self, name: str) -> str:
        _check_name(name)
        if name not in self._secrets:
            self._secrets[name] = self._generate()
        return self._secrets[name]


class FileSecretStore:
    """
    One file per secret inside a private directory.

    Creation uses O_CREAT | O_EXCL, so when two processes race to create the
    same secret exactly one write lands and the loser re-reads the winner's
    value. Files are created with mode 0600.
    """

    def __init__(self, directory: os.PathLike[str] | str, *, generator: Callable[[], str] = _generate_secret) -> None:
        self._dir = Path(directory)
        self._generate = generator

    def _read(self, path: Path) -> Optional[str]:
        try:
            value = path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise SecretStoreError(f"Cannot read secret file {path}") from exc
        return value or None

    def get_or_create_secret(self, name: str) -> str:
        path = self._dir / _check_name(name)
        existing = self._read(path)
        if existing:
            return existing

        try:
            self._dir.mkdir(parents=True, exist_ok=True, mode=0o700)
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        except FileExistsError:
            # Another creator won the race
            winner = self._read(path)
            if not winner:
                raise SecretStoreError(f"Secret file {path} exists but is empty")
            return winner
        except OSError as exc:
            raise SecretStoreError(f"Cannot create secret file {path}") from exc

        value = self._generate()
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(value)
        return value


class SsmSecretStore:
    """
    Secrets kept in AWS SSM Parameter Store as SecureString parameters.

    - Parameter name is `{prefix}{name}`.
    - Creation uses `Overwrite=False`; `ParameterAlreadyExists` means another
      writer got there first, so the stored value is re-read and returned.
    """

    def __init__(self, prefix: str, *, ssm: Optional[object] = None, region_name: Optional[str] = None,
                 generator: Callable[[], str] = _generate_secret) -> None:
        if not prefix:
            raise ValueError("prefix is required")
        self._prefix = prefix
        self._ssm = ssm or boto3.client("ssm", region_name=region_name)
        self._generate = generator

    @classmethod
    def from_env(cls) -> "SsmSecretStore":
        prefix = os.environ.get(ENV_PARAM_PREFIX)
        if not prefix:
            raise RuntimeError(f"Missing required configuration: {ENV_PARAM_PREFIX}")
        return cls(prefix)

    def _fetch(self, full: str) -> Optional[str]:
        try:
            resp = self._ssm.get_parameter(Name=full, WithDecryption=True)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code == "ParameterNotFound":
                return None
            raise SecretStoreError(f"SSM get_parameter failed for {full}: {code}") from e
        except BotoCoreError as e:
            raise SecretStoreError(f"SSM unavailable while reading {full}") from e
        val = resp.get("Parameter", {}).get("Value")
        return val if isinstance(val, str) and val != "" else None

    def get_or_create_secret(self, name: str) -> str:
        full = f"{self._prefix}{_check_name(name)}"
        existing = self._fetch(full)
        if existing:
            return existing

        value = self._generate()
        try:
            self._ssm.put_parameter(Name=full, Value=value, Type="SecureString", Overwrite=False)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code != "ParameterAlreadyExists":
                raise SecretStoreError(f"SSM put_parameter failed for {full}: {code}") from e
            winner = self._fetch(full)
            if not winner:
                raise SecretStoreError(f"SSM parameter {full} exists but could not be read") from e
            return winner
        except BotoCoreError as e:
            raise SecretStoreError(f"SSM unavailable while creating {full}") from e
        return value
