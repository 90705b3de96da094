from __future__ import annotations

import pytest

from cradlelog import config
from cradlelog.common.secret_store import FileSecretStore, SsmSecretStore
from cradlelog.state.s3_substrate import S3Substrate
from cradlelog.state.substrate import JsonFileSubstrate


_ALL_VARS = (
    "CRADLELOG_NAMESPACE",
    "CRADLELOG_DATA_FILE",
    "CRADLELOG_S3_BUCKET",
    "CRADLELOG_S3_PREFIX",
    "CRADLELOG_FERNET_KEY",
    "CRADLELOG_SECRET_DIR",
    "CRADLELOG_PARAM_PREFIX",
    "CRADLELOG_SECRET_NAME",
    "CRADLELOG_REMOTE_URL",
    "CRADLELOG_REMOTE_ANON_KEY",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in _ALL_VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    s = config.Settings.from_env()
    assert s.namespace == "sb"
    assert s.secret_name == "ENCRYPTION_KEY"
    assert s.remote_url is None
    assert config.build_remote(s) is None


def test_empty_values_count_as_unset(monkeypatch):
    monkeypatch.setenv("CRADLELOG_NAMESPACE", "")
    assert config.Settings.from_env().namespace == "sb"


def test_remote_url_requires_anon_key(monkeypatch):
    monkeypatch.setenv("CRADLELOG_REMOTE_URL", "https://db.example.test")
    with pytest.raises(RuntimeError, match="CRADLELOG_REMOTE_ANON_KEY"):
        config.Settings.from_env()


def test_file_backed_store_and_codec(monkeypatch, tmp_path):
    monkeypatch.setenv("CRADLELOG_DATA_FILE", str(tmp_path / "store.json"))
    monkeypatch.setenv("CRADLELOG_SECRET_DIR", str(tmp_path / "secrets"))
    monkeypatch.setenv("CRADLELOG_NAMESPACE", "app")
    s = config.Settings.from_env()

    assert isinstance(config.build_substrate(s), JsonFileSubstrate)
    assert isinstance(config.build_secret_store(s), FileSecretStore)

    store = config.build_store(s)
    store.ensure_guest_id()
    assert store.keys.guest_id == "app:guestId"

    codec = config.build_codec(s)
    assert codec.decrypt(codec.encrypt("hi")) == "hi"
    assert (tmp_path / "secrets" / "ENCRYPTION_KEY").exists()


def test_s3_and_ssm_selected_by_env(monkeypatch):
    monkeypatch.setenv("CRADLELOG_S3_BUCKET", "bucket")
    monkeypatch.setenv("CRADLELOG_PARAM_PREFIX", "/cradlelog/dev/")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")
    s = config.Settings.from_env()

    assert isinstance(config.build_substrate(s), S3Substrate)
    assert isinstance(config.build_secret_store(s), SsmSecretStore)
