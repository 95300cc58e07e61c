"""Tests for credential persistence."""

import json
import os
import stat
from datetime import datetime, timezone

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from sessionlife.config import CredentialBackend, Settings
from sessionlife.service.controller import build_credential_store
from sessionlife.storage.credentials import (
    FileCredentialStore,
    MemoryCredentialStore,
    RedisCredentialStore,
)
from sessionlife.storage.errors import CredentialStoreError
from sessionlife.storage.models import Credential


class FakeRedis:
    """Minimal in-memory stand-in for the redis client calls the store makes."""

    def __init__(self):
        self.data = {}
        self.expiry = {}
        self.fail_with = None

    def get(self, key):
        return self.data.get(key)

    def set(self, key, value, ex=None):
        if self.fail_with is not None:
            raise self.fail_with
        self.data[key] = value
        self.expiry[key] = ex
        return True

    def delete(self, key):
        if self.fail_with is not None:
            raise self.fail_with
        self.data.pop(key, None)
        self.expiry.pop(key, None)
        return 1


@pytest.fixture
def issued():
    return datetime(2026, 3, 1, 12, 30, tzinfo=timezone.utc)


class TestCredentialModel:
    def test_dict_form_keeps_every_field(self, issued):
        credential = Credential(token="abc", version=3, issued_at=issued, subject="7")
        assert Credential.from_dict(credential.to_dict()) == credential

    def test_naive_timestamp_is_read_as_utc(self):
        restored = Credential.from_dict({"token": "abc", "issued_at": "2026-03-01T12:30:00"})
        assert restored.issued_at.tzinfo is timezone.utc
        assert restored.version == 0


class TestMemoryStore:
    def test_replace_and_clear(self):
        store = MemoryCredentialStore()
        assert store.current() is None
        assert store.version == 0

        store.replace(Credential(token="a", version=4))
        assert store.version == 4
        store.clear()
        assert store.current() is None


class TestFileStore:
    def test_survives_reload(self, tmp_path, issued):
        path = tmp_path / "state" / "credential.json"
        store = FileCredentialStore(path)
        credential = Credential(token="persisted", version=2, issued_at=issued)
        store.replace(credential)

        assert FileCredentialStore(path).current() == credential

    def test_file_is_private(self, tmp_path):
        path = tmp_path / "credential.json"
        FileCredentialStore(path).replace(Credential(token="secret-token"))

        mode = stat.S_IMODE(os.stat(path).st_mode)
        assert mode == 0o600

    def test_clear_removes_file(self, tmp_path):
        path = tmp_path / "credential.json"
        store = FileCredentialStore(path)
        store.replace(Credential(token="x"))
        store.clear()

        assert not path.exists()
        store.clear()

    def test_corrupt_file_is_ignored(self, tmp_path):
        path = tmp_path / "credential.json"
        path.write_text("{not json")
        assert FileCredentialStore(path).current() is None

    def test_file_missing_token_is_ignored(self, tmp_path):
        path = tmp_path / "credential.json"
        path.write_text(json.dumps({"version": 1}))
        assert FileCredentialStore(path).current() is None

    def test_write_failure_raises_store_error(self, tmp_path):
        path = tmp_path / "credential.json"
        store = FileCredentialStore(path)
        os.chmod(tmp_path, 0o500)
        try:
            if os.access(tmp_path, os.W_OK):
                pytest.skip("running with privileges that ignore directory permissions")
            with pytest.raises(CredentialStoreError) as excinfo:
                store.replace(Credential(token="x"))
            assert excinfo.value.detail["path"] == str(path)
        finally:
            os.chmod(tmp_path, 0o700)


class TestRedisStore:
    def test_round_trip_through_client(self, issued):
        client = FakeRedis()
        store = RedisCredentialStore(client, key="test:cred", ttl_seconds=3600)
        credential = Credential(token="cached", version=9, issued_at=issued, subject="11")
        store.replace(credential)

        assert client.expiry["test:cred"] == 3600
        assert RedisCredentialStore(client, key="test:cred").current() == credential

    def test_clear_deletes_key(self):
        client = FakeRedis()
        store = RedisCredentialStore(client, key="test:cred")
        store.replace(Credential(token="x"))
        store.clear()
        assert "test:cred" not in client.data

    def test_invalid_payload_is_ignored(self):
        client = FakeRedis()
        client.data["test:cred"] = "[]"
        assert RedisCredentialStore(client, key="test:cred").current() is None

    def test_write_failure_raises_store_error(self):
        client = FakeRedis()
        store = RedisCredentialStore(client, key="test:cred")
        client.fail_with = RedisConnectionError("connection refused")

        with pytest.raises(CredentialStoreError) as excinfo:
            store.replace(Credential(token="x", version=1))
        assert excinfo.value.detail["key"] == "test:cred"
        # The live credential is still usable for this process
        assert store.current() == Credential(token="x", version=1)

    def test_delete_failure_raises_store_error(self):
        client = FakeRedis()
        store = RedisCredentialStore(client, key="test:cred")
        store.replace(Credential(token="x"))
        client.fail_with = RedisConnectionError("connection reset")

        with pytest.raises(CredentialStoreError):
            store.clear()
        assert store.current() is None

    def test_requires_client_or_url(self):
        with pytest.raises(ValueError):
            RedisCredentialStore()


class TestStoreFactory:
    def test_memory_by_default(self):
        assert isinstance(build_credential_store(Settings()), MemoryCredentialStore)

    def test_file_backend_uses_state_dir(self, tmp_path):
        settings = Settings(credential_backend=CredentialBackend.FILE, state_dir=str(tmp_path))
        store = build_credential_store(settings)

        assert isinstance(store, FileCredentialStore)
        assert store.path == tmp_path / "credential.json"
