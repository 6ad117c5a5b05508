from __future__ import annotations

import os
import stat

import pytest
from cryptography.fernet import Fernet

from bootstrap.errors import StoreError, StoreLockedError
from state.models import (
    AwaitingBackupDecision,
    BackupCreated,
    CrossSigningSeeds,
    IdentityRecord,
    Uninitialized,
)
from state.store import LOCK_FILE, SESSION_FILE, SecretStore


def _identity(device_id: str = "DEVICE1") -> IdentityRecord:
    return IdentityRecord(
        homeserver="https://matrix.example.org",
        user_id="@bot:example.org",
        access_token="syt_very_secret_token",
        device_id=device_id,
        device_name="test-bot",
    )


@pytest.fixture()
def key() -> str:
    return Fernet.generate_key().decode("ascii")


@pytest.fixture()
def store(tmp_path, key):
    with SecretStore(tmp_path / "data", key) as s:
        yield s


def test_load_on_empty_store_returns_none(store):
    assert store.load() is None


def test_save_then_load_roundtrip(store):
    crypto = BackupCreated(
        fingerprint="0123456789abcdef",
        backup_version="7",
        cross_signing=CrossSigningSeeds(master="m", self_signing="s", user_signing="u"),
    )
    store.save(_identity(), crypto)

    loaded = store.load()
    assert loaded is not None
    assert loaded.identity == _identity()
    assert loaded.crypto == crypto
    assert loaded.crypto.is_terminal
    assert loaded.sync_token is None


def test_document_is_encrypted_and_private(store):
    store.save(_identity(), Uninitialized())

    path = store.data_dir / SESSION_FILE
    body = path.read_bytes()
    assert b"syt_very_secret_token" not in body
    assert b"@bot:example.org" not in body
    assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
    # Atomic replace leaves no temp file behind
    assert sorted(p.name for p in store.data_dir.iterdir()) == sorted([SESSION_FILE, LOCK_FILE])


def test_secrets_not_in_repr():
    text = repr(_identity())
    assert "syt_very_secret_token" not in text
    seeds = CrossSigningSeeds(master="MASTERSEED", self_signing="SELFSEED", user_signing="USERSEED")
    assert "MASTERSEED" not in repr(seeds)


def test_wrong_key_is_a_store_error(tmp_path, key):
    with SecretStore(tmp_path, key) as s:
        s.save(_identity(), Uninitialized())

    other = Fernet.generate_key().decode("ascii")
    with SecretStore(tmp_path, other) as s:
        with pytest.raises(StoreError, match="decrypt"):
            s.load()


def test_corrupt_document_is_a_store_error(store, key):
    (store.data_dir / SESSION_FILE).write_bytes(Fernet(key.encode()).encrypt(b'{"identity": 42}'))
    with pytest.raises(StoreError, match="parse"):
        store.load()


def test_invalid_key_rejected(tmp_path):
    with pytest.raises(StoreError, match="Fernet"):
        SecretStore(tmp_path, "not-a-key")


def test_second_holder_is_refused(tmp_path, key):
    with SecretStore(tmp_path, key):
        with pytest.raises(StoreLockedError):
            SecretStore(tmp_path, key).lock()
    # Released on exit
    with SecretStore(tmp_path, key) as s:
        assert s.locked
        assert (tmp_path / LOCK_FILE).read_text() == str(os.getpid())


def test_use_without_lock_is_refused(tmp_path, key):
    s = SecretStore(tmp_path, key)
    with pytest.raises(StoreError, match="locked"):
        s.load()
    with pytest.raises(StoreError, match="locked"):
        s.save(_identity(), Uninitialized())


def test_sync_token_survives_crypto_updates_for_same_identity(store):
    store.save(_identity(), Uninitialized())
    store.set_sync_token("s72594_4483_1934")

    store.save(_identity(), AwaitingBackupDecision())
    loaded = store.load()
    assert loaded is not None
    assert loaded.sync_token == "s72594_4483_1934"
    assert isinstance(loaded.crypto, AwaitingBackupDecision)

    # A different device starts from scratch
    store.save(_identity("DEVICE2"), Uninitialized())
    loaded = store.load()
    assert loaded is not None
    assert loaded.sync_token is None


def test_set_sync_token_requires_session(store):
    with pytest.raises(StoreError, match="run setup"):
        store.set_sync_token("s1")


def test_reset_forgets_session(store):
    store.save(_identity(), Uninitialized())
    store.reset()
    assert store.load() is None
    # Idempotent
    store.reset()
    assert store.locked
