from __future__ import annotations

import errno
import fcntl
import json
import logging
import os
from pathlib import Path
from typing import IO, Optional

from cryptography.fernet import Fernet, InvalidToken
from pydantic import ValidationError

from bootstrap.errors import StoreError, StoreLockedError

from .models import CryptoState, IdentityRecord, StoredSession


logger = logging.getLogger(__name__)

SESSION_FILE = "session.enc"
LOCK_FILE = "session.lock"


def _to_fernet(key: str | bytes) -> Fernet:
    """Construct a Fernet instance from a user-provided key.

    The key must be a URL-safe base64-encoded 32-byte key (str or bytes),
    as returned by `cryptography.fernet.Fernet.generate_key()`.
    """
    if isinstance(key, str):
        key_bytes = key.encode("utf-8")
    else:
        key_bytes = key
    try:
        return Fernet(key_bytes)
    except ValueError as ex:
        raise StoreError("Store key is not a valid Fernet key") from ex


def _dump_session_json(session: StoredSession) -> bytes:
    # Deterministic JSON: stable key order, no extra whitespace
    return json.dumps(
        session.model_dump(mode="json"), separators=(",", ":"), sort_keys=True
    ).encode("utf-8")


def _load_session_json(data: bytes) -> StoredSession:
    raw = json.loads(data.decode("utf-8"))
    return StoredSession.model_validate(raw)


class SecretStore:
    """
    Local persistence for `StoredSession`, encrypted at rest using Fernet.

    Usage
    - Open with `with SecretStore(data_dir, fernet_key) as store:`; entering takes an
      exclusive advisory lock on `<data_dir>/session.lock` and fails fast with
      `StoreLockedError` when another bot process already holds it.
    - `load()` returns the stored session or None when nothing was saved yet.
    - `save(identity, crypto)` replaces the document atomically (temp file, fsync,
      rename), so a reader never sees a half-written identity/crypto pair.
    - `reset()` deletes the document.

    One store holds exactly one bot identity; processes must never share it.
    """

    def __init__(self, data_dir: os.PathLike[str] | str, fernet_key: str | bytes) -> None:
        self._dir = Path(data_dir).expanduser()
        self._path = self._dir / SESSION_FILE
        self._lock_path = self._dir / LOCK_FILE
        self._fernet = _to_fernet(fernet_key)
        self._lock_handle: Optional[IO[str]] = None

    @property
    def data_dir(self) -> Path:
        return self._dir

    @property
    def locked(self) -> bool:
        return self._lock_handle is not None

    # -------- Locking --------
    def lock(self) -> None:
        if self._lock_handle is not None:
            return
        try:
            self._dir.mkdir(parents=True, exist_ok=True, mode=0o700)
            handle = open(self._lock_path, "a+", encoding="utf-8")
        except OSError as ex:
            raise StoreError(f"Cannot open lock file {self._lock_path}: {ex}") from ex
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as ex:
            handle.close()
            if ex.errno in (errno.EACCES, errno.EAGAIN):
                raise StoreLockedError(
                    f"{self._dir} is in use by another process"
                ) from ex
            raise StoreError(f"Cannot lock {self._lock_path}: {ex}") from ex
        # record pid for diagnostics
        handle.seek(0)
        handle.truncate()
        handle.write(str(os.getpid()))
        handle.flush()
        self._lock_handle = handle
        logger.debug("Locked secret store %s", self._dir)

    def unlock(self) -> None:
        handle = self._lock_handle
        if handle is None:
            return
        self._lock_handle = None
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            handle.close()
        logger.debug("Unlocked secret store %s", self._dir)

    def __enter__(self) -> "SecretStore":
        self.lock()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.unlock()

    def _require_lock(self) -> None:
        if self._lock_handle is None:
            raise StoreError("Secret store must be locked before use")

    # -------- Core operations --------
    def load(self) -> Optional[StoredSession]:
        """Read and decrypt the stored session.

        Returns None if nothing has been saved yet.
        Raises StoreError if the document cannot be read, decrypted or parsed.
        """
        self._require_lock()
        try:
            body = self._path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as ex:
            raise StoreError(f"Cannot read {self._path}: {ex}") from ex

        try:
            decrypted = self._fernet.decrypt(body)
        except InvalidToken as ex:
            raise StoreError("Failed to decrypt session: wrong store key or corrupt file") from ex

        try:
            return _load_session_json(decrypted)
        except (ValueError, ValidationError) as ex:
            raise StoreError("Failed to parse decrypted session JSON") from ex

    def save(self, identity: IdentityRecord, crypto: CryptoState) -> StoredSession:
        """Persist the identity and crypto state together.

        The stored sync position survives only while the identity stays the same;
        a new login starts syncing from scratch.
        """
        self._require_lock()
        current = self.load()
        sync_token = None
        if current is not None and current.identity == identity:
            sync_token = current.sync_token
        session = StoredSession(identity=identity, crypto=crypto, sync_token=sync_token)
        self._write(session)
        logger.info("Saved session for %s (crypto state: %s)", identity.user_id, crypto.kind)
        return session

    def set_sync_token(self, token: str) -> None:
        self._require_lock()
        current = self.load()
        if current is None:
            raise StoreError("No session saved; run setup first")
        if current.sync_token == token:
            return
        self._write(current.model_copy(update={"sync_token": token}))

    def reset(self) -> None:
        """Forget everything this store holds for the bot."""
        self._require_lock()
        for path in (self._path, self._path.with_suffix(self._path.suffix + ".tmp")):
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            except OSError as ex:
                raise StoreError(f"Cannot delete {path}: {ex}") from ex
        logger.info("Reset secret store %s", self._dir)

    # -------- Internal --------
    def _write(self, session: StoredSession) -> None:
        ciphertext = self._fernet.encrypt(_dump_session_json(session))
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        try:
            fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "wb") as handle:
                handle.write(ciphertext)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, self._path)
        except OSError as ex:
            raise StoreError(f"Cannot write {self._path}: {ex}") from ex


__all__ = ["SecretStore", "SESSION_FILE", "LOCK_FILE"]
