from __future__ import annotations

import logging
import os
import secrets
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from homeserver.keys import RECOVERY_KEY_LENGTH, decode_recovery_key, encode_recovery_key

from .errors import KeyRejectedError, RecoveryKeyFileError


logger = logging.getLogger(__name__)

DEFAULT_RECOVERY_KEY_FILE = "recovery-key.txt"


@dataclass(frozen=True, repr=False)
class RecoveryKeyArtifact:
    """
    A recovery key: the 32-byte secret storage key that protects the backup key
    and the cross-signing keys in account data.

    `encoded` is the human-readable form written to the key file and typed back
    in by the operator. Neither form appears in `repr`, so logs stay clean.
    """

    encoded: str
    private_key: bytes

    @classmethod
    def from_private_key(cls, raw: bytes) -> "RecoveryKeyArtifact":
        return cls(encoded=encode_recovery_key(raw), private_key=raw)

    def __repr__(self) -> str:
        return "RecoveryKeyArtifact(<redacted>)"


class RecoveryKeyHandler:
    """
    Produces recovery keys, either freshly generated or imported from the operator.

    A generated key is written to `path` before anyone can use it. The file is
    created exclusively and never overwritten.
    """

    def __init__(self, path: os.PathLike[str] | str) -> None:
        self._path = Path(path).expanduser()

    @property
    def path(self) -> Path:
        return self._path

    def generate(self) -> RecoveryKeyArtifact:
        artifact = RecoveryKeyArtifact.from_private_key(secrets.token_bytes(RECOVERY_KEY_LENGTH))
        self._write_exclusive(artifact)
        logger.info("Wrote new recovery key to %s", self._path)
        return artifact

    def load_existing(self) -> Optional[RecoveryKeyArtifact]:
        """
        The key already in the key file, or None when there is no file.

        Raises RecoveryKeyFileError when the file exists but cannot be read or
        does not hold a recovery key.
        """
        try:
            text = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise RecoveryKeyFileError(f"Cannot read {self._path}: {exc}") from exc
        try:
            raw = decode_recovery_key(text)
        except ValueError as exc:
            raise RecoveryKeyFileError(
                f"{self._path} exists but does not hold a recovery key ({exc}). "
                "Move it away (or choose another --recovery-key-file), then run setup again."
            ) from exc
        logger.info("Found recovery key in %s", self._path)
        return RecoveryKeyArtifact.from_private_key(raw)

    def import_key(self, candidate: str) -> RecoveryKeyArtifact:
        """Parse an operator-supplied key. Raises KeyRejectedError if malformed."""
        try:
            raw = decode_recovery_key(candidate)
        except ValueError as exc:
            raise KeyRejectedError(f"Not a valid recovery key: {exc}") from exc
        return RecoveryKeyArtifact.from_private_key(raw)

    def _write_exclusive(self, artifact: RecoveryKeyArtifact) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise RecoveryKeyFileError(f"Cannot create directory for {self._path}: {exc}") from exc
        try:
            fd = os.open(self._path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        except FileExistsError as exc:
            raise RecoveryKeyFileError(
                f"{self._path} already exists and setup will not overwrite it. It may hold "
                "the key of the backup being replaced: move it away (or choose another "
                "--recovery-key-file), then run setup again."
            ) from exc
        except OSError as exc:
            raise RecoveryKeyFileError(f"Cannot create {self._path}: {exc}") from exc

        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(artifact.encoded + "\n")
                handle.flush()
                os.fsync(handle.fileno())
        except OSError as exc:
            # We created the file exclusively, so a partial one is ours to remove
            try:
                self._path.unlink()
            except OSError:
                logger.warning("Could not remove partial recovery key file %s", self._path)
            raise RecoveryKeyFileError(f"Cannot write {self._path}: {exc}") from exc


__all__ = ["RecoveryKeyArtifact", "RecoveryKeyHandler", "DEFAULT_RECOVERY_KEY_FILE"]
