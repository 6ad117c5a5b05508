from __future__ import annotations

import logging

from state.models import AwaitingBackupDecision, BackupAdopted, BackupCreated, CryptoState

from .errors import (
    CorruptBackupError,
    KeyRejectedError,
    RecoveryKeyMismatchError,
    RemoteError,
    TransientReconcileError,
)
from .ports import InteractionPort, SessionPort
from .recovery_key import RecoveryKeyArtifact, RecoveryKeyHandler


logger = logging.getLogger(__name__)

DEFAULT_MAX_KEY_ATTEMPTS = 3

RESET_QUESTION = (
    "Are you ready to reset the cryptographic identity to enable server-side backup? "
    "Other devices of this account will lose their verified status."
)
FORCED_RESET_QUESTION = (
    "A server-side backup exists, but a reset was requested. Discard it and reset the "
    "cryptographic identity? Messages only readable through the old backup will be lost."
)


class BackupReconciler:
    """
    Decides what the server's backup state means for a freshly logged-in bot.

    - Backup exists: the operator supplies its recovery key (bounded attempts), which
      unlocks the backup and any stored cross-signing keys -> BackupAdopted.
    - No backup (or unreadable metadata): after confirmation, cross-signing is reset
      and a new backup created under a recovery key saved to file -> BackupCreated.
      Declining leaves AwaitingBackupDecision.

    Either way the bot's device ends up signed by the self-signing key when one
    is available.

    Nothing here writes to the secret store; the orchestrator persists the result.
    """

    def __init__(
        self,
        interaction: InteractionPort,
        key_handler: RecoveryKeyHandler,
        *,
        max_attempts: int = DEFAULT_MAX_KEY_ATTEMPTS,
    ) -> None:
        if max_attempts <= 0:
            raise ValueError("max_attempts must be > 0")
        self._interaction = interaction
        self._key_handler = key_handler
        self._max_attempts = max_attempts

    def reconcile(self, session: SessionPort, *, force_reset: bool = False) -> CryptoState:
        has_backup = self._query_backup(session)
        if has_backup and not force_reset:
            return self._adopt(session)
        return self._create(session, replacing=has_backup)

    def _query_backup(self, session: SessionPort) -> bool:
        # Always asked fresh: a backup created by a run that crashed before
        # saving must be found here, not created twice.
        try:
            return session.has_remote_backup()
        except CorruptBackupError as exc:
            logger.warning("Ignoring unreadable server backup: %s", exc)
            return False
        except RemoteError as exc:
            raise TransientReconcileError(f"Could not query server backup state: {exc}") from exc

    def _adopt(self, session: SessionPort) -> BackupAdopted:
        logger.info("A backup exists on the server, recovering from it.")
        for attempt in range(1, self._max_attempts + 1):
            candidate = self._interaction.prompt_secret("Backup recovery key:").strip()
            try:
                artifact = self._key_handler.import_key(candidate)
                backup = session.unlock_backup(artifact)
            except KeyRejectedError as exc:
                logger.warning("Recovery key rejected (attempt %d/%d)", attempt, self._max_attempts)
                self._interaction.notify(f"{exc}. Attempt {attempt} of {self._max_attempts}.")
                continue
            logger.info("Recovered from the server backup (version %s).", backup.version)
            if backup.cross_signing is not None:
                session.trust_own_device(backup.cross_signing)
            else:
                logger.warning("No cross-signing keys in secret storage; this device stays unverified.")
            return BackupAdopted(
                fingerprint=backup.fingerprint,
                backup_version=backup.version or None,
                cross_signing=backup.cross_signing,
            )
        raise RecoveryKeyMismatchError(self._max_attempts)

    def _create(self, session: SessionPort, *, replacing: bool) -> CryptoState:
        question = FORCED_RESET_QUESTION if replacing else RESET_QUESTION
        if not self._interaction.prompt_confirm(question):
            logger.warning("Identity reset declined; encrypted history will stay unavailable.")
            return AwaitingBackupDecision()

        # Key file first: if it cannot be written, nothing remote changes.
        artifact = self._recovery_key(replacing=replacing)
        logger.info("Resetting cryptographic identity.")
        seeds = session.reset_cross_signing()
        logger.info("Creating a server backup.")
        backup = session.create_backup(artifact)
        session.trust_own_device(seeds)
        return BackupCreated(
            fingerprint=backup.fingerprint, backup_version=backup.version, cross_signing=seeds
        )

    def _recovery_key(self, *, replacing: bool) -> RecoveryKeyArtifact:
        if not replacing:
            # No backup uses the key in an existing file, e.g. one left by a run
            # that stopped before creating its backup; it becomes this backup's key.
            existing = self._key_handler.load_existing()
            if existing is not None:
                self._interaction.notify(
                    f"Reusing the recovery key in {self._key_handler.path}; "
                    "no server backup uses it yet."
                )
                return existing
        return self._key_handler.generate()


__all__ = ["BackupReconciler", "DEFAULT_MAX_KEY_ATTEMPTS"]
