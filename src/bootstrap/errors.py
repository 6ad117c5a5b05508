from __future__ import annotations


class BootstrapError(RuntimeError):
    """Base error for the bot bootstrap flow. Always fatal for the current run."""


class AuthError(BootstrapError):
    """Bad credentials, a revoked access token, or a refused login."""


class UnsupportedAuthError(AuthError):
    """The homeserver demands multi-factor or single sign-on; cannot run unattended."""


class KeyRejectedError(BootstrapError):
    """A recovery key is malformed or does not unlock the remote backup."""


class RecoveryKeyMismatchError(BootstrapError):
    """Too many wrong recovery keys in a row."""

    def __init__(self, attempts: int) -> None:
        self.attempts = attempts
        super().__init__(
            f"Recovery key rejected {attempts} times. Re-run setup with the correct key, "
            "or with --reset-identity to discard the existing backup."
        )


class RecoveryKeyFileError(BootstrapError):
    """The recovery key file could not be written; no remote change was made."""


class RemoteError(BootstrapError):
    """Network or homeserver failure."""


class CorruptBackupError(RemoteError):
    """The homeserver reports backup metadata that cannot be used."""


class TransientReconcileError(RemoteError):
    """Backup state could not be queried. Re-run setup later."""


class StoreError(BootstrapError):
    """Local persistence failed."""


class StoreLockedError(StoreError):
    """Another process holds the secret store."""


class IncompleteBootstrapError(BootstrapError):
    """resume() was attempted before setup() reached a terminal crypto state."""


class AlreadyBootstrappedError(BootstrapError):
    """setup() found a completed bootstrap and no reset was requested."""


class SetupCancelledError(BootstrapError):
    """The operator cancelled an interactive prompt."""


__all__ = [
    "BootstrapError",
    "AuthError",
    "UnsupportedAuthError",
    "KeyRejectedError",
    "RecoveryKeyMismatchError",
    "RecoveryKeyFileError",
    "RemoteError",
    "CorruptBackupError",
    "TransientReconcileError",
    "StoreError",
    "StoreLockedError",
    "IncompleteBootstrapError",
    "AlreadyBootstrappedError",
    "SetupCancelledError",
]
