"""
Persistent bot session state.

This package defines the identity and crypto-state schema and the
Fernet-encrypted, lock-protected local store that owns it.
"""

from .models import (
    AwaitingBackupDecision,
    BackupAdopted,
    BackupCreated,
    CrossSigningSeeds,
    CryptoState,
    DeviceKeys,
    IdentityRecord,
    Reset,
    StoredSession,
    Uninitialized,
)

__all__ = [
    "AwaitingBackupDecision",
    "BackupAdopted",
    "BackupCreated",
    "CrossSigningSeeds",
    "CryptoState",
    "DeviceKeys",
    "IdentityRecord",
    "Reset",
    "StoredSession",
    "Uninitialized",
]
