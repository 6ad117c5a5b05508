from __future__ import annotations

from typing import TYPE_CHECKING, Optional, Protocol

from state.models import CrossSigningSeeds, IdentityRecord

from .recovery_key import RecoveryKeyArtifact

if TYPE_CHECKING:
    from homeserver.client import BackupInfo


class InteractionPort(Protocol):
    """Line-oriented operator channel. Only setup() ever receives one."""

    def prompt_text(self, label: str) -> str: ...
    def prompt_secret(self, label: str) -> str: ...
    def prompt_confirm(self, question: str) -> bool: ...
    def notify(self, message: str) -> None: ...


class SessionPort(Protocol):
    """An authenticated homeserver session."""

    @property
    def identity(self) -> IdentityRecord: ...

    def has_remote_backup(self) -> bool:
        """Raises CorruptBackupError for unusable metadata, RemoteError on network failure."""
        ...

    def unlock_backup(self, artifact: RecoveryKeyArtifact) -> BackupInfo:
        """Raises KeyRejectedError when the key does not open the server backup."""
        ...

    def create_backup(self, artifact: RecoveryKeyArtifact) -> BackupInfo: ...
    def reset_cross_signing(self) -> CrossSigningSeeds: ...
    def upload_device_keys(self) -> None: ...

    def trust_own_device(self, seeds: CrossSigningSeeds) -> None:
        """Sign this session's device with the self-signing key."""
        ...

    def logout(self) -> None: ...


class ProtocolClientPort(Protocol):
    def login(self, homeserver: str, user: str, password: str, *, device_name: str = "") -> SessionPort: ...

    def restore(self, identity: IdentityRecord, *, password: Optional[str] = None) -> SessionPort:
        """Re-establish a session from a stored access token."""
        ...


__all__ = ["InteractionPort", "SessionPort", "ProtocolClientPort"]
