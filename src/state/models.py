from __future__ import annotations

from typing import Annotated, ClassVar, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class DeviceKeys(BaseModel):
    """Unpadded-base64 private halves of the device's ed25519 and curve25519 keys."""

    model_config = ConfigDict(frozen=True)

    ed25519: str = Field(..., repr=False)
    curve25519: str = Field(..., repr=False)


class IdentityRecord(BaseModel):
    """
    Who the bot is on the homeserver.

    Created by the first successful password login and owned by the secret store.
    The access token doubles as the device's credential, so it is kept out of `repr`.
    `device_keys` are generated at login and uploaded by setup; None only for
    records written by hand.
    """

    model_config = ConfigDict(frozen=True)

    homeserver: str = Field(..., description="Resolved homeserver base URL")
    user_id: str = Field(..., description="Fully qualified Matrix user ID")
    access_token: str = Field(..., repr=False)
    device_id: str
    device_name: str = ""
    device_keys: Optional[DeviceKeys] = Field(default=None, repr=False)


class CrossSigningSeeds(BaseModel):
    """Unpadded-base64 ed25519 seeds of the three cross-signing keys."""

    model_config = ConfigDict(frozen=True)

    master: str = Field(..., repr=False)
    self_signing: str = Field(..., repr=False)
    user_signing: str = Field(..., repr=False)


class _CryptoStateBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    terminal: ClassVar[bool] = False

    @property
    def is_terminal(self) -> bool:
        return self.terminal


class Uninitialized(_CryptoStateBase):
    """Logged in, backup state not yet reconciled."""

    kind: Literal["uninitialized"] = "uninitialized"


class AwaitingBackupDecision(_CryptoStateBase):
    """No backup exists and the operator declined the identity reset."""

    kind: Literal["awaiting_backup_decision"] = "awaiting_backup_decision"


class BackupAdopted(_CryptoStateBase):
    """An existing server backup was unlocked with an imported recovery key."""

    terminal: ClassVar[bool] = True

    kind: Literal["backup_adopted"] = "backup_adopted"
    fingerprint: str
    backup_version: Optional[str] = None
    # None when secret storage held no cross-signing keys
    cross_signing: Optional[CrossSigningSeeds] = None


class BackupCreated(_CryptoStateBase):
    """The cryptographic identity was reset and a new backup created."""

    terminal: ClassVar[bool] = True

    kind: Literal["backup_created"] = "backup_created"
    fingerprint: str
    backup_version: str
    cross_signing: CrossSigningSeeds


class Reset(_CryptoStateBase):
    """The operator asked to discard the crypto state; setup must reconcile again."""

    kind: Literal["reset"] = "reset"


CryptoState = Annotated[
    Union[Uninitialized, AwaitingBackupDecision, BackupAdopted, BackupCreated, Reset],
    Field(discriminator="kind"),
]


class StoredSession(BaseModel):
    """
    The whole document kept by the secret store.

    Fields
    - identity: login result; never rewritten except by a fresh setup.
    - crypto: exactly one current crypto state.
    - sync_token: `next_batch` of the last processed /sync (None before the first sync).
    """

    identity: IdentityRecord
    crypto: CryptoState = Field(default_factory=Uninitialized)
    sync_token: Optional[str] = Field(
        default=None,
        description="Last processed /sync next_batch (None if never synced)",
    )
