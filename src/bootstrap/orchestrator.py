from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from state.models import (
    AwaitingBackupDecision,
    BackupAdopted,
    BackupCreated,
    CryptoState,
    IdentityRecord,
    Reset,
    Uninitialized,
)
from state.store import SecretStore

from .config import SetupConfig
from .errors import (
    AlreadyBootstrappedError,
    AuthError,
    BootstrapError,
    IncompleteBootstrapError,
    StoreError,
)
from .ports import InteractionPort, ProtocolClientPort, SessionPort
from .reconciler import BackupReconciler
from .recovery_key import RecoveryKeyHandler


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SetupOutcome:
    identity: IdentityRecord
    crypto: CryptoState
    # Key file of the backup this run created
    recovery_key_path: Optional[Path] = None


@dataclass(frozen=True)
class AuthenticatedSession:
    """A live session together with the persisted state it was restored from."""

    session: SessionPort
    identity: IdentityRecord
    crypto: CryptoState


def setup(
    config: SetupConfig,
    *,
    store: SecretStore,
    client: ProtocolClientPort,
    interaction: InteractionPort,
) -> SetupOutcome:
    """
    Interactive first-run bootstrap.

    - Empty store: asks for credentials, logs in with a password and persists
      the identity before touching any crypto state.
    - Store left behind by an interrupted setup: keeps the stored device and
      only asks for the password again.
    - Finished store: refused unless `config.reset_identity` is set. Declining
      the reset prompt then keeps the finished state, since nothing changed on
      the server.

    Every step that changes local state is a single `store.save`, made only
    after the remote action it records succeeded. Re-running after a crash
    re-queries the server instead of trusting what the store assumed.
    """
    stored = store.load()
    previous = stored.crypto if stored is not None else None
    if previous is not None and previous.is_terminal and not config.reset_identity:
        raise AlreadyBootstrappedError(
            f"{stored.identity.user_id} is already set up in {store.data_dir}. "
            "Use --reset-identity to reset its cryptographic identity, or log out first."
        )

    if stored is None:
        session = _login(config, client, interaction)
        identity = session.identity
        _save_first(store, session, Reset() if config.reset_identity else Uninitialized())
    else:
        identity = stored.identity
        logger.info(
            "Continuing setup for %s (device %s), crypto state: %s",
            identity.user_id,
            identity.device_id,
            stored.crypto.kind,
        )
        password = config.password if config.password is not None else interaction.prompt_secret("Password:")
        session = client.restore(identity, password=password)
        if config.reset_identity:
            store.save(identity, Reset())

    logger.info("Setting up encryption.")
    session.upload_device_keys()
    key_handler = RecoveryKeyHandler(config.recovery_key_path)
    reconciler = BackupReconciler(interaction, key_handler, max_attempts=config.max_key_attempts)
    crypto = reconciler.reconcile(session, force_reset=config.reset_identity)
    if isinstance(crypto, AwaitingBackupDecision) and previous is not None and previous.is_terminal:
        logger.info("Identity reset declined, keeping crypto state %s", previous.kind)
        store.save(identity, previous)
        interaction.notify(
            "Identity reset declined. Nothing changed on the server and the previous "
            "setup is kept."
        )
        return SetupOutcome(identity=identity, crypto=previous)
    store.save(identity, crypto)

    outcome = SetupOutcome(
        identity=identity,
        crypto=crypto,
        recovery_key_path=key_handler.path if isinstance(crypto, BackupCreated) else None,
    )
    _report(interaction, outcome)
    return outcome


def resume(*, store: SecretStore, client: ProtocolClientPort) -> AuthenticatedSession:
    """
    Unattended start from a finished setup.

    Takes no interaction port, so it cannot prompt. The only network call is the
    session check of `client.restore`, and it is skipped when the stored state
    already rules the run out.
    """
    stored = store.load()
    if stored is None:
        raise IncompleteBootstrapError(f"No session found in {store.data_dir}, run setup first")
    if not stored.crypto.is_terminal:
        raise IncompleteBootstrapError(
            f"Setup of {stored.identity.user_id} did not finish (crypto state: {stored.crypto.kind}); "
            "run setup again"
        )

    session = client.restore(stored.identity)
    logger.info("Login finished.")
    return AuthenticatedSession(session=session, identity=stored.identity, crypto=stored.crypto)


def logout(*, store: SecretStore, client: ProtocolClientPort) -> bool:
    """
    Log the stored device out and forget it locally.

    An access token the server already revoked is not an error; a server that
    cannot be reached is, and leaves the store intact for a retry.
    Returns False when there was nothing to log out.
    """
    stored = store.load()
    if stored is None:
        logger.info("No session stored in %s", store.data_dir)
        return False

    try:
        session = client.restore(stored.identity)
        session.logout()
    except AuthError as exc:
        logger.warning("Session was already invalid on the server: %s", exc)
    logger.info("Deleting the stored session.")
    store.reset()
    return True


# --------------- Internal ---------------
def _login(config: SetupConfig, client: ProtocolClientPort, interaction: InteractionPort) -> SessionPort:
    homeserver = config.homeserver or interaction.prompt_text("Matrix homeserver:")
    username = config.username or interaction.prompt_text("User name:")
    password = config.password if config.password is not None else interaction.prompt_secret("Password:")

    logger.info("Logging into Matrix.")
    return client.login(
        homeserver.strip(),
        username.strip(),
        password,
        device_name=config.device_name,
    )


def _save_first(store: SecretStore, session: SessionPort, crypto: CryptoState) -> None:
    try:
        store.save(session.identity, crypto)
    except StoreError:
        # Without a stored token the new device could never be used again
        logger.info("Logging out of Matrix.")
        try:
            session.logout()
        except BootstrapError as exc:
            logger.warning("Logout after failed save also failed: %s", exc)
        raise


def _report(interaction: InteractionPort, outcome: SetupOutcome) -> None:
    crypto = outcome.crypto
    if isinstance(crypto, BackupCreated):
        interaction.notify(
            f"The recovery key of the new backup is in {outcome.recovery_key_path}.\n"
            "Move it to a safe place now. It is the only way to restore this bot's "
            "encrypted history and cross-signing keys, and setup will not overwrite it."
        )
    elif isinstance(crypto, BackupAdopted):
        interaction.notify("Recovered from the existing server backup.")
        if crypto.cross_signing is None:
            interaction.notify(
                "Secret storage holds no cross-signing keys, so this device stays "
                "unverified. Verify it from another Matrix client."
            )
    elif isinstance(crypto, AwaitingBackupDecision):
        interaction.notify(
            "Setup is incomplete: no server backup was set up, so the bot cannot start yet.\n"
            "Run setup again and confirm the reset when you are ready."
        )
        return

    logger.info("Setup finished.")
    interaction.notify(
        "Setup finished.\n"
        "If other sessions of this account show up as unverified (for example one left "
        "behind by a registration tool), remove them from another Matrix client."
    )


__all__ = ["SetupOutcome", "AuthenticatedSession", "setup", "resume", "logout"]
