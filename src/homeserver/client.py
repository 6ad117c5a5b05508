from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional, Tuple
from urllib.parse import quote

import httpx

from bootstrap.errors import (
    AuthError,
    CorruptBackupError,
    KeyRejectedError,
    RemoteError,
    UnsupportedAuthError,
)
from state.models import CrossSigningSeeds, DeviceKeys, IdentityRecord

from .keys import (
    BACKUP_ALGORITHM,
    SigningKey,
    build_cross_signing_upload,
    curve25519_public_key,
    decode_unpadded_b64,
    device_keys_object,
    key_fingerprint,
    new_backup_key,
    new_device_keys,
    sign_object,
    unpadded_b64,
)
from .secret_storage import (
    BACKUP_SECRET,
    DEFAULT_KEY_EVENT,
    KEY_EVENT_PREFIX,
    MASTER_SECRET,
    SECRET_STORAGE_ALGORITHM,
    SELF_SIGNING_SECRET,
    USER_SIGNING_SECRET,
    check_key,
    key_description,
    new_key_id,
    read_secret,
    secret_content,
)

if TYPE_CHECKING:
    from bootstrap.recovery_key import RecoveryKeyArtifact


logger = logging.getLogger(__name__)

CLIENT_API_PREFIX = "/_matrix/client/v3"
PASSWORD_LOGIN = "m.login.password"

# Lazy-load room members; speeds up the first sync of accounts in many rooms
LAZY_LOADING_FILTER = {"room": {"state": {"lazy_load_members": True}}}


def _url(base_url: str, path: str) -> str:
    return f"{base_url.rstrip('/')}{CLIENT_API_PREFIX}{path}"


def _describe(payload: Dict[str, Any], status: int) -> str:
    code = payload.get("errcode") or "M_UNKNOWN"
    message = payload.get("error") or "no error message"
    return f"{code}: {message} (HTTP {status})"


def _json_body(resp: httpx.Response) -> Dict[str, Any]:
    if not resp.content:
        return {}
    try:
        data = resp.json()
    except ValueError as exc:
        if resp.is_success:
            raise RemoteError(f"Malformed JSON from homeserver (HTTP {resp.status_code})") from exc
        return {}
    if not isinstance(data, dict):
        if resp.is_success:
            raise RemoteError(f"Unexpected JSON from homeserver (HTTP {resp.status_code})")
        return {}
    return data


def _user_identifier(user: str) -> Dict[str, str]:
    return {"type": "m.id.user", "user": user}


@dataclass(frozen=True)
class BackupInfo:
    """A server backup this session holds the key of."""

    version: str
    fingerprint: str
    # Seeds recovered from secret storage; None when none were stored
    cross_signing: Optional[CrossSigningSeeds] = None


class MatrixClient:
    """
    Minimal Matrix client-server API client for bot bootstrap.

    Notes
    - Synchronous, one `httpx.Client` shared by every session it creates.
    - 429 `M_LIMIT_EXCEEDED` is waited out honoring `retry_after_ms`.
    - Transport errors and 5xx are retried for GET and PUT only. A POST that may
      have reached the server is never re-sent, so remote state changes such as
      backup creation cannot be duplicated by a retry.
    - Honors HTTPS_PROXY from the environment (httpx `trust_env`).
    """

    def __init__(
        self,
        *,
        timeout: float = 30.0,
        max_attempts: int = 3,
        client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_attempts <= 0:
            raise ValueError("max_attempts must be > 0")
        self._timeout = timeout
        self._max_attempts = max_attempts
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=self._timeout)
        self._sleep = sleep

    @property
    def timeout(self) -> float:
        return self._timeout

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "MatrixClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # --------------- Public API ---------------
    def resolve_homeserver(self, server: str) -> str:
        """
        Turn a server name or URL into a client-server API base URL.

        A bare server name goes through `/.well-known/matrix/client`; discovery
        is optional, so any failure falls back to `https://<server name>`.
        """
        server = server.strip().rstrip("/")
        if not server:
            raise AuthError("Homeserver is empty")
        if "://" in server:
            return server

        fallback = f"https://{server}"
        try:
            status, payload = self._request("GET", f"{fallback}/.well-known/matrix/client")
        except RemoteError as exc:
            logger.info("No usable .well-known for %s (%s), using %s", server, exc, fallback)
            return fallback
        if status == 200:
            homeserver = payload.get("m.homeserver")
            base_url = homeserver.get("base_url") if isinstance(homeserver, dict) else None
            if isinstance(base_url, str) and base_url.startswith(("https://", "http://")):
                logger.info("Discovered homeserver %s for %s", base_url, server)
                return base_url.rstrip("/")
        return fallback

    def login(
        self,
        homeserver: str,
        user: str,
        password: str,
        *,
        device_name: str = "",
    ) -> "MatrixSession":
        """
        Password login creating a new device.

        Fresh device keys are generated for the device and returned in its
        IdentityRecord; setup uploads them.

        Raises UnsupportedAuthError when the homeserver has no password flow or asks
        for further interactive stages, AuthError when the credentials are refused.
        """
        base_url = self.resolve_homeserver(homeserver)

        status, payload = self._request("GET", _url(base_url, "/login"))
        if status != 200:
            raise AuthError(f"Cannot list login flows at {base_url}: {_describe(payload, status)}")
        flows = payload.get("flows") if isinstance(payload.get("flows"), list) else []
        offered = sorted({str(f.get("type")) for f in flows if isinstance(f, dict)})
        if PASSWORD_LOGIN not in offered:
            raise UnsupportedAuthError(
                f"{base_url} does not offer password login (offers: {', '.join(offered) or 'nothing'})"
            )

        body: Dict[str, Any] = {
            "type": PASSWORD_LOGIN,
            "identifier": _user_identifier(user),
            "password": password,
        }
        if device_name:
            body["initial_device_display_name"] = device_name
        status, payload = self._request("POST", _url(base_url, "/login"), json_body=body)
        if status == 401 and "flows" in payload:
            raise UnsupportedAuthError("Homeserver requires additional authentication stages")
        if status != 200:
            raise AuthError(f"Login failed: {_describe(payload, status)}")

        ed25519_seed, curve25519_private = new_device_keys()
        try:
            identity = IdentityRecord(
                homeserver=base_url,
                user_id=str(payload["user_id"]),
                access_token=str(payload["access_token"]),
                device_id=str(payload["device_id"]),
                device_name=device_name,
                device_keys=DeviceKeys(ed25519=ed25519_seed, curve25519=curve25519_private),
            )
        except KeyError as exc:
            raise RemoteError(f"Login response is missing {exc}") from exc

        logger.info("Logged in as %s (device %s)", identity.user_id, identity.device_id)
        return MatrixSession(self, identity, password=password)

    def restore(self, identity: IdentityRecord, *, password: Optional[str] = None) -> "MatrixSession":
        """Re-establish a session from a persisted access token (one whoami call)."""
        status, payload = self._request(
            "GET", _url(identity.homeserver, "/account/whoami"), access_token=identity.access_token
        )
        if status == 401:
            raise AuthError(
                f"Stored access token was rejected ({_describe(payload, status)}); "
                "log out and run setup again"
            )
        if status != 200:
            raise RemoteError(f"Session check failed: {_describe(payload, status)}")
        if payload.get("user_id") != identity.user_id:
            raise AuthError(
                f"Access token belongs to {payload.get('user_id')!r}, expected {identity.user_id!r}"
            )
        device_id = payload.get("device_id")
        if device_id is not None and device_id != identity.device_id:
            raise AuthError(f"Access token belongs to device {device_id!r}, expected {identity.device_id!r}")

        logger.info("Restored session for %s (device %s)", identity.user_id, identity.device_id)
        return MatrixSession(self, identity, password=password)

    # --------------- Internal ---------------
    def _request(
        self,
        method: str,
        url: str,
        *,
        access_token: Optional[str] = None,
        json_body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> Tuple[int, Dict[str, Any]]:
        """Send one API request; returns (status, JSON body) for anything below 500."""
        headers: Dict[str, str] = {}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        idempotent = method in ("GET", "PUT")

        attempt = 0
        backoff = 0.5
        last_exc: Optional[Exception] = None
        while attempt < self._max_attempts:
            attempt += 1
            try:
                resp = self._client.request(
                    method,
                    url,
                    json=json_body,
                    params=params,
                    headers=headers,
                    timeout=timeout if timeout is not None else self._timeout,
                )
            except (httpx.TimeoutException, httpx.TransportError) as exc:
                if not idempotent:
                    raise RemoteError(f"{method} {url} failed: {exc}") from exc
                last_exc = exc
                self._sleep(backoff)
                backoff = min(backoff * 2, 8.0)
                continue

            if resp.status_code == 429:
                payload = _json_body(resp)
                retry_after_ms = payload.get("retry_after_ms")
                delay = retry_after_ms / 1000.0 if isinstance(retry_after_ms, (int, float)) else backoff
                last_exc = RemoteError(f"Rate limited: {_describe(payload, 429)}")
                logger.warning("Rate limited by homeserver, waiting %.1fs", delay)
                self._sleep(min(delay, 30.0))
                backoff = min(backoff * 2, 8.0)
                continue

            if resp.status_code >= 500:
                last_exc = RemoteError(f"HTTP {resp.status_code} from {url}")
                if not idempotent:
                    raise last_exc
                self._sleep(backoff)
                backoff = min(backoff * 2, 8.0)
                continue

            return resp.status_code, _json_body(resp)

        if last_exc is not None:
            raise RemoteError(f"{method} {url} failed after {attempt} attempts") from last_exc
        raise RemoteError(f"{method} {url} failed after {attempt} attempts (unknown error)")


class MatrixSession:
    """
    An authenticated device session.

    Holds the login password only for the lifetime of a setup run, to answer the
    `m.login.password` challenge of a cross-signing reset.
    """

    def __init__(
        self,
        client: MatrixClient,
        identity: IdentityRecord,
        *,
        password: Optional[str] = None,
    ) -> None:
        self._client = client
        self._identity = identity
        self._password = password
        self._backup_public_key: Optional[str] = None
        self._backup_version: Optional[str] = None
        # Set by reset_cross_signing: (master, self-signing, user-signing)
        self._cross_signing: Optional[Tuple[SigningKey, SigningKey, SigningKey]] = None

    @property
    def identity(self) -> IdentityRecord:
        return self._identity

    @property
    def user_id(self) -> str:
        return self._identity.user_id

    @property
    def device_id(self) -> str:
        return self._identity.device_id

    def __repr__(self) -> str:
        return f"MatrixSession({self.user_id}, device={self.device_id})"

    # --------------- Key backup ---------------
    def has_remote_backup(self) -> bool:
        """
        Ask the homeserver for the current key backup.

        Raises CorruptBackupError when backup metadata exists but is unusable.
        """
        status, payload = self._call("GET", "/room_keys/version")
        if status == 404:
            self._backup_public_key = None
            self._backup_version = None
            return False
        self._check(status, payload, "Backup query")

        algorithm = payload.get("algorithm")
        if algorithm != BACKUP_ALGORITHM:
            raise CorruptBackupError(f"Unsupported backup algorithm {algorithm!r}")
        auth_data = payload.get("auth_data")
        public_key = auth_data.get("public_key") if isinstance(auth_data, dict) else None
        try:
            usable = isinstance(public_key, str) and len(decode_unpadded_b64(public_key)) == 32
        except ValueError:
            usable = False
        if not usable:
            raise CorruptBackupError("Backup auth_data has no usable public key")

        self._backup_public_key = public_key
        self._backup_version = str(payload.get("version", ""))
        logger.info("Server has key backup version %s", self._backup_version)
        return True

    def unlock_backup(self, artifact: "RecoveryKeyArtifact") -> BackupInfo:
        """
        Open the current server backup with a recovery key.

        The recovery key is the secret storage key: it decrypts the backup key
        (and the cross-signing seeds, when stored) from account data. Accounts
        without secret storage take the backup key itself as recovery key.

        Raises KeyRejectedError when the key opens neither, CorruptBackupError
        when secret storage is unlocked but holds no key for this backup.
        """
        if self._backup_public_key is None and not self.has_remote_backup():
            raise KeyRejectedError("There is no server backup to unlock")
        key = artifact.private_key

        default = self.get_account_data(DEFAULT_KEY_EVENT) or {}
        key_id = default.get("key")
        if not isinstance(key_id, str) or not key_id:
            logger.info("Account has no secret storage, checking the key against the backup")
            return self._unlock_with_backup_key(key)

        description = self.get_account_data(KEY_EVENT_PREFIX + key_id)
        if description is None or description.get("algorithm") != SECRET_STORAGE_ALGORITHM:
            raise CorruptBackupError(
                f"Secret storage key {key_id} is missing or uses an unsupported algorithm"
            )
        if not check_key(key, description):
            if curve25519_public_key(key) == self._backup_public_key:
                return self._unlock_with_backup_key(key)
            raise KeyRejectedError("Recovery key does not match the server's secret storage")

        try:
            stored = read_secret(self.get_account_data(BACKUP_SECRET), key_id, key, BACKUP_SECRET)
        except ValueError as exc:
            raise KeyRejectedError(f"Recovery key does not decrypt the stored backup key ({exc})") from exc
        if stored is None:
            raise CorruptBackupError(
                "Secret storage holds no backup key; run setup with --reset-identity to start over"
            )
        try:
            backup_key = decode_unpadded_b64(stored.rstrip("="))
            matches = len(backup_key) == 32 and curve25519_public_key(backup_key) == self._backup_public_key
        except ValueError:
            matches = False
        if not matches:
            raise CorruptBackupError(
                "Secret storage holds the key of a different backup; "
                "run setup with --reset-identity to start over"
            )

        logger.info("Recovery key unlocks backup version %s via secret storage", self._backup_version)
        return BackupInfo(
            version=self._backup_version or "",
            fingerprint=key_fingerprint(self._backup_public_key),
            cross_signing=self._read_cross_signing(key_id, key),
        )

    def create_backup(self, artifact: "RecoveryKeyArtifact") -> BackupInfo:
        """
        Create a new server backup protected by the recovery key.

        A fresh backup key is generated and written to secret storage under the
        recovery key, together with the cross-signing seeds of a reset made by
        this session. Secret storage is written before the backup exists, so a
        backup the server knows of always has its key stored.
        """
        key = artifact.private_key
        key_id = new_key_id()
        backup_key = new_backup_key()
        public_key = curve25519_public_key(backup_key)

        self.put_account_data(KEY_EVENT_PREFIX + key_id, key_description(key))
        stored_secrets = {BACKUP_SECRET: unpadded_b64(backup_key)}
        if self._cross_signing is not None:
            master, self_signing, user_signing = self._cross_signing
            stored_secrets[MASTER_SECRET] = master.seed_b64
            stored_secrets[SELF_SIGNING_SECRET] = self_signing.seed_b64
            stored_secrets[USER_SIGNING_SECRET] = user_signing.seed_b64
        for name, value in stored_secrets.items():
            self.put_account_data(name, secret_content(key_id, key, name, value))
        self.put_account_data(DEFAULT_KEY_EVENT, {"key": key_id})
        logger.info("Stored %d secrets under secret storage key %s", len(stored_secrets), key_id)

        auth_data: Dict[str, Any] = {"public_key": public_key}
        if self._cross_signing is not None:
            auth_data = sign_object(auth_data, self.user_id, self._cross_signing[0])
        status, payload = self._call(
            "POST",
            "/room_keys/version",
            json_body={"algorithm": BACKUP_ALGORITHM, "auth_data": auth_data},
        )
        self._check(status, payload, "Backup creation")
        version = payload.get("version")
        if not isinstance(version, str) or not version:
            raise RemoteError("Backup creation response has no version")

        self._backup_public_key = public_key
        self._backup_version = version
        logger.info("Created server backup version %s", version)
        return BackupInfo(version=version, fingerprint=key_fingerprint(public_key))

    # --------------- Account data ---------------
    def get_account_data(self, event_type: str) -> Optional[Dict[str, Any]]:
        """Global account data of the given type, None when unset."""
        status, payload = self._call("GET", self._account_data_path(event_type))
        if status == 404:
            return None
        self._check(status, payload, f"Reading {event_type}")
        return payload

    def put_account_data(self, event_type: str, content: Dict[str, Any]) -> None:
        status, payload = self._call("PUT", self._account_data_path(event_type), json_body=content)
        self._check(status, payload, f"Writing {event_type}")

    # --------------- Cross-signing ---------------
    def reset_cross_signing(self) -> CrossSigningSeeds:
        """
        Replace the account's cross-signing keys with freshly generated ones.

        Destructive: every other device loses the trust it had. Answers the
        server's user-interactive challenge with the setup password.
        """
        body, (master, self_signing, user_signing) = build_cross_signing_upload(self.user_id)
        status, payload = self._call("POST", "/keys/device_signing/upload", json_body=body)

        if status == 401 and isinstance(payload.get("flows"), list):
            stages = [f.get("stages") for f in payload["flows"] if isinstance(f, dict)]
            if [PASSWORD_LOGIN] not in stages:
                raise UnsupportedAuthError(
                    "Homeserver does not accept a password to reset cross-signing; "
                    "approve the reset from another client first"
                )
            if not self._password:
                raise AuthError("Resetting cross-signing needs the account password")
            logger.info("Resetting cross-signing (password stage)")
            authed = dict(body)
            authed["auth"] = {
                "type": PASSWORD_LOGIN,
                "identifier": _user_identifier(self.user_id),
                "password": self._password,
                "session": payload.get("session"),
            }
            status, payload = self._call("POST", "/keys/device_signing/upload", json_body=authed)

        self._check(status, payload, "Cross-signing reset")
        self._cross_signing = (master, self_signing, user_signing)
        logger.info("Uploaded new cross-signing keys, master %s", master.public_key)
        return CrossSigningSeeds(
            master=master.seed_b64,
            self_signing=self_signing.seed_b64,
            user_signing=user_signing.seed_b64,
        )

    # --------------- Device keys ---------------
    def upload_device_keys(self) -> None:
        """Publish this device's identity keys. Re-uploading the same keys is harmless."""
        status, payload = self._call(
            "POST", "/keys/upload", json_body={"device_keys": self._device_keys_object()}
        )
        self._check(status, payload, "Device key upload")
        logger.info("Uploaded device keys for %s", self.device_id)

    def trust_own_device(self, seeds: CrossSigningSeeds) -> None:
        """Sign this device with the self-signing key so other clients see it as verified."""
        self_signing = SigningKey(decode_unpadded_b64(seeds.self_signing))
        device = {k: v for k, v in self._device_keys_object().items() if k != "signatures"}
        signed = sign_object(device, self.user_id, self_signing)
        status, payload = self._call(
            "POST",
            "/keys/signatures/upload",
            json_body={self.user_id: {self.device_id: signed}},
        )
        self._check(status, payload, "Device signature upload")
        failures = payload.get("failures")
        if failures:
            raise RemoteError(
                "Homeserver refused the device signature "
                f"({json.dumps(failures, sort_keys=True)}); run setup with --reset-identity"
            )
        logger.info("Signed device %s with self-signing key %s", self.device_id, self_signing.public_key)

    # --------------- Session lifecycle ---------------
    def logout(self) -> None:
        status, payload = self._call("POST", "/logout", json_body={})
        self._check(status, payload, "Logout")
        logger.info("Logged out device %s", self.device_id)

    def sync(self, since: Optional[str] = None, *, timeout_ms: int = 30000) -> Dict[str, Any]:
        """One /sync long-poll. The returned payload always carries `next_batch`."""
        params = {
            "timeout": str(timeout_ms),
            "filter": json.dumps(LAZY_LOADING_FILTER, separators=(",", ":")),
        }
        if since:
            params["since"] = since
        status, payload = self._call(
            "GET", "/sync", params=params, timeout=self._client.timeout + timeout_ms / 1000.0
        )
        self._check(status, payload, "Sync")
        if not isinstance(payload.get("next_batch"), str):
            raise RemoteError("Sync response has no next_batch")
        return payload

    # --------------- Internal ---------------
    def _call(self, method: str, path: str, **kwargs: Any) -> Tuple[int, Dict[str, Any]]:
        return self._client._request(
            method,
            _url(self._identity.homeserver, path),
            access_token=self._identity.access_token,
            **kwargs,
        )

    def _account_data_path(self, event_type: str) -> str:
        return f"/user/{quote(self.user_id, safe='')}/account_data/{quote(event_type, safe='')}"

    def _device_keys_object(self) -> Dict[str, Any]:
        keys = self._identity.device_keys
        if keys is None:
            raise AuthError("Stored identity has no device keys; log out and run setup again")
        return device_keys_object(
            self.user_id,
            self.device_id,
            decode_unpadded_b64(keys.ed25519),
            decode_unpadded_b64(keys.curve25519),
        )

    def _unlock_with_backup_key(self, key: bytes) -> BackupInfo:
        if curve25519_public_key(key) != self._backup_public_key:
            raise KeyRejectedError("Recovery key does not match the server backup")
        logger.info("Recovery key unlocks backup version %s", self._backup_version)
        return BackupInfo(
            version=self._backup_version or "",
            fingerprint=key_fingerprint(self._backup_public_key),
        )

    def _read_cross_signing(self, key_id: str, key: bytes) -> Optional[CrossSigningSeeds]:
        seeds: Dict[str, str] = {}
        for field, name in (
            ("master", MASTER_SECRET),
            ("self_signing", SELF_SIGNING_SECRET),
            ("user_signing", USER_SIGNING_SECRET),
        ):
            try:
                value = read_secret(self.get_account_data(name), key_id, key, name)
                if value is not None and len(decode_unpadded_b64(value.rstrip("="))) != 32:
                    raise ValueError("not a 32-byte seed")
            except ValueError as exc:
                logger.warning("Ignoring unreadable secret %s: %s", name, exc)
                return None
            if value is None:
                logger.info("Secret storage has no %s", name)
                return None
            seeds[field] = value.rstrip("=")
        return CrossSigningSeeds(**seeds)

    @staticmethod
    def _check(status: int, payload: Dict[str, Any], what: str) -> None:
        if status == 200:
            return
        if status == 401:
            raise AuthError(f"{what} refused: {_describe(payload, status)}")
        raise RemoteError(f"{what} failed: {_describe(payload, status)}")


__all__ = ["BackupInfo", "MatrixClient", "MatrixSession", "LAZY_LOADING_FILTER"]
