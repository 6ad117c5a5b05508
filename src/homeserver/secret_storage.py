from __future__ import annotations

import base64
import hashlib
import hmac
import os
import secrets
import string
from typing import Any, Dict, Optional, Tuple

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .keys import decode_unpadded_b64


SECRET_STORAGE_ALGORITHM = "m.secret_storage.v1.aes-hmac-sha2"

DEFAULT_KEY_EVENT = "m.secret_storage.default_key"
KEY_EVENT_PREFIX = "m.secret_storage.key."

BACKUP_SECRET = "m.megolm_backup.v1"
MASTER_SECRET = "m.cross_signing.master"
SELF_SIGNING_SECRET = "m.cross_signing.self_signing"
USER_SIGNING_SECRET = "m.cross_signing.user_signing"

_ZERO_SALT = b"\x00" * 32
# Key descriptions carry the MAC of 32 zero bytes encrypted under the name ""
_KEY_CHECK_PLAINTEXT = b"\x00" * 32
_KEY_ID_ALPHABET = string.ascii_letters + string.digits


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _unb64(value: Any) -> bytes:
    # Clients disagree on padding; accept both forms
    if not isinstance(value, str):
        raise ValueError("expected a base64 string")
    return decode_unpadded_b64(value.rstrip("="))


def _derive(key: bytes, name: str) -> Tuple[bytes, bytes]:
    """HKDF-SHA256 over the storage key: (AES-256 key, HMAC-SHA256 key)."""
    okm = HKDF(
        algorithm=hashes.SHA256(),
        length=64,
        salt=_ZERO_SALT,
        info=name.encode("utf-8"),
    ).derive(key)
    return okm[:32], okm[32:]


def _new_iv() -> bytes:
    iv = bytearray(os.urandom(16))
    # Bit 63 cleared so the 128-bit CTR counter cannot wrap inside one secret
    iv[8] &= 0x7F
    return bytes(iv)


def _aes_ctr(key: bytes, iv: bytes, data: bytes) -> bytes:
    ctx = Cipher(algorithms.AES(key), modes.CTR(iv)).encryptor()
    return ctx.update(data) + ctx.finalize()


def _mac(key: bytes, data: bytes) -> bytes:
    return hmac.new(key, data, hashlib.sha256).digest()


def encrypt_secret(
    key: bytes, name: str, plaintext: bytes, *, iv: Optional[bytes] = None
) -> Dict[str, str]:
    """Encrypt one secret under a storage key; returns {iv, ciphertext, mac}."""
    aes_key, mac_key = _derive(key, name)
    iv = iv if iv is not None else _new_iv()
    ciphertext = _aes_ctr(aes_key, iv, plaintext)
    return {"iv": _b64(iv), "ciphertext": _b64(ciphertext), "mac": _b64(_mac(mac_key, ciphertext))}


def decrypt_secret(key: bytes, name: str, encrypted: Dict[str, Any]) -> bytes:
    """
    Decrypt one {iv, ciphertext, mac} object.

    Raises ValueError when the object is malformed or the MAC does not match,
    which is what a wrong storage key looks like.
    """
    try:
        iv = _unb64(encrypted.get("iv"))
        ciphertext = _unb64(encrypted.get("ciphertext"))
        mac = _unb64(encrypted.get("mac"))
    except ValueError as exc:
        raise ValueError(f"malformed encrypted secret {name!r}") from exc
    if len(iv) != 16:
        raise ValueError(f"malformed encrypted secret {name!r}")
    aes_key, mac_key = _derive(key, name)
    if not hmac.compare_digest(_mac(mac_key, ciphertext), mac):
        raise ValueError(f"MAC mismatch for secret {name!r}")
    return _aes_ctr(aes_key, iv, ciphertext)


def new_key_id() -> str:
    return "".join(secrets.choice(_KEY_ID_ALPHABET) for _ in range(32))


def key_description(key: bytes) -> Dict[str, Any]:
    """The `m.secret_storage.key.<id>` account data content for a new storage key."""
    check = encrypt_secret(key, "", _KEY_CHECK_PLAINTEXT)
    return {"algorithm": SECRET_STORAGE_ALGORITHM, "iv": check["iv"], "mac": check["mac"]}


def check_key(key: bytes, description: Dict[str, Any]) -> bool:
    """
    True when `key` matches a key description.

    Descriptions without `iv`/`mac` cannot be checked and pass; decrypting a
    secret is then the first real test of the key.
    """
    if "iv" not in description or "mac" not in description:
        return True
    try:
        iv = _unb64(description["iv"])
        expected = _unb64(description["mac"])
    except ValueError:
        return False
    if len(iv) != 16:
        return False
    actual = _unb64(encrypt_secret(key, "", _KEY_CHECK_PLAINTEXT, iv=iv)["mac"])
    return hmac.compare_digest(actual, expected)


def secret_content(key_id: str, key: bytes, name: str, value: str) -> Dict[str, Any]:
    """Account data content storing `value` under secret `name`."""
    return {"encrypted": {key_id: encrypt_secret(key, name, value.encode("utf-8"))}}


def read_secret(content: Optional[Dict[str, Any]], key_id: str, key: bytes, name: str) -> Optional[str]:
    """
    Decrypt secret `name` from its account data content.

    Returns None when the secret is not stored for `key_id`. Raises ValueError
    when it is stored but does not decrypt.
    """
    encrypted = (content or {}).get("encrypted")
    entry = encrypted.get(key_id) if isinstance(encrypted, dict) else None
    if not isinstance(entry, dict):
        return None
    try:
        return decrypt_secret(key, name, entry).decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"secret {name!r} is not text") from exc


__all__ = [
    "BACKUP_SECRET",
    "DEFAULT_KEY_EVENT",
    "KEY_EVENT_PREFIX",
    "MASTER_SECRET",
    "SECRET_STORAGE_ALGORITHM",
    "SELF_SIGNING_SECRET",
    "USER_SIGNING_SECRET",
    "check_key",
    "decrypt_secret",
    "encrypt_secret",
    "key_description",
    "new_key_id",
    "read_secret",
    "secret_content",
]
