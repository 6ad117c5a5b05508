from __future__ import annotations

import base64
import hashlib
import json
import secrets
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat


BACKUP_ALGORITHM = "m.megolm_backup.v1.curve25519-aes-sha2"
DEVICE_ALGORITHMS = ("m.olm.v1.curve25519-aes-sha2", "m.megolm.v1.aes-sha2")

# Matrix "key representation": 0x8B 0x01 header, 32-byte key, parity byte
RECOVERY_KEY_PREFIX = b"\x8b\x01"
RECOVERY_KEY_LENGTH = 32
_BASE58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
_BASE58_INDEX = {ch: i for i, ch in enumerate(_BASE58_ALPHABET)}


def unpadded_b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii").rstrip("=")


def decode_unpadded_b64(value: str) -> bytes:
    padded = value + "=" * (-len(value) % 4)
    return base64.b64decode(padded, validate=True)


def canonical_json(obj: Dict[str, Any]) -> bytes:
    """Matrix canonical JSON: sorted keys, no whitespace, UTF-8."""
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"), sort_keys=True).encode("utf-8")


# -------- Base58 --------
def _b58encode(data: bytes) -> str:
    num = int.from_bytes(data, "big")
    out = []
    while num > 0:
        num, rem = divmod(num, 58)
        out.append(_BASE58_ALPHABET[rem])
    # Leading zero bytes map to leading '1's
    pad = len(data) - len(data.lstrip(b"\x00"))
    return "1" * pad + "".join(reversed(out))


def _b58decode(text: str) -> bytes:
    num = 0
    for ch in text:
        try:
            num = num * 58 + _BASE58_INDEX[ch]
        except KeyError:
            raise ValueError(f"invalid base58 character {ch!r}") from None
    body = num.to_bytes((num.bit_length() + 7) // 8, "big") if num else b""
    pad = len(text) - len(text.lstrip("1"))
    return b"\x00" * pad + body


# -------- Recovery key --------
def encode_recovery_key(raw: bytes) -> str:
    """Render a 32-byte secret storage key as a human-friendly recovery key."""
    if len(raw) != RECOVERY_KEY_LENGTH:
        raise ValueError("recovery key material must be 32 bytes")
    buf = RECOVERY_KEY_PREFIX + raw
    parity = 0
    for b in buf:
        parity ^= b
    encoded = _b58encode(buf + bytes([parity]))
    return " ".join(encoded[i : i + 4] for i in range(0, len(encoded), 4))


def decode_recovery_key(text: str) -> bytes:
    """Parse a recovery key back to its 32 raw bytes.

    Whitespace is ignored. Raises ValueError on a bad alphabet, header,
    length or parity.
    """
    compact = "".join(text.split())
    if not compact:
        raise ValueError("recovery key is empty")
    buf = _b58decode(compact)
    if len(buf) != len(RECOVERY_KEY_PREFIX) + RECOVERY_KEY_LENGTH + 1:
        raise ValueError("recovery key has the wrong length")
    if not buf.startswith(RECOVERY_KEY_PREFIX):
        raise ValueError("recovery key has the wrong header")
    parity = 0
    for b in buf:
        parity ^= b
    if parity != 0:
        raise ValueError("recovery key parity check failed")
    return buf[len(RECOVERY_KEY_PREFIX) : -1]


def new_backup_key() -> bytes:
    return secrets.token_bytes(RECOVERY_KEY_LENGTH)


def curve25519_public_key(raw: bytes) -> str:
    """curve25519 public key of a private key, unpadded base64."""
    public = X25519PrivateKey.from_private_bytes(raw).public_key()
    return unpadded_b64(public.public_bytes(Encoding.Raw, PublicFormat.Raw))


def key_fingerprint(public_key_b64: str) -> str:
    return hashlib.sha256(decode_unpadded_b64(public_key_b64)).hexdigest()[:16]


# -------- Cross-signing --------
@dataclass(frozen=True)
class SigningKey:
    """An ed25519 key pair addressed the way Matrix key objects address it."""

    seed: bytes

    @classmethod
    def generate(cls) -> "SigningKey":
        return cls(seed=secrets.token_bytes(32))

    @property
    def public_key(self) -> str:
        public = Ed25519PrivateKey.from_private_bytes(self.seed).public_key()
        return unpadded_b64(public.public_bytes(Encoding.Raw, PublicFormat.Raw))

    @property
    def key_id(self) -> str:
        return f"ed25519:{self.public_key}"

    @property
    def seed_b64(self) -> str:
        return unpadded_b64(self.seed)

    def sign(self, obj: Dict[str, Any]) -> str:
        # Signatures cover the object without its signatures/unsigned sections
        payload = {k: v for k, v in obj.items() if k not in ("signatures", "unsigned")}
        private = Ed25519PrivateKey.from_private_bytes(self.seed)
        return unpadded_b64(private.sign(canonical_json(payload)))

    def __repr__(self) -> str:
        return f"SigningKey({self.key_id})"


def sign_object(
    obj: Dict[str, Any], user_id: str, key: SigningKey, *, key_id: Optional[str] = None
) -> Dict[str, Any]:
    """Return a copy of `obj` with `key`'s signature merged into `signatures`.

    Device keys sign as `ed25519:<device id>`, so `key_id` overrides the default
    `ed25519:<public key>`.
    """
    signed = dict(obj)
    signatures = {u: dict(s) for u, s in obj.get("signatures", {}).items()}
    signatures.setdefault(user_id, {})[key_id or key.key_id] = key.sign(obj)
    signed["signatures"] = signatures
    return signed


def cross_signing_key_object(user_id: str, usage: str, key: SigningKey) -> Dict[str, Any]:
    return {
        "user_id": user_id,
        "usage": [usage],
        "keys": {key.key_id: key.public_key},
    }


def build_cross_signing_upload(
    user_id: str,
) -> Tuple[Dict[str, Any], Tuple[SigningKey, SigningKey, SigningKey]]:
    """
    Generate fresh master, self-signing and user-signing keys.

    Returns the `keys/device_signing/upload` body (without `auth`) and the key
    triple. Both sub-keys carry the master key's signature.
    """
    master = SigningKey.generate()
    self_signing = SigningKey.generate()
    user_signing = SigningKey.generate()
    body = {
        "master_key": cross_signing_key_object(user_id, "master", master),
        "self_signing_key": sign_object(
            cross_signing_key_object(user_id, "self_signing", self_signing), user_id, master
        ),
        "user_signing_key": sign_object(
            cross_signing_key_object(user_id, "user_signing", user_signing), user_id, master
        ),
    }
    return body, (master, self_signing, user_signing)


# -------- Device keys --------
def new_device_keys() -> Tuple[str, str]:
    """Fresh (ed25519 seed, curve25519 private key) for a device, unpadded base64."""
    return unpadded_b64(secrets.token_bytes(32)), unpadded_b64(secrets.token_bytes(32))


def device_keys_object(
    user_id: str, device_id: str, ed25519_seed: bytes, curve25519_private: bytes
) -> Dict[str, Any]:
    """The `device_keys` object for `keys/upload`, self-signed by the device key."""
    device_key = SigningKey(ed25519_seed)
    obj = {
        "user_id": user_id,
        "device_id": device_id,
        "algorithms": list(DEVICE_ALGORITHMS),
        "keys": {
            f"curve25519:{device_id}": curve25519_public_key(curve25519_private),
            f"ed25519:{device_id}": device_key.public_key,
        },
    }
    return sign_object(obj, user_id, device_key, key_id=f"ed25519:{device_id}")


__all__ = [
    "BACKUP_ALGORITHM",
    "SigningKey",
    "DEVICE_ALGORITHMS",
    "build_cross_signing_upload",
    "canonical_json",
    "curve25519_public_key",
    "device_keys_object",
    "decode_recovery_key",
    "decode_unpadded_b64",
    "encode_recovery_key",
    "key_fingerprint",
    "new_backup_key",
    "new_device_keys",
    "sign_object",
    "unpadded_b64",
]
