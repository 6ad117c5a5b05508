from __future__ import annotations

import os
import stat

import pytest

from bootstrap.errors import KeyRejectedError, RecoveryKeyFileError
from bootstrap.recovery_key import RecoveryKeyArtifact, RecoveryKeyHandler
from homeserver.keys import _b58encode, decode_recovery_key, encode_recovery_key


RAW = bytes(range(32))


def test_encoded_key_is_grouped_and_decodes_back():
    encoded = encode_recovery_key(RAW)
    groups = encoded.split(" ")
    assert all(len(g) == 4 for g in groups[:-1])
    assert 1 <= len(groups[-1]) <= 4
    assert encoded.replace(" ", "")[0] == "E"  # 0x8B 0x01 header
    assert decode_recovery_key(encoded) == RAW
    # Whitespace is not significant
    assert decode_recovery_key(encoded.replace(" ", "") + "\n") == RAW
    assert decode_recovery_key("  " + encoded.replace(" ", "\t")) == RAW


def _with_parity(buf: bytes, flip: int = 0) -> bytes:
    parity = 0
    for b in buf:
        parity ^= b
    return buf + bytes([parity ^ flip])


def test_decode_rejects_bad_parity_header_and_alphabet():
    compact = encode_recovery_key(RAW).replace(" ", "")
    assert decode_recovery_key(_b58encode(_with_parity(b"\x8b\x01" + RAW))) == RAW
    with pytest.raises(ValueError, match="parity"):
        decode_recovery_key(_b58encode(_with_parity(b"\x8b\x01" + RAW, flip=1)))
    with pytest.raises(ValueError, match="header"):
        decode_recovery_key(_b58encode(_with_parity(b"\x8b\x02" + RAW)))
    with pytest.raises(ValueError, match="base58"):
        decode_recovery_key(compact[:-1] + "0")
    with pytest.raises(ValueError, match="empty"):
        decode_recovery_key("   ")
    with pytest.raises(ValueError, match="length"):
        decode_recovery_key(compact[:10])


def test_encode_requires_32_bytes():
    with pytest.raises(ValueError):
        encode_recovery_key(b"\x00" * 31)


def test_artifact_repr_hides_key_material():
    artifact = RecoveryKeyArtifact.from_private_key(RAW)
    text = repr(artifact)
    assert artifact.encoded not in text
    assert artifact.encoded.replace(" ", "")[:8] not in text
    assert RAW.hex() not in text


def test_generate_writes_key_file_exclusively(tmp_path):
    path = tmp_path / "keys" / "recovery-key.txt"
    handler = RecoveryKeyHandler(path)

    artifact = handler.generate()

    assert path.read_text(encoding="utf-8") == artifact.encoded + "\n"
    assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
    # What the operator reads from the file imports back to the same key
    assert handler.import_key(path.read_text(encoding="utf-8")).private_key == artifact.private_key

    with pytest.raises(RecoveryKeyFileError, match="already exists"):
        handler.generate()
    # Earlier key untouched
    assert path.read_text(encoding="utf-8") == artifact.encoded + "\n"


def test_generate_fails_when_directory_cannot_be_created(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x")
    handler = RecoveryKeyHandler(blocker / "recovery-key.txt")
    with pytest.raises(RecoveryKeyFileError, match="Cannot create directory"):
        handler.generate()


def test_import_key_rejects_garbage():
    handler = RecoveryKeyHandler("unused.txt")
    with pytest.raises(KeyRejectedError, match="Not a valid recovery key"):
        handler.import_key("definitely not a key")
    with pytest.raises(KeyRejectedError):
        handler.import_key("")


def test_fresh_keys_are_distinct(tmp_path):
    a = RecoveryKeyHandler(tmp_path / "a.txt").generate()
    b = RecoveryKeyHandler(tmp_path / "b.txt").generate()
    assert a.private_key != b.private_key
    assert a.encoded != b.encoded


def test_load_existing_reads_back_generated_key(tmp_path):
    handler = RecoveryKeyHandler(tmp_path / "recovery-key.txt")
    assert handler.load_existing() is None

    artifact = handler.generate()

    loaded = handler.load_existing()
    assert loaded is not None
    assert loaded.private_key == artifact.private_key


def test_load_existing_rejects_foreign_file(tmp_path):
    path = tmp_path / "recovery-key.txt"
    path.write_text("notes about the bot\n")

    with pytest.raises(RecoveryKeyFileError, match="does not hold a recovery key"):
        RecoveryKeyHandler(path).load_existing()
    assert path.read_text() == "notes about the bot\n"
