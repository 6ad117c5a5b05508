from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

import httpx
import pytest
from cryptography.fernet import Fernet
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from bootstrap.config import SetupConfig
from bootstrap.errors import RemoteError
from bootstrap.orchestrator import setup
from homeserver.client import MatrixClient
from homeserver.keys import canonical_json, decode_unpadded_b64
from state.models import BackupAdopted, BackupCreated, Uninitialized
from state.store import SecretStore


BASE = "https://matrix.example.org"
API = "/_matrix/client/v3"
USER = "@bot:example.org"
ACCOUNT_DATA = f"/user/{USER}/account_data/"


class _Homeserver:
    """One account on an in-memory homeserver, enough of it for setup()."""

    def __init__(self) -> None:
        self.log: List[str] = []
        self.tokens: Dict[str, str] = {}
        self.account_data: Dict[str, Dict[str, Any]] = {}
        self.backup: Optional[Dict[str, Any]] = None
        self.backups_created = 0
        self.cross_signing: Optional[Dict[str, Any]] = None
        self.device_keys: Dict[str, Dict[str, Any]] = {}
        self.device_signatures: Dict[str, Dict[str, Any]] = {}
        self.fail_once: Dict[str, int] = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path[len(API) :]
        route = f"{request.method} {path}"
        self.log.append(route)
        body = json.loads(request.content) if request.content else {}
        if route in self.fail_once:
            return httpx.Response(self.fail_once.pop(route), json={"errcode": "M_UNKNOWN"})

        if route == "GET /login":
            return httpx.Response(200, json={"flows": [{"type": "m.login.password"}]})
        if route == "POST /login":
            assert body["password"] == "hunter2"
            device_id = f"DEVICE{len(self.tokens) + 1}"
            token = f"syt_{device_id}"
            self.tokens[token] = device_id
            return httpx.Response(200, json={"user_id": USER, "access_token": token, "device_id": device_id})

        device_id = self.tokens[request.headers["Authorization"].split(" ", 1)[1]]
        if route == "GET /account/whoami":
            return httpx.Response(200, json={"user_id": USER, "device_id": device_id})
        if route == "POST /keys/upload":
            assert body["device_keys"]["device_id"] == device_id
            self.device_keys[device_id] = body["device_keys"]
            return httpx.Response(200, json={"one_time_key_counts": {}})
        if route == "POST /keys/device_signing/upload":
            if "auth" not in body:
                return httpx.Response(
                    401, json={"flows": [{"stages": ["m.login.password"]}], "session": "uia"}
                )
            assert body["auth"]["password"] == "hunter2"
            self.cross_signing = body
            return httpx.Response(200, json={})
        if route == "POST /keys/signatures/upload":
            signed = body[USER]
            for signed_device, device in signed.items():
                assert signed_device in self.device_keys, "device keys never uploaded"
                self.device_signatures[signed_device] = device
            return httpx.Response(200, json={"failures": {}})
        if route == "GET /room_keys/version":
            if self.backup is None:
                return httpx.Response(404, json={"errcode": "M_NOT_FOUND"})
            return httpx.Response(200, json=self.backup)
        if route == "POST /room_keys/version":
            self.backups_created += 1
            self.backup = dict(body, version=str(self.backups_created), count=0, etag="0")
            return httpx.Response(200, json={"version": str(self.backups_created)})
        if path.startswith(ACCOUNT_DATA):
            event_type = path[len(ACCOUNT_DATA) :]
            if request.method == "PUT":
                self.account_data[event_type] = body
                return httpx.Response(200, json={})
            if event_type not in self.account_data:
                return httpx.Response(404, json={"errcode": "M_NOT_FOUND"})
            return httpx.Response(200, json=self.account_data[event_type])
        raise AssertionError(f"unexpected {route}")

    def self_signing_public_key(self) -> str:
        assert self.cross_signing is not None
        (public_key,) = self.cross_signing["self_signing_key"]["keys"].values()
        return public_key


class _Operator:
    def __init__(self, *, secrets: Optional[List[str]] = None, confirms: Optional[List[bool]] = None) -> None:
        self.secrets = list(secrets or [])
        self.confirms = list(confirms or [])
        self.notices: List[str] = []

    def prompt_text(self, label: str) -> str:
        raise AssertionError(f"unexpected prompt_text({label!r})")

    def prompt_secret(self, label: str) -> str:
        return self.secrets.pop(0)

    def prompt_confirm(self, question: str) -> bool:
        return self.confirms.pop(0)

    def notify(self, message: str) -> None:
        self.notices.append(message)


def _config(tmp_path, name: str = "recovery-key.txt") -> SetupConfig:
    return SetupConfig(
        recovery_key_path=tmp_path / name,
        homeserver=BASE,
        username="bot",
        password="hunter2",
    )


def _run(server: _Homeserver, store: SecretStore, config: SetupConfig, operator: _Operator):
    with MatrixClient(client=httpx.Client(transport=httpx.MockTransport(server)), sleep=lambda s: None) as client:
        return setup(config, store=store, client=client, interaction=operator)


def _assert_signed_by_self_signing_key(server: _Homeserver, device_id: str) -> None:
    device = server.device_signatures[device_id]
    public_key = server.self_signing_public_key()
    signature = device["signatures"][USER][f"ed25519:{public_key}"]
    unsigned = {k: v for k, v in device.items() if k != "signatures"}
    Ed25519PublicKey.from_public_bytes(decode_unpadded_b64(public_key)).verify(
        decode_unpadded_b64(signature), canonical_json(unsigned)
    )
    assert unsigned["keys"] == server.device_keys[device_id]["keys"]


@pytest.fixture()
def store(tmp_path):
    with SecretStore(tmp_path / "data", Fernet.generate_key()) as s:
        yield s


def test_first_setup_uploads_and_signs_the_bot_device(tmp_path, store):
    server = _Homeserver()

    outcome = _run(server, store, _config(tmp_path), _Operator(confirms=[True]))

    assert isinstance(outcome.crypto, BackupCreated)
    log = server.log
    assert log.index("POST /keys/upload") < log.index("POST /keys/device_signing/upload")
    assert log.index("POST /room_keys/version") < log.index("POST /keys/signatures/upload")
    _assert_signed_by_self_signing_key(server, "DEVICE1")
    assert store.load().identity.device_keys is not None


def test_second_bot_adopts_backup_and_cross_signing_from_secret_storage(tmp_path, store):
    server = _Homeserver()
    first = _run(server, store, _config(tmp_path), _Operator(confirms=[True]))
    key_text = (tmp_path / "recovery-key.txt").read_text(encoding="utf-8")

    with SecretStore(tmp_path / "other-data", Fernet.generate_key()) as other_store:
        outcome = _run(server, other_store, _config(tmp_path, "unused.txt"), _Operator(secrets=[key_text]))

    assert isinstance(outcome.crypto, BackupAdopted)
    assert outcome.crypto.backup_version == "1"
    assert outcome.crypto.fingerprint == first.crypto.fingerprint
    assert outcome.crypto.cross_signing == first.crypto.cross_signing
    assert server.backups_created == 1
    _assert_signed_by_self_signing_key(server, "DEVICE2")
    assert not (tmp_path / "unused.txt").exists()


def test_failure_before_backup_creation_converges_on_rerun(tmp_path, store):
    server = _Homeserver()
    server.fail_once["POST /room_keys/version"] = 500

    with pytest.raises(RemoteError):
        _run(server, store, _config(tmp_path), _Operator(confirms=[True]))
    assert store.load().crypto == Uninitialized()
    assert server.backup is None
    key_text = (tmp_path / "recovery-key.txt").read_text(encoding="utf-8")

    outcome = _run(server, store, _config(tmp_path), _Operator(confirms=[True]))

    assert isinstance(outcome.crypto, BackupCreated)
    assert server.backups_created == 1
    assert (tmp_path / "recovery-key.txt").read_text(encoding="utf-8") == key_text
    _assert_signed_by_self_signing_key(server, "DEVICE1")

    # The key in the file opens what the server now has
    with SecretStore(tmp_path / "other-data", Fernet.generate_key()) as other_store:
        adopted = _run(server, other_store, _config(tmp_path, "unused.txt"), _Operator(secrets=[key_text]))
    assert adopted.crypto.cross_signing == outcome.crypto.cross_signing
