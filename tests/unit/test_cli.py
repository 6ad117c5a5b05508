from __future__ import annotations

from typing import Any, Dict, List

import pytest
from cryptography.fernet import Fernet

from bootstrap.orchestrator import SetupOutcome
from state.models import AwaitingBackupDecision, BackupAdopted, IdentityRecord


IDENTITY = IdentityRecord(
    homeserver="https://matrix.example.org",
    user_id="@bot:example.org",
    access_token="syt_token",
    device_id="DEVICE1",
)


@pytest.fixture(autouse=True)
def _env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("BOT_STORE_KEY", "BOT_PARAM_PREFIX", "BOT_HTTP_TIMEOUT", "BOT_LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)


def test_run_before_setup_fails_cleanly(tmp_path, capsys):
    from bot import handler

    code = handler.main(["run", "--data", str(tmp_path / "data")])

    assert code == 1
    assert "run setup first" in capsys.readouterr().err


def test_run_with_empty_store_fails_before_network(tmp_path, monkeypatch, capsys):
    from bot import handler

    monkeypatch.setenv("BOT_STORE_KEY", Fernet.generate_key().decode())
    code = handler.main(["run", "--data", str(tmp_path)])

    assert code == 1
    assert "No session found" in capsys.readouterr().err


def test_setup_passes_flags_and_reports_outcome(tmp_path, monkeypatch):
    from bot import handler

    calls: List[Dict[str, Any]] = []

    def fake_setup(config, *, store, client, interaction):
        calls.append({"config": config, "locked": store.locked, "timeout": client.timeout})
        return SetupOutcome(identity=IDENTITY, crypto=BackupAdopted(fingerprint="0123456789abcdef"))

    monkeypatch.setenv("BOT_HTTP_TIMEOUT", "5")
    monkeypatch.setattr(handler, "setup", fake_setup)

    code = handler.main(
        [
            "setup",
            "--data",
            str(tmp_path / "data"),
            "--device-name",
            "my-bot",
            "--recovery-key-file",
            str(tmp_path / "key.txt"),
            "--reset-identity",
        ]
    )

    assert code == 0
    (call,) = calls
    assert call["locked"] is True
    assert call["timeout"] == 5.0
    config = call["config"]
    assert config.device_name == "my-bot"
    assert config.recovery_key_path == tmp_path / "key.txt"
    assert config.reset_identity is True
    # setup creates the store key on first use
    assert (tmp_path / "data" / "store.key").exists()


def test_setup_without_backup_exits_nonzero(tmp_path, monkeypatch):
    from bot import handler

    def fake_setup(config, *, store, client, interaction):
        assert config.recovery_key_path == tmp_path / "data" / "recovery-key.txt"
        return SetupOutcome(identity=IDENTITY, crypto=AwaitingBackupDecision())

    monkeypatch.setattr(handler, "setup", fake_setup)
    assert handler.main(["setup", "--data", str(tmp_path / "data")]) == 1


def test_interrupt_exits_130(tmp_path, monkeypatch):
    from bot import handler

    def fake_setup(config, *, store, client, interaction):
        raise KeyboardInterrupt

    monkeypatch.setattr(handler, "setup", fake_setup)
    assert handler.main(["setup", "--data", str(tmp_path)]) == 130


def test_data_is_required():
    from bot import handler

    with pytest.raises(SystemExit) as excinfo:
        handler.main(["run"])
    assert excinfo.value.code == 2
