from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, Optional

from cryptography.fernet import Fernet

from .errors import StoreError
from .recovery_key import DEFAULT_RECOVERY_KEY_FILE


logger = logging.getLogger(__name__)

# Environment variable names
ENV_LOG_LEVEL = "BOT_LOG_LEVEL"
ENV_STORE_KEY = "BOT_STORE_KEY"
ENV_PARAM_PREFIX = "BOT_PARAM_PREFIX"
ENV_HTTP_TIMEOUT = "BOT_HTTP_TIMEOUT"

STORE_KEY_FILE = "store.key"
SSM_STORE_KEY_NAME = "store_key"
DEFAULT_DEVICE_NAME = "matrix-bot-bootstrap"


@dataclass(frozen=True)
class SetupConfig:
    """
    Inputs to setup() that do not come from the operator's keyboard.

    Credentials left as None are asked for through the interaction port.
    """

    recovery_key_path: Path
    device_name: str = DEFAULT_DEVICE_NAME
    homeserver: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = field(default=None, repr=False)
    reset_identity: bool = False
    max_key_attempts: int = 3


def _getenv(name: str, default: Optional[str] = None) -> Optional[str]:
    val = os.environ.get(name)
    return val if val not in (None, "") else default


def _require(v: Optional[str], what: str) -> str:
    if not v:
        raise StoreError(f"Missing required configuration: {what}")
    return v


def default_recovery_key_path(data_dir: Path) -> Path:
    return data_dir / DEFAULT_RECOVERY_KEY_FILE


def http_timeout() -> float:
    raw = _getenv(ENV_HTTP_TIMEOUT, "30")
    try:
        return float(raw)  # type: ignore[arg-type]
    except ValueError:
        logger.warning("Ignoring invalid %s=%r", ENV_HTTP_TIMEOUT, raw)
        return 30.0


def log_level() -> int:
    name = (_getenv(ENV_LOG_LEVEL, "INFO") or "INFO").upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


def _load_ssm_params(prefix: str, names: Iterable[str]) -> Dict[str, Optional[str]]:
    import boto3
    from botocore.exceptions import ClientError

    ssm = boto3.client("ssm")
    out: Dict[str, Optional[str]] = {k: None for k in names}
    for name in names:
        full = f"{prefix}{name}"
        try:
            resp = ssm.get_parameter(Name=full, WithDecryption=True)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code in ("ParameterNotFound", "AccessDeniedException"):
                out[name] = None
                continue
            raise StoreError(f"Cannot read SSM parameter {full}: {code}") from e
        val = resp.get("Parameter", {}).get("Value")
        out[name] = val if isinstance(val, str) and val != "" else None
    return out


def _read_key_file(path: Path) -> Optional[str]:
    try:
        return path.read_text(encoding="utf-8").strip() or None
    except FileNotFoundError:
        return None
    except OSError as ex:
        raise StoreError(f"Cannot read store key {path}: {ex}") from ex


def _create_key_file(path: Path) -> str:
    key = Fernet.generate_key().decode("ascii")
    try:
        path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(key + "\n")
            handle.flush()
            os.fsync(handle.fileno())
    except OSError as ex:
        raise StoreError(f"Cannot create store key {path}: {ex}") from ex
    logger.info("Created store key %s", path)
    return key


def resolve_store_key(data_dir: Path, *, create: bool = False) -> str:
    """
    Find the Fernet key that encrypts the secret store.

    Order:
    - BOT_STORE_KEY environment variable
    - SSM parameter `<BOT_PARAM_PREFIX>store_key` when BOT_PARAM_PREFIX is set
    - `<data_dir>/store.key`, generated when `create` is set (setup only)
    """
    key = _getenv(ENV_STORE_KEY)
    if key:
        return key

    prefix = _getenv(ENV_PARAM_PREFIX)
    if prefix:
        params = _load_ssm_params(prefix, [SSM_STORE_KEY_NAME])
        return _require(params.get(SSM_STORE_KEY_NAME), f"{prefix}{SSM_STORE_KEY_NAME}")

    path = data_dir / STORE_KEY_FILE
    key = _read_key_file(path)
    if key:
        return key
    if not create:
        raise StoreError(f"No store key at {path}; run setup first")
    return _create_key_file(path)


__all__ = [
    "SetupConfig",
    "default_recovery_key_path",
    "http_timeout",
    "log_level",
    "resolve_store_key",
    "ENV_LOG_LEVEL",
    "ENV_STORE_KEY",
    "ENV_PARAM_PREFIX",
    "ENV_HTTP_TIMEOUT",
]
