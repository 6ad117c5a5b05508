"""
Matrix homeserver access for the bot.

Modules:
- client: client-server API client (login, session restore, key backup, cross-signing,
  device keys, sync)
- keys: recovery key encoding, curve25519/ed25519 key handling, Matrix object signing
- secret_storage: account-data secret storage (m.secret_storage.v1.aes-hmac-sha2)
- sync: sync position memory across restarts
"""

__all__ = [
    "client",
    "keys",
    "secret_storage",
    "sync",
]
